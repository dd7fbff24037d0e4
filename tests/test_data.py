"""Unit tests for cndd_framework.data and cndd_framework.simulate modules."""
import pytest
import numpy as np
import pandas as pd

from cndd_framework.config import DataConfig
from cndd_framework.data import load_observations, validate_observations
from cndd_framework.simulate import SpeciesSpec, simulate_census


class TestValidateObservations:
    """Tests for observation validation."""

    def test_valid_rows_kept(self, small_observations):
        df = validate_observations(small_observations, DataConfig())
        assert len(df) == len(small_observations)
        assert df["status"].dtype.kind == "i"

    def test_missing_columns_raise(self, small_observations):
        with pytest.raises(ValueError, match="missing required columns"):
            validate_observations(small_observations.drop(columns=["interval"]), DataConfig())

    def test_non_positive_interval_dropped(self, small_observations):
        bad = small_observations.copy()
        bad.loc[0, "interval"] = 0.0
        bad.loc[1, "interval"] = -1.0
        df = validate_observations(bad, DataConfig())
        assert len(df) == 3
        assert (df["interval"] > 0).all()

    def test_invalid_outcome_dropped(self, small_observations):
        bad = small_observations.copy()
        bad["status"] = bad["status"].astype(object)
        bad.loc[2, "status"] = 2
        bad.loc[3, "status"] = "dead"
        df = validate_observations(bad, DataConfig())
        assert len(df) == 3
        assert set(df["status"]) <= {0, 1}

    def test_non_finite_covariate_dropped(self, small_observations):
        bad = small_observations.copy()
        bad.loc[4, "con_dens"] = np.nan
        bad.loc[3, "height"] = np.inf
        assert len(validate_observations(bad, DataConfig())) == 3

    def test_input_not_modified(self, small_observations):
        small_observations.loc[0, "interval"] = 0.0
        snapshot = small_observations.copy()
        validate_observations(small_observations, DataConfig())
        pd.testing.assert_frame_equal(small_observations, snapshot)

    def test_custom_columns(self, small_observations):
        renamed = small_observations.rename(columns={"species": "sp", "con_dens": "bas_con"})
        cfg = DataConfig(group_column="sp", hazard_column="bas_con")
        assert len(validate_observations(renamed, cfg)) == 5


class TestLoadObservations:
    """Tests for file loading."""

    def test_csv(self, small_observations, tmp_path):
        path = tmp_path / "census.csv"
        small_observations.to_csv(path, index=False)
        df = load_observations(str(path))
        assert len(df) == 5
        assert list(df["species"]) == ["A", "A", "A", "B", "B"]

    def test_pickle(self, small_observations, tmp_path):
        path = tmp_path / "census.pkl"
        small_observations.to_pickle(path)
        assert len(load_observations(str(path))) == 5

    def test_unsupported_format(self, small_observations, tmp_path):
        path = tmp_path / "census.parquet"
        path.write_text("")
        with pytest.raises(ValueError, match="Unsupported file format"):
            load_observations(str(path))


class TestSimulateCensus:
    """Tests for the synthetic census generator."""

    def test_layout(self):
        df = simulate_census([SpeciesSpec("A", n=50), SpeciesSpec("B", n=30)], seed=1)
        assert set(DataConfig().required_columns) <= set(df.columns)
        assert df.groupby("species").size().to_dict() == {"A": 50, "B": 30}
        assert set(df["status"]) <= {0, 1}
        assert (df["interval"] > 0).all()

    def test_density_values(self):
        df = simulate_census([SpeciesSpec("B", n=100, density_values=[0.0, 0.5])], seed=2)
        assert set(df["con_dens"]) <= {0.0, 0.5}

    def test_reproducible(self):
        a = simulate_census([SpeciesSpec("A", n=40)], seed=3)
        b = simulate_census([SpeciesSpec("A", n=40)], seed=3)
        pd.testing.assert_frame_equal(a, b)

    def test_extra_controls(self):
        cfg = DataConfig(control_columns=("height", "tot_dens", "light"))
        df = simulate_census([SpeciesSpec("A", n=20)], data_config=cfg)
        assert "light" in df.columns


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_observations(str(tmp_path / "absent.csv"))
