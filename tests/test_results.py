"""Unit tests for cndd_framework.results module."""
import pytest
import numpy as np
import pandas as pd

from cndd_framework.acceptance import GatedGroup, evaluate_fit
from cndd_framework.fitting import FitFailure, fit_group_model
from cndd_framework.marginal import MarginalEffectEstimate
from cndd_framework.results import (
    COEFFICIENT_COLUMNS,
    FIT_SUMMARY_COLUMNS,
    coefficient_table,
    fit_summary_table,
    marginal_effect_tables,
    model_report_table,
    save_result_tables,
)


@pytest.fixture(scope="module")
def gated_group(species_rows):
    from cndd_framework.config import CnddFrameworkConfig
    config = CnddFrameworkConfig()
    full = fit_group_model(species_rows, "Faramea", config)
    reduced = fit_group_model(species_rows, "Faramea", config, reduced=True)
    return GatedGroup(
        group="Faramea",
        full=full,
        reduced=reduced,
        full_decision=evaluate_fit(full),
        reduced_decision=evaluate_fit(reduced),
    )


@pytest.fixture
def rejected_reduced(gated_group):
    failure = FitFailure(group="Faramea", reduced=True, reason="singular")
    return GatedGroup(
        group="Faramea",
        full=gated_group.full,
        reduced=failure,
        full_decision=gated_group.full_decision,
        reduced_decision=evaluate_fit(failure),
    )


def _estimate(group, scenario, relative, samples=None):
    return MarginalEffectEstimate(
        group=group, scenario=scenario, relative=relative, estimate=0.1,
        std_error=0.02, lower=0.06, upper=0.14, n_iterations=3, samples=samples,
    )


class TestCoefficientTable:
    """Tests for the coefficient table."""

    def test_full_and_reduced_rows(self, gated_group):
        table = coefficient_table([gated_group])
        assert list(table.columns) == COEFFICIENT_COLUMNS
        assert set(table["model"]) == {"full", "reduced"}
        n_full = len(gated_group.full.model.coefficients)
        assert (table["model"] == "full").sum() == n_full
        assert (table["std_error"] > 0).all()

    def test_rejected_models_are_left_out(self, rejected_reduced):
        table = coefficient_table([rejected_reduced])
        assert set(table["model"]) == {"full"}


class TestFitSummaryTable:
    """Tests for the fit summary table."""

    def test_pseudo_r2(self, gated_group):
        table = fit_summary_table([gated_group])
        assert list(table.columns) == FIT_SUMMARY_COLUMNS
        row = table.iloc[0]
        expected = 1 - row["deviance"] / row["deviance_reduced"]
        assert row["pseudo_r2"] == pytest.approx(expected)
        assert 0 <= row["pseudo_r2"] < 1
        assert not row["pooled"]
        assert row["formula"] == gated_group.full.formula

    def test_pseudo_r2_missing_without_reduced_model(self, rejected_reduced):
        row = fit_summary_table([rejected_reduced]).iloc[0]
        assert np.isnan(row["deviance_reduced"])
        assert np.isnan(row["pseudo_r2"])

    def test_model_report(self, rejected_reduced):
        report = model_report_table(rejected_reduced.decisions)
        assert list(report["state"]) == ["accepted", "fit_failed"]
        assert report.loc[1, "reason"] == "singular"


class TestMarginalEffectTables:
    """Tests for AME / rAME tables."""

    def test_split_by_relative(self):
        tables = marginal_effect_tables([
            _estimate("A", "slope", False, samples=np.array([0.1, 0.2, 0.3])),
            _estimate("A", "slope", True),
            _estimate("B", "slope", False),
        ])
        assert set(tables) == {"ame", "rame", "ame_samples", "rame_samples"}
        assert len(tables["ame"]) == 2 and len(tables["rame"]) == 1
        samples = tables["ame_samples"]
        assert list(samples.columns) == ["group", "scenario", "iteration", "value"]
        assert list(samples["iteration"]) == [1, 2, 3]
        assert tables["rame_samples"].empty

    def test_save(self, tmp_path):
        tables = {"ame": pd.DataFrame({"group": ["A"], "estimate": [0.1]})}
        paths = save_result_tables(tables, str(tmp_path / "tables"))
        pd.testing.assert_frame_equal(pd.read_csv(paths["ame"]), tables["ame"], check_dtype=False)
