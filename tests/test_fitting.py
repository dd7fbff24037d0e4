"""Unit tests for cndd_framework.fitting module."""
import pytest
import numpy as np

from cndd_framework.acceptance import evaluate_fit
from cndd_framework.config import CnddFrameworkConfig, DataConfig
from cndd_framework.fitting import FitFailure, GroupFit, fit_group_model
from cndd_framework.qualification import compute_sufficiency
from cndd_framework.terms import TermKind


class TestFitGroupModel:
    """Tests for per-group full and reduced fits."""

    def test_full_fit_is_accepted(self, species_rows, config):
        outcome = fit_group_model(species_rows, "Faramea occidentalis", config)
        assert isinstance(outcome, GroupFit)
        assert outcome.model_kind == "full"
        assert outcome.n_obs == len(species_rows)
        assert outcome.n_events == int(species_rows["status"].sum())
        assert evaluate_fit(outcome, config.analysis).accepted

    def test_reduced_fit_omits_hazard(self, species_rows, config):
        outcome = fit_group_model(species_rows, "Faramea occidentalis", config, reduced=True)
        assert isinstance(outcome, GroupFit)
        assert "con_dens" not in [t.covariate for t in outcome.terms]
        assert not any("con_dens" in name for name in outcome.model.term_names)

    def test_formula_mentions_offset(self, species_rows, config):
        outcome = fit_group_model(species_rows, "Faramea occidentalis", config)
        assert "offset(log(interval))" in outcome.formula
        assert "s(census, bs='re')" in outcome.formula

    def test_formula_follows_configured_columns(self, species_rows):
        config = CnddFrameworkConfig(data=DataConfig(outcome_column="dead", exposure_column="years"))
        rows = species_rows.rename(columns={"status": "dead", "interval": "years"})
        outcome = fit_group_model(rows, "Faramea occidentalis", config)
        assert isinstance(outcome, GroupFit)
        assert outcome.formula.startswith("dead ~ ")
        assert outcome.formula.endswith("offset(log(years))")
        assert "status" not in outcome.formula and "interval" not in outcome.formula

    def test_repeat_fits_are_identical(self, species_rows, config):
        a = fit_group_model(species_rows, "Faramea occidentalis", config)
        b = fit_group_model(species_rows, "Faramea occidentalis", config)
        np.testing.assert_array_equal(a.model.coefficients, b.model.coefficients)
        assert evaluate_fit(a).state == evaluate_fit(b).state

    def test_no_outcome_variation_is_a_failure(self, species_rows, config):
        rows = species_rows.copy()
        rows["status"] = 0
        outcome = fit_group_model(rows, "Faramea occidentalis", config)
        assert isinstance(outcome, FitFailure)
        assert outcome.error_type == "InsufficientDataError"
        assert not evaluate_fit(outcome).accepted

    def test_bad_column_is_a_failure(self, species_rows, config):
        rows = species_rows.drop(columns=["height"])
        outcome = fit_group_model(rows, "Faramea occidentalis", config)
        assert isinstance(outcome, FitFailure)
        assert outcome.error_type == "KeyError"

    def test_low_flexibility_group(self, census_data, config):
        rows = census_data[census_data["species"] == "Ocotea whitei"].reset_index(drop=True)
        record = compute_sufficiency(rows, "Ocotea whitei", config.data)
        outcome = fit_group_model(rows, "Ocotea whitei", config, sufficiency=record)
        assert isinstance(outcome, GroupFit)
        assert outcome.model.low_flexibility
        hazard = [t for t in outcome.terms if t.covariate == "con_dens"][0]
        assert hazard.kind == TermKind.LINEAR
