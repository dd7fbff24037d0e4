"""Unit tests for cndd_framework.pipeline orchestration helpers."""
import logging
import time
import warnings
import pytest

from cndd_framework.config import CnddFrameworkConfig, ExecutionConfig, ExecutionMode
from cndd_framework.fitting import FitFailure
from cndd_framework.marginal import Derivative, ExplicitPair
from cndd_framework.pipeline import estimate_all_effects, fit_all_groups, resolve_scenarios
from cndd_framework.qualification import qualify_groups


def _warning_fit(observations, group, config, reduced=False, sufficiency=None):
    """Stand-in fitter that emits a numerical warning and fails."""
    time.sleep(0.01)
    warnings.warn(f"overflow encountered in exp ({group})", RuntimeWarning)
    return FitFailure(group=group, reduced=reduced, reason="stub")


class TestResolveScenarios:
    """Tests for per-group scenario resolution."""

    def test_iqr_uses_group_values(self):
        scenarios = resolve_scenarios(
            [{"kind": "derivative", "name": "slope"}, {"kind": "iqr", "name": "iqr"}],
            [0.0, 1.0, 2.0, 3.0, 4.0],
        )
        assert isinstance(scenarios[0], Derivative)
        assert isinstance(scenarios[1], ExplicitPair)
        assert (scenarios[1].baseline, scenarios[1].perturbed) == (1.0, 3.0)


class TestEstimateAllEffects:
    """Tests for the effect-estimation stage."""

    def test_duration_reaches_performance_log(self, caplog):
        with caplog.at_level(logging.INFO, logger="cndd_framework.pipeline"):
            estimates = estimate_all_effects([], {}, CnddFrameworkConfig())
        assert estimates == []
        assert "Completed: estimate_all_effects" in caplog.text
        record = [r for r in caplog.records if "Completed: estimate_all_effects" in r.getMessage()][0]
        assert getattr(record, "is_performance", False)


class TestFitAllGroupsWarnings:
    """Warning capture around the group-fitting loop."""

    @pytest.mark.parametrize("execution", [
        ExecutionConfig(),
        ExecutionConfig(mode=ExecutionMode.MULTIPROCESSING, n_jobs=4, backend="threading"),
    ])
    def test_hook_restored_and_warnings_logged(self, census_data, monkeypatch, caplog, execution):
        monkeypatch.setattr("cndd_framework.pipeline.fit_group_model", _warning_fit)
        config = CnddFrameworkConfig(execution=execution)
        qualification = qualify_groups(census_data, config.data, config.analysis)

        with warnings.catch_warnings():
            warnings.simplefilter("always")
            original = warnings.showwarning
            with caplog.at_level(logging.WARNING, logger="cndd_framework.pipeline"):
                gated = fit_all_groups(qualification, config)
            assert warnings.showwarning is original

        assert len(gated) == len(qualification.groups)
        assert not any(g.accepted for g in gated)
        logged = [r.getMessage() for r in caplog.records if "[NUMERICAL]" in r.getMessage()]
        assert len(logged) == 2 * len(qualification.groups)
