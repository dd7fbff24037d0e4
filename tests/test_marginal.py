"""Unit tests for cndd_framework.marginal.

Stub models with a known link make every expected value computable by
hand, independent of the GAM machinery.
"""
import pytest
import numpy as np
import pandas as pd

from cndd_framework.errors import MissingCovarianceError
from cndd_framework.marginal import (
    AdditiveShift,
    Derivative,
    ExplicitPair,
    build_scenario_data,
    estimate_marginal_effect,
    invasion_scenario,
    iqr_scenario,
    mean_marginal_effect,
    scenario_from_dict,
    setstep,
)


class LinearStubModel:
    """Model with eta = b0 + b1 * con_dens and a configurable inverse link."""

    def __init__(self, coefficients, covariance=None, link="cloglog"):
        self.coefficients = np.asarray(coefficients, dtype=float)
        self.covariance = covariance
        self.link = link

    def predict_matrix(self, data):
        x = data["con_dens"].to_numpy(dtype=float)
        return np.column_stack([np.ones(len(x)), x])

    def linkinv(self, eta):
        if self.link == "identity":
            return eta
        return 1.0 - np.exp(-np.exp(eta))


@pytest.fixture
def five_rows():
    return pd.DataFrame({
        "con_dens": [0.0, 1.0, 2.0, 4.0, 7.0],
        "height": [10.0, 20.0, 15.0, 30.0, 12.0],
    })


class TestSetstep:
    """Tests for the finite-difference step."""

    def test_positive_for_all_magnitudes(self):
        x = np.array([-1e6, -3.0, -1e-12, 0.0, 1e-12, 0.5, 2.0, 1e8])
        assert np.all(setstep(x) > 0)

    def test_floor_near_zero(self):
        assert setstep(0.0) == pytest.approx(np.sqrt(np.finfo(float).eps))

    def test_scales_with_magnitude(self):
        h = setstep(1e6)
        assert h == pytest.approx(1e6 * np.sqrt(np.finfo(float).eps), rel=1e-3)

    def test_scalar_returns_float(self):
        assert isinstance(setstep(3.0), float)


class TestScenarios:
    """Tests for scenario construction."""

    def test_invasion_is_zero_to_delta(self):
        s = invasion_scenario(2.0)
        assert (s.baseline, s.perturbed) == (0.0, 2.0)

    def test_iqr_uses_quartiles(self):
        s = iqr_scenario([0, 1, 2, 3, 4])
        assert (s.baseline, s.perturbed) == (1.0, 3.0)

    def test_from_dict_kinds(self):
        assert isinstance(scenario_from_dict({"kind": "derivative"}), Derivative)
        shift = scenario_from_dict({"kind": "additive_shift", "delta": 2.5, "name": "plus"})
        assert shift.delta == 2.5 and shift.name == "plus"
        pair = scenario_from_dict({"kind": "explicit_pair", "baseline": 1, "perturbed": 4})
        assert (pair.baseline, pair.perturbed) == (1.0, 4.0)
        iqr = scenario_from_dict({"kind": "iqr"}, values=[0, 1, 2, 3, 4])
        assert iqr.name == "iqr"

    def test_from_dict_rejects_unknown_kind(self):
        with pytest.raises(ValueError, match="Unknown scenario kind"):
            scenario_from_dict({"kind": "logistic"})

    def test_from_dict_iqr_needs_values(self):
        with pytest.raises(ValueError):
            scenario_from_dict({"kind": "iqr"})

    def test_from_dict_pair_needs_both_values(self):
        with pytest.raises(ValueError):
            scenario_from_dict({"kind": "explicit_pair", "baseline": 0})

    def test_build_scenario_data_leaves_input_untouched(self, five_rows):
        original = five_rows.copy()
        build_scenario_data(five_rows, "con_dens", AdditiveShift(1.0))
        build_scenario_data(five_rows, "con_dens", Derivative())
        pd.testing.assert_frame_equal(five_rows, original)

    @pytest.mark.parametrize("scenario", [
        Derivative(at={"con_dens": 2.0}),
        AdditiveShift(1.0, at={"con_dens": 2.0}),
    ])
    def test_pinning_hazard_is_rejected(self, five_rows, scenario):
        with pytest.raises(ValueError, match="pins the hazard covariate"):
            build_scenario_data(five_rows, "con_dens", scenario)

    def test_estimate_rejects_pinned_hazard(self, five_rows):
        model = LinearStubModel([-1.0, 0.1], covariance=np.eye(2) * 1e-3)
        with pytest.raises(ValueError):
            estimate_marginal_effect(model, five_rows, "con_dens", Derivative(at={"con_dens": 2.0}), rng=0)

    def test_derivative_is_symmetric(self, five_rows):
        base, pert = build_scenario_data(five_rows, "con_dens", Derivative())
        x = five_rows["con_dens"].to_numpy()
        np.testing.assert_allclose(pert["con_dens"] - x, x - base["con_dens"])
        assert np.all(pert["con_dens"].to_numpy() > base["con_dens"].to_numpy())

    def test_explicit_pair_sets_every_row(self, five_rows):
        base, pert = build_scenario_data(five_rows, "con_dens", ExplicitPair(0.0, 3.0))
        assert (base["con_dens"] == 0.0).all()
        assert (pert["con_dens"] == 3.0).all()

    def test_at_pins_other_covariates(self, five_rows):
        scenario = AdditiveShift(1.0, at={"height": 25.0})
        base, pert = build_scenario_data(five_rows, "con_dens", scenario)
        assert (base["height"] == 25.0).all() and (pert["height"] == 25.0).all()


class TestMeanMarginalEffect:
    """Tests for the per-coefficient-vector mean effect."""

    def test_relative_matches_direct_computation_exactly(self, five_rows):
        model = LinearStubModel([-1.5, 0.2])
        base, pert = build_scenario_data(five_rows, "con_dens", AdditiveShift(1.0))
        X0 = model.predict_matrix(base)
        X1 = model.predict_matrix(pert)
        beta = model.coefficients

        p0 = 1.0 - (1.0 - model.linkinv(X0 @ beta)) ** 1.0
        p1 = 1.0 - (1.0 - model.linkinv(X1 @ beta)) ** 1.0
        expected = np.mean((p1 - p0) / p0)

        result = mean_marginal_effect(model, X0, X1, beta, offset=1.0, relative=True)
        assert result == expected

    def test_draw_matrix_gives_one_mean_per_draw(self, five_rows):
        model = LinearStubModel([-1.5, 0.2])
        X = model.predict_matrix(five_rows)
        draws = np.array([[-1.5, -1.4, -1.6], [0.2, 0.1, 0.3]])
        means = mean_marginal_effect(model, X, X + np.array([0.0, 1.0]), draws)
        assert means.shape == (3,)
        for j in range(3):
            single = mean_marginal_effect(model, X, X + np.array([0.0, 1.0]), draws[:, j])
            assert means[j] == pytest.approx(single)


class TestEstimateMarginalEffect:
    """Tests for AME / rAME with simulation-based uncertainty."""

    def test_derivative_recovers_linear_slope(self, five_rows):
        model = LinearStubModel([0.1, 0.03], covariance=np.eye(2) * 1e-6, link="identity")
        est = estimate_marginal_effect(model, five_rows, "con_dens", Derivative(), iterations=50, rng=1)
        assert est.estimate == pytest.approx(0.03, rel=1e-5)

    def test_additive_shift_closed_form(self, five_rows):
        model = LinearStubModel([0.1, 0.03], covariance=np.eye(2) * 1e-6, link="identity")
        est = estimate_marginal_effect(model, five_rows, "con_dens", AdditiveShift(2.0), iterations=50, rng=1)
        assert est.estimate == pytest.approx(0.06, rel=1e-9)

    def test_offset_changes_probability_scale(self, five_rows):
        model = LinearStubModel([-2.0, 0.1], covariance=np.eye(2) * 1e-4)
        one = estimate_marginal_effect(model, five_rows, "con_dens", AdditiveShift(1.0), offset=1.0, rng=3)
        five = estimate_marginal_effect(model, five_rows, "con_dens", AdditiveShift(1.0), offset=5.0, rng=3)
        assert five.estimate > one.estimate > 0

    def test_missing_covariance_raises(self, five_rows):
        model = LinearStubModel([-1.0, 0.1], covariance=None)
        with pytest.raises(MissingCovarianceError):
            estimate_marginal_effect(model, five_rows, "con_dens", Derivative(), group="Piper")

    def test_same_seed_reproduces_samples(self, five_rows):
        model = LinearStubModel([-1.0, 0.1], covariance=np.array([[0.01, 0.0], [0.0, 0.001]]))
        a = estimate_marginal_effect(model, five_rows, "con_dens", Derivative(), iterations=100,
                                     rng=np.random.default_rng(11), keep_samples=True)
        b = estimate_marginal_effect(model, five_rows, "con_dens", Derivative(), iterations=100,
                                     rng=np.random.default_rng(11), keep_samples=True)
        np.testing.assert_array_equal(a.samples, b.samples)
        assert a.std_error == b.std_error

    def test_uncertainty_summary(self, five_rows):
        model = LinearStubModel([-1.0, 0.1], covariance=np.array([[0.01, 0.0], [0.0, 0.001]]))
        est = estimate_marginal_effect(model, five_rows, "con_dens", AdditiveShift(1.0),
                                       iterations=400, rng=5, keep_samples=True, group="Faramea")
        assert est.group == "Faramea"
        assert est.n_iterations == 400
        assert len(est.samples) == 400
        assert est.std_error > 0
        assert est.lower < est.estimate < est.upper
        assert est.std_error == pytest.approx(np.std(est.samples, ddof=1))

    def test_samples_dropped_unless_kept(self, five_rows):
        model = LinearStubModel([-1.0, 0.1], covariance=np.eye(2) * 1e-3)
        est = estimate_marginal_effect(model, five_rows, "con_dens", Derivative(), iterations=20, rng=0)
        assert est.samples is None
        assert "samples" not in est.to_record()


class TestClosedForms:
    """Marginal effects against closed-form cloglog expressions."""

    @pytest.mark.parametrize("offset", [0.5, 1.0, 2.5, 5.0])
    def test_derivative_matches_analytic_slope(self, five_rows, offset):
        b0, b1 = -1.2, 0.25
        model = LinearStubModel([b0, b1], covariance=np.eye(2) * 1e-6)
        est = estimate_marginal_effect(model, five_rows, "con_dens", Derivative(), offset=offset,
                                       iterations=20, rng=0)
        eta = b0 + b1 * five_rows["con_dens"].to_numpy()
        # p = 1 - exp(-offset * exp(eta))
        slope = b1 * offset * np.exp(eta) * np.exp(-offset * np.exp(eta))
        assert est.estimate == pytest.approx(slope.mean(), rel=1e-5)

    def test_additive_shift_matches_link(self, five_rows):
        b0, b1 = -1.2, 0.25
        model = LinearStubModel([b0, b1], covariance=np.eye(2) * 1e-6)
        est = estimate_marginal_effect(model, five_rows, "con_dens", AdditiveShift(1.0),
                                       iterations=20, rng=0)
        x = five_rows["con_dens"].to_numpy()
        p = lambda v: 1.0 - np.exp(-np.exp(b0 + b1 * v))
        assert est.estimate == pytest.approx(np.mean(p(x + 1.0) - p(x)), rel=1e-10)
