"""Average marginal effects (AME) and relative AME of the hazard covariate.

For a fitted hazard model and a scenario describing a counterfactual
change of the hazard covariate, the AME is the mean over observations of

    p(perturbed) - p(baseline),    p = 1 - (1 - linkinv(X beta)) ** offset

where offset is the exposure length at which probabilities are expressed.
For the derivative scenario the per-row difference is divided by the
per-row covariate change (central finite difference), giving a slope. The
relative AME (rAME) further divides each row by p(baseline).

Uncertainty is propagated by drawing coefficient vectors from
MVN(beta, V) and recomputing the mean effect per draw; the standard error
is the standard deviation of those means.

Scenarios are typed values, never parsed from text:
    Derivative()                    slope of p in the hazard covariate
    AdditiveShift(delta)            observed value vs. observed value + delta
    ExplicitPair(baseline, perturbed)
                                    every row set to two literal values, e.g.
                                    invasion (0 vs. delta) or IQR (Q1 vs. Q3)
"""
from __future__ import annotations
from dataclasses import dataclass, field, asdict
from typing import Dict, Optional, Tuple, List, Any, Union, Mapping
import numpy as np
import pandas as pd

from cndd_framework.errors import MissingCovarianceError

MACHINE_EPS = np.finfo(float).eps


def setstep(x):
    """Finite-difference step scaled to the magnitude of x.

    Returns (x + max(|x|, 1) * sqrt(eps)) - x, the representable perturbation
    closest to sqrt(eps) relative to x; the floor of 1 keeps steps from
    vanishing near zero. Works elementwise on arrays.

    Example:
        >>> setstep(0.0) == np.sqrt(np.finfo(float).eps)
        True
    """
    x = np.asarray(x, dtype=float)
    step = (x + np.maximum(np.abs(x), 1.0) * np.sqrt(MACHINE_EPS)) - x
    if step.ndim == 0:
        return float(step)
    return step


# ============================================================================
# Scenarios
# ============================================================================

@dataclass(frozen=True)
class Derivative:
    """Symmetric infinitesimal change (central difference)."""
    name: str = "derivative"
    at: Dict[str, float] = field(default_factory=dict)

    kind = "derivative"

    def perturb(self, values: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        return values - setstep(values), values + setstep(values)


@dataclass(frozen=True)
class AdditiveShift:
    """Observed value as baseline, observed value + delta as perturbed."""
    delta: float = 1.0
    name: str = "additive_shift"
    at: Dict[str, float] = field(default_factory=dict)

    kind = "additive_shift"

    def perturb(self, values: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        return values.copy(), values + self.delta


@dataclass(frozen=True)
class ExplicitPair:
    """Every row set to baseline, then to perturbed."""
    baseline: float = 0.0
    perturbed: float = 1.0
    name: str = "explicit_pair"
    at: Dict[str, float] = field(default_factory=dict)

    kind = "explicit_pair"

    def perturb(self, values: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        return np.full(values.shape, float(self.baseline)), np.full(values.shape, float(self.perturbed))


Scenario = Union[Derivative, AdditiveShift, ExplicitPair]


def invasion_scenario(delta: float = 1.0, name: str = "invasion") -> ExplicitPair:
    """From no conspecific neighbors to delta of them."""
    return ExplicitPair(baseline=0.0, perturbed=delta, name=name)


def iqr_scenario(values, name: str = "iqr") -> ExplicitPair:
    """From the first to the third quartile of the observed covariate."""
    q1, q3 = np.quantile(np.asarray(values, dtype=float), [0.25, 0.75])
    return ExplicitPair(baseline=float(q1), perturbed=float(q3), name=name)


def scenario_from_dict(spec: Mapping[str, Any], values=None) -> Scenario:
    """Build a scenario from a structured specification.

    Recognised kinds: derivative, additive_shift (delta), explicit_pair
    (baseline, perturbed), invasion (delta) and iqr. The iqr kind needs
    the observed covariate values.

    Args:
        spec: Mapping with a "kind" key and kind-specific fields; optional
            "name" and "at"
        values: Observed hazard-covariate values (iqr only)

    Returns:
        Scenario instance

    Raises:
        ValueError: On an unknown kind or a missing required field
    """
    kind = spec.get("kind")
    at = dict(spec.get("at") or {})
    name = spec.get("name", kind)

    if kind == "derivative":
        return Derivative(name=name, at=at)
    if kind == "additive_shift":
        return AdditiveShift(delta=float(spec.get("delta", 1.0)), name=name, at=at)
    if kind == "explicit_pair":
        if "baseline" not in spec or "perturbed" not in spec:
            raise ValueError("explicit_pair scenario needs 'baseline' and 'perturbed'")
        return ExplicitPair(float(spec["baseline"]), float(spec["perturbed"]), name=name, at=at)
    if kind == "invasion":
        pair = invasion_scenario(float(spec.get("delta", 1.0)), name=name)
        return ExplicitPair(pair.baseline, pair.perturbed, name=name, at=at)
    if kind == "iqr":
        if values is None:
            raise ValueError("iqr scenario needs the observed covariate values")
        pair = iqr_scenario(values, name=name)
        return ExplicitPair(pair.baseline, pair.perturbed, name=name, at=at)
    raise ValueError(f"Unknown scenario kind: {kind!r}")


def build_scenario_data(
    data: pd.DataFrame,
    hazard: str,
    scenario: Scenario,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Baseline and perturbed copies of the covariate table.

    The input frame is left untouched. Covariates pinned through
    scenario.at are overwritten in both copies.

    Args:
        data: Observations of one group
        hazard: Hazard-covariate column
        scenario: Counterfactual to build

    Returns:
        (baseline, perturbed)

    Raises:
        ValueError: If scenario.at pins the hazard covariate itself
    """
    if hazard in scenario.at:
        raise ValueError(
            f"Scenario '{scenario.name}' pins the hazard covariate '{hazard}'; "
            f"'at' may only fix other covariates"
        )

    values = data[hazard].to_numpy(dtype=float)
    base_values, pert_values = scenario.perturb(values)

    baseline = data.copy()
    perturbed = data.copy()
    baseline[hazard] = base_values
    perturbed[hazard] = pert_values

    for col, value in scenario.at.items():
        baseline[col] = value
        perturbed[col] = value

    return baseline, perturbed


# ============================================================================
# Estimation
# ============================================================================

@dataclass(frozen=True)
class MarginalEffectEstimate:
    """AME or rAME of one group under one scenario.

    Attributes:
        group: Group label
        scenario: Scenario name
        relative: True for rAME
        estimate: Point estimate at the fitted coefficients
        std_error: Standard deviation of the per-draw estimates
        lower: 2.5% quantile of the per-draw estimates
        upper: 97.5% quantile of the per-draw estimates
        n_iterations: Number of coefficient draws
        samples: Per-draw estimates, if kept
    """
    group: str
    scenario: str
    relative: bool
    estimate: float
    std_error: float
    lower: float
    upper: float
    n_iterations: int
    samples: Optional[np.ndarray] = None

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        record.pop("samples")
        return record


def _interval_probability(model, X: np.ndarray, coefs: np.ndarray, offset: float) -> np.ndarray:
    return 1.0 - (1.0 - model.linkinv(X @ coefs)) ** offset


def mean_marginal_effect(
    model,
    X0: np.ndarray,
    X1: np.ndarray,
    coefs: np.ndarray,
    offset: float = 1.0,
    denominator: Optional[np.ndarray] = None,
    relative: bool = False,
):
    """Mean marginal effect for one coefficient vector or a matrix of draws.

    Args:
        model: Object exposing linkinv()
        X0: Baseline linear-predictor matrix, shape (n, p)
        X1: Perturbed linear-predictor matrix, shape (n, p)
        coefs: Shape (p,) for a single vector or (p, n_draws)
        offset: Exposure length of the probabilities
        denominator: Per-row covariate change (derivative scenario only)
        relative: Divide each row by its baseline probability

    Returns:
        Float for a single vector, array of shape (n_draws,) otherwise
    """
    p0 = _interval_probability(model, X0, coefs, offset)
    p1 = _interval_probability(model, X1, coefs, offset)
    effect = p1 - p0
    if denominator is not None:
        effect = effect / (denominator if effect.ndim == 1 else denominator[:, None])
    if relative:
        effect = effect / p0
    means = effect.mean(axis=0)
    if np.ndim(means) == 0:
        return float(means)
    return means


def estimate_marginal_effect(
    model,
    data: pd.DataFrame,
    hazard: str,
    scenario: Scenario,
    offset: float = 1.0,
    relative: bool = False,
    iterations: int = 500,
    rng: Union[np.random.Generator, int, None] = None,
    keep_samples: bool = False,
    group: str = "",
) -> MarginalEffectEstimate:
    """AME (or rAME) of the hazard covariate with simulation-based uncertainty.

    Args:
        model: Fitted model exposing predict_matrix(), linkinv(),
            coefficients and covariance
        data: Observations the effect is averaged over
        hazard: Hazard-covariate column
        scenario: Counterfactual change of the hazard covariate
        offset: Exposure length at which probabilities are expressed
        relative: Compute rAME instead of AME
        iterations: Number of coefficient draws
        rng: Generator (or seed) for the draws; pass a per-task generator
            when running in parallel
        keep_samples: Attach the per-draw estimates to the result
        group: Group label recorded on the result

    Returns:
        MarginalEffectEstimate

    Raises:
        MissingCovarianceError: If the model has no coefficient covariance

    Example:
        >>> est = estimate_marginal_effect(model, rows, "con_dens", AdditiveShift(1.0),
        ...                                iterations=500, rng=derive_rng(42, "Piper", "plus_one"))
        >>> est.estimate, est.std_error
        (0.0123, 0.0041)
    """
    covariance = getattr(model, "covariance", None)
    if covariance is None:
        raise MissingCovarianceError(group, "model has no coefficient covariance matrix")

    baseline, perturbed = build_scenario_data(data, hazard, scenario)
    X0 = model.predict_matrix(baseline)
    X1 = model.predict_matrix(perturbed)

    denominator = None
    if isinstance(scenario, Derivative):
        denominator = (perturbed[hazard] - baseline[hazard]).to_numpy(dtype=float)

    beta = np.asarray(model.coefficients, dtype=float)
    point = mean_marginal_effect(model, X0, X1, beta, offset, denominator, relative)

    if not isinstance(rng, np.random.Generator):
        rng = np.random.default_rng(rng)
    draws = rng.multivariate_normal(beta, np.asarray(covariance, dtype=float), size=iterations)
    samples = mean_marginal_effect(model, X0, X1, draws.T, offset, denominator, relative)

    lower, upper = np.quantile(samples, [0.025, 0.975])
    return MarginalEffectEstimate(
        group=group,
        scenario=scenario.name,
        relative=relative,
        estimate=point,
        std_error=float(np.std(samples, ddof=1)),
        lower=float(lower),
        upper=float(upper),
        n_iterations=iterations,
        samples=samples if keep_samples else None,
    )
