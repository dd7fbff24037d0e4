"""Penalized complementary log-log hazard GAM.

Binary death indicators over census intervals of varying length are
modelled as

    P(death) = 1 - exp(-exp(X beta + log(interval))),

i.e. a binomial GLM with complementary log-log link and log-exposure
offset, where X is the basis of a ModelDesign. Coefficients are estimated
by penalized iteratively reweighted least squares (P-IRLS); one smoothing
parameter per penalized term is chosen by minimising the UBRE score
(binomial scale is known) with bounded Nelder-Mead over log lambda.

The Bayesian posterior covariance (X'WX + S)^-1 is reported as the
coefficient covariance, as is usual for penalized regression splines.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional
import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy.optimize import minimize

from cndd_framework.config import GamHyperparameters
from cndd_framework.terms import ModelDesign

# Working weights and deviance are evaluated on mu clipped to this margin
MU_EPS = 1e-10
# Objective value returned for smoothing parameters whose P-IRLS breaks down
_FAILED_SCORE = 1e10


def cloglog_family():
    """Binomial family with complementary log-log link."""
    return sm.families.Binomial(link=sm.families.links.CLogLog())


@dataclass
class PirlsResult:
    beta: np.ndarray
    mu: np.ndarray
    weights: np.ndarray
    deviance: float
    converged: bool
    n_iter: int


def pirls(
    X: np.ndarray,
    y: np.ndarray,
    offset: np.ndarray,
    S: np.ndarray,
    family,
    max_iter: int = 100,
    tol: float = 1e-8,
    beta_start: Optional[np.ndarray] = None,
) -> PirlsResult:
    """Penalized IRLS for a GLM with quadratic penalty beta' S beta.

    Args:
        X: Model matrix, shape (n, p)
        y: Response, shape (n,)
        offset: Offset on the linear-predictor scale, shape (n,)
        S: Penalty matrix, shape (p, p)
        family: statsmodels family instance
        max_iter: Iteration cap
        tol: Relative change in penalized deviance treated as converged
        beta_start: Optional warm start

    Returns:
        PirlsResult at the last iterate

    Raises:
        numpy.linalg.LinAlgError: If the penalized normal equations are singular
    """
    link = family.link
    if beta_start is None:
        mu = family.starting_mu(y)
        eta = link(mu)
        beta = np.zeros(X.shape[1])
        pen_dev_old = np.inf
    else:
        beta = beta_start
        eta = X @ beta + offset
        mu = link.inverse(eta)
        mu_c = np.clip(mu, MU_EPS, 1 - MU_EPS)
        pen_dev_old = family.deviance(y, mu_c) + beta @ S @ beta

    converged = False
    n_iter = 0
    for n_iter in range(1, max_iter + 1):
        mu_c = np.clip(mu, MU_EPS, 1 - MU_EPS)
        z = (eta - offset) + (y - mu_c) * link.deriv(mu_c)
        w = family.weights(mu_c)
        XtW = X.T * w
        beta_new = np.linalg.solve(XtW @ X + S, XtW @ z)

        # Step halving whenever the penalized deviance goes up
        for _ in range(30):
            eta_new = X @ beta_new + offset
            mu_new = link.inverse(eta_new)
            dev = family.deviance(y, np.clip(mu_new, MU_EPS, 1 - MU_EPS))
            pen_dev = dev + beta_new @ S @ beta_new
            if np.isfinite(pen_dev) and (
                not np.isfinite(pen_dev_old) or pen_dev <= pen_dev_old * (1 + 1e-7) + 1e-12
            ):
                break
            beta_new = 0.5 * (beta + beta_new)

        change = abs(pen_dev - pen_dev_old)
        beta, eta, mu = beta_new, eta_new, mu_new
        if np.isfinite(pen_dev_old) and change <= tol * (0.1 + abs(pen_dev)):
            pen_dev_old = pen_dev
            converged = True
            break
        pen_dev_old = pen_dev

    mu_c = np.clip(mu, MU_EPS, 1 - MU_EPS)
    return PirlsResult(
        beta=beta,
        mu=mu,
        weights=family.weights(mu_c),
        deviance=float(family.deviance(y, mu_c)),
        converged=converged,
        n_iter=n_iter,
    )


def _effective_df(XtWX: np.ndarray, A: np.ndarray) -> float:
    return float(np.trace(np.linalg.solve(A, XtWX)))


@dataclass
class GamModel:
    """A fitted hazard GAM for one group.

    Attributes:
        design: Term bases; maps covariate tables to model matrices
        family: statsmodels binomial family with cloglog link
        coefficients: Estimated coefficients, intercept first
        covariance: Posterior covariance of the coefficients, or None when
            the penalized information matrix could not be inverted
        converged: Whether P-IRLS converged at the selected smoothing parameters
        outer_converged: Whether the smoothing-parameter search converged
        deviance: Model deviance
        loglike: Log-likelihood
        edf: Effective degrees of freedom
        aic: -2 loglike + 2 edf
        leverage: Diagonal of the influence (hat) matrix
        fitted_values: Fitted death probabilities over each row's own interval
        lambdas: Selected smoothing parameters, one per penalized term
        n_obs: Number of observations
        n_iter: P-IRLS iterations of the final fit
    """
    design: ModelDesign
    family: object
    coefficients: np.ndarray
    covariance: Optional[np.ndarray]
    converged: bool
    outer_converged: bool
    deviance: float
    loglike: float
    edf: float
    aic: float
    leverage: np.ndarray
    fitted_values: np.ndarray
    lambdas: np.ndarray = field(default_factory=lambda: np.empty(0))
    n_obs: int = 0
    n_iter: int = 0

    @property
    def term_names(self) -> List[str]:
        return self.design.column_names

    @property
    def low_flexibility(self) -> bool:
        return self.design.low_flexibility

    def predict_matrix(self, data: pd.DataFrame) -> np.ndarray:
        """Linear-predictor matrix of a covariate table (no offset)."""
        return self.design.predict_matrix(data)

    def linkinv(self, eta):
        """Inverse link: per-unit-exposure death probability."""
        return self.family.link.inverse(eta)


def fit_gam(
    design: ModelDesign,
    data: pd.DataFrame,
    outcome: str,
    exposure: str,
    hyperparameters: Optional[GamHyperparameters] = None,
) -> GamModel:
    """Fit a penalized cloglog hazard GAM with a log-exposure offset.

    Args:
        design: Bases built on the same rows as data
        data: Observations of one group
        outcome: Column holding the 0/1 death indicator
        exposure: Column holding the interval length
        hyperparameters: Optimizer settings; defaults to GamHyperparameters()

    Returns:
        Fitted GamModel (check .converged before trusting it)

    Raises:
        numpy.linalg.LinAlgError: If no smoothing parameters give a solvable fit
    """
    hp = hyperparameters or GamHyperparameters()
    family = cloglog_family()
    X = design.predict_matrix(data)
    y = data[outcome].to_numpy(dtype=float)
    offset = np.log(data[exposure].to_numpy(dtype=float))
    n = len(y)

    warm = {"beta": None}

    def _ubre(log_lambdas: np.ndarray) -> float:
        S = design.penalty_matrix(np.exp(log_lambdas))
        try:
            res = pirls(X, y, offset, S, family, hp.max_pirls_iter, hp.pirls_tol, warm["beta"])
            XtWX = (X.T * res.weights) @ X
            edf = _effective_df(XtWX, XtWX + S)
        except np.linalg.LinAlgError:
            return _FAILED_SCORE
        if not np.isfinite(res.deviance) or not np.isfinite(edf):
            return _FAILED_SCORE
        warm["beta"] = res.beta
        return res.deviance / n + 2.0 * edf / n - 1.0

    outer_converged = True
    log_lambdas = np.full(design.n_penalties, hp.log_lambda_start)
    if design.n_penalties:
        opt = minimize(
            _ubre,
            log_lambdas,
            method="Nelder-Mead",
            bounds=[(hp.log_lambda_min, hp.log_lambda_max)] * design.n_penalties,
            options={"maxiter": hp.max_outer_iter, "xatol": 1e-2, "fatol": 1e-8},
        )
        log_lambdas = np.asarray(opt.x, dtype=float)
        outer_converged = bool(opt.success)

    lambdas = np.exp(log_lambdas)
    S = design.penalty_matrix(lambdas)
    res = pirls(X, y, offset, S, family, hp.max_pirls_iter, hp.pirls_tol)

    XtWX = (X.T * res.weights) @ X
    A = XtWX + S
    try:
        covariance = np.linalg.inv(A)
        covariance = 0.5 * (covariance + covariance.T)
        if not np.all(np.isfinite(covariance)):
            covariance = None
    except np.linalg.LinAlgError:
        covariance = None

    A_inv = covariance if covariance is not None else np.linalg.pinv(A)
    edf = float(np.trace(A_inv @ XtWX))
    leverage = res.weights * np.einsum("ij,jk,ik->i", X, A_inv, X)

    mu_c = np.clip(res.mu, MU_EPS, 1 - MU_EPS)
    loglike = float(family.loglike(y, mu_c))

    return GamModel(
        design=design,
        family=family,
        coefficients=res.beta,
        covariance=covariance,
        converged=res.converged,
        outer_converged=outer_converged,
        deviance=res.deviance,
        loglike=loglike,
        edf=edf,
        aic=-2.0 * loglike + 2.0 * edf,
        leverage=leverage,
        fitted_values=res.mu,
        lambdas=lambdas,
        n_obs=n,
        n_iter=res.n_iter,
    )
