"""Smooth-term descriptors and the design matrices they render into.

A hazard model is described by a typed list of SmoothTerm descriptors
(covariate, kind, basis size). ModelDesign turns that list into a fitted
basis on one group's data and can afterwards map any covariate table with
the same columns onto the linear-predictor matrix of the model, which is
what marginal effects are computed from.

Term kinds:
    smooth         penalized cubic regression spline (B-spline basis with a
                   second-order difference penalty, centered to sum to zero)
    linear         single centered column, unpenalized
    random_effect  one indicator per level with an identity (ridge) penalty
"""
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import List, Tuple, Optional
import numpy as np
import pandas as pd
from scipy.interpolate import BSpline

from cndd_framework.config import DataConfig


class TermKind(str, Enum):
    SMOOTH = "smooth"
    LINEAR = "linear"
    RANDOM_EFFECT = "random_effect"


@dataclass(frozen=True)
class SmoothTerm:
    """One additive term of the hazard model.

    Attributes:
        covariate: Column the term is built from
        kind: How the column enters the model
        k: Basis size after capping (1 for linear terms, number of levels
            for random effects)
    """
    covariate: str
    kind: TermKind
    k: int

    @property
    def label(self) -> str:
        if self.kind == TermKind.SMOOTH:
            return f"s({self.covariate}, k={self.k})"
        if self.kind == TermKind.RANDOM_EFFECT:
            return f"s({self.covariate}, bs='re')"
        return self.covariate


def cap_basis_size(n_distinct: int, k_default: int) -> int:
    """Basis size of a smooth term: k_default capped at n_distinct - 2."""
    return min(k_default, n_distinct - 2)


def census_is_informative(census: pd.Series) -> bool:
    """A census random effect is only useful when the group spans several censuses."""
    return census.nunique() > 1


def build_terms(
    data: pd.DataFrame,
    data_config: DataConfig,
    k_default: int = 10,
    reduced: bool = False,
) -> Tuple[List[SmoothTerm], bool]:
    """Compose the term list for one group's hazard model.

    Each control covariate and (unless reduced) the hazard covariate gets a
    smooth term whose basis size is capped by its number of distinct values.
    Capped sizes of 2 or less render as a linear term; sizes below 2 also
    mark the model as low-flexibility, and constant columns are left out.
    The census random effect is added only
    when the group spans more than one census.

    Args:
        data: Observations of one group
        data_config: Column layout
        k_default: Requested basis size of every smooth
        reduced: Omit the hazard covariate (null model for pseudo-R2)

    Returns:
        (terms, low_flexibility)

    Example:
        >>> terms, low_flex = build_terms(rows, DataConfig(), k_default=10)
        >>> [t.label for t in terms]
        ['s(height, k=10)', 's(tot_dens, k=10)', 's(con_dens, k=8)', "s(census, bs='re')"]
    """
    covariates = list(data_config.control_columns)
    if not reduced:
        covariates.append(data_config.hazard_column)

    terms = []
    low_flexibility = False
    for col in covariates:
        n_distinct = data[col].nunique()
        k = cap_basis_size(n_distinct, k_default)
        if k < 2:
            low_flexibility = True
        if n_distinct < 2:
            # A constant column is not identifiable next to the intercept
            continue
        if k >= 3:
            terms.append(SmoothTerm(col, TermKind.SMOOTH, k))
        else:
            terms.append(SmoothTerm(col, TermKind.LINEAR, 1))

    census = data[data_config.census_column]
    if census_is_informative(census):
        terms.append(SmoothTerm(data_config.census_column, TermKind.RANDOM_EFFECT, census.nunique()))

    return terms, low_flexibility


class SplineBasis:
    """Centered cubic B-spline basis with a difference penalty.

    Knots are equally spaced over the training range. Values outside that
    range are extrapolated with the boundary polynomial pieces.
    """

    def __init__(self, x: np.ndarray, k: int):
        x = np.asarray(x, dtype=float)
        lo, hi = float(x.min()), float(x.max())
        self.k = k
        self.degree = min(3, k - 1)
        order = self.degree + 1
        interior = np.linspace(lo, hi, k - self.degree + 1)[1:-1]
        self.knots = np.concatenate([np.repeat(lo, order), interior, np.repeat(hi, order)])

        raw = self._raw(x)
        # Sum-to-zero constraint over the training rows keeps the term
        # identifiable next to the intercept
        constraint = raw.sum(axis=0)[:, None]
        q, _ = np.linalg.qr(constraint, mode="complete")
        self.null_space = q[:, 1:]

        diff = np.diff(np.eye(k), n=2, axis=0)
        self.penalty = self.null_space.T @ (diff.T @ diff) @ self.null_space

    def _raw(self, x: np.ndarray) -> np.ndarray:
        spline = BSpline(self.knots, np.eye(self.k), self.degree, extrapolate=True)
        return spline(np.asarray(x, dtype=float))

    def transform(self, x) -> np.ndarray:
        return self._raw(x) @ self.null_space

    @property
    def n_columns(self) -> int:
        return self.k - 1


class LinearBasis:
    """Single centered column, unpenalized."""

    penalty = None

    def __init__(self, x: np.ndarray):
        self.center = float(np.mean(x))

    def transform(self, x) -> np.ndarray:
        return (np.asarray(x, dtype=float) - self.center)[:, None]

    @property
    def n_columns(self) -> int:
        return 1


class RandomEffectBasis:
    """Indicator columns with an identity penalty (Gaussian random effect).

    Levels unseen at fit time map to an all-zero row, i.e. the population
    level prediction.
    """

    def __init__(self, values: pd.Series):
        self.levels = sorted(pd.Series(values).astype(str).unique())
        self.penalty = np.eye(len(self.levels))

    def transform(self, values) -> np.ndarray:
        codes = pd.Categorical(pd.Series(values).astype(str), categories=self.levels)
        out = np.zeros((len(codes), len(self.levels)))
        idx = np.asarray(codes.codes)
        seen = idx >= 0
        out[np.flatnonzero(seen), idx[seen]] = 1.0
        return out

    @property
    def n_columns(self) -> int:
        return len(self.levels)


class ModelDesign:
    """Fitted bases for a list of terms plus an unpenalized intercept.

    Attributes:
        terms: Term descriptors in column order
        column_names: Name of every coefficient, intercept first
        penalties: (column slice, scaled penalty matrix) per penalized term
        low_flexibility: Whether some term was forced linear below k = 2
    """

    def __init__(self, terms: List[SmoothTerm], data: pd.DataFrame, low_flexibility: bool = False):
        self.terms = list(terms)
        self.low_flexibility = low_flexibility
        self.bases = []
        self.column_names = ["(Intercept)"]
        self.penalties: List[Tuple[slice, np.ndarray]] = []

        start = 1
        for term in self.terms:
            values = data[term.covariate]
            if term.kind == TermKind.SMOOTH:
                basis = SplineBasis(values.to_numpy(dtype=float), term.k)
                names = [f"s({term.covariate}).{j}" for j in range(1, basis.n_columns + 1)]
            elif term.kind == TermKind.RANDOM_EFFECT:
                basis = RandomEffectBasis(values)
                names = [f"s({term.covariate}).{lvl}" for lvl in basis.levels]
            else:
                basis = LinearBasis(values.to_numpy(dtype=float))
                names = [term.covariate]

            block = slice(start, start + basis.n_columns)
            if basis.penalty is not None:
                X_block = basis.transform(values)
                self.penalties.append((block, self._scale_penalty(X_block, basis.penalty)))
            self.bases.append(basis)
            self.column_names.extend(names)
            start = block.stop

    @staticmethod
    def _scale_penalty(X_block: np.ndarray, S: np.ndarray) -> np.ndarray:
        # Put every penalty on the scale of its block of X'X so one set of
        # lambda bounds suits all terms
        x_norm = np.linalg.norm(X_block, ord=np.inf) ** 2
        s_norm = np.linalg.norm(S, ord=1)
        if s_norm == 0:
            return S
        return S * (x_norm / s_norm)

    @property
    def n_coefficients(self) -> int:
        return len(self.column_names)

    @property
    def n_penalties(self) -> int:
        return len(self.penalties)

    def predict_matrix(self, data: pd.DataFrame) -> np.ndarray:
        """Linear-predictor matrix for a covariate table (offset excluded).

        Args:
            data: Table holding every covariate used by the terms

        Returns:
            Array of shape (len(data), n_coefficients)
        """
        blocks = [np.ones((len(data), 1))]
        for term, basis in zip(self.terms, self.bases):
            blocks.append(basis.transform(data[term.covariate]))
        return np.hstack(blocks)

    def penalty_matrix(self, lambdas: Optional[np.ndarray] = None) -> np.ndarray:
        """Total penalty sum_j lambda_j S_j embedded in coefficient space."""
        p = self.n_coefficients
        S = np.zeros((p, p))
        if lambdas is None:
            lambdas = np.ones(self.n_penalties)
        for lam, (block, S_j) in zip(lambdas, self.penalties):
            S[block, block] += lam * S_j
        return S
