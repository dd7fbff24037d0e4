"""Acceptance gate for fitted group models.

Every fit attempt walks the same state machine:

    UNFIT -> FIT_ATTEMPTED -> FIT_FAILED
                           -> CONVERGENCE_CHECK -> NOT_CONVERGED
                                                -> SEPARATION_CHECK -> SEPARATION_LIKELY
                                                                    -> COVARIANCE_CHECK -> COVARIANCE_MISSING
                                                                                        -> ACCEPTED

Rejections are terminal for the model but never for the run: the decision
is reported and the group is left out of the result tables.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple
import numpy as np

from cndd_framework.config import AnalysisConfig
from cndd_framework.errors import (
    GroupError,
    FitFailureError,
    NonConvergenceError,
    SeparationLikelyError,
    MissingCovarianceError,
)
from cndd_framework.fitting import FitOutcome, FitFailure, GroupFit

logger = logging.getLogger("cndd_framework.acceptance")

MACHINE_EPS = np.finfo(float).eps


class AcceptanceState(str, Enum):
    UNFIT = "unfit"
    FIT_ATTEMPTED = "fit_attempted"
    FIT_FAILED = "fit_failed"
    CONVERGENCE_CHECK = "convergence_check"
    NOT_CONVERGED = "not_converged"
    SEPARATION_CHECK = "separation_check"
    SEPARATION_LIKELY = "separation_likely"
    COVARIANCE_CHECK = "covariance_check"
    COVARIANCE_MISSING = "covariance_missing"
    ACCEPTED = "accepted"


_REJECTION_ERRORS = {
    AcceptanceState.FIT_FAILED: FitFailureError,
    AcceptanceState.NOT_CONVERGED: NonConvergenceError,
    AcceptanceState.SEPARATION_LIKELY: SeparationLikelyError,
    AcceptanceState.COVARIANCE_MISSING: MissingCovarianceError,
}


@dataclass(frozen=True)
class AcceptanceDecision:
    """Terminal state of one model in the acceptance gate.

    Attributes:
        group: Group label
        model_kind: "full" or "reduced"
        state: Terminal state
        reason: Why the model stopped there ("" when accepted)
        path: Every state visited, in order
    """
    group: str
    model_kind: str
    state: AcceptanceState
    reason: str
    path: Tuple[AcceptanceState, ...]

    @property
    def accepted(self) -> bool:
        return self.state == AcceptanceState.ACCEPTED

    def as_error(self) -> Optional[GroupError]:
        """The taxonomy exception matching a rejection, None when accepted."""
        error_cls = _REJECTION_ERRORS.get(self.state)
        if error_cls is None:
            return None
        return error_cls(self.group, self.reason)

    def to_record(self) -> dict:
        return {
            "group": self.group,
            "model": self.model_kind,
            "state": self.state.value,
            "reason": self.reason,
            "path": " > ".join(s.value for s in self.path),
        }


def separation_likely(
    fitted_values: np.ndarray,
    leverage: np.ndarray,
    eps_multiplier: float = 10.0,
    influence_fraction: float = 0.1,
) -> bool:
    """Whether saturated predictions occur among the most influential rows.

    Rows with fitted probability above 1 - eps_multiplier * eps are flagged.
    Separation counts as likely only if a flagged row is among the
    round(influence_fraction * n) rows of highest leverage; saturation
    confined to low-influence rows is tolerated.
    """
    fitted_values = np.asarray(fitted_values, dtype=float)
    flagged = fitted_values > 1.0 - eps_multiplier * MACHINE_EPS
    n_top = int(round(influence_fraction * len(fitted_values)))
    if n_top == 0 or not flagged.any():
        return False
    top = np.argsort(-np.asarray(leverage, dtype=float), kind="stable")[:n_top]
    return bool(flagged[top].any())


def evaluate_fit(
    outcome: FitOutcome,
    analysis_config: Optional[AnalysisConfig] = None,
) -> AcceptanceDecision:
    """Run a fit outcome through the acceptance state machine.

    Args:
        outcome: GroupFit or FitFailure from fit_group_model
        analysis_config: Separation thresholds

    Returns:
        AcceptanceDecision holding the terminal state and the visited path
    """
    cfg = analysis_config or AnalysisConfig()
    path = [AcceptanceState.UNFIT, AcceptanceState.FIT_ATTEMPTED]

    def _stop(state: AcceptanceState, reason: str = "") -> AcceptanceDecision:
        path.append(state)
        decision = AcceptanceDecision(
            group=outcome.group,
            model_kind=outcome.model_kind,
            state=state,
            reason=reason,
            path=tuple(path),
        )
        if decision.accepted:
            logger.debug(f"[{outcome.group}] {outcome.model_kind} model accepted")
        else:
            logger.warning(f"[{outcome.group}] {outcome.model_kind} model rejected: {state.value} ({reason})")
        return decision

    if isinstance(outcome, FitFailure) or not isinstance(outcome, GroupFit) or outcome.model is None:
        reason = outcome.reason if isinstance(outcome, FitFailure) else "fit returned no model"
        return _stop(AcceptanceState.FIT_FAILED, reason)

    model = outcome.model
    path.append(AcceptanceState.CONVERGENCE_CHECK)
    if not model.converged:
        return _stop(AcceptanceState.NOT_CONVERGED, f"P-IRLS did not converge in {model.n_iter} iterations")

    path.append(AcceptanceState.SEPARATION_CHECK)
    if separation_likely(
        model.fitted_values,
        model.leverage,
        cfg.separation_eps_multiplier,
        cfg.influence_fraction,
    ):
        return _stop(
            AcceptanceState.SEPARATION_LIKELY,
            "saturated fitted probabilities among the most influential observations",
        )

    path.append(AcceptanceState.COVARIANCE_CHECK)
    if model.covariance is None:
        return _stop(AcceptanceState.COVARIANCE_MISSING, "coefficient covariance matrix unavailable")

    return _stop(AcceptanceState.ACCEPTED)


@dataclass
class GatedGroup:
    """Full and reduced fits of one group with their gate decisions."""
    group: str
    full: FitOutcome
    reduced: FitOutcome
    full_decision: AcceptanceDecision
    reduced_decision: AcceptanceDecision
    pooled: bool = False

    @property
    def accepted(self) -> bool:
        """A group proceeds to effect estimation when its full model passes."""
        return self.full_decision.accepted

    @property
    def decisions(self) -> Tuple[AcceptanceDecision, AcceptanceDecision]:
        return self.full_decision, self.reduced_decision
