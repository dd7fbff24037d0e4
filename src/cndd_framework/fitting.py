from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import List, Optional, Union
import pandas as pd

from cndd_framework.config import CnddFrameworkConfig
from cndd_framework.errors import InsufficientDataError
from cndd_framework.gam import GamModel, fit_gam
from cndd_framework.qualification import SufficiencyRecord
from cndd_framework.terms import ModelDesign, SmoothTerm, build_terms

logger = logging.getLogger("cndd_framework.fitting")


@dataclass
class GroupFit:
    """A fitted hazard model for one group.

    Attributes:
        group: Group label
        reduced: True for the model without the hazard term
        model: Fitted GamModel
        terms: Term descriptors the model was built from
        n_obs: Number of observations
        n_events: Number of deaths
        outcome_column: Column holding the 0/1 death indicator
        exposure_column: Column holding the interval length
    """
    group: str
    reduced: bool
    model: GamModel
    terms: List[SmoothTerm]
    n_obs: int
    n_events: int
    outcome_column: str = "status"
    exposure_column: str = "interval"

    @property
    def model_kind(self) -> str:
        return "reduced" if self.reduced else "full"

    @property
    def formula(self) -> str:
        rhs = " + ".join([t.label for t in self.terms] + [f"offset(log({self.exposure_column}))"])
        return f"{self.outcome_column} ~ {rhs}"


@dataclass
class FitFailure:
    """A fit attempt that raised or produced no model.

    Attributes:
        group: Group label
        reduced: True for the model without the hazard term
        reason: Error message
        error_type: Class name of the underlying exception
    """
    group: str
    reduced: bool
    reason: str
    error_type: str = ""

    @property
    def model_kind(self) -> str:
        return "reduced" if self.reduced else "full"


FitOutcome = Union[GroupFit, FitFailure]


def fit_group_model(
    observations: pd.DataFrame,
    group: str,
    config: CnddFrameworkConfig,
    reduced: bool = False,
    sufficiency: Optional[SufficiencyRecord] = None,
) -> FitOutcome:
    """Fit the full or reduced cloglog hazard GAM of one group.

    The full model has smooths of every control covariate and of the hazard
    covariate; the reduced model drops the hazard smooth. A census random
    effect is included when the group spans several censuses, and
    log(exposure) enters as offset. Errors are returned as FitFailure,
    never raised, so one group cannot break a run.

    Args:
        observations: Observations of the group
        group: Group label
        config: Run configuration
        reduced: Fit the model without the hazard term
        sufficiency: Sufficiency record of the group, used for reporting

    Returns:
        GroupFit on success, FitFailure otherwise

    Example:
        >>> outcome = fit_group_model(rows, "Faramea", config)
        >>> outcome.model.converged
        True
    """
    data_cfg = config.data
    kind = "reduced" if reduced else "full"
    outcome = observations[data_cfg.outcome_column]

    if sufficiency is not None and not sufficiency.qualified:
        logger.warning(
            f"[{group}] fitting {kind} model on a group below the sufficiency thresholds "
            f"(n_distinct={sufficiency.n_distinct}, range={sufficiency.covariate_range:.3g})"
        )

    try:
        if outcome.nunique() < 2:
            raise InsufficientDataError(group, "outcome has no variation (all deaths or all survivors)")

        terms, low_flexibility = build_terms(
            observations, data_cfg, config.hyperparameters.k_default, reduced=reduced
        )
        design = ModelDesign(terms, observations, low_flexibility=low_flexibility)
        model = fit_gam(
            design,
            observations,
            outcome=data_cfg.outcome_column,
            exposure=data_cfg.exposure_column,
            hyperparameters=config.hyperparameters,
        )
    except Exception as exc:
        # Any library error becomes a reported failure for this group only
        logger.warning(f"[{group}] {kind} model fit failed: {type(exc).__name__}: {exc}")
        return FitFailure(group=group, reduced=reduced, reason=str(exc), error_type=type(exc).__name__)

    if model is None:
        return FitFailure(group=group, reduced=reduced, reason="fit returned no model")

    if low_flexibility:
        logger.warning(f"[{group}] {kind} model is low-flexibility: a covariate has too few distinct values")
    if not model.outer_converged:
        logger.warning(f"[{group}] smoothing parameter search hit maxiter; using last iterate")

    return GroupFit(
        group=group,
        reduced=reduced,
        model=model,
        terms=terms,
        n_obs=int(len(observations)),
        n_events=int((outcome == 1).sum()),
        outcome_column=data_cfg.outcome_column,
        exposure_column=data_cfg.exposure_column,
    )
