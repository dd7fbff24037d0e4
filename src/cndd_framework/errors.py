"""Exception taxonomy for per-group and run-level failures.

Per-group failures (fit errors, non-convergence, separation, missing
covariance, insufficient data) are recoverable by excluding the group:
the pipeline carries them as structured values and logs them. Only
NoAcceptedGroupsError aborts a run.
"""
from __future__ import annotations


class CnddError(Exception):
    """Base class for all errors raised by cndd_framework."""


class GroupError(CnddError):
    """A failure attributable to a single group.

    Attributes:
        group: Group label the failure belongs to
        reason: Human-readable description of the failure
    """

    def __init__(self, group: str, reason: str):
        self.group = group
        self.reason = reason
        super().__init__(f"[{group}] {reason}")


class FitFailureError(GroupError):
    """The model could not be fitted or returned a malformed object."""


class NonConvergenceError(GroupError):
    """Penalized IRLS did not converge."""


class SeparationLikelyError(GroupError):
    """Saturated predictions among the most influential observations."""


class MissingCovarianceError(GroupError):
    """The model exposes no usable coefficient covariance matrix."""


class InsufficientDataError(GroupError):
    """A group (or the design built from it) cannot support the model."""


class NoAcceptedGroupsError(CnddError):
    """Raised when no group, pooled group included, yields an accepted model."""
