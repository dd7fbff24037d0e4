"""Group-level data-sufficiency screening and pooling.

Each group (species) is summarised by the spread of its hazard covariate.
Groups with too few distinct covariate values or too narrow a range cannot
support a smooth density effect; they are merged once, before any model is
fitted, into a single pooled group. Qualification is never re-evaluated
later in the run.

Functions:
    compute_sufficiency: Sufficiency record of one group
    sufficiency_table: Sufficiency records of every group as a DataFrame
    qualify_groups: Partition observations into modelable groups
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional
import pandas as pd

from cndd_framework.config import DataConfig, AnalysisConfig

logger = logging.getLogger("cndd_framework.qualification")

MODEL_GROUP_COLUMN = "model_group"


@dataclass(frozen=True)
class SufficiencyRecord:
    """Data-sufficiency summary of one group.

    Attributes:
        group: Group label
        n_obs: Number of observations
        n_events: Observations with outcome 1 (died)
        n_survivors: Observations with outcome 0
        n_distinct: Distinct hazard-covariate values
        covariate_min: Smallest hazard-covariate value
        covariate_max: Largest hazard-covariate value
        covariate_range: covariate_max - covariate_min
        qualified: Whether the group may be modelled on its own
    """
    group: str
    n_obs: int
    n_events: int
    n_survivors: int
    n_distinct: int
    covariate_min: float
    covariate_max: float
    covariate_range: float
    qualified: bool


def compute_sufficiency(
    rows: pd.DataFrame,
    group: str,
    data_config: DataConfig,
    min_distinct: int = 4,
    min_range: float = 1.0,
) -> SufficiencyRecord:
    """Summarise one group's hazard covariate and outcomes.

    A group qualifies iff it has at least min_distinct distinct hazard values
    AND their range is at least min_range.

    Args:
        rows: Observations of the group
        group: Group label
        data_config: Column layout
        min_distinct: Minimum number of distinct hazard-covariate values
        min_range: Minimum hazard-covariate range

    Returns:
        SufficiencyRecord
    """
    hazard = rows[data_config.hazard_column]
    outcome = rows[data_config.outcome_column]
    n_distinct = int(hazard.nunique())
    lo, hi = float(hazard.min()), float(hazard.max())
    covariate_range = hi - lo

    return SufficiencyRecord(
        group=str(group),
        n_obs=int(len(rows)),
        n_events=int((outcome == 1).sum()),
        n_survivors=int((outcome == 0).sum()),
        n_distinct=n_distinct,
        covariate_min=lo,
        covariate_max=hi,
        covariate_range=covariate_range,
        qualified=bool(n_distinct >= min_distinct and covariate_range >= min_range),
    )


def sufficiency_table(records: List[SufficiencyRecord]) -> pd.DataFrame:
    """Records as a DataFrame sorted by sample size (largest first)."""
    columns = list(SufficiencyRecord.__dataclass_fields__)
    if not records:
        return pd.DataFrame(columns=columns)
    df = pd.DataFrame([asdict(r) for r in records], columns=columns)
    return df.sort_values(["n_obs", "group"], ascending=[False, True]).reset_index(drop=True)


@dataclass
class QualificationResult:
    """Outcome of the sufficiency screen.

    Attributes:
        groups: Observations per modelable group, standalone groups first
            and the pooled group (if any) last. Every frame carries the
            model_group column; the original group column is untouched.
        records: Sufficiency record of every original group
        pooled_members: Original groups merged into the pooled group
        pooled_label: Label of the pooled group
        pooled_record: Sufficiency record of the pooled group, if formed
    """
    groups: Dict[str, pd.DataFrame]
    records: List[SufficiencyRecord]
    pooled_members: List[str]
    pooled_label: str
    pooled_record: Optional[SufficiencyRecord] = None

    @property
    def standalone_groups(self) -> List[str]:
        return [g for g in self.groups if g != self.pooled_label]

    def table(self) -> pd.DataFrame:
        """Sufficiency table with the assigned model group of every group."""
        df = sufficiency_table(self.records)
        df[MODEL_GROUP_COLUMN] = [
            self.pooled_label if g in self.pooled_members else g for g in df["group"]
        ]
        return df


def qualify_groups(
    observations: pd.DataFrame,
    data_config: DataConfig,
    analysis_config: Optional[AnalysisConfig] = None,
) -> QualificationResult:
    """Partition observations into standalone groups and one pooled group.

    Groups failing either sufficiency threshold are merged into a single
    group labelled analysis_config.pooled_label. The pooled group is kept
    even if it fails the thresholds itself; fitting is still attempted.

    Args:
        observations: Validated observation table
        data_config: Column layout
        analysis_config: Thresholds and pooled label

    Returns:
        QualificationResult

    Raises:
        ValueError: If a real group already uses the pooled label

    Example:
        >>> result = qualify_groups(df, DataConfig())
        >>> list(result.groups)
        ['Faramea occidentalis', 'Hybanthus prunifolius', 'insufficient_data']
    """
    cfg = analysis_config or AnalysisConfig()
    group_col = data_config.group_column
    pooled_label = cfg.pooled_label

    labels = observations[group_col].astype(str)
    if (labels == pooled_label).any():
        raise ValueError(f"Group label '{pooled_label}' is reserved for the pooled group")

    records = []
    groups: Dict[str, pd.DataFrame] = {}
    pooled_parts = []
    pooled_members = []

    for group, rows in observations.groupby(labels, sort=True):
        record = compute_sufficiency(rows, group, data_config, cfg.min_distinct, cfg.min_range)
        records.append(record)
        rows = rows.copy()
        if record.qualified:
            rows[MODEL_GROUP_COLUMN] = group
            groups[group] = rows
        else:
            logger.info(
                f"Group '{group}' pooled into '{pooled_label}' "
                f"(n_distinct={record.n_distinct}, range={record.covariate_range:.3g})"
            )
            rows[MODEL_GROUP_COLUMN] = pooled_label
            pooled_parts.append(rows)
            pooled_members.append(group)

    pooled_record = None
    if pooled_parts:
        pooled = pd.concat(pooled_parts).sort_index()
        groups[pooled_label] = pooled
        pooled_record = compute_sufficiency(
            pooled, pooled_label, data_config, cfg.min_distinct, cfg.min_range
        )
        if not pooled_record.qualified:
            logger.warning(
                f"Pooled group '{pooled_label}' is itself insufficient "
                f"(n_distinct={pooled_record.n_distinct}, range={pooled_record.covariate_range:.3g}); "
                f"fitting will still be attempted"
            )

    logger.info(
        f"Qualification: {len(groups) - (1 if pooled_parts else 0)} standalone groups, "
        f"{len(pooled_members)} pooled into '{pooled_label}'"
    )

    return QualificationResult(
        groups=groups,
        records=records,
        pooled_members=pooled_members,
        pooled_label=pooled_label,
        pooled_record=pooled_record,
    )
