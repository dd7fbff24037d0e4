"""Configuration module for density-dependence analyses.

This module centralizes every tunable of a run:
- ExecutionConfig: sequential vs. joblib-parallel execution over groups
- GamHyperparameters: basis sizes and optimizer bounds for the hazard GAM
- DataConfig: column names of the observation table
- AnalysisConfig: qualification thresholds, scenarios and resampling
- CnddFrameworkConfig: master configuration with JSON round-tripping
"""
from __future__ import annotations
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any
import os
import multiprocessing
import json
import logging

logger = logging.getLogger("cndd_framework.config")


class ExecutionMode(str, Enum):
    """Execution mode for per-group work.

    Attributes:
        SEQUENTIAL: Single-process execution, one group after another (default)
        MULTIPROCESSING: One joblib task per group (or group x scenario)
    """
    SEQUENTIAL = "sequential"
    MULTIPROCESSING = "mp"


@dataclass
class ExecutionConfig:
    """Configuration for execution mode and parallelization.

    Attributes:
        mode: Execution mode (sequential, mp)
        n_jobs: Number of parallel jobs. -1 means use all cores, 1 means sequential
        verbose: Verbosity level for joblib (0=silent, 10=progress bar, 50=detailed)
        backend: Joblib backend ('loky', 'threading', 'multiprocessing')

    Example:
        >>> config = ExecutionConfig()
        >>> config = ExecutionConfig(mode=ExecutionMode.MULTIPROCESSING, n_jobs=-1)
    """
    mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    n_jobs: int = 1
    verbose: int = 0
    backend: str = "loky"

    def __post_init__(self):
        """Validate and normalize configuration."""
        if isinstance(self.mode, str):
            self.mode = ExecutionMode(self.mode)

        if self.n_jobs == -1:
            self.n_jobs = multiprocessing.cpu_count()
        elif self.n_jobs < 1:
            raise ValueError(f"n_jobs must be -1 or positive, got {self.n_jobs}")

        # Sequential mode never fans out
        if self.mode == ExecutionMode.SEQUENTIAL:
            self.n_jobs = 1

    def is_parallel(self) -> bool:
        """Check if parallel execution is enabled.

        Returns:
            True if execution mode supports parallelism and n_jobs > 1
        """
        return self.mode != ExecutionMode.SEQUENTIAL and self.n_jobs > 1

    def __str__(self) -> str:
        return (
            f"ExecutionConfig(mode={self.mode.value}, "
            f"n_jobs={self.n_jobs}, "
            f"parallel={self.is_parallel()})"
        )


def select_execution_mode(
    n_groups: int,
    n_cores: Optional[int] = None,
    force_mode: Optional[ExecutionMode] = None
) -> ExecutionMode:
    """Auto-select execution mode from the number of groups to fit.

    A handful of groups does not repay process start-up, so parallel
    execution is only chosen for four or more groups on a multi-core host.

    Args:
        n_groups: Number of modelable groups after qualification
        n_cores: Number of available CPU cores (auto-detected if None)
        force_mode: Force a specific mode (overrides auto-detection)

    Returns:
        Recommended execution mode

    Example:
        >>> select_execution_mode(2)
        <ExecutionMode.SEQUENTIAL: 'sequential'>
    """
    if force_mode is not None:
        return force_mode

    if n_cores is None:
        n_cores = multiprocessing.cpu_count()

    if n_groups >= 4 and n_cores > 1:
        return ExecutionMode.MULTIPROCESSING
    return ExecutionMode.SEQUENTIAL


def create_execution_config(
    mode: Optional[str] = None,
    n_jobs: int = -1,
    verbose: int = 0
) -> ExecutionConfig:
    """Factory function to create ExecutionConfig from CLI-style arguments.

    Args:
        mode: Execution mode string ('sequential', 'mp'); None means sequential
        n_jobs: Number of parallel jobs (-1 = all cores)
        verbose: joblib verbosity level

    Returns:
        ExecutionConfig instance
    """
    execution_mode = ExecutionMode.SEQUENTIAL if mode is None else ExecutionMode(mode)
    return ExecutionConfig(mode=execution_mode, n_jobs=n_jobs, verbose=verbose)


# ============================================================================
# GAM Hyperparameters
# ============================================================================

@dataclass
class GamHyperparameters:
    """Hyperparameters for the penalized complementary log-log hazard model.

    Attributes:
        k_default: Default number of basis functions per smooth term
        max_pirls_iter: Iteration cap of the penalized IRLS inner loop
        pirls_tol: Relative change in penalized deviance treated as converged
        max_outer_iter: Iteration cap of the smoothing-parameter search
        log_lambda_min: Lower bound of each log smoothing parameter
        log_lambda_max: Upper bound of each log smoothing parameter
        log_lambda_start: Starting value of each log smoothing parameter
    """
    k_default: int = 10
    """Default basis size ("k") of every smooth term.

    Capped per group at (number of distinct covariate values) - 2.
    """

    max_pirls_iter: int = 100
    """Maximum penalized IRLS iterations per smoothing-parameter candidate."""

    pirls_tol: float = 1e-8
    """Convergence tolerance on the relative change in penalized deviance."""

    max_outer_iter: int = 200
    """Maximum Nelder-Mead iterations over log smoothing parameters.

    Together with max_pirls_iter this bounds the work spent on one group.
    """

    log_lambda_min: float = -8.0
    log_lambda_max: float = 12.0
    log_lambda_start: float = 0.0

    def __post_init__(self):
        if self.k_default < 3:
            raise ValueError(f"k_default must be at least 3, got {self.k_default}")
        if self.log_lambda_min >= self.log_lambda_max:
            raise ValueError("log_lambda_min must be smaller than log_lambda_max")
        if not self.log_lambda_min <= self.log_lambda_start <= self.log_lambda_max:
            raise ValueError("log_lambda_start must lie within the lambda bounds")

    @classmethod
    def for_environment(cls, run_type: str) -> "GamHyperparameters":
        """Create hyperparameters tuned for a run type.

        Args:
            run_type: One of "sample", "production", "experiment"

        Returns:
            GamHyperparameters instance

        Example:
            >>> GamHyperparameters.for_environment("production").max_outer_iter
            100
        """
        if run_type == "production":
            # Many species: cheaper smoothing-parameter search
            return cls(max_outer_iter=100)
        elif run_type == "experiment":
            return cls(max_outer_iter=400, pirls_tol=1e-10)
        else:
            return cls()


# ============================================================================
# Data Configuration
# ============================================================================

@dataclass
class DataConfig:
    """Column layout of the per-individual census table.

    Attributes:
        group_column: Group key (species)
        plot_column: Spatial key
        census_column: Temporal key, used as random effect when it varies
        site_column: Optional site key (kept for output, not modelled)
        hazard_column: Density covariate whose marginal effect is estimated
        control_columns: Covariates entered as smooth terms in every model
        exposure_column: Census interval length (strictly positive)
        outcome_column: Death indicator within the interval (0/1)
    """
    group_column: str = "species"
    plot_column: str = "plot"
    census_column: str = "census"
    site_column: Optional[str] = None
    hazard_column: str = "con_dens"
    control_columns: tuple[str, ...] = ("height", "tot_dens")
    """Control covariates, each receiving its own smooth term.

    Typical choices are stem height or dbh, total neighborhood density and
    basal area.
    """

    exposure_column: str = "interval"
    outcome_column: str = "status"

    def __post_init__(self):
        # JSON round-trips turn tuples into lists
        self.control_columns = tuple(self.control_columns)
        if self.hazard_column in self.control_columns:
            raise ValueError(
                f"hazard column '{self.hazard_column}' must not also be a control column"
            )

    @property
    def model_columns(self) -> List[str]:
        """Numeric columns entering the model as smooth terms."""
        return [*self.control_columns, self.hazard_column]

    @property
    def required_columns(self) -> List[str]:
        """Columns that must be present in the observation table."""
        cols = [
            self.group_column,
            self.plot_column,
            self.census_column,
            *self.model_columns,
            self.exposure_column,
            self.outcome_column,
        ]
        return cols


# ============================================================================
# Analysis Configuration
# ============================================================================

def _default_scenarios() -> List[Dict[str, Any]]:
    return [
        {"kind": "derivative", "name": "slope"},
        {"kind": "additive_shift", "name": "plus_one", "delta": 1.0},
        {"kind": "invasion", "name": "invasion", "delta": 1.0},
        {"kind": "iqr", "name": "iqr"},
    ]


@dataclass
class AnalysisConfig:
    """Configuration of qualification, acceptance and marginal effects.

    Attributes:
        min_distinct: Minimum distinct hazard-covariate values for a standalone group
        min_range: Minimum hazard-covariate range for a standalone group
        pooled_label: Label of the group collecting all insufficient groups
        offset: Exposure length (years) at which AME probabilities are expressed
        n_iterations: Coefficient draws for the simulation-based standard error
        base_seed: Seed from which every per-task generator is derived
        keep_samples: Whether to keep per-draw estimates for the samples tables
        separation_eps_multiplier: Fitted probabilities above 1 - m*eps are flagged
        influence_fraction: Fraction of most influential rows checked for separation
        scenarios: Structured scenario specifications (see marginal.scenario_from_dict)
        track_mlflow: Log parameters and metrics of the run to MLflow
    """
    min_distinct: int = 4
    """Minimum number of distinct hazard-covariate values.

    Groups below this threshold are merged into the pooled group.
    """

    min_range: float = 1.0
    """Minimum range (max - min) of the hazard covariate."""

    pooled_label: str = "insufficient_data"

    offset: float = 1.0
    """Exposure length used when converting per-unit hazards to probabilities.

    Valid range: (0, inf). 1.0 gives annual mortality probabilities when
    intervals are recorded in years.
    """

    n_iterations: int = 500
    """Number of multivariate-normal coefficient draws per estimate.

    Valid range: [2, inf). 500 is adequate for standard errors; use more
    for stable tail quantiles.
    """

    base_seed: int = 42
    keep_samples: bool = True
    separation_eps_multiplier: float = 10.0
    influence_fraction: float = 0.1
    scenarios: List[Dict[str, Any]] = field(default_factory=_default_scenarios)
    track_mlflow: bool = False

    def __post_init__(self):
        if self.min_distinct < 1:
            raise ValueError(f"min_distinct must be positive, got {self.min_distinct}")
        if self.min_range < 0:
            raise ValueError(f"min_range must be non-negative, got {self.min_range}")
        if self.offset <= 0:
            raise ValueError(f"offset must be positive, got {self.offset}")
        if self.n_iterations < 2:
            raise ValueError(f"n_iterations must be at least 2, got {self.n_iterations}")
        if not 0 < self.influence_fraction <= 1:
            raise ValueError(
                f"influence_fraction must lie in (0, 1], got {self.influence_fraction}"
            )


# ============================================================================
# Master Configuration
# ============================================================================

@dataclass
class CnddFrameworkConfig:
    """Master configuration for a density-dependence analysis run.

    Attributes:
        hyperparameters: GAM hyperparameter configuration
        data: Column layout of the observation table
        analysis: Qualification, acceptance and marginal-effect configuration
        execution: Execution mode and parallelization configuration
        run_type: Type of run ("sample", "production", "experiment")
        description: Optional description of this configuration

    Example:
        >>> config = CnddFrameworkConfig.for_run_type("production")
        >>> config.save("configs/production.json")
        >>> loaded = CnddFrameworkConfig.load("configs/production.json")
    """
    hyperparameters: GamHyperparameters = field(default_factory=GamHyperparameters)
    data: DataConfig = field(default_factory=DataConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)

    run_type: str = "sample"
    """Type of run: 'sample', 'production', or 'experiment'."""

    description: str = ""

    def __post_init__(self):
        hazard = self.data.hazard_column
        for scenario in self.analysis.scenarios:
            if hazard in (scenario.get("at") or {}):
                raise ValueError(
                    f"Scenario {scenario.get('name', scenario.get('kind'))!r} pins the "
                    f"hazard covariate {hazard!r} in 'at'"
                )

    @classmethod
    def for_run_type(cls, run_type: str) -> "CnddFrameworkConfig":
        """Create configuration optimized for specific run type.

        Args:
            run_type: One of "sample", "production", "experiment"

        Returns:
            Configured instance with appropriate defaults
        """
        if run_type == "production":
            exec_config = ExecutionConfig(
                mode=ExecutionMode.MULTIPROCESSING,
                n_jobs=-1,
                verbose=10
            )
            analysis = AnalysisConfig(n_iterations=1000)
        else:
            exec_config = ExecutionConfig()
            analysis = AnalysisConfig()

        return cls(
            hyperparameters=GamHyperparameters.for_environment(run_type),
            analysis=analysis,
            execution=exec_config,
            run_type=run_type
        )

    def to_dict(self) -> dict:
        """Convert configuration to dictionary for serialization."""
        def _dataclass_to_dict(obj):
            if hasattr(obj, '__dataclass_fields__'):
                return {
                    k: _dataclass_to_dict(v)
                    for k, v in obj.__dict__.items()
                }
            elif isinstance(obj, Enum):
                return obj.value
            elif isinstance(obj, tuple):
                return list(obj)
            else:
                return obj

        return _dataclass_to_dict(self)

    def save(self, path: str) -> None:
        """Save configuration to JSON file.

        Args:
            path: Path to output JSON file
        """
        config_dict = self.to_dict()
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with open(path, 'w') as f:
            json.dump(config_dict, f, indent=2)

        logger.info(f"Configuration saved to {path}")

    @classmethod
    def load(cls, path: str) -> "CnddFrameworkConfig":
        """Load configuration from JSON file.

        Args:
            path: Path to input JSON file

        Returns:
            CnddFrameworkConfig instance
        """
        with open(path) as f:
            data = json.load(f)

        return cls(
            hyperparameters=GamHyperparameters(**data['hyperparameters']),
            data=DataConfig(**data['data']),
            analysis=AnalysisConfig(**data['analysis']),
            execution=ExecutionConfig(**data['execution']),
            run_type=data['run_type'],
            description=data.get('description', '')
        )
