from __future__ import annotations
import logging
from typing import Optional
import numpy as np
import pandas as pd
from pathlib import Path

from cndd_framework.config import DataConfig

logger = logging.getLogger("cndd_framework.data")


def load_observations(
    file_path: str,
    data_config: Optional[DataConfig] = None
) -> pd.DataFrame:
    """Load and validate a census observation table from CSV or pickle.

    Args:
        file_path: Path to input file (.csv, .pkl or .pickle)
        data_config: Column layout; defaults to DataConfig()

    Returns:
        Validated DataFrame, one row per individual and census interval

    Raises:
        FileNotFoundError: If file_path does not exist
        ValueError: If the format is unsupported or required columns are missing

    Example:
        >>> df = load_observations("data/inputs/sample/bci_seedlings.csv")
        >>> df.shape
        (24812, 9)
    """
    data_config = data_config or DataConfig()
    file_path = Path(file_path)

    if not file_path.exists():
        raise FileNotFoundError(f"Data file not found: {file_path}")

    suffix = file_path.suffix.lower()

    if suffix == '.csv':
        logger.info(f"Loading CSV data from {file_path}")
        df = pd.read_csv(file_path)
    elif suffix in ['.pkl', '.pickle']:
        logger.info(f"Loading pickle data from {file_path}")
        df = pd.read_pickle(file_path)
    else:
        raise ValueError(
            f"Unsupported file format: {suffix}. "
            f"Supported formats: .csv, .pkl, .pickle"
        )

    logger.info(f"Loaded {len(df):,} records with {len(df.columns)} columns")
    return validate_observations(df, data_config)


def validate_observations(df: pd.DataFrame, data_config: DataConfig) -> pd.DataFrame:
    """Enforce the observation invariants, dropping offending rows.

    Rows are removed, with a warning, when the exposure length is not
    strictly positive, the outcome is not 0/1, or a model covariate is
    missing or non-finite. The input frame is not modified.

    Args:
        df: Raw observation table
        data_config: Column layout

    Returns:
        Copy of df restricted to valid rows, outcome cast to int

    Raises:
        ValueError: If required columns are missing
    """
    missing = [c for c in data_config.required_columns if c not in df.columns]
    if missing:
        raise ValueError(f"Observation table is missing required columns: {missing}")

    df = df.copy()
    n_start = len(df)

    numeric_cols = data_config.model_columns + [data_config.exposure_column]
    for col in numeric_cols:
        df[col] = pd.to_numeric(df[col], errors="coerce")

    finite = np.isfinite(df[numeric_cols].to_numpy(dtype=float)).all(axis=1)
    if (~finite).any():
        logger.warning(f"Removing {(~finite).sum():,} records with missing or non-finite covariates")
        df = df[finite]

    bad_exposure = df[data_config.exposure_column] <= 0
    if bad_exposure.any():
        logger.warning(
            f"Removing {bad_exposure.sum():,} records with {data_config.exposure_column} <= 0"
        )
        df = df[~bad_exposure]

    outcome = pd.to_numeric(df[data_config.outcome_column], errors="coerce")
    bad_outcome = ~outcome.isin([0, 1])
    if bad_outcome.any():
        logger.warning(
            f"Removing {bad_outcome.sum():,} records with {data_config.outcome_column} not in {{0, 1}}"
        )
        df = df[~bad_outcome]
        outcome = outcome[~bad_outcome]

    df[data_config.outcome_column] = outcome.astype(int)
    df[data_config.group_column] = df[data_config.group_column].astype(str)

    if len(df) < n_start:
        logger.info(f"Remaining: {len(df):,} of {n_start:,} records")

    return df.reset_index(drop=True)
