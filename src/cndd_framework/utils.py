from __future__ import annotations
import os
import zlib
import datetime as dt
import numpy as np
import pandas as pd
from typing import Literal, Optional

RunType = Literal["sample", "production", "experiment"]


def ensure_dir(path: str):
    """Create directory if it doesn't exist.

    Args:
        path: Directory path to create
    """
    os.makedirs(path, exist_ok=True)


def versioned_name(base: str, run_type: Optional[RunType] = None) -> str:
    """Generate timestamped name for versioning.

    Args:
        base: Base name without extension
        run_type: Optional run type prefix

    Returns:
        Versioned name in format "[runtype_]base_YYYYMMDD_HHMMSS"

    Example:
        >>> versioned_name("config", run_type="sample")
        'sample_config_20250123_143052'
    """
    ts = dt.datetime.now().strftime("%Y%m%d_%H%M%S")
    if run_type:
        return f"{run_type}_{base}_{ts}"
    return f"{base}_{ts}"


def get_output_paths(run_type: RunType = "sample", base_dir: Optional[str] = None) -> dict:
    """Get standardized output directory paths for a given run type.

    Args:
        run_type: Type of run; separates sample and production outputs
        base_dir: Root directory overriding data/outputs/{run_type}

    Returns:
        Dictionary with keys:
        - base_dir: Root output directory for this run
        - tables: Directory for result tables (CSV)
        - configs: Directory for the saved run configuration
        - logs: Directory for log files
        - mlruns: Directory for MLflow tracking

    Example:
        >>> get_output_paths("sample")["tables"]
        'data/outputs/sample/tables'
    """
    if base_dir is None:
        base_dir = f"data/outputs/{run_type}"

    paths = {
        "base_dir": base_dir,
        "tables": os.path.join(base_dir, "tables"),
        "configs": os.path.join(base_dir, "configs"),
        "logs": os.path.join(base_dir, "logs"),
        "mlruns": os.path.join(base_dir, "mlruns"),
    }

    for path in paths.values():
        ensure_dir(path)

    return paths


def save_table(df: pd.DataFrame, outdir: str, name: str) -> str:
    """Write a result table as CSV and return its path.

    Args:
        df: Table to write
        outdir: Output directory (created if missing)
        name: File stem, without extension

    Returns:
        Full path of the written CSV
    """
    ensure_dir(outdir)
    path = os.path.join(outdir, f"{name}.csv")
    df.to_csv(path, index=False)
    return path


def _stable_key(value) -> int:
    # hash() is salted per process; CRC32 is identical in every worker
    if isinstance(value, (int, np.integer)) and not isinstance(value, bool):
        return int(value) & 0xFFFFFFFF
    return zlib.crc32(str(value).encode("utf-8"))


def derive_rng(base_seed: int, *keys) -> np.random.Generator:
    """Generator seeded from a base seed and any number of task keys.

    The same (base_seed, keys) always yields the same stream regardless of
    process or execution order, so parallel tasks stay reproducible.

    Args:
        base_seed: Configured run seed
        *keys: Task identity, e.g. group label and scenario name

    Returns:
        Independent numpy Generator for the task

    Example:
        >>> a = derive_rng(42, "Faramea", "slope").normal()
        >>> b = derive_rng(42, "Faramea", "slope").normal()
        >>> a == b
        True
    """
    entropy = [int(base_seed)] + [_stable_key(k) for k in keys]
    return np.random.default_rng(np.random.SeedSequence(entropy))
