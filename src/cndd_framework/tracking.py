from __future__ import annotations
import os
import logging
from pathlib import Path
from typing import Dict, Any, Optional
import mlflow
import mlflow.exceptions

EXPERIMENT_NAME = "cndd_framework"


def start_run(run_name: str, tags: Dict[str, str] | None = None, tracking_dir: Optional[str] = None):
    """Start an MLflow run under the cndd_framework experiment.

    Args:
        run_name: Name identifier for this run
        tags: Optional key-value tags to attach to the run
        tracking_dir: Local directory used as file store; MLflow's default
            tracking URI is used when None

    Returns:
        Active MLflow run context manager

    Example:
        >>> with start_run("cndd_sample", tracking_dir="data/outputs/sample/mlruns"):
        ...     safe_log_params({"n_iterations": 500})
    """
    if tracking_dir is not None:
        mlflow.set_tracking_uri(Path(tracking_dir).absolute().as_uri())
    mlflow.set_experiment(EXPERIMENT_NAME)
    return mlflow.start_run(run_name=run_name, tags=tags)


def safe_log_params(
    params: Dict[str, Any],
    logger: Optional[logging.Logger] = None
) -> bool:
    """Log parameters to MLflow, degrading to a warning on failure.

    Values MLflow rejects are retried as strings.

    Returns:
        True if logging succeeded, False if it failed
    """
    try:
        for k, v in params.items():
            try:
                mlflow.log_param(k, v)
            except mlflow.exceptions.MlflowException:
                mlflow.log_param(k, str(v))
        return True
    except mlflow.exceptions.MlflowException as e:
        if logger:
            logger.warning(f"MLflow params logging failed: {e}", extra={"category": "mlflow_error"})
        return False


def safe_log_metrics(
    metrics: Dict[str, float],
    step: Optional[int] = None,
    logger: Optional[logging.Logger] = None
) -> bool:
    """Log metrics to MLflow, degrading to a warning on failure.

    Non-finite values are skipped; result tables on disk remain the
    record of truth.

    Returns:
        True if logging succeeded, False if it failed

    Example:
        >>> safe_log_metrics({"Faramea_slope_ame": 0.012}, logger=logger)
        True
    """
    finite = {k: float(v) for k, v in metrics.items() if v is not None and v == v and abs(v) != float("inf")}
    try:
        mlflow.log_metrics(finite, step=step)
        return True
    except mlflow.exceptions.MlflowException as e:
        if logger:
            logger.warning(f"MLflow metrics logging failed: {e}", extra={"category": "mlflow_error"})
        return False


def safe_log_artifact(
    path: str,
    logger: Optional[logging.Logger] = None
) -> bool:
    """Log a file artifact to MLflow, degrading to a warning on failure.

    Returns:
        True if logging succeeded, False if it failed
    """
    if not os.path.exists(path):
        if logger:
            logger.warning(f"Artifact not found, skipping: {path}")
        return False

    try:
        mlflow.log_artifact(path)
        return True
    except mlflow.exceptions.MlflowException as e:
        if logger:
            logger.warning(
                f"MLflow artifact logging failed for {path}: {e}",
                extra={"category": "mlflow_error"}
            )
        return False
