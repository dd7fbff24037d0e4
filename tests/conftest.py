"""Pytest configuration and shared fixtures for cndd_framework tests.

Fixtures build simulated census tables with a known cloglog hazard, the
run configuration, and temporary output directories.
"""
import logging
import pytest
import pandas as pd
import numpy as np
from pathlib import Path

from cndd_framework.config import CnddFrameworkConfig, AnalysisConfig
from cndd_framework.data import validate_observations
from cndd_framework.simulate import SpeciesSpec, simulate_census


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def config():
    """Default configuration with fewer coefficient draws for speed."""
    return CnddFrameworkConfig(analysis=AnalysisConfig(n_iterations=200))


@pytest.fixture(scope="session")
def census_data():
    """Two well-sampled species and one data-deficient species.

    Returns:
        pd.DataFrame: Validated observation table
    """
    df = simulate_census(
        [
            SpeciesSpec("Faramea occidentalis", n=500, beta_hazard=0.15),
            SpeciesSpec("Hybanthus prunifolius", n=400, beta_hazard=0.0),
            SpeciesSpec("Ocotea whitei", n=150, density_values=[0.0, 0.5]),
        ],
        seed=7,
    )
    return validate_observations(df, CnddFrameworkConfig().data)


@pytest.fixture(scope="session")
def species_rows(census_data):
    """Observations of a single well-sampled species."""
    rows = census_data[census_data["species"] == "Faramea occidentalis"]
    return rows.reset_index(drop=True)


@pytest.fixture
def small_observations():
    """Five hand-written observations covering every required column."""
    return pd.DataFrame({
        "species": ["A", "A", "A", "B", "B"],
        "plot": [1, 2, 3, 1, 2],
        "census": [1, 1, 2, 1, 2],
        "con_dens": [0.0, 1.0, 2.0, 3.0, 4.0],
        "height": [10.0, 12.5, 9.0, 30.0, 22.0],
        "tot_dens": [5.0, 6.0, 8.0, 10.0, 7.0],
        "interval": [1.0, 1.2, 0.9, 1.1, 1.0],
        "status": [0, 1, 0, 1, 0],
    })


@pytest.fixture
def temp_output_dir(tmp_path):
    """Temporary root directory for run outputs."""
    out = tmp_path / "outputs"
    out.mkdir(exist_ok=True)
    return out


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Undo setup_logging() so later tests see default propagation."""
    yield
    logger = logging.getLogger("cndd_framework")
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.propagate = True


@pytest.fixture(autouse=True)
def cleanup_mlflow_runs():
    """Reset the MLflow tracking URI after each test."""
    import mlflow
    yield
    if mlflow.active_run() is not None:
        mlflow.end_run()
    mlflow.set_tracking_uri(None)
