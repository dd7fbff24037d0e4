"""Main entry point for conspecific density-dependence analyses.

Fits per-species hazard models and estimates average marginal effects of
conspecific density on mortality. Supports sample (development) and
production runs, CSV or pickle input, simulated input for smoke tests,
and parallel execution over species.

Can be used as CLI or imported as a function.
"""
from cndd_framework.config import (
    CnddFrameworkConfig,
    create_execution_config,
    select_execution_mode,
)
from cndd_framework.data import load_observations, validate_observations
from cndd_framework.errors import NoAcceptedGroupsError
from cndd_framework.logging_config import setup_logging
from cndd_framework.pipeline import run_analysis
from cndd_framework.simulate import SpeciesSpec, simulate_census
from cndd_framework.utils import get_output_paths
import os
import argparse
from typing import Optional


def _simulated_observations(config: CnddFrameworkConfig, seed: int):
    species = [
        SpeciesSpec("Faramea occidentalis", n=600, beta_hazard=0.15),
        SpeciesSpec("Hybanthus prunifolius", n=500, beta_hazard=0.05),
        SpeciesSpec("Psychotria horizontalis", n=400, beta_hazard=-0.05),
        SpeciesSpec("Ocotea whitei", n=120, density_values=[0.0, 0.5]),
        SpeciesSpec("Piper cordulatum", n=120, density_values=[0.0, 1.0, 2.0]),
    ]
    df = simulate_census(species, seed=seed, data_config=config.data)
    return validate_observations(df, config.data)


def run_pipeline(
    input_file: Optional[str] = "data/inputs/sample/census.csv",
    run_type: str = "sample",
    config: Optional[CnddFrameworkConfig] = None,
    simulate: bool = False,
    output_dir: Optional[str] = None,
    auto_mode: bool = False,
    n_jobs: int = -1,
) -> int:
    """Run the density-dependence analysis.

    Args:
        input_file: Path to the observation table (CSV or pickle). Relative
            paths are resolved against the repository root. Ignored when
            simulate is True.
        run_type: "sample", "production" or "experiment"; selects defaults
            and the output directory
        config: Complete configuration; built with for_run_type when None
        simulate: Analyse a simulated census instead of input_file
        output_dir: Root output directory overriding data/outputs/{run_type}
        auto_mode: Choose sequential or parallel execution from the number
            of species in the input
        n_jobs: Worker count when auto_mode selects parallel execution

    Returns:
        Exit code (0 for success, 1 for failure)

    Example:
        >>> from main import run_pipeline
        >>> run_pipeline(simulate=True, run_type="sample")
        0
    """
    if config is None:
        config = CnddFrameworkConfig.for_run_type(run_type)

    paths = get_output_paths(config.run_type, base_dir=output_dir)
    logger = setup_logging(run_type=config.run_type, log_dir=paths["logs"])

    if simulate:
        logger.info("Using simulated census data")
        observations = _simulated_observations(config, seed=config.analysis.base_seed)
    else:
        if not os.path.isabs(input_file):
            repo_root = os.path.dirname(os.path.dirname(__file__))
            input_file = os.path.join(repo_root, input_file)
        if not os.path.exists(input_file):
            logger.error(f"Input file not found: {input_file}")
            return 1
        observations = load_observations(input_file, config.data)

    if auto_mode:
        n_groups = observations[config.data.group_column].nunique()
        mode = select_execution_mode(n_groups)
        config.execution = create_execution_config(mode=mode.value, n_jobs=n_jobs)

    logger.info("=" * 70)
    logger.info(f"CNDD FRAMEWORK - {config.run_type.upper()} RUN")
    logger.info("=" * 70)
    logger.info(f"Input:      {'simulated' if simulate else input_file}")
    logger.info(f"Records:    {len(observations):,}")
    logger.info(f"Execution:  {config.execution}")
    logger.info(f"Draws:      {config.analysis.n_iterations}")

    try:
        result = run_analysis(observations, config, output_dir=paths["base_dir"], logger=logger)
    except NoAcceptedGroupsError as e:
        logger.error(f"Run failed: {e}")
        return 1

    logger.info(f"Tables written to: {paths['tables']}")
    logger.info(f"Accepted groups: {', '.join(result.accepted_groups)}")
    logger.info(f"{config.run_type.upper()} RUN COMPLETED SUCCESSFULLY")
    return 0


def main():
    """Main execution function with argument parsing."""
    parser = argparse.ArgumentParser(
        description="CNDD Framework - density-dependent mortality hazard models and marginal effects",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Sample run on a census CSV
  python src/main.py --input data/inputs/sample/census.csv --run-type sample

  # Production run with 8 worker processes
  python src/main.py --input data/inputs/production/bci.pkl --run-type production --execution-mode mp --n-jobs 8

  # Smoke test on simulated data
  python src/main.py --simulate --iterations 100

  # Reuse a saved configuration
  python src/main.py --input data.csv --config data/outputs/sample/configs/sample_config.json
        """
    )

    parser.add_argument(
        "--input",
        type=str,
        default="data/inputs/sample/census.csv",
        help="Path to input file (CSV or pickle). Default: sample CSV"
    )
    parser.add_argument(
        "--run-type",
        type=str,
        choices=["sample", "production", "experiment"],
        default="sample",
        help="Run type. Default: sample"
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="JSON configuration saved by a previous run; overrides --run-type defaults"
    )
    parser.add_argument(
        "--execution-mode",
        type=str,
        choices=["sequential", "mp", "auto"],
        default=None,
        help="Execution mode: 'sequential', 'mp' (joblib processes) or 'auto' (by species count). Default: from config"
    )
    parser.add_argument(
        "--n-jobs",
        type=int,
        default=-1,
        help="Number of parallel jobs for multiprocessing. -1 means use all cores. Default: -1"
    )
    parser.add_argument(
        "--iterations",
        type=int,
        default=None,
        help="Coefficient draws per marginal effect. Default: from config"
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Base seed for all random draws. Default: from config"
    )
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="Analyse a simulated census instead of --input"
    )
    parser.add_argument(
        "--mlflow",
        action="store_true",
        help="Track parameters, effect estimates and tables with MLflow"
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default=None,
        help="Root output directory. Default: data/outputs/{run_type}"
    )

    args = parser.parse_args()

    if args.config:
        config = CnddFrameworkConfig.load(args.config)
    else:
        config = CnddFrameworkConfig.for_run_type(args.run_type)

    if args.execution_mode not in (None, "auto"):
        config.execution = create_execution_config(mode=args.execution_mode, n_jobs=args.n_jobs)
    if args.iterations is not None:
        config.analysis.n_iterations = args.iterations
    if args.seed is not None:
        config.analysis.base_seed = args.seed
    if args.mlflow:
        config.analysis.track_mlflow = True

    return run_pipeline(
        input_file=args.input,
        run_type=config.run_type,
        config=config,
        simulate=args.simulate,
        output_dir=args.output_dir,
        auto_mode=args.execution_mode == "auto",
        n_jobs=args.n_jobs,
    )


if __name__ == "__main__":
    exit(main())
