from __future__ import annotations
import os
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional
import pandas as pd
from joblib import Parallel, delayed

from cndd_framework.config import CnddFrameworkConfig
from cndd_framework.errors import NoAcceptedGroupsError
from cndd_framework.fitting import fit_group_model
from cndd_framework.acceptance import GatedGroup, evaluate_fit
from cndd_framework.marginal import (
    MarginalEffectEstimate,
    Scenario,
    estimate_marginal_effect,
    scenario_from_dict,
)
from cndd_framework.qualification import QualificationResult, SufficiencyRecord, qualify_groups
from cndd_framework.results import (
    coefficient_table,
    fit_summary_table,
    marginal_effect_tables,
    model_report_table,
    save_result_tables,
)
from cndd_framework.utils import derive_rng, get_output_paths, versioned_name
from cndd_framework.tracking import start_run, safe_log_params, safe_log_metrics, safe_log_artifact
from cndd_framework.logging_config import log_performance, ProgressLogger, capture_warnings
from cndd_framework.timing import Timer, log_execution_time


def _fit_and_gate(
    group: str,
    rows: pd.DataFrame,
    config: CnddFrameworkConfig,
    pooled: bool = False,
    sufficiency: Optional[SufficiencyRecord] = None,
) -> GatedGroup:
    """Fit full and reduced models of one group and run both through the gate."""
    group_logger = logging.getLogger(f"cndd_framework.groups.{group}")
    with Timer(group_logger, f"{group} full + reduced fit", group=group, n_obs=len(rows)):
        full = fit_group_model(rows, group, config, reduced=False, sufficiency=sufficiency)
        reduced = fit_group_model(rows, group, config, reduced=True, sufficiency=sufficiency)

    return GatedGroup(
        group=group,
        full=full,
        reduced=reduced,
        full_decision=evaluate_fit(full, config.analysis),
        reduced_decision=evaluate_fit(reduced, config.analysis),
        pooled=pooled,
    )


def fit_all_groups(
    qualification: QualificationResult,
    config: CnddFrameworkConfig,
    logger: Optional[logging.Logger] = None,
) -> List[GatedGroup]:
    """Fit and gate every modelable group, in parallel when configured.

    Groups are independent: each task sees only its own rows and the
    configuration. Rejections never stop the loop.

    Library warnings are captured once around the whole loop, since the
    warnings hook is process-global and thread workers share it. Warnings
    raised inside separate worker processes stay in those processes.

    Args:
        qualification: Output of qualify_groups
        config: Run configuration
        logger: Optional logger

    Returns:
        GatedGroup per group, in qualification order
    """
    if logger is None:
        logger = logging.getLogger("cndd_framework.pipeline")

    execution = config.execution
    pooled_label = qualification.pooled_label
    records = {r.group: r for r in qualification.records}
    if qualification.pooled_record is not None:
        records[pooled_label] = qualification.pooled_record

    tasks = [
        (group, rows, group == pooled_label, records.get(group))
        for group, rows in qualification.groups.items()
    ]
    logger.info(f"Fitting {len(tasks)} groups ({execution})")

    progress = ProgressLogger(logger, total=len(tasks), desc="Group fitting")
    with capture_warnings(logger):
        if execution.is_parallel():
            gated = Parallel(
                n_jobs=execution.n_jobs,
                verbose=execution.verbose,
                backend=execution.backend,
            )(
                delayed(_fit_and_gate)(group, rows, config, pooled, record)
                for group, rows, pooled, record in tasks
            )
            for g in gated:
                progress.update(1, metrics={"group": g.group, "state": g.full_decision.state.value})
        else:
            gated = []
            for group, rows, pooled, record in tasks:
                g = _fit_and_gate(group, rows, config, pooled, record)
                gated.append(g)
                progress.update(1, metrics={"group": group, "state": g.full_decision.state.value})

    for g in gated:
        if g.accepted:
            model = g.full.model
            log_performance(
                logger, "Group accepted",
                group=g.group, n_obs=g.full.n_obs, edf=round(model.edf, 2),
                deviance=round(model.deviance, 2),
            )

    n_accepted = sum(g.accepted for g in gated)
    logger.info(f"Accepted {n_accepted} of {len(gated)} groups")
    return gated


def resolve_scenarios(
    specs: List[dict],
    hazard_values,
) -> List[Scenario]:
    """Scenario objects for one group; quantile-based scenarios use its own values."""
    return [scenario_from_dict(spec, values=hazard_values) for spec in specs]


def _estimate_group_scenario(
    group: str,
    model,
    rows: pd.DataFrame,
    scenario: Scenario,
    config: CnddFrameworkConfig,
) -> List[MarginalEffectEstimate]:
    analysis = config.analysis
    estimates = []
    for relative in (False, True):
        rng = derive_rng(analysis.base_seed, group, scenario.name, "relative" if relative else "absolute")
        estimates.append(estimate_marginal_effect(
            model,
            rows,
            config.data.hazard_column,
            scenario,
            offset=analysis.offset,
            relative=relative,
            iterations=analysis.n_iterations,
            rng=rng,
            keep_samples=analysis.keep_samples,
            group=group,
        ))
    return estimates


@log_execution_time()
def estimate_all_effects(
    gated: List[GatedGroup],
    groups: Dict[str, pd.DataFrame],
    config: CnddFrameworkConfig,
    logger: Optional[logging.Logger] = None,
) -> List[MarginalEffectEstimate]:
    """AME and rAME of every accepted group under every configured scenario.

    One task per group x scenario; each task draws from its own generator
    derived from (base_seed, group, scenario, relative), so results do not
    depend on execution order or worker count.
    """
    if logger is None:
        logger = logging.getLogger("cndd_framework.pipeline")

    hazard = config.data.hazard_column
    tasks = []
    for g in gated:
        if not g.accepted:
            continue
        rows = groups[g.group]
        for scenario in resolve_scenarios(config.analysis.scenarios, rows[hazard]):
            tasks.append((g.group, g.full.model, rows, scenario))

    logger.info(
        f"Estimating marginal effects: {len(tasks)} group x scenario tasks, "
        f"{config.analysis.n_iterations} draws each"
    )

    execution = config.execution
    if execution.is_parallel():
        results = Parallel(
            n_jobs=execution.n_jobs,
            verbose=execution.verbose,
            backend=execution.backend,
        )(
            delayed(_estimate_group_scenario)(group, model, rows, scenario, config)
            for group, model, rows, scenario in tasks
        )
    else:
        results = [
            _estimate_group_scenario(group, model, rows, scenario, config)
            for group, model, rows, scenario in tasks
        ]

    return [est for pair in results for est in pair]


@dataclass
class AnalysisResult:
    """Everything a run produced.

    Attributes:
        qualification: Group sufficiency screen and pooling
        gated: Fits and gate decisions per group
        estimates: AME and rAME estimates of accepted groups
        tables: Result tables by name
        paths: Written table paths by name (empty when not saved)
    """
    qualification: QualificationResult
    gated: List[GatedGroup]
    estimates: List[MarginalEffectEstimate]
    tables: Dict[str, pd.DataFrame]
    paths: Dict[str, str] = field(default_factory=dict)

    @property
    def accepted_groups(self) -> List[str]:
        return [g.group for g in self.gated if g.accepted]


def _tracking_metrics(estimates: List[MarginalEffectEstimate]) -> Dict[str, float]:
    metrics = {}
    for est in estimates:
        key = f"{est.group}_{est.scenario}_{'rame' if est.relative else 'ame'}"
        # MLflow metric names allow alphanumerics, _ - . / and spaces
        key = "".join(c if c.isalnum() or c in "_-./ " else "_" for c in key)
        metrics[key] = est.estimate
    return metrics


def run_analysis(
    observations: pd.DataFrame,
    config: Optional[CnddFrameworkConfig] = None,
    output_dir: Optional[str] = None,
    save: bool = True,
    logger: Optional[logging.Logger] = None,
) -> AnalysisResult:
    """Run qualification, fitting, gating and effect estimation end to end.

    Steps:
    1. Screen groups and pool the insufficient ones
    2. Fit full and reduced hazard models per group and gate them
    3. Estimate AME and rAME for every accepted group and scenario
    4. Aggregate and (optionally) save the result tables and configuration
    5. Log parameters and effect estimates to MLflow when enabled

    Args:
        observations: Validated observation table (see data.load_observations)
        config: Run configuration; defaults to CnddFrameworkConfig()
        output_dir: Root output directory overriding data/outputs/{run_type}
        save: Write the tables and configuration to disk
        logger: Optional logger

    Returns:
        AnalysisResult

    Raises:
        NoAcceptedGroupsError: If no group yields an accepted full model.
            The sufficiency table and model report are saved first.

    Example:
        >>> cfg = CnddFrameworkConfig.for_run_type("sample")
        >>> result = run_analysis(load_observations("data/inputs/sample/bci.csv"), cfg)
        >>> result.tables["ame"].head()
    """
    if config is None:
        config = CnddFrameworkConfig()
    if logger is None:
        logger = logging.getLogger("cndd_framework.pipeline")

    paths = get_output_paths(config.run_type, base_dir=output_dir) if save else {}
    analysis = config.analysis

    logger.info(f"Analysing {len(observations):,} observations (run_type={config.run_type})")
    with Timer(logger, "Group qualification"):
        qualification = qualify_groups(observations, config.data, analysis)

    gated = fit_all_groups(qualification, config, logger)
    decisions = [d for g in gated for d in g.decisions]

    tables = {
        "group_sufficiency": qualification.table(),
        "model_report": model_report_table(decisions),
    }

    if not any(g.accepted for g in gated):
        written = save_result_tables(tables, paths["tables"]) if save else {}
        raise NoAcceptedGroupsError(
            f"None of {len(gated)} groups produced an accepted model; "
            f"see model_report for the rejection reasons"
            + (f" ({written['model_report']})" if written else "")
        )

    estimates = estimate_all_effects(gated, qualification.groups, config, logger)

    tables["coefficients"] = coefficient_table(gated)
    tables["fit_summary"] = fit_summary_table(gated)
    effect_tables = marginal_effect_tables(estimates)
    if not analysis.keep_samples:
        effect_tables = {k: v for k, v in effect_tables.items() if not k.endswith("_samples")}
    tables.update(effect_tables)

    result = AnalysisResult(qualification=qualification, gated=gated, estimates=estimates, tables=tables)

    if save:
        result.paths = save_result_tables(tables, paths["tables"])
        config_path = os.path.join(paths["configs"], versioned_name("config", config.run_type) + ".json")
        config.save(config_path)
        result.paths["config"] = config_path

    if analysis.track_mlflow:
        _track_run(result, config, observations, paths, logger)

    logger.info(
        f"Analysis complete: {len(result.accepted_groups)} accepted groups, "
        f"{len(estimates)} effect estimates"
    )
    return result


def _track_run(
    result: AnalysisResult,
    config: CnddFrameworkConfig,
    observations: pd.DataFrame,
    paths: Dict[str, str],
    logger: logging.Logger,
) -> None:
    with start_run(run_name=f"cndd_framework_{config.run_type}", tracking_dir=paths.get("mlruns")):
        safe_log_params({
            "run_type": config.run_type,
            "n_observations": len(observations),
            "n_groups": len(result.gated),
            "n_accepted": len(result.accepted_groups),
            "pooled_members": ",".join(result.qualification.pooled_members),
            "n_iterations": config.analysis.n_iterations,
            "offset": config.analysis.offset,
            "base_seed": config.analysis.base_seed,
            "execution_mode": config.execution.mode.value,
            "n_jobs": config.execution.n_jobs,
        }, logger=logger)
        safe_log_metrics(_tracking_metrics(result.estimates), logger=logger)
        for path in result.paths.values():
            safe_log_artifact(path, logger=logger)
