from __future__ import annotations
import logging
from typing import Dict, Iterable, List
import numpy as np
import pandas as pd

from cndd_framework.acceptance import AcceptanceDecision, GatedGroup
from cndd_framework.marginal import MarginalEffectEstimate
from cndd_framework.utils import save_table

logger = logging.getLogger("cndd_framework.results")

COEFFICIENT_COLUMNS = ["group", "model", "term", "estimate", "std_error"]
FIT_SUMMARY_COLUMNS = [
    "group", "n_obs", "n_events", "loglik", "aic", "edf", "deviance",
    "deviance_reduced", "pseudo_r2", "pooled", "low_flexibility", "formula",
]
EFFECT_COLUMNS = ["group", "scenario", "estimate", "std_error", "lower", "upper", "n_iterations"]
SAMPLE_COLUMNS = ["group", "scenario", "iteration", "value"]
REPORT_COLUMNS = ["group", "model", "state", "reason", "path"]


def coefficient_table(gated: Iterable[GatedGroup]) -> pd.DataFrame:
    """Coefficients of every accepted model, full and reduced.

    Standard errors are the square roots of the posterior covariance
    diagonal.

    Args:
        gated: Gate outcomes of every group

    Returns:
        DataFrame with columns group, model, term, estimate, std_error
    """
    rows = []
    for g in gated:
        for fit, decision in ((g.full, g.full_decision), (g.reduced, g.reduced_decision)):
            if not decision.accepted:
                continue
            model = fit.model
            std_errors = np.sqrt(np.clip(np.diag(model.covariance), 0.0, None))
            for term, est, se in zip(model.term_names, model.coefficients, std_errors):
                rows.append({
                    "group": g.group,
                    "model": fit.model_kind,
                    "term": term,
                    "estimate": float(est),
                    "std_error": float(se),
                })
    return pd.DataFrame(rows, columns=COEFFICIENT_COLUMNS)


def fit_summary_table(gated: Iterable[GatedGroup]) -> pd.DataFrame:
    """One row of fit statistics per group whose full model was accepted.

    pseudo_r2 = 1 - deviance / deviance_reduced; it is NaN when the reduced
    model was rejected.
    """
    rows = []
    for g in gated:
        if not g.accepted:
            continue
        model = g.full.model
        if g.reduced_decision.accepted:
            dev_reduced = float(g.reduced.model.deviance)
            pseudo_r2 = 1.0 - model.deviance / dev_reduced if dev_reduced > 0 else np.nan
        else:
            dev_reduced = np.nan
            pseudo_r2 = np.nan
        rows.append({
            "group": g.group,
            "n_obs": g.full.n_obs,
            "n_events": g.full.n_events,
            "loglik": model.loglike,
            "aic": model.aic,
            "edf": model.edf,
            "deviance": model.deviance,
            "deviance_reduced": dev_reduced,
            "pseudo_r2": pseudo_r2,
            "pooled": g.pooled,
            "low_flexibility": model.low_flexibility,
            "formula": g.full.formula,
        })
    return pd.DataFrame(rows, columns=FIT_SUMMARY_COLUMNS)


def model_report_table(decisions: Iterable[AcceptanceDecision]) -> pd.DataFrame:
    """Gate decision of every model, accepted or not."""
    return pd.DataFrame([d.to_record() for d in decisions], columns=REPORT_COLUMNS)


def _samples_frame(estimates: List[MarginalEffectEstimate]) -> pd.DataFrame:
    frames = []
    for est in estimates:
        if est.samples is None:
            continue
        frames.append(pd.DataFrame({
            "group": est.group,
            "scenario": est.scenario,
            "iteration": np.arange(1, len(est.samples) + 1),
            "value": est.samples,
        }))
    if not frames:
        return pd.DataFrame(columns=SAMPLE_COLUMNS)
    return pd.concat(frames, ignore_index=True)


def marginal_effect_tables(estimates: Iterable[MarginalEffectEstimate]) -> Dict[str, pd.DataFrame]:
    """Split estimates into AME and rAME tables plus long-format samples.

    Returns:
        Dictionary with keys ame, rame, ame_samples and rame_samples
    """
    estimates = list(estimates)
    tables = {}
    for relative, name in ((False, "ame"), (True, "rame")):
        subset = [e for e in estimates if e.relative == relative]
        tables[name] = pd.DataFrame(
            [{k: e.to_record()[k] for k in EFFECT_COLUMNS} for e in subset],
            columns=EFFECT_COLUMNS,
        )
        tables[f"{name}_samples"] = _samples_frame(subset)
    return tables


def save_result_tables(tables: Dict[str, pd.DataFrame], outdir: str) -> Dict[str, str]:
    """Write every table as {name}.csv into outdir.

    Returns:
        Mapping of table name to written path
    """
    paths = {}
    for name, df in tables.items():
        paths[name] = save_table(df, outdir, name)
        logger.info(f"Saved {name} ({len(df):,} rows) to {paths[name]}")
    return paths
