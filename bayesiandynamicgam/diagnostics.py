"""
MCMC sampler diagnostics and residuals for fitted dynamic GAMs.

The sampler checks read ``sample_stats`` from the NUTS output stored on
``model.idata``. Each check logs its outcome and returns True when no
problem was found.
"""

from __future__ import annotations

import logging
import warnings
from typing import TYPE_CHECKING

import arviz as az
import numpy as np
import pandas as pd
from scipy import stats

if TYPE_CHECKING:
    from .estimators import DynamicGAM

logger = logging.getLogger(__name__)

EBFMI_THRESHOLD = 0.2
RHAT_THRESHOLD = 1.05
# Minimum ratio of bulk effective sample size to total draws
ESS_RATIO_THRESHOLD = 0.001


def _sample_stat(idata: az.InferenceData, name: str) -> np.ndarray:
    if "sample_stats" not in idata.groups() or name not in idata.sample_stats:
        raise ValueError(f"InferenceData has no sample statistic '{name}'")
    return idata.sample_stats[name].values


def check_divergences(idata: az.InferenceData) -> bool:
    """Check for divergent transitions after warmup."""
    diverging = _sample_stat(idata, "diverging").astype(bool)
    n, total = int(diverging.sum()), diverging.size

    logger.info(
        "%d of %d iterations ended with a divergence (%.1f%%)", n, total, 100 * n / total
    )
    if n > 0:
        warnings.warn(
            f"{n} divergent transitions after warmup. "
            "Try increasing target_accept to remove the divergences.",
            UserWarning,
        )
    return n == 0


def check_treedepth(idata: az.InferenceData, max_treedepth: int = 10) -> bool:
    """Check how many iterations saturated the maximum tree depth."""
    depth = _sample_stat(idata, "tree_depth")
    n, total = int((depth >= max_treedepth).sum()), depth.size

    logger.info(
        "%d of %d iterations saturated the maximum tree depth of %d (%.1f%%)",
        n,
        total,
        max_treedepth,
        100 * n / total,
    )
    if n > 0:
        warnings.warn(
            f"{n} iterations saturated the maximum tree depth of {max_treedepth}. "
            "Run again with a larger max_treedepth to avoid saturation.",
            UserWarning,
        )
    return n == 0


def check_energy(idata: az.InferenceData) -> bool:
    """
    Check the energy Bayesian fraction of missing information per chain.

    E-BFMI below 0.2 indicates the sampler is struggling to explore the
    posterior and the model may need to be reparameterized.
    """
    _sample_stat(idata, "energy")
    bfmi = np.atleast_1d(az.bfmi(idata))

    low = np.flatnonzero(bfmi < EBFMI_THRESHOLD)
    for chain in low:
        logger.info("Chain %d: E-BFMI = %.3f", chain, bfmi[chain])
    if len(low):
        warnings.warn(
            f"E-BFMI below {EBFMI_THRESHOLD} in {len(low)} chain(s); "
            "you may need to reparameterize the model.",
            UserWarning,
        )
    else:
        logger.info("E-BFMI indicated no pathological behavior")
    return len(low) == 0


def _convergence_summary(
    idata: az.InferenceData,
    var_names: list[str] | None,
) -> pd.DataFrame:
    return az.summary(idata, var_names=var_names, kind="diagnostics")


def check_rhat(
    idata: az.InferenceData,
    var_names: list[str] | None = None,
    threshold: float = RHAT_THRESHOLD,
) -> bool:
    """Check that the split R-hat of every parameter is below ``threshold``."""
    summary = _convergence_summary(idata, var_names)
    rhat = summary["r_hat"].fillna(1.0)
    bad = rhat[(rhat > threshold) | np.isinf(rhat)]

    for name, value in bad.items():
        logger.info("Rhat for parameter %s is %.3f", name, value)
    if len(bad):
        warnings.warn(
            f"Rhat above {threshold} for {len(bad)} parameter(s); "
            "the chains very likely have not mixed.",
            UserWarning,
        )
    else:
        logger.info("Rhat looks reasonable for all parameters")
    return len(bad) == 0


def check_ess(
    idata: az.InferenceData,
    var_names: list[str] | None = None,
    min_ratio: float = ESS_RATIO_THRESHOLD,
) -> bool:
    """Check the bulk effective sample size relative to the number of draws."""
    summary = _convergence_summary(idata, var_names)
    posterior = idata.posterior
    n_total = posterior.sizes["chain"] * posterior.sizes["draw"]

    ratio = (summary["ess_bulk"] / n_total).fillna(1.0)
    bad = ratio[ratio < min_ratio]

    for name, value in bad.items():
        logger.info("ESS / draws for parameter %s is %.4f", name, value)
    if len(bad):
        warnings.warn(
            f"ESS / draws below {min_ratio} for {len(bad)} parameter(s); "
            "the effective sample size has likely been overestimated.",
            UserWarning,
        )
    else:
        logger.info("ESS / draws looks reasonable for all parameters")
    return len(bad) == 0


def check_all_diagnostics(
    model: "DynamicGAM",
    max_treedepth: int = 10,
    var_names: list[str] | None = None,
) -> dict[str, bool]:
    """
    Run all sampler diagnostics on a fitted model.

    Parameters
    ----------
    model : DynamicGAM
        A fitted model.
    max_treedepth : int, optional
        Maximum NUTS tree depth used for sampling. Default is 10.
    var_names : list[str], optional
        Parameters for the R-hat and ESS checks. Default is all
        posterior variables.

    Returns
    -------
    dict[str, bool]
        Pass (True) or fail (False) for ``ess``, ``rhat``, ``divergences``,
        ``treedepth`` and ``energy``.
    """
    model._check_is_fitted()
    idata = model.idata

    return {
        "ess": check_ess(idata, var_names),
        "rhat": check_rhat(idata, var_names),
        "divergences": check_divergences(idata),
        "treedepth": check_treedepth(idata, max_treedepth),
        "energy": check_energy(idata),
    }


def dunn_smyth_residuals(
    truth: np.ndarray,
    draws: np.ndarray,
    rng: np.random.Generator,
) -> np.ndarray:
    """
    Randomized quantile (Dunn-Smyth) residuals for discrete observations.

    For each observation ``y``, a uniform value is drawn between the
    predictive CDF at ``y - 1`` and at ``y`` and mapped through the standard
    normal quantile function. The predictive CDF is the empirical CDF of the
    posterior predictive draws.

    Parameters
    ----------
    truth : np.ndarray
        Observations, shape ``(n_time,)``; NaN where missing.
    draws : np.ndarray
        Posterior predictive draws, shape ``(n_draws, n_time)``.
    rng : np.random.Generator
        Random number generator for the randomization.

    Returns
    -------
    np.ndarray
        Residuals, shape ``(n_time,)``; NaN where the truth is missing.
    """
    truth = np.asarray(truth, dtype=np.float64)
    draws = np.asarray(draws, dtype=np.float64)
    if draws.ndim != 2 or draws.shape[1] != len(truth):
        raise ValueError(
            f"draws must have shape (n_draws, {len(truth)}), got {draws.shape}"
        )

    upper = np.mean(draws <= truth, axis=0)
    lower = np.mean(draws <= truth - 1, axis=0)
    u = rng.uniform(lower, upper)

    # Keep the quantiles finite when the truth falls outside every draw
    eps = 1.0 / (2 * draws.shape[0])
    u = np.clip(u, eps, 1 - eps)

    residuals = stats.norm.ppf(u)
    residuals[np.isnan(truth)] = np.nan
    return residuals


def compute_dunn_smyth_residuals(
    model: "DynamicGAM",
    random_seed: int | None = None,
) -> pd.DataFrame:
    """
    Dunn-Smyth residuals for every series over the training period.

    Parameters
    ----------
    model : DynamicGAM
        A fitted model.
    random_seed : int, optional
        Seed for the residual randomization.

    Returns
    -------
    pd.DataFrame
        Long table with ``series``, ``time_index`` and ``residual``.
    """
    model._check_is_fitted()

    inputs = model.get_forecast_inputs()
    if inputs.ypred is None:
        raise ValueError("Model has no posterior predictive draws")

    rng = np.random.default_rng(random_seed)
    n_train = inputs.n_train

    frames = []
    for s, series in enumerate(inputs.series_levels):
        residuals = dunn_smyth_residuals(
            inputs.truth[:n_train, s], inputs.ypred[:, s, :n_train], rng
        )
        frames.append(
            pd.DataFrame(
                {
                    "series": series,
                    "time_index": np.arange(1, n_train + 1),
                    "residual": residuals,
                }
            )
        )
    return pd.concat(frames, ignore_index=True)
