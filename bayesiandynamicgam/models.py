"""
Low-level model building functions for Bayesian dynamic GAMs.

This module builds the formula design matrix with formulae (the formula
engine behind Bambi) and the PyMC model combining that linear predictor
with a latent trend process and a count observation family.
"""

from __future__ import annotations

import logging
from typing import Any

import arviz as az
import numpy as np
import pandas as pd
import pymc as pm
import pytensor.tensor as pt
from formulae import design_matrices

from .families import TWEEDIE_POWER, Family, TrendModel
from .utils import split_formula

logger = logging.getLogger(__name__)

# Inverse-gamma prior on the GP length scale
GP_RHO_PRIOR = {"alpha": 1.499007, "beta": 5.670433}


def build_design_matrix(
    data: pd.DataFrame,
    formula: str,
):
    """
    Build the fixed-effects design matrix for a formula.

    Only the right-hand side of the formula is used; the response is
    handled separately so rows with a missing response are kept.

    Parameters
    ----------
    data : pd.DataFrame
        Data containing every covariate used in the formula.
    formula : str
        Model formula, e.g. ``"y ~ 1 + bs(season, df=4)"``.

    Returns
    -------
    tuple[np.ndarray, list[str], formulae.matrices.CommonEffectsMatrix]
        The design matrix ``(n_rows, n_coef)``, the coefficient names and
        the formulae design object.
    """
    _, rhs = split_formula(formula)

    design = design_matrices(rhs, data, na_action="error")
    if design.group is not None:
        raise ValueError(
            "Group-specific terms ('|') are not supported in dynamic GAM formulas"
        )
    if design.common is None:
        raise ValueError(f"Formula '{formula}' has no fixed-effect terms")

    common = design.common
    coef_names = []
    for name, slc in common.slices.items():
        width = slc.stop - slc.start
        if width == 1:
            coef_names.append(name)
        else:
            coef_names.extend(f"{name}[{i}]" for i in range(width))

    return np.asarray(common.design_matrix, dtype=np.float64), coef_names, common


def build_dynamic_gam_model(
    y: np.ndarray,
    X: np.ndarray,
    series_levels: list[str],
    coef_names: list[str],
    family: str | Family = "poisson",
    trend_model: str | TrendModel = "AR1",
    priors: dict[str, Any] | None = None,
) -> pm.Model:
    """
    Build a PyMC model for a dynamic GAM.

    The model structure is::

        log(mu[s, t]) = X[s, t] @ beta + trend[s, t]
        y[t, s] ~ family(mu[s, t])

    for every observed (non-missing) ``y``. Unobserved cells (missing data
    and test timepoints) still receive a latent trend, so the posterior
    covers them.

    Parameters
    ----------
    y : np.ndarray
        Responses of shape ``(n_time, n_series)``; NaN where unobserved.
    X : np.ndarray
        Design matrix of shape ``(n_series, n_time, n_coef)``.
    series_levels : list[str]
        Series names.
    coef_names : list[str]
        Coefficient names (columns of ``X``).
    family : str or Family, optional
        Observation family. Default is "poisson".
    trend_model : str or TrendModel, optional
        Latent trend model. Default is "AR1".
    priors : dict, optional
        Custom prior specifications. Keys can include:
        - "beta": dict with "sigma" for the coefficients
        - "intercept": dict with "mu" and "sigma" for a coefficient named
          "Intercept"
        - "sigma": dict with "sigma" for the trend innovation scale
        - "ar": dict with "mu" and "sigma" for AR coefficients
        - "trend_init": dict with "sigma" for the initial trend state(s)
        - "gp_alpha": dict with "sigma" for the GP marginal scale
        - "gp_rho": dict with "alpha" and "beta" for the GP length scale
        - "phi": dict with "alpha" and "beta" for the dispersion

    Returns
    -------
    pm.Model
        A PyMC model ready for sampling.
    """
    family = Family.parse(family)
    trend_model = TrendModel.parse(trend_model)
    priors = priors or {}

    y = np.asarray(y, dtype=np.float64)
    X = np.asarray(X, dtype=np.float64)
    n_time, n_series = y.shape

    if X.shape[:2] != (n_series, n_time):
        raise ValueError(
            f"X must have shape ({n_series}, {n_time}, n_coef), got {X.shape}"
        )
    if X.shape[2] != len(coef_names):
        raise ValueError("coef_names must match the last dimension of X")

    obs_series, obs_time = np.nonzero(~np.isnan(y.T))
    y_obs = y.T[obs_series, obs_time]

    coords = {
        "series": list(series_levels),
        "time": np.arange(1, n_time + 1),
        "coef": list(coef_names),
        "obs": np.arange(len(y_obs)),
    }
    if trend_model.ar_order:
        coords["lag"] = np.arange(1, trend_model.ar_order + 1)

    # Intercept centred on the log of the mean count
    beta_mu = np.zeros(len(coef_names))
    beta_sigma = np.full(len(coef_names), priors.get("beta", {}).get("sigma", 1.0))
    if "Intercept" in coef_names:
        idx = coef_names.index("Intercept")
        intercept_prior = priors.get("intercept", {})
        beta_mu[idx] = intercept_prior.get("mu", np.log(max(np.nanmean(y), 0.1)))
        beta_sigma[idx] = intercept_prior.get("sigma", 2.0)

    with pm.Model(coords=coords) as model:
        beta = pm.Normal("beta", mu=beta_mu, sigma=beta_sigma, dims="coef")
        eta = pt.sum(pt.as_tensor_variable(X) * beta, axis=-1)

        trend = _build_trend(trend_model, n_series, n_time, priors)
        if trend is not None:
            eta = eta + trend

        mu = pt.exp(eta[obs_series, obs_time])

        if family is Family.POISSON:
            pm.Poisson("y", mu=mu, observed=y_obs, dims="obs")

        elif family is Family.NEGATIVE_BINOMIAL:
            phi = _build_dispersion(priors)
            pm.NegativeBinomial(
                "y", mu=mu, alpha=phi[obs_series], observed=y_obs, dims="obs"
            )

        elif family is Family.TWEEDIE_POISSON:
            # Gamma mixing distribution moment-matched to Tweedie(mu, p, phi)
            phi = _build_dispersion(priors)[obs_series]
            rate = pm.Gamma(
                "tweedie_rate",
                alpha=mu ** (2 - TWEEDIE_POWER) / phi,
                beta=mu ** (1 - TWEEDIE_POWER) / phi,
                dims="obs",
            )
            pm.Poisson("y", mu=rate, observed=y_obs, dims="obs")

        else:
            raise ValueError(f"Unhandled family: {family!r}")

    logger.debug(
        "Built %s model with %s trend: %d series, %d timepoints, %d observations",
        family.value,
        trend_model.value,
        n_series,
        n_time,
        len(y_obs),
    )
    return model


def _build_dispersion(priors: dict[str, Any]):
    phi_prior = priors.get("phi", {"alpha": 2, "beta": 0.1})
    return pm.Gamma(
        "phi",
        alpha=phi_prior.get("alpha", 2),
        beta=phi_prior.get("beta", 0.1),
        dims="series",
    )


def _build_trend(
    trend_model: TrendModel,
    n_series: int,
    n_time: int,
    priors: dict[str, Any],
):
    """Add the latent trend to the current model context; None for no trend."""
    init_sigma = priors.get("trend_init", {}).get("sigma", 1.0)

    if trend_model is TrendModel.NONE:
        return None

    if trend_model is TrendModel.RW:
        sigma = pm.HalfNormal(
            "sigma", sigma=priors.get("sigma", {}).get("sigma", 0.5), dims="series"
        )
        return pm.GaussianRandomWalk(
            "trend",
            mu=0.0,
            sigma=sigma,
            init_dist=pm.Normal.dist(0.0, init_sigma, shape=(n_series,)),
            dims=("series", "time"),
        )

    if trend_model in (TrendModel.AR1, TrendModel.AR2, TrendModel.AR3):
        order = trend_model.ar_order
        ar_prior = priors.get("ar", {})
        sigma = pm.HalfNormal(
            "sigma", sigma=priors.get("sigma", {}).get("sigma", 0.5), dims="series"
        )
        ar = pm.Normal(
            "ar",
            mu=ar_prior.get("mu", 0.0),
            sigma=ar_prior.get("sigma", 0.5),
            dims=("series", "lag"),
        )
        return pm.AR(
            "trend",
            rho=ar,
            sigma=sigma,
            constant=False,
            ar_order=order,
            init_dist=pm.Normal.dist(0.0, init_sigma, shape=(n_series, order)),
            dims=("series", "time"),
        )

    if trend_model is TrendModel.GP:
        alpha_gp = pm.HalfNormal(
            "alpha_gp",
            sigma=priors.get("gp_alpha", {}).get("sigma", 0.5),
            dims="series",
        )
        rho_prior = priors.get("gp_rho", GP_RHO_PRIOR)
        rho_gp = pm.InverseGamma(
            "rho_gp",
            alpha=rho_prior.get("alpha", GP_RHO_PRIOR["alpha"]),
            beta=rho_prior.get("beta", GP_RHO_PRIOR["beta"]),
            dims="series",
        )
        time_x = np.arange(1, n_time + 1, dtype=np.float64)[:, None]

        components = []
        for s in range(n_series):
            cov = alpha_gp[s] ** 2 * pm.gp.cov.ExpQuad(1, ls=rho_gp[s])
            gp = pm.gp.Latent(cov_func=cov)
            components.append(gp.prior(f"trend_gp_{s}", X=time_x))

        return pm.Deterministic("trend", pt.stack(components), dims=("series", "time"))

    raise ValueError(f"Unhandled trend model: {trend_model!r}")


def fit_model(
    model: pm.Model,
    draws: int = 1000,
    tune: int = 1000,
    chains: int = 4,
    target_accept: float = 0.9,
    random_seed: int | None = None,
    **kwargs: Any,
) -> az.InferenceData:
    """
    Fit a PyMC model using MCMC.

    Parameters
    ----------
    model : pm.Model
        The model to fit.
    draws : int, optional
        Number of posterior samples per chain. Default is 1000.
    tune : int, optional
        Number of tuning samples. Default is 1000.
    chains : int, optional
        Number of MCMC chains. Default is 4.
    target_accept : float, optional
        Target acceptance probability for NUTS. Default is 0.9.
    random_seed : int, optional
        Random seed for reproducibility.
    **kwargs
        Additional arguments passed to the sampler.

    Returns
    -------
    az.InferenceData
        ArviZ InferenceData object with posterior samples.
    """
    # Log likelihood is needed for model comparison (LOO, WAIC)
    idata_kwargs = dict(kwargs.pop("idata_kwargs", {}))
    idata_kwargs.setdefault("log_likelihood", True)

    logger.info(
        "Sampling %d chains x %d draws (%d tuning)", chains, draws, tune
    )
    with model:
        idata = pm.sample(
            draws=draws,
            tune=tune,
            chains=chains,
            target_accept=target_accept,
            random_seed=random_seed,
            return_inferencedata=True,
            idata_kwargs=idata_kwargs,
            **kwargs,
        )

    return idata


def compute_waic(idata: az.InferenceData) -> az.ELPDData:
    """
    Compute WAIC (Widely Applicable Information Criterion) for model comparison.

    Parameters
    ----------
    idata : az.InferenceData
        InferenceData object with log_likelihood group.

    Returns
    -------
    az.ELPDData
        WAIC computation results.
    """
    return az.waic(idata)


def compute_loo(idata: az.InferenceData) -> az.ELPDData:
    """
    Compute LOO-CV (Leave-One-Out Cross-Validation) for model comparison.

    Parameters
    ----------
    idata : az.InferenceData
        InferenceData object with log_likelihood group.

    Returns
    -------
    az.ELPDData
        LOO-CV computation results.
    """
    return az.loo(idata)


def extract_parameter_summary(
    idata: az.InferenceData,
    var_names: list[str] | None = None,
    filter_vars: str | None = None,
    hdi_prob: float = 0.94,
) -> pd.DataFrame:
    """
    Extract summary statistics for model parameters.

    Parameters
    ----------
    idata : az.InferenceData
        InferenceData object with posterior samples.
    var_names : list[str], optional
        Parameter names to include. If None, includes the coefficients and
        every trend and dispersion parameter present.
    filter_vars : str, optional
        Passed to ``az.summary`` ("like" or "regex").
    hdi_prob : float, optional
        Probability mass for HDI. Default is 0.94.

    Returns
    -------
    pd.DataFrame
        Summary statistics for parameters.
    """
    if var_names is None:
        candidates = ["beta", "sigma", "ar", "alpha_gp", "rho_gp", "phi"]
        var_names = [v for v in candidates if v in idata.posterior]

    return az.summary(idata, var_names=var_names, filter_vars=filter_vars, hdi_prob=hdi_prob)  # type: ignore
