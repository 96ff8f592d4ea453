"""
Plotting and visualization utilities for dynamic GAMs.

This module provides ArviZ-based sampler diagnostic plots, posterior
predictive and residual plots for fitted models, and plots of rolling
forecast evaluations and model comparisons.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import arviz as az
import matplotlib.pyplot as plt
import numpy as np

from .diagnostics import compute_dunn_smyth_residuals

if TYPE_CHECKING:
    from matplotlib.axes import Axes
    from matplotlib.figure import Figure

    from .estimators import DynamicGAM
    from .evaluation import ModelComparison, RollingEvaluation


def plot_trace(
    model: DynamicGAM,
    var_names: list[str] | None = None,
    compact: bool = True,
    figsize: tuple[float, float] | None = None,
    **kwargs: Any,
) -> tuple[Figure, Axes]:
    """
    Create trace plots for model parameters.

    Trace plots show the MCMC sampling history and posterior distributions
    for each parameter, useful for diagnosing convergence.

    Parameters
    ----------
    model : DynamicGAM
        A fitted dynamic GAM.
    var_names : list[str], optional
        Parameter names to plot. If None, plots the coefficients and the
        trend and dispersion parameters.
    compact : bool, optional
        If True, combines chains into a single distribution. Default is True.
    figsize : tuple[float, float], optional
        Figure size as (width, height).
    **kwargs
        Additional arguments passed to az.plot_trace.

    Returns
    -------
    tuple[Figure, Axes]
        Matplotlib Figure and Axes objects.

    Examples
    --------
    >>> from bayesiandynamicgam import DynamicGAM
    >>> from bayesiandynamicgam.plots import plot_trace
    >>> model = DynamicGAM(trend_model="AR1")
    >>> model.fit(data)
    >>> fig, ax = plot_trace(model)
    >>> plt.show()
    """
    if model.idata is None:
        raise ValueError("Model must be fitted before plotting")

    if var_names is None:
        var_names = _default_var_names(model)

    axes = az.plot_trace(
        model.idata,
        var_names=var_names,
        compact=compact,
        figsize=figsize,
        **kwargs,
    )

    fig = plt.gcf()
    fig.tight_layout()

    return fig, axes


def plot_energy(
    model: DynamicGAM,
    figsize: tuple[float, float] | None = None,
    **kwargs: Any,
) -> tuple[Figure, Axes]:
    """
    Create energy plot for diagnosing HMC sampling.

    Parameters
    ----------
    model : DynamicGAM
        A fitted dynamic GAM.
    figsize : tuple[float, float], optional
        Figure size.
    **kwargs
        Additional arguments passed to az.plot_energy.

    Returns
    -------
    tuple[Figure, Axes]
        Matplotlib Figure and Axes objects.
    """
    if model.idata is None:
        raise ValueError("Model must be fitted before plotting")

    ax = az.plot_energy(model.idata, figsize=figsize, **kwargs)

    fig = plt.gcf()
    fig.tight_layout()

    return fig, ax


def _default_var_names(model: DynamicGAM) -> list[str]:
    candidates = ["beta", "sigma", "ar", "alpha_gp", "rho_gp", "phi"]
    return [name for name in candidates if name in model.idata.posterior]


def plot_forecast(
    model: DynamicGAM,
    series: str,
    hdi_prob: float = 0.9,
    figsize: tuple[float, float] | None = None,
    **kwargs: Any,
) -> tuple[Figure, Axes]:
    """
    Plot posterior predictive draws for one series against the observations.

    Parameters
    ----------
    model : DynamicGAM
        A fitted dynamic GAM.
    series : str
        Series name.
    hdi_prob : float, optional
        Width of the central predictive interval. Default is 0.9.
    figsize : tuple[float, float], optional
        Figure size.
    **kwargs
        Additional arguments passed to the observation scatter.

    Returns
    -------
    tuple[Figure, Axes]
        Matplotlib Figure and Axes objects.
    """
    ypred = model.posterior_predictive(series)
    draws = ypred.stack(sample=["chain", "draw"]).transpose("sample", "time").values
    time = ypred.coords["time"].values

    tail = (1 - hdi_prob) / 2
    lo, median, hi = np.nanquantile(draws, [tail, 0.5, 1 - tail], axis=0)

    if figsize is None:
        figsize = (10, 5)

    fig, ax = plt.subplots(figsize=figsize)

    ax.fill_between(time, lo, hi, color="#DCBCBC", label=f"{hdi_prob:.0%} interval")
    ax.plot(time, median, color="#8F2727", label="Median")

    truth = model.truth_[:, model.series_levels_.index(str(series))]
    ax.scatter(time, truth, color="black", s=12, label="Observed", **kwargs)

    if model.n_train_ < len(time):
        ax.axvline(x=model.n_train_ + 0.5, color="grey", linestyle="--", alpha=0.7)

    ax.set_xlabel("Time")
    ax.set_ylabel("Count")
    ax.set_title(f"Posterior Predictive: {series}")
    ax.legend()

    return fig, ax


def plot_residuals(
    model: DynamicGAM,
    series: str | None = None,
    random_seed: int | None = None,
    figsize: tuple[float, float] | None = None,
    **kwargs: Any,
) -> tuple[Figure, Axes]:
    """
    Plot Dunn-Smyth residuals over time.

    Parameters
    ----------
    model : DynamicGAM
        A fitted dynamic GAM.
    series : str, optional
        Series to plot. If None, plots every series.
    random_seed : int, optional
        Seed for the residual randomization.
    figsize : tuple[float, float], optional
        Figure size.
    **kwargs
        Additional arguments passed to ax.plot.

    Returns
    -------
    tuple[Figure, Axes]
        Matplotlib Figure and Axes objects.
    """
    residuals = compute_dunn_smyth_residuals(model, random_seed=random_seed)
    if series is not None:
        residuals = residuals[residuals["series"] == str(series)]
        if residuals.empty:
            raise ValueError(f"Unknown series '{series}'")

    if figsize is None:
        figsize = (10, 5)

    fig, ax = plt.subplots(figsize=figsize)

    for name, group in residuals.groupby("series", sort=False):
        ax.plot(group["time_index"], group["residual"], marker="o", ms=3, label=name, **kwargs)

    ax.axhline(y=0, color="red", linestyle="--", alpha=0.5)
    ax.set_xlabel("Time")
    ax.set_ylabel("Dunn-Smyth Residual")
    ax.set_title("Randomized Quantile Residuals")
    ax.legend()

    return fig, ax


def plot_rolling_evaluation(
    evaluation: RollingEvaluation,
    include_total: bool = False,
    figsize: tuple[float, float] | None = None,
    **kwargs: Any,
) -> tuple[Figure, Axes]:
    """
    Plot mean DRPS by forecast horizon for each series.

    Parameters
    ----------
    evaluation : RollingEvaluation
        Result of `roll_eval_model`.
    include_total : bool, optional
        If True, also plot the cross-series total. Default is False.
    figsize : tuple[float, float], optional
        Figure size.
    **kwargs
        Additional arguments passed to ax.plot.

    Returns
    -------
    tuple[Figure, Axes]
        Matplotlib Figure and Axes objects.
    """
    if figsize is None:
        figsize = (8, 5)

    fig, ax = plt.subplots(figsize=figsize)

    curves = dict(evaluation.series_evals)
    if include_total:
        curves["Total"] = evaluation.total

    for name, series_eval in curves.items():
        horizon_drps = series_eval.drps_horizon_summary
        ax.plot(horizon_drps.index, horizon_drps.values, marker="o", label=name, **kwargs)

    ax.set_xticks(np.arange(1, evaluation.fc_horizon + 1))
    ax.set_xlabel("Forecast Horizon")
    ax.set_ylabel("Mean DRPS")
    ax.set_title("Rolling Forecast Evaluation")
    ax.legend()

    return fig, ax


def plot_model_comparison(
    comparison: ModelComparison,
    labels: tuple[str, str] = ("Model 1", "Model 2"),
    figsize: tuple[float, float] | None = None,
) -> tuple[Figure, np.ndarray]:
    """
    Plot paired rolling evaluation scores of two models.

    The left panel shows boxplots of the per-timepoint total DRPS for both
    models; the right panel shows the total mean DRPS by forecast horizon.

    Parameters
    ----------
    comparison : ModelComparison
        Result of `compare_models`.
    labels : tuple[str, str], optional
        Model labels. Default is ("Model 1", "Model 2").
    figsize : tuple[float, float], optional
        Figure size.

    Returns
    -------
    tuple[Figure, np.ndarray]
        Matplotlib Figure and array of two Axes.
    """
    if figsize is None:
        figsize = (12, 5)

    fig, axes = plt.subplots(1, 2, figsize=figsize)

    paired = comparison.paired_scores
    scores = [
        paired["model1_drps"].dropna().values,
        paired["model2_drps"].dropna().values,
    ]
    axes[0].boxplot(scores)
    axes[0].set_xticks([1, 2], labels=list(labels))
    axes[0].set_ylabel("Total DRPS per Timepoint")
    axes[0].set_title("Rolling Evaluation Scores")

    for label, evaluation, color in zip(
        labels,
        (comparison.evaluation1, comparison.evaluation2),
        ("#8F2727", "#1F4E79"),
    ):
        horizon_drps = evaluation.total.drps_horizon_summary
        axes[1].plot(
            horizon_drps.index, horizon_drps.values, marker="o", color=color, label=label
        )

    axes[1].set_xticks(np.arange(1, comparison.evaluation1.fc_horizon + 1))
    axes[1].set_xlabel("Forecast Horizon")
    axes[1].set_ylabel("Mean Total DRPS")
    axes[1].set_title("DRPS by Horizon")
    axes[1].legend()

    fig.tight_layout()

    return fig, axes
