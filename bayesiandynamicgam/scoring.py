"""
Proper scoring rules for discrete probabilistic forecasts.

The Discrete Rank Probability Score (DRPS) is the discrete analogue of the
CRPS: the sum, over the integer support, of squared differences between the
empirical forecast CDF and the step function of the observed value.

References
----------
Czado, C., Gneiting, T. and Held, L. (2009). Predictive model assessment for
count data. Biometrics 65(4), 1254-1261.
"""

from __future__ import annotations

import numpy as np
import pandas as pd


def drps_score(
    truth: float,
    draws: np.ndarray,
    lower: float = 0,
) -> float:
    """
    Compute the Discrete Rank Probability Score of a sample forecast.

    The score is ``sum_y (1{y >= truth} - F(y))^2`` over integers ``y``,
    where ``F`` is the empirical CDF of ``draws``. Both functions are step
    functions that only change at the draw values and at the truth, so the
    sum is taken over those breakpoints, weighting each constant stretch by
    the number of integers it spans. This is exact and never enumerates
    the support, however large the draws are.

    Parameters
    ----------
    truth : float
        Observed count. NaN yields NaN.
    draws : np.ndarray
        Forecast draws (posterior predictive samples), shape ``(n,)``.
    lower : float, optional
        Lower bound of the support (0 for counts). Draws and truth below it
        are truncated to it. Default is 0.

    Returns
    -------
    float
        The DRPS (non-negative), or NaN when the truth is missing.

    Examples
    --------
    >>> drps_score(2, np.array([0, 0, 0]))
    2.0
    >>> drps_score(3, np.array([3, 3, 3]))
    0.0
    """
    if truth is None or np.isnan(truth):
        return np.nan

    draws = np.asarray(draws, dtype=np.float64).ravel()
    draws = draws[~np.isnan(draws)]
    if len(draws) == 0:
        raise ValueError("Cannot score a forecast without any non-missing draws")

    # F(y) for integer y only depends on floor(draw); 1{y >= truth} on ceil(truth)
    draws = np.maximum(np.floor(draws), lower)
    truth = max(np.ceil(truth), lower)

    sorted_draws = np.sort(draws)
    breakpoints = np.union1d(sorted_draws, [truth])

    ecdf = np.searchsorted(sorted_draws, breakpoints, side="right") / len(sorted_draws)
    indicator = (breakpoints >= truth).astype(np.float64)

    # Beyond the last breakpoint both functions equal 1
    widths = np.diff(breakpoints)
    return float(np.sum((indicator[:-1] - ecdf[:-1]) ** 2 * widths))


def interval_coverage(
    truth: float,
    draws: np.ndarray,
    interval_width: float = 0.9,
) -> float:
    """
    Indicator of whether the truth lies inside the central forecast interval.

    Parameters
    ----------
    truth : float
        Observed value. NaN yields NaN.
    draws : np.ndarray
        Forecast draws.
    interval_width : float, optional
        Nominal width of the central interval. Default 0.9 gives the
        empirical 5th and 95th percentiles.

    Returns
    -------
    float
        1.0 if ``q_lo <= truth <= q_hi``, else 0.0; NaN if truth is missing.
    """
    if not 0 < interval_width < 1:
        raise ValueError("interval_width must lie strictly between 0 and 1")

    if truth is None or np.isnan(truth):
        return np.nan

    tail = (1 - interval_width) / 2
    lo, hi = np.nanquantile(np.asarray(draws, dtype=np.float64), [tail, 1 - tail])
    return float(lo <= truth <= hi)


def score_forecast(
    truth: np.ndarray,
    draws: np.ndarray,
    interval_width: float = 0.9,
) -> pd.DataFrame:
    """
    Score a multi-step forecast for a single series.

    Parameters
    ----------
    truth : np.ndarray
        Observed values, shape ``(horizon,)``; NaN where missing.
    draws : np.ndarray
        Forecast draws, shape ``(n_samples, horizon)``.
    interval_width : float, optional
        Nominal interval width for coverage. Default is 0.9.

    Returns
    -------
    pd.DataFrame
        One row per horizon step with columns ``eval_horizon`` (1-based),
        ``drps`` and ``in_interval``.
    """
    truth = np.asarray(truth, dtype=np.float64)
    draws = np.asarray(draws, dtype=np.float64)

    if draws.ndim != 2 or draws.shape[1] != len(truth):
        raise ValueError(
            f"draws must have shape (n_samples, {len(truth)}), got {draws.shape}"
        )

    return pd.DataFrame(
        {
            "eval_horizon": np.arange(1, len(truth) + 1),
            "drps": [drps_score(y, draws[:, h]) for h, y in enumerate(truth)],
            "in_interval": [
                interval_coverage(y, draws[:, h], interval_width)
                for h, y in enumerate(truth)
            ],
        }
    )


def sum_or_na(values: pd.Series | np.ndarray) -> float:
    """Sum ignoring missing values; NaN if every value is missing."""
    return float(pd.Series(values, dtype=np.float64).sum(min_count=1))
