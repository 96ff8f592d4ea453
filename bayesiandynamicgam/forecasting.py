"""
Forecast synthesis from a fitted dynamic GAM.

Forecasts are generated from an immutable snapshot of the posterior
(`ForecastInputs`) so they can be shipped to worker processes. Starting
from a cutoff timepoint, the latent trend is propagated forward with its
own stochastic process, added to the formula linear predictor for the
forecast window, passed through the log link and simulated from the
observation family.

All posterior arrays use the axis order ``(draw, series, time)``; time is
the 0-based position in the unified time index (timepoint ``t`` lives at
position ``t - 1``).
"""

from __future__ import annotations

from dataclasses import dataclass, fields

import numpy as np
import xarray as xr
from scipy.linalg import cho_factor, cho_solve

from .families import Family, TrendModel, simulate_observations

# Diagonal jitter (relative to the GP marginal variance) for Cholesky stability
GP_JITTER = 1e-6


@dataclass(frozen=True, eq=False)
class ForecastInputs:
    """
    Read-only posterior snapshot needed to forecast from any cutoff.

    Attributes
    ----------
    series_levels : tuple[str, ...]
        Series names, in the order of the series axis.
    family : Family
        Observation family.
    trend_model : TrendModel
        Latent trend model.
    truth : np.ndarray
        Observed responses, shape ``(n_time, n_series)``; NaN where missing.
        Covers training and (if supplied) test timepoints.
    n_train : int
        Number of training timepoints.
    fixed_eta : np.ndarray
        Formula linear predictor, shape ``(n_draws, n_series, n_time)``.
    trend : np.ndarray or None
        Latent trend draws, shape ``(n_draws, n_series, n_time)``.
    trend_sigma : np.ndarray or None
        Innovation standard deviation (RW and AR), ``(n_draws, n_series)``.
    ar_coefs : np.ndarray or None
        AR coefficients, shape ``(n_draws, n_series, ar_order)``; column
        ``j`` multiplies lag ``j + 1``.
    gp_alpha, gp_rho : np.ndarray or None
        GP marginal standard deviation and length scale, ``(n_draws, n_series)``.
    dispersion : np.ndarray or None
        Family dispersion ``phi``, shape ``(n_draws, n_series)``.
    ypred : np.ndarray or None
        Posterior predictive draws from the fit, ``(n_draws, n_series, n_time)``.
    """

    series_levels: tuple[str, ...]
    family: Family
    trend_model: TrendModel
    truth: np.ndarray
    n_train: int
    fixed_eta: np.ndarray
    trend: np.ndarray | None = None
    trend_sigma: np.ndarray | None = None
    ar_coefs: np.ndarray | None = None
    gp_alpha: np.ndarray | None = None
    gp_rho: np.ndarray | None = None
    dispersion: np.ndarray | None = None
    ypred: np.ndarray | None = None

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, np.ndarray):
                value = np.array(value, dtype=np.float64)
                value.setflags(write=False)
                object.__setattr__(self, f.name, value)

        object.__setattr__(self, "series_levels", tuple(str(s) for s in self.series_levels))
        object.__setattr__(self, "family", Family.parse(self.family))
        object.__setattr__(self, "trend_model", TrendModel.parse(self.trend_model))
        self._validate()

    def _validate(self) -> None:
        n_draws, n_series, n_time = self.fixed_eta.shape

        if self.truth.shape != (n_time, n_series):
            raise ValueError(
                f"truth must have shape {(n_time, n_series)}, got {self.truth.shape}"
            )
        if len(self.series_levels) != n_series:
            raise ValueError("series_levels must match the series axis of fixed_eta")
        if not 0 < self.n_train <= n_time:
            raise ValueError(f"n_train must lie in [1, {n_time}], got {self.n_train}")

        for name in ("trend", "ypred"):
            value = getattr(self, name)
            if value is not None and value.shape != (n_draws, n_series, n_time):
                raise ValueError(
                    f"{name} must have shape {(n_draws, n_series, n_time)}, got {value.shape}"
                )

        required = _required_trend_parameters(self.trend_model)
        for name in required:
            if getattr(self, name) is None:
                raise ValueError(
                    f"Trend model '{self.trend_model.value}' requires '{name}'"
                )
        if self.trend_model.ar_order and self.ar_coefs.shape[-1] != self.trend_model.ar_order:
            raise ValueError(
                f"ar_coefs must have {self.trend_model.ar_order} lags, "
                f"got {self.ar_coefs.shape[-1]}"
            )
        if self.family.has_dispersion and self.dispersion is None:
            raise ValueError(f"Family '{self.family.value}' requires 'dispersion'")

    @property
    def n_draws(self) -> int:
        return self.fixed_eta.shape[0]

    @property
    def n_series(self) -> int:
        return self.fixed_eta.shape[1]

    @property
    def n_time(self) -> int:
        return self.fixed_eta.shape[2]

    def series_index(self, series: str) -> int:
        """Position of a named series on the series axis."""
        try:
            return self.series_levels.index(str(series))
        except ValueError:
            raise ValueError(
                f"Unknown series '{series}'. Available series: {list(self.series_levels)}"
            ) from None


def _required_trend_parameters(trend_model: TrendModel) -> tuple[str, ...]:
    if trend_model is TrendModel.NONE:
        return ()
    if trend_model is TrendModel.RW:
        return ("trend", "trend_sigma")
    if trend_model in (TrendModel.AR1, TrendModel.AR2, TrendModel.AR3):
        return ("trend", "trend_sigma", "ar_coefs")
    if trend_model is TrendModel.GP:
        return ("trend", "gp_alpha", "gp_rho")
    raise ValueError(f"Unhandled trend model: {trend_model!r}")


def subsample_draws(
    n_draws: int,
    n_samples: int,
    rng: np.random.Generator,
) -> np.ndarray:
    """
    Choose posterior draw indices without replacement.

    ``n_samples`` larger than ``n_draws`` is an error; callers decide
    whether to cap it beforehand.
    """
    if n_samples < 1:
        raise ValueError("n_samples must be a positive integer")
    if n_samples > n_draws:
        raise ValueError(
            f"Cannot use {n_samples} samples from only {n_draws} posterior draws"
        )
    return np.sort(rng.choice(n_draws, size=n_samples, replace=False))


def propagate_trend(
    inputs: ForecastInputs,
    draw_idx: np.ndarray,
    timepoint: int,
    horizon: int,
    rng: np.random.Generator,
) -> np.ndarray:
    """
    Propagate the latent trend forward from its state at ``timepoint``.

    Parameters
    ----------
    inputs : ForecastInputs
        Posterior snapshot.
    draw_idx : np.ndarray
        Posterior draws to propagate.
    timepoint : int
        1-based cutoff; the trend is known up to and including it.
    horizon : int
        Number of steps to propagate.
    rng : np.random.Generator
        Random number generator.

    Returns
    -------
    np.ndarray
        Trend forecast, shape ``(len(draw_idx), n_series, horizon)``.
    """
    trend_model = inputs.trend_model
    n = len(draw_idx)

    if trend_model is TrendModel.NONE:
        return np.zeros((n, inputs.n_series, horizon))

    history = inputs.trend[draw_idx, :, :timepoint]

    if trend_model is TrendModel.RW:
        sigma = inputs.trend_sigma[draw_idx][:, :, None]
        steps = rng.normal(0.0, 1.0, size=(n, inputs.n_series, horizon)) * sigma
        return history[:, :, -1:] + np.cumsum(steps, axis=2)

    if trend_model in (TrendModel.AR1, TrendModel.AR2, TrendModel.AR3):
        order = trend_model.ar_order
        ar = inputs.ar_coefs[draw_idx]
        sigma = inputs.trend_sigma[draw_idx]
        path = np.concatenate(
            [history[:, :, -order:], np.zeros((n, inputs.n_series, horizon))], axis=2
        )
        for h in range(horizon):
            pos = order + h
            # lag j+1 sits at pos - (j+1)
            lags = path[:, :, pos - order:pos][:, :, ::-1]
            path[:, :, pos] = np.sum(ar * lags, axis=2) + rng.normal(0.0, sigma)
        return path[:, :, order:]

    if trend_model is TrendModel.GP:
        return _gp_forecast(
            history,
            inputs.gp_alpha[draw_idx],
            inputs.gp_rho[draw_idx],
            horizon,
            rng,
        )

    raise ValueError(f"Unhandled trend model: {trend_model!r}")


def _exp_quad(x1: np.ndarray, x2: np.ndarray, alpha: float, rho: float) -> np.ndarray:
    """Squared exponential covariance ``alpha^2 exp(-d^2 / (2 rho^2))``."""
    d = x1[:, None] - x2[None, :]
    return alpha**2 * np.exp(-0.5 * (d / rho) ** 2)


def _gp_forecast(
    history: np.ndarray,
    alpha: np.ndarray,
    rho: np.ndarray,
    horizon: int,
    rng: np.random.Generator,
) -> np.ndarray:
    """Draw from the GP conditional given the trend history, per draw and series."""
    n, n_series, t = history.shape
    x_obs = np.arange(1, t + 1, dtype=np.float64)
    x_new = np.arange(t + 1, t + horizon + 1, dtype=np.float64)

    out = np.empty((n, n_series, horizon))
    for i in range(n):
        for s in range(n_series):
            a, r = alpha[i, s], rho[i, s]
            jitter = GP_JITTER * a**2 + 1e-12

            k_oo = _exp_quad(x_obs, x_obs, a, r) + jitter * np.eye(t)
            k_no = _exp_quad(x_new, x_obs, a, r)
            k_nn = _exp_quad(x_new, x_new, a, r)

            chol = cho_factor(k_oo, lower=True)
            mean = k_no @ cho_solve(chol, history[i, s])
            cov = k_nn - k_no @ cho_solve(chol, k_no.T) + jitter * np.eye(horizon)

            out[i, s] = rng.multivariate_normal(mean, cov, method="eigh")
    return out


def forecast_from_timepoint(
    inputs: ForecastInputs,
    timepoint: int,
    horizon: int,
    n_samples: int,
    rng: np.random.Generator,
) -> xr.DataArray:
    """
    Simulate an out-of-sample forecast for timepoints ``t+1 .. t+horizon``.

    If the window lies beyond the training period and the fit already
    produced posterior predictive draws for it (test data supplied at fit
    time), those draws are reused. Otherwise the latent trend is
    propagated from ``timepoint`` and new observations are simulated.

    Parameters
    ----------
    inputs : ForecastInputs
        Posterior snapshot.
    timepoint : int
        1-based cutoff timepoint.
    horizon : int
        Number of steps ahead.
    n_samples : int
        Number of forecast samples (posterior draws, without replacement).
    rng : np.random.Generator
        Random number generator.

    Returns
    -------
    xr.DataArray
        Forecast counts with dims ``("sample", "series", "horizon")``.
    """
    if horizon < 1:
        raise ValueError("horizon must be at least 1")
    if timepoint < max(1, inputs.trend_model.ar_order):
        raise ValueError(
            f"Timepoint {timepoint} is too early to forecast a "
            f"'{inputs.trend_model.value}' trend"
        )
    if timepoint + horizon > inputs.n_time:
        raise ValueError(
            f"Cannot forecast {horizon} steps from timepoint {timepoint}: "
            f"only {inputs.n_time} timepoints are available"
        )

    draw_idx = subsample_draws(inputs.n_draws, n_samples, rng)
    window = slice(timepoint, timepoint + horizon)

    if inputs.ypred is not None and timepoint >= inputs.n_train:
        values = inputs.ypred[draw_idx, :, window]
    else:
        trend_fc = propagate_trend(inputs, draw_idx, timepoint, horizon, rng)
        eta = inputs.fixed_eta[draw_idx, :, window] + trend_fc
        mu = np.exp(eta)

        dispersion = None
        if inputs.family.has_dispersion:
            dispersion = inputs.dispersion[draw_idx][:, :, None]

        values = simulate_observations(inputs.family, mu, rng, dispersion=dispersion)

    return xr.DataArray(
        values,
        dims=("sample", "series", "horizon"),
        coords={
            "sample": np.arange(len(draw_idx)),
            "series": list(inputs.series_levels),
            "horizon": np.arange(1, horizon + 1),
        },
    )
