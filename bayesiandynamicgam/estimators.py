"""
High-level estimator class for Bayesian dynamic GAMs.

This module provides a scikit-learn-style estimator that fits a dynamic
GAM with PyMC and exposes its posterior to the forecast evaluation tools.
"""

from __future__ import annotations

import logging
import warnings
from typing import Any

import arviz as az
import numpy as np
import pandas as pd
import pymc as pm
import xarray as xr

from .families import Family, TrendModel, simulate_observations
from .forecasting import ForecastInputs
from .models import (
    build_design_matrix,
    build_dynamic_gam_model,
    compute_loo,
    compute_waic,
    extract_parameter_summary,
    fit_model,
)
from .utils import (
    combine_train_test,
    prepare_series_data,
    series_to_matrix,
    split_formula,
)

logger = logging.getLogger(__name__)


class DynamicGAM:
    """
    Bayesian dynamic Generalized Additive Model for discrete time series.

    The linear predictor combines formula terms (intercept, covariates and
    spline bases built by formulae) with a latent trend per series:

        log(mu[s, t]) = X[s, t] @ beta + trend[s, t]
        y[s, t] ~ family(mu[s, t])

    Parameters
    ----------
    formula : str, optional
        Model formula. The left-hand side names the response column.
        Default is "y ~ 1".
    family : str, optional
        Observation family: "poisson", "nb" (negative binomial) or "tw"
        (Tweedie-Poisson). Default is "poisson".
    trend_model : str, optional
        Latent trend: "None", "RW", "AR1", "AR2", "AR3" or "GP".
        Default is "AR1".
    priors : dict, optional
        Prior specifications passed to `build_dynamic_gam_model`.
    draws : int, optional
        Number of posterior samples per chain. Default is 1000.
    tune : int, optional
        Number of tuning samples. Default is 1000.
    chains : int, optional
        Number of MCMC chains. Default is 4.
    target_accept : float, optional
        Target acceptance probability for NUTS sampler. Default is 0.9.
    random_seed : int, optional
        Random seed for sampling and posterior predictive simulation.

    Attributes
    ----------
    model_ : pm.Model
        The PyMC model.
    idata : az.InferenceData
        Posterior samples; ``posterior_predictive["ypred"]`` holds predictive
        draws with dims ``(chain, draw, series, time)``.
    data_ : pd.DataFrame
        Prepared training data.
    test_data_ : pd.DataFrame or None
        Prepared test data (forecast period), if supplied to `fit`.
    series_levels_ : list[str]
        Series names.
    n_train_ : int
        Number of training timepoints.
    truth_ : np.ndarray
        Observed responses, shape ``(n_time, n_series)``, training then test.
    X_ : np.ndarray
        Design matrix, shape ``(n_series, n_time, n_coef)``.
    coef_names_ : list[str]
        Coefficient names.

    Examples
    --------
    >>> from bayesiandynamicgam import DynamicGAM, roll_eval_model
    >>> model = DynamicGAM(formula="y ~ 1", family="poisson", trend_model="AR1")
    >>> model.fit(data_train)
    >>> evaluation = roll_eval_model(model, n_evaluations=5, fc_horizon=3)
    >>> print(evaluation.summary())
    """

    fit_engine = "pymc"

    def __init__(
        self,
        formula: str = "y ~ 1",
        family: str = "poisson",
        trend_model: str = "AR1",
        priors: dict[str, Any] | None = None,
        draws: int = 1000,
        tune: int = 1000,
        chains: int = 4,
        target_accept: float = 0.9,
        random_seed: int | None = None,
    ):
        self.formula = formula
        self.family = family
        self.trend_model = trend_model
        self.priors = priors
        self.draws = draws
        self.tune = tune
        self.chains = chains
        self.target_accept = target_accept
        self.random_seed = random_seed

        # Fitted attributes (set by fit())
        self.model_: pm.Model | None = None
        self.idata: az.InferenceData | None = None
        self.data_: pd.DataFrame | None = None
        self.test_data_: pd.DataFrame | None = None
        self.series_levels_: list[str] | None = None
        self.n_train_: int | None = None
        self.truth_: np.ndarray | None = None
        self.X_: np.ndarray | None = None
        self.coef_names_: list[str] | None = None
        self.design_ = None
        self._forecast_inputs: ForecastInputs | None = None
        self._is_fitted: bool = False

    @property
    def response(self) -> str:
        """Name of the response column (left-hand side of the formula)."""
        response, _ = split_formula(self.formula)
        return response or "y"

    @property
    def family_(self) -> Family:
        return Family.parse(self.family)

    @property
    def trend_model_(self) -> TrendModel:
        return TrendModel.parse(self.trend_model)

    def fit(
        self,
        data: pd.DataFrame,
        data_test: pd.DataFrame | None = None,
    ) -> "DynamicGAM":
        """
        Fit the dynamic GAM.

        Parameters
        ----------
        data : pd.DataFrame
            Long-format training data with ``time``, ``series``, the
            response and any covariates in the formula. Every series needs
            a row at every time; missing responses are NaN.
        data_test : pd.DataFrame, optional
            Test data immediately following the training data. Its
            responses are not used for fitting, but the posterior
            (latent trend and predictive draws) covers its timepoints.

        Returns
        -------
        self
            The fitted estimator.
        """
        response = self.response

        if data_test is None:
            train = prepare_series_data(data, response=response)
            test = None
            full = train
        else:
            train, test = combine_train_test(data, data_test, response=response)
            full = pd.concat([train, test], ignore_index=True)

        self.data_ = train
        self.test_data_ = test
        self.series_levels_ = [str(s) for s in train["series"].cat.categories]
        self.n_train_ = int(train["time_index"].max())

        self._validate_data_family_compatibility()

        n_time = int(full["time_index"].max())
        n_series = len(self.series_levels_)

        # Rows are sorted by time then series
        X_rows, self.coef_names_, self.design_ = build_design_matrix(full, self.formula)
        self.X_ = X_rows.reshape(n_time, n_series, -1).transpose(1, 0, 2)

        self.truth_ = series_to_matrix(full, value_column=response)
        y_model = self.truth_.copy()
        y_model[self.n_train_:] = np.nan

        self.model_ = build_dynamic_gam_model(
            y=y_model,
            X=self.X_,
            series_levels=self.series_levels_,
            coef_names=self.coef_names_,
            family=self.family_,
            trend_model=self.trend_model_,
            priors=self.priors,
        )

        logger.info(
            "Fitting %s dynamic GAM (%s trend) to %d series x %d timepoints",
            self.family_.value,
            self.trend_model_.value,
            n_series,
            self.n_train_,
        )
        self.idata = fit_model(
            self.model_,
            draws=self.draws,
            tune=self.tune,
            chains=self.chains,
            target_accept=self.target_accept,
            random_seed=self.random_seed,
        )

        self._compute_posterior_predictive()
        self._forecast_inputs = None

        self._is_fitted = True
        return self

    def _fixed_linear_predictor(self) -> np.ndarray:
        """Formula part of the linear predictor, shape (chain, draw, series, time)."""
        beta = self.idata.posterior["beta"].values
        return np.einsum("cdk,stk->cdst", beta, self.X_)

    def _compute_posterior_predictive(self) -> None:
        """Simulate predictive draws for every (series, time) cell."""
        posterior = self.idata.posterior
        eta = self._fixed_linear_predictor()
        if "trend" in posterior:
            eta = eta + posterior["trend"].transpose("chain", "draw", "series", "time").values

        dispersion = None
        if self.family_.has_dispersion:
            dispersion = posterior["phi"].values[:, :, :, None]

        rng = np.random.default_rng(self.random_seed)
        ypred = simulate_observations(self.family_, np.exp(eta), rng, dispersion=dispersion)

        n_chains, n_draws = ypred.shape[:2]
        ypred = xr.DataArray(
            ypred,
            dims=("chain", "draw", "series", "time"),
            coords={
                "chain": np.arange(n_chains),
                "draw": np.arange(n_draws),
                "series": self.series_levels_,
                "time": np.arange(1, ypred.shape[3] + 1),
            },
        )

        if "posterior_predictive" in self.idata.groups():
            self.idata.posterior_predictive["ypred"] = ypred
        else:
            self.idata.add_groups(posterior_predictive=xr.Dataset({"ypred": ypred}))

    def get_posterior_draws(self, var_name: str) -> np.ndarray:
        """
        Posterior draws of a variable with chains and draws flattened.

        Parameters
        ----------
        var_name : str
            Name of a posterior (or posterior predictive) variable.

        Returns
        -------
        np.ndarray
            Array of shape ``(n_chains * n_draws, ...)``.
        """
        self._check_is_fitted()

        if var_name in self.idata.posterior:
            values = self.idata.posterior[var_name].values
        elif var_name in self.idata.posterior_predictive:
            values = self.idata.posterior_predictive[var_name].values
        else:
            raise ValueError(f"Variable '{var_name}' not found in the posterior")

        return values.reshape(-1, *values.shape[2:])

    def get_forecast_inputs(self) -> ForecastInputs:
        """
        Immutable posterior snapshot used for forecast evaluation.

        Returns
        -------
        ForecastInputs
            Flattened posterior arrays with axes ``(draw, series, time)``.
        """
        self._check_is_fitted()

        if self._forecast_inputs is not None:
            return self._forecast_inputs

        trend_model = self.trend_model_
        posterior = self.idata.posterior

        fixed_eta = self._fixed_linear_predictor()
        fixed_eta = fixed_eta.reshape(-1, *fixed_eta.shape[2:])

        params: dict[str, np.ndarray | None] = {}
        if trend_model.is_dynamic:
            trend = posterior["trend"].transpose("chain", "draw", "series", "time").values
            params["trend"] = trend.reshape(-1, *trend.shape[2:])

        if trend_model is TrendModel.NONE:
            pass
        elif trend_model is TrendModel.RW:
            params["trend_sigma"] = self.get_posterior_draws("sigma")
        elif trend_model in (TrendModel.AR1, TrendModel.AR2, TrendModel.AR3):
            params["trend_sigma"] = self.get_posterior_draws("sigma")
            params["ar_coefs"] = self.get_posterior_draws("ar")
        elif trend_model is TrendModel.GP:
            params["gp_alpha"] = self.get_posterior_draws("alpha_gp")
            params["gp_rho"] = self.get_posterior_draws("rho_gp")
        else:
            raise ValueError(f"Unhandled trend model: {trend_model!r}")

        if self.family_.has_dispersion:
            params["dispersion"] = self.get_posterior_draws("phi")

        ypred = self.idata.posterior_predictive["ypred"].transpose(
            "chain", "draw", "series", "time"
        ).values

        self._forecast_inputs = ForecastInputs(
            series_levels=tuple(self.series_levels_),
            family=self.family_,
            trend_model=trend_model,
            truth=self.truth_,
            n_train=self.n_train_,
            fixed_eta=fixed_eta,
            ypred=ypred.reshape(-1, *ypred.shape[2:]),
            **params,
        )
        return self._forecast_inputs

    def posterior_predictive(self, series: str) -> xr.DataArray:
        """
        Posterior predictive draws for one series.

        Parameters
        ----------
        series : str
            Series name.

        Returns
        -------
        xr.DataArray
            Draws with dims ``(chain, draw, time)``.
        """
        self._check_is_fitted()

        if str(series) not in self.series_levels_:
            raise ValueError(
                f"Unknown series '{series}'. Available series: {self.series_levels_}"
            )
        return self.idata.posterior_predictive["ypred"].sel(series=str(series))

    def get_parameter_summary(
        self,
        var_names: list[str] | None = None,
        filter_vars: str | None = None,
        hdi_prob: float = 0.94,
    ) -> pd.DataFrame:
        """
        Get summary statistics for model parameters.

        Parameters
        ----------
        var_names : list[str], optional
            Parameter names to include. If None, includes the coefficients
            and the trend and dispersion parameters.
        hdi_prob : float, optional
            Probability mass for HDI. Default is 0.94.

        Returns
        -------
        pd.DataFrame
            Parameter summary table.
        """
        self._check_is_fitted()
        return extract_parameter_summary(
            self.idata, var_names=var_names, filter_vars=filter_vars, hdi_prob=hdi_prob
        )

    def loo(self) -> az.ELPDData:
        """Leave-one-out cross-validation (PSIS-LOO) of the fitted model."""
        self._check_is_fitted()
        return compute_loo(self.idata)

    def waic(self) -> az.ELPDData:
        """Widely Applicable Information Criterion of the fitted model."""
        self._check_is_fitted()
        return compute_waic(self.idata)

    def get_model_dimensions(self) -> dict[str, int]:
        """
        Get model dimensions.

        Returns
        -------
        dict[str, int]
            Dictionary with:
            - n_series: Number of series
            - n_timepoints: Number of training timepoints
            - n_test_timepoints: Number of test timepoints
            - num_samples: Total number of MCMC samples
        """
        self._check_is_fitted()

        posterior = self.idata.posterior
        return {
            "n_series": len(self.series_levels_),
            "n_timepoints": self.n_train_,
            "n_test_timepoints": self.truth_.shape[0] - self.n_train_,
            "num_samples": posterior.sizes["chain"] * posterior.sizes["draw"],
        }

    def _check_is_fitted(self) -> None:
        """Check if the model has been fitted."""
        if not self._is_fitted:
            raise ValueError(
                "Model has not been fitted. Call fit() before using this method."
            )

    def _validate_data_family_compatibility(self) -> None:
        """Validate that the response is compatible with a count family."""
        response = self.data_[self.response].dropna().values

        # Non-integer values are only a warning; the likelihood rounds nothing
        if not np.allclose(response, np.round(response)):
            warnings.warn(
                f"The '{self.family_.value}' family is intended for count (integer) "
                f"data, but the response contains non-integer values.",
                UserWarning,
            )

    def __repr__(self) -> str:
        fitted_str = "fitted" if self._is_fitted else "not fitted"
        return (
            f"DynamicGAM(\n"
            f"    formula='{self.formula}',\n"
            f"    family='{self.family}',\n"
            f"    trend_model='{self.trend_model}',\n"
            f"    draws={self.draws},\n"
            f"    tune={self.tune},\n"
            f"    status={fitted_str}\n"
            f")"
        )
