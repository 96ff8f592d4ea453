"""
Bayesian Dynamic GAM - Forecast Evaluation for Discrete Time Series.

This package fits Bayesian dynamic Generalized Additive Models (formula
terms plus a latent random-walk, autoregressive or Gaussian-process trend)
to multiple count time series with PyMC, and evaluates their forecasts out
of sample with proper scoring rules.

The main estimator class is `DynamicGAM`. Rolling-window forecast
evaluation is provided by `roll_eval_model`, which scores forecasts from a
sequence of historical cutoffs with the Discrete Rank Probability Score
(DRPS) and interval coverage, and `compare_models`, which evaluates two
models over the same cutoffs.

Example
-------
>>> from bayesiandynamicgam import DynamicGAM, compare_models, roll_eval_model
>>>
>>> # Fit a Poisson model with an AR(1) trend
>>> model = DynamicGAM(formula="y ~ 1", family="poisson", trend_model="AR1")
>>> model.fit(data_train)
>>>
>>> # Rolling evaluation over 5 cutoffs, 3 steps ahead
>>> evaluation = roll_eval_model(model, n_evaluations=5, fc_horizon=3)
>>> print(evaluation.summary())
>>>
>>> # Compare against a random-walk trend
>>> rw_model = DynamicGAM(formula="y ~ 1", trend_model="RW").fit(data_train)
>>> comparison = compare_models(model, rw_model)
>>> print(comparison.summary())

References
----------
Clark, N. J. and Wells, K. (2023). Dynamic generalised additive models
(DGAMs) for forecasting discrete ecological time series. Methods in
Ecology and Evolution 14(3), 771-784.
"""

from importlib.metadata import PackageNotFoundError, version

# Version
try:
    __version__ = version("bayesiandynamicgam")
except PackageNotFoundError:
    __version__ = "0.1.0"

# Main estimator
from .estimators import DynamicGAM

# Observation families and trend models
from .families import Family, TrendModel

# Forecast evaluation
from .evaluation import (
    ConfigurationError,
    ModelComparison,
    RollingEvaluation,
    RollingEvaluator,
    SeriesEvaluation,
    TimepointEvaluationError,
    aggregate_evaluations,
    compare_models,
    eval_model,
    roll_eval_model,
)
from .forecasting import ForecastInputs, forecast_from_timepoint
from .scoring import drps_score, interval_coverage, score_forecast, sum_or_na

# Model building functions
from .models import (
    build_design_matrix,
    build_dynamic_gam_model,
    compute_loo,
    compute_waic,
    extract_parameter_summary,
    fit_model,
)

# Diagnostics
from .diagnostics import check_all_diagnostics, compute_dunn_smyth_residuals

# Plotting functions
from .plots import (
    plot_energy,
    plot_forecast,
    plot_model_comparison,
    plot_residuals,
    plot_rolling_evaluation,
    plot_trace,
)

# Utility functions
from .utils import (
    combine_train_test,
    prepare_series_data,
    series_to_matrix,
    validate_series_data,
)

__all__ = [
    # Version
    "__version__",
    # Main estimator
    "DynamicGAM",
    "Family",
    "TrendModel",
    # Evaluation
    "ConfigurationError",
    "TimepointEvaluationError",
    "ForecastInputs",
    "SeriesEvaluation",
    "RollingEvaluation",
    "ModelComparison",
    "RollingEvaluator",
    "eval_model",
    "roll_eval_model",
    "compare_models",
    "aggregate_evaluations",
    "forecast_from_timepoint",
    # Scoring
    "drps_score",
    "interval_coverage",
    "score_forecast",
    "sum_or_na",
    # Model functions
    "build_design_matrix",
    "build_dynamic_gam_model",
    "fit_model",
    "compute_waic",
    "compute_loo",
    "extract_parameter_summary",
    # Diagnostics
    "check_all_diagnostics",
    "compute_dunn_smyth_residuals",
    # Plotting functions
    "plot_trace",
    "plot_energy",
    "plot_forecast",
    "plot_residuals",
    "plot_rolling_evaluation",
    "plot_model_comparison",
    # Utility functions
    "validate_series_data",
    "prepare_series_data",
    "combine_train_test",
    "series_to_matrix",
]
