"""
Rolling-window forecast evaluation for Bayesian dynamic GAMs.

A fitted model is evaluated out of sample by forecasting forward from a
sequence of historical cutoff timepoints and scoring each forecast against
the observed values with the Discrete Rank Probability Score (DRPS) and a
central interval coverage indicator.

Each cutoff is an independent task. Tasks are dispatched to a joblib worker
pool; every task receives the immutable posterior snapshot, its cutoff and
its own random seed, and returns a table keyed by the cutoff. Results are
re-joined by key, so the aggregated scores do not depend on the order in
which the workers finish.

References
----------
Gneiting, T. and Raftery, A. E. (2007). Strictly proper scoring rules,
prediction, and estimation. JASA 102(477), 359-378.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from .families import TrendModel
from .forecasting import ForecastInputs, forecast_from_timepoint
from .scoring import score_forecast, sum_or_na

if TYPE_CHECKING:
    from .estimators import DynamicGAM

logger = logging.getLogger(__name__)

# Earliest cutoff that leaves enough history to forecast from
MIN_EVAL_TIMEPOINT = 3

RESULT_COLUMNS = ["series", "eval_timepoint", "eval_horizon", "drps", "in_interval"]


class ConfigurationError(ValueError):
    """Invalid evaluation configuration, detected before any forecasting."""


class TimepointEvaluationError(RuntimeError):
    """A forecast or scoring failure at one evaluation timepoint."""

    def __init__(self, timepoint: int, reason: str):
        super().__init__(timepoint, reason)
        self.timepoint = timepoint
        self.reason = reason

    def __str__(self) -> str:
        return f"Evaluation failed at timepoint {self.timepoint}: {self.reason}"


class ForecastableModel(Protocol):
    """
    Protocol defining the interface the evaluators need from a model.

    Besides ``get_forecast_inputs``, a model must provide ``_check_is_fitted``,
    which raises ``ValueError`` when the model has not been fitted. It is
    called before any posterior is read, as ``DynamicGAM`` does.
    """

    def get_forecast_inputs(self) -> ForecastInputs:
        ...

    def _check_is_fitted(self) -> None:
        ...


@dataclass
class SeriesEvaluation:
    """
    Aggregated scores for one series (or the cross-series total).

    Attributes
    ----------
    sum_drps : float
        Sum of DRPS over all timepoints and horizons, ignoring missing
        scores; NaN if every score is missing.
    drps_summary : pd.Series
        Distribution summary (``describe()``) of the DRPS values.
    drps_horizon_summary : pd.Series
        Mean DRPS per horizon step, indexed by ``eval_horizon``. NaN for a
        step whose scores are all missing.
    interval_coverage : float
        Share of non-missing evaluations whose truth fell in the interval.
    all_drps : pd.DataFrame
        The raw per-timepoint, per-horizon table.
    """

    sum_drps: float
    drps_summary: pd.Series
    drps_horizon_summary: pd.Series
    interval_coverage: float
    all_drps: pd.DataFrame

    @classmethod
    def from_table(cls, all_drps: pd.DataFrame) -> "SeriesEvaluation":
        all_drps = all_drps.reset_index(drop=True)
        return cls(
            sum_drps=sum_or_na(all_drps["drps"]),
            drps_summary=all_drps["drps"].describe(),
            drps_horizon_summary=all_drps.groupby("eval_horizon")["drps"].mean(),
            interval_coverage=float(all_drps["in_interval"].mean()),
            all_drps=all_drps,
        )

    def timepoint_scores(self) -> pd.Series:
        """DRPS summed over the horizon at each timepoint (NaN if all missing)."""
        return self.all_drps.groupby("eval_timepoint")["drps"].sum(min_count=1)


@dataclass
class RollingEvaluation:
    """
    Container for rolling forecast evaluation results.

    Attributes
    ----------
    series_evals : dict[str, SeriesEvaluation]
        Aggregated scores per series.
    total : SeriesEvaluation
        Cross-series total: DRPS summed across series and coverage averaged
        across series at each (timepoint, horizon) pair.
    evaluation_seq : np.ndarray
        The evaluated cutoff timepoints, sorted.
    fc_horizon : int
        Forecast horizon.
    n_samples : int
        Forecast draws used per evaluation.
    interval_width : float
        Nominal width of the coverage interval.
    """

    series_evals: dict[str, SeriesEvaluation]
    total: SeriesEvaluation
    evaluation_seq: np.ndarray
    fc_horizon: int
    n_samples: int
    interval_width: float = 0.9

    def summary(self) -> pd.DataFrame:
        """
        Return one row per series plus a ``Total`` row.

        Returns
        -------
        pd.DataFrame
            Columns ``sum_drps``, ``mean_drps``, ``interval_coverage`` and
            the mean DRPS at each horizon step (``drps_h1``, ...).
        """
        rows = {}
        for name, evaluation in [*self.series_evals.items(), ("Total", self.total)]:
            row = {
                "sum_drps": evaluation.sum_drps,
                "mean_drps": evaluation.drps_summary["mean"],
                "interval_coverage": evaluation.interval_coverage,
            }
            for horizon, value in evaluation.drps_horizon_summary.items():
                row[f"drps_h{horizon}"] = value
            rows[name] = row
        return pd.DataFrame.from_dict(rows, orient="index")


@dataclass
class ModelComparison:
    """
    Paired rolling evaluations of two models over the same timepoints.

    Attributes
    ----------
    evaluation1, evaluation2 : RollingEvaluation
        Rolling evaluations of the first and second model.
    paired_scores : pd.DataFrame
        One row per timepoint with ``model1_drps``, ``model2_drps`` (total
        DRPS over series and horizon) and ``difference`` (model 1 minus
        model 2; negative favours model 1).
    """

    evaluation1: RollingEvaluation
    evaluation2: RollingEvaluation
    paired_scores: pd.DataFrame = field(repr=False)

    def summary(self) -> pd.DataFrame:
        """
        Return summary statistics of the paired comparison.

        Returns
        -------
        pd.DataFrame
            Mean total DRPS per model, mean difference and the share of
            timepoints at which model 1 scores lower.
        """
        complete = self.paired_scores.dropna(subset=["model1_drps", "model2_drps"])
        share = (
            float((complete["difference"] < 0).mean()) if len(complete) else np.nan
        )
        return pd.DataFrame(
            {
                "Model 1 DRPS (Mean)": [self.paired_scores["model1_drps"].mean()],
                "Model 2 DRPS (Mean)": [self.paired_scores["model2_drps"].mean()],
                "Difference (Mean)": [self.paired_scores["difference"].mean()],
                "Model 1 Better (Share)": [share],
                "Timepoints": [len(self.paired_scores)],
            },
            index=["Value"],
        ).T


def _evaluate_timepoint_task(
    inputs: ForecastInputs,
    timepoint: int,
    horizon: int,
    n_samples: int,
    interval_width: float,
    seed: int,
) -> tuple[int, pd.DataFrame]:
    """Forecast and score every series from one cutoff (runs in a worker)."""
    try:
        rng = np.random.default_rng(np.random.SeedSequence([seed, timepoint]))
        forecast = forecast_from_timepoint(inputs, timepoint, horizon, n_samples, rng)
        truth = inputs.truth[timepoint:timepoint + horizon]

        tables = []
        for s, series in enumerate(inputs.series_levels):
            table = score_forecast(
                truth[:, s], forecast.sel(series=series).values, interval_width
            )
            table.insert(0, "eval_timepoint", timepoint)
            table.insert(0, "series", series)
            tables.append(table)
    except Exception as exc:
        raise TimepointEvaluationError(timepoint, f"{type(exc).__name__}: {exc}") from exc

    return timepoint, pd.concat(tables, ignore_index=True)[RESULT_COLUMNS]


def generate_evaluation_sequence(
    n_train: int,
    n_evaluations: int,
    fc_horizon: int,
) -> np.ndarray:
    """
    Evenly spaced cutoffs ``floor(linspace(3, n_train - fc_horizon, n))``.

    Cutoffs that coincide after flooring are kept once, with a warning.
    """
    if n_evaluations < 1:
        raise ConfigurationError("n_evaluations must be a positive integer")

    upper = n_train - fc_horizon
    if upper < MIN_EVAL_TIMEPOINT:
        raise ConfigurationError(
            f"Training data has {n_train} timepoints, too few to evaluate "
            f"{fc_horizon}-step forecasts from timepoint {MIN_EVAL_TIMEPOINT}"
        )

    seq = np.floor(np.linspace(MIN_EVAL_TIMEPOINT, upper, n_evaluations)).astype(int)
    unique = np.unique(seq)
    if len(unique) < len(seq):
        warnings.warn(
            f"Requested {n_evaluations} evaluations but only {len(unique)} "
            f"distinct timepoints fit in the training data; evaluating {len(unique)}.",
            UserWarning,
        )
    return unique


def validate_evaluation_sequence(
    evaluation_seq: Iterable[int],
    max_timepoint: int,
    fc_horizon: int,
) -> np.ndarray:
    """
    Check that every cutoff satisfies ``3 <= t <= max_timepoint - fc_horizon``.

    Returns
    -------
    np.ndarray
        The sequence as sorted integers.

    Raises
    ------
    ConfigurationError
        If the sequence is empty, non-integer, duplicated or out of bounds.
        Out-of-range cutoffs are never clamped.
    """
    seq = np.asarray(list(evaluation_seq))
    if seq.size == 0:
        raise ConfigurationError("evaluation_seq must contain at least one timepoint")
    if not np.all(np.equal(np.mod(seq, 1), 0)):
        raise ConfigurationError("evaluation_seq must contain integer timepoints")
    seq = seq.astype(int)

    if len(np.unique(seq)) != len(seq):
        raise ConfigurationError("evaluation_seq contains duplicate timepoints")

    upper = max_timepoint - fc_horizon
    out_of_bounds = seq[(seq < MIN_EVAL_TIMEPOINT) | (seq > upper)]
    if len(out_of_bounds):
        raise ConfigurationError(
            f"Evaluation timepoints must lie in [{MIN_EVAL_TIMEPOINT}, {upper}] "
            f"for a {fc_horizon}-step horizon with {max_timepoint} timepoints; "
            f"got {out_of_bounds.tolist()}"
        )
    return np.sort(seq)


def aggregate_evaluations(
    tables: Mapping[int, pd.DataFrame] | Iterable[pd.DataFrame],
    series_levels: Iterable[str] | None = None,
) -> tuple[dict[str, SeriesEvaluation], SeriesEvaluation]:
    """
    Aggregate per-timepoint evaluation tables.

    The result depends only on the set of tables, not on their order.

    Parameters
    ----------
    tables : mapping or iterable of pd.DataFrame
        Per-timepoint tables with the columns of `RESULT_COLUMNS`, either
        keyed by timepoint or as a plain sequence.
    series_levels : iterable of str, optional
        Order of the series in the output. Default is sorted.

    Returns
    -------
    tuple[dict[str, SeriesEvaluation], SeriesEvaluation]
        Per-series evaluations and the cross-series total.
    """
    if isinstance(tables, Mapping):
        tables = [tables[key] for key in sorted(tables)]

    combined = pd.concat(list(tables), ignore_index=True)
    combined = combined.sort_values(["series", "eval_timepoint", "eval_horizon"])

    if series_levels is None:
        series_levels = sorted(combined["series"].unique())

    series_evals = {
        str(series): SeriesEvaluation.from_table(
            combined.loc[combined["series"] == series, RESULT_COLUMNS]
        )
        for series in series_levels
    }

    grouped = combined.groupby(["eval_timepoint", "eval_horizon"])
    total_table = pd.DataFrame(
        {
            "drps": grouped["drps"].sum(min_count=1),
            "in_interval": grouped["in_interval"].mean(),
        }
    ).reset_index()
    total = SeriesEvaluation.from_table(total_table)

    return series_evals, total


class RollingEvaluator:
    """
    Walk-forward out-of-sample evaluator for a fitted dynamic GAM.

    Parameters
    ----------
    model : DynamicGAM
        A fitted model exposing `get_forecast_inputs`.
    n_samples : int, optional
        Forecast draws per evaluation, subsampled from the posterior
        without replacement. Capped (with a warning) at the number of
        available draws. Default is 1000.
    fc_horizon : int, optional
        Number of steps ahead to forecast. Default is 3.
    n_cores : int, optional
        Size of the joblib worker pool. Default is 2.
    interval_width : float, optional
        Nominal width of the central coverage interval. Default is 0.9.
    random_seed : int, optional
        Seed for the Monte Carlo draws. Each timepoint derives its own
        stream from ``(random_seed, timepoint)``.

    Examples
    --------
    >>> evaluator = RollingEvaluator(model, fc_horizon=3, random_seed=1)
    >>> evaluation = evaluator.evaluate(n_evaluations=5)
    >>> print(evaluation.summary())
    """

    def __init__(
        self,
        model: "DynamicGAM | ForecastableModel",
        n_samples: int = 1000,
        fc_horizon: int = 3,
        n_cores: int = 2,
        interval_width: float = 0.9,
        random_seed: int | None = None,
    ):
        model._check_is_fitted()

        if fc_horizon < 1:
            raise ConfigurationError("fc_horizon must be at least 1")
        if not 0 < interval_width < 1:
            raise ConfigurationError("interval_width must lie strictly between 0 and 1")
        if n_cores < 1:
            raise ConfigurationError("n_cores must be a positive integer")

        self.model = model
        self.inputs = model.get_forecast_inputs()
        self.fc_horizon = fc_horizon
        self.n_cores = n_cores
        self.interval_width = interval_width
        self.n_samples = self._resolve_n_samples(n_samples)

        if random_seed is None:
            random_seed = int(np.random.SeedSequence().entropy)
        self.random_seed = random_seed

    def _resolve_n_samples(self, n_samples: int) -> int:
        if n_samples < 1:
            raise ConfigurationError("n_samples must be a positive integer")

        n_draws = self.inputs.n_draws
        if n_samples > n_draws:
            warnings.warn(
                f"Requested {n_samples} samples but only {n_draws} posterior draws "
                f"are available; using all {n_draws} draws.",
                UserWarning,
            )
            return n_draws
        return n_samples

    def evaluation_sequence(
        self,
        n_evaluations: int = 5,
        evaluation_seq: Iterable[int] | None = None,
    ) -> np.ndarray:
        """
        Cutoff timepoints within the training period.

        Parameters
        ----------
        n_evaluations : int, optional
            Number of evenly spaced cutoffs when no sequence is given.
        evaluation_seq : iterable of int, optional
            Explicit cutoffs; validated, never clamped.

        Returns
        -------
        np.ndarray
            Sorted cutoff timepoints.
        """
        if evaluation_seq is None:
            return generate_evaluation_sequence(
                self.inputs.n_train, n_evaluations, self.fc_horizon
            )
        return validate_evaluation_sequence(
            evaluation_seq, self.inputs.n_train, self.fc_horizon
        )

    def evaluate_timepoint(self, eval_timepoint: int) -> pd.DataFrame:
        """
        Forecast from one cutoff and score every series.

        The forecast window may extend into the test period when test data
        was supplied at fit time.

        Parameters
        ----------
        eval_timepoint : int
            1-based cutoff; forecasts cover ``t+1 .. t+fc_horizon``.

        Returns
        -------
        pd.DataFrame
            Columns ``series``, ``eval_timepoint``, ``eval_horizon``,
            ``drps`` and ``in_interval``.
        """
        (timepoint,) = validate_evaluation_sequence(
            [eval_timepoint], self.inputs.n_time, self.fc_horizon
        )
        _, table = _evaluate_timepoint_task(
            self.inputs,
            int(timepoint),
            self.fc_horizon,
            self.n_samples,
            self.interval_width,
            self.random_seed,
        )
        return table

    def evaluate(
        self,
        n_evaluations: int = 5,
        evaluation_seq: Iterable[int] | None = None,
    ) -> RollingEvaluation:
        """
        Run the rolling evaluation.

        Parameters
        ----------
        n_evaluations : int, optional
            Number of evenly spaced cutoffs. Default is 5.
        evaluation_seq : iterable of int, optional
            Explicit cutoffs, overriding ``n_evaluations``.

        Returns
        -------
        RollingEvaluation
            Per-series and total aggregated scores.

        Raises
        ------
        ConfigurationError
            If the model has no dynamic trend or the sequence is invalid.
        TimepointEvaluationError
            If forecasting or scoring fails at any timepoint; no partial
            results are returned.
        """
        if self.inputs.trend_model is TrendModel.NONE:
            raise ConfigurationError(
                "Rolling evaluation requires a dynamic trend model; "
                "the model was fitted with trend_model='None'"
            )

        seq = self.evaluation_sequence(n_evaluations, evaluation_seq)

        logger.info(
            "Evaluating %d timepoints (%d-step horizon, %d samples) on %d workers",
            len(seq),
            self.fc_horizon,
            self.n_samples,
            self.n_cores,
        )
        results = Parallel(n_jobs=self.n_cores)(
            delayed(_evaluate_timepoint_task)(
                self.inputs,
                int(t),
                self.fc_horizon,
                self.n_samples,
                self.interval_width,
                self.random_seed,
            )
            for t in seq
        )
        tables = {timepoint: table for timepoint, table in results}

        series_evals, total = aggregate_evaluations(tables, self.inputs.series_levels)
        logger.debug("Aggregated %d series over %d timepoints", len(series_evals), len(tables))

        return RollingEvaluation(
            series_evals=series_evals,
            total=total,
            evaluation_seq=seq,
            fc_horizon=self.fc_horizon,
            n_samples=self.n_samples,
            interval_width=self.interval_width,
        )


def eval_model(
    model: "DynamicGAM | ForecastableModel",
    eval_timepoint: int,
    fc_horizon: int = 3,
    n_samples: int = 1000,
    interval_width: float = 0.9,
    random_seed: int | None = None,
) -> pd.DataFrame:
    """
    Evaluate a forecast from a single cutoff timepoint.

    Parameters
    ----------
    model : DynamicGAM
        A fitted model.
    eval_timepoint : int
        1-based cutoff timepoint, at least 3, with
        ``eval_timepoint + fc_horizon`` within the available data.
    fc_horizon : int, optional
        Number of steps ahead. Default is 3.
    n_samples : int, optional
        Forecast draws. Default is 1000.
    interval_width : float, optional
        Nominal coverage interval width. Default is 0.9.
    random_seed : int, optional
        Random seed.

    Returns
    -------
    pd.DataFrame
        Per-series, per-horizon DRPS and coverage indicators.
    """
    evaluator = RollingEvaluator(
        model,
        n_samples=n_samples,
        fc_horizon=fc_horizon,
        n_cores=1,
        interval_width=interval_width,
        random_seed=random_seed,
    )
    return evaluator.evaluate_timepoint(eval_timepoint)


def roll_eval_model(
    model: "DynamicGAM | ForecastableModel",
    n_evaluations: int = 5,
    evaluation_seq: Iterable[int] | None = None,
    n_samples: int = 1000,
    fc_horizon: int = 3,
    n_cores: int = 2,
    interval_width: float = 0.9,
    random_seed: int | None = None,
) -> RollingEvaluation:
    """
    Rolling-window forecast evaluation of a fitted model.

    See `RollingEvaluator` for the parameters.

    Returns
    -------
    RollingEvaluation
        Per-series and total aggregated scores.
    """
    evaluator = RollingEvaluator(
        model,
        n_samples=n_samples,
        fc_horizon=fc_horizon,
        n_cores=n_cores,
        interval_width=interval_width,
        random_seed=random_seed,
    )
    return evaluator.evaluate(n_evaluations=n_evaluations, evaluation_seq=evaluation_seq)


def compare_models(
    model1: "DynamicGAM | ForecastableModel",
    model2: "DynamicGAM | ForecastableModel",
    n_evaluations: int = 5,
    evaluation_seq: Iterable[int] | None = None,
    n_samples: int = 1000,
    fc_horizon: int = 3,
    n_cores: int = 2,
    interval_width: float = 0.9,
    random_seed: int | None = None,
) -> ModelComparison:
    """
    Compare two models by rolling evaluation over the same timepoints.

    The evaluation sequence is generated once from the first model and used
    for both, with the same horizon, sample budget and seed.

    Returns
    -------
    ModelComparison
        Both evaluations and their per-timepoint paired total scores.
    """
    options = dict(
        n_samples=n_samples,
        fc_horizon=fc_horizon,
        n_cores=n_cores,
        interval_width=interval_width,
        random_seed=random_seed,
    )
    evaluator1 = RollingEvaluator(model1, **options)
    evaluator2 = RollingEvaluator(model2, **options)
    evaluator2.random_seed = evaluator1.random_seed

    if evaluator1.inputs.n_train != evaluator2.inputs.n_train:
        raise ConfigurationError(
            "Models must be fitted to the same training timepoints: "
            f"{evaluator1.inputs.n_train} vs {evaluator2.inputs.n_train}"
        )

    seq = evaluator1.evaluation_sequence(n_evaluations, evaluation_seq)

    evaluation1 = evaluator1.evaluate(evaluation_seq=seq)
    evaluation2 = evaluator2.evaluate(evaluation_seq=seq)

    paired = pd.merge(
        evaluation1.total.timepoint_scores().rename("model1_drps"),
        evaluation2.total.timepoint_scores().rename("model2_drps"),
        left_index=True,
        right_index=True,
        how="outer",
        validate="one_to_one",
    )
    paired["difference"] = paired["model1_drps"] - paired["model2_drps"]
    paired = paired.rename_axis("eval_timepoint").reset_index()

    return ModelComparison(
        evaluation1=evaluation1,
        evaluation2=evaluation2,
        paired_scores=paired,
    )
