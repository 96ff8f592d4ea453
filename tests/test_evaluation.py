"""Tests for rolling forecast evaluation."""

import warnings

import numpy as np
import pandas as pd
import pytest

from bayesiandynamicgam.evaluation import (
    RESULT_COLUMNS,
    ConfigurationError,
    ModelComparison,
    RollingEvaluation,
    RollingEvaluator,
    SeriesEvaluation,
    TimepointEvaluationError,
    _evaluate_timepoint_task,
    aggregate_evaluations,
    compare_models,
    eval_model,
    generate_evaluation_sequence,
    roll_eval_model,
    validate_evaluation_sequence,
)


def make_table(series, timepoint, drps, in_interval):
    """Build a per-timepoint result table."""
    horizon = len(drps)
    return pd.DataFrame(
        {
            "series": series,
            "eval_timepoint": timepoint,
            "eval_horizon": np.arange(1, horizon + 1),
            "drps": drps,
            "in_interval": in_interval,
        }
    )[RESULT_COLUMNS]


@pytest.fixture
def timepoint_tables():
    """Per-timepoint tables for two series over three timepoints."""
    tables = {}
    for t, offset in zip([5, 10, 15], [0.0, 1.0, 2.0]):
        tables[t] = pd.concat(
            [
                make_table("a", t, [1.0 + offset, 2.0 + offset], [1.0, 0.0]),
                make_table("b", t, [0.5, np.nan], [1.0, np.nan]),
            ],
            ignore_index=True,
        )
    return tables


class TestEvaluationSequence:
    """Tests for timepoint sequence generation and validation."""

    def test_generated_sequence(self):
        """Test evenly spaced cutoffs between 3 and n_train - horizon."""
        seq = generate_evaluation_sequence(60, 5, 3)

        np.testing.assert_array_equal(seq, [3, 16, 30, 43, 57])

    @pytest.mark.filterwarnings("ignore:Requested .* evaluations")
    def test_generated_within_bounds(self):
        for n_train, n_eval, horizon in [(10, 20, 2), (50, 7, 5), (8, 1, 5)]:
            seq = generate_evaluation_sequence(n_train, n_eval, horizon)
            assert np.all(seq >= 3)
            assert np.all(seq <= n_train - horizon)

    def test_generated_sequence_deduplicated(self):
        """Test cutoffs that coincide after flooring are kept once."""
        with pytest.warns(UserWarning, match="Requested 10 evaluations but only 3 distinct"):
            seq = generate_evaluation_sequence(8, 10, 3)

        np.testing.assert_array_equal(seq, [3, 4, 5])

    def test_distinct_sequence_does_not_warn(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            seq = generate_evaluation_sequence(60, 5, 3)

        assert len(seq) == 5

    def test_too_short_raises(self):
        with pytest.raises(ConfigurationError, match="too few"):
            generate_evaluation_sequence(5, 3, 3)

    def test_non_positive_evaluations_raise(self):
        with pytest.raises(ConfigurationError, match="n_evaluations"):
            generate_evaluation_sequence(60, 0, 3)

    @pytest.mark.parametrize("seq", [[2, 10], [10, 58], [0], [57, 58]])
    def test_out_of_bounds_raise(self, seq):
        """Test out-of-range cutoffs are rejected, never clamped."""
        with pytest.raises(ConfigurationError, match="must lie in"):
            validate_evaluation_sequence(seq, 60, 3)

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            validate_evaluation_sequence([1], 60, 3)

    def test_duplicates_raise(self):
        with pytest.raises(ConfigurationError, match="duplicate"):
            validate_evaluation_sequence([5, 5], 60, 3)

    def test_non_integer_raise(self):
        with pytest.raises(ConfigurationError, match="integer"):
            validate_evaluation_sequence([5.5], 60, 3)

    def test_empty_raises(self):
        with pytest.raises(ConfigurationError, match="at least one"):
            validate_evaluation_sequence([], 60, 3)

    def test_validated_sequence_sorted(self):
        seq = validate_evaluation_sequence([20, 3, 57], 60, 3)
        np.testing.assert_array_equal(seq, [3, 20, 57])


class TestAggregateEvaluations:
    """Tests for aggregate_evaluations."""

    def test_series_aggregates(self, timepoint_tables):
        """Test per-series sum, horizon means and coverage."""
        series_evals, _ = aggregate_evaluations(timepoint_tables)

        a = series_evals["a"]
        assert a.sum_drps == pytest.approx(1 + 2 + 2 + 3 + 3 + 4)
        assert a.drps_horizon_summary.loc[1] == pytest.approx(2.0)
        assert a.drps_horizon_summary.loc[2] == pytest.approx(3.0)
        assert a.interval_coverage == pytest.approx(0.5)
        assert len(a.all_drps) == 6

    def test_all_missing_horizon_is_nan(self, timepoint_tables):
        """Test a horizon step with no observed truth has a NaN mean."""
        series_evals, _ = aggregate_evaluations(timepoint_tables)

        b = series_evals["b"]
        assert b.drps_horizon_summary.loc[1] == pytest.approx(0.5)
        assert np.isnan(b.drps_horizon_summary.loc[2])
        assert b.sum_drps == pytest.approx(1.5)
        assert b.interval_coverage == pytest.approx(1.0)

    def test_total(self, timepoint_tables):
        """Test the total sums across series and averages coverage."""
        _, total = aggregate_evaluations(timepoint_tables)

        table = total.all_drps.set_index(["eval_timepoint", "eval_horizon"])
        assert table.loc[(5, 1), "drps"] == pytest.approx(1.5)
        # Missing scores count as zero unless every series is missing
        assert table.loc[(5, 2), "drps"] == pytest.approx(2.0)
        assert table.loc[(5, 1), "in_interval"] == pytest.approx(1.0)
        assert table.loc[(5, 2), "in_interval"] == pytest.approx(0.0)
        assert total.sum_drps == pytest.approx(15.0 + 1.5)

    def test_total_all_series_missing_is_nan(self):
        tables = [
            make_table("a", 5, [np.nan], [np.nan]),
            make_table("b", 5, [np.nan], [np.nan]),
        ]
        _, total = aggregate_evaluations(tables)

        assert np.isnan(total.all_drps["drps"].iloc[0])
        assert np.isnan(total.sum_drps)

    def test_order_independent(self, timepoint_tables):
        """Test permuting the arrival order of results changes nothing."""
        in_order = [timepoint_tables[t] for t in [5, 10, 15]]
        shuffled = [timepoint_tables[t] for t in [15, 5, 10]]

        evals1, total1 = aggregate_evaluations(in_order)
        evals2, total2 = aggregate_evaluations(shuffled)
        evals3, total3 = aggregate_evaluations(
            {t: timepoint_tables[t] for t in [10, 15, 5]}
        )

        for other_evals, other_total in [(evals2, total2), (evals3, total3)]:
            pd.testing.assert_frame_equal(total1.all_drps, other_total.all_drps)
            pd.testing.assert_series_equal(
                total1.drps_horizon_summary, other_total.drps_horizon_summary
            )
            for name in evals1:
                pd.testing.assert_frame_equal(
                    evals1[name].all_drps, other_evals[name].all_drps
                )
                assert evals1[name].sum_drps == other_evals[name].sum_drps

    def test_series_order(self, timepoint_tables):
        series_evals, _ = aggregate_evaluations(timepoint_tables, series_levels=["b", "a"])
        assert list(series_evals) == ["b", "a"]


class TestSeriesEvaluation:
    """Tests for SeriesEvaluation."""

    def test_timepoint_scores(self, timepoint_tables):
        series_evals, _ = aggregate_evaluations(timepoint_tables)
        scores = series_evals["a"].timepoint_scores()

        assert scores.index.tolist() == [5, 10, 15]
        assert scores.tolist() == pytest.approx([3.0, 5.0, 7.0])

    def test_summary_statistics(self, timepoint_tables):
        series_evals, _ = aggregate_evaluations(timepoint_tables)
        summary = series_evals["b"].drps_summary

        assert summary["count"] == 3
        assert summary["mean"] == pytest.approx(0.5)


class TestTimepointTask:
    """Tests for the per-timepoint worker task."""

    def test_returns_keyed_table(self, forecast_inputs):
        timepoint, table = _evaluate_timepoint_task(forecast_inputs, 10, 3, 100, 0.9, 1)

        assert timepoint == 10
        assert list(table.columns) == RESULT_COLUMNS
        assert len(table) == 2 * 3
        assert set(table["series"]) == {"series_1", "series_2"}
        assert (table["eval_timepoint"] == 10).all()
        assert (table["drps"] >= 0).all()
        assert table["in_interval"].isin([0.0, 1.0]).all()

    def test_seeded_by_timepoint(self, forecast_inputs):
        """Test the same seed and timepoint reproduce the same scores."""
        _, t1 = _evaluate_timepoint_task(forecast_inputs, 10, 3, 100, 0.9, 1)
        _, t2 = _evaluate_timepoint_task(forecast_inputs, 10, 3, 100, 0.9, 1)

        pd.testing.assert_frame_equal(t1, t2)

    def test_missing_truth_gives_nan(self, make_inputs):
        """Test a series with missing truth over the horizon yields NaN."""
        inputs = make_inputs()
        truth = inputs.truth.copy()
        truth[10:13, 0] = np.nan
        inputs = type(inputs)(**{**vars(inputs), "truth": truth})

        _, table = _evaluate_timepoint_task(inputs, 10, 3, 100, 0.9, 1)
        series_1 = table[table["series"] == "series_1"]
        series_2 = table[table["series"] == "series_2"]

        assert series_1["drps"].isna().all()
        assert series_1["in_interval"].isna().all()
        assert series_2["drps"].notna().all()

    def test_failure_names_timepoint(self, forecast_inputs):
        """Test a failure is wrapped with the offending timepoint."""
        with pytest.raises(TimepointEvaluationError, match="timepoint 29") as exc_info:
            _evaluate_timepoint_task(forecast_inputs, 29, 3, 100, 0.9, 1)

        assert exc_info.value.timepoint == 29
        assert isinstance(exc_info.value.__cause__, ValueError)


class TestRollingEvaluatorInit:
    """Tests for RollingEvaluator initialization."""

    def test_init_requires_fitted_model(self):
        """Test that initialization fails for unfitted model."""

        class MockUnfittedModel:
            def _check_is_fitted(self):
                raise ValueError("Model has not been fitted.")

        with pytest.raises(ValueError, match="Model has not been fitted"):
            RollingEvaluator(MockUnfittedModel())

    def test_fitted_check_precedes_posterior_access(self, mocker):
        """Test an unfitted model is rejected before its posterior is read."""
        model = mocker.Mock()
        model._check_is_fitted.side_effect = ValueError("Model has not been fitted.")

        with pytest.raises(ValueError, match="not been fitted"):
            RollingEvaluator(model)

        model.get_forecast_inputs.assert_not_called()

    def test_model_interface_called(self, mock_model):
        RollingEvaluator(mock_model)

        mock_model._check_is_fitted.assert_called_once()
        mock_model.get_forecast_inputs.assert_called_once()

    def test_caps_samples_with_warning(self, mock_model):
        """Test requesting more samples than draws warns and uses all draws."""
        with pytest.warns(UserWarning, match="only 200 posterior draws"):
            evaluator = RollingEvaluator(mock_model, n_samples=1000)

        assert evaluator.n_samples == 200

    @pytest.mark.parametrize(
        "kwargs,match",
        [
            ({"fc_horizon": 0}, "fc_horizon"),
            ({"interval_width": 1.0}, "interval_width"),
            ({"n_cores": 0}, "n_cores"),
            ({"n_samples": 0}, "n_samples"),
        ],
    )
    def test_invalid_configuration(self, mock_model, kwargs, match):
        with pytest.raises(ConfigurationError, match=match):
            RollingEvaluator(mock_model, **kwargs)

    def test_seed_drawn_when_missing(self, mock_model):
        evaluator = RollingEvaluator(mock_model, n_samples=50)
        assert isinstance(evaluator.random_seed, int)


class TestRollingEvaluator:
    """Tests for RollingEvaluator with a mocked model."""

    def test_evaluate(self, mock_model):
        """Test a rolling evaluation end to end on synthetic draws."""
        evaluator = RollingEvaluator(
            mock_model, n_samples=100, fc_horizon=3, n_cores=1, random_seed=1
        )
        evaluation = evaluator.evaluate(n_evaluations=4)

        assert isinstance(evaluation, RollingEvaluation)
        np.testing.assert_array_equal(evaluation.evaluation_seq, [3, 11, 19, 27])
        assert set(evaluation.series_evals) == {"series_1", "series_2"}
        assert np.isfinite(evaluation.total.sum_drps)
        assert evaluation.total.sum_drps >= 0
        assert 0 <= evaluation.total.interval_coverage <= 1
        assert evaluation.total.drps_horizon_summary.index.tolist() == [1, 2, 3]

    def test_deterministic_with_seed(self, mock_model):
        """Test repeated evaluation with a fixed seed is identical."""
        evaluator = RollingEvaluator(mock_model, n_samples=100, n_cores=1, random_seed=3)

        first = evaluator.evaluate(evaluation_seq=[5, 12, 20])
        second = evaluator.evaluate(evaluation_seq=[5, 12, 20])

        pd.testing.assert_frame_equal(first.summary(), second.summary())

    def test_timepoint_results_independent_of_sequence(self, mock_model):
        """Test a timepoint scores the same whatever else is evaluated."""
        evaluator = RollingEvaluator(mock_model, n_samples=100, n_cores=1, random_seed=3)

        alone = evaluator.evaluate(evaluation_seq=[12])
        together = evaluator.evaluate(evaluation_seq=[20, 5, 12])

        table = together.total.all_drps
        table = table[table["eval_timepoint"] == 12].reset_index(drop=True)
        pd.testing.assert_frame_equal(alone.total.all_drps, table)

    def test_parallel_matches_sequential(self, mock_model):
        """Test worker pool results match in-process results."""
        sequential = RollingEvaluator(mock_model, n_samples=100, n_cores=1, random_seed=5)
        parallel = RollingEvaluator(mock_model, n_samples=100, n_cores=2, random_seed=5)

        pd.testing.assert_frame_equal(
            sequential.evaluate(n_evaluations=3).summary(),
            parallel.evaluate(n_evaluations=3).summary(),
        )

    def test_none_trend_rejected(self, mocker, make_inputs):
        """Test rolling evaluation requires a dynamic trend."""
        model = mocker.Mock()
        model.get_forecast_inputs = mocker.Mock(return_value=make_inputs(trend_model="None"))
        evaluator = RollingEvaluator(model, n_samples=50, n_cores=1)

        with pytest.raises(ConfigurationError, match="dynamic trend"):
            evaluator.evaluate()

    def test_out_of_bounds_before_dispatch(self, mock_model, mocker):
        """Test invalid sequences fail before any work is dispatched."""
        parallel = mocker.patch("bayesiandynamicgam.evaluation.Parallel")
        evaluator = RollingEvaluator(mock_model, n_samples=50, fc_horizon=3)

        with pytest.raises(ConfigurationError):
            evaluator.evaluate(evaluation_seq=[5, 28])
        parallel.assert_not_called()

    def test_worker_failure_aborts(self, mock_model, mocker):
        """Test a failing timepoint aborts the evaluation."""
        mocker.patch(
            "bayesiandynamicgam.evaluation.forecast_from_timepoint",
            side_effect=np.linalg.LinAlgError("singular"),
        )
        evaluator = RollingEvaluator(mock_model, n_samples=50, n_cores=1)

        with pytest.raises(TimepointEvaluationError, match="timepoint 5.*singular"):
            evaluator.evaluate(evaluation_seq=[5, 10])

    def test_summary_has_total_row(self, mock_model):
        evaluator = RollingEvaluator(mock_model, n_samples=50, n_cores=1, random_seed=1)
        summary = evaluator.evaluate(n_evaluations=3).summary()

        assert summary.index.tolist() == ["series_1", "series_2", "Total"]
        assert {"sum_drps", "mean_drps", "interval_coverage", "drps_h1", "drps_h3"} <= set(
            summary.columns
        )

    def test_evaluate_timepoint_uses_test_period(self, mocker, make_inputs):
        """Test a single cutoff may forecast into the test period."""
        inputs = make_inputs(n_time=30, n_train=25, with_ypred=True)
        model = mocker.Mock()
        model.get_forecast_inputs = mocker.Mock(return_value=inputs)
        evaluator = RollingEvaluator(model, n_samples=50, fc_horizon=3, random_seed=1)

        table = evaluator.evaluate_timepoint(26)

        assert len(table) == 6
        with pytest.raises(ConfigurationError):
            evaluator.evaluate_timepoint(28)
        with pytest.raises(ConfigurationError):
            evaluator.evaluate(evaluation_seq=[23])


class TestModuleFunctions:
    """Tests for eval_model, roll_eval_model and compare_models."""

    def test_eval_model(self, mock_model):
        table = eval_model(mock_model, 10, fc_horizon=2, n_samples=50, random_seed=1)

        assert list(table.columns) == RESULT_COLUMNS
        assert table["eval_horizon"].tolist() == [1, 2, 1, 2]

    def test_eval_model_rejects_early_cutoff(self, mock_model):
        with pytest.raises(ConfigurationError):
            eval_model(mock_model, 2, n_samples=50)

    def test_roll_eval_model_matches_evaluator(self, mock_model):
        result = roll_eval_model(
            mock_model, evaluation_seq=[4, 9], n_samples=50, n_cores=1, random_seed=2
        )
        expected = RollingEvaluator(
            mock_model, n_samples=50, n_cores=1, random_seed=2
        ).evaluate(evaluation_seq=[4, 9])

        pd.testing.assert_frame_equal(result.summary(), expected.summary())

    def test_compare_models_pairs_timepoints(self, mocker, make_inputs):
        """Test paired scores have one row per evaluated timepoint."""
        model1 = mocker.Mock()
        model1.get_forecast_inputs = mocker.Mock(return_value=make_inputs(trend_model="AR1"))
        model2 = mocker.Mock()
        model2.get_forecast_inputs = mocker.Mock(
            return_value=make_inputs(trend_model="RW", seed=7)
        )

        comparison = compare_models(
            model1, model2, n_evaluations=4, n_samples=50, n_cores=1, random_seed=1
        )

        assert isinstance(comparison, ModelComparison)
        paired = comparison.paired_scores
        assert paired["eval_timepoint"].tolist() == comparison.evaluation1.evaluation_seq.tolist()
        assert len(paired) == len(comparison.evaluation2.evaluation_seq)
        assert paired[["model1_drps", "model2_drps"]].notna().all().all()
        np.testing.assert_allclose(
            paired["difference"], paired["model1_drps"] - paired["model2_drps"]
        )

        summary = comparison.summary()
        assert "Difference (Mean)" in summary.index
        assert 0 <= summary.loc["Model 1 Better (Share)", "Value"] <= 1

    def test_compare_models_requires_same_training_period(self, mocker, make_inputs):
        model1 = mocker.Mock()
        model1.get_forecast_inputs = mocker.Mock(return_value=make_inputs(n_time=30))
        model2 = mocker.Mock()
        model2.get_forecast_inputs = mocker.Mock(return_value=make_inputs(n_time=40))

        with pytest.raises(ConfigurationError, match="same training timepoints"):
            compare_models(model1, model2, n_samples=50, n_cores=1)


class TestModelComparisonSummary:
    """Tests for ModelComparison.summary()."""

    def test_share_model1_better(self):
        paired = pd.DataFrame(
            {
                "eval_timepoint": [3, 6, 9, 12],
                "model1_drps": [1.0, 2.0, 3.0, np.nan],
                "model2_drps": [2.0, 1.0, 4.0, 1.0],
            }
        )
        paired["difference"] = paired["model1_drps"] - paired["model2_drps"]
        empty = SeriesEvaluation.from_table(make_table("a", 3, [1.0], [1.0]))
        evaluation = RollingEvaluation({}, empty, np.array([3]), 1, 10)

        summary = ModelComparison(evaluation, evaluation, paired).summary()

        assert summary.loc["Model 1 Better (Share)", "Value"] == pytest.approx(2 / 3)
        assert summary.loc["Timepoints", "Value"] == 4
