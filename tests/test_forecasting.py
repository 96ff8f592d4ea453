"""Tests for forecast synthesis."""

import numpy as np
import pytest
import xarray as xr

from bayesiandynamicgam.families import TrendModel
from bayesiandynamicgam.forecasting import (
    ForecastInputs,
    forecast_from_timepoint,
    propagate_trend,
    subsample_draws,
)


class TestForecastInputs:
    """Tests for the ForecastInputs snapshot."""

    def test_arrays_read_only(self, forecast_inputs):
        """Test the snapshot cannot be mutated."""
        with pytest.raises(ValueError):
            forecast_inputs.trend[0, 0, 0] = 1.0

    def test_frozen(self, forecast_inputs):
        with pytest.raises(AttributeError):
            forecast_inputs.n_train = 5

    def test_dimensions(self, forecast_inputs):
        assert forecast_inputs.n_draws == 200
        assert forecast_inputs.n_series == 2
        assert forecast_inputs.n_time == 30

    def test_series_index_by_name(self, forecast_inputs):
        """Test series are addressed by name."""
        assert forecast_inputs.series_index("series_2") == 1
        with pytest.raises(ValueError, match="Unknown series"):
            forecast_inputs.series_index("series_9")

    def test_missing_trend_parameters_raise(self, forecast_inputs):
        """Test an AR model without AR coefficients is rejected."""
        with pytest.raises(ValueError, match="requires 'ar_coefs'"):
            ForecastInputs(
                series_levels=forecast_inputs.series_levels,
                family="poisson",
                trend_model="AR1",
                truth=forecast_inputs.truth,
                n_train=30,
                fixed_eta=forecast_inputs.fixed_eta,
                trend=forecast_inputs.trend,
                trend_sigma=forecast_inputs.trend_sigma,
            )

    def test_truth_shape_mismatch_raises(self, forecast_inputs):
        with pytest.raises(ValueError, match="truth must have shape"):
            ForecastInputs(
                series_levels=forecast_inputs.series_levels,
                family="poisson",
                trend_model="None",
                truth=forecast_inputs.truth[:10],
                n_train=10,
                fixed_eta=forecast_inputs.fixed_eta,
            )

    def test_dispersion_required(self, make_inputs):
        """Test NB inputs need a dispersion parameter."""
        inputs = make_inputs(family="nb")
        with pytest.raises(ValueError, match="requires 'dispersion'"):
            ForecastInputs(
                series_levels=inputs.series_levels,
                family="nb",
                trend_model="RW",
                truth=inputs.truth,
                n_train=30,
                fixed_eta=inputs.fixed_eta,
                trend=inputs.trend,
                trend_sigma=inputs.trend_sigma,
            )


class TestSubsampleDraws:
    """Tests for subsample_draws."""

    def test_no_duplicates(self):
        """Test draws are chosen without replacement."""
        rng = np.random.default_rng(0)
        idx = subsample_draws(100, 100, rng)

        assert len(np.unique(idx)) == 100

    def test_too_many_samples_raise(self):
        rng = np.random.default_rng(0)
        with pytest.raises(ValueError, match="Cannot use 101 samples"):
            subsample_draws(100, 101, rng)

    def test_non_positive_raise(self):
        rng = np.random.default_rng(0)
        with pytest.raises(ValueError, match="positive"):
            subsample_draws(100, 0, rng)


class TestPropagateTrend:
    """Tests for latent trend propagation."""

    def test_none_trend_is_zero(self, make_inputs):
        inputs = make_inputs(trend_model="None")
        rng = np.random.default_rng(0)
        trend = propagate_trend(inputs, np.arange(10), 5, 3, rng)

        assert trend.shape == (10, 2, 3)
        assert np.all(trend == 0)

    def test_rw_without_noise_holds_level(self, make_inputs):
        """Test a random walk with zero innovation stays at its last state."""
        inputs = make_inputs(trend_model="RW")
        zero_noise = ForecastInputs(
            **{**vars(inputs), "trend_sigma": np.zeros((200, 2))}
        )
        rng = np.random.default_rng(0)
        draw_idx = np.arange(5)
        trend = propagate_trend(zero_noise, draw_idx, 10, 4, rng)

        expected = inputs.trend[draw_idx, :, 9][:, :, None]
        np.testing.assert_allclose(trend, np.broadcast_to(expected, trend.shape))

    def test_ar1_without_noise_decays(self, make_inputs):
        """Test an AR(1) with zero innovation decays geometrically."""
        inputs = make_inputs(trend_model="AR1")
        zero_noise = ForecastInputs(
            **{**vars(inputs), "trend_sigma": np.zeros((200, 2))}
        )
        rng = np.random.default_rng(0)
        trend = propagate_trend(zero_noise, np.array([0]), 10, 3, rng)

        last = inputs.trend[0, :, 9]
        for h in range(3):
            np.testing.assert_allclose(trend[0, :, h], last * 0.6 ** (h + 1))

    def test_ar3_uses_lags_in_order(self, make_inputs):
        """Test AR coefficient j multiplies lag j + 1."""
        inputs = make_inputs(trend_model="AR3")
        coefs = np.zeros((200, 2, 3))
        coefs[:, :, 2] = 1.0
        lag3 = ForecastInputs(
            **{**vars(inputs), "ar_coefs": coefs, "trend_sigma": np.zeros((200, 2))}
        )
        rng = np.random.default_rng(0)
        trend = propagate_trend(lag3, np.array([0]), 10, 3, rng)

        # x[t+k] = x[t+k-3] repeats the last three states
        np.testing.assert_allclose(trend[0], inputs.trend[0, :, 7:10])

    def test_gp_forecast_shape_and_continuity(self, make_inputs):
        """Test the GP conditional is finite and starts near the last state."""
        inputs = make_inputs(trend_model="GP", n_draws=20)
        rng = np.random.default_rng(0)
        trend = propagate_trend(inputs, np.arange(20), 15, 2, rng)

        assert trend.shape == (20, 2, 2)
        assert np.all(np.isfinite(trend))


class TestForecastFromTimepoint:
    """Tests for forecast_from_timepoint."""

    def test_output_dims(self, forecast_inputs):
        """Test the forecast is (sample, series, horizon)."""
        rng = np.random.default_rng(0)
        fc = forecast_from_timepoint(forecast_inputs, 10, 3, 50, rng)

        assert isinstance(fc, xr.DataArray)
        assert fc.dims == ("sample", "series", "horizon")
        assert fc.shape == (50, 2, 3)
        assert fc.coords["horizon"].values.tolist() == [1, 2, 3]
        assert fc.coords["series"].values.tolist() == ["series_1", "series_2"]
        assert np.all(fc.values >= 0)

    def test_deterministic_given_seed(self, forecast_inputs):
        fc1 = forecast_from_timepoint(forecast_inputs, 10, 3, 50, np.random.default_rng(9))
        fc2 = forecast_from_timepoint(forecast_inputs, 10, 3, 50, np.random.default_rng(9))

        xr.testing.assert_equal(fc1, fc2)

    def test_reuses_stored_predictions_beyond_training(self, make_inputs):
        """Test draws from the fit are reused for test-period windows."""
        inputs = make_inputs(n_time=30, n_train=25, with_ypred=True)
        rng = np.random.default_rng(0)
        fc = forecast_from_timepoint(inputs, 25, 3, 200, rng)

        # All draws are used, sorted, so they line up with ypred
        np.testing.assert_array_equal(
            fc.values, inputs.ypred[:, :, 25:28]
        )

    def test_window_beyond_data_raises(self, forecast_inputs):
        rng = np.random.default_rng(0)
        with pytest.raises(ValueError, match="only 30 timepoints"):
            forecast_from_timepoint(forecast_inputs, 28, 3, 10, rng)

    def test_invalid_horizon_raises(self, forecast_inputs):
        rng = np.random.default_rng(0)
        with pytest.raises(ValueError, match="horizon must be at least 1"):
            forecast_from_timepoint(forecast_inputs, 10, 0, 10, rng)

    def test_too_early_for_ar_order_raises(self, make_inputs):
        inputs = make_inputs(trend_model="AR3")
        rng = np.random.default_rng(0)
        with pytest.raises(ValueError, match="too early"):
            forecast_from_timepoint(inputs, 2, 3, 10, rng)

    @pytest.mark.parametrize("trend_model", ["RW", "AR2", "GP"])
    @pytest.mark.parametrize("family", ["poisson", "nb", "tw"])
    def test_all_variants(self, make_inputs, trend_model, family):
        """Test every family and trend combination produces counts."""
        inputs = make_inputs(trend_model=trend_model, family=family, n_draws=30)
        rng = np.random.default_rng(0)
        fc = forecast_from_timepoint(inputs, 12, 2, 30, rng)

        assert TrendModel.parse(trend_model) is inputs.trend_model
        assert np.all(fc.values >= 0)
        assert np.all(fc.values == np.round(fc.values))
