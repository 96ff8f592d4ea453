"""Pytest configuration and shared fixtures."""

import numpy as np
import pytest


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--run-slow",
        action="store_true",
        default=False,
        help="Run slow tests (MCMC fitting)",
    )


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "slow: mark test as slow (MCMC fitting)")


def pytest_collection_modifyitems(config, items):
    """Skip slow tests unless --run-slow is provided."""
    if config.getoption("--run-slow"):
        # Run all tests
        return

    skip_slow = pytest.mark.skip(reason="need --run-slow option to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


def make_forecast_inputs(
    trend_model="AR1",
    family="poisson",
    n_draws=200,
    n_series=2,
    n_time=30,
    n_train=None,
    seed=42,
    with_ypred=False,
):
    """Build a synthetic posterior snapshot with a known latent trend."""
    from bayesiandynamicgam.families import Family, TrendModel, simulate_observations
    from bayesiandynamicgam.forecasting import ForecastInputs

    rng = np.random.default_rng(seed)
    trend_model = TrendModel.parse(trend_model)
    family = Family.parse(family)
    n_train = n_time if n_train is None else n_train

    fixed_eta = np.full((n_draws, n_series, n_time), np.log(5.0))

    params = {}
    if trend_model.is_dynamic:
        trend = np.zeros((n_draws, n_series, n_time))
        for t in range(1, n_time):
            trend[:, :, t] = 0.6 * trend[:, :, t - 1] + rng.normal(0, 0.2, (n_draws, n_series))
        params["trend"] = trend
    if trend_model.ar_order or trend_model is TrendModel.RW:
        params["trend_sigma"] = np.full((n_draws, n_series), 0.2)
    if trend_model.ar_order:
        coefs = np.zeros((n_draws, n_series, trend_model.ar_order))
        coefs[:, :, 0] = 0.6
        params["ar_coefs"] = coefs
    if trend_model is TrendModel.GP:
        params["gp_alpha"] = np.full((n_draws, n_series), 0.3)
        params["gp_rho"] = np.full((n_draws, n_series), 4.0)
    if family.has_dispersion:
        params["dispersion"] = np.full((n_draws, n_series), 10.0)

    eta = fixed_eta + params.get("trend", 0.0)
    dispersion = params.get("dispersion")
    ypred = simulate_observations(
        family, np.exp(eta), rng, None if dispersion is None else dispersion[:, :, None]
    )
    truth = ypred[0].T.copy()

    return ForecastInputs(
        series_levels=tuple(f"series_{i}" for i in range(1, n_series + 1)),
        family=family,
        trend_model=trend_model,
        truth=truth,
        n_train=n_train,
        fixed_eta=fixed_eta,
        ypred=ypred if with_ypred else None,
        **params,
    )


@pytest.fixture
def forecast_inputs():
    """Synthetic AR(1) Poisson posterior snapshot (2 series, 30 timepoints)."""
    return make_forecast_inputs()


@pytest.fixture
def mock_model(mocker, forecast_inputs):
    """Create a mock fitted model exposing a synthetic posterior snapshot."""
    model = mocker.Mock()
    model._check_is_fitted = mocker.Mock()
    model.get_forecast_inputs = mocker.Mock(return_value=forecast_inputs)
    return model


@pytest.fixture
def make_inputs():
    """Factory fixture for synthetic posterior snapshots."""
    return make_forecast_inputs
