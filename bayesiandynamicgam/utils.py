"""
Utility functions for dynamic GAM modeling.

This module provides helpers for converting long-format multi-series data
to the unified time index and (time x series) matrices used by the PyMC
model and the forecast evaluation routines.
"""

from __future__ import annotations

import numpy as np
import pandas as pd


def validate_series_data(
    data: pd.DataFrame,
    response: str = "y",
    time_column: str = "time",
    series_column: str = "series",
    min_timepoints: int = 3,
    require_observed: bool = True,
) -> None:
    """
    Validate that long-format data is suitable for dynamic GAM modeling.

    Parameters
    ----------
    data : pd.DataFrame
        Data to validate.
    response : str, optional
        Name of the response column. Default is "y".
    time_column : str, optional
        Name of the time column. Default is "time".
    series_column : str, optional
        Name of the series column. Default is "series".
    min_timepoints : int, optional
        Minimum number of distinct times. Default is 3.
    require_observed : bool, optional
        Whether at least one response value must be observed. Default is True.

    Raises
    ------
    ValueError
        If the data is not suitable for modeling.
    """
    if not isinstance(data, pd.DataFrame):
        raise ValueError("Input data must be a pandas DataFrame")

    missing = [c for c in (response, time_column, series_column) if c not in data.columns]
    if missing:
        raise ValueError(f"Data is missing required columns: {missing}")

    if data[time_column].isna().any() or data[series_column].isna().any():
        raise ValueError("Time and series columns cannot contain missing values")

    if data.duplicated([time_column, series_column]).any():
        raise ValueError("Data contains more than one row per (time, series) pair")

    n_times = data[time_column].nunique()
    n_series = data[series_column].nunique()
    if len(data) != n_times * n_series:
        raise ValueError(
            f"Every series must have a row at every time: expected "
            f"{n_times * n_series} rows ({n_times} times x {n_series} series), "
            f"got {len(data)}. Use NaN in '{response}' for missing observations."
        )

    if n_times < min_timepoints:
        raise ValueError(f"Data must have at least {min_timepoints} timepoints")

    response_values = data[response].dropna()
    if require_observed and len(response_values) == 0:
        raise ValueError(f"Response column '{response}' has no observed values")
    if (response_values < 0).any():
        raise ValueError(
            f"Response column '{response}' contains negative values; "
            "dynamic GAM families require non-negative counts"
        )


def prepare_series_data(
    data: pd.DataFrame,
    response: str = "y",
    time_column: str = "time",
    series_column: str = "series",
    series_levels: list[str] | None = None,
    time_offset: int = 0,
    min_timepoints: int = 3,
    require_observed: bool = True,
) -> pd.DataFrame:
    """
    Prepare long-format data for modeling.

    Adds a ``time_index`` column (1-based dense rank of the sorted unique
    times, shifted by ``time_offset``), encodes the series column as an
    ordered categorical, and sorts by time then series.

    Parameters
    ----------
    data : pd.DataFrame
        Long-format data with time, series and response columns.
    response : str, optional
        Name of the response column. Default is "y".
    time_column : str, optional
        Name of the time column. Default is "time".
    series_column : str, optional
        Name of the series column. Default is "series".
    series_levels : list[str], optional
        Series levels to use. If None, the sorted unique series names.
    time_offset : int, optional
        Added to the time index, so test data can continue the training
        index. Default is 0.
    min_timepoints, require_observed
        Passed to `validate_series_data`.

    Returns
    -------
    pd.DataFrame
        A copy of the data with ``time_index`` and a categorical series
        column.
    """
    validate_series_data(
        data,
        response,
        time_column,
        series_column,
        min_timepoints=min_timepoints,
        require_observed=require_observed,
    )

    df = data.copy()
    df[series_column] = df[series_column].astype(str)

    if series_levels is None:
        series_levels = sorted(df[series_column].unique())
    else:
        unknown = set(df[series_column].unique()) - set(series_levels)
        if unknown:
            raise ValueError(f"Unknown series levels in data: {sorted(unknown)}")

    df[series_column] = pd.Categorical(df[series_column], categories=series_levels)
    df["time_index"] = (
        df[time_column].rank(method="dense").astype(int) + time_offset
    )
    df[response] = df[response].astype(np.float64)

    return df.sort_values(["time_index", series_column]).reset_index(drop=True)


def combine_train_test(
    data_train: pd.DataFrame,
    data_test: pd.DataFrame,
    response: str = "y",
    time_column: str = "time",
    series_column: str = "series",
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """
    Prepare training and test data on a shared, continuous time index.

    The test data must start after the last training time; its time index
    continues the training index with no gap.

    Returns
    -------
    tuple[pd.DataFrame, pd.DataFrame]
        Prepared ``(train, test)`` DataFrames.
    """
    train = prepare_series_data(data_train, response, time_column, series_column)
    series_levels = list(train[series_column].cat.categories)

    if data_test[time_column].min() <= data_train[time_column].max():
        raise ValueError("Test data must start after the last training time")

    if set(data_test[series_column].astype(str).unique()) != set(series_levels):
        raise ValueError("Test data must contain the same series as the training data")

    test = prepare_series_data(
        data_test,
        response,
        time_column,
        series_column,
        series_levels=series_levels,
        time_offset=int(train["time_index"].max()),
        min_timepoints=1,
        require_observed=False,
    )

    return train, test


def series_to_matrix(
    data: pd.DataFrame,
    value_column: str = "y",
    series_column: str = "series",
) -> np.ndarray:
    """
    Pivot prepared long-format data to a (time x series) matrix.

    Parameters
    ----------
    data : pd.DataFrame
        Data prepared by `prepare_series_data` (one or more frames
        concatenated on the same time index).
    value_column : str, optional
        Column to pivot. Default is "y".
    series_column : str, optional
        Name of the series column. Default is "series".

    Returns
    -------
    np.ndarray
        Values of shape ``(n_time, n_series)`` ordered by time index and
        series level; NaN where missing.
    """
    pivot = data.pivot(index="time_index", columns=series_column, values=value_column)
    pivot = pivot.reindex(columns=data[series_column].cat.categories)
    return pivot.sort_index().to_numpy(dtype=np.float64)


def split_formula(formula: str) -> tuple[str | None, str]:
    """
    Split a model formula into its response and right-hand side.

    Parameters
    ----------
    formula : str
        Formula such as ``"y ~ 1 + bs(season, df=4)"``.

    Returns
    -------
    tuple[str or None, str]
        The response name (None if the formula has no left-hand side)
        and the right-hand side.
    """
    if "~" in formula:
        lhs, rhs = formula.split("~", 1)
        response = lhs.strip() or None
    else:
        response, rhs = None, formula

    rhs = rhs.strip()
    if not rhs:
        raise ValueError(f"Formula '{formula}' has an empty right-hand side")
    return response, rhs
