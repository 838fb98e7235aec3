"""
Pytest configuration and shared fixtures for all tests
Centralized mock data and utilities
"""

import pytest
import pandas as pd
import numpy as np
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from business_rules import AnalysisConfig
from demand_forecasting import ForecastMethod, HoltWintersVariant, Methodology


# ===== SHARED MOCK DATA FIXTURES =====

def make_series(values, start='2022-01-01'):
    """Monthly series DataFrame (date, quantity) starting at `start`."""
    return pd.DataFrame({
        'date': pd.date_range(start, periods=len(values), freq='MS'),
        'quantity': [float(v) for v in values],
    })


def make_observed(series_by_sku, start='2022-01-01'):
    """Long observed-demand DataFrame (sku, date, quantity) from {sku: values}."""
    frames = []
    for sku, values in series_by_sku.items():
        frame = make_series(values, start)
        frame.insert(0, 'sku', sku)
        frames.append(frame)
    return pd.concat(frames, ignore_index=True)


@pytest.fixture
def flat_series():
    """24 identical monthly values of 100"""
    return make_series([100] * 24)


@pytest.fixture
def seasonal_series():
    """
    36 months of seasonal demand with mild growth:
    - yearly sine wave of amplitude 30 around 200
    - +1 unit per month trend
    """
    months = np.arange(36)
    values = 200 + 30 * np.sin(2 * np.pi * months / 12) + months
    return make_series(np.round(values))


@pytest.fixture
def observed_df():
    """
    Three SKUs covering 2022-01 .. 2023-12 (24 months):
    - STABLE: flat 100 per month
    - GROWING: 50 rising by 5 per month
    - SPIKY: alternating 10 / 190
    """
    return make_observed({
        'STABLE': [100] * 24,
        'GROWING': [50 + 5 * i for i in range(24)],
        'SPIKY': [10 if i % 2 == 0 else 190 for i in range(24)],
    })


@pytest.fixture
def base_config():
    """Multiplicative Holt-Winters, 6-month horizon, history through 2023-12"""
    return AnalysisConfig(
        method=ForecastMethod(Methodology.HOLT_WINTERS, HoltWintersVariant.MULTIPLICATIVE),
        historical_end_date=pd.Timestamp('2023-12-31'),
        horizon=6,
        confidence_level=95,
        lead_time_days=30,
        service_level=0.95,
        use_parallel=False,
    )


@pytest.fixture
def empty_dataframe():
    """Returns an empty DataFrame"""
    return pd.DataFrame()


# ===== UTILITY FUNCTIONS FOR TESTS =====

def assert_log_contains(logs, expected_message):
    """
    Helper to assert that a log message contains expected text

    Args:
        logs: List of log messages
        expected_message: Text expected to be in one of the logs
    """
    log_text = " ".join(logs)
    assert expected_message in log_text, f"Expected '{expected_message}' not found in logs: {log_text}"


def assert_columns_exist(df, columns):
    """
    Helper to assert that DataFrame contains required columns

    Args:
        df: Pandas DataFrame
        columns: List of column names that should exist
    """
    missing = set(columns) - set(df.columns)
    assert not missing, f"Missing required columns: {missing}"


def assert_no_nulls(df, columns):
    """
    Helper to assert that specified columns have no null values

    Args:
        df: Pandas DataFrame
        columns: List of column names to check
    """
    for col in columns:
        null_count = df[col].isna().sum()
        assert null_count == 0, f"Column '{col}' has {null_count} null values"
