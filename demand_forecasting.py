"""
Demand Forecasting Module

Generates monthly demand forecasts per SKU from historical observed demand.
Four selectable methods, all floored at zero:
- Holt-Winters triple exponential smoothing (additive or multiplicative seasonality)
- Prophet-inspired additive trend + full-history seasonality
- ARIMA-inspired mean reversion
- Ordinary least squares linear trend

Key Features:
- Confidence bands that widen with the square root of the forecast step
- Automatic additive/multiplicative Holt-Winters selection
- Optional anomaly cleaning and market shock scenarios
- SKU-level forecasting and cross-SKU aggregation

Performance Optimizations:
- Numba JIT compilation for the Holt-Winters recursions and trend fit
- Parallel processing with joblib for large SKU portfolios
"""

import math
from dataclasses import dataclass
from enum import Enum

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from numba import jit

from business_rules import FORECAST_RULES
from series_statistics import calculate_mean, calculate_std_dev, get_z_multiplier, round_half_up
from utils import add_months, month_key, normalize_month_series

FORECAST_COLUMNS = ['date', 'historical', 'forecast', 'lower_bound', 'upper_bound', 'is_forecast']


# ===== METHOD SELECTION =====

class Methodology(Enum):
    HOLT_WINTERS = 'Holt-Winters (Triple Exponential)'
    PROPHET = 'Prophet-Inspired (Additive)'
    ARIMA = 'ARIMA (Auto-Regressive)'
    LINEAR = 'Linear Regression'


class HoltWintersVariant(Enum):
    ADDITIVE = 'additive'
    MULTIPLICATIVE = 'multiplicative'


@dataclass(frozen=True)
class ForecastMethod:
    """
    Selected forecasting method.

    hw_variant and auto_detect_hw only matter for Holt-Winters; with
    auto_detect_hw the variant is chosen per series by detect_hw_variant().
    """
    methodology: Methodology = Methodology.HOLT_WINTERS
    hw_variant: HoltWintersVariant = HoltWintersVariant.MULTIPLICATIVE
    auto_detect_hw: bool = False

    def resolve_hw_variant(self, values) -> HoltWintersVariant:
        if self.auto_detect_hw:
            return detect_hw_variant(values)
        return self.hw_variant


# ===== NUMBA JIT-COMPILED FUNCTIONS FOR SPEED =====

@jit(nopython=True, cache=True)
def _holt_winters_additive_jit(values: np.ndarray, horizon: int, season_length: int,
                               alpha: float, beta: float, gamma: float) -> np.ndarray:
    """JIT-compiled additive Holt-Winters; level starts at the overall mean"""
    n = len(values)
    level0 = 0.0
    for i in range(n):
        level0 += values[i]
    level0 /= n
    if level0 == 0.0:
        level0 = 1.0

    level = level0
    trend = 0.0
    seasonal = np.zeros(season_length)
    for i in range(min(season_length, n)):
        seasonal[i] = values[i] - level0

    for i in range(n):
        s = i % season_length
        prev_level = level
        level = alpha * (values[i] - seasonal[s]) + (1.0 - alpha) * (level + trend)
        trend = beta * (level - prev_level) + (1.0 - beta) * trend
        seasonal[s] = gamma * (values[i] - level) + (1.0 - gamma) * seasonal[s]

    forecast = np.zeros(horizon)
    for i in range(1, horizon + 1):
        value = level + i * trend + seasonal[(n + i - 1) % season_length]
        forecast[i - 1] = max(0.0, value)
    return forecast


@jit(nopython=True, cache=True)
def _holt_winters_multiplicative_jit(values: np.ndarray, horizon: int, season_length: int,
                                     alpha: float, beta: float, gamma: float) -> np.ndarray:
    """JIT-compiled multiplicative Holt-Winters; level starts at the first cycle's mean"""
    n = len(values)
    init_period = min(season_length, n)
    level0 = 0.0
    for i in range(init_period):
        level0 += values[i]
    level0 /= init_period
    if level0 == 0.0:
        level0 = 1.0

    level = level0
    trend = 0.0
    divisor = min(season_length, n - 1)
    if divisor > 0:
        trend = (values[min(season_length - 1, n - 1)] - values[0]) / divisor
        if not np.isfinite(trend):
            trend = 0.0

    seasonal = np.ones(season_length)
    for i in range(init_period):
        seasonal[i] = values[i] / level0

    for i in range(n):
        s = i % season_length
        prev_level = level
        season_divisor = seasonal[s] if seasonal[s] != 0.0 else 1.0
        level = alpha * (values[i] / season_divisor) + (1.0 - alpha) * (level + trend)
        trend = beta * (level - prev_level) + (1.0 - beta) * trend
        level_divisor = level if level != 0.0 else 1.0
        seasonal[s] = gamma * (values[i] / level_divisor) + (1.0 - gamma) * seasonal[s]

    forecast = np.zeros(horizon)
    for i in range(1, horizon + 1):
        value = (level + i * trend) * seasonal[(n + i - 1) % season_length]
        forecast[i - 1] = max(0.0, value)
    return forecast


@jit(nopython=True, cache=True)
def _linear_fit_jit(values: np.ndarray) -> tuple:
    """JIT-compiled least squares fit over the point index, returns (slope, intercept)"""
    n = len(values)
    if n == 0:
        return 0.0, 0.0

    sum_x = 0.0
    sum_y = 0.0
    sum_xy = 0.0
    sum_xx = 0.0
    for i in range(n):
        x = float(i)
        y = values[i]
        sum_x += x
        sum_y += y
        sum_xy += x * y
        sum_xx += x * x

    denominator = n * sum_xx - sum_x * sum_x
    if abs(denominator) < 1e-10:
        return 0.0, sum_y / n

    slope = (n * sum_xy - sum_x * sum_y) / denominator
    intercept = (sum_y - slope * sum_x) / n
    return slope, intercept


# ===== FORECAST METHODS =====

def _run_holt_winters(values: np.ndarray, horizon: int, variant: HoltWintersVariant) -> np.ndarray:
    params = FORECAST_RULES["holt_winters"]
    kernel = (_holt_winters_additive_jit if variant is HoltWintersVariant.ADDITIVE
              else _holt_winters_multiplicative_jit)
    return kernel(values, horizon, FORECAST_RULES["season_length"],
                  params["alpha"], params["beta"], params["gamma"])


def _run_prophet(values: np.ndarray, horizon: int, variant: HoltWintersVariant) -> np.ndarray:
    """Full-history monthly seasonality plus a slightly bullish average growth trend."""
    n = len(values)
    season_length = FORECAST_RULES["season_length"]
    growth = (values[-1] - values[0]) / n
    mean = values.mean()

    seasonal = np.zeros(season_length)
    for i, value in enumerate(values):
        seasonal[i % season_length] += value - mean
    seasonal /= math.ceil(n / season_length)

    multiplier = FORECAST_RULES["prophet_growth_multiplier"]
    return np.array([
        max(0.0, round_half_up(seasonal[(i - 1) % season_length] + mean + growth * multiplier * i))
        for i in range(1, horizon + 1)
    ])


def _run_arima(values: np.ndarray, horizon: int, variant: HoltWintersVariant) -> np.ndarray:
    """AR(1)-style reversion from the last observation toward the long-run mean."""
    mean = values.mean()
    coefficient = FORECAST_RULES["arima_ar_coefficient"]
    current = values[-1]
    forecast = np.zeros(horizon)
    for i in range(horizon):
        current = mean + coefficient * (current - mean)
        forecast[i] = max(0.0, current)
    return forecast


def _run_linear(values: np.ndarray, horizon: int, variant: HoltWintersVariant) -> np.ndarray:
    n = len(values)
    slope, intercept = _linear_fit_jit(values)
    steps = np.arange(1, horizon + 1, dtype=np.float64)
    return np.maximum(0.0, slope * (n + steps - 1) + intercept)


# One entry per Methodology member
FORECAST_KERNELS = {
    Methodology.HOLT_WINTERS: _run_holt_winters,
    Methodology.PROPHET: _run_prophet,
    Methodology.ARIMA: _run_arima,
    Methodology.LINEAR: _run_linear,
}


def detect_hw_variant(values) -> HoltWintersVariant:
    """
    Pick the Holt-Winters variant that suits a series.

    Additive handles volatile series, series with a sparse ramp-up period and
    strongly trending series; steady seasonal series use multiplicative.
    """
    rules = FORECAST_RULES["auto_detect"]
    arr = np.asarray(values, dtype=np.float64)
    n = len(arr)
    if n < rules["min_points"]:
        return HoltWintersVariant.MULTIPLICATIVE

    mean = arr.mean()
    cv = calculate_std_dev(arr) / mean if mean > 0 else 0.0

    early = arr[:math.ceil(n * rules["early_window_fraction"])]
    low_value_threshold = mean * rules["low_value_fraction"]
    sparse_count = int(np.sum((early == 0) | (early < low_value_threshold)))
    early_sparsity = sparse_count / len(early) if len(early) > 0 else 0.0

    slope, _ = _linear_fit_jit(arr)
    trend_strength = abs(slope) / (mean if mean > 0 else 1.0)

    if (cv > rules["cv_threshold"]
            or early_sparsity > rules["sparsity_threshold"]
            or trend_strength > rules["trend_threshold"]):
        return HoltWintersVariant.ADDITIVE
    return HoltWintersVariant.MULTIPLICATIVE


def run_forecast_method(values, horizon: int, method: ForecastMethod) -> np.ndarray:
    """Raw (unrounded) forecast values for the next `horizon` periods after `values`."""
    arr = np.asarray(values, dtype=np.float64)
    variant = method.resolve_hw_variant(arr) if method.methodology is Methodology.HOLT_WINTERS else method.hw_variant
    return FORECAST_KERNELS[method.methodology](arr, horizon, variant)


def get_method_label(method: ForecastMethod, values=None) -> str:
    """Human readable method name used in exports, naming the Holt-Winters variant actually used."""
    if method.methodology is Methodology.HOLT_WINTERS:
        variant = method.resolve_hw_variant(values if values is not None else [])
        return f"Holt-Winters ({variant.value.capitalize()})"
    return method.methodology.value


# ===== SERIES PREPARATION =====

def prepare_observed_series(observed_df: pd.DataFrame) -> dict:
    """
    Split observed demand into one month-normalized series per SKU.

    Dates are moved to the first of their month and any remaining duplicate
    (sku, month) rows are summed.

    Returns:
        dict of {sku: DataFrame[date, quantity]} sorted by date
    """
    if observed_df is None or observed_df.empty:
        return {}

    df = observed_df[['sku', 'date', 'quantity']].copy()
    df['date'] = normalize_month_series(df['date'])
    df['quantity'] = pd.to_numeric(df['quantity'], errors='coerce').fillna(0.0).astype(float)
    monthly = df.groupby(['sku', 'date'], as_index=False)['quantity'].sum()

    return {
        sku: group[['date', 'quantity']].sort_values('date').reset_index(drop=True)
        for sku, group in monthly.groupby('sku', sort=True)
    }


def clean_anomalies(series_df: pd.DataFrame) -> pd.DataFrame:
    """Replace quantities more than 2.5 standard deviations from the mean with the rounded mean."""
    if series_df.empty:
        return series_df.copy()

    quantities = series_df['quantity'].astype(float)
    mean = calculate_mean(quantities)
    std = calculate_std_dev(quantities)
    is_anomaly = (quantities - mean).abs() > FORECAST_RULES["anomaly_z_threshold"] * std

    cleaned = series_df.copy()
    cleaned['quantity'] = quantities.where(~is_anomaly, round_half_up(mean))
    return cleaned


# ===== CORE FORECAST =====

def calculate_forecast(series_df: pd.DataFrame, horizon: int, training_end_date,
                       confidence_level: float = 95, method: ForecastMethod = None) -> pd.DataFrame:
    """
    Forecast one SKU's monthly series.

    Only points dated on or before training_end_date are used to fit the model.
    Every observed point is returned (historical == forecast == quantity,
    is_forecast marks points after the cutoff) followed by `horizon` future
    months starting the month after the cutoff.

    Args:
        series_df: DataFrame with 'date' and 'quantity' columns
        horizon: Number of future months
        training_end_date: Last date included in training
        confidence_level: Band width in percent (80-99)
        method: ForecastMethod, defaults to multiplicative Holt-Winters

    Returns:
        DataFrame with FORECAST_COLUMNS; empty when there is too little data
    """
    method = method or ForecastMethod()
    min_points = FORECAST_RULES["min_training_points"]

    if series_df is None or len(series_df) < min_points or training_end_date is None:
        return pd.DataFrame(columns=FORECAST_COLUMNS)

    cutoff = pd.Timestamp(training_end_date)
    series = series_df.sort_values('date', kind='stable')
    dates = pd.to_datetime(series['date'])
    quantities = series['quantity'].astype(float).to_numpy()

    train_values = quantities[(dates <= cutoff).to_numpy()]
    if len(train_values) < min_points:
        return pd.DataFrame(columns=FORECAST_COLUMNS)

    forecast_values = run_forecast_method(train_values, horizon, method)

    rows = [
        {
            'date': date,
            'historical': quantity,
            'forecast': quantity,
            'lower_bound': np.nan,
            'upper_bound': np.nan,
            'is_forecast': bool(date > cutoff),
        }
        for date, quantity in zip(dates, quantities)
    ]

    multiplier = get_z_multiplier(confidence_level)
    std_dev = calculate_std_dev(train_values)
    width_factor = FORECAST_RULES["interval_width_factor"]

    for i, value in enumerate(forecast_values):
        step = i + 1
        uncertainty = multiplier * std_dev * math.sqrt(step) * width_factor
        rows.append({
            'date': add_months(cutoff, step),
            'historical': np.nan,
            'forecast': round_half_up(value),
            'lower_bound': max(0.0, round_half_up(value - uncertainty)),
            'upper_bound': round_half_up(value + uncertainty),
            'is_forecast': True,
        })

    result = pd.DataFrame(rows, columns=FORECAST_COLUMNS)
    result['is_forecast'] = result['is_forecast'].astype(bool)
    return result


def apply_market_shocks(forecast_df: pd.DataFrame, shocks) -> pd.DataFrame:
    """
    Scale forecast-period quantities in shocked months by (1 + change / 100).

    The first shock listed for a month wins. Historical periods are untouched.
    """
    if forecast_df.empty or not shocks:
        return forecast_df

    shock_by_month = {}
    for shock in shocks:
        shock_by_month.setdefault(shock.month, shock)

    shocked = forecast_df.copy()
    for idx, row in shocked.iterrows():
        shock = shock_by_month.get(month_key(row['date']))
        if shock is not None and row['is_forecast']:
            multiplier = 1 + shock.percentage_change / 100.0
            shocked.at[idx, 'forecast'] = round_half_up(row['forecast'] * multiplier)
    return shocked


def _forecast_single_sku(series_df, config):
    # Observations after the cutoff would duplicate the generated forecast months
    series_df = series_df[series_df['date'] <= pd.Timestamp(config.historical_end_date)]
    if config.apply_anomaly_cleaning:
        series_df = clean_anomalies(series_df)
    return calculate_forecast(series_df, config.horizon, config.historical_end_date,
                              config.confidence_level, config.method)


def generate_demand_forecast(observed_df: pd.DataFrame, config):
    """
    Main function to generate forecasts for every SKU in the observed data.

    Args:
        observed_df: Observed demand with sku, date and quantity columns
        config: AnalysisConfig for this run

    Returns:
        tuple: (logs, forecasts) where forecasts is {sku: forecast DataFrame};
        SKUs with insufficient history are left out
    """
    logs = []
    logs.append("--- Demand Forecasting Engine ---")

    if observed_df is None or observed_df.empty:
        logs.append("ERROR: No observed demand provided. Cannot generate forecasts.")
        return logs, {}

    series_by_sku = prepare_observed_series(observed_df)
    skus = list(series_by_sku.keys())
    logs.append(f"INFO: Prepared monthly series for {len(skus)} SKUs")
    logs.append(f"INFO: Method: {config.method.methodology.value}, horizon {config.horizon} months, "
                f"{config.confidence_level}% confidence, training through {pd.Timestamp(config.historical_end_date).date()}")

    if config.apply_anomaly_cleaning:
        logs.append(f"INFO: Cleaning anomalies beyond {FORECAST_RULES['anomaly_z_threshold']} standard deviations")

    if config.use_parallel and len(skus) > FORECAST_RULES["parallel_min_skus"]:
        n_jobs = min(FORECAST_RULES["max_parallel_jobs"], len(skus) // FORECAST_RULES["parallel_min_skus"])
        logs.append(f"INFO: Forecasting in parallel with {n_jobs} workers")
        results = Parallel(n_jobs=n_jobs, prefer="threads")(
            delayed(_forecast_single_sku)(series_by_sku[sku], config) for sku in skus
        )
    else:
        results = [_forecast_single_sku(series_by_sku[sku], config) for sku in skus]

    forecasts = {sku: df for sku, df in zip(skus, results) if not df.empty}

    skipped = len(skus) - len(forecasts)
    if skipped:
        logs.append(f"WARNING: Skipped {skipped} SKUs with fewer than "
                    f"{FORECAST_RULES['min_training_points']} training points")

    if not forecasts:
        logs.append("WARNING: No SKUs had sufficient data for forecasting")
        return logs, {}

    if config.shocks:
        forecasts = {sku: apply_market_shocks(df, config.shocks) for sku, df in forecasts.items()}
        logs.append(f"INFO: Applied {len(config.shocks)} market shock scenarios")

    total_forecast = sum(df.loc[df['is_forecast'], 'forecast'].sum() for df in forecasts.values())
    logs.append(f"INFO: Generated forecasts for {len(forecasts)} SKUs")
    logs.append(f"INFO: Total forecasted demand: {total_forecast:,.0f} units")
    return logs, forecasts


# ===== AGGREGATION =====

SUMMED_COLUMNS = ['forecast', 'lower_bound', 'upper_bound', 'projected_inventory', 'incoming_receipts',
                  'projected_revenue', 'projected_margin', 'inventory_value']
MAX_COLUMNS = ['safety_stock', 'reorder_point']
FLAG_COLUMNS = ['is_forecast', 'stockout_risk', 'safety_stock_breach']


def aggregate_forecasts(forecasts: dict) -> pd.DataFrame:
    """
    Combine per-SKU forecast frames into one portfolio series by date.

    Quantities, bounds and financials are summed; historical is summed over
    historical periods only; safety stock and reorder point take the largest
    SKU value; flags are set when any SKU is flagged.
    """
    frames = [df for df in forecasts.values() if df is not None and not df.empty]
    if not frames:
        return pd.DataFrame(columns=FORECAST_COLUMNS)

    combined = pd.concat(frames, ignore_index=True)
    combined['historical'] = combined['historical'].where(~combined['is_forecast'].astype(bool))

    grouped = combined.groupby('date', sort=True)
    result = grouped['historical'].sum(min_count=1).to_frame()

    for col in SUMMED_COLUMNS:
        if col in combined.columns:
            result[col] = grouped[col].sum(min_count=1)
    for col in MAX_COLUMNS:
        if col in combined.columns:
            result[col] = grouped[col].max()
    for col in FLAG_COLUMNS:
        if col in combined.columns:
            result[col] = grouped[col].max().astype(bool)

    result = result.reset_index()
    ordered = FORECAST_COLUMNS + [c for c in result.columns if c not in FORECAST_COLUMNS]
    return result[ordered]
