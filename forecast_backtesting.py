"""
Forecast Backtesting Module

Validates forecasting methods against history the models did not see.

For a forecast start month FS:
- Holdout window: FS-12 .. FS-1. Each SKU is trained on everything before the
  holdout and forecast 13 months ahead with every method.
- Scoring window: FS-7 .. FS-2 (six months). FS-1 is a buffer month and is
  excluded from scoring.

Per-SKU results are collected into a long arena (sku, method, date, forecast,
actual) and reduced afterwards into per-method and aggregate metrics, so a
skipped SKU simply contributes no rows.
"""

import math
from dataclasses import dataclass
from enum import Enum

import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from business_rules import BACKTEST_RULES, FORECAST_RULES
from demand_forecasting import ForecastMethod, Methodology, calculate_forecast, prepare_observed_series
from utils import add_months, normalize_month

ARENA_COLUMNS = ['sku', 'method', 'date', 'forecast', 'actual']
WORST_SKU_COLUMNS = ['sku', 'mape', 'rmse', 'bias', 'accuracy', 'forecast_count']


class BacktestStage(Enum):
    IDLE = 'idle'
    TRAINED = 'trained'
    FORECASTED = 'forecasted'
    SCORED = 'scored'


@dataclass(frozen=True)
class SkuBacktest:
    """Outcome for one SKU; skipped SKUs stay IDLE with a reason and no records."""
    sku: str
    stage: BacktestStage
    reason: str
    records: pd.DataFrame


# ===== WINDOWS =====

def get_holdout_window(forecast_start_date):
    """(first, last) month withheld from training: FS-12 .. FS-1."""
    start = normalize_month(forecast_start_date)
    return add_months(start, -BACKTEST_RULES["holdout_months"]), add_months(start, -1)


def get_scoring_window(forecast_start_date):
    """(first, last) month scored: the six months ending two months before FS."""
    start = normalize_month(forecast_start_date)
    last = add_months(start, -(BACKTEST_RULES["scoring_buffer_months"] + 1))
    first = add_months(last, -(BACKTEST_RULES["scoring_months"] - 1))
    return first, last


def _in_window(dates: pd.Series, window) -> pd.Series:
    return (dates >= window[0]) & (dates <= window[1])


# ===== METRICS =====

def calculate_accuracy_metrics(actuals, forecasts):
    """
    Volume-weighted accuracy metrics over paired actual / forecast values.

    - mape: sum(|a - f|) / sum(|a|) * 100, 0 when there is no actual volume
    - rmse: root mean squared error
    - accuracy: 100% minus the total-volume miss, clamped to 0-100
    - bias: (total forecast - total actual) / total actual * 100; positive means over-forecast

    Returns:
        dict of mape, rmse, bias, accuracy; None when there are no pairs
    """
    a = np.asarray(actuals, dtype=np.float64)
    f = np.asarray(forecasts, dtype=np.float64)
    if a.size == 0:
        return None

    abs_actual = np.abs(a).sum()
    mape = np.abs(a - f).sum() / abs_actual * 100 if abs_actual > 0 else 0.0
    rmse = math.sqrt(np.mean((a - f) ** 2))

    total_actual = a.sum()
    total_forecast = f.sum()
    denominator = max(total_actual, 1.0)
    accuracy = min(100.0, max(0.0, (1 - abs(total_actual - total_forecast) / denominator) * 100))
    bias = (total_forecast - total_actual) / denominator * 100

    return {'mape': float(mape), 'rmse': float(rmse), 'bias': float(bias), 'accuracy': float(accuracy)}


def calculate_forecast_metrics(actual, forecast):
    """
    Error metrics for a single series, pairing values by position.

    Returns:
        dict: mape, rmse, bias, mad and accuracy (100 - mape, floored at 0)
    """
    n = min(len(actual), len(forecast))
    a = np.asarray(actual[:n], dtype=np.float64)
    f = np.asarray(forecast[:n], dtype=np.float64)

    errors = f - a
    sum_actual = a.sum()
    sum_abs_error = np.abs(errors).sum()

    mape = sum_abs_error / sum_actual * 100 if n > 0 and sum_actual != 0 else 0.0
    divisor = n or 1
    return {
        'mape': float(mape),
        'rmse': float(math.sqrt((errors ** 2).sum() / divisor)),
        'bias': float(errors.sum() / (sum_actual or 1) * 100),
        'mad': float(sum_abs_error / divisor),
        'accuracy': float(max(0.0, 100 - mape)),
    }


# ===== PER-SKU BACKTEST =====

def backtest_sku(series_df: pd.DataFrame, sku, forecast_start_date, confidence_level: float = 95,
                 hw_variant=None, auto_detect_hw: bool = False) -> SkuBacktest:
    """
    Train on history before the holdout window and forecast it with every method.

    Args:
        series_df: This SKU's monthly series (date, quantity)
        sku: SKU identifier for the arena rows
        forecast_start_date: Anchor month for the holdout window
        confidence_level: Passed through to the forecaster
        hw_variant: Holt-Winters variant when not auto-detected
        auto_detect_hw: Choose the Holt-Winters variant per SKU

    Returns:
        SkuBacktest with arena rows for all methods, or an IDLE result when skipped
    """
    empty = pd.DataFrame(columns=ARENA_COLUMNS)
    series = series_df.sort_values('date', kind='stable').reset_index(drop=True)

    if len(series) < BACKTEST_RULES["min_history_points"]:
        return SkuBacktest(sku, BacktestStage.IDLE,
                           f"only {len(series)} points (minimum {BACKTEST_RULES['min_history_points']})", empty)

    holdout_start, _ = get_holdout_window(forecast_start_date)
    train = series[series['date'] < holdout_start]
    if len(train) < BACKTEST_RULES["min_training_points"]:
        return SkuBacktest(sku, BacktestStage.IDLE,
                           f"only {len(train)} training points before {holdout_start.date()} "
                           f"(minimum {BACKTEST_RULES['min_training_points']})", empty)

    stage = BacktestStage.TRAINED
    train_end = train['date'].iloc[-1]
    actual_by_date = dict(zip(series['date'], series['quantity'].astype(float)))

    frames = []
    for methodology in Methodology:
        method = ForecastMethod(methodology=methodology,
                                hw_variant=hw_variant if hw_variant is not None else ForecastMethod().hw_variant,
                                auto_detect_hw=auto_detect_hw)
        forecast = calculate_forecast(train, BACKTEST_RULES["forecast_periods"], train_end,
                                      confidence_level, method)
        future = forecast[forecast['is_forecast'].astype(bool)] if not forecast.empty else forecast
        if future.empty:
            return SkuBacktest(sku, stage, f"{methodology.value} produced no forecast", empty)
        frames.append(pd.DataFrame({
            'sku': sku,
            'method': methodology,
            'date': future['date'].to_numpy(),
            'forecast': future['forecast'].astype(float).to_numpy(),
        }))
    stage = BacktestStage.FORECASTED

    records = pd.concat(frames, ignore_index=True)
    records['actual'] = [actual_by_date.get(date, 0.0) for date in records['date']]
    stage = BacktestStage.SCORED

    return SkuBacktest(sku, stage, '', records[ARENA_COLUMNS])


# ===== WORST SKUS =====

def _worst_sku_row(sku, series, config):
    split_idx = int(math.floor(len(series) * BACKTEST_RULES["worst_sku_train_fraction"]))
    train = series.iloc[:split_idx]
    test = series.iloc[split_idx:]
    if len(train) < BACKTEST_RULES["worst_sku_min_training_points"] or test.empty:
        return None

    forecast = calculate_forecast(train, len(test), train['date'].iloc[-1],
                                  config.confidence_level, config.method)
    future = forecast[forecast['is_forecast'].astype(bool)]
    forecast_by_date = dict(zip(future['date'], future['forecast'].astype(float)))

    matched = test[test['date'].isin(list(forecast_by_date))]
    if matched.empty:
        return None

    actuals = matched['quantity'].astype(float).tolist()
    forecasts = [forecast_by_date[date] for date in matched['date']]
    metrics = calculate_forecast_metrics(actuals, forecasts)
    return {
        'sku': sku,
        'mape': metrics['mape'],
        'rmse': metrics['rmse'],
        'bias': metrics['bias'],
        'accuracy': metrics['accuracy'],
        'forecast_count': len(actuals),
    }


def _rank_worst_from_series(series_by_sku: dict, config, top_n: int) -> pd.DataFrame:
    rows = []
    for sku, series in series_by_sku.items():
        if len(series) < BACKTEST_RULES["min_history_points"]:
            continue
        row = _worst_sku_row(sku, series, config)
        if row is not None:
            rows.append(row)

    if not rows:
        return pd.DataFrame(columns=WORST_SKU_COLUMNS)

    ranked = pd.DataFrame(rows, columns=WORST_SKU_COLUMNS)
    return ranked.sort_values('mape', ascending=False, kind='stable').head(top_n).reset_index(drop=True)


def rank_worst_forecast_skus(observed_df: pd.DataFrame, config, top_n: int = BACKTEST_RULES["worst_sku_top_n"]):
    """
    Rank SKUs by out-of-sample MAPE of the selected method.

    Each SKU's history is split 70/30 chronologically; SKUs need 18 points
    overall and 12 training points.

    Returns:
        DataFrame with WORST_SKU_COLUMNS, highest MAPE first
    """
    return _rank_worst_from_series(prepare_observed_series(observed_df), config, top_n)


# ===== MAIN ENGINE =====

def _method_metrics(pairs: pd.DataFrame) -> dict:
    metrics = {}
    for methodology in Methodology:
        subset = pairs[pairs['method'] == methodology]
        result = calculate_accuracy_metrics(subset['actual'], subset['forecast'])
        if result is not None:
            metrics[methodology] = result
    return metrics


def _empty_backtest_result(holdout_window, scoring_window):
    return {
        'records': pd.DataFrame(columns=ARENA_COLUMNS),
        'stages': pd.DataFrame(columns=['sku', 'stage', 'reason']),
        'holdout_window': holdout_window,
        'scoring_window': scoring_window,
        'method_metrics': {},
        'aggregated_metrics': None,
        'comparison': pd.DataFrame(columns=['date', 'actual', 'forecast']),
        'scoring_metrics': None,
        'scoring_method_metrics': {},
        'worst_skus': pd.DataFrame(columns=WORST_SKU_COLUMNS),
    }


def run_backtest(observed_df: pd.DataFrame, config):
    """
    Backtest every forecasting method across all SKUs.

    Args:
        observed_df: Observed demand with sku, date and quantity columns
        config: AnalysisConfig for this run; config.method is the selected method

    Returns:
        tuple: (logs, result) where result holds records, stages, holdout_window,
        scoring_window, method_metrics, aggregated_metrics, comparison,
        scoring_metrics, scoring_method_metrics and worst_skus
    """
    logs = []
    logs.append("--- Forecast Backtesting Engine ---")

    forecast_start = normalize_month(config.effective_forecast_start)
    holdout_window = get_holdout_window(forecast_start)
    scoring_window = get_scoring_window(forecast_start)
    result = _empty_backtest_result(holdout_window, scoring_window)

    if observed_df is None or observed_df.empty:
        logs.append("ERROR: No observed demand provided. Cannot run backtest.")
        return logs, result

    logs.append(f"INFO: Holdout window {holdout_window[0].date()} to {holdout_window[1].date()}, "
                f"scoring window {scoring_window[0].date()} to {scoring_window[1].date()}")

    series_by_sku = prepare_observed_series(observed_df)
    skus = list(series_by_sku.keys())
    method = config.method

    def run_one(sku):
        return backtest_sku(series_by_sku[sku], sku, forecast_start, config.confidence_level,
                            method.hw_variant, method.auto_detect_hw)

    if config.use_parallel and len(skus) > FORECAST_RULES["parallel_min_skus"]:
        n_jobs = min(FORECAST_RULES["max_parallel_jobs"], len(skus) // FORECAST_RULES["parallel_min_skus"])
        outcomes = Parallel(n_jobs=n_jobs, prefer="threads")(delayed(run_one)(sku) for sku in skus)
    else:
        outcomes = [run_one(sku) for sku in skus]

    result['stages'] = pd.DataFrame(
        [{'sku': o.sku, 'stage': o.stage, 'reason': o.reason} for o in outcomes],
        columns=['sku', 'stage', 'reason'])

    scored = [o for o in outcomes if o.stage is BacktestStage.SCORED]
    skipped = len(outcomes) - len(scored)
    if skipped:
        logs.append(f"WARNING: Skipped {skipped} SKUs with insufficient history for backtesting")

    result['worst_skus'] = _rank_worst_from_series(series_by_sku, config, BACKTEST_RULES["worst_sku_top_n"])

    if not scored:
        logs.append("WARNING: No SKUs had enough history to backtest")
        return logs, result

    records = pd.concat([o.records for o in scored], ignore_index=True)
    result['records'] = records
    logs.append(f"INFO: Backtested {len(scored)} SKUs x {len(Methodology)} methods")

    holdout_pairs = records[_in_window(records['date'], holdout_window)]
    result['method_metrics'] = _method_metrics(holdout_pairs)

    selected = holdout_pairs[holdout_pairs['method'] == method.methodology]
    result['aggregated_metrics'] = calculate_accuracy_metrics(selected['actual'], selected['forecast'])

    comparison = (selected.groupby('date', sort=True)[['actual', 'forecast']].sum().reset_index()
                  if not selected.empty else result['comparison'])
    result['comparison'] = comparison

    scoring_comparison = comparison[_in_window(comparison['date'], scoring_window)]
    result['scoring_metrics'] = calculate_accuracy_metrics(scoring_comparison['actual'],
                                                           scoring_comparison['forecast'])
    scoring_pairs = records[_in_window(records['date'], scoring_window)
                            & records['date'].isin(scoring_comparison['date'])]
    result['scoring_method_metrics'] = _method_metrics(scoring_pairs)

    if result['scoring_metrics'] is not None:
        logs.append(f"INFO: {method.methodology.value} scoring accuracy "
                    f"{result['scoring_metrics']['accuracy']:.1f}%, MAPE {result['scoring_metrics']['mape']:.1f}%")
    else:
        logs.append("WARNING: No forecasts fall inside the scoring window")

    return logs, result
