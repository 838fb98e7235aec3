"""
Forecast Export Module

Shapes analysis results into the flat tables planners download:
- SKU-level forecast CSV (one row per SKU and forecast month)
- Single-series forecast CSV with bounds and replenishment levels
- Volatility & portfolio mix CSV
- Backtest detail CSV for the scoring window
- Multi-sheet Excel workbook of the full analysis
"""

import csv

import pandas as pd

from business_rules import EXPORT_RULES
from demand_forecasting import Methodology, get_method_label, prepare_observed_series
from forecast_backtesting import get_scoring_window
from portfolio_analysis import classify_risk_tier
from utils import get_filtered_data_as_excel, month_key

DATE_FORMAT = EXPORT_RULES["date_format"]

BACKTEST_DETAIL_METHODS = [
    (Methodology.HOLT_WINTERS, 'HW'),
    (Methodology.PROPHET, 'Prophet'),
    (Methodology.ARIMA, 'ARIMA'),
    (Methodology.LINEAR, 'Linear'),
]


def _format_quantity(value):
    if value is None or pd.isna(value):
        return ''
    value = float(value)
    return int(value) if value.is_integer() else round(value, 2)


def export_forecast_csv(forecasts: dict, observed_df: pd.DataFrame, config) -> str:
    """
    SKU-level forecast export.

    Every SKU (sorted) gets a row for every forecast month found in any SKU's
    forecast, with the forecast quantity, the observed quantity for that month
    and the method label. Cells with no value are left blank.

    Returns:
        CSV text with columns SKU, Date, Forecasted Quantity,
        Historic Sales Quantity, Forecast Methodology
    """
    columns = EXPORT_RULES["forecast_columns"]
    series_by_sku = prepare_observed_series(observed_df)
    cutoff = pd.Timestamp(config.historical_end_date)

    forecast_dates = sorted({
        date
        for df in forecasts.values() if not df.empty
        for date in df.loc[df['is_forecast'].astype(bool), 'date']
    })

    rows = []
    for sku in sorted(forecasts.keys()):
        df = forecasts[sku]
        future = df[df['is_forecast'].astype(bool)]
        forecast_by_date = dict(zip(future['date'], future['forecast']))

        series = series_by_sku.get(sku, pd.DataFrame(columns=['date', 'quantity']))
        historical_by_date = dict(zip(series['date'], series['quantity']))
        training_values = series.loc[series['date'] <= cutoff, 'quantity'].tolist()
        label = get_method_label(config.method, training_values)

        for date in forecast_dates:
            rows.append([
                sku,
                pd.Timestamp(date).strftime(DATE_FORMAT),
                _format_quantity(forecast_by_date.get(date)),
                _format_quantity(historical_by_date.get(date)),
                label,
            ])

    return pd.DataFrame(rows, columns=columns).to_csv(index=False, lineterminator='\n')


def export_forecast_series_csv(forecast_df: pd.DataFrame, shocks=()) -> str:
    """
    Export one (per-SKU or aggregated) forecast series with its replenishment levels.

    Shocked months carry the shock description in the Market Disruption column.
    """
    shock_labels = {}
    for shock in shocks:
        sign = '+' if shock.percentage_change > 0 else ''
        shock_labels.setdefault(shock.month, f"{shock.description} ({sign}{shock.percentage_change:g}%)")

    def column(name):
        if name in forecast_df.columns:
            return forecast_df[name].map(_format_quantity)
        return pd.Series('', index=forecast_df.index)

    export_df = pd.DataFrame({
        'Date': pd.to_datetime(forecast_df['date']).dt.strftime(DATE_FORMAT),
        'Historical': column('historical'),
        'Forecast': column('forecast'),
        'Lower Bound': column('lower_bound'),
        'Upper Bound': column('upper_bound'),
        'Safety Stock': column('safety_stock'),
        'Reorder Point': column('reorder_point'),
        'Projected Inventory': column('projected_inventory'),
        'Market Disruption': forecast_df['date'].map(lambda d: shock_labels.get(month_key(d), '')),
    })
    return export_df.to_csv(index=False, lineterminator='\n')


def export_portfolio_csv(historical_volatility: pd.DataFrame, historical_abc: pd.DataFrame,
                         changes: pd.DataFrame) -> str:
    """
    Volatility & portfolio mix export, one row per SKU in volatility ranking order.

    Returns:
        CSV text (every cell quoted) with columns SKU, ABC Class, Volatility %,
        Risk, ABC Change, Volatility Change
    """
    tier_by_sku = dict(zip(historical_abc['sku'], historical_abc['tier'])) if not historical_abc.empty else {}
    change_by_sku = {row['sku']: row for _, row in changes.iterrows()} if not changes.empty else {}

    rows = []
    for _, item in historical_volatility.iterrows():
        change = change_by_sku.get(item['sku'])
        rows.append([
            item['sku'],
            tier_by_sku.get(item['sku'], 'N/A'),
            f"{item['coefficient_of_variation']:.2f}",
            classify_risk_tier(item['coefficient_of_variation']),
            change['tier_change'] if change is not None else 'No change',
            change['volatility_change'] if change is not None else 'No change',
        ])

    export_df = pd.DataFrame(rows, columns=EXPORT_RULES["portfolio_columns"])
    return export_df.to_csv(index=False, quoting=csv.QUOTE_ALL, lineterminator='\n')


def _error_percent(forecast: float, actual: float) -> str:
    if actual > 0:
        return f"{(forecast - actual) / actual * 100:.1f}"
    return '0'


def build_backtest_detail(backtest_result: dict, config) -> pd.DataFrame:
    """
    Per-SKU, per-month backtest detail over the scoring window.

    One row per (date, SKU) with the actual, every method's forecast, the
    selected method's forecast and each method's error percentage.
    """
    records = backtest_result['records']
    columns = (['Date', 'SKU', 'Actual']
               + [f"{short} Forecast" for _, short in BACKTEST_DETAIL_METHODS]
               + ['Selected Method Forecast', 'Selected Method']
               + [f"{short} Error %" for _, short in BACKTEST_DETAIL_METHODS])
    if records.empty:
        return pd.DataFrame(columns=columns)

    selected = config.method.methodology
    window_start, window_end = get_scoring_window(config.effective_forecast_start)
    in_window = records[(records['date'] >= window_start) & (records['date'] <= window_end)]

    forecast_lookup = {
        (sku, date, method): forecast
        for sku, date, method, forecast in zip(in_window['sku'], in_window['date'],
                                               in_window['method'], in_window['forecast'])
    }
    selected_label = selected.value.split(' (')[0]

    rows = []
    for sku in in_window['sku'].drop_duplicates():
        selected_rows = in_window[(in_window['sku'] == sku) & (in_window['method'] == selected)]
        for date, actual in zip(selected_rows['date'], selected_rows['actual']):
            actual = float(actual)
            method_forecasts = {
                m: float(forecast_lookup.get((sku, date, m), 0.0)) for m, _ in BACKTEST_DETAIL_METHODS
            }
            rows.append(
                [pd.Timestamp(date).strftime(DATE_FORMAT), sku, f"{actual:.0f}"]
                + [f"{method_forecasts[m]:.0f}" for m, _ in BACKTEST_DETAIL_METHODS]
                + [f"{method_forecasts[selected]:.0f}", selected_label]
                + [_error_percent(method_forecasts[m], actual) for m, _ in BACKTEST_DETAIL_METHODS]
            )

    return pd.DataFrame(rows, columns=columns)


def export_backtest_detail_csv(backtest_result: dict, config) -> str:
    """CSV text of build_backtest_detail()."""
    return build_backtest_detail(backtest_result, config).to_csv(index=False, lineterminator='\n')


def build_export_workbook(planning_result: dict) -> bytes:
    """
    Excel workbook with one sheet per analysis table.

    Args:
        planning_result: Result dict from supply_planning.run_supply_planning()

    Returns:
        bytes of the .xlsx file
    """
    portfolio = planning_result.get('portfolio', {})
    backtest = planning_result.get('backtest') or {}

    method_metrics = backtest.get('method_metrics') or {}
    method_metrics_df = pd.DataFrame([
        {'method': method.value, **metrics} for method, metrics in method_metrics.items()
    ])
    records = backtest.get('records')
    if records is not None and not records.empty:
        records = records.assign(method=records['method'].map(lambda m: m.value))

    sheets = {
        "Aggregated Forecast": (planning_result.get('aggregated_forecast'), False),
        "Historical ABC": (portfolio.get('historical_abc'), False),
        "Forecast ABC": (portfolio.get('forecast_abc'), False),
        "Historical Volatility": (portfolio.get('historical_volatility'), False),
        "Forecast Volatility": (portfolio.get('forecast_volatility'), False),
        "Portfolio Changes": (portfolio.get('changes'), False),
        "Transformation Matrix": (portfolio.get('transformation_matrix'), False),
        "Inventory Alerts": (planning_result.get('alerts'), False),
        "Monthly Financials": (planning_result.get('monthly_financials'), False),
        "Receipts Summary": (planning_result.get('receipts_summary'), False),
        "Backtest Comparison": (backtest.get('comparison'), False),
        "Backtest Method Metrics": (method_metrics_df, False),
        "Backtest Records": (records, False),
        "Worst Forecast SKUs": (backtest.get('worst_skus'), False),
    }
    return get_filtered_data_as_excel(sheets)
