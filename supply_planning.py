"""
Supply Planning Orchestrator

Runs one full, deterministic recomputation of the planning analysis:

observed demand -> per-SKU forecasts -> inventory / financial projection
-> cross-SKU aggregation, ABC + volatility portfolio analysis, alerts,
financial summary, and (optionally) the method backtest.

Inputs are validated at this boundary; the engines below it never raise on
bad data and report problems through their log lines instead.
"""

import pandas as pd

from business_rules import (
    SUPPLY_CHAIN_RULES, validate_analysis_config, validate_observed_frame, validate_receipts_frame,
)
from demand_forecasting import aggregate_forecasts, generate_demand_forecast, prepare_observed_series
from forecast_backtesting import run_backtest
from portfolio_analysis import run_portfolio_analysis
from replenishment_planning import project_supply_chain, summarize_receipts
from series_statistics import calculate_std_dev, round_half_up
from stockout_prediction import build_inventory_alerts, get_alert_summary_metrics
from utils import safe_float


def _first_by_sku(df: pd.DataFrame, columns: list, label: str, logs: list) -> dict:
    """{sku: row dict} keeping the first row for duplicated SKUs."""
    if df is None or df.empty or 'sku' not in df.columns:
        return {}

    duplicates = df['sku'].duplicated()
    if duplicates.any():
        logs.append(f"WARNING: Found {int(duplicates.sum())} duplicate SKUs in {label}. Using first occurrence.")

    present = [col for col in columns if col in df.columns]
    deduped = df.drop_duplicates(subset='sku', keep='first').set_index('sku')
    return deduped[present].to_dict('index')


def calculate_financial_summary(enriched_forecasts: dict, supplier_volatility: float = 0.0) -> dict:
    """
    Portfolio financial totals over all forecast months.

    Returns:
        dict: total_revenue, total_margin, avg_inventory_value (per SKU-month)
        and value_at_risk (revenue exposed to supplier volatility)
    """
    total_revenue = 0.0
    total_margin = 0.0
    total_inventory_value = 0.0
    forecast_month_count = 0

    for df in enriched_forecasts.values():
        if df.empty:
            continue
        future = df[df['is_forecast'].astype(bool)]
        total_revenue += future['projected_revenue'].fillna(0).sum()
        total_margin += future['projected_margin'].fillna(0).sum()
        total_inventory_value += future['inventory_value'].fillna(0).sum()
        forecast_month_count += len(future)

    avg_inventory_value = round_half_up(total_inventory_value / forecast_month_count) if forecast_month_count else 0.0
    value_at_risk = round_half_up(total_revenue * supplier_volatility * SUPPLY_CHAIN_RULES["value_at_risk_factor"])

    return {
        'total_revenue': round_half_up(total_revenue),
        'total_margin': round_half_up(total_margin),
        'avg_inventory_value': avg_inventory_value,
        'value_at_risk': value_at_risk,
    }


def build_monthly_financials(enriched_forecasts: dict) -> pd.DataFrame:
    """Forecast-month revenue split into cost of goods sold and margin, summed across SKUs."""
    columns = ['date', 'revenue', 'cogs', 'margin']
    frames = [
        df.loc[df['is_forecast'].astype(bool), ['date', 'projected_revenue', 'projected_margin']]
        for df in enriched_forecasts.values() if not df.empty
    ]
    if not frames:
        return pd.DataFrame(columns=columns)

    monthly = pd.concat(frames, ignore_index=True).fillna(0.0)
    monthly = monthly.groupby('date', sort=True)[['projected_revenue', 'projected_margin']].sum().reset_index()
    monthly = monthly.rename(columns={'projected_revenue': 'revenue', 'projected_margin': 'margin'})
    monthly['cogs'] = monthly['revenue'] - monthly['margin']
    return monthly[columns]


def run_supply_planning(observed_df: pd.DataFrame, config, receipts_df: pd.DataFrame = None,
                        attributes_df: pd.DataFrame = None, inventory_df: pd.DataFrame = None,
                        include_backtest: bool = False):
    """
    Main function to run the complete planning analysis.

    Args:
        observed_df: Observed demand (sku, date, quantity)
        config: AnalysisConfig for this run
        receipts_df: Scheduled production / PO receipts (sku, date, quantity, receipt_type)
        attributes_df: Per-SKU unit_cost and selling_price
        inventory_df: Per-SKU on_hand quantity
        include_backtest: Also run the method backtest

    Returns:
        tuple: (logs, result) where result holds forecasts, aggregated_forecast,
        portfolio, alerts, alert_summary, financial_summary, monthly_financials,
        receipts_summary and backtest (None unless requested)

    Raises:
        ValueError: if the configuration or input frames break their contracts
    """
    validate_analysis_config(config)
    validate_observed_frame(observed_df)
    validate_receipts_frame(receipts_df)

    logs = []
    logs.append("--- Supply Planning Run ---")

    forecast_logs, forecasts = generate_demand_forecast(observed_df, config)
    logs.extend(forecast_logs)

    logs.append("--- Supply Chain Projection ---")
    attributes = _first_by_sku(attributes_df, ['unit_cost', 'selling_price'], "product attributes", logs)
    inventory = _first_by_sku(inventory_df, ['on_hand'], "inventory", logs)
    if attributes_df is None or attributes_df.empty:
        logs.append("WARNING: No product attributes provided. Cost and price default to 0.")
    if inventory_df is None or inventory_df.empty:
        logs.append("WARNING: No inventory provided. On-hand defaults to 0.")

    series_by_sku = prepare_observed_series(observed_df)
    cutoff = pd.Timestamp(config.historical_end_date)
    days_per_period = SUPPLY_CHAIN_RULES["days_per_period"]
    has_receipts = receipts_df is not None and not receipts_df.empty

    enriched = {}
    for sku, forecast_df in forecasts.items():
        series = series_by_sku[sku]
        monthly_std = calculate_std_dev(series.loc[series['date'] <= cutoff, 'quantity'])
        sku_attributes = attributes.get(sku, {})
        sku_receipts = receipts_df[receipts_df['sku'] == sku] if has_receipts else None

        enriched[sku] = project_supply_chain(
            forecast_df,
            demand_std=monthly_std / days_per_period,
            lead_time_days=config.lead_time_days,
            service_level=config.service_level,
            on_hand=safe_float(inventory.get(sku, {}).get('on_hand')),
            unit_cost=safe_float(sku_attributes.get('unit_cost')),
            selling_price=safe_float(sku_attributes.get('selling_price')),
            receipts_df=sku_receipts,
        )

    missing_attributes = [sku for sku in enriched if sku not in attributes]
    if attributes and missing_attributes:
        logs.append(f"WARNING: {len(missing_attributes)} SKUs have no cost/price attributes. Using 0.")
    logs.append(f"INFO: Projected inventory for {len(enriched)} SKUs "
                f"(lead time {config.lead_time_days} days, service level {config.service_level:.0%})")

    aggregated = aggregate_forecasts(enriched)

    portfolio_logs, portfolio = run_portfolio_analysis(enriched, config)
    logs.extend(portfolio_logs)

    alerts = build_inventory_alerts(enriched)
    alert_summary = get_alert_summary_metrics(alerts)
    logs.append(f"INFO: {alert_summary['stockout_count']} stockout alerts and "
                f"{alert_summary['safety_stock_breach_count']} safety stock breaches "
                f"across {alert_summary['skus_at_risk']} SKUs")

    financial_summary = calculate_financial_summary(enriched, config.supplier_volatility)
    logs.append(f"INFO: Projected revenue: ${financial_summary['total_revenue']:,.0f}, "
                f"margin: ${financial_summary['total_margin']:,.0f}")

    backtest = None
    if include_backtest:
        backtest_logs, backtest = run_backtest(observed_df, config)
        logs.extend(backtest_logs)

    return logs, {
        'forecasts': enriched,
        'aggregated_forecast': aggregated,
        'portfolio': portfolio,
        'alerts': alerts,
        'alert_summary': alert_summary,
        'financial_summary': financial_summary,
        'monthly_financials': build_monthly_financials(enriched),
        'receipts_summary': summarize_receipts(receipts_df),
        'backtest': backtest,
    }
