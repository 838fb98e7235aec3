"""
Stockout Prediction Module

Turns the projected inventory of every SKU into a forward-looking alert list:
- Stockout Risk (Critical): projected inventory falls below zero
- Safety Stock Breach (Warning): projected inventory is non-negative but below safety stock

Alerts are computed from enriched forecast frames produced by
replenishment_planning.project_supply_chain().
"""

import pandas as pd

from business_rules import SUPPLY_CHAIN_RULES

ALERT_COLUMNS = ['sku', 'date', 'alert_type', 'severity', 'projected_inventory',
                 'safety_stock', 'forecast']


def build_inventory_alerts(enriched_forecasts: dict) -> pd.DataFrame:
    """
    Identify forecast periods at risk of stockout or safety stock breach

    Args:
        enriched_forecasts: {sku: enriched forecast DataFrame}

    Returns:
        DataFrame: one row per flagged (sku, month), sorted by date then SKU
    """
    alert_types = SUPPLY_CHAIN_RULES["alert_types"]
    severities = SUPPLY_CHAIN_RULES["alert_severity"]
    frames = []

    for sku, df in enriched_forecasts.items():
        if df.empty or 'stockout_risk' not in df.columns:
            continue

        flagged = df[df['stockout_risk'].astype(bool) | df['safety_stock_breach'].astype(bool)].copy()
        if flagged.empty:
            continue

        flagged['sku'] = sku
        flagged['alert_type'] = flagged['stockout_risk'].astype(bool).map({
            True: alert_types["stockout"],
            False: alert_types["safety_stock"],
        })
        flagged['severity'] = flagged['alert_type'].map(severities)
        frames.append(flagged[ALERT_COLUMNS])

    if not frames:
        return pd.DataFrame(columns=ALERT_COLUMNS)

    alerts = pd.concat(frames, ignore_index=True)
    return alerts.sort_values(['date', 'sku'], kind='stable').reset_index(drop=True)


def get_alert_summary_metrics(alerts_df):
    """
    Calculate summary metrics for the alert list

    Returns:
        dict: Summary metrics for display
    """
    if alerts_df.empty:
        return {
            'total_alerts': 0,
            'stockout_count': 0,
            'safety_stock_breach_count': 0,
            'skus_at_risk': 0,
            'first_stockout_date': None,
        }

    stockouts = alerts_df[alerts_df['alert_type'] == SUPPLY_CHAIN_RULES["alert_types"]["stockout"]]

    return {
        'total_alerts': len(alerts_df),
        'stockout_count': len(stockouts),
        'safety_stock_breach_count': len(alerts_df) - len(stockouts),
        'skus_at_risk': alerts_df['sku'].nunique(),
        'first_stockout_date': stockouts['date'].min() if not stockouts.empty else None,
    }


def get_critical_alerts(alerts_df, top_n=20):
    """
    Get the earliest stockout alerts

    Args:
        alerts_df: Alert dataframe from build_inventory_alerts()
        top_n: Number of alerts to return

    Returns:
        DataFrame: Critical alerts, deepest shortfall first within each month
    """
    if alerts_df.empty:
        return pd.DataFrame(columns=ALERT_COLUMNS)

    critical = alerts_df[alerts_df['severity'] == 'Critical'].copy()
    critical = critical.sort_values(['date', 'projected_inventory'], ascending=[True, True])
    return critical.head(top_n)
