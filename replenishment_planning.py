"""
Replenishment Planning Module
=============================
Projects each SKU's inventory position across its forecast horizon and
derives the replenishment levels planners act on.

Key Features:
- Safety stock calculation using the service-level Z-score method
- Reorder point from average daily forecast demand over the lead time
- Month-by-month inventory roll forward netting scheduled production and PO receipts
- Projected revenue, margin and inventory value per forecast month
- Stockout and safety stock breach flags per forecast month
"""

import numpy as np
import pandas as pd

from business_rules import SUPPLY_CHAIN_RULES
from series_statistics import get_service_level_z
from utils import normalize_month_series

ENRICHMENT_COLUMNS = [
    'projected_inventory', 'safety_stock', 'reorder_point', 'incoming_receipts',
    'projected_revenue', 'projected_margin', 'inventory_value',
    'stockout_risk', 'safety_stock_breach',
]


def calculate_safety_stock(
    demand_std: float,
    lead_time_days: float,
    service_level: float = SUPPLY_CHAIN_RULES["default_service_level"]
) -> float:
    """
    Calculate safety stock using the Z-score method.

    Formula: Safety Stock = Z-score * std_demand * sqrt(lead_time)

    Args:
        demand_std: Standard deviation of daily demand
        lead_time_days: Supplier lead time in days
        service_level: Target service level as a fraction (0.95) or percent (95)

    Returns:
        Safety stock quantity in units; 0 when there is no variability or no lead time
    """
    if demand_std <= 0 or lead_time_days <= 0:
        return 0.0

    z_score = get_service_level_z(service_level)
    return max(0.0, z_score * demand_std * np.sqrt(lead_time_days))


def calculate_reorder_point(
    avg_daily_demand: float,
    lead_time_days: float,
    safety_stock: float
) -> float:
    """
    Calculate the reorder point (ROP).

    Formula: ROP = (Daily Demand * Lead Time) + Safety Stock
    """
    return avg_daily_demand * lead_time_days + safety_stock


def calculate_average_daily_demand(forecast_df: pd.DataFrame) -> float:
    """Mean forecast-period quantity converted from monthly to daily units."""
    if forecast_df.empty:
        return 0.0
    future = forecast_df.loc[forecast_df['is_forecast'].astype(bool), 'forecast']
    if future.empty:
        return 0.0
    return float(future.mean()) / SUPPLY_CHAIN_RULES["days_per_period"]


def _receipts_by_month(receipts_df: pd.DataFrame) -> dict:
    if receipts_df is None or receipts_df.empty:
        return {}
    receipts = pd.DataFrame({
        'date': normalize_month_series(receipts_df['date']),
        'quantity': pd.to_numeric(receipts_df['quantity'], errors='coerce').fillna(0.0),
    })
    return receipts.groupby('date')['quantity'].sum().to_dict()


def project_supply_chain(
    forecast_df: pd.DataFrame,
    demand_std: float,
    lead_time_days: float,
    service_level: float,
    on_hand: float = 0,
    unit_cost: float = 0,
    selling_price: float = 0,
    receipts_df: pd.DataFrame = None
) -> pd.DataFrame:
    """
    Enrich one SKU's forecast frame with inventory and financial projections.

    Starting from on-hand stock, each forecast month consumes its forecast
    quantity and then receives any production / PO receipts due in that same
    month. Historical months keep their values and only gain safety stock and
    reorder point.

    Args:
        forecast_df: Output of calculate_forecast() for a single SKU
        demand_std: Daily demand standard deviation used for safety stock
        lead_time_days: Replenishment lead time
        service_level: Target service level fraction
        on_hand: Current on-hand quantity
        unit_cost: Cost per unit
        selling_price: Selling price per unit
        receipts_df: This SKU's scheduled receipts (date, quantity)

    Returns:
        Copy of forecast_df with ENRICHMENT_COLUMNS added
    """
    enriched = forecast_df.sort_values('date', kind='stable').reset_index(drop=True)
    if enriched.empty:
        return enriched.reindex(columns=list(forecast_df.columns) + ENRICHMENT_COLUMNS)

    safety_stock = calculate_safety_stock(demand_std, lead_time_days, service_level)
    avg_daily_demand = calculate_average_daily_demand(enriched)
    reorder_point = calculate_reorder_point(avg_daily_demand, lead_time_days, safety_stock)
    receipts = _receipts_by_month(receipts_df)

    enriched['safety_stock'] = safety_stock
    enriched['reorder_point'] = reorder_point
    for col in ['projected_inventory', 'incoming_receipts', 'projected_revenue',
                'projected_margin', 'inventory_value']:
        enriched[col] = np.nan
    enriched['stockout_risk'] = False
    enriched['safety_stock_breach'] = False

    inventory = float(on_hand or 0)
    for idx in enriched.index[enriched['is_forecast'].astype(bool)]:
        quantity = float(enriched.at[idx, 'forecast'])
        incoming = float(receipts.get(enriched.at[idx, 'date'], 0.0))

        inventory -= quantity
        inventory += incoming

        enriched.at[idx, 'incoming_receipts'] = incoming
        enriched.at[idx, 'projected_inventory'] = inventory
        enriched.at[idx, 'projected_revenue'] = quantity * selling_price
        enriched.at[idx, 'projected_margin'] = quantity * (selling_price - unit_cost)
        enriched.at[idx, 'inventory_value'] = max(inventory, 0.0) * unit_cost
        enriched.at[idx, 'stockout_risk'] = inventory < 0
        enriched.at[idx, 'safety_stock_breach'] = 0 <= inventory < safety_stock

    return enriched


def summarize_receipts(receipts_df: pd.DataFrame) -> pd.DataFrame:
    """
    Summarize scheduled receipts by SKU and receipt type.

    Returns:
        DataFrame with columns sku, production, po, total_receipts
    """
    columns = ['sku'] + SUPPLY_CHAIN_RULES["receipt_types"] + ['total_receipts']
    if receipts_df is None or receipts_df.empty:
        return pd.DataFrame(columns=columns)

    receipts = receipts_df.copy()
    if 'receipt_type' not in receipts.columns:
        receipts['receipt_type'] = 'production'
    receipts['receipt_type'] = receipts['receipt_type'].astype(str).str.lower()
    receipts['quantity'] = pd.to_numeric(receipts['quantity'], errors='coerce').fillna(0.0)

    summary = receipts.pivot_table(
        index='sku', columns='receipt_type', values='quantity', aggfunc='sum', fill_value=0.0
    )
    summary = summary.reindex(columns=SUPPLY_CHAIN_RULES["receipt_types"], fill_value=0.0)
    summary['total_receipts'] = summary.sum(axis=1)
    summary = summary.reset_index()
    summary.columns.name = None

    return summary.sort_values('total_receipts', ascending=False).reset_index(drop=True)[columns]
