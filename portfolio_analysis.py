"""
Portfolio Analysis Module

ABC (Pareto) classification and demand volatility ranking of the SKU
portfolio, computed twice: once over the trailing historical window and once
over the forecast horizon. Comparing the two shows how the portfolio is
expected to transform.

Key Features:
- Pareto tiers: A up to 80% of cumulative volume, B up to 95%, C beyond
- Coefficient of variation risk tiers: High > 50%, Medium > 30%, Low otherwise
- Per-SKU tier and risk changes, and an A/B/C transition matrix with volume shifts
"""

import pandas as pd

from business_rules import PORTFOLIO_RULES
from series_statistics import calculate_cv_percent, calculate_mean, calculate_std_dev
from utils import add_months, normalize_month

CLASSIFICATION_COLUMNS = ['sku', 'total_volume', 'tier', 'percent_of_total', 'cumulative_percent']
VOLATILITY_COLUMNS = ['sku', 'coefficient_of_variation', 'average_quantity', 'std_dev', 'risk_tier']
CHANGE_COLUMNS = ['sku', 'historical_tier', 'forecast_tier', 'tier_change',
                  'historical_risk', 'forecast_risk', 'volatility_change']
MATRIX_COLUMNS = ['from_tier', 'to_tier', 'sku_count', 'volume_shift']


# ===== ABC CLASSIFICATION =====

def run_pareto_analysis(volumes_df: pd.DataFrame) -> pd.DataFrame:
    """
    Assign ABC tiers by cumulative share of total volume.

    SKUs are ranked by volume (ties keep input order). The SKU whose volume
    carries the running total across the A or B threshold stays in that tier.

    Args:
        volumes_df: DataFrame with sku and total_volume columns

    Returns:
        DataFrame with CLASSIFICATION_COLUMNS in ranked order
    """
    if volumes_df is None or volumes_df.empty:
        return pd.DataFrame(columns=CLASSIFICATION_COLUMNS)

    ranked = volumes_df[['sku', 'total_volume']].copy()
    ranked['total_volume'] = ranked['total_volume'].astype(float)
    ranked = ranked.sort_values('total_volume', ascending=False, kind='stable').reset_index(drop=True)

    grand_total = ranked['total_volume'].sum()
    if grand_total <= 0:
        ranked['tier'] = 'C'
        ranked['percent_of_total'] = 0.0
        ranked['cumulative_percent'] = 0.0
        return ranked[CLASSIFICATION_COLUMNS]

    a_threshold = PORTFOLIO_RULES["abc_thresholds"]["A"]
    b_threshold = PORTFOLIO_RULES["abc_thresholds"]["B"]

    ranked['percent_of_total'] = ranked['total_volume'] / grand_total * 100
    ranked['cumulative_percent'] = ranked['percent_of_total'].cumsum()

    tiers = []
    previous = 0.0
    for cumulative in ranked['cumulative_percent']:
        if cumulative <= a_threshold or previous < a_threshold:
            tiers.append('A')
        elif cumulative <= b_threshold or previous < b_threshold:
            tiers.append('B')
        else:
            tiers.append('C')
        previous = cumulative
    ranked['tier'] = tiers

    return ranked[CLASSIFICATION_COLUMNS]


def get_tier_summary(classification_df: pd.DataFrame) -> pd.DataFrame:
    """SKU count and volume share per ABC tier."""
    tiers = PORTFOLIO_RULES["tiers"]
    if classification_df.empty:
        return pd.DataFrame({'tier': tiers, 'sku_count': 0, 'total_volume': 0.0, 'percent_of_total': 0.0})

    summary = classification_df.groupby('tier').agg(
        sku_count=('sku', 'count'),
        total_volume=('total_volume', 'sum'),
        percent_of_total=('percent_of_total', 'sum'),
    )
    summary = summary.reindex(tiers, fill_value=0)
    summary.index.name = 'tier'
    return summary.reset_index()


# ===== VOLATILITY =====

def classify_risk_tier(cv_percent: float) -> str:
    """Map a coefficient of variation (percent) to High / Medium / Low."""
    thresholds = PORTFOLIO_RULES["volatility_thresholds"]
    if cv_percent > thresholds["High"]:
        return 'High'
    if cv_percent > thresholds["Medium"]:
        return 'Medium'
    return 'Low'


def rank_volatility(quantities_by_sku: dict) -> pd.DataFrame:
    """
    Rank SKUs by demand volatility (coefficient of variation).

    Args:
        quantities_by_sku: {sku: sequence of monthly quantities}

    Returns:
        DataFrame with VOLATILITY_COLUMNS, most volatile first; SKUs
        without quantities are left out
    """
    rows = []
    for sku, quantities in quantities_by_sku.items():
        values = list(quantities)
        if not values:
            continue
        cv = calculate_cv_percent(values)
        rows.append({
            'sku': sku,
            'coefficient_of_variation': cv,
            'average_quantity': calculate_mean(values),
            'std_dev': calculate_std_dev(values),
            'risk_tier': classify_risk_tier(cv),
        })

    if not rows:
        return pd.DataFrame(columns=VOLATILITY_COLUMNS)

    ranked = pd.DataFrame(rows, columns=VOLATILITY_COLUMNS)
    return ranked.sort_values('coefficient_of_variation', ascending=False, kind='stable').reset_index(drop=True)


# ===== TRANSFORMATION TRACKING =====

def build_sku_volume_table(forecasts: dict, historical_end_date, lookback_months: int) -> pd.DataFrame:
    """
    Collect per-SKU monthly quantities for the historical and forecast windows.

    The historical window is the trailing `lookback_months` months of
    observed demand ending with the historical end month. The forecast window
    is every forecast period.

    Returns:
        DataFrame with sku, historical_volume, forecast_volume,
        historical_monthly (list) and forecast_monthly (list)
    """
    end_month = normalize_month(historical_end_date)
    window_start = add_months(end_month, -(lookback_months - 1))

    rows = []
    for sku, df in forecasts.items():
        if df.empty:
            continue
        is_forecast = df['is_forecast'].astype(bool)
        historical = df[~is_forecast & df['historical'].notna()]
        historical = historical[(historical['date'] >= window_start) & (historical['date'] <= end_month)]
        historical_monthly = historical['historical'].astype(float).tolist()
        forecast_monthly = df.loc[is_forecast, 'forecast'].fillna(0.0).astype(float).tolist()

        rows.append({
            'sku': sku,
            'historical_volume': sum(historical_monthly),
            'forecast_volume': sum(forecast_monthly),
            'historical_monthly': historical_monthly,
            'forecast_monthly': forecast_monthly,
        })

    return pd.DataFrame(rows, columns=['sku', 'historical_volume', 'forecast_volume',
                                       'historical_monthly', 'forecast_monthly'])


def _lookup(df: pd.DataFrame, column: str) -> dict:
    if df is None or df.empty:
        return {}
    return dict(zip(df['sku'], df[column]))


def track_portfolio_changes(historical_abc: pd.DataFrame, forecast_abc: pd.DataFrame,
                            historical_volatility: pd.DataFrame, forecast_volatility: pd.DataFrame) -> pd.DataFrame:
    """
    List SKUs whose ABC tier or volatility risk tier differs between windows.

    Risk tiers are only compared when the SKU has a volatility result in both
    windows. Missing sides are reported as 'N/A'.
    """
    missing = PORTFOLIO_RULES["missing_label"]
    no_change = PORTFOLIO_RULES["no_change_label"]

    hist_tier = _lookup(historical_abc, 'tier')
    fcst_tier = _lookup(forecast_abc, 'tier')
    hist_cv = _lookup(historical_volatility, 'coefficient_of_variation')
    fcst_cv = _lookup(forecast_volatility, 'coefficient_of_variation')

    skus = list(dict.fromkeys(list(hist_tier) + list(fcst_tier)))

    rows = []
    for sku in skus:
        historical_tier = hist_tier.get(sku, missing)
        forecast_tier = fcst_tier.get(sku, missing)
        tier_changed = historical_tier != forecast_tier

        historical_risk = classify_risk_tier(hist_cv[sku]) if sku in hist_cv else missing
        forecast_risk = classify_risk_tier(fcst_cv[sku]) if sku in fcst_cv else missing
        risk_changed = sku in hist_cv and sku in fcst_cv and historical_risk != forecast_risk

        if not (tier_changed or risk_changed):
            continue

        rows.append({
            'sku': sku,
            'historical_tier': historical_tier,
            'forecast_tier': forecast_tier,
            'tier_change': f"{historical_tier} → {forecast_tier}" if tier_changed else no_change,
            'historical_risk': historical_risk,
            'forecast_risk': forecast_risk,
            'volatility_change': (f"{hist_cv[sku]:.1f}% → {fcst_cv[sku]:.1f}%"
                                  if risk_changed else no_change),
        })

    return pd.DataFrame(rows, columns=CHANGE_COLUMNS)


def build_transformation_matrix(changes: pd.DataFrame, historical_abc: pd.DataFrame,
                                forecast_abc: pd.DataFrame) -> pd.DataFrame:
    """
    Count tier transitions and the net volume they move.

    Only off-diagonal transitions with at least one SKU and a non-zero
    volume shift (forecast volume minus historical volume) are emitted.
    """
    if changes.empty:
        return pd.DataFrame(columns=MATRIX_COLUMNS)

    hist_volume = _lookup(historical_abc, 'total_volume')
    fcst_volume = _lookup(forecast_abc, 'total_volume')
    tiers = PORTFOLIO_RULES["tiers"]

    rows = []
    for from_tier in tiers:
        for to_tier in tiers:
            if from_tier == to_tier:
                continue
            moved = changes[(changes['historical_tier'] == from_tier) & (changes['forecast_tier'] == to_tier)]
            if moved.empty:
                continue
            volume_shift = sum(fcst_volume.get(sku, 0.0) - hist_volume.get(sku, 0.0) for sku in moved['sku'])
            if volume_shift != 0:
                rows.append({
                    'from_tier': from_tier,
                    'to_tier': to_tier,
                    'sku_count': len(moved),
                    'volume_shift': volume_shift,
                })

    return pd.DataFrame(rows, columns=MATRIX_COLUMNS)


def run_portfolio_analysis(forecasts: dict, config):
    """
    Classify and rank the portfolio over both windows and diff the results.

    Args:
        forecasts: {sku: forecast DataFrame}
        config: AnalysisConfig for this run

    Returns:
        tuple: (logs, result dict with volume_table, historical_abc, forecast_abc,
        historical_volatility, forecast_volatility, changes, transformation_matrix)
    """
    logs = []
    logs.append("--- Portfolio Analysis Engine ---")

    lookback = config.effective_lookback_months
    volume_table = build_sku_volume_table(forecasts, config.historical_end_date, lookback)
    if volume_table.empty:
        logs.append("WARNING: No SKU forecasts available for portfolio analysis")

    historical_abc = run_pareto_analysis(
        volume_table.rename(columns={'historical_volume': 'total_volume'})[['sku', 'total_volume']])
    forecast_abc = run_pareto_analysis(
        volume_table.rename(columns={'forecast_volume': 'total_volume'})[['sku', 'total_volume']])
    historical_volatility = rank_volatility(dict(zip(volume_table['sku'], volume_table['historical_monthly'])))
    forecast_volatility = rank_volatility(dict(zip(volume_table['sku'], volume_table['forecast_monthly'])))

    changes = track_portfolio_changes(historical_abc, forecast_abc, historical_volatility, forecast_volatility)
    matrix = build_transformation_matrix(changes, historical_abc, forecast_abc)

    logs.append(f"INFO: Historical window: last {lookback} months through "
                f"{normalize_month(config.historical_end_date).date()}")
    logs.append(f"INFO: Classified {len(historical_abc)} SKUs "
                f"(A={int((historical_abc['tier'] == 'A').sum())}, "
                f"B={int((historical_abc['tier'] == 'B').sum())}, "
                f"C={int((historical_abc['tier'] == 'C').sum())})")
    high_risk = int((forecast_volatility['risk_tier'] == 'High').sum()) if not forecast_volatility.empty else 0
    logs.append(f"INFO: {high_risk} SKUs forecast as high volatility")
    logs.append(f"INFO: {len(changes)} SKUs change ABC tier or volatility risk")

    return logs, {
        'volume_table': volume_table,
        'historical_abc': historical_abc,
        'forecast_abc': forecast_abc,
        'historical_volatility': historical_volatility,
        'forecast_volatility': forecast_volatility,
        'changes': changes,
        'transformation_matrix': matrix,
    }
