"""
Business Rules Configuration
Centralized definitions for forecasting, replenishment, portfolio and backtest rules.
This file allows rules to be changed in one place without modifying engine code.
"""

import numbers
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Tuple

import pandas as pd

from utils import add_months

if TYPE_CHECKING:
    from demand_forecasting import ForecastMethod


# ===== FORECASTING RULES =====

FORECAST_RULES = {
    "min_training_points": 3,        # Fewer points than this -> no forecast attempted
    "season_length": 12,             # Monthly data, yearly cycle
    "holt_winters": {
        "alpha": 0.3,                # Level smoothing
        "beta": 0.1,                 # Trend smoothing
        "gamma": 0.05,               # Seasonal smoothing (kept low to avoid extreme seasonal dips)
    },
    "auto_detect": {
        "min_points": 4,             # Below this the multiplicative variant is used
        "cv_threshold": 0.5,         # CV (ratio) above this -> additive
        "early_window_fraction": 0.25,
        "low_value_fraction": 0.2,   # Values below 20% of mean count as "sparse"
        "sparsity_threshold": 0.4,
        "trend_threshold": 0.05,     # |slope| / mean
    },
    "prophet_growth_multiplier": 1.2,
    "arima_ar_coefficient": 0.85,
    "interval_width_factor": 0.4,
    "anomaly_z_threshold": 2.5,
    "confidence_z_scores": [
        # (minimum confidence %, z multiplier) checked top-down
        (99, 2.576),
        (95, 1.96),
        (90, 1.645),
        (85, 1.44),
        (80, 1.28),
    ],
    "default_z_multiplier": 1.96,
    "parallel_min_skus": 50,         # Only fan out across workers above this many SKUs
    "max_parallel_jobs": 4,
}


# ===== SUPPLY CHAIN RULES =====

SUPPLY_CHAIN_RULES = {
    "days_per_period": 30.0,         # Monthly forecast -> daily demand conversion
    "default_lead_time_days": 30,
    "default_service_level": 0.95,
    "receipt_types": ["production", "po"],
    "alert_types": {
        "stockout": "Stockout Risk",
        "safety_stock": "Safety Stock Breach",
    },
    "alert_severity": {
        "Stockout Risk": "Critical",
        "Safety Stock Breach": "Warning",
    },
    "value_at_risk_factor": 0.25,    # Share of revenue exposed per unit of supplier volatility
}


# ===== PORTFOLIO (ABC / VOLATILITY) RULES =====

PORTFOLIO_RULES = {
    "abc_thresholds": {
        "A": 80.0,                   # Cumulative % of total volume
        "B": 95.0,
        # Anything beyond B is "C"
    },
    "tiers": ["A", "B", "C"],
    "volatility_thresholds": {
        "High": 50.0,                # CV % strictly above
        "Medium": 30.0,
        # Anything at or below Medium is "Low"
    },
    "missing_label": "N/A",
    "no_change_label": "No change",
}


# ===== BACKTEST RULES =====

BACKTEST_RULES = {
    "min_history_points": 18,        # SKUs with less history are skipped
    "min_training_points": 6,
    "holdout_months": 12,            # Holdout starts this many months before forecast start
    "forecast_periods": 13,          # 12-month holdout + 1 month buffer
    "scoring_months": 6,
    "scoring_buffer_months": 1,      # Month right before forecast start is excluded from scoring
    "worst_sku_train_fraction": 0.7,
    "worst_sku_min_training_points": 12,
    "worst_sku_top_n": 10,
}


# ===== EXPORT RULES =====

EXPORT_RULES = {
    "forecast_columns": ["SKU", "Date", "Forecasted Quantity", "Historic Sales Quantity", "Forecast Methodology"],
    "portfolio_columns": ["SKU", "ABC Class", "Volatility %", "Risk", "ABC Change", "Volatility Change"],
    "date_format": "%Y-%m-%d",
}


# ===== CONFIGURATION BOUNDS =====

CONFIG_BOUNDS = {
    "horizon_months": (1, 36),
    "confidence_level": (80, 99),
}


@dataclass(frozen=True)
class MarketShock:
    """A one-month demand disruption or promotion, e.g. month='2025-03', percentage_change=-20."""
    month: str
    percentage_change: float
    description: str = ""


@dataclass(frozen=True)
class AnalysisConfig:
    """
    Immutable settings for one full recomputation.

    Every top-level engine receives this explicitly; nothing reads UI or
    module state for the selected method, horizon or dates.
    """
    method: "ForecastMethod"
    historical_end_date: pd.Timestamp
    forecast_start_date: Optional[pd.Timestamp] = None
    horizon: int = 12
    confidence_level: float = 95
    lead_time_days: float = SUPPLY_CHAIN_RULES["default_lead_time_days"]
    service_level: float = SUPPLY_CHAIN_RULES["default_service_level"]
    lookback_months: Optional[int] = None
    apply_anomaly_cleaning: bool = False
    supplier_volatility: float = 0.0
    shocks: Tuple[MarketShock, ...] = field(default_factory=tuple)
    use_parallel: bool = True

    @property
    def effective_lookback_months(self) -> int:
        """Volatility lookback window; defaults to the forecast horizon."""
        return self.lookback_months if self.lookback_months else self.horizon

    @property
    def effective_forecast_start(self) -> pd.Timestamp:
        """Backtest anchor; defaults to the month after the historical end date."""
        if self.forecast_start_date is not None:
            return pd.Timestamp(self.forecast_start_date)
        return add_months(self.historical_end_date, 1)


def validate_analysis_config(config: AnalysisConfig) -> None:
    """
    Reject configurations the engines do not accept.

    The engines themselves never raise on bad data; callers are expected to
    validate at the boundary before running an analysis.

    Raises:
        ValueError: if any setting is outside its allowed range
    """
    low, high = CONFIG_BOUNDS["horizon_months"]
    horizon = config.horizon
    if isinstance(horizon, bool) or not isinstance(horizon, numbers.Integral) or not low <= horizon <= high:
        raise ValueError(f"Forecast horizon must be an integer between {low} and {high} months, got {config.horizon!r}")

    low, high = CONFIG_BOUNDS["confidence_level"]
    if not low <= config.confidence_level <= high:
        raise ValueError(f"Confidence level must be between {low} and {high}%, got {config.confidence_level!r}")

    if not 0 < config.service_level < 1:
        raise ValueError(f"Service level must be a fraction between 0 and 1, got {config.service_level!r}")

    if config.lead_time_days < 0:
        raise ValueError(f"Lead time cannot be negative, got {config.lead_time_days!r}")

    if config.lookback_months is not None and config.lookback_months < 1:
        raise ValueError(f"Lookback window must be at least 1 month, got {config.lookback_months!r}")

    if not 0 <= config.supplier_volatility <= 1:
        raise ValueError(f"Supplier volatility must be between 0 and 1, got {config.supplier_volatility!r}")

    if pd.isna(pd.to_datetime(config.historical_end_date, errors='coerce')):
        raise ValueError(f"Invalid historical end date: {config.historical_end_date!r}")

    if config.forecast_start_date is not None and pd.isna(pd.to_datetime(config.forecast_start_date, errors='coerce')):
        raise ValueError(f"Invalid forecast start date: {config.forecast_start_date!r}")

    for shock in config.shocks:
        if pd.isna(pd.to_datetime(shock.month, format='%Y-%m', errors='coerce')):
            raise ValueError(f"Market shock month must be formatted YYYY-MM, got {shock.month!r}")
        if not -75 <= shock.percentage_change <= 100:
            raise ValueError(f"Market shock change must be between -75% and +100%, got {shock.percentage_change!r}")


def validate_observed_frame(observed_df: pd.DataFrame) -> None:
    """
    Check the ingestion contract for observed demand.

    Raises:
        ValueError: on missing columns, unparseable dates or negative quantities
    """
    if observed_df is None:
        raise ValueError("Observed demand is required")

    missing = [col for col in ('sku', 'date', 'quantity') if col not in observed_df.columns]
    if missing:
        raise ValueError(f"Observed demand is missing required columns: {', '.join(missing)}")

    dates = pd.to_datetime(observed_df['date'], errors='coerce')
    bad_dates = int(dates.isna().sum())
    if bad_dates:
        raise ValueError(f"Observed demand has {bad_dates} rows with invalid dates")

    quantities = pd.to_numeric(observed_df['quantity'], errors='coerce')
    if quantities.isna().any():
        raise ValueError("Observed demand has non-numeric quantities")
    if (quantities < 0).any():
        raise ValueError("Observed demand quantities must be non-negative")


def validate_receipts_frame(receipts_df: pd.DataFrame) -> None:
    """
    Check the ingestion contract for scheduled production / PO receipts.

    Raises:
        ValueError: on missing columns, invalid dates or unknown receipt types
    """
    if receipts_df is None or receipts_df.empty:
        return

    missing = [col for col in ('sku', 'date', 'quantity') if col not in receipts_df.columns]
    if missing:
        raise ValueError(f"Receipts are missing required columns: {', '.join(missing)}")

    if pd.to_datetime(receipts_df['date'], errors='coerce').isna().any():
        raise ValueError("Receipts have invalid dates")

    if 'receipt_type' in receipts_df.columns:
        allowed = set(SUPPLY_CHAIN_RULES["receipt_types"])
        unknown = set(receipts_df['receipt_type'].dropna().astype(str).str.lower()) - allowed
        if unknown:
            raise ValueError(f"Unknown receipt types: {', '.join(sorted(unknown))}")
