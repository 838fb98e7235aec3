"""
Tests for demand forecasting module
"""

import pytest
import pandas as pd
import numpy as np
import sys
import os
from dataclasses import replace

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from business_rules import MarketShock
from demand_forecasting import (
    FORECAST_COLUMNS, FORECAST_KERNELS, ForecastMethod, HoltWintersVariant, Methodology,
    aggregate_forecasts, apply_market_shocks, calculate_forecast, clean_anomalies, detect_hw_variant,
    generate_demand_forecast, get_method_label, prepare_observed_series, run_forecast_method,
)
from conftest import assert_columns_exist, assert_log_contains, make_observed, make_series

ALL_METHODS = [
    ForecastMethod(Methodology.HOLT_WINTERS, HoltWintersVariant.ADDITIVE),
    ForecastMethod(Methodology.HOLT_WINTERS, HoltWintersVariant.MULTIPLICATIVE),
    ForecastMethod(Methodology.HOLT_WINTERS, auto_detect_hw=True),
    ForecastMethod(Methodology.PROPHET),
    ForecastMethod(Methodology.ARIMA),
    ForecastMethod(Methodology.LINEAR),
]


class TestForecastMethods:
    """Test the individual forecasting kernels"""

    def test_dispatch_covers_every_methodology(self):
        assert set(FORECAST_KERNELS) == set(Methodology)

    @pytest.mark.parametrize("method", ALL_METHODS)
    def test_flat_series_forecasts_constant(self, method):
        """Test that a perfectly flat series forecasts the same constant with any method"""
        forecast = run_forecast_method([100.0] * 24, 6, method)
        assert len(forecast) == 6
        assert np.allclose(forecast, 100.0, atol=1e-6)

    @pytest.mark.parametrize("method", ALL_METHODS)
    def test_forecasts_never_negative(self, method):
        """Test that a collapsing series is floored at zero"""
        values = [500 - 45 * i for i in range(12)]
        forecast = run_forecast_method(values, 24, method)
        assert (forecast >= 0).all()

    def test_linear_extends_trend(self):
        forecast = run_forecast_method([10, 20, 30, 40], 3, ForecastMethod(Methodology.LINEAR))
        assert np.allclose(forecast, [50, 60, 70])

    def test_arima_reverts_toward_mean(self):
        """Test that each ARIMA step closes 15% of the gap to the mean"""
        values = [10, 10, 10, 50]  # mean 20, last 50
        forecast = run_forecast_method(values, 2, ForecastMethod(Methodology.ARIMA))
        assert forecast[0] == pytest.approx(20 + 0.85 * 30)
        assert forecast[1] == pytest.approx(20 + 0.85 * 0.85 * 30)

    def test_prophet_adds_bullish_growth(self):
        """Test Prophet-like growth of (last - first) / n * 1.2 per step on a linear ramp"""
        values = [float(v) for v in range(12, 36)]  # 24 points, no repeating seasonality offset
        forecast = run_forecast_method(values, 1, ForecastMethod(Methodology.PROPHET))
        mean = np.mean(values)
        seasonal_0 = ((values[0] - mean) + (values[12] - mean)) / 2
        growth = (values[-1] - values[0]) / len(values)
        assert forecast[0] == pytest.approx(np.floor(seasonal_0 + mean + growth * 1.2 + 0.5))

    def test_holt_winters_variants_differ_on_seasonal_data(self, seasonal_series):
        values = seasonal_series['quantity'].tolist()
        additive = run_forecast_method(values, 12, ForecastMethod(hw_variant=HoltWintersVariant.ADDITIVE))
        multiplicative = run_forecast_method(values, 12, ForecastMethod(hw_variant=HoltWintersVariant.MULTIPLICATIVE))
        assert not np.allclose(additive, multiplicative)


class TestHoltWintersDetection:
    """Test automatic additive / multiplicative selection"""

    def test_flat_series_is_multiplicative(self):
        assert detect_hw_variant([100] * 24) is HoltWintersVariant.MULTIPLICATIVE

    def test_short_series_is_multiplicative(self):
        assert detect_hw_variant([0, 500, 3]) is HoltWintersVariant.MULTIPLICATIVE

    def test_volatile_series_is_additive(self):
        assert detect_hw_variant([10, 190] * 12) is HoltWintersVariant.ADDITIVE

    def test_sparse_ramp_up_is_additive(self):
        values = [10] * 3 + [100] * 21  # low CV and weak trend, half of the first quarter sparse
        assert detect_hw_variant(values) is HoltWintersVariant.ADDITIVE

    def test_strong_trend_is_additive(self):
        values = [100 + 20 * i for i in range(24)]
        assert detect_hw_variant(values) is HoltWintersVariant.ADDITIVE

    def test_method_label_names_detected_variant(self):
        auto = ForecastMethod(auto_detect_hw=True)
        assert get_method_label(auto, [100] * 24) == 'Holt-Winters (Multiplicative)'
        assert get_method_label(auto, [10, 190] * 12) == 'Holt-Winters (Additive)'
        assert get_method_label(ForecastMethod(Methodology.LINEAR)) == 'Linear Regression'


class TestCalculateForecast:
    """Test the per-SKU forecast frame"""

    def test_end_to_end_flat_series(self, flat_series):
        """Test 24 x 100 history forecasts [100, 100, 100]"""
        result = calculate_forecast(flat_series, 3, '2023-12-01', 95, ForecastMethod())

        assert_columns_exist(result, FORECAST_COLUMNS)
        future = result[result['date'] > pd.Timestamp('2023-12-01')]
        assert list(future['forecast']) == [100.0, 100.0, 100.0]
        assert list(future['date']) == [pd.Timestamp('2024-01-01'), pd.Timestamp('2024-02-01'),
                                        pd.Timestamp('2024-03-01')]

    def test_historical_points_are_echoed(self, flat_series):
        result = calculate_forecast(flat_series, 3, '2023-12-01')
        history = result[~result['is_forecast']]
        assert len(history) == 24
        assert (history['historical'] == history['forecast']).all()

    def test_insufficient_data_returns_empty(self):
        assert calculate_forecast(make_series([5, 6]), 3, '2022-12-01').empty

    def test_insufficient_training_points_returns_empty(self):
        """Test that fewer than 3 points on or before the cutoff yields no forecast"""
        series = make_series([5, 6, 7, 8, 9], start='2023-01-01')
        assert calculate_forecast(series, 3, '2023-02-15').empty

    def test_points_after_cutoff_are_flagged_forecast(self):
        series = make_series([10] * 12, start='2023-01-01')
        result = calculate_forecast(series, 2, '2023-09-30')

        observed = result[result['historical'].notna()]
        assert list(observed['is_forecast']) == [False] * 9 + [True] * 3
        future = result[result['historical'].isna()]
        assert list(future['date']) == [pd.Timestamp('2023-10-01'), pd.Timestamp('2023-11-01')]

    def test_future_months_from_month_end_cutoff(self):
        """Test that a Jan 31 cutoff produces Feb, Mar, Apr with no skipped month"""
        series = make_series([10, 12, 11, 13], start='2023-10-01')
        result = calculate_forecast(series, 3, '2024-01-31')
        future = result[result['historical'].isna()]
        assert list(future['date'].dt.month) == [2, 3, 4]

    def test_confidence_band_widens_with_step(self, seasonal_series):
        result = calculate_forecast(seasonal_series, 12, '2024-12-01', 95, ForecastMethod(Methodology.LINEAR))
        future = result[result['historical'].isna()]
        widths = (future['upper_bound'] - future['lower_bound']).tolist()
        assert widths[-1] > widths[0]
        assert (future['lower_bound'] >= 0).all()
        assert (future['lower_bound'] <= future['forecast']).all()
        assert (future['upper_bound'] >= future['forecast']).all()

    def test_band_width_matches_formula(self):
        """Test u = z * std(train) * sqrt(step) * 0.4 on a flat-mean series"""
        series = make_series([90, 110] * 6)  # mean 100, population std 10
        result = calculate_forecast(series, 4, '2022-12-01', 95, ForecastMethod(Methodology.ARIMA))
        future = result[result['historical'].isna()].reset_index(drop=True)
        uncertainty = 1.96 * 10 * np.sqrt(4) * 0.4
        value = 100 + 0.85 ** 4 * 10
        assert future.loc[3, 'upper_bound'] == np.floor(value + uncertainty + 0.5)
        assert future.loc[3, 'lower_bound'] == np.floor(value - uncertainty + 0.5)


class TestSeriesPreparation:
    """Test normalization, anomaly cleaning and market shocks"""

    def test_prepare_sums_duplicate_months(self):
        observed = pd.DataFrame({
            'sku': ['A', 'A', 'A', 'B'],
            'date': ['2024-01-03', '2024-01-28', '2024-02-10', '2024-01-01'],
            'quantity': [5, 7, 3, 1],
        })
        series = prepare_observed_series(observed)

        assert list(series.keys()) == ['A', 'B']
        assert list(series['A']['date']) == [pd.Timestamp('2024-01-01'), pd.Timestamp('2024-02-01')]
        assert list(series['A']['quantity']) == [12.0, 3.0]

    def test_clean_anomalies_replaces_outlier_with_mean(self):
        values = [100] * 20 + [1000]
        cleaned = clean_anomalies(make_series(values))
        mean = np.mean(values)
        assert cleaned['quantity'].iloc[-1] == np.floor(mean + 0.5)
        assert (cleaned['quantity'].iloc[:20] == 100).all()

    def test_clean_anomalies_leaves_flat_series(self, flat_series):
        cleaned = clean_anomalies(flat_series)
        pd.testing.assert_frame_equal(cleaned, flat_series)

    def test_market_shock_scales_forecast_month_only(self, flat_series):
        result = calculate_forecast(flat_series, 3, '2023-12-01')
        shocked = apply_market_shocks(result, [MarketShock('2024-02', -20, 'Port strike'),
                                               MarketShock('2023-06', 50, 'Historical, ignored')])

        future = shocked[shocked['is_forecast']].reset_index(drop=True)
        assert list(future['forecast']) == [100.0, 80.0, 100.0]
        history = shocked[~shocked['is_forecast']]
        assert (history['forecast'] == 100).all()

    def test_market_shock_does_not_mutate_input(self, flat_series):
        result = calculate_forecast(flat_series, 3, '2023-12-01')
        apply_market_shocks(result, [MarketShock('2024-01', 100)])
        assert (result['forecast'] == 100).all()


class TestGenerateDemandForecast:
    """Test the multi-SKU forecasting engine"""

    def test_returns_logs_and_forecasts(self, observed_df, base_config):
        logs, forecasts = generate_demand_forecast(observed_df, base_config)

        assert isinstance(logs, list)
        assert logs[0] == "--- Demand Forecasting Engine ---"
        assert set(forecasts) == {'STABLE', 'GROWING', 'SPIKY'}
        for df in forecasts.values():
            assert_columns_exist(df, FORECAST_COLUMNS)
            assert df['is_forecast'].sum() == base_config.horizon

    def test_empty_input_logs_error(self, base_config, empty_dataframe):
        logs, forecasts = generate_demand_forecast(empty_dataframe, base_config)
        assert forecasts == {}
        assert_log_contains(logs, "ERROR: No observed demand provided")

    def test_short_skus_are_skipped_and_logged(self, base_config):
        observed = pd.concat([
            make_observed({'LONG': [10] * 24}),
            make_observed({'SHORT': [10, 20]}, start='2023-11-01'),
        ], ignore_index=True)
        logs, forecasts = generate_demand_forecast(observed, base_config)

        assert list(forecasts) == ['LONG']
        assert_log_contains(logs, "WARNING: Skipped 1 SKUs")

    def test_observations_after_cutoff_are_not_echoed(self, flat_series, base_config):
        """Test that history past the historical end date does not duplicate forecast months"""
        observed = flat_series.assign(sku='FLAT')
        config = replace(base_config, historical_end_date=pd.Timestamp('2023-06-30'), horizon=3)

        _, forecasts = generate_demand_forecast(observed, config)
        result = forecasts['FLAT']

        assert not result['date'].duplicated().any()
        assert len(result) == 18 + 3
        future = result[result['is_forecast']]
        assert list(future['date']) == [pd.Timestamp('2023-07-01'), pd.Timestamp('2023-08-01'),
                                        pd.Timestamp('2023-09-01')]
        assert future['historical'].isna().all()

    def test_parallel_matches_sequential(self, base_config):
        """Test that the joblib fan-out gives the same forecasts as the sequential path"""
        rng = np.random.default_rng(7)
        observed = make_observed({f"SKU{i:03d}": rng.integers(20, 200, size=24) for i in range(120)})

        _, sequential = generate_demand_forecast(observed, base_config)
        logs, parallel = generate_demand_forecast(observed, replace(base_config, use_parallel=True))

        assert_log_contains(logs, "parallel")
        assert set(sequential) == set(parallel)
        for sku in sequential:
            pd.testing.assert_frame_equal(sequential[sku], parallel[sku])

    def test_shocks_and_cleaning_from_config(self, observed_df, base_config):
        config = replace(base_config, apply_anomaly_cleaning=True,
                         shocks=(MarketShock('2024-01', 50, 'Promo'),))
        logs, forecasts = generate_demand_forecast(observed_df, config)

        assert_log_contains(logs, "Applied 1 market shock")
        january = forecasts['STABLE'].set_index('date').loc[pd.Timestamp('2024-01-01'), 'forecast']
        assert january == 150.0


class TestAggregateForecasts:
    """Test cross-SKU aggregation"""

    def test_sums_forecast_and_historical(self, flat_series):
        a = calculate_forecast(flat_series, 3, '2023-12-01')
        b = calculate_forecast(flat_series.assign(quantity=50.0), 3, '2023-12-01')
        aggregated = aggregate_forecasts({'A': a, 'B': b})

        assert len(aggregated) == 27
        history = aggregated[~aggregated['is_forecast']]
        assert (history['historical'] == 150).all()
        future = aggregated[aggregated['is_forecast']]
        assert (future['forecast'] == 150).all()
        assert future['historical'].isna().all()

    def test_safety_stock_takes_max(self, flat_series):
        a = calculate_forecast(flat_series, 2, '2023-12-01').assign(safety_stock=10.0, reorder_point=40.0)
        b = calculate_forecast(flat_series, 2, '2023-12-01').assign(safety_stock=25.0, reorder_point=30.0)
        aggregated = aggregate_forecasts({'A': a, 'B': b})
        assert (aggregated['safety_stock'] == 25.0).all()
        assert (aggregated['reorder_point'] == 40.0).all()

    def test_empty_input(self):
        assert aggregate_forecasts({}).empty
