"""
Tests for portfolio analysis module
ABC classification, volatility ranking and transformation tracking
"""

import pandas as pd
import pytest

from demand_forecasting import generate_demand_forecast
from portfolio_analysis import (
    CHANGE_COLUMNS, CLASSIFICATION_COLUMNS, MATRIX_COLUMNS, build_sku_volume_table,
    build_transformation_matrix, classify_risk_tier, get_tier_summary, rank_volatility,
    run_pareto_analysis, run_portfolio_analysis, track_portfolio_changes,
)
from conftest import assert_columns_exist, assert_log_contains, make_series


def volumes(mapping):
    return pd.DataFrame({'sku': list(mapping), 'total_volume': list(mapping.values())})


def make_forecast_frame(history, forecast, start='2023-01-01'):
    series = make_series(list(history) + list(forecast), start)
    n_hist = len(history)
    series['historical'] = series['quantity'].where(series.index < n_hist)
    series['forecast'] = series['quantity']
    series['is_forecast'] = series.index >= n_hist
    return series.drop(columns='quantity')


class TestParetoAnalysis:
    """Test ABC tier assignment"""

    def test_crossing_item_stays_in_tier(self):
        """Test that volumes [800, 200] classify as A, B"""
        result = run_pareto_analysis(volumes({'X': 800, 'Y': 200}))
        assert result['tier'].tolist() == ['A', 'B']

    def test_typical_distribution(self):
        result = run_pareto_analysis(volumes({'S1': 500, 'S2': 250, 'S3': 100, 'S4': 80, 'S5': 40, 'S6': 30}))
        assert_columns_exist(result, CLASSIFICATION_COLUMNS)
        # cumulative: 50, 75, 85, 93, 97, 100
        assert result['tier'].tolist() == ['A', 'A', 'A', 'B', 'B', 'C']
        assert result['cumulative_percent'].iloc[-1] == pytest.approx(100.0)

    def test_ranked_by_volume_with_stable_ties(self):
        result = run_pareto_analysis(volumes({'low': 10, 'tie1': 50, 'tie2': 50}))
        assert result['sku'].tolist() == ['tie1', 'tie2', 'low']

    def test_tiers_are_monotonic(self):
        result = run_pareto_analysis(volumes({f"S{i}": (i + 1) ** 2 for i in range(30)}))
        order = {'A': 0, 'B': 1, 'C': 2}
        ranks = [order[t] for t in result['tier']]
        assert ranks == sorted(ranks)

    def test_reclassification_is_idempotent(self):
        first = run_pareto_analysis(volumes({'a': 7, 'b': 300, 'c': 45, 'd': 12, 'e': 90}))
        second = run_pareto_analysis(first[['sku', 'total_volume']])
        pd.testing.assert_frame_equal(first, second)

    def test_zero_total_volume_is_all_c(self):
        result = run_pareto_analysis(volumes({'a': 0, 'b': 0}))
        assert result['tier'].tolist() == ['C', 'C']

    def test_empty_input(self):
        assert run_pareto_analysis(pd.DataFrame()).empty

    def test_tier_summary_includes_every_tier(self):
        summary = get_tier_summary(run_pareto_analysis(volumes({'X': 800, 'Y': 200})))
        assert summary['tier'].tolist() == ['A', 'B', 'C']
        assert summary['sku_count'].tolist() == [1, 1, 0]


class TestVolatility:
    """Test coefficient of variation risk tiers"""

    @pytest.mark.parametrize("cv,expected", [
        (0.0, 'Low'),
        (30.0, 'Low'),
        (30.1, 'Medium'),
        (50.0, 'Medium'),
        (50.1, 'High'),
    ])
    def test_classify_risk_tier(self, cv, expected):
        assert classify_risk_tier(cv) == expected

    def test_rank_volatility_orders_by_cv(self):
        ranked = rank_volatility({
            'flat': [100] * 12,
            'spiky': [10, 190] * 6,
            'mild': [80, 120] * 6,
            'empty': [],
        })
        assert ranked['sku'].tolist() == ['spiky', 'mild', 'flat']
        assert ranked['risk_tier'].tolist() == ['High', 'Low', 'Low']
        assert ranked['coefficient_of_variation'].iloc[0] == pytest.approx(90.0)

    def test_rank_volatility_empty(self):
        assert rank_volatility({}).empty


class TestTransformationTracking:
    """Test historical vs forecast portfolio comparison"""

    def test_volume_table_uses_lookback_window(self):
        frame = make_forecast_frame([1, 2, 3, 4, 5, 6], [10, 20])
        table = build_sku_volume_table({'A': frame}, '2023-06-30', lookback_months=3)

        row = table.iloc[0]
        assert row['historical_monthly'] == [4.0, 5.0, 6.0]
        assert row['historical_volume'] == 15.0
        assert row['forecast_volume'] == 30.0

    def test_tier_changes_and_matrix(self):
        historical_abc = run_pareto_analysis(volumes({'X': 800, 'Y': 150, 'Z': 50}))
        forecast_abc = run_pareto_analysis(volumes({'X': 100, 'Y': 850, 'Z': 50}))
        historical_vol = rank_volatility({'X': [100] * 6, 'Y': [100] * 6, 'Z': [100] * 6})
        forecast_vol = rank_volatility({'X': [100] * 6, 'Y': [100] * 6, 'Z': [10, 190] * 3})

        changes = track_portfolio_changes(historical_abc, forecast_abc, historical_vol, forecast_vol)
        assert_columns_exist(changes, CHANGE_COLUMNS)
        by_sku = changes.set_index('sku')

        assert by_sku.loc['X', 'tier_change'] == 'A → B'
        assert by_sku.loc['Y', 'tier_change'] == 'B → A'
        assert by_sku.loc['Z', 'tier_change'] == 'No change'
        assert by_sku.loc['Z', 'forecast_risk'] == 'High'
        assert by_sku.loc['Z', 'volatility_change'] == '0.0% → 90.0%'

        matrix = build_transformation_matrix(changes, historical_abc, forecast_abc)
        assert_columns_exist(matrix, MATRIX_COLUMNS)
        shifts = {(r.from_tier, r.to_tier): (r.sku_count, r.volume_shift) for r in matrix.itertuples()}
        assert shifts == {('A', 'B'): (1, -700.0), ('B', 'A'): (1, 700.0)}

    def test_unchanged_portfolio_has_no_changes(self):
        abc = run_pareto_analysis(volumes({'X': 800, 'Y': 200}))
        vol = rank_volatility({'X': [1, 2], 'Y': [5, 5]})
        changes = track_portfolio_changes(abc, abc, vol, vol)
        assert changes.empty
        assert build_transformation_matrix(changes, abc, abc).empty

    def test_run_portfolio_analysis(self, observed_df, base_config):
        _, forecasts = generate_demand_forecast(observed_df, base_config)
        logs, result = run_portfolio_analysis(forecasts, base_config)

        assert_log_contains(logs, "Portfolio Analysis Engine")
        assert set(result) == {'volume_table', 'historical_abc', 'forecast_abc', 'historical_volatility',
                               'forecast_volatility', 'changes', 'transformation_matrix'}
        assert len(result['historical_abc']) == 3
        # lookback defaults to the horizon
        stable = result['volume_table'].set_index('sku').loc['STABLE']
        assert stable['historical_volume'] == 600.0
        spiky_risk = result['historical_volatility'].set_index('sku').loc['SPIKY', 'risk_tier']
        assert spiky_risk == 'High'

    def test_run_portfolio_analysis_no_forecasts(self, base_config):
        logs, result = run_portfolio_analysis({}, base_config)
        assert_log_contains(logs, "WARNING")
        assert result['historical_abc'].empty
        assert result['changes'].empty
