"""Tests for backtest performance metrics."""

import math
from types import SimpleNamespace

import pytest

from polyevolve.services.backtester.metrics import (
    EquityPoint,
    MetricsCalculator,
    PerformanceMetrics,
    calculate_drawdown_curve,
    calculate_metrics,
)


def trades_with(*pnls):
    return [SimpleNamespace(pnl=pnl) for pnl in pnls]


def equity(*balances):
    return [EquityPoint(timestamp=i, balance=b) for i, b in enumerate(balances)]


class TestTradeStatistics:
    """Test win/loss based statistics."""

    def test_no_trades(self):
        metrics = calculate_metrics([], [], 100.0)

        assert metrics == PerformanceMetrics()
        assert metrics.sharpe_ratio == 0.0
        assert metrics.profit_factor == 0.0

    def test_mixed_trades(self):
        metrics = calculate_metrics(trades_with(10, -5, 10, -5), equity(110, 105, 115, 110), 100.0)

        assert metrics.total_trades == 4
        assert metrics.wins == 2
        assert metrics.losses == 2
        assert metrics.win_rate == pytest.approx(0.5)
        assert metrics.total_pnl == pytest.approx(10.0)
        assert metrics.avg_win == pytest.approx(10.0)
        assert metrics.avg_loss == pytest.approx(5.0)
        assert metrics.profit_factor == pytest.approx(2.0)
        assert metrics.expectancy == pytest.approx(2.5)
        assert metrics.avg_trade_return == pytest.approx(2.5)
        assert metrics.return_on_capital == pytest.approx(0.1)

    def test_sharpe_uses_population_std(self):
        """Returns 0.10 and -0.05 have mean 0.025 and std 0.075 over 4 trades."""
        metrics = calculate_metrics(trades_with(10, -5, 10, -5), [], 100.0)

        assert metrics.sharpe_ratio == pytest.approx(0.025 / 0.075 * 2)

    def test_all_wins(self):
        metrics = calculate_metrics(trades_with(5, 5, 5), [], 100.0)

        assert math.isinf(metrics.profit_factor)
        assert metrics.sharpe_ratio == 0.0
        assert metrics.avg_loss == 0.0
        assert metrics.win_rate == 1.0

    def test_zero_pnl_counts_as_loss(self):
        metrics = calculate_metrics(trades_with(0.0), [], 100.0)

        assert metrics.wins == 0
        assert metrics.losses == 1
        assert metrics.profit_factor == 0.0

    def test_streaks(self):
        metrics = calculate_metrics(trades_with(1, 1, -1, -1, -1, 1, 1, 1, 1, 0), [], 100.0)

        assert metrics.max_consecutive_wins == 4
        assert metrics.max_consecutive_losses == 3

    def test_zero_starting_balance(self):
        metrics = calculate_metrics(trades_with(1, -1), [], 0.0)

        assert metrics.return_on_capital == 0.0
        assert metrics.sharpe_ratio == 0.0


class TestDrawdown:
    """Test drawdown calculations."""

    def test_max_drawdown(self):
        max_dd, max_dd_pct = MetricsCalculator._calculate_max_drawdown(equity(110, 90, 120, 100), 100.0)

        assert max_dd == pytest.approx(20.0)
        assert max_dd_pct == pytest.approx(20.0 / 110.0)

    def test_peak_seeded_with_starting_balance(self):
        max_dd, max_dd_pct = MetricsCalculator._calculate_max_drawdown(equity(90), 100.0)

        assert max_dd == pytest.approx(10.0)
        assert max_dd_pct == pytest.approx(0.1)

    def test_drawdown_curve(self):
        curve = calculate_drawdown_curve(equity(90, 120, 60), 100.0)

        assert [p.drawdown for p in curve] == pytest.approx([0.1, 0.0, 0.5])
        assert [p.timestamp for p in curve] == [0, 1, 2]

    def test_to_dict(self):
        data = PerformanceMetrics(total_trades=3).to_dict()

        assert data['total_trades'] == 3
        assert 'max_drawdown_percent' in data
