"""Tests for the market replay backtest engine."""

import pytest

from polyevolve.common.errors import ConfigurationError
from polyevolve.common.schemas import ExitReason, Side
from polyevolve.services.backtester.engine import BacktestEngine, merge_ticks, run_backtest


MINUTE = 60_000


class TestEmptyRun:
    """Test the engine with nothing to trade."""

    def test_empty_market_list(self, strategy_config):
        """No markets means no trades and an untouched balance."""
        result = run_backtest(strategy_config, [])

        assert result.trades == []
        assert result.final_balance == strategy_config.starting_balance
        assert result.saved_profit == 0
        assert result.metrics.total_trades == 0
        assert result.equity_curve == []
        assert result.drawdown_curve == []

    def test_market_without_qualifying_ticks(self, strategy_config, make_market):
        market = make_market(up=[(45, 0.60, 0.61), (50, 0.62, 0.63)])
        result = run_backtest(strategy_config, [market])

        assert result.trades == []
        assert result.final_balance == 100.0

    def test_duplicate_market_ids_rejected(self, strategy_config, make_market):
        market = make_market()
        with pytest.raises(ConfigurationError):
            run_backtest(strategy_config, [market, market])


class TestExits:
    """Test profit target, stop-loss and expiry exits."""

    def test_profit_target_exit(self, strategy_config, make_market):
        """Bid reaching the profit target exits at the target price."""
        config = strategy_config.model_copy(update={"slippage": 0.001})
        market = make_market(up=[(45, 0.89, 0.90), (50, 0.99, 1.0)])

        result = run_backtest(config, [market])

        assert len(result.trades) == 1
        trade = result.trades[0]
        entry_price = 0.90 * 1.001
        shares = 100.0 / entry_price
        assert trade.exit_reason == ExitReason.PROFIT_TARGET
        assert trade.side == Side.UP
        assert trade.entry_price == pytest.approx(entry_price)
        assert trade.shares == pytest.approx(shares)
        assert trade.exit_price == pytest.approx(0.99)
        assert trade.pnl == pytest.approx((0.99 - entry_price) * shares)
        assert result.final_balance == pytest.approx(0.99 * shares)

    def test_stop_loss_exit(self, strategy_config, make_market):
        """Bid falling to the stop exits at the bid less slippage."""
        config = strategy_config.model_copy(update={"slippage": 0.001})
        market = make_market(up=[(45, 0.89, 0.90), (50, 0.70, 0.71)])

        result = run_backtest(config, [market])

        assert len(result.trades) == 1
        trade = result.trades[0]
        assert trade.exit_reason == ExitReason.STOP_LOSS
        assert trade.exit_price == pytest.approx(max(0.70 * (1 - 0.001), 0.01))
        assert trade.pnl < 0

    def test_stop_loss_exit_price_floor(self, strategy_config, make_market):
        config = strategy_config.model_copy(update={"slippage": 0.5})
        market = make_market(up=[(45, 0.89, 0.90), (50, 0.01, 0.02)])

        result = run_backtest(config, [market])

        assert result.trades[0].exit_price == pytest.approx(0.01)

    def test_profit_target_checked_before_stop(self, strategy_config, make_market):
        """A bid that satisfies both triggers exits at the profit target."""
        config = strategy_config.model_copy(update={"stop_loss": 0.995})
        market = make_market(up=[(45, 0.89, 0.90), (50, 0.99, 1.0)])

        result = run_backtest(config, [market])

        assert result.trades[0].exit_reason == ExitReason.PROFIT_TARGET

    def test_expiry_with_winning_outcome(self, strategy_config, make_market):
        market = make_market(outcome=Side.UP, up=[(45, 0.89, 0.90)])

        result = run_backtest(strategy_config, [market])

        trade = result.trades[0]
        assert trade.exit_reason == ExitReason.MARKET_RESOLVED
        assert trade.exit_price == pytest.approx(strategy_config.profit_target)
        assert trade.exit_time == market.end_time

    def test_expiry_with_losing_outcome(self, strategy_config, make_market):
        market = make_market(outcome=Side.DOWN, up=[(45, 0.89, 0.90)])

        result = run_backtest(strategy_config, [market])

        trade = result.trades[0]
        assert trade.exit_reason == ExitReason.MARKET_RESOLVED
        assert trade.exit_price == pytest.approx(0.01)
        assert result.final_balance == pytest.approx(0.01 * 100.0 / 0.90)

    def test_unknown_outcome_exits_at_last_bid(self, strategy_config, make_market):
        """An unresolved market is marked to the last bid, never assumed won."""
        market = make_market(outcome=None, up=[(45, 0.89, 0.90), (50, 0.87, 0.88)])

        result = run_backtest(strategy_config, [market])

        trade = result.trades[0]
        assert trade.exit_reason == ExitReason.TIME_EXIT
        assert trade.exit_price == pytest.approx(0.87)
        assert trade.exit_time == market.end_time
        assert result.unresolved_markets == [market.id]

    def test_position_closed_when_later_market_tick_passes_expiry(self, strategy_config, make_market):
        """A tick from another market after the held market's end closes it first."""
        first = make_market("a", up=[(45, 0.89, 0.90)])
        second = make_market("b", start=first.end_time, up=[(45, 0.89, 0.90)])

        result = run_backtest(strategy_config, [first, second])

        assert [t.market_id for t in result.trades] == ["a", "b"]
        assert result.trades[0].exit_reason == ExitReason.MARKET_RESOLVED
        assert result.trades[0].exit_time == first.end_time
        assert result.trades[1].entry_time == second.start_time + 45 * MINUTE


class TestEntryRules:
    """Test the entry conditions."""

    @pytest.mark.parametrize("tick", [
        (30, 0.89, 0.90),  # outside the time window
        (45, 0.80, 0.90),  # spread too wide
        (45, 0.83, 0.84),  # ask below entry threshold
        (45, 0.95, 0.96),  # ask above max entry price
        (60, 0.89, 0.90),  # at market end
    ])
    def test_rejected_entries(self, strategy_config, make_market, tick):
        market = make_market(up=[tick])

        result = run_backtest(strategy_config, [market])

        assert result.trades == []

    def test_ask_at_or_above_profit_target_rejected(self, strategy_config, make_market):
        config = strategy_config.model_copy(update={"max_entry_price": 0.99, "profit_target": 0.97})
        market = make_market(up=[(45, 0.97, 0.98)])

        assert run_backtest(config, [market]).trades == []

    def test_balance_below_one_cannot_trade(self, strategy_config, make_market):
        config = strategy_config.model_copy(update={"starting_balance": 0.5})
        market = make_market(up=[(45, 0.89, 0.90)])

        assert run_backtest(config, [market]).trades == []

    def test_entry_price_capped(self, strategy_config, make_market):
        config = strategy_config.model_copy(update={"max_entry_price": 1.0, "profit_target": 1.0, "slippage": 0.05})
        market = make_market(up=[(45, 0.97, 0.98)])

        result = run_backtest(config, [market])

        assert result.trades[0].entry_price == pytest.approx(0.99)

    def test_down_side_entry(self, strategy_config, make_market):
        market = make_market(outcome=Side.DOWN, down=[(45, 0.89, 0.90)])

        result = run_backtest(strategy_config, [market])

        assert result.trades[0].side == Side.DOWN
        assert result.trades[0].exit_price == pytest.approx(0.99)

    def test_same_side_not_rechased_after_win(self, strategy_config, make_market):
        """After a winning UP trade the market's UP side is skipped; DOWN is allowed."""
        market = make_market(
            outcome=Side.UP,
            up=[(45, 0.89, 0.90), (46, 0.99, 1.0), (47, 0.89, 0.90)],
            down=[(48, 0.89, 0.90)],
        )

        result = run_backtest(strategy_config, [market])

        assert [t.side for t in result.trades] == [Side.UP, Side.DOWN]
        assert result.trades[1].entry_time == market.start_time + 48 * MINUTE

    def test_same_side_reentered_after_loss(self, strategy_config, make_market):
        market = make_market(up=[(45, 0.89, 0.90), (46, 0.70, 0.71), (47, 0.89, 0.90)])

        result = run_backtest(strategy_config, [market])

        assert [t.side for t in result.trades] == [Side.UP, Side.UP]
        assert result.trades[0].exit_reason == ExitReason.STOP_LOSS


class TestTickOrdering:
    """Test the merged tick stream order."""

    def test_equal_timestamps_follow_market_order(self, strategy_config, make_market):
        first = make_market("a", up=[(45, 0.89, 0.90)])
        second = make_market("b", up=[(45, 0.89, 0.90)])

        assert run_backtest(strategy_config, [first, second]).trades[0].market_id == "a"
        assert run_backtest(strategy_config, [second, first]).trades[0].market_id == "b"

    def test_up_before_down_on_equal_timestamps(self, strategy_config, make_market):
        market = make_market(up=[(45, 0.89, 0.90)], down=[(45, 0.89, 0.90)])

        result = run_backtest(strategy_config, [market])

        assert result.trades[0].side == Side.UP

    def test_merge_ticks_is_chronological(self, make_market):
        first = make_market("a", up=[(40, 0.5, 0.51), (50, 0.5, 0.51)], down=[(45, 0.5, 0.51)])
        second = make_market("b", up=[(42, 0.5, 0.51)])

        stream = merge_ticks([first, second])

        timestamps = [tick.timestamp for tick, _ in stream]
        assert timestamps == sorted(timestamps)
        assert [market.id for _, market in stream] == ["a", "b", "a", "a"]

    def test_price_ticks_put_up_first_on_equal_timestamps(self, make_market):
        market = make_market(up=[(40, 0.5, 0.51), (45, 0.6, 0.61)], down=[(40, 0.4, 0.41), (42, 0.3, 0.31)])

        ticks = market.price_ticks

        assert [t.token_id for t in ticks] == ["m1-up", "m1-down", "m1-down", "m1-up"]
        assert [tick for tick, _ in merge_ticks([market])] == ticks


class TestAccounting:
    """Test balance, compounding and curves."""

    def test_balance_is_exit_proceeds(self, strategy_config, make_market):
        market = make_market(up=[(45, 0.89, 0.90), (50, 0.99, 1.0)])

        result = run_backtest(strategy_config, [market])

        assert result.final_balance == pytest.approx(100.0 / 0.90 * 0.99)
        assert result.equity_curve[0].balance == pytest.approx(result.final_balance)

    def test_compounding_disabled(self, strategy_config, make_market):
        market = make_market(up=[(45, 0.89, 0.90), (50, 0.99, 1.0)])

        result = run_backtest(strategy_config, [market])

        assert result.saved_profit == 0

    def test_compounding_saves_profit_above_limit(self, strategy_config, make_market):
        config = strategy_config.model_copy(update={"compound_limit": 50.0, "base_balance": 10.0})
        market = make_market(up=[(45, 0.89, 0.90), (50, 0.99, 1.0)])

        result = run_backtest(config, [market])

        proceeds = 100.0 / 0.90 * 0.99
        assert result.final_balance == 10.0
        assert result.saved_profit == pytest.approx(proceeds - 10.0)
        assert result.total_value == pytest.approx(proceeds)

    def test_drawdown_curve_seeded_with_starting_balance(self, strategy_config, make_market):
        market = make_market(up=[(45, 0.89, 0.90), (50, 0.70, 0.71)])

        result = run_backtest(strategy_config, [market])

        expected = 1 - 0.70 / 0.90
        assert result.drawdown_curve[0].drawdown == pytest.approx(expected)
        assert result.metrics.max_drawdown_percent == pytest.approx(expected)

    def test_engine_reusable(self, strategy_config, make_market):
        market = make_market(up=[(45, 0.89, 0.90), (50, 0.99, 1.0)])
        engine = BacktestEngine(strategy_config)

        first = engine.run([market])
        second = engine.run([market])

        assert first.trades == second.trades
        assert first.final_balance == second.final_balance

    def test_dataframes(self, strategy_config, make_market):
        market = make_market(up=[(45, 0.89, 0.90), (50, 0.99, 1.0)])

        result = run_backtest(strategy_config, [market])
        trades = result.trades_dataframe()
        equity = result.equity_curve_dataframe()

        assert len(trades) == 1
        assert trades.iloc[0]['exit_reason'] == "PROFIT_TARGET"
        assert list(equity.columns) == ['balance', 'drawdown']
        assert len(equity) == 1

    def test_empty_dataframes(self, strategy_config):
        result = run_backtest(strategy_config, [])

        assert result.trades_dataframe().empty
        assert result.equity_curve_dataframe().empty
