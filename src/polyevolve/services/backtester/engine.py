"""
Backtesting Engine

This module replays historical binary UP/DOWN markets tick by tick and
simulates a single-position late-entry strategy: buy the favoured side
inside the final window of a market when its ask is in the entry band, then
exit at the profit target, at the stop-loss, or when the market expires.

Ticks from all markets are merged into one chronological stream, so at most
one position is open across the whole dataset. The engine is a pure
function of its configuration and markets.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

import pandas as pd

from polyevolve.common.errors import ConfigurationError
from polyevolve.common.schemas import ExitReason, HistoricalMarket, PriceTick, Side, StrategyConfig
from .metrics import (
    DrawdownPoint,
    EquityPoint,
    PerformanceMetrics,
    calculate_drawdown_curve,
    calculate_metrics,
)

logger = logging.getLogger(__name__)

MIN_PRICE = 0.01
MAX_PRICE = 0.99
MIN_TRADABLE_BALANCE = 1.0


@dataclass
class SimulatedPosition:
    """The single open position."""
    token_id: str
    market_id: str
    side: Side
    shares: float
    entry_price: float
    entry_time: int
    last_bid: float  # latest best bid seen for the held token


@dataclass(frozen=True)
class BacktestTrade:
    """A completed round trip."""
    market_id: str
    token_id: str
    side: Side
    entry_price: float
    exit_price: float
    shares: float
    entry_time: int
    exit_time: int
    exit_reason: ExitReason
    pnl: float

    @property
    def holding_ms(self) -> int:
        return self.exit_time - self.entry_time


@dataclass
class BacktestResult:
    """Backtest result container."""
    config: StrategyConfig
    metrics: PerformanceMetrics
    trades: List[BacktestTrade]
    equity_curve: List[EquityPoint]
    drawdown_curve: List[DrawdownPoint]
    saved_profit: float
    final_balance: float
    unresolved_markets: List[str] = field(default_factory=list)

    @property
    def total_value(self) -> float:
        """Final balance plus profit set aside by compounding."""
        return self.final_balance + self.saved_profit

    def trades_dataframe(self) -> pd.DataFrame:
        """Get trades as a DataFrame."""
        columns = [
            'market_id', 'token_id', 'side', 'entry_price', 'exit_price', 'shares',
            'entry_time', 'exit_time', 'exit_reason', 'pnl'
        ]
        if not self.trades:
            return pd.DataFrame(columns=columns)

        df = pd.DataFrame([
            {
                'market_id': t.market_id,
                'token_id': t.token_id,
                'side': t.side.value,
                'entry_price': t.entry_price,
                'exit_price': t.exit_price,
                'shares': t.shares,
                'entry_time': pd.to_datetime(t.entry_time, unit='ms', utc=True),
                'exit_time': pd.to_datetime(t.exit_time, unit='ms', utc=True),
                'exit_reason': t.exit_reason.value,
                'pnl': t.pnl
            }
            for t in self.trades
        ], columns=columns)
        return df

    def equity_curve_dataframe(self) -> pd.DataFrame:
        """Equity and drawdown per exit, indexed by exit time."""
        if not self.equity_curve:
            return pd.DataFrame(columns=['balance', 'drawdown'])

        index = pd.to_datetime([p.timestamp for p in self.equity_curve], unit='ms', utc=True)
        return pd.DataFrame(
            {
                'balance': [p.balance for p in self.equity_curve],
                'drawdown': [p.drawdown for p in self.drawdown_curve],
            },
            index=pd.Index(index, name='timestamp')
        )


def merge_ticks(markets: Sequence[HistoricalMarket]) -> List[Tuple[PriceTick, HistoricalMarket]]:
    """
    Merge every market's ticks into one chronological stream.

    Equal timestamps are ordered by the market's position in ``markets``,
    then UP before DOWN, then by each side's own order.
    """
    keyed = []
    for market_index, market in enumerate(markets):
        for index, tick in enumerate(market.price_ticks):
            keyed.append(((tick.timestamp, market_index, index), tick, market))

    keyed.sort(key=lambda item: item[0])
    return [(tick, market) for _, tick, market in keyed]


class BacktestEngine:
    """
    Tick replay engine for binary markets.

    Usage:
        engine = BacktestEngine(config)
        result = engine.run(markets)

    The engine keeps per-run state on the instance and resets it at the
    start of every ``run``; reuse one engine only from a single thread.
    """

    def __init__(self, config: Optional[StrategyConfig] = None):
        self.config = config or StrategyConfig()
        self._reset_state()

    def _reset_state(self):
        self.balance = self.config.starting_balance
        self.saved_profit = 0.0
        self.position: Optional[SimulatedPosition] = None
        self.trades: List[BacktestTrade] = []
        self.equity_curve: List[EquityPoint] = []
        self.unresolved_markets: List[str] = []
        self._last_trade: Optional[BacktestTrade] = None

    def run(self, markets: Sequence[HistoricalMarket]) -> BacktestResult:
        """
        Replay the markets and return the simulated result.

        Args:
            markets: Historical markets; their order breaks timestamp ties

        Returns:
            BacktestResult with trades, curves and metrics
        """
        self._reset_state()
        market_map = self._index_markets(markets)
        expired: Set[str] = set()

        stream = merge_ticks(markets)
        logger.debug(f"Backtest started: {len(markets)} markets, {len(stream)} ticks")

        for tick, market in stream:
            position = self.position
            if position is not None and position.market_id not in expired:
                held_market = market_map[position.market_id]
                if tick.timestamp >= held_market.end_time:
                    self._close_at_expiry(held_market)
                    expired.add(held_market.id)

            if market.id in expired:
                continue

            if tick.timestamp >= market.end_time:
                if self.position is not None and self.position.market_id == market.id:
                    self._close_at_expiry(market)
                expired.add(market.id)
                continue

            self._process_tick(tick, market)

        if self.position is not None:
            self._close_at_expiry(market_map[self.position.market_id])

        metrics = calculate_metrics(self.trades, self.equity_curve, self.config.starting_balance)
        result = BacktestResult(
            config=self.config,
            metrics=metrics,
            trades=list(self.trades),
            equity_curve=list(self.equity_curve),
            drawdown_curve=calculate_drawdown_curve(self.equity_curve, self.config.starting_balance),
            saved_profit=self.saved_profit,
            final_balance=self.balance,
            unresolved_markets=list(self.unresolved_markets),
        )

        logger.debug(
            f"Backtest complete: {metrics.total_trades} trades, "
            f"PnL={metrics.total_pnl:.4f}, final balance={self.balance:.4f}"
        )
        return result

    @staticmethod
    def _index_markets(markets: Sequence[HistoricalMarket]) -> Dict[str, HistoricalMarket]:
        market_map: Dict[str, HistoricalMarket] = {}
        for market in markets:
            if market.id in market_map:
                raise ConfigurationError(f"Duplicate market id: {market.id}")
            market_map[market.id] = market
        return market_map

    def _process_tick(self, tick: PriceTick, market: HistoricalMarket):
        position = self.position

        if position is not None and position.token_id == tick.token_id:
            position.last_bid = tick.best_bid
            # Profit target is checked before the stop-loss
            if tick.best_bid >= self.config.profit_target:
                self._execute_exit(self.config.profit_target, tick.timestamp, ExitReason.PROFIT_TARGET)
            elif tick.best_bid <= self.config.stop_loss:
                exit_price = max(tick.best_bid * (1 - self.config.slippage), MIN_PRICE)
                self._execute_exit(exit_price, tick.timestamp, ExitReason.STOP_LOSS)
            return

        if position is None and self.balance >= MIN_TRADABLE_BALANCE:
            side = self._check_entry(tick, market)
            if side is not None:
                self._execute_entry(tick, side)

    def _check_entry(self, tick: PriceTick, market: HistoricalMarket) -> Optional[Side]:
        """Return the side to buy when every entry condition holds, else None."""
        config = self.config

        time_remaining = market.end_time - tick.timestamp
        if time_remaining <= 0 or time_remaining > config.time_window_ms:
            return None

        side = market.side_for_token(tick.token_id)
        if side is None:
            return None

        if tick.best_ask - tick.best_bid > config.max_spread:
            return None

        if tick.best_ask < config.entry_threshold or tick.best_ask > config.max_entry_price:
            return None

        if tick.best_ask >= config.profit_target:
            return None

        # Do not chase a side that just won in this market
        last_trade = self._last_trade
        if (
            last_trade is not None
            and last_trade.market_id == market.id
            and last_trade.side == side
            and last_trade.pnl > 0
        ):
            return None

        return side

    def _execute_entry(self, tick: PriceTick, side: Side):
        entry_price = min(tick.best_ask * (1 + self.config.slippage), MAX_PRICE)
        shares = self.balance / entry_price

        self.position = SimulatedPosition(
            token_id=tick.token_id,
            market_id=tick.market_id,
            side=side,
            shares=shares,
            entry_price=entry_price,
            entry_time=tick.timestamp,
            last_bid=tick.best_bid,
        )
        self.balance = 0.0

    def _execute_exit(self, exit_price: float, exit_time: int, reason: ExitReason):
        position = self.position
        pnl = (exit_price - position.entry_price) * position.shares

        trade = BacktestTrade(
            market_id=position.market_id,
            token_id=position.token_id,
            side=position.side,
            entry_price=position.entry_price,
            exit_price=exit_price,
            shares=position.shares,
            entry_time=position.entry_time,
            exit_time=exit_time,
            exit_reason=reason,
            pnl=pnl,
        )
        self.trades.append(trade)
        self._last_trade = trade

        self.balance = exit_price * position.shares
        self.equity_curve.append(EquityPoint(timestamp=exit_time, balance=self.balance))
        self.position = None

        limit = self.config.compound_limit
        if limit > 0 and self.balance > limit:
            self.saved_profit += self.balance - self.config.base_balance
            self.balance = self.config.base_balance

    def _close_at_expiry(self, market: HistoricalMarket):
        """Force-close the open position at the market's end time."""
        position = self.position

        if market.outcome is None:
            # Resolution unknown: mark to the last observed bid
            self.unresolved_markets.append(market.id)
            self._execute_exit(position.last_bid, market.end_time, ExitReason.TIME_EXIT)
        elif market.outcome == position.side:
            self._execute_exit(self.config.profit_target, market.end_time, ExitReason.MARKET_RESOLVED)
        else:
            self._execute_exit(MIN_PRICE, market.end_time, ExitReason.MARKET_RESOLVED)


def run_backtest(config: StrategyConfig, markets: Sequence[HistoricalMarket]) -> BacktestResult:
    """Run a single backtest with a fresh engine."""
    return BacktestEngine(config).run(markets)
