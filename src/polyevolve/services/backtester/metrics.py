"""
Performance metrics for completed backtests.

Metrics are computed from the trade log and the equity curve the engine
records after every exit. Every ratio is guarded so that an empty or
degenerate run produces zeros rather than errors.
"""

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Sequence, Tuple

import numpy as np


# Standard deviations below this are treated as zero
STD_EPSILON = 1e-12


@dataclass(frozen=True)
class EquityPoint:
    """Account balance immediately after an exit."""
    timestamp: int
    balance: float


@dataclass(frozen=True)
class DrawdownPoint:
    """Fractional drawdown from the running peak at an equity point."""
    timestamp: int
    drawdown: float


@dataclass
class PerformanceMetrics:
    """Summary statistics of a backtest."""
    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    max_drawdown: float = 0.0
    max_drawdown_percent: float = 0.0
    sharpe_ratio: float = 0.0
    profit_factor: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    avg_trade_return: float = 0.0
    max_consecutive_wins: int = 0
    max_consecutive_losses: int = 0
    expectancy: float = 0.0
    return_on_capital: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class MetricsCalculator:
    """Calculate performance metrics from a trade log and equity curve."""

    @staticmethod
    def calculate_all_metrics(
        trades: Sequence[Any],
        equity_curve: Sequence[EquityPoint],
        starting_balance: float
    ) -> PerformanceMetrics:
        """
        Calculate all performance metrics.

        Args:
            trades: Completed trades; only their ``pnl`` attribute is read
            equity_curve: Balance after each exit, in exit order
            starting_balance: Balance the run started with

        Returns:
            PerformanceMetrics with every field populated
        """
        if not trades:
            return PerformanceMetrics()

        pnls = np.array([trade.pnl for trade in trades], dtype=float)
        total_trades = len(pnls)

        win_pnls = pnls[pnls > 0]
        loss_pnls = pnls[pnls <= 0]
        wins = len(win_pnls)
        losses = len(loss_pnls)

        win_rate = wins / total_trades
        total_pnl = float(pnls.sum())

        avg_win = float(win_pnls.mean()) if wins > 0 else 0.0
        avg_loss = abs(float(loss_pnls.mean())) if losses > 0 else 0.0

        gross_profit = float(win_pnls.sum())
        gross_loss = abs(float(loss_pnls.sum()))
        if gross_loss > 0:
            profit_factor = gross_profit / gross_loss
        elif gross_profit > 0:
            profit_factor = math.inf
        else:
            profit_factor = 0.0

        max_drawdown, max_drawdown_percent = MetricsCalculator._calculate_max_drawdown(
            equity_curve, starting_balance
        )
        sharpe_ratio = MetricsCalculator._calculate_sharpe_ratio(pnls, starting_balance)
        max_consecutive_wins, max_consecutive_losses = MetricsCalculator._calculate_streaks(pnls)

        expectancy = win_rate * avg_win - (1 - win_rate) * avg_loss
        return_on_capital = total_pnl / starting_balance if starting_balance > 0 else 0.0

        return PerformanceMetrics(
            total_trades=total_trades,
            wins=wins,
            losses=losses,
            win_rate=win_rate,
            total_pnl=total_pnl,
            max_drawdown=max_drawdown,
            max_drawdown_percent=max_drawdown_percent,
            sharpe_ratio=sharpe_ratio,
            profit_factor=profit_factor,
            avg_win=avg_win,
            avg_loss=avg_loss,
            avg_trade_return=total_pnl / total_trades,
            max_consecutive_wins=max_consecutive_wins,
            max_consecutive_losses=max_consecutive_losses,
            expectancy=expectancy,
            return_on_capital=return_on_capital,
        )

    @staticmethod
    def _calculate_max_drawdown(
        equity_curve: Sequence[EquityPoint],
        starting_balance: float
    ) -> Tuple[float, float]:
        """
        Largest peak-to-trough drop and its fraction of the peak.

        The running peak is seeded with the starting balance, so a first
        exit below it already counts as drawdown.
        """
        peak = starting_balance
        max_drawdown = 0.0
        max_drawdown_percent = 0.0

        for point in equity_curve:
            if point.balance > peak:
                peak = point.balance
            drawdown = peak - point.balance
            if drawdown > max_drawdown:
                max_drawdown = drawdown
                max_drawdown_percent = drawdown / peak if peak > 0 else 0.0

        return max_drawdown, max_drawdown_percent

    @staticmethod
    def _calculate_sharpe_ratio(pnls: np.ndarray, starting_balance: float) -> float:
        """Per-trade Sharpe of returns on starting capital, scaled by sqrt(n)."""
        if len(pnls) == 0 or starting_balance <= 0:
            return 0.0

        returns = pnls / starting_balance
        std_return = float(np.std(returns))
        if std_return < STD_EPSILON:
            return 0.0

        return float(np.mean(returns)) / std_return * math.sqrt(len(returns))

    @staticmethod
    def _calculate_streaks(pnls: np.ndarray) -> Tuple[int, int]:
        max_wins = max_losses = 0
        current_wins = current_losses = 0

        for pnl in pnls:
            if pnl > 0:
                current_wins += 1
                current_losses = 0
                max_wins = max(max_wins, current_wins)
            else:
                current_losses += 1
                current_wins = 0
                max_losses = max(max_losses, current_losses)

        return max_wins, max_losses


def calculate_metrics(
    trades: Sequence[Any],
    equity_curve: Sequence[EquityPoint],
    starting_balance: float
) -> PerformanceMetrics:
    """Functional alias for MetricsCalculator.calculate_all_metrics."""
    return MetricsCalculator.calculate_all_metrics(trades, equity_curve, starting_balance)


def calculate_drawdown_curve(
    equity_curve: Sequence[EquityPoint],
    starting_balance: float
) -> List[DrawdownPoint]:
    """Fractional drawdown at every equity point, peak seeded at the starting balance."""
    curve = []
    peak = starting_balance

    for point in equity_curve:
        if point.balance > peak:
            peak = point.balance
        drawdown = (peak - point.balance) / peak if peak > 0 else 0.0
        curve.append(DrawdownPoint(timestamp=point.timestamp, drawdown=drawdown))

    return curve
