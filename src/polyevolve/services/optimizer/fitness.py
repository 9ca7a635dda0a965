"""
Fitness functions for strategy optimization.

``calculate_fitness`` is the objective the genetic optimizer maximizes. Hard
floors rank losing, deep-drawdown and thinly traded strategies below every
acceptable one (and still order them among themselves); acceptable
strategies are scored on risk-adjusted return, win rate, capped profit
factor, drawdown, return on capital, losing-streak consistency, trade count
and expectancy.
"""

import math
from dataclasses import dataclass

from polyevolve.services.backtester.metrics import PerformanceMetrics


LOSS_FLOOR = -1000.0
DRAWDOWN_FLOOR = -500.0
TRADE_COUNT_FLOOR = -100.0

MAX_DRAWDOWN_FRACTION = 0.30
MIN_TRADES = 5
PROFIT_FACTOR_CAP = 3.0
FULL_ACTIVITY_TRADES = 20
EXPECTANCY_BONUS_CAP = 15.0


def consistency_bonus(max_consecutive_losses: int) -> float:
    """Bonus for short losing streaks."""
    if max_consecutive_losses <= 3:
        return 10.0
    if max_consecutive_losses <= 5:
        return 5.0
    if max_consecutive_losses <= 7:
        return 2.0
    return 0.0


def calculate_fitness(metrics: PerformanceMetrics) -> float:
    """
    Score a backtest for the optimizer; higher is better.

    Floors are applied before any bonus term:
        total_pnl <= 0              -> -1000 + total_pnl
        max_drawdown_percent > 0.30 -> -500 - (max_drawdown_percent - 0.30) * 100
        total_trades < 5            -> -100 + total_trades * 10

    Args:
        metrics: Performance metrics of a backtest

    Returns:
        Fitness score
    """
    if metrics.total_pnl <= 0:
        return LOSS_FLOOR + metrics.total_pnl
    if metrics.max_drawdown_percent > MAX_DRAWDOWN_FRACTION:
        return DRAWDOWN_FLOOR - (metrics.max_drawdown_percent - MAX_DRAWDOWN_FRACTION) * 100
    if metrics.total_trades < MIN_TRADES:
        return TRADE_COUNT_FLOOR + metrics.total_trades * 10

    expectancy_bonus = (
        min(metrics.expectancy * 10, EXPECTANCY_BONUS_CAP) if metrics.expectancy > 0 else 0.0
    )

    return (
        metrics.sharpe_ratio * 100
        + metrics.win_rate * 10
        + min(metrics.profit_factor, PROFIT_FACTOR_CAP) * 6.67
        - (metrics.max_drawdown_percent / MAX_DRAWDOWN_FRACTION) * 15
        + math.log1p(max(0.0, metrics.return_on_capital)) * 10
        + consistency_bonus(metrics.max_consecutive_losses)
        + min(metrics.total_trades / FULL_ACTIVITY_TRADES, 1.0) * 5
        + expectancy_bonus
    )


def calculate_profit_fitness(metrics: PerformanceMetrics) -> float:
    """Simple alternative objective: PnL penalized by half the absolute drawdown."""
    if metrics.total_trades < 3:
        return TRADE_COUNT_FLOOR
    return metrics.total_pnl - metrics.max_drawdown * 0.5


@dataclass(frozen=True)
class FitnessWeights:
    """Component weights for ``calculate_weighted_fitness``."""
    sharpe: float = 100.0
    win_rate: float = 10.0
    profit_factor: float = 20.0
    drawdown: float = 15.0
    return_on_capital: float = 10.0
    consistency: float = 10.0


DEFAULT_WEIGHTS = FitnessWeights()


def calculate_weighted_fitness(metrics: PerformanceMetrics, weights: FitnessWeights = DEFAULT_WEIGHTS) -> float:
    """
    Weighted objective with an extra consistency term.

    Rejected strategies get flat floors of -1000, -500 and -100. Consistency rewards
    short losing streaks: full weight for at most 3 consecutive losses,
    half weight for at most 5.
    """
    if metrics.total_pnl <= 0:
        return LOSS_FLOOR
    if metrics.max_drawdown_percent > MAX_DRAWDOWN_FRACTION:
        return DRAWDOWN_FLOOR
    if metrics.total_trades < MIN_TRADES:
        return TRADE_COUNT_FLOOR

    if metrics.max_consecutive_losses <= 3:
        consistency = weights.consistency
    elif metrics.max_consecutive_losses <= 5:
        consistency = weights.consistency / 2
    else:
        consistency = 0.0

    return (
        metrics.sharpe_ratio * weights.sharpe
        + metrics.win_rate * weights.win_rate
        + min(metrics.profit_factor, PROFIT_FACTOR_CAP) * (weights.profit_factor / PROFIT_FACTOR_CAP)
        - (metrics.max_drawdown_percent / MAX_DRAWDOWN_FRACTION) * weights.drawdown
        + math.log1p(max(0.0, metrics.return_on_capital)) * weights.return_on_capital
        + consistency
    )


def normalize_score(fitness: float) -> float:
    """Map a fitness to a 0-100 display score."""
    if math.isnan(fitness):
        return 0.0
    return min(max((fitness + 100) / 400 * 100, 0.0), 100.0)


def is_better(fitness_a: float, fitness_b: float) -> bool:
    return fitness_a > fitness_b


def passes_quality_threshold(metrics: PerformanceMetrics) -> bool:
    """Minimum bar for a strategy to be considered for live use."""
    return (
        metrics.total_pnl > 0
        and metrics.max_drawdown_percent <= MAX_DRAWDOWN_FRACTION
        and metrics.total_trades >= MIN_TRADES
        and metrics.win_rate >= 0.40
        and metrics.sharpe_ratio > 0
    )
