"""Market replay backtester."""

from .engine import (
    BacktestEngine,
    BacktestResult,
    BacktestTrade,
    SimulatedPosition,
    merge_ticks,
    run_backtest,
)
from .metrics import (
    DrawdownPoint,
    EquityPoint,
    MetricsCalculator,
    PerformanceMetrics,
    calculate_drawdown_curve,
    calculate_metrics,
)

__all__ = [
    'BacktestEngine',
    'BacktestResult',
    'BacktestTrade',
    'SimulatedPosition',
    'merge_ticks',
    'run_backtest',
    'DrawdownPoint',
    'EquityPoint',
    'MetricsCalculator',
    'PerformanceMetrics',
    'calculate_drawdown_curve',
    'calculate_metrics',
]
