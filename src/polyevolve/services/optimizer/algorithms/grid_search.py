"""Grid search optimizer - exhaustive search over a strategy parameter grid."""

import itertools
import logging
from dataclasses import dataclass, fields
from typing import Callable, Iterator, List, Optional, Sequence, Tuple

from polyevolve.common.errors import ConfigurationError
from polyevolve.common.schemas import HistoricalMarket, StrategyConfig
from polyevolve.services.backtester.engine import BacktestResult, run_backtest
from polyevolve.services.backtester.metrics import PerformanceMetrics
from ..executor import ParallelExecutor
from .base import BaseOptimizer, ParameterRanges
from .chromosome import Genes

logger = logging.getLogger(__name__)

BATCH_SIZE = 100

_METRIC_NAMES = {f.name for f in fields(PerformanceMetrics)}


@dataclass
class GridSearchResult:
    """Result from backtesting one grid point."""
    config: StrategyConfig
    metrics: PerformanceMetrics
    rank: int = 0


@dataclass(frozen=True)
class GridSearchProgress:
    """Snapshot passed to grid search progress callbacks."""
    current: int
    total: int
    config: StrategyConfig
    best_so_far: Optional[GridSearchResult]


def generate_parameter_combinations(
    ranges: ParameterRanges,
    base_config: Optional[StrategyConfig] = None
) -> List[StrategyConfig]:
    """
    Expand the grid into strategy configurations.

    Combinations where the entry threshold exceeds the max entry price, or
    the stop-loss is not below the entry threshold, are skipped.
    """
    base_config = base_config or StrategyConfig()
    expanded = ranges.expand_ranges(base_config)

    combinations = []
    for entry_threshold, max_entry_price, stop_loss, max_spread, time_window_ms in itertools.product(
        expanded["entry_threshold"],
        expanded["max_entry_price"],
        expanded["stop_loss"],
        expanded["max_spread"],
        expanded["time_window_ms"],
    ):
        if entry_threshold > max_entry_price:
            continue
        if stop_loss >= entry_threshold:
            continue

        combinations.append(base_config.model_copy(update={
            "entry_threshold": entry_threshold,
            "max_entry_price": max_entry_price,
            "stop_loss": stop_loss,
            "max_spread": max_spread,
            "time_window_ms": int(round(time_window_ms)),
        }))

    return combinations


def _metric_value(result: GridSearchResult, metric: str) -> float:
    if metric not in _METRIC_NAMES:
        raise ConfigurationError(f"Unknown metric: {metric}")
    return getattr(result.metrics, metric)


def get_top_results(
    results: Sequence[GridSearchResult],
    metric: str = "total_pnl",
    n: int = 10,
    ascending: bool = False
) -> List[GridSearchResult]:
    """Top ``n`` results ordered by a metric."""
    ordered = sorted(results, key=lambda r: _metric_value(r, metric), reverse=not ascending)
    return ordered[:n]


def find_optimal_config(
    results: Sequence[GridSearchResult],
    metric: str = "total_pnl"
) -> Optional[GridSearchResult]:
    """Result with the highest value of a metric; earliest wins ties."""
    best = None
    for result in results:
        if best is None or _metric_value(result, metric) > _metric_value(best, metric):
            best = result
    return best


def compare_configs(
    markets: Sequence[HistoricalMarket],
    config1: StrategyConfig,
    config2: StrategyConfig,
    labels: Tuple[str, str] = ("Config 1", "Config 2")
) -> List[Tuple[str, BacktestResult]]:
    """Backtest two configurations on the same markets."""
    return [
        (labels[0], run_backtest(config1, markets)),
        (labels[1], run_backtest(config2, markets)),
    ]


class GridSearchOptimizer(BaseOptimizer):
    """
    Grid Search optimization algorithm.

    Exhaustively backtests all valid combinations in the parameter grid
    and ranks them by total PnL.
    Best for:
    - Small parameter spaces
    - Ensuring comprehensive coverage
    - Sanity-checking genetic optimization results
    """

    def __init__(
        self,
        ranges: Optional[ParameterRanges] = None,
        base_config: Optional[StrategyConfig] = None,
        max_iterations: Optional[int] = None,
        num_workers: Optional[int] = 1,
        progress_callback: Optional[Callable[[GridSearchProgress], None]] = None
    ):
        """
        Initialize grid search optimizer.

        Args:
            ranges: Parameter grid (None for the default one-hour market grid)
            base_config: Values for genes without a range and non-gene settings
            max_iterations: Maximum number of combinations to evaluate
            num_workers: Number of parallel workers
            progress_callback: Called after every evaluated combination
        """
        super().__init__(max_iterations)
        self.ranges = ranges or ParameterRanges.default()
        self.base_config = base_config or StrategyConfig()
        self.num_workers = num_workers
        self.progress_callback = progress_callback

        self.combinations = generate_parameter_combinations(self.ranges, self.base_config)
        self.total_combinations = len(self.combinations)
        if max_iterations is not None:
            self.total_combinations = min(self.total_combinations, max_iterations)

    def generate_candidates(self) -> Iterator[StrategyConfig]:
        """
        Generate all valid combinations in grid order.

        Yields:
            Strategy configurations
        """
        for config in self.combinations:
            if self.should_stop():
                break
            self.iteration += 1
            yield config

    def get_progress(self) -> float:
        """
        Get optimization progress as percentage.

        Returns:
            Progress from 0.0 to 1.0
        """
        if self.total_combinations == 0:
            return 1.0
        return min(1.0, self.iteration / self.total_combinations)

    def run(self, markets: Sequence[HistoricalMarket]) -> List[GridSearchResult]:
        """
        Backtest every combination and rank by total PnL.

        Args:
            markets: Historical markets to backtest on

        Returns:
            Results sorted by total PnL descending, rank 1 being the best
        """
        self.iteration = 0
        logger.info(f"Testing {self.total_combinations} parameter combinations")

        results: List[GridSearchResult] = []
        best: Optional[GridSearchResult] = None

        with ParallelExecutor(self.num_workers, markets, self.base_config) as executor:
            candidates = self.generate_candidates()
            while True:
                batch = list(itertools.islice(candidates, BATCH_SIZE))
                if not batch:
                    break

                task_results = executor.execute_batch([self._genes_for(config) for config in batch])
                for config, task_result in zip(batch, task_results):
                    result = GridSearchResult(config=config, metrics=task_result.metrics)
                    results.append(result)
                    if best is None or result.metrics.total_pnl > best.metrics.total_pnl:
                        best = result
                    self._report(len(results), config, best)

        results.sort(key=lambda r: r.metrics.total_pnl, reverse=True)
        for rank, result in enumerate(results, start=1):
            result.rank = rank

        if best is not None:
            logger.info(
                f"Grid search complete: best total PnL={best.metrics.total_pnl:.4f} "
                f"over {len(results)} combinations"
            )
        return results

    @staticmethod
    def _genes_for(config: StrategyConfig) -> Genes:
        return Genes.from_dict(config.genes())

    def _report(self, current: int, config: StrategyConfig, best: Optional[GridSearchResult]):
        if self.progress_callback is None:
            return
        try:
            self.progress_callback(GridSearchProgress(
                current=current, total=self.total_combinations, config=config, best_so_far=best
            ))
        except Exception as e:
            logger.error(f"Progress callback failed: {e}")
