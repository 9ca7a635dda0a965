"""Parallel execution engine for evaluating strategy chromosomes."""

import logging
import multiprocessing as mp
from dataclasses import dataclass
from multiprocessing import Pool
from typing import Callable, List, Optional, Sequence

from polyevolve.common.config import get_settings
from polyevolve.common.schemas import HistoricalMarket, StrategyConfig
from polyevolve.services.backtester.engine import BacktestEngine
from polyevolve.services.backtester.metrics import PerformanceMetrics
from .algorithms.chromosome import Chromosome, Evaluated, Genes, chromosome_to_config
from .fitness import calculate_fitness

logger = logging.getLogger(__name__)

FitnessFunction = Callable[[PerformanceMetrics], float]

# Per-process evaluation context, installed once by the pool initializer
_worker_markets: Sequence[HistoricalMarket] = ()
_worker_base_config: Optional[StrategyConfig] = None
_worker_fitness: FitnessFunction = calculate_fitness


@dataclass(frozen=True)
class TaskResult:
    """Result from evaluating a single chromosome."""
    genes: Genes
    fitness: float
    metrics: PerformanceMetrics

    def to_evaluation(self) -> Evaluated:
        return Evaluated(fitness=self.fitness, metrics=self.metrics)


def evaluate_genes(
    genes: Genes,
    markets: Sequence[HistoricalMarket],
    base_config: Optional[StrategyConfig] = None,
    fitness_function: FitnessFunction = calculate_fitness
) -> TaskResult:
    """
    Backtest one set of genes and score it.

    Evaluation is deterministic and draws no random numbers, so it can
    run in any process and in any order.
    """
    config = chromosome_to_config(Chromosome(genes=genes), base_config)
    result = BacktestEngine(config).run(markets)
    return TaskResult(genes=genes, fitness=fitness_function(result.metrics), metrics=result.metrics)


def _init_worker(markets, base_config, fitness_function):
    global _worker_markets, _worker_base_config, _worker_fitness
    _worker_markets = markets
    _worker_base_config = base_config
    _worker_fitness = fitness_function


def _evaluate_task(genes: Genes) -> TaskResult:
    """Worker entry point; runs in a pool process."""
    return evaluate_genes(genes, _worker_markets, _worker_base_config, _worker_fitness)


class ParallelExecutor:
    """
    Evaluates batches of chromosomes against a fixed list of markets.

    With one worker everything runs in-process. With more, a process pool
    is started whose initializer ships the markets and base configuration
    to each worker once; ``Pool.map`` returns results in task order so the
    outcome does not depend on scheduling.

    Usage:
        with ParallelExecutor(4, markets, base_config) as executor:
            evaluated = executor.evaluate(population)
    """

    def __init__(
        self,
        num_workers: Optional[int] = None,
        markets: Sequence[HistoricalMarket] = (),
        base_config: Optional[StrategyConfig] = None,
        fitness_function: FitnessFunction = calculate_fitness
    ):
        """
        Initialize parallel executor.

        Args:
            num_workers: Number of worker processes (None reads OPTIMIZER_NUM_WORKERS)
            markets: Markets every chromosome is backtested on
            base_config: Non-gene strategy settings (balance, slippage, compounding)
            fitness_function: Maps backtest metrics to a fitness score; must be picklable
        """
        if num_workers is None:
            num_workers = get_settings().optimizer.num_workers
        self.num_workers = max(1, min(num_workers, mp.cpu_count()))
        self.markets = list(markets)
        self.base_config = base_config
        self.fitness_function = fitness_function
        self._pool = None

        logger.debug(f"Initialized ParallelExecutor with {self.num_workers} workers")

    def __enter__(self) -> "ParallelExecutor":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def start(self):
        if self.num_workers > 1 and self._pool is None:
            self._pool = Pool(
                processes=self.num_workers,
                initializer=_init_worker,
                initargs=(self.markets, self.base_config, self.fitness_function),
            )

    def close(self):
        if self._pool is not None:
            self._pool.close()
            self._pool.join()
            self._pool = None

    def execute_batch(self, genes_list: Sequence[Genes]) -> List[TaskResult]:
        """
        Evaluate genes in parallel, preserving input order.

        Falls back to sequential execution when no pool is running.
        """
        if not genes_list:
            return []
        if self._pool is None:
            return self.execute_sequential(genes_list)

        chunksize = max(1, len(genes_list) // (self.num_workers * 4))
        return self._pool.map(_evaluate_task, list(genes_list), chunksize=chunksize)

    def execute_sequential(self, genes_list: Sequence[Genes]) -> List[TaskResult]:
        """Evaluate genes one after another in this process."""
        return [
            evaluate_genes(genes, self.markets, self.base_config, self.fitness_function)
            for genes in genes_list
        ]

    def evaluate(self, chromosomes: Sequence[Chromosome]) -> List[Chromosome]:
        """Return the chromosomes with their training evaluation set, in input order."""
        results = self.execute_batch([c.genes for c in chromosomes])
        return [
            chromosome.with_evaluation(result.to_evaluation())
            for chromosome, result in zip(chromosomes, results)
        ]
