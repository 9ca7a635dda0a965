"""
Genetic optimization engine that coordinates the evolution process.

The engine moves through four phases:
1. Initialization: split markets chronologically and evaluate a random population
2. Evolution: elitism, tournament selection, blend crossover and mutation
   until the generation budget is spent, fitness stops improving, or the
   run is cancelled
3. Validation: re-evaluate the top candidates on the held-out markets
4. Complete: pick the candidate with the best out-of-sample fitness
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import numpy as np
import pandas as pd

from polyevolve.common.config import get_settings
from polyevolve.common.logging import log_execution_time, log_system_event
from polyevolve.common.schemas import (
    DEFAULT_BOUNDS,
    GeneticConfig,
    HistoricalMarket,
    OptimizationPhase,
    ParameterBounds,
    StrategyConfig,
)
from polyevolve.services.backtester.metrics import PerformanceMetrics
from .algorithms.chromosome import Chromosome, chromosome_to_config, clone_chromosome
from .algorithms.genetic import (
    blend_crossover,
    calculate_diversity,
    combined_mutate,
    get_elite,
    initialize_population,
    sort_by_fitness,
    tournament_select,
)
from .executor import FitnessFunction, ParallelExecutor
from .fitness import calculate_fitness
from .validation import (
    OverfitAnalysis,
    calculate_robustness_score,
    detect_overfitting,
    select_best_strategy,
    split_dataset,
    validate_candidates,
)

logger = logging.getLogger(__name__)

MS_PER_MINUTE = 60 * 1000


@dataclass(frozen=True)
class GenerationStats:
    """Population statistics recorded once per generation."""
    generation: int
    best_fitness: float
    avg_fitness: float
    worst_fitness: float
    diversity: float
    best_chromosome: Chromosome
    evaluations: int


@dataclass(frozen=True)
class GeneticProgress:
    """Snapshot passed to progress callbacks."""
    generation: int
    total_generations: int
    best_fitness: float
    avg_fitness: float
    phase: OptimizationPhase
    evaluations: int


ProgressCallback = Callable[[GeneticProgress], None]


@dataclass
class GeneticOptimizationResult:
    """Outcome of a genetic optimization run."""
    best_strategy: Chromosome
    top_strategies: List[Chromosome]
    in_sample_metrics: PerformanceMetrics
    out_of_sample_metrics: Optional[PerformanceMetrics]
    generation_history: List[GenerationStats]
    total_generations: int
    total_evaluations: int
    converged_early: bool
    cancelled: bool
    config: GeneticConfig
    execution_time_ms: float

    def best_config(self, base_config: Optional[StrategyConfig] = None) -> StrategyConfig:
        """The best genes applied to a strategy configuration."""
        return chromosome_to_config(self.best_strategy, base_config)

    def overfit_analysis(self) -> Optional[OverfitAnalysis]:
        if self.out_of_sample_metrics is None:
            return None
        return detect_overfitting(self.in_sample_metrics, self.out_of_sample_metrics)

    def robustness_score(self) -> Optional[float]:
        if self.out_of_sample_metrics is None:
            return None
        return calculate_robustness_score(self.in_sample_metrics, self.out_of_sample_metrics)

    def history_dataframe(self) -> pd.DataFrame:
        """Generation statistics as a DataFrame indexed by generation."""
        columns = ['best_fitness', 'avg_fitness', 'worst_fitness', 'diversity', 'evaluations']
        df = pd.DataFrame(
            [
                {
                    'generation': s.generation,
                    'best_fitness': s.best_fitness,
                    'avg_fitness': s.avg_fitness,
                    'worst_fitness': s.worst_fitness,
                    'diversity': s.diversity,
                    'evaluations': s.evaluations,
                }
                for s in self.generation_history
            ],
            columns=['generation'] + columns
        )
        return df.set_index('generation')

    def to_env(self) -> str:
        """Render the best genes as BACKTEST_* assignments readable by StrategySettings."""
        genes = self.best_strategy.genes
        lines = [
            f"BACKTEST_ENTRY_THRESHOLD={genes.entry_threshold}",
            f"BACKTEST_MAX_ENTRY_PRICE={genes.max_entry_price}",
            f"BACKTEST_STOP_LOSS={genes.stop_loss}",
            f"BACKTEST_MAX_SPREAD={genes.max_spread}",
            f"BACKTEST_TIME_WINDOW_MINS={int(round(genes.time_window_ms / MS_PER_MINUTE))}",
            f"BACKTEST_PROFIT_TARGET={genes.profit_target}",
        ]
        return "\n".join(lines) + "\n"


class GeneticOptimizationEngine:
    """
    Genetic optimization engine.

    Coordinates the optimization process:
    1. Splits markets into training and validation sets by start time
    2. Evolves a population of strategy chromosomes on the training set
    3. Tracks per-generation statistics, convergence and cancellation
    4. Validates the top candidates and selects the best one

    All randomness comes from one numpy Generator, so a run with a fixed
    seed and a fixed clock is reproducible bit for bit.
    """

    def __init__(
        self,
        markets: Sequence[HistoricalMarket],
        genetic_config: Optional[GeneticConfig] = None,
        bounds: ParameterBounds = DEFAULT_BOUNDS,
        base_config: Optional[StrategyConfig] = None,
        random_seed: Optional[int] = None,
        rng: Optional[np.random.Generator] = None,
        num_workers: Optional[int] = None,
        fitness_function: FitnessFunction = calculate_fitness,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[threading.Event] = None,
        validation_markets: Optional[Sequence[HistoricalMarket]] = None,
        clock: Callable[[], float] = time.perf_counter
    ):
        """
        Initialize genetic optimization engine.

        Args:
            markets: Historical markets; split into training and validation
                unless ``validation_markets`` is given, in which case all train
            genetic_config: Genetic algorithm settings (None reads GA_* settings)
            bounds: Gene bounds
            base_config: Non-gene strategy settings (None reads BACKTEST_* settings)
            random_seed: Seed for the random generator (ignored if ``rng`` is given)
            rng: Random generator to draw from
            num_workers: Number of parallel evaluation workers (None reads OPTIMIZER_NUM_WORKERS)
            fitness_function: Objective to maximize; must be picklable when num_workers > 1
            progress_callback: Called at phase transitions and after each generation
            cancel_event: When set, evolution stops before the next generation
            validation_markets: Explicit out-of-sample markets
            clock: Time source in seconds for elapsed time
        """
        settings = get_settings()

        self.markets = list(markets)
        self.genetic_config = genetic_config or settings.genetic.to_genetic_config()
        self.bounds = bounds
        self.base_config = base_config or settings.strategy.to_strategy_config()
        if rng is None:
            if random_seed is None:
                random_seed = settings.genetic.random_seed
            rng = np.random.default_rng(random_seed)
        self.rng = rng
        self.num_workers = num_workers
        self.fitness_function = fitness_function
        self.progress_callback = progress_callback
        self.cancel_event = cancel_event
        self.validation_markets = list(validation_markets) if validation_markets is not None else None
        self.clock = clock

        self.total_evaluations = 0
        self.history: List[GenerationStats] = []

    def run(self) -> GeneticOptimizationResult:
        """
        Run the optimization.

        Returns:
            GeneticOptimizationResult with the selected strategy
        """
        with log_execution_time(logger, "Genetic optimization"):
            return self._run()

    def _run(self) -> GeneticOptimizationResult:
        config = self.genetic_config
        start_time = self.clock()
        self.total_evaluations = 0
        self.history = []

        if self.validation_markets is None:
            split = split_dataset(self.markets, config.training_split)
            training, validation = split.training, split.validation
        else:
            training, validation = self.markets, self.validation_markets

        log_system_event(
            logger, "optimization_started",
            training_markets=len(training),
            validation_markets=len(validation),
            population_size=config.population_size,
            generations=config.generations,
        )
        self._report(0, 0.0, 0.0, OptimizationPhase.INITIALIZATION)

        converged = False
        cancelled = False
        best_so_far = float("-inf")
        stagnant_generations = 0

        with ParallelExecutor(
            self.num_workers, training, self.base_config, self.fitness_function
        ) as executor:
            population = initialize_population(config.population_size, self.rng, self.bounds)
            population = self._evaluate(executor, population)

            for generation in range(config.generations):
                population = sort_by_fitness(population)
                stats = self._record_generation(generation, population)

                logger.info(
                    f"Generation {generation + 1}/{config.generations}: "
                    f"best={stats.best_fitness:.4f}, avg={stats.avg_fitness:.4f}, "
                    f"diversity={stats.diversity:.4f}"
                )
                self._report(generation + 1, stats.best_fitness, stats.avg_fitness, OptimizationPhase.EVOLUTION)

                if stats.best_fitness > best_so_far + config.convergence_threshold:
                    best_so_far = stats.best_fitness
                    stagnant_generations = 0
                else:
                    stagnant_generations += 1

                if stagnant_generations >= config.convergence_generations:
                    converged = True
                    log_system_event(logger, "converged", generation=generation + 1, best_fitness=stats.best_fitness)
                    break

                if self.cancel_event is not None and self.cancel_event.is_set():
                    cancelled = True
                    log_system_event(logger, "cancelled", generation=generation + 1)
                    break

                population = self._next_generation(executor, population)

        population = sort_by_fitness(population)
        generations_run = len(self.history)
        last = self.history[-1] if self.history else None
        best_fitness = last.best_fitness if last else 0.0
        avg_fitness = last.avg_fitness if last else 0.0

        self._report(generations_run, best_fitness, avg_fitness, OptimizationPhase.VALIDATION)
        candidates = get_elite(population, min(config.validation_candidates, config.population_size))
        validated = validate_candidates(candidates, validation, self.base_config, self.fitness_function)
        best = select_best_strategy(validated)

        out_of_sample = best.validation_metrics if best.is_validated else None
        self._report(generations_run, best_fitness, avg_fitness, OptimizationPhase.COMPLETE)

        result = GeneticOptimizationResult(
            best_strategy=best,
            top_strategies=validated,
            in_sample_metrics=best.metrics,
            out_of_sample_metrics=out_of_sample,
            generation_history=list(self.history),
            total_generations=generations_run,
            total_evaluations=self.total_evaluations,
            converged_early=converged,
            cancelled=cancelled,
            config=config,
            execution_time_ms=(self.clock() - start_time) * 1000,
        )

        log_system_event(
            logger, "optimization_complete",
            generations=generations_run,
            evaluations=self.total_evaluations,
            converged=converged,
            cancelled=cancelled,
            best_fitness=best.fitness,
        )
        return result

    def _evaluate(self, executor: ParallelExecutor, chromosomes: List[Chromosome]) -> List[Chromosome]:
        evaluated = executor.evaluate(chromosomes)
        self.total_evaluations += len(evaluated)
        return evaluated

    def _next_generation(self, executor: ParallelExecutor, population: List[Chromosome]) -> List[Chromosome]:
        """
        Build the next generation.

        Elites are carried over with their existing evaluation and are not
        re-simulated. Offspring are generated in pairs until the population
        is full, evaluated as one batch, and any overflow is trimmed.
        """
        config = self.genetic_config
        elites = get_elite(population, config.elite_count)

        offspring: List[Chromosome] = []
        while len(elites) + len(offspring) < config.population_size:
            parent1 = tournament_select(population, config.tournament_size, self.rng)
            parent2 = tournament_select(population, config.tournament_size, self.rng)

            if self.rng.random() < config.crossover_rate:
                child1, child2 = blend_crossover(parent1, parent2, self.rng, config.blend_alpha, self.bounds)
            else:
                child1, child2 = clone_chromosome(parent1), clone_chromosome(parent2)

            offspring.append(combined_mutate(child1, self.rng, config.mutation_rate, config.reset_rate, self.bounds))
            offspring.append(combined_mutate(child2, self.rng, config.mutation_rate, config.reset_rate, self.bounds))

        offspring = self._evaluate(executor, offspring)
        return (elites + offspring)[:config.population_size]

    def _record_generation(self, generation: int, population: List[Chromosome]) -> GenerationStats:
        fitnesses = [c.fitness for c in population]
        stats = GenerationStats(
            generation=generation,
            best_fitness=fitnesses[0],
            avg_fitness=sum(fitnesses) / len(fitnesses),
            worst_fitness=fitnesses[-1],
            diversity=calculate_diversity(population, self.bounds),
            best_chromosome=population[0],
            evaluations=self.total_evaluations,
        )
        self.history.append(stats)
        return stats

    def _report(self, generation: int, best_fitness: float, avg_fitness: float, phase: OptimizationPhase):
        if self.progress_callback is None:
            return
        progress = GeneticProgress(
            generation=generation,
            total_generations=self.genetic_config.generations,
            best_fitness=best_fitness,
            avg_fitness=avg_fitness,
            phase=phase,
            evaluations=self.total_evaluations,
        )
        try:
            self.progress_callback(progress)
        except Exception as e:
            logger.error(f"Progress callback failed: {e}")


def run_genetic_optimization(
    markets: Sequence[HistoricalMarket],
    genetic_config: Optional[GeneticConfig] = None,
    bounds: ParameterBounds = DEFAULT_BOUNDS,
    base_config: Optional[StrategyConfig] = None,
    **kwargs
) -> GeneticOptimizationResult:
    """Run a genetic optimization with a fresh engine."""
    engine = GeneticOptimizationEngine(
        markets=markets,
        genetic_config=genetic_config,
        bounds=bounds,
        base_config=base_config,
        **kwargs
    )
    return engine.run()
