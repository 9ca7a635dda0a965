"""
Validation methods for strategy optimization.

This module provides the techniques used to assess whether an optimized
strategy generalizes beyond the data it was trained on:

1. Chronological train/validation split and candidate validation
2. Overfitting detection and robustness scoring from in-sample and
   out-of-sample metrics
3. Walk-forward analysis: repeated optimization over rolling or anchored
   windows of markets
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from polyevolve.common.errors import ConfigurationError
from polyevolve.common.schemas import (
    DEFAULT_BOUNDS,
    GeneticConfig,
    HistoricalMarket,
    ParameterBounds,
    StrategyConfig,
)
from polyevolve.services.backtester.metrics import PerformanceMetrics
from .algorithms.chromosome import Chromosome, Evaluated, Genes
from .executor import FitnessFunction, evaluate_genes
from .fitness import calculate_fitness

logger = logging.getLogger(__name__)

# Divergence component weights
PNL_DROP_WEIGHT = 40.0
WIN_RATE_DROP_WEIGHT = 30.0
SHARPE_DROP_WEIGHT = 30.0

OVERFIT_DIVERGENCE = 30.0
OVERFIT_PNL_DROP = 0.50


@dataclass
class DatasetSplit:
    """Chronological split of markets into training and validation sets."""
    training: List[HistoricalMarket]
    validation: List[HistoricalMarket]

    @property
    def training_range(self) -> Optional[tuple]:
        if not self.training:
            return None
        return self.training[0].start_time, self.training[-1].end_time

    @property
    def validation_range(self) -> Optional[tuple]:
        if not self.validation:
            return None
        return self.validation[0].start_time, self.validation[-1].end_time


def split_dataset(markets: Sequence[HistoricalMarket], train_ratio: float = 0.7) -> DatasetSplit:
    """
    Split markets by start time: the first ``floor(n * train_ratio)``
    markets train, the rest validate.
    """
    if not 0 < train_ratio <= 1:
        raise ConfigurationError(f"train_ratio must be in (0, 1], got {train_ratio}")

    ordered = sorted(markets, key=lambda m: m.start_time)
    split_index = math.floor(len(ordered) * train_ratio)
    split = DatasetSplit(training=ordered[:split_index], validation=ordered[split_index:])

    logger.debug(f"Dataset split: {len(split.training)} training, {len(split.validation)} validation markets")
    return split


def evaluate_chromosome(
    chromosome: Chromosome,
    markets: Sequence[HistoricalMarket],
    base_config: Optional[StrategyConfig] = None,
    fitness_function: FitnessFunction = calculate_fitness
) -> Evaluated:
    """Backtest a chromosome on the given markets and score it."""
    return evaluate_genes(chromosome.genes, markets, base_config, fitness_function).to_evaluation()


def evaluate_on_training(
    chromosome: Chromosome,
    training_markets: Sequence[HistoricalMarket],
    base_config: Optional[StrategyConfig] = None,
    fitness_function: FitnessFunction = calculate_fitness
) -> Chromosome:
    """Return the chromosome with its in-sample evaluation set."""
    return chromosome.with_evaluation(
        evaluate_chromosome(chromosome, training_markets, base_config, fitness_function)
    )


def evaluate_on_validation(
    chromosome: Chromosome,
    validation_markets: Sequence[HistoricalMarket],
    base_config: Optional[StrategyConfig] = None,
    fitness_function: FitnessFunction = calculate_fitness
) -> Chromosome:
    """Return the chromosome with its out-of-sample evaluation set."""
    return chromosome.with_validation(
        evaluate_chromosome(chromosome, validation_markets, base_config, fitness_function)
    )


def validate_candidates(
    candidates: Sequence[Chromosome],
    validation_markets: Sequence[HistoricalMarket],
    base_config: Optional[StrategyConfig] = None,
    fitness_function: FitnessFunction = calculate_fitness
) -> List[Chromosome]:
    """
    Evaluate every candidate on the validation markets.

    With no validation markets there is nothing to measure, so candidates
    are returned unvalidated.
    """
    if not validation_markets:
        logger.warning("No validation markets; candidates left unvalidated")
        return list(candidates)

    return [
        evaluate_on_validation(c, validation_markets, base_config, fitness_function)
        for c in candidates
    ]


def select_best_strategy(candidates: Sequence[Chromosome]) -> Chromosome:
    """
    Pick the candidate with the highest validation fitness.

    Falls back to training fitness only when no candidate was validated.
    Ties go to the earliest candidate.

    Raises:
        ConfigurationError: If there are no candidates
    """
    if not candidates:
        raise ConfigurationError("Cannot select a strategy from an empty candidate list")

    validated = [c for c in candidates if c.is_validated]
    if validated:
        best = validated[0]
        for candidate in validated[1:]:
            if candidate.validation_fitness > best.validation_fitness:
                best = candidate
        return best

    logger.warning("No validated candidates; selecting by training fitness")
    best = candidates[0]
    for candidate in candidates[1:]:
        if candidate.sort_key > best.sort_key:
            best = candidate
    return best


@dataclass(frozen=True)
class OverfitAnalysis:
    """Gap between in-sample and out-of-sample performance."""
    is_overfit: bool
    divergence_score: float
    pnl_drop: float
    pnl_drop_percent: float
    win_rate_drop: float
    sharpe_drop: float
    recommendation: str


def _recommendation(divergence: float) -> str:
    if divergence < 15:
        return "Strategy generalizes well. Safe to use with live trading."
    if divergence < 30:
        return "Moderate divergence. Consider reducing position sizes or tightening parameters."
    if divergence < 50:
        return "Significant overfitting detected. Re-optimize with different parameters or more data."
    return "Severe overfitting. Strategy is not robust. Do not use for live trading."


def detect_overfitting(in_sample: PerformanceMetrics, out_of_sample: PerformanceMetrics) -> OverfitAnalysis:
    """
    Compare in-sample and out-of-sample metrics.

    Divergence weights the relative PnL drop by 40, the win rate drop by
    30 and the relative Sharpe drop by 30; only degradations count. A
    strategy is overfit when divergence exceeds 30 or it loses more than
    half of its in-sample PnL.
    """
    pnl_drop = in_sample.total_pnl - out_of_sample.total_pnl
    pnl_drop_percent = pnl_drop / in_sample.total_pnl if in_sample.total_pnl > 0 else 0.0
    win_rate_drop = in_sample.win_rate - out_of_sample.win_rate
    sharpe_drop = in_sample.sharpe_ratio - out_of_sample.sharpe_ratio

    divergence = (
        PNL_DROP_WEIGHT * max(0.0, pnl_drop_percent)
        + WIN_RATE_DROP_WEIGHT * max(0.0, win_rate_drop)
    )
    if in_sample.sharpe_ratio > 0:
        divergence += SHARPE_DROP_WEIGHT * max(0.0, sharpe_drop / in_sample.sharpe_ratio)

    return OverfitAnalysis(
        is_overfit=divergence > OVERFIT_DIVERGENCE or pnl_drop_percent > OVERFIT_PNL_DROP,
        divergence_score=divergence,
        pnl_drop=pnl_drop,
        pnl_drop_percent=pnl_drop_percent,
        win_rate_drop=win_rate_drop,
        sharpe_drop=sharpe_drop,
        recommendation=_recommendation(divergence),
    )


def calculate_robustness_score(in_sample: PerformanceMetrics, out_of_sample: PerformanceMetrics) -> float:
    """0-100 score; 100 minus twice the divergence, plus out-of-sample bonuses."""
    analysis = detect_overfitting(in_sample, out_of_sample)
    score = min(max(100 - 2 * analysis.divergence_score, 0.0), 100.0)

    if out_of_sample.total_pnl > 0:
        score += 10
    if out_of_sample.sharpe_ratio > 0:
        score += 10
    if out_of_sample.win_rate > 0.5:
        score += 5

    return min(score, 100.0)


@dataclass
class WalkForwardConfig:
    """Configuration for walk-forward analysis, in numbers of markets."""
    in_sample_markets: int  # Markets per optimization window
    out_sample_markets: int  # Markets per validation window
    step_markets: int  # Markets the window advances by
    anchored: bool = False  # If True, in-sample always starts at the first market

    def __post_init__(self):
        if self.in_sample_markets < 1 or self.out_sample_markets < 1 or self.step_markets < 1:
            raise ConfigurationError("Walk-forward window sizes and step must be at least 1")


@dataclass
class WalkForwardWindow:
    """Represents a single walk-forward window."""
    window_id: int
    in_sample: List[HistoricalMarket]
    out_sample: List[HistoricalMarket]
    best_genes: Optional[Genes] = None
    in_sample_fitness: Optional[float] = None
    out_sample_fitness: Optional[float] = None
    in_sample_metrics: Optional[PerformanceMetrics] = None
    out_sample_metrics: Optional[PerformanceMetrics] = None
    overfit: Optional[OverfitAnalysis] = None
    robustness_score: Optional[float] = None

    @property
    def in_sample_start(self) -> int:
        return self.in_sample[0].start_time

    @property
    def out_sample_end(self) -> int:
        return self.out_sample[-1].end_time


class WalkForwardAnalysis:
    """
    Walk-forward analysis for the genetic optimizer.

    Sorts markets by start time and cuts them into consecutive windows of
    in-sample (training) and out-of-sample (validation) markets. Each
    window runs a full genetic optimization on its in-sample markets and
    validates the candidates on the markets that follow.

    Example:
        Markets: 100
        In-sample: 40, Out-sample: 20, Step: 20

        Window 1: Train[1-40],  Test[41-60]
        Window 2: Train[21-60], Test[61-80]
        Window 3: Train[41-80], Test[81-100]
    """

    def __init__(
        self,
        config: WalkForwardConfig,
        genetic_config: Optional[GeneticConfig] = None,
        bounds: ParameterBounds = DEFAULT_BOUNDS,
        base_config: Optional[StrategyConfig] = None,
        num_workers: Optional[int] = 1,
        fitness_function: FitnessFunction = calculate_fitness,
        random_seed: Optional[int] = None
    ):
        """
        Initialize walk-forward analysis.

        Args:
            config: Walk-forward window configuration
            genetic_config: Genetic algorithm settings used in every window
            bounds: Gene bounds
            base_config: Non-gene strategy settings
            num_workers: Number of parallel workers per optimization
            fitness_function: Objective to maximize
            random_seed: Seed from which every window draws an independent generator
        """
        self.config = config
        self.genetic_config = genetic_config or GeneticConfig()
        self.bounds = bounds
        self.base_config = base_config
        self.num_workers = num_workers
        self.fitness_function = fitness_function
        self.random_seed = random_seed

        self.windows: List[WalkForwardWindow] = []
        self.results: Dict[str, Any] = {}

    def create_windows(self, markets: Sequence[HistoricalMarket]) -> List[WalkForwardWindow]:
        """
        Cut the chronologically sorted markets into walk-forward windows.

        Args:
            markets: All historical markets

        Returns:
            List of walk-forward windows
        """
        ordered = sorted(markets, key=lambda m: m.start_time)
        windows = []
        window_id = 1

        in_start = 0
        in_end = self.config.in_sample_markets

        while in_end + self.config.out_sample_markets <= len(ordered):
            windows.append(WalkForwardWindow(
                window_id=window_id,
                in_sample=ordered[in_start:in_end],
                out_sample=ordered[in_end:in_end + self.config.out_sample_markets],
            ))

            if self.config.anchored:
                in_end += self.config.step_markets
            else:
                in_start += self.config.step_markets
                in_end = in_start + self.config.in_sample_markets

            window_id += 1

        logger.info(f"Created {len(windows)} walk-forward windows")
        self.windows = windows
        return windows

    def run_window(self, window: WalkForwardWindow, rng: np.random.Generator) -> WalkForwardWindow:
        """
        Run optimization and validation for a single window.

        Args:
            window: Walk-forward window to process
            rng: Random generator for this window's optimization

        Returns:
            Window with results populated
        """
        from polyevolve.services.optimizer.engine import GeneticOptimizationEngine

        logger.info(
            f"Processing window {window.window_id}: "
            f"{len(window.in_sample)} in-sample, {len(window.out_sample)} out-of-sample markets"
        )

        optimizer = GeneticOptimizationEngine(
            markets=window.in_sample,
            validation_markets=window.out_sample,
            genetic_config=self.genetic_config,
            bounds=self.bounds,
            base_config=self.base_config,
            rng=rng,
            num_workers=self.num_workers,
            fitness_function=self.fitness_function,
        )
        result = optimizer.run()
        best = result.best_strategy

        window.best_genes = best.genes
        window.in_sample_fitness = best.fitness
        window.in_sample_metrics = best.metrics

        if best.is_validated:
            window.out_sample_fitness = best.validation_fitness
            window.out_sample_metrics = best.validation_metrics
            window.overfit = detect_overfitting(best.metrics, best.validation_metrics)
            window.robustness_score = calculate_robustness_score(best.metrics, best.validation_metrics)

            logger.info(
                f"Window {window.window_id}: in-sample fitness={window.in_sample_fitness:.4f}, "
                f"out-of-sample fitness={window.out_sample_fitness:.4f}, "
                f"robustness={window.robustness_score:.1f}"
            )
        else:
            logger.warning(f"Window {window.window_id}: no out-of-sample result")

        return window

    def run(self, markets: Sequence[HistoricalMarket]) -> Dict[str, Any]:
        """
        Run walk-forward analysis across all windows.

        Args:
            markets: All historical markets

        Returns:
            Analysis results with aggregate metrics
        """
        windows = self.create_windows(markets)
        if not windows:
            raise ConfigurationError("No walk-forward windows could be created with given configuration")

        seeds = np.random.SeedSequence(self.random_seed).spawn(len(windows))
        for window, seed in zip(windows, seeds):
            self.run_window(window, np.random.default_rng(seed))

        valid_windows = [w for w in windows if w.out_sample_fitness is not None]
        if not valid_windows:
            logger.warning("No valid walk-forward windows with out-of-sample results")
            self.results = {
                'total_windows': len(windows),
                'valid_windows': 0,
                'windows': windows
            }
            return self.results

        in_sample_scores = [w.in_sample_fitness for w in valid_windows]
        out_sample_scores = [w.out_sample_fitness for w in valid_windows]
        avg_in = sum(in_sample_scores) / len(in_sample_scores)
        avg_out = sum(out_sample_scores) / len(out_sample_scores)

        self.results = {
            'total_windows': len(windows),
            'valid_windows': len(valid_windows),
            'avg_in_sample_fitness': avg_in,
            'avg_out_sample_fitness': avg_out,
            'fitness_degradation': avg_in - avg_out,
            'fitness_stability': self._calculate_stability(out_sample_scores),
            'avg_robustness_score': sum(w.robustness_score for w in valid_windows) / len(valid_windows),
            'overfit_fraction': sum(1 for w in valid_windows if w.overfit.is_overfit) / len(valid_windows),
            'total_out_sample_pnl': sum(w.out_sample_metrics.total_pnl for w in valid_windows),
            'windows': windows
        }

        logger.info(
            f"Walk-forward analysis complete: "
            f"{len(valid_windows)}/{len(windows)} valid windows, "
            f"Avg out-sample fitness={avg_out:.4f}, "
            f"Avg robustness={self.results['avg_robustness_score']:.1f}"
        )

        return self.results

    def _calculate_stability(self, scores: List[float]) -> float:
        """
        Stability of out-of-sample fitness across windows.

        Returns:
            1 / (1 + coefficient of variation), in (0, 1]; 1.0 for fewer than two windows
        """
        if len(scores) < 2:
            return 1.0

        std = float(np.std(scores))
        mean = float(np.mean(scores))
        if mean == 0:
            return 0.0

        return 1.0 / (1.0 + std / abs(mean))
