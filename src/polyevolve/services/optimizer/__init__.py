"""Optimizer Service - Genetic Strategy Optimization."""

from .engine import (
    GenerationStats,
    GeneticOptimizationEngine,
    GeneticOptimizationResult,
    GeneticProgress,
    run_genetic_optimization,
)
from .executor import ParallelExecutor, TaskResult
from .validation import (
    OverfitAnalysis,
    WalkForwardAnalysis,
    WalkForwardConfig,
    WalkForwardWindow,
    calculate_robustness_score,
    detect_overfitting,
    split_dataset,
)

__all__ = [
    'GenerationStats',
    'GeneticOptimizationEngine',
    'GeneticOptimizationResult',
    'GeneticProgress',
    'run_genetic_optimization',
    'ParallelExecutor',
    'TaskResult',
    'OverfitAnalysis',
    'WalkForwardAnalysis',
    'WalkForwardConfig',
    'WalkForwardWindow',
    'calculate_robustness_score',
    'detect_overfitting',
    'split_dataset',
]
