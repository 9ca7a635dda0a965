"""Optimization algorithms for strategy parameter search."""

from .base import BaseOptimizer, ParameterRange, ParameterRanges
from .chromosome import (
    Chromosome,
    Evaluated,
    FitnessState,
    Genes,
    UNEVALUATED,
    Unevaluated,
    chromosome_to_config,
    clone_chromosome,
    config_to_chromosome,
    create_chromosome,
    genetic_distance,
    random_chromosome,
    repair,
    satisfies_constraints,
)
from .genetic import (
    blend_crossover,
    calculate_diversity,
    combined_mutate,
    creep_mutate,
    gaussian_mutate,
    get_elite,
    initialize_population,
    reset_mutate,
    sort_by_fitness,
    tournament_select,
    uniform_crossover,
)
from .grid_search import (
    GridSearchOptimizer,
    GridSearchProgress,
    GridSearchResult,
    compare_configs,
    find_optimal_config,
    generate_parameter_combinations,
    get_top_results,
)

__all__ = [
    'BaseOptimizer',
    'ParameterRange',
    'ParameterRanges',
    'Chromosome',
    'Evaluated',
    'FitnessState',
    'Genes',
    'UNEVALUATED',
    'Unevaluated',
    'chromosome_to_config',
    'clone_chromosome',
    'config_to_chromosome',
    'create_chromosome',
    'genetic_distance',
    'random_chromosome',
    'repair',
    'satisfies_constraints',
    'blend_crossover',
    'calculate_diversity',
    'combined_mutate',
    'creep_mutate',
    'gaussian_mutate',
    'get_elite',
    'initialize_population',
    'reset_mutate',
    'sort_by_fitness',
    'tournament_select',
    'uniform_crossover',
    'GridSearchOptimizer',
    'GridSearchProgress',
    'GridSearchResult',
    'compare_configs',
    'find_optimal_config',
    'generate_parameter_combinations',
    'get_top_results',
]
