"""
Genetic operators for strategy chromosomes.

Implements the building blocks of the evolution loop:
- Tournament selection
- Blend (BLX-alpha) and uniform crossover
- Gaussian, reset and creep mutation
- Elitism, ranking and population diversity

Every stochastic operator draws from an injected numpy Generator so a run
is reproducible from its seed. Offspring are always repaired and
unevaluated.
"""

import logging
from typing import List, Sequence, Tuple

import numpy as np

from polyevolve.common.errors import SelectionError
from polyevolve.common.schemas import DEFAULT_BOUNDS, GENE_NAMES, ParameterBounds
from .chromosome import Chromosome, Genes, genetic_distance, random_chromosome, repair

logger = logging.getLogger(__name__)

DEFAULT_BLEND_ALPHA = 0.5
DEFAULT_MUTATION_RATE = 0.15
DEFAULT_MUTATION_SIGMA = 0.1
DEFAULT_RESET_PROBABILITY = 0.05
DEFAULT_CREEP_RATE = 0.2
DEFAULT_CREEP_FACTOR = 0.05
DEFAULT_COMBINED_RESET_RATE = 0.02

DIVERSITY_SAMPLE_SIZE = 15
DIVERSITY_MAX_PAIRS = 100


def _spans(bounds: ParameterBounds) -> np.ndarray:
    return np.array([gene.span for _, gene in bounds.items()], dtype=float)


def _offspring(values: np.ndarray, bounds: ParameterBounds) -> Chromosome:
    return repair(Chromosome(genes=Genes.from_array(values)), bounds)


def tournament_select(
    population: Sequence[Chromosome],
    tournament_size: int,
    rng: np.random.Generator
) -> Chromosome:
    """
    Select one parent by tournament.

    Draws ``tournament_size`` contestants with replacement from the
    evaluated chromosomes and returns the fittest; on ties the earliest
    draw wins.

    Raises:
        SelectionError: If no chromosome in the population is evaluated
    """
    evaluated = [c for c in population if c.is_evaluated]
    if not evaluated:
        raise SelectionError("Tournament selection requires at least one evaluated chromosome")

    contestants = rng.integers(0, len(evaluated), size=max(tournament_size, 1))
    best = evaluated[contestants[0]]
    for index in contestants[1:]:
        candidate = evaluated[index]
        if candidate.fitness > best.fitness:
            best = candidate
    return best


def blend_crossover(
    parent1: Chromosome,
    parent2: Chromosome,
    rng: np.random.Generator,
    alpha: float = DEFAULT_BLEND_ALPHA,
    bounds: ParameterBounds = DEFAULT_BOUNDS
) -> Tuple[Chromosome, Chromosome]:
    """
    BLX-alpha crossover.

    For each gene both children are sampled independently and uniformly
    from the parents' interval widened by ``alpha`` times its length on
    each side.
    """
    genes1 = parent1.genes.as_array()
    genes2 = parent2.genes.as_array()
    child1 = np.empty_like(genes1)
    child2 = np.empty_like(genes2)

    for i in range(len(GENE_NAMES)):
        low = min(genes1[i], genes2[i])
        high = max(genes1[i], genes2[i])
        extent = high - low
        lower = low - alpha * extent
        upper = high + alpha * extent

        child1[i] = lower + rng.random() * (upper - lower)
        child2[i] = lower + rng.random() * (upper - lower)

    return _offspring(child1, bounds), _offspring(child2, bounds)


def uniform_crossover(
    parent1: Chromosome,
    parent2: Chromosome,
    rng: np.random.Generator,
    bounds: ParameterBounds = DEFAULT_BOUNDS
) -> Tuple[Chromosome, Chromosome]:
    """Swap each gene between the parents with probability 0.5."""
    genes1 = parent1.genes.as_array()
    genes2 = parent2.genes.as_array()
    swap = rng.random(len(GENE_NAMES)) < 0.5

    child1 = np.where(swap, genes2, genes1)
    child2 = np.where(swap, genes1, genes2)
    return _offspring(child1, bounds), _offspring(child2, bounds)


def gaussian_mutate(
    chromosome: Chromosome,
    rng: np.random.Generator,
    mutation_rate: float = DEFAULT_MUTATION_RATE,
    sigma: float = DEFAULT_MUTATION_SIGMA,
    bounds: ParameterBounds = DEFAULT_BOUNDS
) -> Chromosome:
    """Add zero-mean noise with standard deviation ``sigma`` times the gene span to each gene with probability ``mutation_rate``."""
    values = chromosome.genes.as_array()
    spans = _spans(bounds)

    for i in range(len(values)):
        if rng.random() < mutation_rate:
            values[i] += rng.standard_normal() * sigma * spans[i]

    return _offspring(values, bounds)


def reset_mutate(
    chromosome: Chromosome,
    rng: np.random.Generator,
    probability: float = DEFAULT_RESET_PROBABILITY,
    bounds: ParameterBounds = DEFAULT_BOUNDS
) -> Chromosome:
    """Replace each gene with a uniform draw from its bounds with the given probability."""
    values = chromosome.genes.as_array()

    for i, (_, gene) in enumerate(bounds.items()):
        if rng.random() < probability:
            values[i] = gene.min + rng.random() * gene.span

    return _offspring(values, bounds)


def creep_mutate(
    chromosome: Chromosome,
    rng: np.random.Generator,
    mutation_rate: float = DEFAULT_CREEP_RATE,
    creep_factor: float = DEFAULT_CREEP_FACTOR,
    bounds: ParameterBounds = DEFAULT_BOUNDS
) -> Chromosome:
    """Nudge genes by at most ``creep_factor`` of their span for fine tuning."""
    values = chromosome.genes.as_array()
    spans = _spans(bounds)

    for i in range(len(values)):
        if rng.random() < mutation_rate:
            values[i] += (rng.random() - 0.5) * 2 * creep_factor * spans[i]

    return _offspring(values, bounds)


def combined_mutate(
    chromosome: Chromosome,
    rng: np.random.Generator,
    mutation_rate: float = DEFAULT_MUTATION_RATE,
    reset_rate: float = DEFAULT_COMBINED_RESET_RATE,
    bounds: ParameterBounds = DEFAULT_BOUNDS
) -> Chromosome:
    """Gaussian mutation followed by a low-probability reset."""
    mutated = gaussian_mutate(chromosome, rng, mutation_rate, bounds=bounds)
    return reset_mutate(mutated, rng, reset_rate, bounds=bounds)


def sort_by_fitness(population: Sequence[Chromosome]) -> List[Chromosome]:
    """Sort by training fitness, best first; unevaluated last; stable on ties."""
    return sorted(population, key=lambda c: c.sort_key, reverse=True)


def get_elite(population: Sequence[Chromosome], elite_count: int) -> List[Chromosome]:
    """
    Top chromosomes by training fitness.

    Elites keep their evaluation so they are not re-simulated in the next
    generation; chromosomes are immutable so sharing them is safe.
    """
    if elite_count <= 0:
        return []
    return sort_by_fitness(population)[:elite_count]


def initialize_population(
    size: int,
    rng: np.random.Generator,
    bounds: ParameterBounds = DEFAULT_BOUNDS
) -> List[Chromosome]:
    """Create ``size`` random repaired chromosomes."""
    return [random_chromosome(rng, bounds) for _ in range(size)]


def calculate_diversity(population: Sequence[Chromosome], bounds: ParameterBounds = DEFAULT_BOUNDS) -> float:
    """
    Mean pairwise genetic distance.

    Only the first individuals of the population are sampled and the
    number of pairs is capped, keeping the cost constant per generation.
    """
    if len(population) < 2:
        return 0.0

    sample_size = min(len(population), DIVERSITY_SAMPLE_SIZE)
    max_pairs = min(DIVERSITY_MAX_PAIRS, sample_size * (sample_size - 1) // 2)

    total = 0.0
    pairs = 0
    for i in range(sample_size):
        for j in range(i + 1, sample_size):
            if pairs >= max_pairs:
                break
            total += genetic_distance(population[i], population[j], bounds)
            pairs += 1
        if pairs >= max_pairs:
            break

    return total / pairs if pairs > 0 else 0.0
