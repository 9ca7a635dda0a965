"""
Chromosome model for the genetic strategy optimizer.

A chromosome is the six strategy genes plus its fitness on the training
and validation data. Fitness is a two-state value (Unevaluated or
Evaluated) rather than a nullable number, so an unevaluated individual
can never be ranked by accident.

Every chromosome that reaches simulation goes through ``repair``, which
rounds genes to their canonical precision, clamps them to bounds and
enforces the price ordering constraints:

    entry_threshold <= max_entry_price - 0.01
    stop_loss < entry_threshold - 0.05
    profit_target >= max_entry_price
"""

from dataclasses import dataclass, fields, replace
from typing import ClassVar, Dict, Mapping, Optional, Union

import numpy as np

from polyevolve.common.errors import ConfigurationError
from polyevolve.common.schemas import (
    DEFAULT_BOUNDS,
    ENTRY_GAP,
    GENE_NAMES,
    GENE_PRECISION,
    STOP_GAP,
    ParameterBounds,
    StrategyConfig,
)
from polyevolve.services.backtester.metrics import PerformanceMetrics


# Stop-loss lands one cent further below the entry gap when lowered
STOP_REPAIR_OFFSET = STOP_GAP + 0.01

MAX_REPAIR_PASSES = 3
_TOLERANCE = 1e-9


@dataclass(frozen=True)
class Genes:
    """The six optimizable strategy parameters."""
    entry_threshold: float
    max_entry_price: float
    stop_loss: float
    max_spread: float
    time_window_ms: float
    profit_target: float

    @classmethod
    def from_dict(cls, values: Mapping[str, float]) -> "Genes":
        return cls(**{name: values[name] for name in GENE_NAMES})

    @classmethod
    def from_array(cls, values: np.ndarray) -> "Genes":
        return cls(**{name: float(value) for name, value in zip(GENE_NAMES, values)})

    def as_dict(self) -> Dict[str, float]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def as_array(self) -> np.ndarray:
        return np.array([getattr(self, name) for name in GENE_NAMES], dtype=float)

    def with_values(self, **values: float) -> "Genes":
        return replace(self, **values)


@dataclass(frozen=True)
class Unevaluated:
    """Fitness has not been computed."""
    is_evaluated: ClassVar[bool] = False


@dataclass(frozen=True)
class Evaluated:
    """Fitness and the metrics it was computed from."""
    fitness: float
    metrics: PerformanceMetrics
    is_evaluated: ClassVar[bool] = True


UNEVALUATED = Unevaluated()

FitnessState = Union[Unevaluated, Evaluated]


@dataclass(frozen=True)
class Chromosome:
    """Candidate strategy with its training and validation evaluations."""
    genes: Genes
    evaluation: FitnessState = UNEVALUATED
    validation: FitnessState = UNEVALUATED

    @property
    def is_evaluated(self) -> bool:
        return self.evaluation.is_evaluated

    @property
    def is_validated(self) -> bool:
        return self.validation.is_evaluated

    @property
    def fitness(self) -> float:
        """Training fitness; raises if the chromosome has not been evaluated."""
        if not isinstance(self.evaluation, Evaluated):
            raise ConfigurationError("Chromosome has not been evaluated")
        return self.evaluation.fitness

    @property
    def metrics(self) -> PerformanceMetrics:
        if not isinstance(self.evaluation, Evaluated):
            raise ConfigurationError("Chromosome has not been evaluated")
        return self.evaluation.metrics

    @property
    def validation_fitness(self) -> float:
        if not isinstance(self.validation, Evaluated):
            raise ConfigurationError("Chromosome has not been validated")
        return self.validation.fitness

    @property
    def validation_metrics(self) -> PerformanceMetrics:
        if not isinstance(self.validation, Evaluated):
            raise ConfigurationError("Chromosome has not been validated")
        return self.validation.metrics

    @property
    def sort_key(self) -> float:
        """Training fitness, with unevaluated chromosomes ranked last."""
        if isinstance(self.evaluation, Evaluated):
            return self.evaluation.fitness
        return float("-inf")

    def with_evaluation(self, evaluation: FitnessState) -> "Chromosome":
        return replace(self, evaluation=evaluation)

    def with_validation(self, validation: FitnessState) -> "Chromosome":
        return replace(self, validation=validation)


def _round_gene(name: str, value: float) -> float:
    digits = GENE_PRECISION[name]
    if digits == 0:
        return int(round(value))
    return round(value, digits)


def _fit_gene(name: str, value: float, bounds: ParameterBounds) -> float:
    """Round to the gene's precision, then clamp onto that grid inside its bounds."""
    return bounds.for_gene(name).clamp(_round_gene(name, value), GENE_PRECISION[name])


def _repair_pass(values: Dict[str, float], bounds: ParameterBounds) -> Dict[str, float]:
    v = {name: _fit_gene(name, values[name], bounds) for name in GENE_NAMES}

    # max_entry_price must sit at least one cent above entry_threshold
    if v["entry_threshold"] - (v["max_entry_price"] - ENTRY_GAP) > _TOLERANCE:
        v["max_entry_price"] = _fit_gene("max_entry_price", v["entry_threshold"] + ENTRY_GAP, bounds)
        if v["entry_threshold"] - (v["max_entry_price"] - ENTRY_GAP) > _TOLERANCE:
            v["entry_threshold"] = _fit_gene("entry_threshold", v["max_entry_price"] - ENTRY_GAP, bounds)

    if v["stop_loss"] - (v["entry_threshold"] - STOP_GAP) > -_TOLERANCE:
        v["stop_loss"] = _fit_gene("stop_loss", v["entry_threshold"] - STOP_REPAIR_OFFSET, bounds)

    if v["max_entry_price"] - v["profit_target"] > _TOLERANCE:
        v["profit_target"] = _fit_gene("profit_target", v["max_entry_price"], bounds)

    return v


def repair(chromosome: Chromosome, bounds: ParameterBounds = DEFAULT_BOUNDS) -> Chromosome:
    """
    Round, clamp and constrain the genes of a chromosome.

    Deterministic and idempotent: repairing a repaired chromosome returns
    equal genes. The returned chromosome is unevaluated whenever its genes
    changed; otherwise the input is returned as is.

    Args:
        chromosome: Chromosome to repair
        bounds: Gene bounds

    Returns:
        Repaired chromosome
    """
    values = chromosome.genes.as_dict()
    for _ in range(MAX_REPAIR_PASSES):
        repaired = _repair_pass(values, bounds)
        if repaired == values:
            break
        values = repaired

    genes = Genes.from_dict(values)
    if genes == chromosome.genes:
        return chromosome
    return Chromosome(genes=genes)


def satisfies_constraints(genes: Genes) -> bool:
    """Check the price ordering constraints and a positive time window."""
    return (
        genes.entry_threshold <= genes.max_entry_price - ENTRY_GAP + _TOLERANCE
        and genes.stop_loss < genes.entry_threshold - STOP_GAP - _TOLERANCE
        and genes.profit_target >= genes.max_entry_price - _TOLERANCE
        and genes.time_window_ms > 0
    )


def random_chromosome(rng: np.random.Generator, bounds: ParameterBounds = DEFAULT_BOUNDS) -> Chromosome:
    """Sample every gene uniformly inside its bounds, then repair."""
    values = {name: float(rng.uniform(gene.min, gene.max)) for name, gene in bounds.items()}
    return repair(Chromosome(genes=Genes.from_dict(values)), bounds)


def create_chromosome(
    genes: Optional[Mapping[str, float]] = None,
    bounds: ParameterBounds = DEFAULT_BOUNDS
) -> Chromosome:
    """Build a repaired chromosome from partial genes; missing genes take the bounds midpoint."""
    genes = genes or {}
    unknown = set(genes) - set(GENE_NAMES)
    if unknown:
        raise ConfigurationError(f"Unknown genes: {sorted(unknown)}")

    values = {
        name: float(genes[name]) if name in genes else gene.midpoint
        for name, gene in bounds.items()
    }
    return repair(Chromosome(genes=Genes.from_dict(values)), bounds)


def clone_chromosome(chromosome: Chromosome) -> Chromosome:
    """Copy the genes and drop both evaluations."""
    return Chromosome(genes=chromosome.genes)


def chromosome_to_config(chromosome: Chromosome, base_config: Optional[StrategyConfig] = None) -> StrategyConfig:
    """Apply the chromosome's genes to a strategy configuration."""
    base_config = base_config or StrategyConfig()
    genes = chromosome.genes
    return base_config.model_copy(update={
        "entry_threshold": float(genes.entry_threshold),
        "max_entry_price": float(genes.max_entry_price),
        "stop_loss": float(genes.stop_loss),
        "max_spread": float(genes.max_spread),
        "time_window_ms": int(round(genes.time_window_ms)),
        "profit_target": float(genes.profit_target),
    })


def config_to_chromosome(config: StrategyConfig, bounds: ParameterBounds = DEFAULT_BOUNDS) -> Chromosome:
    """Seed a chromosome from an existing strategy configuration."""
    return create_chromosome(config.genes(), bounds)


def genetic_distance(a: Chromosome, b: Chromosome, bounds: ParameterBounds = DEFAULT_BOUNDS) -> float:
    """
    Normalized root-mean-square distance between two chromosomes.

    Each gene difference is divided by its bounds span; genes with a zero
    span contribute nothing. The result is 0 for identical genes and at
    most 1 for genes inside bounds.
    """
    spans = np.array([gene.span for _, gene in bounds.items()], dtype=float)
    diffs = a.genes.as_array() - b.genes.as_array()

    mask = spans > 0
    normalized = np.zeros_like(diffs)
    normalized[mask] = diffs[mask] / spans[mask]

    return float(np.sqrt(np.sum(normalized ** 2) / len(GENE_NAMES)))
