"""Base optimizer class and parameter grid definitions."""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, fields
from typing import Dict, Iterator, List, Optional

from polyevolve.common.errors import ConfigurationError
from polyevolve.common.schemas import StrategyConfig


GRID_DECIMALS = 3


@dataclass(frozen=True)
class ParameterRange:
    """Inclusive numeric range sampled every ``step``."""
    min: float
    max: float
    step: float

    def __post_init__(self):
        if self.step <= 0:
            raise ConfigurationError(f"Range step must be positive, got {self.step}")
        if self.min > self.max:
            raise ConfigurationError(f"Range min ({self.min}) must not exceed max ({self.max})")

    def values(self) -> List[float]:
        """
        Expand to explicit values, each rounded to 3 decimal places.

        Values are computed from the step index rather than by repeated
        addition so the upper bound is not lost to float drift.
        """
        count = int(math.floor((self.max - self.min) / self.step + 1e-9)) + 1
        return [round(self.min + i * self.step, GRID_DECIMALS) for i in range(count)]


@dataclass(frozen=True)
class ParameterRanges:
    """
    Definition of the grid search space.

    Each gene can be given a range; genes without one stay fixed at the
    base configuration's value.
    """
    entry_threshold: Optional[ParameterRange] = None
    max_entry_price: Optional[ParameterRange] = None
    stop_loss: Optional[ParameterRange] = None
    max_spread: Optional[ParameterRange] = None
    time_window_ms: Optional[ParameterRange] = None

    @classmethod
    def default(cls) -> "ParameterRanges":
        """Full search space for one-hour markets."""
        return cls(
            entry_threshold=ParameterRange(0.70, 0.96, 0.02),
            max_entry_price=ParameterRange(0.92, 0.99, 0.01),
            stop_loss=ParameterRange(0.30, 0.80, 0.05),
            max_spread=ParameterRange(0.02, 0.08, 0.02),
            time_window_ms=ParameterRange(300000, 3600000, 300000),
        )

    @classmethod
    def quick(cls) -> "ParameterRanges":
        """Small space for fast initial testing."""
        return cls(
            entry_threshold=ParameterRange(0.80, 0.96, 0.04),
            stop_loss=ParameterRange(0.40, 0.70, 0.10),
        )

    @classmethod
    def detailed(cls) -> "ParameterRanges":
        """Fine-grained space; slower but finds better optima."""
        return cls(
            entry_threshold=ParameterRange(0.70, 0.96, 0.02),
            max_entry_price=ParameterRange(0.94, 0.99, 0.01),
            stop_loss=ParameterRange(0.30, 0.80, 0.05),
            max_spread=ParameterRange(0.02, 0.06, 0.02),
            time_window_ms=ParameterRange(120000, 600000, 120000),
        )

    def expand_ranges(self, base_config: StrategyConfig) -> Dict[str, List[float]]:
        """Expand every gene to its list of values, falling back to the base configuration."""
        expanded = {}
        for f in fields(self):
            param_range = getattr(self, f.name)
            if param_range is None:
                expanded[f.name] = [getattr(base_config, f.name)]
            else:
                expanded[f.name] = param_range.values()
        return expanded

    def count_combinations(self, base_config: StrategyConfig) -> int:
        """Count the size of the full grid before constraint pruning."""
        total = 1
        for values in self.expand_ranges(base_config).values():
            total *= len(values)
        return total


class BaseOptimizer(ABC):
    """
    Base class for optimization algorithms.

    All optimizers must implement:
    - generate_candidates(): Yield strategy configurations to test
    """

    def __init__(self, max_iterations: Optional[int] = None):
        """
        Initialize optimizer.

        Args:
            max_iterations: Maximum number of candidates to evaluate (None for unlimited)
        """
        self.max_iterations = max_iterations
        self.iteration = 0

    @abstractmethod
    def generate_candidates(self) -> Iterator[StrategyConfig]:
        """
        Generate strategy configurations to test.

        Must be implemented by subclasses.

        Yields:
            Strategy configurations to evaluate
        """

    def should_stop(self) -> bool:
        """
        Check if optimization should stop.

        Returns:
            True if stopping criteria met
        """
        return self.max_iterations is not None and self.iteration >= self.max_iterations
