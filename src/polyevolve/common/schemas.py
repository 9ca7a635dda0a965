"""
Pydantic schemas for market data, strategy configuration and search spaces.

This module defines the validated input structures shared by the backtester
and the optimizer: historical binary markets with their price ticks, the
strategy configuration the engine runs, the per-gene bounds of the genetic
search space, and the genetic algorithm configuration.
"""

import math
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# =============================================================================
# Enums and Constants
# =============================================================================

class Side(str, Enum):
    """Outcome side of a binary market."""
    UP = "UP"
    DOWN = "DOWN"


class ExitReason(str, Enum):
    """Why a simulated position was closed."""
    PROFIT_TARGET = "PROFIT_TARGET"
    STOP_LOSS = "STOP_LOSS"
    MARKET_RESOLVED = "MARKET_RESOLVED"
    TIME_EXIT = "TIME_EXIT"


class OptimizationPhase(str, Enum):
    """Phase reported to genetic optimization progress callbacks."""
    INITIALIZATION = "initialization"
    EVOLUTION = "evolution"
    VALIDATION = "validation"
    COMPLETE = "complete"


# Order is significant: chromosomes, bounds and grid ranges iterate genes in it
GENE_NAMES: Tuple[str, ...] = (
    "entry_threshold",
    "max_entry_price",
    "stop_loss",
    "max_spread",
    "time_window_ms",
    "profit_target",
)

# Decimal places per gene; 0 means integer
GENE_PRECISION: Dict[str, int] = {
    "entry_threshold": 2,
    "max_entry_price": 2,
    "stop_loss": 2,
    "max_spread": 3,
    "time_window_ms": 0,
    "profit_target": 2,
}

# Minimum distances between related price genes
ENTRY_GAP = 0.01
STOP_GAP = 0.05

_GRID_TOLERANCE = 1e-9


def grid_floor(value: float, digits: int) -> float:
    """Largest value at ``digits`` decimal places not above ``value``."""
    scale = 10 ** digits
    snapped = math.floor(value * scale + _GRID_TOLERANCE)
    return snapped if digits == 0 else snapped / scale


def grid_ceil(value: float, digits: int) -> float:
    """Smallest value at ``digits`` decimal places not below ``value``."""
    scale = 10 ** digits
    snapped = math.ceil(value * scale - _GRID_TOLERANCE)
    return snapped if digits == 0 else snapped / scale


# =============================================================================
# Base Schemas
# =============================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)


class FrozenSchema(BaseModel):
    """Base schema for immutable inputs."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)


# =============================================================================
# Market Data Schemas
# =============================================================================

class PriceTick(FrozenSchema):
    """Top-of-book snapshot for one outcome token."""

    timestamp: int = Field(..., description="Epoch milliseconds")
    token_id: str
    market_id: str
    best_bid: float = Field(..., ge=0.0, le=1.0)
    best_ask: float = Field(..., ge=0.0, le=1.0)
    mid_price: float = Field(..., ge=0.0, le=1.0)

    @model_validator(mode="before")
    @classmethod
    def fill_mid_price(cls, data: Any) -> Any:
        """Derive the mid price from bid and ask when it is not supplied."""
        if isinstance(data, dict) and data.get("mid_price") is None:
            bid, ask = data.get("best_bid"), data.get("best_ask")
            if bid is not None and ask is not None:
                data = {**data, "mid_price": (float(bid) + float(ask)) / 2}
        return data


class HistoricalMarket(FrozenSchema):
    """
    A completed (or still unresolved) binary UP/DOWN market.

    Each side carries its own tick sequence ordered by timestamp. The
    outcome is None when the resolution is unknown.
    """

    id: str
    question: str = ""
    start_time: int = Field(..., description="Window start, epoch milliseconds")
    end_time: int = Field(..., description="Window end, epoch milliseconds")
    up_token_id: str
    down_token_id: str
    outcome: Optional[Side] = None
    up_ticks: Tuple[PriceTick, ...] = ()
    down_ticks: Tuple[PriceTick, ...] = ()

    @model_validator(mode="after")
    def validate_market(self) -> "HistoricalMarket":
        """Validate the window and that each tick belongs to this market's side."""
        if self.end_time <= self.start_time:
            raise ValueError(f"Market {self.id}: end_time must be after start_time")
        if self.up_token_id == self.down_token_id:
            raise ValueError(f"Market {self.id}: up and down token ids must differ")

        for token_id, ticks in ((self.up_token_id, self.up_ticks), (self.down_token_id, self.down_ticks)):
            previous = None
            for tick in ticks:
                if tick.token_id != token_id or tick.market_id != self.id:
                    raise ValueError(
                        f"Market {self.id}: tick for token {tick.token_id} "
                        f"in market {tick.market_id} does not belong to side {token_id}"
                    )
                if previous is not None and tick.timestamp < previous:
                    raise ValueError(f"Market {self.id}: ticks for {token_id} are not ordered by timestamp")
                previous = tick.timestamp
        return self

    @property
    def price_ticks(self) -> List[PriceTick]:
        """Both sides merged by timestamp, UP before DOWN on equal timestamps."""
        keyed = [
            ((tick.timestamp, side_rank, index), tick)
            for side_rank, ticks in enumerate((self.up_ticks, self.down_ticks))
            for index, tick in enumerate(ticks)
        ]
        keyed.sort(key=lambda item: item[0])
        return [tick for _, tick in keyed]

    def side_for_token(self, token_id: str) -> Optional[Side]:
        """Map a token id to its side, or None for a foreign token."""
        if token_id == self.up_token_id:
            return Side.UP
        if token_id == self.down_token_id:
            return Side.DOWN
        return None


# =============================================================================
# Strategy Schemas
# =============================================================================

class StrategyConfig(BaseSchema):
    """Parameters of the single-position late-entry strategy and its account."""

    entry_threshold: float = Field(default=0.95, gt=0.0, lt=1.0, description="Minimum ask to enter")
    max_entry_price: float = Field(default=0.98, gt=0.0, le=1.0, description="Maximum ask to enter")
    stop_loss: float = Field(default=0.80, ge=0.0, lt=1.0, description="Exit when bid falls to this price")
    max_spread: float = Field(default=0.03, ge=0.0, le=1.0)
    time_window_ms: int = Field(default=20 * 60 * 1000, gt=0, description="Entry window before market end")
    profit_target: float = Field(default=0.99, gt=0.0, le=1.0, description="Exit when bid reaches this price")

    starting_balance: float = Field(default=100.0, ge=0.0)
    slippage: float = Field(default=0.001, ge=0.0, lt=1.0)
    compound_limit: float = Field(default=0.0, description="Balance above which profits are saved; <= 0 disables")
    base_balance: float = Field(default=10.0, ge=0.0, description="Balance restored after saving profits")

    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("end_date")
    @classmethod
    def validate_date_range(cls, v, info):
        """Validate that the end date is after the start date."""
        start = info.data.get("start_date")
        if v is not None and start is not None and v <= start:
            raise ValueError("end_date must be after start_date")
        return v

    def genes(self) -> Dict[str, float]:
        """The six optimizable parameters keyed by gene name."""
        return {name: getattr(self, name) for name in GENE_NAMES}


class GeneBounds(FrozenSchema):
    """Inclusive range for one gene."""

    min: float
    max: float

    @model_validator(mode="after")
    def validate_order(self) -> "GeneBounds":
        if self.min > self.max:
            raise ValueError(f"Gene bounds min ({self.min}) must not exceed max ({self.max})")
        return self

    @property
    def span(self) -> float:
        return self.max - self.min

    @property
    def midpoint(self) -> float:
        return (self.min + self.max) / 2

    def grid_range(self, digits: int) -> Tuple[float, float]:
        """The lowest and highest values inside the bounds at ``digits`` decimal places."""
        return grid_ceil(self.min, digits), grid_floor(self.max, digits)

    def clamp(self, value: float, digits: int) -> float:
        """Clamp onto the ``digits`` decimal grid inside the bounds."""
        low, high = self.grid_range(digits)
        return min(max(value, low), high)


class ParameterBounds(FrozenSchema):
    """
    Search space of the genetic optimizer.

    Defaults are tuned for one-hour markets. Bounds are checked for
    feasibility on each gene's precision grid: every chromosome repaired
    inside them must be able to satisfy the price ordering constraints.
    """

    entry_threshold: GeneBounds = Field(default_factory=lambda: GeneBounds(min=0.70, max=0.96))
    max_entry_price: GeneBounds = Field(default_factory=lambda: GeneBounds(min=0.92, max=0.99))
    stop_loss: GeneBounds = Field(default_factory=lambda: GeneBounds(min=0.30, max=0.80))
    max_spread: GeneBounds = Field(default_factory=lambda: GeneBounds(min=0.02, max=0.08))
    time_window_ms: GeneBounds = Field(default_factory=lambda: GeneBounds(min=300000, max=3600000))
    profit_target: GeneBounds = Field(default_factory=lambda: GeneBounds(min=0.98, max=0.99))

    @model_validator(mode="after")
    def validate_feasible(self) -> "ParameterBounds":
        if self.time_window_ms.min <= 0:
            raise ValueError("time_window_ms bounds must be positive")

        grid = {}
        for name in GENE_NAMES:
            digits = GENE_PRECISION[name]
            low, high = getattr(self, name).grid_range(digits)
            if low > high:
                raise ValueError(f"{name} bounds contain no value with {digits} decimal places")
            grid[name] = (low, high)

        if grid["entry_threshold"][0] + ENTRY_GAP > grid["max_entry_price"][1] + _GRID_TOLERANCE:
            raise ValueError("entry_threshold.min must leave room below max_entry_price.max")
        if grid["stop_loss"][0] >= grid["entry_threshold"][0] - STOP_GAP - _GRID_TOLERANCE:
            raise ValueError("stop_loss.min must be below entry_threshold.min - 0.05")
        if grid["profit_target"][1] < grid["max_entry_price"][1] - _GRID_TOLERANCE:
            raise ValueError("profit_target.max must be at least max_entry_price.max")
        return self

    def for_gene(self, name: str) -> GeneBounds:
        if name not in GENE_NAMES:
            raise KeyError(f"Unknown gene: {name}")
        return getattr(self, name)

    def items(self) -> List[Tuple[str, GeneBounds]]:
        return [(name, getattr(self, name)) for name in GENE_NAMES]


DEFAULT_BOUNDS = ParameterBounds()


class GeneticConfig(FrozenSchema):
    """Genetic algorithm configuration."""

    population_size: int = Field(default=50, ge=2)
    generations: int = Field(default=100, ge=1)
    elite_count: int = Field(default=5, ge=0)
    mutation_rate: float = Field(default=0.15, ge=0.0, le=1.0)
    crossover_rate: float = Field(default=0.8, ge=0.0, le=1.0)
    tournament_size: int = Field(default=5, ge=1)
    convergence_threshold: float = Field(default=0.001, ge=0.0)
    convergence_generations: int = Field(default=10, ge=1)
    training_split: float = Field(default=0.7, gt=0.0, le=1.0)
    validation_candidates: int = Field(default=10, ge=1)
    blend_alpha: float = Field(default=0.5, ge=0.0)
    reset_rate: float = Field(default=0.02, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def validate_elite(self) -> "GeneticConfig":
        if self.elite_count > self.population_size:
            raise ValueError(
                f"elite_count ({self.elite_count}) cannot exceed population_size ({self.population_size})"
            )
        return self
