"""
Configuration management using Pydantic settings.

This module provides typed configuration classes that load from environment
variables with validation and defaults for the backtester, the genetic
optimizer and logging.
"""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .schemas import GeneticConfig, StrategyConfig


MS_PER_MINUTE = 60 * 1000


class StrategySettings(BaseSettings):
    """Strategy parameters and account settings for a single backtest."""

    model_config = SettingsConfigDict(env_file=None, extra='ignore', populate_by_name=True)

    entry_threshold: float = Field(default=0.95, validation_alias="BACKTEST_ENTRY_THRESHOLD")
    max_entry_price: float = Field(default=0.98, validation_alias="BACKTEST_MAX_ENTRY_PRICE")
    stop_loss: float = Field(default=0.80, validation_alias="BACKTEST_STOP_LOSS")
    profit_target: float = Field(default=0.99, validation_alias="BACKTEST_PROFIT_TARGET")
    max_spread: float = Field(default=0.03, validation_alias="BACKTEST_MAX_SPREAD")
    time_window_mins: float = Field(default=20, validation_alias="BACKTEST_TIME_WINDOW_MINS")
    starting_balance: float = Field(default=100.0, validation_alias="BACKTEST_STARTING_BALANCE")
    slippage: float = Field(default=0.001, validation_alias="BACKTEST_SLIPPAGE")
    compound_limit: float = Field(default=0.0, validation_alias="BACKTEST_COMPOUND_LIMIT")
    base_balance: float = Field(default=10.0, validation_alias="BACKTEST_BASE_BALANCE")

    @field_validator("entry_threshold", "max_entry_price", "stop_loss", "profit_target")
    @classmethod
    def validate_price(cls, v):
        """Validate prices lie inside the binary market range."""
        if not 0 <= v <= 1:
            raise ValueError("Prices must be between 0 and 1")
        return v

    @field_validator("time_window_mins")
    @classmethod
    def validate_time_window(cls, v):
        if v <= 0:
            raise ValueError("BACKTEST_TIME_WINDOW_MINS must be positive")
        return v

    @field_validator("starting_balance", "slippage", "base_balance")
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("Balances and slippage must be non-negative")
        return v

    @property
    def time_window_ms(self) -> int:
        return int(round(self.time_window_mins * MS_PER_MINUTE))

    def to_strategy_config(self, **overrides) -> StrategyConfig:
        """Build the engine configuration, applying keyword overrides last."""
        values = {
            "entry_threshold": self.entry_threshold,
            "max_entry_price": self.max_entry_price,
            "stop_loss": self.stop_loss,
            "max_spread": self.max_spread,
            "time_window_ms": self.time_window_ms,
            "profit_target": self.profit_target,
            "starting_balance": self.starting_balance,
            "slippage": self.slippage,
            "compound_limit": self.compound_limit,
            "base_balance": self.base_balance,
        }
        values.update(overrides)
        return StrategyConfig(**values)


class GeneticSettings(BaseSettings):
    """Genetic optimizer configuration."""

    model_config = SettingsConfigDict(env_file=None, extra='ignore', populate_by_name=True)

    population_size: int = Field(default=50, validation_alias="GA_POPULATION")
    generations: int = Field(default=100, validation_alias="GA_GENERATIONS")
    elite_count: int = Field(default=5, validation_alias="GA_ELITE")
    mutation_rate: float = Field(default=0.15, validation_alias="GA_MUTATION_RATE")
    crossover_rate: float = Field(default=0.8, validation_alias="GA_CROSSOVER_RATE")
    tournament_size: int = Field(default=5, validation_alias="GA_TOURNAMENT_SIZE")
    training_split: float = Field(default=0.7, validation_alias="GA_TRAIN_SPLIT")
    random_seed: Optional[int] = Field(default=None, validation_alias="GA_RANDOM_SEED")

    @field_validator("population_size")
    @classmethod
    def validate_population(cls, v):
        if v < 2:
            raise ValueError("GA_POPULATION must be at least 2")
        return v

    @field_validator("mutation_rate", "crossover_rate")
    @classmethod
    def validate_rate(cls, v):
        if not 0 <= v <= 1:
            raise ValueError("Rates must be between 0 and 1")
        return v

    @field_validator("training_split")
    @classmethod
    def validate_split(cls, v):
        if not 0 < v <= 1:
            raise ValueError("GA_TRAIN_SPLIT must be in (0, 1]")
        return v

    def to_genetic_config(self, **overrides) -> GeneticConfig:
        """Build the genetic algorithm configuration, applying keyword overrides last."""
        values = {
            "population_size": self.population_size,
            "generations": self.generations,
            "elite_count": self.elite_count,
            "mutation_rate": self.mutation_rate,
            "crossover_rate": self.crossover_rate,
            "tournament_size": self.tournament_size,
            "training_split": self.training_split,
        }
        values.update(overrides)
        return GeneticConfig(**values)


class OptimizerSettings(BaseSettings):
    """Optimizer execution configuration."""

    model_config = SettingsConfigDict(env_file=None, extra='ignore', populate_by_name=True)

    num_workers: int = Field(default=1, validation_alias="OPTIMIZER_NUM_WORKERS")

    @field_validator("num_workers")
    @classmethod
    def validate_num_workers(cls, v):
        if v < 1 or v > 64:
            raise ValueError("OPTIMIZER_NUM_WORKERS must be between 1 and 64")
        return v


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(env_file=None, extra='ignore', populate_by_name=True)

    level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    format: str = Field(default="json", validation_alias="LOG_FORMAT")

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of: {valid_levels}")
        return v.upper()

    @field_validator("format")
    @classmethod
    def validate_log_format(cls, v):
        if v.lower() not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be 'json' or 'text'")
        return v.lower()


class PolyevolveSettings(BaseSettings):
    """Main configuration class that combines all settings."""

    model_config = SettingsConfigDict(env_file=None, extra='ignore', case_sensitive=False)

    strategy: StrategySettings = Field(default_factory=StrategySettings)
    genetic: GeneticSettings = Field(default_factory=GeneticSettings)
    optimizer: OptimizerSettings = Field(default_factory=OptimizerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# Global settings instance
settings = PolyevolveSettings()


def get_settings() -> PolyevolveSettings:
    """Get the global settings instance."""
    return settings


def reload_settings() -> PolyevolveSettings:
    """Reload settings from environment (useful for testing)."""
    global settings
    settings = PolyevolveSettings()
    return settings
