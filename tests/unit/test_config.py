"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from polyevolve.common.config import (
    GeneticSettings,
    LoggingSettings,
    OptimizerSettings,
    PolyevolveSettings,
    StrategySettings,
    get_settings,
    reload_settings,
)
from polyevolve.common.schemas import GeneticConfig, StrategyConfig


class TestStrategySettings:
    """Test BACKTEST_* settings."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("BACKTEST_ENTRY_THRESHOLD", raising=False)
        monkeypatch.delenv("BACKTEST_TIME_WINDOW_MINS", raising=False)
        settings = StrategySettings()

        assert settings.entry_threshold == 0.95
        assert settings.time_window_mins == 20
        assert settings.time_window_ms == 1200000

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("BACKTEST_ENTRY_THRESHOLD", "0.9")
        monkeypatch.setenv("BACKTEST_TIME_WINDOW_MINS", "7.5")
        monkeypatch.setenv("BACKTEST_COMPOUND_LIMIT", "250")

        settings = StrategySettings()

        assert settings.entry_threshold == 0.9
        assert settings.time_window_ms == 450000
        assert settings.compound_limit == 250.0

    def test_to_strategy_config(self):
        config = StrategySettings(entry_threshold=0.88).to_strategy_config(slippage=0.0)

        assert isinstance(config, StrategyConfig)
        assert config.entry_threshold == 0.88
        assert config.time_window_ms == 1200000
        assert config.slippage == 0.0

    def test_price_out_of_range(self, monkeypatch):
        monkeypatch.setenv("BACKTEST_STOP_LOSS", "1.5")

        with pytest.raises(ValidationError):
            StrategySettings()

    def test_non_positive_window(self, monkeypatch):
        monkeypatch.setenv("BACKTEST_TIME_WINDOW_MINS", "0")

        with pytest.raises(ValidationError):
            StrategySettings()


class TestGeneticSettings:
    """Test GA_* settings."""

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("GA_POPULATION", "30")
        monkeypatch.setenv("GA_ELITE", "3")
        monkeypatch.setenv("GA_RANDOM_SEED", "17")

        settings = GeneticSettings()

        assert settings.population_size == 30
        assert settings.elite_count == 3
        assert settings.random_seed == 17

    def test_to_genetic_config(self):
        config = GeneticSettings(population_size=12, elite_count=2).to_genetic_config(generations=4)

        assert isinstance(config, GeneticConfig)
        assert config.population_size == 12
        assert config.generations == 4
        assert config.validation_candidates == 10

    def test_elite_larger_than_population(self, monkeypatch):
        monkeypatch.setenv("GA_POPULATION", "4")
        monkeypatch.setenv("GA_ELITE", "5")

        with pytest.raises(ValidationError):
            GeneticSettings().to_genetic_config()

    @pytest.mark.parametrize("name,value", [
        ("GA_POPULATION", "1"),
        ("GA_MUTATION_RATE", "1.5"),
        ("GA_TRAIN_SPLIT", "0"),
    ])
    def test_invalid_values(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)

        with pytest.raises(ValidationError):
            GeneticSettings()


class TestOtherSettings:
    """Test optimizer and logging settings."""

    def test_num_workers_bounds(self, monkeypatch):
        monkeypatch.setenv("OPTIMIZER_NUM_WORKERS", "0")

        with pytest.raises(ValidationError):
            OptimizerSettings()

    def test_log_level_normalized(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("LOG_FORMAT", "TEXT")

        settings = LoggingSettings()

        assert settings.level == "DEBUG"
        assert settings.format == "text"

    def test_invalid_log_level(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "VERBOSE")

        with pytest.raises(ValidationError):
            LoggingSettings()

    def test_reload_settings(self, monkeypatch):
        monkeypatch.setenv("OPTIMIZER_NUM_WORKERS", "3")

        reloaded = reload_settings()

        assert isinstance(reloaded, PolyevolveSettings)
        assert reloaded.optimizer.num_workers == 3
        assert get_settings() is reloaded

        monkeypatch.undo()
        reload_settings()
