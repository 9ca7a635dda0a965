"""Tests for the grid search optimizer."""

import pytest

from polyevolve.common.errors import ConfigurationError
from polyevolve.common.schemas import StrategyConfig
from polyevolve.services.backtester.metrics import PerformanceMetrics
from polyevolve.services.optimizer.algorithms.base import ParameterRange, ParameterRanges
from polyevolve.services.optimizer.algorithms.grid_search import (
    GridSearchOptimizer,
    GridSearchResult,
    compare_configs,
    find_optimal_config,
    generate_parameter_combinations,
    get_top_results,
)


def result(**metrics):
    return GridSearchResult(config=StrategyConfig(), metrics=PerformanceMetrics(**metrics))


class TestParameterRange:
    """Test range expansion."""

    def test_values_include_upper_bound(self):
        assert ParameterRange(0.80, 0.96, 0.04).values() == [0.8, 0.84, 0.88, 0.92, 0.96]

    def test_values_rounded(self):
        assert ParameterRange(0.92, 0.99, 0.01).values()[-1] == 0.99
        assert len(ParameterRange(0.92, 0.99, 0.01).values()) == 8

    def test_single_value(self):
        assert ParameterRange(0.5, 0.5, 0.1).values() == [0.5]

    @pytest.mark.parametrize("args", [(0.9, 0.8, 0.01), (0.8, 0.9, 0.0), (0.8, 0.9, -0.1)])
    def test_invalid_range(self, args):
        with pytest.raises(ConfigurationError):
            ParameterRange(*args)


class TestCombinations:
    """Test grid expansion and pruning."""

    def test_quick_grid(self):
        base = StrategyConfig()

        combinations = generate_parameter_combinations(ParameterRanges.quick(), base)

        assert len(combinations) == 20
        assert ParameterRanges.quick().count_combinations(base) == 20
        assert all(c.max_entry_price == base.max_entry_price for c in combinations)

    def test_invalid_combinations_pruned(self):
        base = StrategyConfig(max_entry_price=0.90)
        ranges = ParameterRanges(
            entry_threshold=ParameterRange(0.80, 0.96, 0.04),
            stop_loss=ParameterRange(0.70, 0.90, 0.10),
        )

        combinations = generate_parameter_combinations(ranges, base)

        assert ranges.count_combinations(base) == 15
        assert all(c.entry_threshold <= c.max_entry_price for c in combinations)
        assert all(c.stop_loss < c.entry_threshold for c in combinations)
        assert len(combinations) == 5

    def test_time_window_is_integer(self):
        ranges = ParameterRanges(time_window_ms=ParameterRange(300000, 900000, 300000))

        combinations = generate_parameter_combinations(ranges)

        assert [c.time_window_ms for c in combinations] == [300000, 600000, 900000]
        assert all(isinstance(c.time_window_ms, int) for c in combinations)

    def test_default_grid_size(self):
        base = StrategyConfig()

        assert ParameterRanges.default().count_combinations(base) == 14 * 8 * 11 * 4 * 12


class TestRanking:
    """Test result ranking helpers."""

    def test_top_results(self):
        results = [result(total_pnl=1.0), result(total_pnl=5.0), result(total_pnl=3.0)]

        top = get_top_results(results, n=2)

        assert [r.metrics.total_pnl for r in top] == [5.0, 3.0]
        assert get_top_results(results, metric="total_pnl", ascending=True)[0].metrics.total_pnl == 1.0

    def test_find_optimal_config(self):
        results = [result(win_rate=0.6), result(win_rate=0.8), result(win_rate=0.8)]

        assert find_optimal_config(results, "win_rate") is results[1]
        assert find_optimal_config([]) is None

    def test_unknown_metric(self):
        with pytest.raises(ConfigurationError):
            get_top_results([result(), result()], metric="alpha")


class TestGridSearchOptimizer:
    """Test the optimizer end to end."""

    @pytest.fixture
    def ranges(self):
        return ParameterRanges(entry_threshold=ParameterRange(0.80, 0.96, 0.04))

    def test_run_ranks_by_pnl(self, dataset, strategy_config, ranges):
        optimizer = GridSearchOptimizer(ranges, strategy_config, num_workers=1)

        results = optimizer.run(dataset)

        assert len(results) == 4
        assert [r.rank for r in results] == [1, 2, 3, 4]
        pnls = [r.metrics.total_pnl for r in results]
        assert pnls == sorted(pnls, reverse=True)
        assert optimizer.get_progress() == 1.0

    def test_progress_callback(self, dataset, strategy_config, ranges):
        reports = []
        optimizer = GridSearchOptimizer(ranges, strategy_config, num_workers=1, progress_callback=reports.append)

        optimizer.run(dataset)

        assert [p.current for p in reports] == [1, 2, 3, 4]
        assert all(p.total == 4 for p in reports)
        assert reports[-1].best_so_far is not None

    def test_max_iterations(self, dataset, strategy_config, ranges):
        optimizer = GridSearchOptimizer(ranges, strategy_config, max_iterations=2, num_workers=1)

        results = optimizer.run(dataset)

        assert len(results) == 2
        assert optimizer.total_combinations == 2

    def test_matches_single_backtest(self, dataset, strategy_config):
        ranges = ParameterRanges(entry_threshold=ParameterRange(0.85, 0.85, 0.01))

        results = GridSearchOptimizer(ranges, strategy_config, num_workers=1).run(dataset)
        (_, direct), _ = compare_configs(dataset, strategy_config, strategy_config)

        assert results[0].metrics == direct.metrics

    def test_compare_configs_labels(self, dataset, strategy_config):
        other = strategy_config.model_copy(update={"entry_threshold": 0.90})

        compared = compare_configs(dataset, strategy_config, other, labels=("base", "strict"))

        assert [label for label, _ in compared] == ["base", "strict"]
        assert compared[1][1].config.entry_threshold == 0.90
