"""Shared fixtures: builders for historical markets and strategy configs."""

from typing import Iterable, List, Optional, Tuple

import pytest

from polyevolve.common.schemas import HistoricalMarket, PriceTick, Side, StrategyConfig


T0 = 1_700_000_000_000
MINUTE = 60_000
HOUR = 60 * MINUTE

# (minutes after market start, best bid, best ask)
TickRow = Tuple[float, float, float]


def build_market(
    market_id: str = "m1",
    start: int = T0,
    duration: int = HOUR,
    outcome: Optional[Side] = Side.UP,
    up: Iterable[TickRow] = (),
    down: Iterable[TickRow] = (),
) -> HistoricalMarket:
    """Build a market whose ticks are given in minutes after its start."""
    up_token = f"{market_id}-up"
    down_token = f"{market_id}-down"

    def ticks(token_id: str, rows: Iterable[TickRow]) -> List[PriceTick]:
        return [
            PriceTick(
                timestamp=start + int(minutes * MINUTE),
                token_id=token_id,
                market_id=market_id,
                best_bid=bid,
                best_ask=ask,
            )
            for minutes, bid, ask in rows
        ]

    return HistoricalMarket(
        id=market_id,
        question=f"Will BTC be up in {market_id}?",
        start_time=start,
        end_time=start + duration,
        up_token_id=up_token,
        down_token_id=down_token,
        outcome=outcome,
        up_ticks=ticks(up_token, up),
        down_ticks=ticks(down_token, down),
    )


def build_dataset(count: int = 10) -> List[HistoricalMarket]:
    """
    Consecutive one-hour markets with a late favourite on the UP side.

    Two out of three markets rally to 0.99 and resolve UP; the rest fade
    to 0.50 and resolve DOWN.
    """
    markets = []
    for i in range(count):
        winner = i % 3 != 2
        up = []
        for step, minute in enumerate(range(36, 60, 2)):
            if minute < 44:
                bid = 0.80 + 0.01 * step
            elif winner:
                bid = min(0.84 + 0.015 * (minute - 44), 0.99)
            else:
                bid = max(0.84 - 0.03 * (minute - 44), 0.50)
            up.append((minute, round(bid, 3), round(min(bid + 0.01, 1.0), 3)))
        markets.append(build_market(
            market_id=f"m{i:02d}",
            start=T0 + i * HOUR,
            outcome=Side.UP if winner else Side.DOWN,
            up=up,
        ))
    return markets


@pytest.fixture
def make_market():
    """Factory fixture for single markets."""
    return build_market


@pytest.fixture
def make_dataset():
    """Factory fixture for datasets of consecutive markets."""
    return build_dataset


@pytest.fixture
def dataset() -> List[HistoricalMarket]:
    return build_dataset()


@pytest.fixture
def strategy_config() -> StrategyConfig:
    """Strategy with a wide entry band, no slippage and no compounding."""
    return StrategyConfig(
        entry_threshold=0.85,
        max_entry_price=0.95,
        stop_loss=0.72,
        max_spread=0.05,
        time_window_ms=20 * MINUTE,
        profit_target=0.99,
        starting_balance=100.0,
        slippage=0.0,
        compound_limit=0.0,
        base_balance=10.0,
    )
