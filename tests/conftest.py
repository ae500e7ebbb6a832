"""Pytest configuration for shared fixtures."""

from __future__ import annotations

from datetime import time
from pathlib import Path

import pytest
from loguru import logger

from market_engine.core.config import EngineConfig, MarketHours


@pytest.fixture(scope="session", autouse=True)
def silence_loguru_handlers() -> None:
    """Route Loguru output to a no-op sink during tests to avoid closed stream errors."""
    logger.remove()
    logger.add(lambda _: None, catch=True)
    yield


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def always_open() -> MarketHours:
    return MarketHours(open=time(0, 0), close=time(23, 59, 59), weekend_closed=False)


@pytest.fixture
def fast_config(tmp_path: Path, always_open: MarketHours) -> EngineConfig:
    """Engine config with sub-second cadences so async tests finish quickly."""
    return EngineConfig(
        tick_interval=0.01,
        push_interval=0.02,
        poll_interval=0.05,
        quote_ttl=5.0,
        chain_ttl=5.0,
        cache_sweep_interval=0.05,
        reconnect_base_delay=0.01,
        reconnect_max_delay=0.05,
        reconnect_max_attempts=3,
        random_seed=7,
        market_hours=always_open,
        log_dir=tmp_path / "logs",
    )
