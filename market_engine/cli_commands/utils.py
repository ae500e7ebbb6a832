"""Shared utility functions for CLI commands."""

import random
import sys
from pathlib import Path

import typer
from loguru import logger

from market_engine.core.config import EngineConfig
from market_engine.core.telemetry import TelemetryReporter, build_telemetry_reporter
from market_engine.market_data import MarketDataService
from market_engine.pricing.chain import OptionChainBuilder
from market_engine.sim.price_process import PriceProcessGenerator


def setup_logging(log_dir: Path, verbose: bool = False) -> None:
    """Configure loguru logging.

    Args:
        log_dir: Directory for log files
        verbose: Enable verbose debug logging
    """
    # Remove default handler
    logger.remove()

    # Console handler
    log_level = "DEBUG" if verbose else "INFO"
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan> - "
        "<level>{message}</level>",
        level=log_level,
    )

    # File handler
    logger.add(
        log_dir / "market_engine_{time}.log",
        rotation="1 day",
        retention="7 days",
        level="DEBUG",
    )


def make_rng(seed: int | None, config: EngineConfig) -> random.Random:
    return random.Random(seed if seed is not None else config.random_seed)


def build_simulator(
    config: EngineConfig,
    *,
    seed: int | None = None,
    respect_market_hours: bool = False,
) -> tuple[PriceProcessGenerator, OptionChainBuilder]:
    """Create a generator/chain builder pair sharing one random stream.

    Offline commands ignore market hours unless asked so that they produce
    data at any time of day.
    """
    rng = make_rng(seed, config)
    generator = PriceProcessGenerator(
        config.instruments,
        max_movement_per_tick=config.max_movement_per_tick,
        volume_variation=config.volume_variation,
        trend_persistence=config.trend_persistence,
        history_length=config.history_length,
        market_hours=config.market_hours if respect_market_hours else None,
        rng=rng,
    )
    builder = OptionChainBuilder(
        generator,
        config.instruments,
        strikes_count=config.strikes_count,
        risk_free_rate=config.risk_free_rate,
        market_hours=config.market_hours,
        rng=rng,
    )
    return generator, builder


def build_service(
    config: EngineConfig,
    *,
    telemetry: TelemetryReporter | None = None,
    seed: int | None = None,
) -> MarketDataService:
    """Instantiate a demo-mode market data service for CLI sessions."""
    reporter = telemetry or build_telemetry_reporter(file_path=config.log_dir / "telemetry.jsonl")
    return MarketDataService(config, telemetry=reporter, rng=make_rng(seed, config))


def require_symbol(config: EngineConfig, symbol: str) -> str:
    normalized = symbol.strip().upper()
    if normalized not in config.instruments:
        known = ", ".join(sorted(config.instruments))
        raise typer.BadParameter(f"Unknown symbol {symbol!r}. Known symbols: {known}")
    return normalized


def format_seconds(value: float | None) -> str:
    """Format a duration in seconds as a human-readable string."""
    if value is None:
        return "disabled"
    if value < 1:
        return f"{value * 1_000:.0f} ms"
    if value < 60:
        return f"{value:g} s"
    minutes, seconds = divmod(int(value), 60)
    hours, minutes = divmod(minutes, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if seconds:
        parts.append(f"{seconds}s")
    return " ".join(parts) or "0s"


def format_greek(value: float | None, digits: int = 4) -> str:
    if value is None:
        return "-"
    return f"{value:.{digits}f}"
