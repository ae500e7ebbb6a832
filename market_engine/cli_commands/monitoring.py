"""Monitoring and diagnostics commands for the market engine CLI."""

import asyncio
from datetime import UTC, datetime

import typer
from loguru import logger

from market_engine.core.config import EngineConfig, load_config
from market_engine.dashboard import MarketDashboard
from market_engine.models import InstrumentQuote, OptionChain, TransportState
from market_engine.streaming.transport import BackoffPolicy

from .utils import build_service, format_seconds, require_symbol, setup_logging

monitoring_app = typer.Typer(
    name="monitoring",
    help="Monitoring and diagnostics commands",
)


async def run_stream(
    config: EngineConfig,
    symbols: list[str],
    *,
    duration: float,
    chain_underlying: str | None = None,
    seed: int | None = None,
) -> int:
    """Subscribe to quotes (and optionally one chain) and echo updates until ``duration``."""
    received = 0

    def _on_quotes(quotes: list[InstrumentQuote]) -> None:
        nonlocal received
        for quote in quotes:
            received += 1
            typer.echo(
                f"{quote.timestamp:%H:%M:%S} {quote.symbol:<10} {quote.price:>12,.2f} "
                f"{quote.change_percent:+6.2f}%  bid {quote.bid:,.2f} ask {quote.ask:,.2f}"
            )

    def _on_chain(option_chain: OptionChain) -> None:
        nonlocal received
        received += 1
        atm = option_chain.atm_strike()
        typer.echo(
            f"{option_chain.last_updated:%H:%M:%S} {option_chain.underlying} chain "
            f"spot {option_chain.spot_price:,.2f} atm {atm:g} "
            f"({len(option_chain.strikes)} strikes, expiry {option_chain.expiry.isoformat()})"
        )

    def _on_status(state: TransportState) -> None:
        typer.echo(f"[connection] {state.value}")

    async with build_service(config, seed=seed) as service:
        unsubscribe_status = service.on_connection_status_change(_on_status)
        sub_id = await service.subscribe_to_prices(symbols, _on_quotes) if symbols else None
        chain_id = (
            await service.subscribe_to_option_chain(chain_underlying, _on_chain)
            if chain_underlying
            else None
        )
        await asyncio.sleep(duration)
        for subscription_id in (sub_id, chain_id):
            if subscription_id is not None:
                await service.unsubscribe(subscription_id)
        unsubscribe_status()
        stats = service.cache.stats()
        logger.info(
            "Stream finished: {} updates, cache hit rate {:.0%}", received, stats.hit_rate
        )
    return received


@monitoring_app.command()
def stream(
    symbols: list[str] = typer.Argument(None, help="Symbols to stream"),
    duration: float = typer.Option(10.0, "--duration", "-d", min=0.0, help="Seconds to stream"),
    chain_underlying: str | None = typer.Option(
        None, "--chain", help="Also stream the option chain for this underlying"
    ),
    seed: int | None = typer.Option(None, "--seed", help="Random seed for reproducible output"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Stream live demo quotes for a bounded session."""
    config = load_config()
    setup_logging(config.log_dir, verbose)
    normalized = [require_symbol(config, symbol) for symbol in symbols or []]
    underlying = require_symbol(config, chain_underlying) if chain_underlying else None
    if not normalized and underlying is None:
        raise typer.BadParameter("Provide at least one symbol or --chain")

    received = asyncio.run(
        run_stream(config, normalized, duration=duration, chain_underlying=underlying, seed=seed)
    )
    typer.echo(f"Received {received} updates in {format_seconds(duration)}")


@monitoring_app.command()
def dashboard(
    symbols: list[str] = typer.Argument(None, help="Symbols to display (default: all)"),
    chain_underlying: str | None = typer.Option(
        None, "--chain", help="Show the option chain for this underlying"
    ),
    duration: float | None = typer.Option(
        None, "--duration", "-d", help="Seconds to run (default: until interrupted)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Launch the live quote dashboard."""
    config = load_config()
    setup_logging(config.log_dir, verbose)
    normalized = [require_symbol(config, symbol) for symbol in symbols] if symbols else list(
        config.instruments
    )
    underlying = require_symbol(config, chain_underlying) if chain_underlying else None

    async def _run() -> None:
        async with build_service(config) as service:
            board = MarketDashboard(service, normalized, chain_underlying=underlying)
            await board.run(duration)

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        typer.echo("Dashboard stopped by user")


@monitoring_app.command()
def status() -> None:
    """Display engine configuration, market hours and reconnect policy."""
    config = load_config()
    hours = config.market_hours
    now = datetime.now(UTC)
    policy = BackoffPolicy.from_config(config)
    schedule = ", ".join(format_seconds(policy.delay(n)) for n in range(policy.max_attempts))

    typer.echo("=== Market Engine Status ===")
    typer.echo(f"Mode: {config.mode.value}")
    typer.echo(
        f"Market hours: {hours.open:%H:%M}-{hours.close:%H:%M} {hours.timezone} "
        f"({'open' if hours.is_open(now) else 'closed'} now)"
    )
    typer.echo(f"Instruments: {len(config.instruments)} ({', '.join(config.instruments)})")
    typer.echo(
        f"Delivery: push {'enabled' if config.enable_push else 'disabled'} "
        f"every {format_seconds(config.push_interval)}, polling fallback "
        f"{'on' if config.fallback_to_polling else 'off'} "
        f"every {format_seconds(config.poll_interval)}"
    )
    typer.echo(f"Tick interval: {format_seconds(config.tick_interval)}")
    typer.echo(
        f"Cache: quotes {format_seconds(config.quote_ttl)}, chains "
        f"{format_seconds(config.chain_ttl)}, max {config.cache_max_size} entries, "
        f"sweep every {format_seconds(config.cache_sweep_interval)}"
    )
    typer.echo(f"Reconnect: {policy.max_attempts} attempts, delays [{schedule or 'none'}]")
    typer.echo(f"Heartbeat: {format_seconds(config.heartbeat_timeout)}")
