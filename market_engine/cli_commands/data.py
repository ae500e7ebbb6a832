"""CLI commands for data operations (quote, chain, simulate, instruments)."""

from pathlib import Path

import pandas as pd
import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from market_engine.core.config import load_config
from market_engine.core.constants import DEFAULT_HISTORY_EXPORT
from market_engine.models import OptionContract

from .utils import build_simulator, format_greek, require_symbol, setup_logging

data_app = typer.Typer(
    name="data",
    help="Offline quote, option chain and simulation commands",
)


def _contract_cells(contract: OptionContract) -> list[str]:
    greeks = contract.greeks
    return [
        f"{contract.open_interest:,}",
        f"{contract.volume:,}",
        f"{contract.implied_volatility * 100:.2f}",
        format_greek(greeks.delta if greeks else None, 3),
        f"{contract.bid:,.2f}",
        f"{contract.ask:,.2f}",
        f"{contract.last_price:,.2f}",
    ]


@data_app.command()
def quote(
    symbols: list[str] = typer.Argument(..., help="Symbols to quote"),
    ticks: int = typer.Option(0, "--ticks", min=0, help="Price ticks to simulate first"),
    seed: int | None = typer.Option(None, "--seed", help="Random seed for reproducible output"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Show simulated quotes for one or more symbols."""
    config = load_config()
    setup_logging(config.log_dir, verbose)
    normalized = [require_symbol(config, symbol) for symbol in symbols]

    generator, _ = build_simulator(config, seed=seed)
    for _ in range(ticks):
        generator.tick()

    table = Table(title=f"Quotes after {ticks} ticks")
    for column in ("Symbol", "Price", "Change", "Change %", "Bid", "Ask", "Volume"):
        table.add_column(column, justify="left" if column == "Symbol" else "right")
    for symbol in normalized:
        snapshot = generator.quote(symbol)
        if snapshot is None:
            continue
        table.add_row(
            snapshot.symbol,
            f"{snapshot.price:,.2f}",
            f"{snapshot.change:+,.2f}",
            f"{snapshot.change_percent:+.2f}%",
            f"{snapshot.bid:,.2f}",
            f"{snapshot.ask:,.2f}",
            f"{snapshot.volume:,}",
        )
    Console().print(table)


@data_app.command()
def chain(
    underlying: str = typer.Argument(..., help="Optionable underlying symbol"),
    strikes: int = typer.Option(
        0, "--strikes", min=0, help="Strikes to show around ATM (0 shows the full ladder)"
    ),
    seed: int | None = typer.Option(None, "--seed", help="Random seed for reproducible output"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Build and display the option chain for an underlying."""
    config = load_config()
    setup_logging(config.log_dir, verbose)
    symbol = require_symbol(config, underlying)

    _, builder = build_simulator(config, seed=seed)
    option_chain = builder.build_chain(symbol)
    if option_chain is None:
        logger.error("No option chain available for {}", symbol)
        typer.echo(f"No option chain available for {symbol}", err=True)
        raise typer.Exit(code=1)

    strike_prices = option_chain.strike_prices
    if strikes:
        atm = option_chain.atm_strike()
        centre = strike_prices.index(atm) if atm is not None else len(strike_prices) // 2
        half = strikes // 2
        strike_prices = strike_prices[max(centre - half, 0) : centre + half + 1]

    table = Table(
        title=(
            f"{option_chain.underlying} expiry {option_chain.expiry.isoformat()} "
            f"spot {option_chain.spot_price:,.2f} "
            f"(T={option_chain.time_to_expiry:.4f}y, vol={option_chain.volatility:.2%})"
        )
    )
    for column in ("OI", "Vol", "IV", "Delta", "Bid", "Ask", "LTP"):
        table.add_column(f"C {column}", justify="right")
    table.add_column("Strike", justify="center", style="bold")
    for column in ("LTP", "Bid", "Ask", "Delta", "IV", "Vol", "OI"):
        table.add_column(f"P {column}", justify="right")

    for strike in strike_prices:
        row = option_chain.strikes[strike]
        put_cells = _contract_cells(row.put)
        table.add_row(*_contract_cells(row.call), f"{strike:g}", *reversed(put_cells))
    Console().print(table)


@data_app.command()
def simulate(
    symbols: list[str] = typer.Argument(None, help="Symbols to simulate (default: all)"),
    ticks: int = typer.Option(100, "--ticks", min=1, help="Number of ticks to simulate"),
    output: Path = typer.Option(
        DEFAULT_HISTORY_EXPORT, "--output", "-o", help="CSV file receiving the quote history"
    ),
    seed: int | None = typer.Option(None, "--seed", help="Random seed for reproducible output"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Run the price process offline and export every quote to CSV."""
    config = load_config()
    setup_logging(config.log_dir, verbose)
    selected = (
        {require_symbol(config, symbol) for symbol in symbols} if symbols else set(config.instruments)
    )

    generator, _ = build_simulator(config, seed=seed)
    rows: list[dict[str, object]] = []
    for tick_index in range(1, ticks + 1):
        for snapshot in generator.tick():
            if snapshot.symbol not in selected:
                continue
            rows.append(
                {
                    "tick": tick_index,
                    "timestamp": snapshot.timestamp.isoformat(),
                    "symbol": snapshot.symbol,
                    "price": snapshot.price,
                    "change": snapshot.change,
                    "change_percent": snapshot.change_percent,
                    "bid": snapshot.bid,
                    "ask": snapshot.ask,
                    "volume": snapshot.volume,
                }
            )

    frame = pd.DataFrame(rows)
    output.parent.mkdir(parents=True, exist_ok=True)
    frame.to_csv(output, index=False)
    logger.info("Wrote {} simulated quotes to {}", len(frame), output)

    summary = frame.groupby("symbol")["price"].agg(["first", "last", "min", "max"])
    typer.echo(f"Simulated {ticks} ticks for {len(selected)} symbols -> {output}")
    for symbol, stats in summary.iterrows():
        typer.echo(
            f"  {symbol}: first={stats['first']:.2f} last={stats['last']:.2f} "
            f"min={stats['min']:.2f} max={stats['max']:.2f}"
        )


@data_app.command()
def instruments() -> None:
    """List the configured instrument universe."""
    config = load_config()
    table = Table(title="Instrument universe")
    table.add_column("Symbol", style="cyan")
    table.add_column("Name")
    table.add_column("Base price", justify="right")
    table.add_column("Volatility", justify="right")
    table.add_column("Lot", justify="right")
    table.add_column("Tick", justify="right")
    table.add_column("Trend")
    table.add_column("Options", justify="center")
    for spec in config.instruments.values():
        table.add_row(
            spec.symbol,
            spec.name,
            f"{spec.base_price:,.2f}",
            f"{spec.volatility:.2f}",
            str(spec.lot_size),
            f"{spec.tick_size:g}",
            spec.trend.value,
            "yes" if spec.has_options else "no",
        )
    Console().print(table)
