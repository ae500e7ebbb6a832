"""Real-time quote board for live monitoring of the market data service."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from market_engine.market_data import MarketDataService
from market_engine.models import InstrumentQuote, OptionChain, TransportState

_STATUS_STYLES = {
    TransportState.CONNECTED: "green",
    TransportState.CONNECTING: "yellow",
    TransportState.DISCONNECTED: "dim",
    TransportState.ERROR: "red",
}


class MarketDashboard:
    """Dashboard displaying streaming quotes and an optional option chain.

    Features:
    - Latest quote per subscribed symbol with change colouring
    - Strikes around the money for one underlying
    - Push transport connection state
    """

    def __init__(
        self,
        service: MarketDataService,
        symbols: list[str],
        *,
        chain_underlying: str | None = None,
        chain_rows: int = 11,
        console: Console | None = None,
    ) -> None:
        self.service = service
        self.symbols = [symbol.upper() for symbol in symbols]
        self.chain_underlying = chain_underlying.upper() if chain_underlying else None
        self.chain_rows = chain_rows
        self.console = console or Console()

        # State tracking
        self.quotes: dict[str, InstrumentQuote] = {}
        self.chain: OptionChain | None = None
        self.status = TransportState.DISCONNECTED
        self.updates = 0
        self.last_update = datetime.now(UTC)

        self._subscription_ids: list[str] = []
        self._status_unsubscribe: Callable[[], None] | None = None

    def on_quotes(self, quotes: list[InstrumentQuote]) -> None:
        for quote in quotes:
            self.quotes[quote.symbol] = quote
        self.updates += 1
        self.last_update = datetime.now(UTC)

    def on_chain(self, chain: OptionChain) -> None:
        self.chain = chain
        self.updates += 1
        self.last_update = datetime.now(UTC)

    def on_status(self, state: TransportState) -> None:
        self.status = state

    async def attach(self) -> None:
        """Subscribe the dashboard to the service."""
        self._status_unsubscribe = self.service.on_connection_status_change(self.on_status)
        if self.symbols:
            sub_id = await self.service.subscribe_to_prices(self.symbols, self.on_quotes)
            if sub_id is not None:
                self._subscription_ids.append(sub_id)
        if self.chain_underlying:
            sub_id = await self.service.subscribe_to_option_chain(
                self.chain_underlying, self.on_chain
            )
            if sub_id is not None:
                self._subscription_ids.append(sub_id)

    async def detach(self) -> None:
        for sub_id in self._subscription_ids:
            await self.service.unsubscribe(sub_id)
        self._subscription_ids.clear()
        if self._status_unsubscribe is not None:
            self._status_unsubscribe()
            self._status_unsubscribe = None

    async def run(self, duration: float | None = None, refresh: float = 0.5) -> None:
        """Render until ``duration`` elapses (or forever when None)."""
        await self.attach()
        loop = asyncio.get_running_loop()
        deadline = None if duration is None else loop.time() + duration
        try:
            with Live(self.build_layout(), console=self.console, refresh_per_second=2) as live:
                while deadline is None or loop.time() < deadline:
                    live.update(self.build_layout())
                    await asyncio.sleep(refresh)
        finally:
            await self.detach()

    def build_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(self.build_header(), name="header", size=3),
            Layout(name="body"),
        )
        if self.chain_underlying:
            layout["body"].split_row(
                Layout(Panel(self.build_quotes_table(), title="Quotes"), name="quotes"),
                Layout(Panel(self.build_chain_table(), title="Option chain"), name="chain"),
            )
        else:
            layout["body"].update(Panel(self.build_quotes_table(), title="Quotes"))
        return layout

    def build_header(self) -> Panel:
        style = _STATUS_STYLES.get(self.status, "white")
        text = Text.assemble(
            ("Market Engine ", "bold white"),
            (f"[{self.service.mode.value}] ", "bold cyan"),
            ("push: ", "white"),
            (self.status.value, style),
            (f"  updates: {self.updates}", "white"),
            (f"  {self.last_update:%H:%M:%S} UTC", "dim"),
        )
        return Panel(text, border_style="blue")

    def build_quotes_table(self) -> Table:
        table = Table(expand=True)
        table.add_column("Symbol", style="cyan")
        table.add_column("Price", justify="right")
        table.add_column("Change", justify="right")
        table.add_column("Change %", justify="right")
        table.add_column("Bid", justify="right")
        table.add_column("Ask", justify="right")
        table.add_column("Volume", justify="right")
        for symbol in self.symbols:
            quote = self.quotes.get(symbol)
            if quote is None:
                table.add_row(symbol, "-", "-", "-", "-", "-", "-")
                continue
            colour = "green" if quote.change >= 0 else "red"
            table.add_row(
                symbol,
                f"{quote.price:,.2f}",
                f"[{colour}]{quote.change:+,.2f}[/{colour}]",
                f"[{colour}]{quote.change_percent:+.2f}%[/{colour}]",
                f"{quote.bid:,.2f}",
                f"{quote.ask:,.2f}",
                f"{quote.volume:,}",
            )
        return table

    def build_chain_table(self) -> Table:
        chain = self.chain
        title = None
        if chain is not None:
            title = f"{chain.underlying} {chain.expiry:%d %b %Y} spot {chain.spot_price:,.2f}"
        table = Table(title=title, expand=True)
        table.add_column("Call OI", justify="right")
        table.add_column("Call LTP", justify="right")
        table.add_column("Call Δ", justify="right")
        table.add_column("Strike", justify="center", style="bold")
        table.add_column("Put Δ", justify="right")
        table.add_column("Put LTP", justify="right")
        table.add_column("Put OI", justify="right")
        if chain is None:
            return table

        strikes = chain.strike_prices
        atm = chain.atm_strike()
        centre = strikes.index(atm) if atm is not None else len(strikes) // 2
        half = self.chain_rows // 2
        for strike in strikes[max(centre - half, 0) : centre + half + 1]:
            row = chain.strikes[strike]
            style = "bold yellow" if strike == atm else None
            table.add_row(
                f"{row.call.open_interest:,}",
                f"{row.call.last_price:,.2f}",
                _delta(row.call.greeks),
                f"{strike:g}",
                _delta(row.put.greeks),
                f"{row.put.last_price:,.2f}",
                f"{row.put.open_interest:,}",
                style=style,
            )
        return table


def _delta(greeks: object) -> str:
    delta = getattr(greeks, "delta", None)
    return "-" if delta is None else f"{delta:+.2f}"
