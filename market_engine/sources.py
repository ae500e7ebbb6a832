"""Data sources the market data service can draw quotes and chains from."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from market_engine.models import InstrumentQuote, OptionChain
from market_engine.pricing.chain import OptionChainBuilder
from market_engine.sim.price_process import PriceProcessGenerator


class MarketDataSource(Protocol):
    """Boundary for demo and live feeds.

    Implementations return ``None`` for unknown symbols instead of raising.
    """

    name: str

    async def fetch_quote(self, symbol: str) -> InstrumentQuote | None: ...

    async def fetch_option_chain(self, underlying: str) -> OptionChain | None: ...


class SimulatedMarketSource:
    """Demo source backed by the price process and the chain builder."""

    name = "demo"

    def __init__(self, generator: PriceProcessGenerator, chain_builder: OptionChainBuilder) -> None:
        self.generator = generator
        self.chain_builder = chain_builder

    async def fetch_quote(self, symbol: str) -> InstrumentQuote | None:
        return self.generator.quote(symbol)

    async def fetch_option_chain(
        self, underlying: str, now: datetime | None = None
    ) -> OptionChain | None:
        return self.chain_builder.build_chain(underlying, now)
