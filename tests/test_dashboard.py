"""Tests for the rich quote dashboard."""

from __future__ import annotations

import asyncio
import io

import pytest
from rich.console import Console

from market_engine.core.config import EngineConfig
from market_engine.dashboard import MarketDashboard
from market_engine.market_data import MarketDataService
from market_engine.models import TransportState


def render(console: Console, renderable: object) -> str:
    with console.capture() as capture:
        console.print(renderable)
    return capture.get()


@pytest.mark.asyncio
async def test_dashboard_tracks_quotes_chain_and_status(fast_config: EngineConfig) -> None:
    console = Console(width=200, record=True)

    async with MarketDataService(fast_config) as service:
        board = MarketDashboard(
            service, ["nifty", "TCS"], chain_underlying="nifty", chain_rows=5, console=console
        )
        await board.attach()

        assert set(board.quotes) == {"NIFTY", "TCS"}
        assert board.chain is not None
        for _ in range(100):
            if board.status == TransportState.CONNECTED:
                break
            await asyncio.sleep(0.01)
        assert board.status == TransportState.CONNECTED

        quotes_text = render(console, board.build_quotes_table())
        chain_text = render(console, board.build_chain_table())
        header_text = render(console, board.build_header())
        await board.detach()

    assert "NIFTY" in quotes_text and "TCS" in quotes_text
    assert "19500" in chain_text
    assert "connected" in header_text
    assert "demo" in header_text
    assert service.hub.subscriptions() == []


def test_dashboard_renders_placeholders_without_data(fast_config: EngineConfig) -> None:
    console = Console(width=160)
    service = MarketDataService(fast_config)
    board = MarketDashboard(service, ["ACME"], chain_underlying="NIFTY", console=console)

    quotes_text = render(console, board.build_quotes_table())
    render(console, board.build_layout())

    assert "ACME" in quotes_text
    assert board.chain is None
    assert board.updates == 0


@pytest.mark.asyncio
async def test_dashboard_run_stops_after_duration(fast_config: EngineConfig) -> None:
    console = Console(width=160, file=io.StringIO())

    async with MarketDataService(fast_config) as service:
        board = MarketDashboard(service, ["INFY"], console=console)
        await board.run(duration=0.1, refresh=0.02)

        assert board.updates >= 1
        assert service.hub.subscriptions() == []
