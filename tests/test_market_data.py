"""Tests for the market data service: snapshots, push delivery, polling and mode switching."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime

import pytest

from market_engine.core.config import EngineConfig
from market_engine.core.errors import TransportError
from market_engine.core.events import ConnectionStatusEvent, EventTopic, ModeChangeEvent
from market_engine.data.cache import quote_key
from market_engine.market_data import MarketDataService
from market_engine.models import (
    EngineMode,
    InstrumentQuote,
    OptionChain,
    Topic,
    TopicKind,
    TransportState,
)
from market_engine.streaming.transport import TransportMessage

NIFTY_PRICE = Topic(TopicKind.PRICE, "NIFTY")


class FailingTransport:
    """Push transport that refuses connections until made available and never pushes."""

    def __init__(self, available: bool = False) -> None:
        self.available = available
        self.connect_calls = 0

    def set_handlers(self, on_message, on_lost) -> None:  # type: ignore[no-untyped-def]
        pass

    async def connect(self) -> None:
        self.connect_calls += 1
        if not self.available:
            raise TransportError("push endpoint unavailable")

    async def close(self) -> None:
        pass

    async def subscribe(self, topic: Topic) -> None:
        pass

    async def unsubscribe(self, topic: Topic) -> None:
        pass


class StaticLiveSource:
    """Live adapter stub returning a fixed price for a couple of symbols."""

    name = "static-live"

    def __init__(self, price: float = 42.0) -> None:
        self.price = price
        self.quote_calls = 0

    async def fetch_quote(self, symbol: str) -> InstrumentQuote | None:
        if symbol not in {"NIFTY", "TCS"}:
            return None
        self.quote_calls += 1
        return InstrumentQuote(
            symbol=symbol,
            price=self.price,
            change=0.0,
            change_percent=0.0,
            volume=10,
            bid=self.price - 0.05,
            ask=self.price + 0.05,
            timestamp=datetime.now(tz=UTC),
        )

    async def fetch_option_chain(self, underlying: str) -> OptionChain | None:
        return None


class ManualTransport(FailingTransport):
    """Connectable push transport whose messages are injected by the test."""

    def __init__(self) -> None:
        super().__init__(available=True)
        self.on_message = None

    def set_handlers(self, on_message, on_lost) -> None:  # type: ignore[no-untyped-def]
        self.on_message = on_message


class GatedSource(StaticLiveSource):
    """Source whose quote fetch blocks until the test opens the gate."""

    name = "gated"

    def __init__(self, price: float = 10.0) -> None:
        super().__init__(price)
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def fetch_quote(self, symbol: str) -> InstrumentQuote | None:
        self.entered.set()
        await self.gate.wait()
        return await super().fetch_quote(symbol)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


@pytest.mark.asyncio
async def test_subscribe_delivers_snapshot_immediately(fast_config: EngineConfig) -> None:
    received: list[list[InstrumentQuote]] = []

    async with MarketDataService(fast_config) as service:
        sub_id = await service.subscribe_to_prices(["nifty", "TCS"], received.append)

        assert sub_id is not None
        assert len(received) == 1
        assert [quote.symbol for quote in received[0]] == ["NIFTY", "TCS"]
        assert service.get_current_price("nifty") == received[0][0]


@pytest.mark.asyncio
async def test_subscribe_serves_fresh_cache_entry(fast_config: EngineConfig) -> None:
    cached = InstrumentQuote(
        symbol="NIFTY",
        price=1.0,
        change=0.0,
        change_percent=0.0,
        volume=1,
        bid=0.95,
        ask=1.05,
        timestamp=datetime.now(tz=UTC),
    )
    received: list[list[InstrumentQuote]] = []

    # not started: no tick driver refreshing the cache
    service = MarketDataService(fast_config.model_copy(update={"enable_push": False}))
    service.cache.set(quote_key("NIFTY"), cached)
    try:
        await service.subscribe_to_prices(["NIFTY"], received.append)
    finally:
        await service.stop()

    assert received == [[cached]]


@pytest.mark.asyncio
async def test_unknown_symbols_do_not_raise(fast_config: EngineConfig) -> None:
    received: list[list[InstrumentQuote]] = []

    async with MarketDataService(fast_config) as service:
        sub_id = await service.subscribe_to_prices(["UNKNOWN"], received.append)

        assert sub_id is not None
        assert received == []
        assert service.get_current_price("UNKNOWN") is None
        assert await service.subscribe_to_prices([], received.append) is None
        assert await service.unsubscribe("no-such-id") is False


@pytest.mark.asyncio
async def test_option_chain_subscription_receives_single_chains(fast_config: EngineConfig) -> None:
    chains: list[OptionChain] = []

    async with MarketDataService(fast_config) as service:
        await service.subscribe_to_option_chain("nifty", chains.append)
        await service.subscribe_to_option_chain("HDFCBANK", chains.append)

        assert len(chains) == 1
        assert isinstance(chains[0], OptionChain)
        assert chains[0].underlying == "NIFTY"
        assert service.get_current_option_chain("NIFTY") == chains[0]
        assert service.get_current_option_chain("HDFCBANK") is None


@pytest.mark.asyncio
async def test_push_transport_delivers_updates_and_retires_poller(
    fast_config: EngineConfig,
) -> None:
    received: list[list[InstrumentQuote]] = []

    async with MarketDataService(fast_config) as service:
        await service.subscribe_to_prices(["NIFTY"], received.append)

        assert await wait_until(lambda: len(received) >= 3)
        assert service.get_connection_status() == TransportState.CONNECTED
        assert await wait_until(lambda: not service.polling_topics())


@pytest.mark.asyncio
async def test_push_updates_reach_event_bus(fast_config: EngineConfig) -> None:
    async with MarketDataService(fast_config) as service:
        quotes = service.event_bus.subscribe(EventTopic.QUOTE)
        await service.subscribe_to_prices(["NIFTY"], lambda _: None)

        event = await asyncio.wait_for(quotes.get(), timeout=2.0)

        assert isinstance(event, InstrumentQuote)
        assert event.symbol == "NIFTY"
        quotes.close()


@pytest.mark.asyncio
async def test_polling_fallback_when_push_cannot_connect(fast_config: EngineConfig) -> None:
    received: list[list[InstrumentQuote]] = []
    transport = FailingTransport()

    async with MarketDataService(fast_config, transport=transport) as service:
        await service.subscribe_to_prices(["NIFTY"], received.append)

        assert NIFTY_PRICE in service.polling_topics()
        assert await wait_until(lambda: len(received) >= 3)
        assert await wait_until(lambda: service.transport.exhausted)
        assert service.get_connection_status() == TransportState.ERROR
        assert transport.connect_calls == fast_config.reconnect_max_attempts + 1
        assert NIFTY_PRICE in service.polling_topics()


@pytest.mark.asyncio
async def test_polling_only_when_push_disabled(fast_config: EngineConfig) -> None:
    config = fast_config.model_copy(update={"enable_push": False})
    received: list[list[InstrumentQuote]] = []
    statuses: list[TransportState] = []

    async with MarketDataService(config) as service:
        service.on_connection_status_change(statuses.append)
        await service.subscribe_to_prices(["NIFTY"], received.append)

        assert await wait_until(lambda: len(received) >= 3)
        assert service.polling_topics() == [NIFTY_PRICE]
        assert not service.transport.running
        assert statuses == [TransportState.DISCONNECTED]


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery_and_upstream(fast_config: EngineConfig) -> None:
    received: list[list[InstrumentQuote]] = []

    async with MarketDataService(fast_config) as service:
        sub_id = await service.subscribe_to_prices(["NIFTY"], received.append)
        assert await wait_until(lambda: len(received) >= 2)

        assert await service.unsubscribe(sub_id) is True
        delivered = len(received)
        await asyncio.sleep(0.15)

        assert len(received) == delivered
        assert service.polling_topics() == []
        assert service.hub.active_topics() == []
        assert not service.transport.running
        assert await service.unsubscribe(sub_id) is False


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_affect_others(fast_config: EngineConfig) -> None:
    received: list[list[InstrumentQuote]] = []

    def explode(_: list[InstrumentQuote]) -> None:
        raise RuntimeError("subscriber bug")

    async with MarketDataService(fast_config) as service:
        bad_id = await service.subscribe_to_prices(["NIFTY"], explode)
        await service.subscribe_to_prices(["NIFTY"], received.append)

        assert bad_id is not None
        assert await wait_until(lambda: len(received) >= 3)
        assert service.hub.get(bad_id).failures >= 1


@pytest.mark.asyncio
async def test_connection_status_callback_fires_immediately_and_on_change(
    fast_config: EngineConfig,
) -> None:
    statuses: list[TransportState] = []

    async with MarketDataService(fast_config) as service:
        remove = service.on_connection_status_change(statuses.append)
        assert statuses == [TransportState.DISCONNECTED]

        sub_id = await service.subscribe_to_prices(["NIFTY"], lambda _: None)
        assert await wait_until(lambda: TransportState.CONNECTED in statuses)
        assert statuses[:3] == [
            TransportState.DISCONNECTED,
            TransportState.CONNECTING,
            TransportState.CONNECTED,
        ]

        remove()
        await service.unsubscribe(sub_id)
        assert statuses[-1] == TransportState.CONNECTED


@pytest.mark.asyncio
async def test_connection_events_published_on_bus(fast_config: EngineConfig) -> None:
    async with MarketDataService(fast_config) as service:
        events = service.event_bus.subscribe(EventTopic.CONNECTION)
        await service.subscribe_to_prices(["NIFTY"], lambda _: None)

        first = await asyncio.wait_for(events.get(), timeout=1.0)
        second = await asyncio.wait_for(events.get(), timeout=1.0)

        assert isinstance(first, ConnectionStatusEvent)
        assert first.state == TransportState.CONNECTING
        assert first.previous == TransportState.DISCONNECTED
        assert second.state == TransportState.CONNECTED
        events.close()


@pytest.mark.asyncio
async def test_mode_switch_keeps_subscriptions(fast_config: EngineConfig) -> None:
    live = StaticLiveSource()
    received: list[list[InstrumentQuote]] = []

    async with MarketDataService(fast_config, live_source=live) as service:
        sub_id = await service.subscribe_to_prices(["NIFTY"], received.append)
        modes = service.event_bus.subscribe(EventTopic.MODE)

        assert await service.switch_mode(EngineMode.LIVE) is True

        assert service.mode == EngineMode.LIVE
        assert service.source is live
        assert service.hub.get(sub_id) is not None
        assert received[-1][0].price == 42.0
        assert service.get_current_price("NIFTY").price == 42.0
        assert service.get_connection_status() == TransportState.DISCONNECTED

        event = await asyncio.wait_for(modes.get(), timeout=1.0)
        assert isinstance(event, ModeChangeEvent)
        assert (event.mode, event.previous, event.subscriptions) == (
            EngineMode.LIVE,
            EngineMode.DEMO,
            1,
        )

        live_updates = len(received)
        assert await wait_until(lambda: len(received) >= live_updates + 2)
        assert all(batch[0].price == 42.0 for batch in received[live_updates:])

        assert await service.switch_mode("demo") is True
        assert service.mode == EngineMode.DEMO
        assert received[-1][0].price != 42.0
        calls = live.quote_calls
        await asyncio.sleep(0.15)
        assert live.quote_calls == calls
        assert await wait_until(
            lambda: service.get_connection_status() == TransportState.CONNECTED
        )
        modes.close()


@pytest.mark.asyncio
async def test_switch_to_live_without_source_is_rejected(fast_config: EngineConfig) -> None:
    async with MarketDataService(fast_config) as service:
        assert await service.switch_mode(EngineMode.LIVE) is False
        assert await service.switch_mode("bogus") is False
        assert await service.switch_mode(EngineMode.DEMO) is True
        assert service.mode == EngineMode.DEMO


@pytest.mark.asyncio
async def test_configured_live_mode_applies_on_start(fast_config: EngineConfig) -> None:
    config = fast_config.model_copy(update={"mode": EngineMode.LIVE})

    async with MarketDataService(config, live_source=StaticLiveSource()) as service:
        assert service.mode == EngineMode.LIVE

    async with MarketDataService(config) as service:
        assert service.mode == EngineMode.DEMO


@pytest.mark.asyncio
async def test_tick_driver_keeps_cache_warm(fast_config: EngineConfig) -> None:
    async with MarketDataService(fast_config) as service:
        assert await wait_until(lambda: service.get_current_price("NIFTY") is not None)
        assert service.get_current_price("ICICIBANK") is not None


@pytest.mark.asyncio
async def test_stop_tears_down_subscriptions(fast_config: EngineConfig) -> None:
    service = MarketDataService(fast_config)
    await service.start()
    await service.subscribe_to_prices(["NIFTY", "TCS"], lambda _: None)
    await service.subscribe_to_option_chain("NIFTY", lambda _: None)

    await service.stop()

    assert not service.running
    assert service.hub.subscriptions() == []
    assert service.polling_topics() == []
    assert service.get_connection_status() == TransportState.DISCONNECTED


def test_market_hours_check(fast_config: EngineConfig) -> None:
    saturday = datetime(2023, 9, 2, 6, 0, tzinfo=UTC)
    monday = datetime(2023, 9, 4, 6, 0, tzinfo=UTC)
    default_service = MarketDataService(EngineConfig())

    assert MarketDataService(fast_config).is_market_open(saturday)
    assert not default_service.is_market_open(saturday)
    assert default_service.is_market_open(monday)


@pytest.mark.asyncio
async def test_callback_can_subscribe_from_inside_a_delivery(fast_config: EngineConfig) -> None:
    outer: list[list[InstrumentQuote]] = []
    nested: list[list[InstrumentQuote]] = []

    async with MarketDataService(fast_config) as service:

        async def on_nifty(quotes: list[InstrumentQuote]) -> None:
            outer.append(quotes)
            if len(outer) == 2:
                await service.subscribe_to_prices(["TCS"], nested.append)

        await service.subscribe_to_prices(["NIFTY"], on_nifty)

        assert await wait_until(lambda: len(nested) >= 2)
        assert nested[0][0].symbol == "TCS"
        assert await wait_until(lambda: len(outer) >= 4)
        assert len(service.hub.subscriptions()) == 2


@pytest.mark.asyncio
async def test_callback_can_switch_mode_from_inside_a_delivery(fast_config: EngineConfig) -> None:
    received: list[list[InstrumentQuote]] = []
    switched: list[bool] = []

    async with MarketDataService(fast_config, live_source=StaticLiveSource()) as service:

        async def on_quotes(quotes: list[InstrumentQuote]) -> None:
            received.append(quotes)
            if len(received) == 2 and not switched:
                switched.append(await service.switch_mode(EngineMode.LIVE))

        await service.subscribe_to_prices(["NIFTY"], on_quotes)

        assert await wait_until(lambda: bool(switched))
        assert switched == [True]
        assert service.mode == EngineMode.LIVE
        assert await wait_until(lambda: received[-1][0].price == 42.0)
        updates = len(received)
        assert await wait_until(lambda: len(received) >= updates + 2)


@pytest.mark.asyncio
async def test_snapshot_is_never_delivered_after_a_newer_push(fast_config: EngineConfig) -> None:
    config = fast_config.model_copy(update={"poll_interval": 30.0})
    source = GatedSource(price=10.0)
    transport = ManualTransport()
    received: list[list[InstrumentQuote]] = []
    newer = InstrumentQuote(
        symbol="NIFTY",
        price=11.0,
        change=1.0,
        change_percent=10.0,
        volume=5,
        bid=10.95,
        ask=11.05,
        timestamp=datetime.now(tz=UTC),
    )

    service = MarketDataService(config, source=source, transport=transport)
    try:
        subscribing = asyncio.create_task(service.subscribe_to_prices(["NIFTY"], received.append))
        await asyncio.wait_for(source.entered.wait(), timeout=1.0)
        assert service.get_connection_status() == TransportState.CONNECTED

        pushing = asyncio.create_task(
            transport.on_message(
                TransportMessage(topic=NIFTY_PRICE, payload=newer, timestamp=datetime.now(tz=UTC))
            )
        )
        await asyncio.sleep(0.01)
        assert received == []

        source.gate.set()
        await asyncio.wait_for(asyncio.gather(subscribing, pushing), timeout=1.0)
    finally:
        await service.stop()

    assert [batch[0].price for batch in received] == [11.0, 11.0]


@pytest.mark.asyncio
async def test_last_unsubscribe_cancels_pending_poll_timers(fast_config: EngineConfig) -> None:
    received: list[list[InstrumentQuote]] = []

    async with MarketDataService(fast_config, transport=FailingTransport()) as service:
        sub_id = await service.subscribe_to_prices(["NIFTY"], received.append)
        poller = service._pollers[NIFTY_PRICE]
        assert service.polling_topics() == [NIFTY_PRICE]
        assert service.get_connection_status() != TransportState.CONNECTED

        assert await service.unsubscribe(sub_id) is True

        assert service.polling_topics() == []
        await asyncio.gather(poller, return_exceptions=True)
        assert poller.cancelled()
        delivered = len(received)
        await asyncio.sleep(0.15)
        assert len(received) == delivered


@pytest.mark.asyncio
async def test_reconnect_recovers_after_backoff_gives_up(fast_config: EngineConfig) -> None:
    transport = FailingTransport()

    async with MarketDataService(fast_config, transport=transport) as service:
        await service.subscribe_to_prices(["NIFTY"], lambda _: None)
        assert await wait_until(lambda: service.transport.exhausted)
        assert service.get_connection_status() == TransportState.ERROR

        transport.available = True
        assert await service.reconnect() is True

        assert service.get_connection_status() == TransportState.CONNECTED
        assert not service.transport.exhausted
        assert service.transport.attempts == 0


@pytest.mark.asyncio
async def test_reconnect_without_push_is_a_no_op(fast_config: EngineConfig) -> None:
    config = fast_config.model_copy(update={"enable_push": False})

    async with MarketDataService(config) as service:
        assert await service.reconnect() is False

    async with MarketDataService(fast_config, live_source=StaticLiveSource()) as service:
        assert await service.switch_mode(EngineMode.LIVE) is True
        assert await service.reconnect() is False


@pytest.mark.asyncio
async def test_silent_push_connection_falls_back_to_polling(fast_config: EngineConfig) -> None:
    config = fast_config.model_copy(update={"heartbeat_timeout": 0.05})
    transport = FailingTransport(available=True)
    statuses: list[TransportState] = []
    received: list[list[InstrumentQuote]] = []

    async with MarketDataService(config, transport=transport) as service:
        service.on_connection_status_change(statuses.append)
        await service.subscribe_to_prices(["NIFTY"], received.append)

        assert await wait_until(lambda: transport.connect_calls >= 2)
        connected = statuses.index(TransportState.CONNECTED)
        assert TransportState.DISCONNECTED in statuses[connected:]
        assert await wait_until(lambda: len(received) >= 3)
