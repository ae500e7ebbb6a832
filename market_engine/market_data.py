"""Market data orchestration: subscriptions, caching, push delivery and polling fallback."""

from __future__ import annotations

import asyncio
import inspect
import random
from collections.abc import Awaitable, Callable, Coroutine, Iterable
from datetime import UTC, datetime
from functools import partial
from typing import Any

from loguru import logger

from market_engine.core.config import EngineConfig
from market_engine.core.events import (
    ConnectionStatusEvent,
    EventBus,
    EventTopic,
    ModeChangeEvent,
)
from market_engine.core.telemetry import TelemetryReporter
from market_engine.data.cache import FreshnessCache, chain_key, quote_key
from market_engine.models import (
    EngineMode,
    InstrumentQuote,
    OptionChain,
    Topic,
    TopicKind,
    TransportState,
)
from market_engine.pricing.chain import OptionChainBuilder
from market_engine.sim.price_process import PriceProcessGenerator
from market_engine.sim.push import SimulatedPushTransport
from market_engine.sources import MarketDataSource, SimulatedMarketSource
from market_engine.streaming.hub import SubscriptionCallback, SubscriptionHub, normalize_symbols
from market_engine.streaming.transport import (
    BackoffPolicy,
    PushTransport,
    TransportManager,
    TransportMessage,
)

QuoteCallback = Callable[[list[InstrumentQuote]], Awaitable[None] | None]
ChainCallback = Callable[[OptionChain], Awaitable[None] | None]
StatusCallback = Callable[[TransportState], None]

_BUS_TOPICS = {TopicKind.PRICE: EventTopic.QUOTE, TopicKind.OPTION_CHAIN: EventTopic.OPTION_CHAIN}


def _cache_key(kind: TopicKind, symbol: str) -> str:
    return quote_key(symbol) if kind == TopicKind.PRICE else chain_key(symbol)


class _SourceFeed:
    """Upstream feed for one data source: optional push transport plus polling."""

    def __init__(
        self,
        service: MarketDataService,
        source: MarketDataSource,
        transport: TransportManager | None,
    ) -> None:
        self.service = service
        self.source = source
        self.transport = transport
        self.topics: set[Topic] = set()

    @property
    def name(self) -> str:
        return getattr(self.source, "name", type(self.source).__name__)

    async def start(self, topic: Topic) -> None:
        self.topics.add(topic)
        if self.transport is not None and self.service.push_enabled:
            await self.transport.subscribe(topic)
            if not self.transport.running:
                await self.transport.start()
        self.service._sync_polling(self, topic)

    async def stop(self, topic: Topic) -> None:
        self.topics.discard(topic)
        self.service._cancel_poller(topic)
        if self.transport is None:
            return
        await self.transport.unsubscribe(topic)
        if not self.topics and self.transport.running:
            await self.transport.stop()


class MarketDataService:
    """Serve quotes and option chains to subscribers from a demo or live source.

    On subscribe the caller immediately receives whatever is fresh in the
    cache (fetching it first when absent). Updates then arrive through the
    push transport, or through per-topic polling while the transport is not
    connected. Public methods never raise: failures are logged and surface
    as ``None``, ``False`` or a connection state change.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        source: MarketDataSource | None = None,
        live_source: MarketDataSource | None = None,
        live_transport: PushTransport | None = None,
        transport: PushTransport | None = None,
        cache: FreshnessCache | None = None,
        event_bus: EventBus | None = None,
        telemetry: TelemetryReporter | None = None,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._config = config or EngineConfig()
        self._rng = rng or random.Random(self._config.random_seed)
        self._sleep = sleep
        self._event_bus = event_bus or EventBus()
        self._telemetry = telemetry or TelemetryReporter()
        self._cache = cache or FreshnessCache(
            default_ttl=self._config.cache_default_ttl,
            max_size=self._config.cache_max_size,
            sweep_interval=self._config.cache_sweep_interval,
        )

        if source is None:
            generator = PriceProcessGenerator.from_config(self._config, rng=self._rng)
            builder = OptionChainBuilder(
                generator,
                self._config.instruments,
                strikes_count=self._config.strikes_count,
                risk_free_rate=self._config.risk_free_rate,
                market_hours=self._config.market_hours,
                rng=self._rng,
            )
            source = SimulatedMarketSource(generator, builder)
        self._demo_source = source
        if transport is None:
            transport = SimulatedPushTransport(
                partial(self._fetch, source), push_interval=self._config.push_interval
            )
        self._demo_feed = _SourceFeed(self, source, self._build_manager(transport, "demo"))
        self._live_feed: _SourceFeed | None = None
        if live_source is not None:
            self.attach_live_source(live_source, transport=live_transport)

        self._mode = EngineMode.DEMO
        self._active_feed = self._demo_feed
        self._hub = SubscriptionHub(self._demo_feed)
        self._pollers: dict[Topic, asyncio.Task[None]] = {}
        self._tick_task: asyncio.Task[None] | None = None
        self._status_listeners: list[StatusCallback] = []
        self._pending: set[asyncio.Task[Any]] = set()
        self._mode_lock = asyncio.Lock()
        self._started = False
        self._requested_mode = self._config.mode
        self._last_status = TransportState.DISCONNECTED

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def mode(self) -> EngineMode:
        return self._mode

    @property
    def cache(self) -> FreshnessCache:
        return self._cache

    @property
    def hub(self) -> SubscriptionHub:
        return self._hub

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def source(self) -> MarketDataSource:
        return self._active_feed.source

    @property
    def demo_source(self) -> MarketDataSource:
        return self._demo_source

    @property
    def transport(self) -> TransportManager | None:
        return self._active_feed.transport

    @property
    def push_enabled(self) -> bool:
        return self._config.enable_push

    @property
    def running(self) -> bool:
        return self._started

    def polling_topics(self) -> list[Topic]:
        return [topic for topic, task in self._pollers.items() if not task.done()]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._cache.start()
        if self._requested_mode == EngineMode.LIVE and self._mode != EngineMode.LIVE:
            await self.switch_mode(EngineMode.LIVE)
        if self._mode == EngineMode.DEMO:
            self._start_tick_driver()
        self._telemetry.info("Market data service started", context={"mode": self._mode})

    async def stop(self) -> None:
        if not self._started and not self._hub.subscriptions():
            return
        self._started = False
        for subscription in self._hub.subscriptions():
            await self._hub.unsubscribe(subscription.id)
        await self._stop_tick_driver()
        for topic in list(self._pollers):
            self._cancel_poller(topic)
        for feed in (self._demo_feed, self._live_feed):
            if feed is not None and feed.transport is not None:
                await feed.transport.stop()
        await self._cache.stop()
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        self._telemetry.info("Market data service stopped")

    async def __aenter__(self) -> MarketDataService:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        kind: TopicKind,
        symbols: Iterable[str] | str,
        callback: SubscriptionCallback,
    ) -> str | None:
        """Register ``callback`` for ``symbols`` and deliver a fresh snapshot at once."""
        try:
            kind = TopicKind(kind)
            normalized = normalize_symbols(symbols)
            # updates published meanwhile wait until the snapshot is delivered
            async with self._hub.delivery_lock(kind):
                sub_id = await self._hub.subscribe(kind, normalized, callback)
                snapshot = await self._snapshot(kind, normalized)
                if snapshot:
                    await self._hub.deliver(sub_id, snapshot)
            return sub_id
        except Exception:
            logger.exception("Failed to subscribe to {} {}", kind, symbols)
            return None

    async def subscribe_to_prices(
        self, symbols: Iterable[str] | str, callback: QuoteCallback
    ) -> str | None:
        return await self.subscribe(TopicKind.PRICE, symbols, callback)

    async def subscribe_to_option_chain(self, underlying: str, callback: ChainCallback) -> str | None:
        """Subscribe to one underlying's chain; ``callback`` receives a single chain."""

        async def _deliver_chains(chains: list[OptionChain]) -> None:
            for chain in chains:
                result = callback(chain)
                if inspect.isawaitable(result):
                    await result

        return await self.subscribe(TopicKind.OPTION_CHAIN, [underlying], _deliver_chains)

    async def unsubscribe(self, subscription_id: str) -> bool:
        try:
            return await self._hub.unsubscribe(subscription_id)
        except Exception:
            logger.exception("Failed to unsubscribe {}", subscription_id)
            return False

    # ------------------------------------------------------------------
    # Cache reads
    # ------------------------------------------------------------------

    def get_current(self, kind: TopicKind, symbol: str) -> InstrumentQuote | OptionChain | None:
        """Return the fresh cached value for ``symbol`` without fetching."""
        try:
            return self._cache.get(_cache_key(TopicKind(kind), symbol))
        except Exception:
            logger.exception("Cache lookup failed for {} {}", kind, symbol)
            return None

    def get_current_price(self, symbol: str) -> InstrumentQuote | None:
        return self.get_current(TopicKind.PRICE, symbol)

    def get_current_option_chain(self, underlying: str) -> OptionChain | None:
        return self.get_current(TopicKind.OPTION_CHAIN, underlying)

    # ------------------------------------------------------------------
    # Connection status and mode
    # ------------------------------------------------------------------

    def get_connection_status(self) -> TransportState:
        transport = self._active_feed.transport
        if transport is None or not self.push_enabled:
            return TransportState.DISCONNECTED
        return transport.state

    def on_connection_status_change(self, callback: StatusCallback) -> Callable[[], None]:
        """Register ``callback`` and invoke it immediately with the current state."""
        self._status_listeners.append(callback)
        self._notify_listener(callback, self.get_connection_status())

        def _unsubscribe() -> None:
            if callback in self._status_listeners:
                self._status_listeners.remove(callback)

        return _unsubscribe

    async def reconnect(self) -> bool:
        """Clear the active push transport's reconnect attempts and connect again.

        This is the way out of ERROR once backoff has given up. Returns
        ``False`` when there is no push transport to reconnect.
        """
        transport = self._active_feed.transport
        if transport is None or not self.push_enabled:
            logger.info("Reconnect requested but push delivery is not in use")
            return False
        try:
            await transport.reset()
        except Exception:
            logger.exception("Manual reconnect failed")
            return False
        self._telemetry.info(
            "Push transport reconnect requested",
            context={"state": transport.state, "mode": self._mode},
        )
        return True

    def attach_live_source(
        self, source: MarketDataSource, *, transport: PushTransport | None = None
    ) -> None:
        """Register the adapter used by live mode, optionally with its own push channel."""
        manager = self._build_manager(transport, "live") if transport is not None else None
        self._live_feed = _SourceFeed(self, source, manager)
        logger.info("Live market data source attached: {}", self._live_feed.name)

    async def switch_mode(self, mode: EngineMode | str) -> bool:
        """Swap the upstream data source while keeping every subscription alive."""
        try:
            target = EngineMode(mode)
        except ValueError:
            logger.warning("Unknown engine mode {!r}", mode)
            return False
        if target == self._mode:
            return True
        feed = self._demo_feed if target == EngineMode.DEMO else self._live_feed
        if feed is None:
            logger.warning("Cannot switch to live mode: no live source attached")
            self._telemetry.warning("Live mode requested without a live source")
            return False

        try:
            async with self._mode_lock:
                if target == self._mode:
                    return True
                previous_mode = self._mode
                self._active_feed = feed
                await self._hub.attach_feed(feed)
                self._mode = target
                self._requested_mode = target
                self._cache.invalidate_by_prefix(quote_key(""))
                self._cache.invalidate_by_prefix(chain_key(""))
                if target == EngineMode.DEMO and self._started:
                    self._start_tick_driver()
                elif target == EngineMode.LIVE:
                    await self._stop_tick_driver()
        except Exception:
            logger.exception("Mode switch to {} failed", target.value)
            return False

        # outside the lock: subscriber callbacks may switch mode again
        for topic in self._hub.active_topics():
            try:
                await self._refresh(feed, topic)
            except Exception:
                logger.exception("Refresh of {} after mode switch failed", topic)

        subscriptions = len(self._hub.subscriptions())
        logger.info(
            "Switched market data mode {} -> {} ({} subscriptions kept)",
            previous_mode.value,
            target.value,
            subscriptions,
        )
        self._telemetry.info(
            "Market data mode switched",
            context={"mode": target, "previous": previous_mode, "subscriptions": subscriptions},
        )
        self._schedule(
            self._event_bus.publish(
                EventTopic.MODE,
                ModeChangeEvent(
                    mode=target,
                    previous=previous_mode,
                    timestamp=datetime.now(tz=UTC),
                    subscriptions=subscriptions,
                ),
            )
        )
        current_status = self.get_connection_status()
        if current_status != self._last_status:
            self._broadcast_status(current_status, self._last_status, 0)
        return True

    def is_market_open(self, now: datetime | None = None) -> bool:
        try:
            return self._config.market_hours.is_open(now or datetime.now(tz=UTC))
        except Exception:
            logger.exception("Market hours check failed")
            return False

    # ------------------------------------------------------------------
    # Internal delivery
    # ------------------------------------------------------------------

    def _build_manager(self, transport: PushTransport, name: str) -> TransportManager:
        manager = TransportManager(
            transport,
            BackoffPolicy.from_config(self._config),
            sleep=self._sleep,
            name=name,
            heartbeat_timeout=self._config.heartbeat_timeout,
        )
        manager.set_message_handler(partial(self._on_push_message, manager))
        manager.on_state_change(partial(self._on_transport_state, manager))
        return manager

    async def _fetch(self, source: MarketDataSource, topic: Topic) -> Any | None:
        try:
            if topic.kind == TopicKind.PRICE:
                return await source.fetch_quote(topic.symbol)
            return await source.fetch_option_chain(topic.symbol)
        except Exception as exc:
            logger.warning("Fetching {} from {} failed: {}", topic, getattr(source, "name", source), exc)
            return None

    def _ttl_for(self, kind: TopicKind) -> float:
        return self._config.quote_ttl if kind == TopicKind.PRICE else self._config.chain_ttl

    async def _snapshot(self, kind: TopicKind, symbols: Iterable[str]) -> list[Any]:
        payloads: list[Any] = []
        for symbol in symbols:
            key = _cache_key(kind, symbol)
            value = self._cache.get(key)
            if value is None:
                fetched = await self._fetch(self._active_feed.source, Topic(kind, symbol))
                # a push may have landed while the fetch was in flight
                value = self._cache.get(key)
                if value is None:
                    if fetched is None:
                        logger.debug("No data available for {} {}", kind.value, symbol)
                        continue
                    value = fetched
                    self._cache.set(key, value, ttl=self._ttl_for(kind))
            payloads.append(value)
        return payloads

    async def _dispatch(self, topic: Topic, payload: Any) -> None:
        self._cache.set(_cache_key(topic.kind, topic.symbol), payload, ttl=self._ttl_for(topic.kind))
        await self._hub.publish(topic.kind, {topic.symbol: payload})
        await self._event_bus.publish(_BUS_TOPICS[topic.kind], payload)

    async def _refresh(self, feed: _SourceFeed, topic: Topic) -> None:
        payload = await self._fetch(feed.source, topic)
        if payload is not None and feed is self._active_feed:
            await self._dispatch(topic, payload)

    async def _on_push_message(self, manager: TransportManager, message: TransportMessage) -> None:
        if manager is not self._active_feed.transport:
            return
        if self._hub.subscriber_count(message.topic) == 0:
            return
        await self._dispatch(message.topic, message.payload)
        if manager.state == TransportState.CONNECTED:
            self._cancel_poller(message.topic)

    # ------------------------------------------------------------------
    # Polling fallback
    # ------------------------------------------------------------------

    def _needs_polling(self, feed: _SourceFeed) -> bool:
        if feed.transport is None or not self.push_enabled:
            return True
        return self._config.fallback_to_polling and feed.transport.state != TransportState.CONNECTED

    def _sync_polling(self, feed: _SourceFeed, topic: Topic) -> None:
        if feed is not self._active_feed or topic not in feed.topics:
            return
        if not self._needs_polling(feed):
            return
        task = self._pollers.get(topic)
        if task is not None and not task.done():
            return
        self._pollers[topic] = asyncio.get_running_loop().create_task(self._poll_loop(feed, topic))
        logger.debug("Polling fallback active for {}", topic)

    def _cancel_poller(self, topic: Topic) -> None:
        task = self._pollers.pop(topic, None)
        if task is not None and not task.done():
            # a poller retired from its own callback exits after the current refresh
            if task is not asyncio.current_task():
                task.cancel()
            logger.debug("Polling fallback cancelled for {}", topic)

    async def _poll_loop(self, feed: _SourceFeed, topic: Topic) -> None:
        task = asyncio.current_task()
        while True:
            await asyncio.sleep(self._config.poll_interval)
            if self._pollers.get(topic) is not task:
                return
            try:
                await self._refresh(feed, topic)
            except Exception:
                logger.exception("Polling refresh failed for {}", topic)

    # ------------------------------------------------------------------
    # Tick driver
    # ------------------------------------------------------------------

    def _start_tick_driver(self) -> None:
        generator = getattr(self._demo_source, "generator", None)
        if generator is None:
            return
        if self._tick_task is not None and not self._tick_task.done():
            return
        self._tick_task = asyncio.get_running_loop().create_task(self._tick_loop(generator))

    async def _stop_tick_driver(self) -> None:
        task, self._tick_task = self._tick_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _tick_loop(self, generator: PriceProcessGenerator) -> None:
        while True:
            await asyncio.sleep(self._config.tick_interval)
            try:
                quotes = generator.tick()
            except Exception:
                logger.exception("Price tick failed")
                continue
            if quotes:
                self._cache.set_many(
                    {quote_key(quote.symbol): quote for quote in quotes}, ttl=self._config.quote_ttl
                )

    # ------------------------------------------------------------------
    # Connection status fan-out
    # ------------------------------------------------------------------

    def _on_transport_state(
        self,
        manager: TransportManager,
        state: TransportState,
        previous: TransportState,
        attempt: int,
    ) -> None:
        feed = self._active_feed
        if manager is not feed.transport:
            return
        if state != TransportState.CONNECTED:
            for topic in list(feed.topics):
                self._sync_polling(feed, topic)
        if self.push_enabled:
            self._broadcast_status(state, previous, attempt)

    def _broadcast_status(
        self, state: TransportState, previous: TransportState, attempt: int
    ) -> None:
        self._last_status = state
        context = {"state": state, "previous": previous, "attempt": attempt, "mode": self._mode}
        if state == TransportState.ERROR:
            self._telemetry.warning("Push transport error", context=context)
        else:
            self._telemetry.info("Push transport state changed", context=context)
        self._schedule(
            self._event_bus.publish(
                EventTopic.CONNECTION,
                ConnectionStatusEvent(
                    state=state,
                    previous=previous,
                    timestamp=datetime.now(tz=UTC),
                    attempt=attempt,
                ),
            )
        )
        for listener in list(self._status_listeners):
            self._notify_listener(listener, state)

    def _notify_listener(self, listener: StatusCallback, state: TransportState) -> None:
        try:
            listener(state)
        except Exception:
            logger.exception("Connection status listener failed")

    def _schedule(self, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return
        task = loop.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
