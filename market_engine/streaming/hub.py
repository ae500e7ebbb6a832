"""Reference-counted fan-out of upstream topic updates to subscriber callbacks."""

from __future__ import annotations

import asyncio
import inspect
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol

from loguru import logger

from market_engine.models import Topic, TopicKind

SubscriptionCallback = Callable[[list[Any]], Awaitable[None] | None]


class UpstreamFeed(Protocol):
    """Source of updates the hub turns on and off per topic."""

    async def start(self, topic: Topic) -> None: ...

    async def stop(self, topic: Topic) -> None: ...


@dataclass(slots=True)
class Subscription:
    """A caller's interest in one kind of update for a set of symbols."""

    id: str
    kind: TopicKind
    symbols: tuple[str, ...]
    callback: SubscriptionCallback
    active: bool = True
    deliveries: int = 0
    failures: int = 0
    _symbol_set: frozenset[str] = field(default=frozenset(), init=False, repr=False)

    def __post_init__(self) -> None:
        self._symbol_set = frozenset(self.symbols)

    @property
    def topics(self) -> list[Topic]:
        return [Topic(self.kind, symbol) for symbol in self.symbols]

    def wants(self, symbol: str) -> bool:
        return symbol in self._symbol_set


def normalize_symbols(symbols: Iterable[str] | str) -> tuple[str, ...]:
    if isinstance(symbols, str):
        symbols = [symbols]
    seen: dict[str, None] = {}
    for symbol in symbols:
        cleaned = symbol.strip().upper()
        if cleaned:
            seen.setdefault(cleaned, None)
    return tuple(seen)


class SubscriptionHub:
    """Multiplex one upstream feed per topic to many subscribers.

    The feed is asked to ``start`` a topic when its first subscriber arrives
    and to ``stop`` it when the last one leaves. Each callback receives only
    the payloads for symbols it subscribed to, and a failing callback never
    prevents delivery to the others.

    Deliveries of one kind are serialized so every subscriber sees updates
    in publish order. The task running a delivery may re-enter the hub from
    inside a callback (subscribing, delivering a snapshot, publishing)
    without waiting on itself.
    """

    def __init__(self, feed: UpstreamFeed | None = None) -> None:
        self._feed = feed
        self._subscriptions: dict[str, Subscription] = {}
        self._topic_refs: dict[Topic, set[str]] = {}
        self._lock = asyncio.Lock()
        self._delivery_locks: dict[TopicKind, asyncio.Lock] = {
            kind: asyncio.Lock() for kind in TopicKind
        }
        self._delivering: set[asyncio.Task[Any]] = set()

    @property
    def feed(self) -> UpstreamFeed | None:
        return self._feed

    async def subscribe(
        self,
        kind: TopicKind,
        symbols: Iterable[str] | str,
        callback: SubscriptionCallback,
        *,
        subscription_id: str | None = None,
    ) -> str:
        normalized = normalize_symbols(symbols)
        if not normalized:
            raise ValueError("At least one symbol is required to subscribe")
        sub_id = subscription_id or uuid.uuid4().hex
        async with self._lock:
            if sub_id in self._subscriptions:
                raise ValueError(f"Subscription id already in use: {sub_id}")
            subscription = Subscription(
                id=sub_id, kind=TopicKind(kind), symbols=normalized, callback=callback
            )
            self._subscriptions[sub_id] = subscription
            for topic in subscription.topics:
                refs = self._topic_refs.setdefault(topic, set())
                refs.add(sub_id)
                if len(refs) == 1:
                    await self._start_topic(topic)
        logger.debug(
            "Subscription {} registered for {} {}", sub_id, subscription.kind.value, list(normalized)
        )
        return sub_id

    async def unsubscribe(self, subscription_id: str) -> bool:
        async with self._lock:
            subscription = self._subscriptions.pop(subscription_id, None)
            if subscription is None:
                return False
            subscription.active = False
            for topic in subscription.topics:
                refs = self._topic_refs.get(topic)
                if refs is None:
                    continue
                refs.discard(subscription_id)
                if not refs:
                    del self._topic_refs[topic]
                    await self._stop_topic(topic)
        logger.debug("Subscription {} removed", subscription_id)
        return True

    async def attach_feed(self, feed: UpstreamFeed | None) -> None:
        """Move every active topic from the current feed onto ``feed``.

        Subscriptions, their ids and callbacks are untouched.
        """
        async with self._lock:
            topics = list(self._topic_refs)
            for topic in topics:
                await self._stop_topic(topic)
            self._feed = feed
            for topic in topics:
                await self._start_topic(topic)
        logger.debug("Attached new upstream feed for {} active topics", len(topics))

    async def publish(self, kind: TopicKind, updates: Mapping[str, Any]) -> int:
        """Deliver ``updates`` (symbol -> payload) to interested subscribers.

        Returns the number of callbacks that completed successfully.
        """
        if not updates:
            return 0
        delivered = 0
        async with self.delivery_lock(kind):
            for subscription in list(self._subscriptions.values()):
                if subscription.kind != kind:
                    continue
                subset = [payload for symbol, payload in updates.items() if subscription.wants(symbol)]
                if subset and await self._invoke(subscription, subset):
                    delivered += 1
        return delivered

    async def deliver(self, subscription_id: str, payloads: list[Any]) -> bool:
        """Deliver ``payloads`` to a single subscription, e.g. a cache snapshot."""
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None or not payloads:
            return False
        async with self.delivery_lock(subscription.kind):
            return await self._invoke(subscription, payloads)

    @asynccontextmanager
    async def delivery_lock(self, kind: TopicKind) -> AsyncIterator[None]:
        """Hold back publishes of ``kind`` from other tasks while the block runs.

        Reentrant for the task that already holds any delivery lock, so a
        callback can call back into the hub.
        """
        task = asyncio.current_task()
        if task is None or task in self._delivering:
            yield
            return
        async with self._delivery_locks[TopicKind(kind)]:
            self._delivering.add(task)
            try:
                yield
            finally:
                self._delivering.discard(task)

    async def open_stream(
        self, kind: TopicKind, symbols: Iterable[str] | str, *, maxsize: int = 0
    ) -> SubscriptionStream:
        """Subscribe with a queue instead of a callback."""
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)

        def _enqueue(payloads: list[Any]) -> None:
            for payload in payloads:
                if queue.full():
                    queue.get_nowait()
                queue.put_nowait(payload)

        sub_id = await self.subscribe(kind, symbols, _enqueue)
        return SubscriptionStream(self, sub_id, queue)

    def get(self, subscription_id: str) -> Subscription | None:
        return self._subscriptions.get(subscription_id)

    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions.values())

    def active_topics(self, kind: TopicKind | None = None) -> list[Topic]:
        return [topic for topic in self._topic_refs if kind is None or topic.kind == kind]

    def subscriber_count(self, topic: Topic) -> int:
        return len(self._topic_refs.get(topic, ()))

    async def _invoke(self, subscription: Subscription, payloads: list[Any]) -> bool:
        if not subscription.active:
            return False
        try:
            result = subscription.callback(payloads)
            if inspect.isawaitable(result):
                await result
        except Exception:
            subscription.failures += 1
            logger.exception("Callback for subscription {} raised; continuing delivery", subscription.id)
            return False
        subscription.deliveries += 1
        return True

    async def _start_topic(self, topic: Topic) -> None:
        if self._feed is None:
            return
        try:
            await self._feed.start(topic)
        except Exception:
            logger.exception("Upstream feed failed to start {}", topic)

    async def _stop_topic(self, topic: Topic) -> None:
        if self._feed is None:
            return
        try:
            await self._feed.stop(topic)
        except Exception:
            logger.exception("Upstream feed failed to stop {}", topic)


class SubscriptionStream:
    """Async iterator over payloads delivered to a hub subscription."""

    def __init__(self, hub: SubscriptionHub, subscription_id: str, queue: asyncio.Queue[Any]) -> None:
        self._hub = hub
        self._queue = queue
        self.id = subscription_id
        self._active = True

    def __aiter__(self) -> AsyncIterator[Any]:
        return self

    async def __anext__(self) -> Any:
        if not self._active:
            raise StopAsyncIteration
        return await self._queue.get()

    async def get(self) -> Any:
        return await self.__anext__()

    async def close(self) -> None:
        if self._active:
            self._active = False
            await self._hub.unsubscribe(self.id)

    async def __aenter__(self) -> SubscriptionStream:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
