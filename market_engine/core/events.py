"""Event bus and event definitions for the market engine."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from market_engine.models import EngineMode, TransportState


class EventTopic(str, Enum):
    """Enumerates supported event channels."""

    QUOTE = "quote"
    OPTION_CHAIN = "option_chain"
    CONNECTION = "connection"
    MODE = "mode"
    DIAGNOSTIC = "diagnostic"


@dataclass(frozen=True, slots=True)
class ConnectionStatusEvent:
    """Payload emitted on every transport state transition."""

    state: TransportState
    previous: TransportState
    timestamp: datetime
    attempt: int = 0


@dataclass(frozen=True, slots=True)
class ModeChangeEvent:
    """Payload emitted after the service switches data source."""

    mode: EngineMode
    previous: EngineMode
    timestamp: datetime
    subscriptions: int


@dataclass(frozen=True, slots=True)
class DiagnosticEvent:
    """Telemetry message for instrumentation warnings/info."""

    level: str
    message: str
    timestamp: datetime
    context: dict[str, object] | None = None


class EventSubscription:
    """Async iterator over events for a given topic."""

    def __init__(self, bus: EventBus, topic: EventTopic) -> None:
        self._bus = bus
        self._topic = topic
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._active = True
        self._bus._register(topic, self._queue)

    def __aiter__(self) -> AsyncIterator[object]:
        return self

    async def __anext__(self) -> object:
        if not self._active:
            raise StopAsyncIteration
        return await self._queue.get()

    async def get(self) -> object:
        """Retrieve the next event payload."""
        return await self.__anext__()

    def close(self) -> None:
        """Unsubscribe from the event bus."""
        if self._active:
            self._active = False
            self._bus._unregister(self._topic, self._queue)

    async def __aenter__(self) -> EventSubscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class EventBus:
    """Simple pub/sub event bus built on asyncio queues."""

    def __init__(self) -> None:
        self._topics: defaultdict[EventTopic, list[asyncio.Queue[object]]] = defaultdict(list)
        self._lock = asyncio.Lock()

    def subscribe(self, topic: EventTopic) -> EventSubscription:
        """Subscribe to a topic."""
        return EventSubscription(self, topic)

    async def publish(self, topic: EventTopic, payload: object) -> None:
        """Publish payload to all subscribers of topic."""
        async with self._lock:
            queues = list(self._topics.get(topic, []))
        for queue in queues:
            await queue.put(payload)

    def _register(self, topic: EventTopic, queue: asyncio.Queue[object]) -> None:
        self._topics[topic].append(queue)

    def _unregister(self, topic: EventTopic, queue: asyncio.Queue[object]) -> None:
        subscribers = self._topics.get(topic)
        if not subscribers:
            return
        try:
            subscribers.remove(queue)
        except ValueError:
            return
        if not subscribers:
            self._topics.pop(topic, None)
