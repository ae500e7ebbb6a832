"""In-process push transport used in demo mode."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from loguru import logger

from market_engine.core.errors import TransportError
from market_engine.models import Topic
from market_engine.streaming.transport import LostHandler, MessageHandler, TransportMessage

TopicReader = Callable[[Topic], Awaitable[Any | None]]


class SimulatedPushTransport:
    """Emit one message per subscribed topic every ``push_interval`` seconds.

    Payloads are read from ``reader`` at emit time. ``fail_next_connects``
    and :meth:`drop` inject connection faults for tests and demos.
    """

    def __init__(
        self,
        reader: TopicReader,
        *,
        push_interval: float = 2.0,
        fail_next_connects: int = 0,
    ) -> None:
        self._reader = reader
        self._push_interval = push_interval
        self.fail_next_connects = fail_next_connects
        self._topics: set[Topic] = set()
        self._connected = False
        self._emit_task: asyncio.Task[None] | None = None
        self._on_message: MessageHandler | None = None
        self._on_lost: LostHandler | None = None
        self.connect_calls = 0
        self.messages_sent = 0

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def topics(self) -> frozenset[Topic]:
        return frozenset(self._topics)

    def set_handlers(self, on_message: MessageHandler, on_lost: LostHandler) -> None:
        self._on_message = on_message
        self._on_lost = on_lost

    async def connect(self) -> None:
        self.connect_calls += 1
        await asyncio.sleep(0)
        if self.fail_next_connects > 0:
            self.fail_next_connects -= 1
            raise TransportError("Simulated push connect failure")
        self._connected = True
        if self._emit_task is None or self._emit_task.done():
            self._emit_task = asyncio.get_running_loop().create_task(self._emit_loop())

    async def close(self) -> None:
        self._connected = False
        task, self._emit_task = self._emit_task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def subscribe(self, topic: Topic) -> None:
        self._topics.add(topic)

    async def unsubscribe(self, topic: Topic) -> None:
        self._topics.discard(topic)

    def drop(self, exc: Exception | None = None) -> None:
        """Simulate an unexpected loss of the connection."""
        if not self._connected:
            return
        self._connected = False
        task, self._emit_task = self._emit_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        if self._on_lost is not None:
            self._on_lost(exc or TransportError("Simulated push connection dropped"))

    async def push_once(self) -> int:
        """Emit a message for every subscribed topic right now."""
        if not self._connected or self._on_message is None:
            return 0
        sent = 0
        for topic in list(self._topics):
            try:
                payload = await self._reader(topic)
            except Exception as exc:
                logger.warning("Simulated push could not read {}: {}", topic, exc)
                continue
            if payload is None:
                continue
            result = self._on_message(
                TransportMessage(topic=topic, payload=payload, timestamp=datetime.now(tz=UTC))
            )
            if inspect.isawaitable(result):
                await result
            sent += 1
        self.messages_sent += sent
        return sent

    async def _emit_loop(self) -> None:
        while self._connected:
            await asyncio.sleep(self._push_interval)
            await self.push_once()
