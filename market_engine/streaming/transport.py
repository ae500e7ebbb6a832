"""Push transport connection state machine with exponential-backoff reconnects."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from loguru import logger

from market_engine.core.config import EngineConfig
from market_engine.core.errors import InvalidTransitionError, TransportError
from market_engine.models import Topic, TransportState

ALLOWED_TRANSITIONS: dict[TransportState, frozenset[TransportState]] = {
    TransportState.DISCONNECTED: frozenset({TransportState.CONNECTING, TransportState.ERROR}),
    TransportState.CONNECTING: frozenset(
        {TransportState.CONNECTED, TransportState.DISCONNECTED, TransportState.ERROR}
    ),
    TransportState.CONNECTED: frozenset({TransportState.DISCONNECTED, TransportState.ERROR}),
    TransportState.ERROR: frozenset({TransportState.CONNECTING, TransportState.DISCONNECTED}),
}


def can_transition(current: TransportState, target: TransportState) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Exponential reconnect schedule: ``base * factor**attempt`` capped at ``max_delay``."""

    base_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 30.0
    max_attempts: int = 5

    def __post_init__(self) -> None:
        if self.base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")

    @classmethod
    def from_config(cls, config: EngineConfig) -> BackoffPolicy:
        return cls(
            base_delay=config.reconnect_base_delay,
            backoff_factor=config.reconnect_backoff_factor,
            max_delay=config.reconnect_max_delay,
            max_attempts=config.reconnect_max_attempts,
        )

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * self.backoff_factor**attempt, self.max_delay)


@dataclass(frozen=True, slots=True)
class TransportMessage:
    """One pushed update for a topic."""

    topic: Topic
    payload: Any
    timestamp: datetime


MessageHandler = Callable[[TransportMessage], Awaitable[None] | None]
LostHandler = Callable[[Exception | None], None]
StateListener = Callable[[TransportState, TransportState, int], None]


class PushTransport(Protocol):
    """Minimal push channel the manager drives."""

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def subscribe(self, topic: Topic) -> None: ...

    async def unsubscribe(self, topic: Topic) -> None: ...

    def set_handlers(self, on_message: MessageHandler, on_lost: LostHandler) -> None: ...


class TransportManager:
    """Own the connection lifecycle of a push transport.

    Connect failures move to ERROR and transport loss to DISCONNECTED, and
    both schedule a reconnect after ``policy.delay(attempt)``. Once
    ``policy.max_attempts`` reconnects have been scheduled without success
    the manager settles in ERROR until :meth:`reset` is called.

    With ``heartbeat_timeout`` set, a connection that stays silent that long
    while topics are subscribed is closed and handled like any other loss.
    """

    def __init__(
        self,
        transport: PushTransport,
        policy: BackoffPolicy | None = None,
        on_message: MessageHandler | None = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        name: str = "push",
        heartbeat_timeout: float | None = None,
    ) -> None:
        if heartbeat_timeout is not None and heartbeat_timeout <= 0:
            raise ValueError("heartbeat_timeout must be positive")
        self._transport = transport
        self._policy = policy or BackoffPolicy()
        self._on_message = on_message
        self._sleep = sleep
        self._name = name
        self._state = TransportState.DISCONNECTED
        self._listeners: list[StateListener] = []
        self._topics: set[Topic] = set()
        self._reconnect_task: asyncio.Task[None] | None = None
        self._heartbeat_timeout = heartbeat_timeout
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._last_activity = 0.0
        self._generation = 0
        self._running = False
        self._exhausted = False
        self._attempts = 0
        self.reconnect_delays: list[float] = []
        transport.set_handlers(self._handle_message, self._handle_lost)

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def running(self) -> bool:
        return self._running

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def topics(self) -> frozenset[Topic]:
        return frozenset(self._topics)

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    def set_message_handler(self, handler: MessageHandler | None) -> None:
        self._on_message = handler

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        if self._exhausted:
            logger.warning("{} transport exhausted its reconnect attempts; call reset()", self._name)
            return
        await self._connect()

    async def stop(self) -> None:
        """Close the transport, cancel any pending reconnect and return to DISCONNECTED."""
        self._running = False
        self._generation += 1
        await self._cancel_reconnect()
        await self._cancel_heartbeat()
        if self._state in (TransportState.CONNECTED, TransportState.CONNECTING):
            try:
                await self._transport.close()
            except Exception as exc:
                logger.warning("Error closing {} transport: {}", self._name, exc)
        if self._state != TransportState.DISCONNECTED:
            self._transition(TransportState.DISCONNECTED)
        self._attempts = 0
        self._exhausted = False

    async def reset(self) -> None:
        """Clear the retry budget and, if running, try to connect again."""
        await self._cancel_reconnect()
        self._attempts = 0
        self._exhausted = False
        self.reconnect_delays.clear()
        if self._running and self._state != TransportState.CONNECTED:
            await self._connect()

    async def subscribe(self, topic: Topic) -> None:
        self._topics.add(topic)
        if self._state == TransportState.CONNECTED:
            self._touch()
            try:
                await self._transport.subscribe(topic)
            except Exception as exc:
                logger.warning("Failed to subscribe {} on {} transport: {}", topic, self._name, exc)

    async def unsubscribe(self, topic: Topic) -> None:
        self._topics.discard(topic)
        if self._state == TransportState.CONNECTED:
            try:
                await self._transport.unsubscribe(topic)
            except Exception as exc:
                logger.warning("Failed to unsubscribe {} on {} transport: {}", topic, self._name, exc)

    def _transition(self, target: TransportState) -> None:
        previous = self._state
        if not can_transition(previous, target):
            raise InvalidTransitionError(
                f"Illegal transport transition {previous.value} -> {target.value}"
            )
        self._state = target
        logger.debug("{} transport {} -> {}", self._name, previous.value, target.value)
        for listener in list(self._listeners):
            try:
                listener(target, previous, self._attempts)
            except Exception:
                logger.exception("Transport state listener failed")

    async def _connect(self) -> None:
        # a newer attempt or a stop() makes this one stale
        self._generation += 1
        generation = self._generation
        if self._state != TransportState.CONNECTING:
            self._transition(TransportState.CONNECTING)
        try:
            await self._transport.connect()
            for topic in list(self._topics):
                await self._transport.subscribe(topic)
        except Exception as exc:
            logger.warning("{} transport connect failed: {}", self._name, exc)
            if generation != self._generation or not self._running:
                return
            if self._state != TransportState.ERROR:
                self._transition(TransportState.ERROR)
            self._schedule_reconnect()
            return
        if generation != self._generation or not self._running:
            if not self._running:
                # stop() raced the handshake
                await self._transport.close()
                if self._state != TransportState.DISCONNECTED:
                    self._transition(TransportState.DISCONNECTED)
            return
        self._attempts = 0
        self._transition(TransportState.CONNECTED)
        self._start_heartbeat()
        logger.info("{} transport connected", self._name)

    def _schedule_reconnect(self) -> None:
        if not self._running:
            return
        current = asyncio.current_task()
        if self.reconnect_pending and self._reconnect_task is not current:
            return
        if self._attempts >= self._policy.max_attempts:
            self._exhausted = True
            if self._state != TransportState.ERROR:
                self._transition(TransportState.ERROR)
            logger.error(
                "{} transport gave up after {} reconnect attempts", self._name, self._attempts
            )
            return
        delay = self._policy.delay(self._attempts)
        self._attempts += 1
        self.reconnect_delays.append(delay)
        logger.info(
            "Reconnecting {} transport in {:.2f}s (attempt {}/{})",
            self._name,
            delay,
            self._attempts,
            self._policy.max_attempts,
        )
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        # the handle stays set until the attempt finishes so stop() can cancel it
        try:
            await self._sleep(delay)
            if self._running:
                await self._connect()
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    async def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _touch(self) -> None:
        self._last_activity = asyncio.get_running_loop().time()

    def _start_heartbeat(self) -> None:
        if self._heartbeat_timeout is None:
            return
        previous, self._heartbeat_task = self._heartbeat_task, None
        if previous is not None and previous is not asyncio.current_task():
            previous.cancel()
        self._touch()
        self._heartbeat_task = asyncio.get_running_loop().create_task(
            self._watch_heartbeat(self._heartbeat_timeout)
        )

    async def _cancel_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _watch_heartbeat(self, timeout: float) -> None:
        loop = asyncio.get_running_loop()
        while self._state == TransportState.CONNECTED:
            remaining = self._last_activity + timeout - loop.time()
            if remaining > 0:
                await asyncio.sleep(remaining)
                continue
            if not self._topics:
                # nothing subscribed, so silence is expected
                self._touch()
                continue
            logger.warning(
                "{} transport silent for {:.2f}s; treating the connection as lost",
                self._name,
                timeout,
            )
            try:
                await self._transport.close()
            except Exception as exc:
                logger.warning("Error closing stale {} transport: {}", self._name, exc)
            self._handle_lost(TransportError(f"No messages received for {timeout:.2f}s"))
            return

    async def _handle_message(self, message: TransportMessage) -> None:
        if self._state != TransportState.CONNECTED or self._on_message is None:
            return
        self._touch()
        if message.topic not in self._topics:
            return
        try:
            result = self._on_message(message)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Push message handler failed for {}", message.topic)

    def _handle_lost(self, exc: Exception | None = None) -> None:
        if self._state != TransportState.CONNECTED:
            return
        logger.warning("{} transport lost: {}", self._name, exc or "connection closed")
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self._transition(TransportState.DISCONNECTED)
        self._schedule_reconnect()
