"""Mean-reverting stochastic price process for the demo instrument universe."""

from __future__ import annotations

import random
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime

from loguru import logger

from market_engine.core.config import EngineConfig, InstrumentSpec, MarketHours
from market_engine.core.constants import (
    MEAN_REVERSION_STRENGTH,
    MIN_QUOTE_SPREAD,
    PRICE_FLOOR_FRACTION,
    QUOTE_SPREAD_FRACTION,
    TREND_BIAS_SCALE,
    TREND_MIN_AGE_TICKS,
    TREND_STRENGTH_RANGE,
)
from market_engine.core.errors import UnknownInstrumentError
from market_engine.models import InstrumentQuote, Trend

_TREND_DIRECTION = {Trend.BULLISH: 1.0, Trend.BEARISH: -1.0, Trend.SIDEWAYS: 0.0}


@dataclass(slots=True)
class _InstrumentState:
    spec: InstrumentSpec
    price: float
    history: deque[float]
    trend: Trend
    trend_strength: float
    trend_age: int = 0
    last_update: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


class PriceProcessGenerator:
    """Advance one simulated price per instrument on every tick.

    Each step combines a trend bias, a pull back towards the base price and
    a bounded uniform shock, scaled by the instrument's volatility. Prices
    never fall below half of the configured base price.
    """

    def __init__(
        self,
        instruments: Mapping[str, InstrumentSpec],
        *,
        max_movement_per_tick: float = 0.02,
        volume_variation: float = 0.3,
        trend_persistence: float = 0.7,
        history_length: int = 1000,
        market_hours: MarketHours | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._max_movement = max_movement_per_tick
        self._volume_variation = volume_variation
        self._trend_persistence = trend_persistence
        self._market_hours = market_hours
        self._rng = rng or random.Random()
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._states: dict[str, _InstrumentState] = {}
        for spec in instruments.values():
            self._states[spec.symbol] = _InstrumentState(
                spec=spec,
                price=spec.base_price,
                history=deque([spec.base_price], maxlen=history_length),
                trend=spec.trend,
                trend_strength=spec.trend_strength,
                last_update=self._clock(),
            )
        self._tick_count = 0

    @classmethod
    def from_config(
        cls, config: EngineConfig, *, rng: random.Random | None = None
    ) -> PriceProcessGenerator:
        return cls(
            config.instruments,
            max_movement_per_tick=config.max_movement_per_tick,
            volume_variation=config.volume_variation,
            trend_persistence=config.trend_persistence,
            history_length=config.history_length,
            market_hours=config.market_hours,
            rng=rng,
        )

    @property
    def symbols(self) -> list[str]:
        return list(self._states)

    @property
    def tick_count(self) -> int:
        return self._tick_count

    def is_market_open(self, now: datetime | None = None) -> bool:
        if self._market_hours is None:
            return True
        return self._market_hours.is_open(now or self._clock())

    def tick(self, now: datetime | None = None) -> list[InstrumentQuote]:
        """Advance every instrument one step and return the fresh quotes.

        Outside market hours nothing moves and an empty list is returned.
        """
        now = now or self._clock()
        if not self.is_market_open(now):
            return []
        quotes: list[InstrumentQuote] = []
        for state in self._states.values():
            self._advance(state)
            state.last_update = now
            quotes.append(self._build_quote(state))
        self._tick_count += 1
        return quotes

    def current_price(self, symbol: str) -> float | None:
        state = self._states.get(symbol.upper())
        return state.price if state is not None else None

    def history(self, symbol: str, n: int | None = None) -> list[float]:
        state = self._states.get(symbol.upper())
        if state is None:
            return []
        values = list(state.history)
        if n is None:
            return values
        return values[-n:] if n > 0 else []

    def quote(self, symbol: str) -> InstrumentQuote | None:
        state = self._states.get(symbol.upper())
        if state is None:
            return None
        return self._build_quote(state)

    def trend(self, symbol: str) -> tuple[Trend, float] | None:
        state = self._states.get(symbol.upper())
        if state is None:
            return None
        return state.trend, state.trend_strength

    def set_trend(self, symbol: str, trend: Trend, strength: float = 0.5) -> None:
        """Force a trend regime for ``symbol``; strength is clamped to [0, 1]."""
        state = self._states.get(symbol.upper())
        if state is None:
            raise UnknownInstrumentError(symbol)
        state.trend = Trend(trend)
        state.trend_strength = min(max(strength, 0.0), 1.0)
        state.trend_age = 0
        logger.info(
            "Trend for {} set to {} (strength {:.2f})",
            state.spec.symbol,
            state.trend.value,
            state.trend_strength,
        )

    def _advance(self, state: _InstrumentState) -> None:
        spec = state.spec
        bias = _TREND_DIRECTION[state.trend] * state.trend_strength * TREND_BIAS_SCALE
        reversion = -MEAN_REVERSION_STRENGTH * (state.price - spec.base_price) / spec.base_price
        shock = (self._rng.random() - 0.5) * self._max_movement
        movement = (bias + reversion + shock) * spec.volatility
        state.price = max(state.price * (1 + movement), spec.base_price * PRICE_FLOOR_FRACTION)
        state.history.append(state.price)

        state.trend_age += 1
        if (
            state.trend_age > TREND_MIN_AGE_TICKS
            and self._rng.random() < 1 - self._trend_persistence
        ):
            state.trend = self._rng.choice(list(Trend))
            state.trend_strength = self._rng.uniform(*TREND_STRENGTH_RANGE)
            state.trend_age = 0
            logger.debug(
                "Trend regime change for {}: {} ({:.2f})",
                spec.symbol,
                state.trend.value,
                state.trend_strength,
            )

    def _build_quote(self, state: _InstrumentState) -> InstrumentQuote:
        spec = state.spec
        price = state.price
        change = price - spec.base_price
        spread = max(price * QUOTE_SPREAD_FRACTION, MIN_QUOTE_SPREAD)
        volume_range = spec.volume_max - spec.volume_min
        jitter = 1 + self._volume_variation * (self._rng.random() - 0.5)
        volume = int(spec.volume_min + self._rng.random() * volume_range * jitter)
        bid = round(round((price - spread / 2) / spec.tick_size) * spec.tick_size, 2)
        ask = round(round((price + spread / 2) / spec.tick_size) * spec.tick_size, 2)
        return InstrumentQuote(
            symbol=spec.symbol,
            price=round(price, 2),
            change=round(change, 2),
            change_percent=round(change / spec.base_price * 100, 2),
            volume=max(volume, 0),
            bid=bid,
            ask=max(ask, bid),
            timestamp=state.last_update,
        )
