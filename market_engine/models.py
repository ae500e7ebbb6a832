"""Market data value types shared by the simulator, pricing and streaming layers."""

from __future__ import annotations

import math
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum


class Trend(str, Enum):
    """Directional regime of a simulated instrument."""

    BULLISH = "bullish"
    BEARISH = "bearish"
    SIDEWAYS = "sideways"


class OptionClass(str, Enum):
    """Option class enumeration (exchange style codes)."""

    CALL = "CE"
    PUT = "PE"


class EngineMode(str, Enum):
    """Data source selector for the market data service."""

    DEMO = "demo"
    LIVE = "live"


class TopicKind(str, Enum):
    """Logical stream kinds a caller can subscribe to."""

    PRICE = "price"
    OPTION_CHAIN = "option_chain"


class TransportState(str, Enum):
    """Push transport connection state."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class Topic:
    """A single upstream feed: one kind of data for one symbol."""

    kind: TopicKind
    symbol: str

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.symbol}"


@dataclass(frozen=True, slots=True)
class InstrumentQuote:
    """Point-in-time quote for an instrument.

    ``change`` and ``change_percent`` are measured against the instrument's
    configured base price.
    """

    symbol: str
    price: float
    change: float
    change_percent: float
    volume: int
    bid: float
    ask: float
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class Greeks:
    """Option sensitivities. Theta is per day, vega and rho per 1% move."""

    delta: float
    gamma: float
    theta: float
    vega: float
    rho: float

    @property
    def is_finite(self) -> bool:
        return all(
            math.isfinite(value)
            for value in (self.delta, self.gamma, self.theta, self.vega, self.rho)
        )


@dataclass(frozen=True, slots=True)
class OptionContract:
    """Synthetic option contract derived from its underlying's chain."""

    symbol: str
    underlying: str
    strike: float
    expiry: date
    option_class: OptionClass
    bid: float
    ask: float
    last_price: float
    volume: int
    open_interest: int
    implied_volatility: float
    lot_size: int
    greeks: Greeks | None = None

    @property
    def is_call(self) -> bool:
        return self.option_class == OptionClass.CALL


@dataclass(frozen=True, slots=True)
class StrikeRow:
    """Call and put contracts sharing one strike."""

    call: OptionContract
    put: OptionContract


@dataclass(frozen=True, slots=True)
class OptionChain:
    """Immutable option chain snapshot.

    Every contract in ``strikes`` was priced from ``spot_price``,
    ``time_to_expiry``, ``volatility`` and ``risk_free_rate``. Chains are
    replaced wholesale on regeneration.
    """

    underlying: str
    spot_price: float
    expiry: date
    last_updated: datetime
    time_to_expiry: float
    volatility: float
    risk_free_rate: float
    strikes: Mapping[float, StrikeRow]

    @property
    def strike_prices(self) -> list[float]:
        return sorted(self.strikes)

    def contracts(self) -> Iterator[OptionContract]:
        for strike in self.strike_prices:
            row = self.strikes[strike]
            yield row.call
            yield row.put

    def atm_strike(self) -> float | None:
        if not self.strikes:
            return None
        return min(self.strikes, key=lambda strike: abs(strike - self.spot_price))
