"""Synthetic option chain construction around the simulated spot price."""

from __future__ import annotations

import calendar
import math
import random
from collections.abc import Callable, Mapping
from datetime import UTC, date, datetime, timedelta
from types import MappingProxyType
from typing import Protocol

from loguru import logger

from market_engine.core.config import InstrumentSpec, MarketHours
from market_engine.core.constants import (
    DAYS_PER_YEAR,
    DEEP_MONEYNESS_OPEN_INTEREST,
    DEEP_MONEYNESS_VOLUME,
    DEFAULT_RISK_FREE_RATE,
    DEFAULT_STRIKES_COUNT,
    IV_NOISE_RANGE,
    MIN_OPTION_SPREAD,
    MIN_PREMIUM,
    MIN_TIME_TO_EXPIRY_YEARS,
    MIN_VOLATILITY,
    MONEYNESS_BANDS,
    OPTION_SPREAD_FRACTION,
    STRIKE_INTERVAL_BRACKETS,
    STRIKE_INTERVAL_FALLBACK,
    TIME_VALUE_FACTOR,
)
from market_engine.models import OptionChain, OptionClass, OptionContract, StrikeRow
from market_engine.pricing.greeks import compute_greeks

_MONTH_CODES = (
    "JAN",
    "FEB",
    "MAR",
    "APR",
    "MAY",
    "JUN",
    "JUL",
    "AUG",
    "SEP",
    "OCT",
    "NOV",
    "DEC",
)
_THURSDAY = 3
_SECONDS_PER_YEAR = DAYS_PER_YEAR * 24 * 60 * 60


class SpotSource(Protocol):
    """Anything that can report the current spot price of a symbol."""

    def current_price(self, symbol: str) -> float | None: ...


def _last_thursday(year: int, month: int) -> date:
    last_day = date(year, month, calendar.monthrange(year, month)[1])
    return last_day - timedelta(days=(last_day.weekday() - _THURSDAY) % 7)


def next_monthly_expiry(today: date) -> date:
    """Return the last Thursday of ``today``'s month, or of the next month once it has passed."""
    expiry = _last_thursday(today.year, today.month)
    if expiry < today:
        year, month = (today.year + 1, 1) if today.month == 12 else (today.year, today.month + 1)
        expiry = _last_thursday(year, month)
    return expiry


def strike_interval(spot: float) -> float:
    for upper_bound, interval in STRIKE_INTERVAL_BRACKETS:
        if spot < upper_bound:
            return interval
    return STRIKE_INTERVAL_FALLBACK


def generate_strikes(
    spot: float, count: int = DEFAULT_STRIKES_COUNT, interval: float | None = None
) -> list[float]:
    """Build a symmetric strike ladder centred on the at-the-money strike.

    ``count // 2`` strikes are placed on each side of the ATM strike, so the
    default of 20 yields 21 strikes. Non-positive strikes are dropped for
    low-priced underlyings.
    """
    step = interval if interval is not None else strike_interval(spot)
    if step <= 0:
        raise ValueError("Strike interval must be positive")
    atm = math.floor(spot / step + 0.5) * step
    half = count // 2
    strikes = (atm + offset * step for offset in range(-half, half + 1))
    return sorted(float(strike) for strike in strikes if strike > 0)


def option_symbol(underlying: str, expiry: date, strike: float, option_class: OptionClass) -> str:
    """Exchange-style contract code, e.g. ``NIFTY28SEP2319500CE``."""
    strike_text = str(int(strike)) if float(strike).is_integer() else f"{strike:g}"
    return (
        f"{underlying}{expiry.day:02d}{_MONTH_CODES[expiry.month - 1]}"
        f"{expiry.year % 100:02d}{strike_text}{option_class.value}"
    )


def _round_to_tick(value: float, tick_size: float) -> float:
    return round(round(value / tick_size) * tick_size, 2)


class OptionChainBuilder:
    """Derive full call/put chains for optionable instruments.

    Every contract in a chain is priced from one spot, time-to-expiry,
    volatility and rate snapshot taken at the start of ``build_chain``.
    """

    def __init__(
        self,
        spot_source: SpotSource,
        instruments: Mapping[str, InstrumentSpec],
        *,
        strikes_count: int = DEFAULT_STRIKES_COUNT,
        risk_free_rate: float = DEFAULT_RISK_FREE_RATE,
        market_hours: MarketHours | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._spot_source = spot_source
        self._instruments = instruments
        self._strikes_count = strikes_count
        self._risk_free_rate = risk_free_rate
        self._market_hours = market_hours or MarketHours()
        self._rng = rng or random.Random()
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    @property
    def underlyings(self) -> list[str]:
        return [symbol for symbol, spec in self._instruments.items() if spec.has_options]

    def time_to_expiry(self, expiry: date, now: datetime) -> float:
        """Years from ``now`` until market close on ``expiry``, clamped at one day."""
        close = datetime.combine(expiry, self._market_hours.close, tzinfo=self._market_hours.zone)
        remaining = (close - self._market_hours.localize(now)).total_seconds() / _SECONDS_PER_YEAR
        return max(remaining, MIN_TIME_TO_EXPIRY_YEARS)

    def build_chain(self, underlying: str, now: datetime | None = None) -> OptionChain | None:
        symbol = underlying.upper().strip()
        spec = self._instruments.get(symbol)
        if spec is None or not spec.has_options:
            logger.debug("No option chain available for {}", symbol)
            return None

        spot = self._spot_source.current_price(symbol)
        if spot is None or not math.isfinite(spot) or spot <= 0:
            logger.debug("No spot price for {}; skipping chain build", symbol)
            return None

        now = now or self._clock()
        expiry = next_monthly_expiry(self._market_hours.localize(now).date())
        time_to_expiry = self.time_to_expiry(expiry, now)
        volatility = max(spec.volatility, MIN_VOLATILITY)
        rate = self._risk_free_rate

        rows: dict[float, StrikeRow] = {}
        for strike in generate_strikes(spot, self._strikes_count):
            rows[strike] = StrikeRow(
                call=self._build_contract(
                    spec, strike, expiry, OptionClass.CALL, spot, time_to_expiry, volatility, rate
                ),
                put=self._build_contract(
                    spec, strike, expiry, OptionClass.PUT, spot, time_to_expiry, volatility, rate
                ),
            )

        return OptionChain(
            underlying=symbol,
            spot_price=spot,
            expiry=expiry,
            last_updated=now,
            time_to_expiry=time_to_expiry,
            volatility=volatility,
            risk_free_rate=rate,
            strikes=MappingProxyType(rows),
        )

    def _build_contract(
        self,
        spec: InstrumentSpec,
        strike: float,
        expiry: date,
        option_class: OptionClass,
        spot: float,
        time_to_expiry: float,
        volatility: float,
        rate: float,
    ) -> OptionContract:
        if option_class == OptionClass.CALL:
            intrinsic = max(spot - strike, 0.0)
        else:
            intrinsic = max(strike - spot, 0.0)
        time_value = math.sqrt(time_to_expiry) * volatility * spot * TIME_VALUE_FACTOR
        premium = max(intrinsic + time_value, MIN_PREMIUM)
        if not math.isfinite(premium):
            logger.warning(
                "Non-finite premium for {} {} {}; using minimum premium",
                spec.symbol,
                strike,
                option_class.value,
            )
            premium = MIN_PREMIUM

        spread = max(premium * OPTION_SPREAD_FRACTION, MIN_OPTION_SPREAD)
        bid = max(_round_to_tick(premium - spread / 2, spec.tick_size), MIN_PREMIUM)
        ask = max(_round_to_tick(premium + spread / 2, spec.tick_size), bid)

        greeks = compute_greeks(spot, strike, time_to_expiry, volatility, rate, option_class)
        if not greeks.is_finite:
            logger.debug(
                "Greeks degraded for {} {} {}", spec.symbol, strike, option_class.value
            )
            greeks = None

        implied_vol = volatility + self._rng.uniform(-IV_NOISE_RANGE / 2, IV_NOISE_RANGE / 2)

        return OptionContract(
            symbol=option_symbol(spec.symbol, expiry, strike, option_class),
            underlying=spec.symbol,
            strike=strike,
            expiry=expiry,
            option_class=option_class,
            bid=bid,
            ask=ask,
            last_price=round(premium, 2),
            volume=self._option_volume(strike, spot),
            open_interest=self._open_interest(strike, spot),
            implied_volatility=round(max(implied_vol, MIN_VOLATILITY), 4),
            lot_size=spec.lot_size,
            greeks=greeks,
        )

    def _moneyness_band(self, strike: float, spot: float) -> tuple[int, int]:
        moneyness = abs(strike - spot) / spot
        for upper_bound, volume, open_interest in MONEYNESS_BANDS:
            if moneyness < upper_bound:
                return volume, open_interest
        return DEEP_MONEYNESS_VOLUME, DEEP_MONEYNESS_OPEN_INTEREST

    def _option_volume(self, strike: float, spot: float) -> int:
        base_volume, _ = self._moneyness_band(strike, spot)
        return int(base_volume * self._rng.uniform(0.5, 1.5))

    def _open_interest(self, strike: float, spot: float) -> int:
        _, base_oi = self._moneyness_band(strike, spot)
        if strike % 100 == 0:
            base_oi *= 1.5
        elif strike % 50 == 0:
            base_oi *= 1.2
        return int(base_oi * self._rng.uniform(0.7, 1.3))
