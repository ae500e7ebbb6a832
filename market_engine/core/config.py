"""Configuration management for the market engine."""

from __future__ import annotations

import json
from datetime import datetime, time
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from market_engine.core.constants import (
    DEFAULT_CACHE_MAX_SIZE,
    DEFAULT_CACHE_SWEEP_SECONDS,
    DEFAULT_CACHE_TTL_SECONDS,
    DEFAULT_LOG_DIR,
    DEFAULT_RISK_FREE_RATE,
    DEFAULT_STRIKES_COUNT,
    MAX_STRIKES_COUNT,
)
from market_engine.models import EngineMode, Trend


class InstrumentSpec(BaseModel):
    """Static description of a simulated instrument."""

    symbol: str = Field(..., description="Trading symbol")
    name: str = Field(default="", description="Display name")
    base_price: float = Field(..., gt=0, description="Anchor price for mean reversion")
    volatility: float = Field(default=0.2, gt=0, description="Annualised volatility")
    lot_size: int = Field(default=1, gt=0, description="Contract lot size")
    tick_size: float = Field(default=0.05, gt=0, description="Minimum price increment")
    trend: Trend = Field(default=Trend.SIDEWAYS, description="Initial trend regime")
    trend_strength: float = Field(default=0.5, ge=0.0, le=1.0)
    volume_min: int = Field(default=100_000, ge=0)
    volume_max: int = Field(default=1_000_000, ge=0)
    has_options: bool = Field(default=False, description="Whether an option chain is listed")

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        """Ensure symbol is uppercase and non-empty."""
        if not v or not v.strip():
            raise ValueError("Symbol cannot be empty")
        return v.upper().strip()

    @model_validator(mode="after")
    def validate_volume_range(self) -> InstrumentSpec:
        if self.volume_max < self.volume_min:
            raise ValueError("volume_max must be >= volume_min")
        return self


class MarketHours(BaseModel):
    """Trading session window used to gate the price tick driver."""

    open: time = Field(default=time(9, 15), description="Session open (local time)")
    close: time = Field(default=time(15, 30), description="Session close (local time)")
    timezone: str = Field(default="Asia/Kolkata", description="IANA timezone name")
    weekend_closed: bool = Field(default=True)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value}") from exc
        return value

    @model_validator(mode="after")
    def validate_window(self) -> MarketHours:
        if self.close <= self.open:
            raise ValueError("Market close must be after market open")
        return self

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def localize(self, now: datetime) -> datetime:
        if now.tzinfo is None:
            now = now.replace(tzinfo=ZoneInfo("UTC"))
        return now.astimezone(self.zone)

    def is_open(self, now: datetime) -> bool:
        """Return True when ``now`` falls inside the trading window (inclusive)."""
        local = self.localize(now)
        if self.weekend_closed and local.weekday() >= 5:
            return False
        return self.open <= local.time() <= self.close


def default_instrument_universe() -> dict[str, InstrumentSpec]:
    """Built-in NSE-flavoured universe used in demo mode."""
    specs = [
        InstrumentSpec(
            symbol="NIFTY",
            name="NIFTY 50",
            base_price=19500,
            volatility=0.15,
            lot_size=50,
            trend=Trend.SIDEWAYS,
            trend_strength=0.3,
            volume_min=1_000_000,
            volume_max=5_000_000,
            has_options=True,
        ),
        InstrumentSpec(
            symbol="BANKNIFTY",
            name="BANK NIFTY",
            base_price=44000,
            volatility=0.18,
            lot_size=15,
            trend=Trend.BULLISH,
            trend_strength=0.4,
            volume_min=800_000,
            volume_max=4_000_000,
            has_options=True,
        ),
        InstrumentSpec(
            symbol="RELIANCE",
            name="Reliance Industries Limited",
            base_price=2500,
            volatility=0.25,
            lot_size=250,
            trend=Trend.BULLISH,
            trend_strength=0.6,
            volume_min=500_000,
            volume_max=2_000_000,
            has_options=True,
        ),
        InstrumentSpec(
            symbol="TCS",
            name="Tata Consultancy Services",
            base_price=3200,
            volatility=0.20,
            lot_size=150,
            trend=Trend.SIDEWAYS,
            trend_strength=0.3,
            volume_min=300_000,
            volume_max=1_500_000,
            has_options=True,
        ),
        InstrumentSpec(
            symbol="INFY",
            name="Infosys Limited",
            base_price=1400,
            volatility=0.22,
            lot_size=300,
            trend=Trend.BULLISH,
            trend_strength=0.5,
            volume_min=400_000,
            volume_max=1_800_000,
            has_options=True,
        ),
        InstrumentSpec(
            symbol="HDFCBANK",
            name="HDFC Bank Limited",
            base_price=1600,
            volatility=0.18,
            trend=Trend.SIDEWAYS,
            trend_strength=0.4,
            volume_min=600_000,
            volume_max=2_500_000,
        ),
        InstrumentSpec(
            symbol="ICICIBANK",
            name="ICICI Bank Limited",
            base_price=900,
            volatility=0.20,
            trend=Trend.BEARISH,
            trend_strength=0.3,
            volume_min=400_000,
            volume_max=1_600_000,
        ),
    ]
    return {spec.symbol: spec for spec in specs}


_UNIVERSE_ADAPTER = TypeAdapter(list[InstrumentSpec])


def load_instrument_universe(path: Path) -> dict[str, InstrumentSpec]:
    """Load an instrument universe from a JSON list of instrument objects."""
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    specs = _UNIVERSE_ADAPTER.validate_python(payload)
    return {spec.symbol: spec for spec in specs}


class EngineConfig(BaseSettings):
    """Market engine configuration.

    Uses Pydantic v2 settings with environment variable support.
    Defaults to demo mode with a simulated push transport.
    """

    model_config = SettingsConfigDict(
        env_prefix="MARKET_ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Mode and delivery
    mode: EngineMode = Field(default=EngineMode.DEMO, description="demo or live data source")
    enable_push: bool = Field(default=True, description="Prefer the push transport")
    fallback_to_polling: bool = Field(
        default=True, description="Poll while the push transport is not connected"
    )
    tick_interval: float = Field(default=2.0, gt=0, description="Seconds between price ticks")
    push_interval: float = Field(default=2.0, gt=0, description="Push transport cadence")
    poll_interval: float = Field(
        default=4.0, gt=0, description="Polling fallback cadence (slower than push)"
    )

    # Cache
    cache_default_ttl: float = Field(default=DEFAULT_CACHE_TTL_SECONDS, gt=0)
    quote_ttl: float = Field(default=10.0, gt=0, description="TTL for cached quotes")
    chain_ttl: float = Field(default=15.0, gt=0, description="TTL for cached option chains")
    cache_max_size: int = Field(default=DEFAULT_CACHE_MAX_SIZE, gt=0)
    cache_sweep_interval: float = Field(default=DEFAULT_CACHE_SWEEP_SECONDS, gt=0)

    # Reconnect
    reconnect_base_delay: float = Field(default=1.0, gt=0)
    reconnect_backoff_factor: float = Field(default=2.0, ge=1.0)
    reconnect_max_delay: float = Field(default=30.0, gt=0)
    reconnect_max_attempts: int = Field(default=5, ge=0)
    heartbeat_timeout: float | None = Field(
        default=None,
        gt=0,
        description="Treat a connected push transport as lost after this long without messages",
    )

    # Pricing
    risk_free_rate: float = Field(default=DEFAULT_RISK_FREE_RATE)
    strikes_count: int = Field(default=DEFAULT_STRIKES_COUNT, ge=2, le=MAX_STRIKES_COUNT)

    # Simulation
    max_movement_per_tick: float = Field(default=0.02, gt=0)
    volume_variation: float = Field(default=0.3, ge=0)
    trend_persistence: float = Field(default=0.7)
    history_length: int = Field(default=1000, gt=0)
    random_seed: int | None = Field(default=None, description="Seed for reproducible runs")
    market_hours: MarketHours = Field(default_factory=MarketHours)
    instruments_file: Path | None = Field(
        default=None, description="JSON file overriding the built-in instrument universe"
    )
    instruments: dict[str, InstrumentSpec] = Field(default_factory=default_instrument_universe)

    # Paths
    log_dir: Path = Field(default=DEFAULT_LOG_DIR, description="Directory for logs")

    @field_validator("trend_persistence", "max_movement_per_tick")
    @classmethod
    def validate_fraction(cls, value: float) -> float:
        if not (0.0 <= value <= 1.0):
            raise ValueError("value must be between 0 and 1")
        return value

    @field_validator("instruments")
    @classmethod
    def normalise_instrument_keys(
        cls, value: dict[str, InstrumentSpec]
    ) -> dict[str, InstrumentSpec]:
        return {spec.symbol: spec for spec in value.values()}

    @model_validator(mode="after")
    def validate_cadence(self) -> EngineConfig:
        """Polling must stay slower than push so a live transport always wins."""
        if self.poll_interval <= self.push_interval:
            raise ValueError("poll_interval must be greater than push_interval")
        if self.reconnect_max_delay < self.reconnect_base_delay:
            raise ValueError("reconnect_max_delay must be >= reconnect_base_delay")
        if self.heartbeat_timeout is not None and self.heartbeat_timeout <= self.push_interval:
            raise ValueError("heartbeat_timeout must be greater than push_interval")
        if self.instruments_file is not None:
            self.instruments = load_instrument_universe(self.instruments_file)
        return self


def load_config() -> EngineConfig:
    """Load configuration from environment and .env file."""
    return EngineConfig()
