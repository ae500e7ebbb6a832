"""Market Engine - simulated real-time market data and options pricing."""

__version__ = "0.1.0"

from market_engine.core.config import EngineConfig, InstrumentSpec, MarketHours, load_config
from market_engine.core.errors import (
    InvalidTransitionError,
    MarketEngineError,
    TransportError,
    UnknownInstrumentError,
)
from market_engine.data.cache import CacheStats, FreshnessCache
from market_engine.market_data import MarketDataService
from market_engine.models import (
    EngineMode,
    Greeks,
    InstrumentQuote,
    OptionChain,
    OptionClass,
    OptionContract,
    StrikeRow,
    Topic,
    TopicKind,
    TransportState,
    Trend,
)
from market_engine.pricing import OptionChainBuilder, compute_greeks
from market_engine.sim.price_process import PriceProcessGenerator
from market_engine.sources import MarketDataSource, SimulatedMarketSource
from market_engine.streaming import BackoffPolicy, SubscriptionHub, TransportManager

__all__ = [
    "EngineConfig",
    "InstrumentSpec",
    "MarketHours",
    "load_config",
    "MarketEngineError",
    "UnknownInstrumentError",
    "InvalidTransitionError",
    "TransportError",
    "CacheStats",
    "FreshnessCache",
    "MarketDataService",
    "MarketDataSource",
    "SimulatedMarketSource",
    "EngineMode",
    "Greeks",
    "InstrumentQuote",
    "OptionChain",
    "OptionClass",
    "OptionContract",
    "StrikeRow",
    "Topic",
    "TopicKind",
    "TransportState",
    "Trend",
    "OptionChainBuilder",
    "compute_greeks",
    "PriceProcessGenerator",
    "BackoffPolicy",
    "SubscriptionHub",
    "TransportManager",
]
