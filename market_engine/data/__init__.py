"""Data access layer (freshness cache and data sources)."""

from .cache import CacheStats, FreshnessCache, chain_key, quote_key

__all__ = [
    "CacheStats",
    "FreshnessCache",
    "chain_key",
    "quote_key",
]
