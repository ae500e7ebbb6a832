"""Common constants shared across the market engine."""

from __future__ import annotations

from pathlib import Path

# ---- Price process -------------------------------------------------------

PRICE_FLOOR_FRACTION = 0.5
TREND_BIAS_SCALE = 0.001
MEAN_REVERSION_STRENGTH = 0.1
TREND_MIN_AGE_TICKS = 100
TREND_STRENGTH_RANGE = (0.2, 1.0)
QUOTE_SPREAD_FRACTION = 0.001
MIN_QUOTE_SPREAD = 0.05

# ---- Option chains -------------------------------------------------------

DEFAULT_STRIKES_COUNT = 20
MAX_STRIKES_COUNT = 50
MIN_PREMIUM = 0.05
MIN_OPTION_SPREAD = 0.05
OPTION_SPREAD_FRACTION = 0.02
TIME_VALUE_FACTOR = 0.4
IV_NOISE_RANGE = 0.1
MIN_TIME_TO_EXPIRY_YEARS = 1.0 / 365.0
MIN_VOLATILITY = 0.01
DAYS_PER_YEAR = 365.0
DEFAULT_RISK_FREE_RATE = 0.06

# (upper spot bound, interval); spots at or above the last bound use the fallback.
STRIKE_INTERVAL_BRACKETS: tuple[tuple[float, float], ...] = (
    (500.0, 10.0),
    (1000.0, 25.0),
    (2000.0, 50.0),
    (5000.0, 100.0),
    (10000.0, 250.0),
)
STRIKE_INTERVAL_FALLBACK = 500.0

# (moneyness upper bound, base volume, base open interest)
MONEYNESS_BANDS: tuple[tuple[float, int, int], ...] = (
    (0.02, 5000, 10000),
    (0.05, 3000, 6000),
    (0.10, 1500, 3000),
)
DEEP_MONEYNESS_VOLUME = 500
DEEP_MONEYNESS_OPEN_INTEREST = 1000

# ---- Cache ---------------------------------------------------------------

QUOTE_KEY_PREFIX = "quote:"
CHAIN_KEY_PREFIX = "chain:"
DEFAULT_CACHE_TTL_SECONDS = 5.0
DEFAULT_CACHE_MAX_SIZE = 1000
DEFAULT_CACHE_SWEEP_SECONDS = 30.0

# ---- Paths ---------------------------------------------------------------

DEFAULT_LOG_DIR = Path("logs")
DEFAULT_HISTORY_EXPORT = Path("data/price_history.csv")
