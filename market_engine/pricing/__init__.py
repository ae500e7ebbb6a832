"""Option pricing: Black-Scholes Greeks and synthetic chain construction."""

from .chain import (
    OptionChainBuilder,
    generate_strikes,
    next_monthly_expiry,
    option_symbol,
    strike_interval,
)
from .greeks import compute_greeks, erf, norm_cdf, norm_pdf

__all__ = [
    "OptionChainBuilder",
    "compute_greeks",
    "erf",
    "generate_strikes",
    "next_monthly_expiry",
    "norm_cdf",
    "norm_pdf",
    "option_symbol",
    "strike_interval",
]
