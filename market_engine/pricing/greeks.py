"""Closed-form Black-Scholes sensitivities.

The standard normal CDF is built on the Abramowitz-Stegun 7.1.26 rational
approximation of ``erf`` (max absolute error about 1.5e-7).
"""

from __future__ import annotations

import math

from market_engine.core.constants import DAYS_PER_YEAR
from market_engine.models import Greeks, OptionClass

_A1 = 0.254829592
_A2 = -0.284496736
_A3 = 1.421413741
_A4 = -1.453152027
_A5 = 1.061405429
_P = 0.3275911

_SQRT_2 = math.sqrt(2.0)
_SQRT_2PI = math.sqrt(2.0 * math.pi)

NAN_GREEKS = Greeks(
    delta=math.nan, gamma=math.nan, theta=math.nan, vega=math.nan, rho=math.nan
)


def erf(x: float) -> float:
    """Abramowitz-Stegun approximation of the error function."""
    sign = 1.0 if x >= 0 else -1.0
    x = abs(x)
    t = 1.0 / (1.0 + _P * x)
    y = 1.0 - (((((_A5 * t + _A4) * t) + _A3) * t + _A2) * t + _A1) * t * math.exp(-x * x)
    return sign * y


def norm_cdf(x: float) -> float:
    return 0.5 * (1.0 + erf(x / _SQRT_2))


def norm_pdf(x: float) -> float:
    return math.exp(-0.5 * x * x) / _SQRT_2PI


def d1_d2(
    spot: float,
    strike: float,
    time_to_expiry_years: float,
    volatility: float,
    risk_free_rate: float,
) -> tuple[float, float]:
    sigma_sqrt_t = volatility * math.sqrt(time_to_expiry_years)
    d1 = (
        math.log(spot / strike) + (risk_free_rate + 0.5 * volatility * volatility) * time_to_expiry_years
    ) / sigma_sqrt_t
    return d1, d1 - sigma_sqrt_t


def compute_greeks(
    spot: float,
    strike: float,
    time_to_expiry_years: float,
    volatility: float,
    risk_free_rate: float,
    option_class: OptionClass,
) -> Greeks:
    """Return Black-Scholes Greeks for a European option.

    Theta is expressed per calendar day, vega and rho per one percentage
    point move in volatility and rate. Inputs outside the model's domain
    (non-positive spot, strike, time or volatility) produce NaN Greeks
    rather than raising; callers decide how to degrade.
    """
    if not (spot > 0 and strike > 0 and time_to_expiry_years > 0 and volatility > 0):
        return NAN_GREEKS
    try:
        d1, d2 = d1_d2(spot, strike, time_to_expiry_years, volatility, risk_free_rate)
    except (ValueError, ZeroDivisionError, OverflowError):
        return NAN_GREEKS

    sqrt_t = math.sqrt(time_to_expiry_years)
    discount = math.exp(-risk_free_rate * time_to_expiry_years)
    pdf_d1 = norm_pdf(d1)
    decay = -spot * pdf_d1 * volatility / (2.0 * sqrt_t)

    if option_class == OptionClass.CALL:
        delta = norm_cdf(d1)
        theta = (decay - risk_free_rate * strike * discount * norm_cdf(d2)) / DAYS_PER_YEAR
        rho = strike * time_to_expiry_years * discount * norm_cdf(d2) / 100.0
    else:
        delta = norm_cdf(d1) - 1.0
        theta = (decay + risk_free_rate * strike * discount * norm_cdf(-d2)) / DAYS_PER_YEAR
        rho = -strike * time_to_expiry_years * discount * norm_cdf(-d2) / 100.0

    gamma = pdf_d1 / (spot * volatility * sqrt_t)
    vega = spot * pdf_d1 * sqrt_t / 100.0
    return Greeks(delta=delta, gamma=gamma, theta=theta, vega=vega, rho=rho)
