"""Tests for the Black-Scholes Greeks and normal distribution helpers."""

from __future__ import annotations

import math

import pytest

from market_engine.models import OptionClass
from market_engine.pricing.greeks import compute_greeks, erf, norm_cdf, norm_pdf


def test_erf_matches_math_erf_within_approximation_error() -> None:
    for x in (-3.0, -1.2, -0.3, 0.0, 0.25, 1.0, 2.5):
        assert erf(x) == pytest.approx(math.erf(x), abs=2e-7)
    assert erf(-0.7) == pytest.approx(-erf(0.7))


def test_normal_distribution_helpers() -> None:
    assert norm_cdf(0.0) == pytest.approx(0.5, abs=1e-7)
    assert norm_cdf(1.96) == pytest.approx(0.975, abs=1e-4)
    assert norm_cdf(-8.0) == pytest.approx(0.0, abs=1e-7)
    assert norm_pdf(0.0) == pytest.approx(1 / math.sqrt(2 * math.pi))


def test_call_greeks_match_reference_values() -> None:
    greeks = compute_greeks(100.0, 100.0, 1.0, 0.2, 0.05, OptionClass.CALL)

    assert greeks.delta == pytest.approx(0.63683, abs=1e-4)
    assert greeks.gamma == pytest.approx(0.018762, abs=1e-5)
    assert greeks.vega == pytest.approx(0.37524, abs=1e-4)
    assert greeks.theta == pytest.approx(-6.41401 / 365, abs=1e-5)
    assert greeks.rho == pytest.approx(0.532325, abs=1e-4)


def test_put_and_call_share_gamma_and_vega() -> None:
    call = compute_greeks(19500.0, 19600.0, 0.05, 0.15, 0.06, OptionClass.CALL)
    put = compute_greeks(19500.0, 19600.0, 0.05, 0.15, 0.06, OptionClass.PUT)

    assert put.delta == pytest.approx(call.delta - 1.0)
    assert put.gamma == pytest.approx(call.gamma)
    assert put.vega == pytest.approx(call.vega)
    assert call.theta < 0
    assert call.rho > 0 > put.rho


def test_delta_bounds_across_moneyness() -> None:
    deep_itm = compute_greeks(150.0, 100.0, 0.1, 0.2, 0.05, OptionClass.CALL)
    deep_otm = compute_greeks(50.0, 100.0, 0.1, 0.2, 0.05, OptionClass.CALL)

    assert deep_itm.delta == pytest.approx(1.0, abs=1e-3)
    assert deep_otm.delta == pytest.approx(0.0, abs=1e-3)


@pytest.mark.parametrize(
    ("spot", "strike", "years", "vol"),
    [
        (0.0, 100.0, 0.5, 0.2),
        (100.0, 0.0, 0.5, 0.2),
        (100.0, 100.0, 0.0, 0.2),
        (100.0, 100.0, 0.5, 0.0),
        (-5.0, 100.0, 0.5, 0.2),
    ],
)
def test_invalid_inputs_produce_nan_greeks(
    spot: float, strike: float, years: float, vol: float
) -> None:
    greeks = compute_greeks(spot, strike, years, vol, 0.06, OptionClass.PUT)

    assert not greeks.is_finite
    assert math.isnan(greeks.delta)
