"""
Fare Calculation
================

Formula
-------
    distance_fare = distance_km x rate_per_km
    time_fare     = duration_min x rate_per_minute
    surge_fare    = (base + distance_fare + time_fare) x (surge_multiplier - 1)
    subtotal      = base + distance_fare + time_fare + surge_fare
    tax           = subtotal x tax_rate
    total         = round(subtotal + tax)

Default rates: base 50, 12 / km, 2 / min, 5 % tax, INR.  The breakdown
keeps unrounded components; only ``total`` is rounded (half-up).

Complexity: O(1) per calculation.
"""

from __future__ import annotations

from dataclasses import dataclass

from .geo import round_half_up


@dataclass(frozen=True)
class FareRates:
    base_fare: float = 50.0
    rate_per_km: float = 12.0
    rate_per_minute: float = 2.0
    tax_rate: float = 0.05
    currency: str = "INR"


DEFAULT_RATES = FareRates()


@dataclass(frozen=True)
class FareBreakdown:
    base: float
    distance: float
    time: float
    surge: float
    tax: float
    total: int
    currency: str = "INR"

    @property
    def subtotal(self) -> float:
        return self.base + self.distance + self.time + self.surge


def calculate_fare(
    distance_km: float,
    duration_min: float,
    surge_multiplier: float = 1.0,
    rates: FareRates = DEFAULT_RATES,
) -> FareBreakdown:
    distance_fare = distance_km * rates.rate_per_km
    time_fare = duration_min * rates.rate_per_minute
    base = rates.base_fare
    surge_fare = (base + distance_fare + time_fare) * (surge_multiplier - 1)
    subtotal = base + distance_fare + time_fare + surge_fare
    tax = subtotal * rates.tax_rate

    return FareBreakdown(
        base=base,
        distance=distance_fare,
        time=time_fare,
        surge=surge_fare,
        tax=tax,
        total=round_half_up(subtotal + tax),
        currency=rates.currency,
    )
