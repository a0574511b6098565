"""
interest.py - Utilization-based interest rate model

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DATACLASS (explicit configuration):
   - InterestRateModel: per-pool curve parameters, validated at construction

2. PURE CALCULATION FUNCTIONS (calculate_*):
   - Integer fixed-point arithmetic (WAD = 1e18), truncating division
   - No ledger access, no hidden state

3. ANALYTICS:
   - rate_curve(): sampled curve as numpy arrays for plotting and reports

Key Formulas:
    utilization = total_borrow / total_supply                   (0 if no supply)
    u <= optimal: rate = base + (rate_at_optimal - base) * u / optimal
    u >  optimal: rate = rate_at_optimal
                         + scaled_percentage * (u - optimal) / (1 - optimal)
    interest = principal * rate * elapsed_seconds / SECONDS_PER_YEAR
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .core import WAD, SECONDS_PER_YEAR, ConfigurationError, mul_div


@dataclass(frozen=True, slots=True)
class InterestRateModel:
    """
    Kinked (piecewise-linear) borrow rate curve for one pool.

    All fields are WAD-scaled integers (wad("0.05") == 5%).

    Attributes:
        base_rate: Annual rate at zero utilization.
        optimal_utilization: Kink point, strictly below 100%.
        rate_at_optimal: Annual rate exactly at the kink.
        max_utilization: Hard ceiling enforced at borrow time (>= optimal).
        scaled_percentage: Rate added across the steep segment, so that 100%
            utilization yields rate_at_optimal + scaled_percentage.
    """
    base_rate: int
    optimal_utilization: int
    rate_at_optimal: int
    max_utilization: int
    scaled_percentage: int = 0

    def __post_init__(self):
        for name in ('base_rate', 'optimal_utilization', 'rate_at_optimal',
                     'max_utilization', 'scaled_percentage'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigurationError(f"{name} must be a WAD integer, got {value!r}")
            if value < 0:
                raise ConfigurationError(f"{name} cannot be negative, got {value}")
        if self.optimal_utilization == 0 or self.optimal_utilization >= WAD:
            raise ConfigurationError(
                f"optimal_utilization must be in (0, 100%), got {self.optimal_utilization}"
            )
        if self.rate_at_optimal < self.base_rate:
            raise ConfigurationError(
                f"rate_at_optimal ({self.rate_at_optimal}) cannot be below "
                f"base_rate ({self.base_rate})"
            )
        if self.max_utilization < self.optimal_utilization:
            raise ConfigurationError(
                f"max_utilization ({self.max_utilization}) cannot be below "
                f"optimal_utilization ({self.optimal_utilization})"
            )
        if self.max_utilization > WAD:
            raise ConfigurationError(
                f"max_utilization cannot exceed 100%, got {self.max_utilization}"
            )

    @classmethod
    def fixed(cls, rate: int, max_utilization: int = WAD) -> InterestRateModel:
        """A flat curve: the same rate at every utilization."""
        return cls(
            base_rate=rate,
            optimal_utilization=WAD // 2,
            rate_at_optimal=rate,
            max_utilization=max_utilization,
            scaled_percentage=0,
        )


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_utilization(total_borrow_assets: int, total_supply_assets: int) -> int:
    """Borrowed / supplied as a WAD ratio; 0 when nothing is supplied."""
    if total_supply_assets == 0:
        return 0
    return mul_div(total_borrow_assets, WAD, total_supply_assets)


def calculate_borrow_rate(model: InterestRateModel, utilization: int) -> int:
    """
    Annual borrow rate (WAD) at a utilization (WAD).

    Utilization above 100% is clamped, which only happens on transient
    projected states.
    """
    utilization = max(0, min(utilization, WAD))

    if utilization <= model.optimal_utilization:
        slope = model.rate_at_optimal - model.base_rate
        return model.base_rate + mul_div(slope, utilization, model.optimal_utilization)

    excess = utilization - model.optimal_utilization
    return model.rate_at_optimal + mul_div(
        model.scaled_percentage, excess, WAD - model.optimal_utilization
    )


def calculate_supply_rate(model: InterestRateModel, utilization: int) -> int:
    """
    Annual rate earned by suppliers.

    Every unit of interest paid by borrowers is credited to suppliers, so the
    supply rate is the borrow rate weighted by utilization.
    """
    utilization = max(0, min(utilization, WAD))
    return mul_div(calculate_borrow_rate(model, utilization), utilization, WAD)


def calculate_interest(rate: int, elapsed_seconds: int, principal: int) -> int:
    """
    Simple interest on principal at an annual WAD rate over elapsed seconds.

    interest = principal * rate * elapsed / (SECONDS_PER_YEAR * WAD)

    Example:
        # 1,000,000 units at 10% for a full year
        calculate_interest(wad("0.10"), SECONDS_PER_YEAR, 1_000_000)  # 100_000
    """
    if elapsed_seconds <= 0 or principal <= 0 or rate <= 0:
        return 0
    return (principal * rate * elapsed_seconds) // (SECONDS_PER_YEAR * WAD)


def calculate_pool_interest(
    model: InterestRateModel,
    total_borrow_assets: int,
    total_supply_assets: int,
    elapsed_seconds: int,
) -> Tuple[int, int]:
    """
    Interest owed by a pool's borrowers for a period.

    Returns:
        (borrow_rate, interest)
    """
    utilization = calculate_utilization(total_borrow_assets, total_supply_assets)
    rate = calculate_borrow_rate(model, utilization)
    return rate, calculate_interest(rate, elapsed_seconds, total_borrow_assets)


# ============================================================================
# ANALYTICS
# ============================================================================

def rate_curve(model: InterestRateModel, n_points: int = 101) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Sample the curve across utilization 0%..100%.

    Returns:
        (utilization, borrow_rate, supply_rate) as float arrays of fractions
        (0.05 == 5%).
    """
    if n_points < 2:
        raise ValueError(f"n_points must be at least 2, got {n_points}")
    utilizations = np.linspace(0.0, 1.0, n_points)
    wads = [int(round(u * WAD)) for u in utilizations]
    borrow_rates = np.array([calculate_borrow_rate(model, u) for u in wads], dtype=float) / WAD
    supply_rates = np.array([calculate_supply_rate(model, u) for u in wads], dtype=float) / WAD
    return utilizations, borrow_rates, supply_rates
