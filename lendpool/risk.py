"""
risk.py - Health and liquidation evaluation against oracle prices

ARCHITECTURE (Pure Function Pattern):
=====================================

1. FROZEN DATACLASSES:
   - RiskParameters: per-pool liquidation configuration (WAD ratios)
   - RiskAssessment: typed result of one position evaluation

2. PURE CALCULATION FUNCTIONS (calculate_*):
   - All inputs explicit (amounts, prices, decimals, parameters)
   - Stress testing is just calling calculate_assessment with other prices

3. RiskEngine:
   - Holds the oracle and the per-pool parameter registry
   - Reads projected pool states (require_healthy, assess) for the pool
     operations, and ledger state (is_healthy, check_liquidatable,
     health_factor) for callers, optionally projected to the current time

Every value is normalized to 18 decimals so that collateral and debt, priced
in different precisions, compare directly:

    value = amount * price * WAD // (10**amount_decimals * 10**price_decimals)
    max_safe_debt_value = collateral_value * liquidation_threshold // WAD
    liquidation_allocation_value = collateral_value * liquidation_bonus // WAD
    health_factor = max_safe_debt_value * WAD // debt_value
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Iterable, NamedTuple, Optional, Tuple

import numpy as np

from .core import (
    LedgerView, WAD,
    ConfigurationError, PositionUnhealthy,
)
from .oracle import OracleGateway
from .interest import InterestRateModel
from .pool_state import PoolTerms, PoolState, load_pool, user_debt, calculate_accrual


# ============================================================================
# FROZEN DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class RiskParameters:
    """
    Liquidation configuration of one pool. All fields are WAD ratios.

    A zero field means "not configured"; every risk check refuses to run
    until all three are set.
    """
    liquidation_threshold: int = 0
    liquidation_bonus: int = 0
    max_liquidation_percentage: int = 0

    def __post_init__(self):
        for name in ('liquidation_threshold', 'liquidation_bonus', 'max_liquidation_percentage'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigurationError(f"{name} must be a WAD integer, got {value!r}")
            if value < 0 or value > WAD:
                raise ConfigurationError(f"{name} must be in [0, 100%], got {value}")

    def is_configured(self) -> bool:
        return (
            self.liquidation_threshold > 0
            and self.liquidation_bonus > 0
            and self.max_liquidation_percentage > 0
        )


class LiquidationCheck(NamedTuple):
    is_liquidatable: bool
    debt_value: int
    max_safe_debt_value: int
    liquidation_allocation_value: int


@dataclass(frozen=True, slots=True)
class RiskAssessment:
    """Immutable result of evaluating one position."""
    debt: int
    debt_value: int
    collateral_count: int
    collateral_value: int
    max_safe_debt_value: int
    liquidation_allocation_value: int

    @property
    def is_healthy(self) -> bool:
        return self.debt_value <= self.max_safe_debt_value

    @property
    def health_factor(self) -> Optional[int]:
        """max_safe / debt as a WAD ratio; None when there is no debt."""
        if self.debt_value == 0:
            return None
        return self.max_safe_debt_value * WAD // self.debt_value

    def liquidation_check(self) -> LiquidationCheck:
        """Eligibility view of this assessment. Zero debt is never liquidatable."""
        if self.debt_value == 0:
            return LiquidationCheck(False, 0, 0, 0)
        return LiquidationCheck(
            is_liquidatable=not self.is_healthy,
            debt_value=self.debt_value,
            max_safe_debt_value=self.max_safe_debt_value,
            liquidation_allocation_value=self.liquidation_allocation_value,
        )


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def normalize_value(amount: int, amount_decimals: int, price: int, price_decimals: int) -> int:
    """
    Value of an amount in the common 18-decimal unit (floor).

    Example:
        # 800 USDC (6 decimals) at $1.00 (8 decimals)
        normalize_value(800_000_000, 6, 100_000_000, 8)  # 800 * WAD
    """
    return amount * price * WAD // (10 ** amount_decimals * 10 ** price_decimals)


def calculate_debt_value(debt: int, debt_decimals: int, price: int, price_decimals: int) -> int:
    """Value of a debt amount in debt-asset units."""
    return normalize_value(debt, debt_decimals, price, price_decimals)


def calculate_collateral_value(count: int, price: int, price_decimals: int) -> int:
    """Value of `count` collateral items; every item carries the collection price."""
    return normalize_value(count, 0, price, price_decimals)


def calculate_assessment(
    debt: int,
    debt_decimals: int,
    debt_price: int,
    debt_price_decimals: int,
    collateral_count: int,
    collateral_price: int,
    collateral_price_decimals: int,
    params: RiskParameters,
) -> RiskAssessment:
    """
    Evaluate a position from explicit inputs.

    PURE FUNCTION - no oracle and no ledger access.
    """
    debt_value = calculate_debt_value(debt, debt_decimals, debt_price, debt_price_decimals)
    collateral_value = calculate_collateral_value(
        collateral_count, collateral_price, collateral_price_decimals
    )
    return RiskAssessment(
        debt=debt,
        debt_value=debt_value,
        collateral_count=collateral_count,
        collateral_value=collateral_value,
        max_safe_debt_value=collateral_value * params.liquidation_threshold // WAD,
        liquidation_allocation_value=collateral_value * params.liquidation_bonus // WAD,
    )


# ============================================================================
# RISK ENGINE
# ============================================================================

class RiskEngine:
    """
    Health and liquidation evaluator for lending pools.

    The engine owns the per-pool RiskParameters registry and reads prices from
    an OracleGateway. It never mutates anything; pool operations call it on
    projected states before a transaction is built.

    Example:
        risk = RiskEngine(oracle)
        risk.set_risk_parameters("PUNK-USDC", RiskParameters(
            liquidation_threshold=wad("0.9"),
            liquidation_bonus=wad("0.1"),
            max_liquidation_percentage=wad("1"),
        ))
        risk.is_healthy(ledger, "PUNK-USDC", "alice")
    """

    def __init__(
        self,
        oracle: OracleGateway,
        parameters: Optional[Dict[str, RiskParameters]] = None,
    ):
        self.oracle = oracle
        self._parameters: Dict[str, RiskParameters] = dict(parameters or {})

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def set_risk_parameters(self, pool_symbol: str, params: RiskParameters) -> None:
        self._parameters[pool_symbol] = params

    def parameters(self, pool_symbol: str) -> RiskParameters:
        """Parameters of a pool (all zeros if never configured)."""
        return self._parameters.get(pool_symbol, RiskParameters())

    def _configured_parameters(self, pool_symbol: str) -> RiskParameters:
        params = self.parameters(pool_symbol)
        if not params.is_configured():
            raise ConfigurationError(
                f"Risk parameters for {pool_symbol} are not configured: "
                f"threshold, bonus and max liquidation percentage must all be set"
            )
        return params

    # ------------------------------------------------------------------
    # Projected-state evaluation
    # ------------------------------------------------------------------

    def _price(self, asset: str) -> Tuple[int, int]:
        value, _updated_at = self.oracle.price(asset)
        return value, self.oracle.decimals(asset)

    def assess(
        self,
        pool_symbol: str,
        terms: PoolTerms,
        state: PoolState,
        user: str,
    ) -> RiskAssessment:
        """
        Evaluate a user's position in a (possibly projected) pool state.

        The configuration gate runs first. A position without debt is
        reported without consulting the oracle for the debt asset.

        Raises:
            ConfigurationError: If the pool's risk parameters are not set
            OracleError: If a required price is unavailable
        """
        params = self._configured_parameters(pool_symbol)
        debt = user_debt(state, user)
        count = state.position(user).collateral_count

        if debt == 0:
            return RiskAssessment(
                debt=0,
                debt_value=0,
                collateral_count=count,
                collateral_value=0,
                max_safe_debt_value=0,
                liquidation_allocation_value=0,
            )

        debt_price, debt_price_decimals = self._price(terms.debt_asset)
        collateral_price, collateral_price_decimals = self._price(terms.collateral_asset)
        return calculate_assessment(
            debt, terms.debt_decimals, debt_price, debt_price_decimals,
            count, collateral_price, collateral_price_decimals,
            params,
        )

    def require_healthy(
        self,
        pool_symbol: str,
        terms: PoolTerms,
        state: PoolState,
        user: str,
        max_ratio: Optional[int] = None,
    ) -> RiskAssessment:
        """
        Fail with PositionUnhealthy if debt value exceeds the safe debt value.

        Args:
            max_ratio: Ratio applied to the collateral value instead of the
                liquidation threshold (the origination LTV for borrows and
                collateral withdrawals)
        """
        assessment = self.assess(pool_symbol, terms, state, user)
        if assessment.debt_value == 0:
            return assessment

        if max_ratio is None:
            limit = assessment.max_safe_debt_value
        else:
            limit = assessment.collateral_value * max_ratio // WAD

        if assessment.debt_value > limit:
            raise PositionUnhealthy(
                f"{user} in {pool_symbol}: debt value {assessment.debt_value} "
                f"exceeds safe debt value {limit}"
            )
        return assessment

    def liquidation_check(
        self,
        pool_symbol: str,
        terms: PoolTerms,
        state: PoolState,
        user: str,
    ) -> LiquidationCheck:
        """Liquidation eligibility in a given pool state."""
        return self.assess(pool_symbol, terms, state, user).liquidation_check()

    # ------------------------------------------------------------------
    # Ledger-state queries
    #
    # These read the pool as stored on the ledger, i.e. as of its
    # last_accrued_at. Pass the pool's rate_model to project interest up to
    # the ledger's current time first, as LendingPool's views do.
    # ------------------------------------------------------------------

    def _load(
        self,
        view: LedgerView,
        pool_symbol: str,
        rate_model: Optional[InterestRateModel],
    ) -> Tuple[PoolTerms, PoolState]:
        terms, state = load_pool(view, pool_symbol)
        if rate_model is not None:
            state, _interest = calculate_accrual(state, rate_model, view.current_time)
        return terms, state

    def is_healthy(
        self,
        view: LedgerView,
        pool_symbol: str,
        user: str,
        rate_model: Optional[InterestRateModel] = None,
    ) -> bool:
        """
        Check a user's position against the liquidation threshold.

        Returns True for a healthy position. Without a rate_model the debt
        is the last-accrued debt.

        Raises:
            PositionUnhealthy: If debt value exceeds the maximum safe debt value
            ConfigurationError: If the pool's risk parameters are not set
        """
        terms, state = self._load(view, pool_symbol, rate_model)
        self.require_healthy(pool_symbol, terms, state, user)
        return True

    def check_liquidatable(
        self,
        view: LedgerView,
        pool_symbol: str,
        user: str,
        rate_model: Optional[InterestRateModel] = None,
    ) -> LiquidationCheck:
        """
        Same computation as is_healthy, reported instead of raised.

        Returns:
            LiquidationCheck(is_liquidatable, debt_value, max_safe_debt_value,
                             liquidation_allocation_value)
        """
        terms, state = self._load(view, pool_symbol, rate_model)
        return self.liquidation_check(pool_symbol, terms, state, user)

    def collateral_value(self, view: LedgerView, pool_symbol: str, user: str) -> int:
        """18-decimal value of a user's collateral."""
        terms, state = load_pool(view, pool_symbol)
        count = state.position(user).collateral_count
        if count == 0:
            return 0
        price, price_decimals = self._price(terms.collateral_asset)
        return calculate_collateral_value(count, price, price_decimals)

    def health_factor(
        self,
        view: LedgerView,
        pool_symbol: str,
        user: str,
        rate_model: Optional[InterestRateModel] = None,
    ) -> Optional[int]:
        """Health factor as a WAD ratio (< WAD is liquidatable); None without debt."""
        terms, state = self._load(view, pool_symbol, rate_model)
        return self.assess(pool_symbol, terms, state, user).health_factor

    def max_borrow_value(
        self,
        pool_symbol: str,
        terms: PoolTerms,
        state: PoolState,
        user: str,
        max_ratio: int,
    ) -> int:
        """
        Additional debt (in debt-asset units) a user could take on before
        crossing max_ratio of their collateral value.
        """
        count = state.position(user).collateral_count
        if count == 0:
            return 0
        collateral_price, collateral_price_decimals = self._price(terms.collateral_asset)
        debt_price, debt_price_decimals = self._price(terms.debt_asset)

        collateral_value = calculate_collateral_value(count, collateral_price, collateral_price_decimals)
        limit_value = collateral_value * max_ratio // WAD

        # Largest total debt whose floored value stays within limit_value
        scale = 10 ** terms.debt_decimals * 10 ** debt_price_decimals
        max_debt = ((limit_value + 1) * scale - 1) // (debt_price * WAD)
        return max(0, max_debt - user_debt(state, user))

    def stress_health_factors(
        self,
        view: LedgerView,
        pool_symbol: str,
        user: str,
        price_shocks: Iterable[float],
        rate_model: Optional[InterestRateModel] = None,
    ) -> np.ndarray:
        """
        Health factors under relative collateral price shocks.

        Args:
            price_shocks: Relative moves of the collateral price, e.g.
                [0.0, -0.1, -0.3] for unchanged, -10% and -30%
            rate_model: When given, interest is accrued to the ledger's
                current time before valuing the debt

        Returns:
            Float array of health factors (1.0 == liquidation boundary);
            all inf when the user has no debt.

        Example:
            factors = risk.stress_health_factors(ledger, "PUNK-USDC", "alice",
                                                 np.linspace(0, -0.5, 11))
            first_breach = np.argmax(factors < 1.0)
        """
        shocks = np.asarray(list(price_shocks), dtype=float)
        params = self._configured_parameters(pool_symbol)
        terms, state = self._load(view, pool_symbol, rate_model)

        debt = user_debt(state, user)
        if debt == 0:
            return np.full(shocks.shape, np.inf)

        debt_price, debt_price_decimals = self._price(terms.debt_asset)
        collateral_price, collateral_price_decimals = self._price(terms.collateral_asset)
        count = state.position(user).collateral_count

        factors = np.empty(shocks.shape, dtype=float)
        for i, shock in enumerate(shocks):
            shocked_price = max(0, int(collateral_price * (1.0 + shock)))
            assessment = calculate_assessment(
                debt, terms.debt_decimals, debt_price, debt_price_decimals,
                count, shocked_price, collateral_price_decimals,
                params,
            )
            factor = assessment.health_factor
            factors[i] = factor / WAD if factor is not None else np.inf
        return factors

    def __repr__(self):
        return f"RiskEngine({len(self._parameters)} pools, oracle={self.oracle!r})"
