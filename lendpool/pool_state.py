"""
pool_state.py - Typed snapshots of lending pool state

A lending pool lives in the ledger as a LENDING_POOL unit whose state dict
holds the pool totals, configuration and every user position. This module is
the bridge between that dict and typed, frozen dataclasses:

1. FROZEN DATACLASSES:
   - PoolTerms: fixed at creation (assets, decimals, custodian wallet)
   - PoolState: totals, configuration and positions at a point in time
   - UserPosition: one user's shares and collateral ids

2. ADAPTER FUNCTIONS:
   - load_pool(): the ONLY place that reads pool state from a LedgerView
   - to_state_dict(): inverse of load_pool(), used for UnitStateChange

3. SHARE CONVERSIONS:
   - convert_to_shares / convert_to_assets (floor division)

4. ACCRUAL:
   - calculate_accrual(): interest owed since last_accrued_at, booked on
     both sides

Key Formulas:
    shares = amount                                      (empty side)
    shares = amount * total_shares // total_assets       (otherwise)
    assets = shares * total_assets // total_shares
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Mapping, Tuple

from .core import (
    LedgerView, Unit, AssetKind, AssetSpec,
    WAD, UNIT_TYPE_LENDING_POOL,
    ConfigurationError, UnitNotRegistered,
    _freeze_state, mul_div,
)
from .interest import InterestRateModel, calculate_pool_interest


def custodian_wallet(pool_symbol: str) -> str:
    """Wallet that holds a pool's liquidity and collateral items."""
    return f"pool:{pool_symbol}"


# ============================================================================
# FROZEN DATACLASSES
# ============================================================================

@dataclass(frozen=True, slots=True)
class UserPosition:
    """
    A user's claims on one pool. Positions are zeroed, never removed.

    collateral_ids keeps insertion order; removal swaps the last id into the
    removed slot.
    """
    supply_shares: int = 0
    borrow_shares: int = 0
    collateral_ids: Tuple[int, ...] = ()

    @property
    def collateral_count(self) -> int:
        return len(self.collateral_ids)

    def is_empty(self) -> bool:
        return not self.supply_shares and not self.borrow_shares and not self.collateral_ids


@dataclass(frozen=True, slots=True)
class PoolTerms:
    """Immutable identity of a pool, fixed at creation."""
    collateral_asset: str
    debt_asset: str
    debt_decimals: int
    custodian: str


@dataclass(frozen=True, slots=True)
class PoolState:
    """
    Immutable snapshot of a pool. Every change creates a new instance.

    loan_to_value is a WAD ratio (0 = not configured yet).
    """
    total_supply_assets: int
    total_supply_shares: int
    total_borrow_assets: int
    total_borrow_shares: int
    total_collateral: int
    last_accrued_at: datetime
    loan_to_value: int
    min_supply_amount: int
    positions: Mapping[str, UserPosition] = field(default_factory=dict)

    def position(self, user: str) -> UserPosition:
        """Position of a user (all zeros if the user never interacted)."""
        return self.positions.get(user, UserPosition())

    def with_position(self, user: str, position: UserPosition) -> PoolState:
        """Copy of this state with one user's position replaced."""
        positions = dict(self.positions)
        positions[user] = position
        return replace(self, positions=positions)


# ============================================================================
# ADAPTER FUNCTIONS
# ============================================================================

def load_pool(view: LedgerView, pool_symbol: str) -> Tuple[PoolTerms, PoolState]:
    """
    Load a pool from ledger state as typed frozen dataclasses.

    Example:
        terms, state = load_pool(view, "PUNK-USDC")
        debt = convert_to_assets(state.position("alice").borrow_shares,
                                 state.total_borrow_assets, state.total_borrow_shares)
    """
    if view.get_unit(pool_symbol).unit_type != UNIT_TYPE_LENDING_POOL:
        raise UnitNotRegistered(f"{pool_symbol} is not a lending pool")
    raw = view.get_unit_state(pool_symbol)

    terms = PoolTerms(
        collateral_asset=raw['collateral_asset'],
        debt_asset=raw['debt_asset'],
        debt_decimals=raw['debt_decimals'],
        custodian=raw['custodian'],
    )

    positions = {
        user: UserPosition(
            supply_shares=p.get('supply_shares', 0),
            borrow_shares=p.get('borrow_shares', 0),
            collateral_ids=tuple(p.get('collateral_ids', ())),
        )
        for user, p in raw.get('positions', {}).items()
    }

    state = PoolState(
        total_supply_assets=raw.get('total_supply_assets', 0),
        total_supply_shares=raw.get('total_supply_shares', 0),
        total_borrow_assets=raw.get('total_borrow_assets', 0),
        total_borrow_shares=raw.get('total_borrow_shares', 0),
        total_collateral=raw.get('total_collateral', 0),
        last_accrued_at=raw['last_accrued_at'],
        loan_to_value=raw.get('loan_to_value', 0),
        min_supply_amount=raw.get('min_supply_amount', 0),
        positions=positions,
    )
    return terms, state


def to_state_dict(terms: PoolTerms, state: PoolState) -> Dict[str, Any]:
    """Convert typed dataclasses back to the ledger state dict."""
    return {
        'collateral_asset': terms.collateral_asset,
        'debt_asset': terms.debt_asset,
        'debt_decimals': terms.debt_decimals,
        'custodian': terms.custodian,
        'total_supply_assets': state.total_supply_assets,
        'total_supply_shares': state.total_supply_shares,
        'total_borrow_assets': state.total_borrow_assets,
        'total_borrow_shares': state.total_borrow_shares,
        'total_collateral': state.total_collateral,
        'last_accrued_at': state.last_accrued_at,
        'loan_to_value': state.loan_to_value,
        'min_supply_amount': state.min_supply_amount,
        'positions': {
            user: {
                'supply_shares': p.supply_shares,
                'borrow_shares': p.borrow_shares,
                'collateral_ids': list(p.collateral_ids),
            }
            for user, p in sorted(state.positions.items())
        },
    }


# ============================================================================
# SHARE CONVERSIONS
# ============================================================================

def convert_to_shares(amount: int, total_assets: int, total_shares: int) -> int:
    """
    Shares minted for an amount. 1:1 on an empty side, floor otherwise.
    """
    if total_assets == 0:
        return amount
    return mul_div(amount, total_shares, total_assets)


def convert_to_assets(shares: int, total_assets: int, total_shares: int) -> int:
    """Assets represented by shares (floor). Zero on an empty side."""
    if total_shares == 0:
        return 0
    return mul_div(shares, total_assets, total_shares)


def user_debt(state: PoolState, user: str) -> int:
    """Outstanding debt of a user in debt-asset units."""
    return convert_to_assets(
        state.position(user).borrow_shares,
        state.total_borrow_assets,
        state.total_borrow_shares,
    )


def user_supply(state: PoolState, user: str) -> int:
    """Liquidity a user could claim in debt-asset units."""
    return convert_to_assets(
        state.position(user).supply_shares,
        state.total_supply_assets,
        state.total_supply_shares,
    )


# ============================================================================
# ACCRUAL
# ============================================================================

def calculate_accrual(
    state: PoolState,
    model: InterestRateModel,
    now: datetime,
) -> Tuple[PoolState, int]:
    """
    Apply interest owed since last_accrued_at.

    Interest is added to both total_borrow_assets and total_supply_assets:
    borrowers owe it and suppliers earn it, so share prices on both sides
    rise together. last_accrued_at moves to `now` even when nothing is
    borrowed, so an idle period is never charged later.

    Returns:
        (new_state, interest)
    """
    if now <= state.last_accrued_at:
        return state, 0

    elapsed = int((now - state.last_accrued_at).total_seconds())
    interest = 0
    if state.total_borrow_assets > 0 and elapsed > 0:
        _rate, interest = calculate_pool_interest(
            model, state.total_borrow_assets, state.total_supply_assets, elapsed
        )

    return replace(
        state,
        total_borrow_assets=state.total_borrow_assets + interest,
        total_supply_assets=state.total_supply_assets + interest,
        last_accrued_at=now,
    ), interest


# ============================================================================
# POOL CREATION
# ============================================================================

def create_lending_pool(
    symbol: str,
    name: str,
    collateral_asset: AssetSpec,
    debt_asset: AssetSpec,
    created_at: datetime,
    loan_to_value: int = 0,
    min_supply_amount: int = 1,
) -> Unit:
    """
    Create a lending pool unit for one collateral/debt asset pair.

    Asset kinds are resolved here, once: the collateral must be a
    non-fungible collection and the debt asset a fungible token whose
    decimals are stored with the pool.

    Args:
        symbol: Pool identifier (e.g., "PUNK-USDC")
        name: Human-readable name
        collateral_asset: AssetSpec of the collateral collection
        debt_asset: AssetSpec of the borrowable token
        created_at: Initial last_accrued_at
        loan_to_value: Origination ratio in WAD (0 = configure later)
        min_supply_amount: Floor for the first liquidity deposit

    Raises:
        ConfigurationError: On wrong asset kinds or out-of-range parameters.

    Example:
        pool = create_lending_pool(
            "PUNK-USDC", "Punks / USDC",
            non_fungible_asset("PUNK"), fungible_asset("USDC", 6),
            created_at=ledger.current_time,
            loan_to_value=wad("0.8"),
            min_supply_amount=1_000_000,
        )
        ledger.register_unit(pool)
    """
    if not symbol or not symbol.strip():
        raise ConfigurationError("pool symbol cannot be empty")
    if collateral_asset.kind != AssetKind.NON_FUNGIBLE:
        raise ConfigurationError(
            f"collateral asset {collateral_asset.symbol} must be non-fungible"
        )
    if debt_asset.kind != AssetKind.FUNGIBLE:
        raise ConfigurationError(f"debt asset {debt_asset.symbol} must be fungible")
    if loan_to_value < 0 or loan_to_value >= WAD:
        raise ConfigurationError(f"loan_to_value must be in [0, 100%), got {loan_to_value}")
    if min_supply_amount < 0:
        raise ConfigurationError(f"min_supply_amount cannot be negative, got {min_supply_amount}")

    terms = PoolTerms(
        collateral_asset=collateral_asset.symbol,
        debt_asset=debt_asset.symbol,
        debt_decimals=debt_asset.decimals,
        custodian=custodian_wallet(symbol),
    )
    state = PoolState(
        total_supply_assets=0,
        total_supply_shares=0,
        total_borrow_assets=0,
        total_borrow_shares=0,
        total_collateral=0,
        last_accrued_at=created_at,
        loan_to_value=loan_to_value,
        min_supply_amount=min_supply_amount,
    )

    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_LENDING_POOL,
        min_balance=0,
        max_balance=0,  # The pool unit itself is never held by a wallet
        decimal_places=0,
        _frozen_state=_freeze_state(to_state_dict(terms, state)),
    )
