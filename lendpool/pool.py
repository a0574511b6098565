"""
pool.py - Lending pool operations as pure transaction builders

ARCHITECTURE (Pure Function Pattern):
=====================================

1. PURE CALCULATION FUNCTIONS (calculate_*):
   - calculate_liquidation_split(): collateral partition on liquidation
   - calculate_accrual() (pool_state.py) brings a state up to date first

2. TRANSACTION BUILDERS (compute_*):
   - Read the pool through a LedgerView, never mutate it
   - Always accrue interest first, then mutate a projected PoolState,
     validate it (Risk Engine where the operation adds risk), and emit the
     token moves last
   - Return ONE PendingTransaction carrying the pool state change and every
     move, so the Ledger applies all of it or none of it

Operation summary:
    supply_collateral    user -> custodian    1 item
    withdraw_collateral  custodian -> user    1 item      (health check)
    supply_liquidity     user -> custodian    amount      (mints supply shares)
    withdraw_liquidity   custodian -> user    amount      (burns supply shares)
    borrow               custodian -> user    amount      (mints borrow shares, health check)
    repay                payer -> custodian   amount      (burns borrow shares)
    liquidation          liquidator -> custodian debt, items split liquidator/borrower
"""

from __future__ import annotations
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from .core import (
    LedgerView, Move, PendingTransaction, UnitStateChange,
    TransactionOrigin, OriginType,
    WAD,
    build_transaction, empty_pending_transaction, collateral_item_symbol,
    ZeroAmount, NotFound, InsufficientShares, BelowMinimum,
    InsufficientLiquidity, MaxUtilizationExceeded, NotLiquidatable,
    ConfigurationError, TransferFailed,
)
from .interest import InterestRateModel, calculate_utilization
from .pool_state import (
    PoolTerms, PoolState,
    load_pool, to_state_dict, convert_to_shares, convert_to_assets,
    calculate_accrual,
)
from .risk import RiskEngine


# ============================================================================
# PURE CALCULATION FUNCTIONS
# ============================================================================

def calculate_liquidation_split(
    collateral_count: int,
    liquidation_allocation_value: int,
    collateral_value: int,
) -> Tuple[int, int]:
    """
    Partition a borrower's collateral items on liquidation.

    nfts_to_return = min(n, allocation * n // collateral_value)

    Returns:
        (nfts_to_return, nfts_to_liquidator)

    Example:
        # 10 items, 10% of their value allocated back to the borrower
        calculate_liquidation_split(10, wad(100), wad(1000))  # (1, 9)
    """
    if collateral_value > 0:
        to_return = min(
            collateral_count,
            liquidation_allocation_value * collateral_count // collateral_value,
        )
    else:
        to_return = 0
    return to_return, collateral_count - to_return


# ============================================================================
# HELPERS
# ============================================================================

def _origin(origin_type: OriginType, actor: str, pool_symbol: str, event: str) -> TransactionOrigin:
    return TransactionOrigin(
        origin_type=origin_type,
        source_id=actor,
        unit_symbol=pool_symbol,
        event_type=event,
    )


def _load_accrued(
    view: LedgerView,
    pool_symbol: str,
    model: InterestRateModel,
) -> Tuple[Dict[str, Any], PoolTerms, PoolState]:
    """Raw pool state (for old_state) plus typed state with interest applied."""
    raw = view.get_unit_state(pool_symbol)
    terms, state = load_pool(view, pool_symbol)
    state, _interest = calculate_accrual(state, model, view.current_time)
    return raw, terms, state


def _finish(
    view: LedgerView,
    pool_symbol: str,
    raw: Dict[str, Any],
    terms: PoolTerms,
    state: PoolState,
    moves: List[Move],
    origin: TransactionOrigin,
) -> PendingTransaction:
    new_state = to_state_dict(terms, state)
    state_changes = []
    if new_state != raw:
        state_changes.append(UnitStateChange(unit=pool_symbol, old_state=raw, new_state=new_state))
    return build_transaction(view, moves, state_changes, origin)


def _origination_ratio(state: PoolState) -> Optional[int]:
    """Ratio used for new debt: the LTV when configured, else the liquidation threshold."""
    return state.loan_to_value or None


def _require_positive(value: int, what: str) -> None:
    if value <= 0:
        raise ZeroAmount(f"{what} must be positive, got {value}")


# ============================================================================
# INTEREST
# ============================================================================

def compute_accrue_interest(
    view: LedgerView,
    pool_symbol: str,
    model: InterestRateModel,
) -> PendingTransaction:
    """
    Bring the pool's totals up to the ledger's current time.

    Returns an empty transaction when no time has passed.
    """
    raw, terms, state = _load_accrued(view, pool_symbol, model)
    pending = _finish(
        view, pool_symbol, raw, terms, state, [],
        _origin(OriginType.SYSTEM, "system", pool_symbol, "ACCRUE_INTEREST"),
    )
    if pending.is_empty():
        return empty_pending_transaction(view)
    return pending


# ============================================================================
# COLLATERAL
# ============================================================================

def compute_supply_collateral(
    view: LedgerView,
    pool_symbol: str,
    user: str,
    item_id: int,
    model: InterestRateModel,
) -> PendingTransaction:
    """
    Deposit one collateral item into the pool's custody.

    No health check: adding collateral only reduces risk.

    Raises:
        TransferFailed: If the user does not own the item
        UnitNotRegistered: If the item was never issued
    """
    raw, terms, state = _load_accrued(view, pool_symbol, model)
    item = collateral_item_symbol(terms.collateral_asset, item_id)
    if view.get_balance(user, item) < 1:
        raise TransferFailed(f"{user} does not own {item}")

    position = state.position(user)
    state = state.with_position(
        user, replace(position, collateral_ids=position.collateral_ids + (item_id,))
    )
    state = replace(state, total_collateral=state.total_collateral + 1)

    moves = [Move(1, item, user, terms.custodian, f"supply_collateral_{pool_symbol}")]
    return _finish(
        view, pool_symbol, raw, terms, state, moves,
        _origin(OriginType.USER_ACTION, user, pool_symbol, "SUPPLY_COLLATERAL"),
    )


def compute_withdraw_collateral(
    view: LedgerView,
    pool_symbol: str,
    user: str,
    item_id: int,
    model: InterestRateModel,
    risk: RiskEngine,
) -> PendingTransaction:
    """
    Return one collateral item to its depositor.

    The item is removed from the position first; the health check then runs
    on the post-withdrawal state and rejects the whole operation if the
    remaining collateral no longer covers the debt.

    Raises:
        NotFound: If the item is not in the user's collateral set
        PositionUnhealthy: If the remaining position is unsafe
        ConfigurationError: If the pool's risk parameters are not set
    """
    raw, terms, state = _load_accrued(view, pool_symbol, model)
    position = state.position(user)
    if item_id not in position.collateral_ids:
        raise NotFound(f"Item {item_id} is not in {user}'s collateral for {pool_symbol}")

    # Swap-and-pop
    ids = list(position.collateral_ids)
    index = ids.index(item_id)
    ids[index] = ids[-1]
    ids.pop()

    state = state.with_position(user, replace(position, collateral_ids=tuple(ids)))
    state = replace(state, total_collateral=state.total_collateral - 1)

    risk.require_healthy(pool_symbol, terms, state, user, max_ratio=_origination_ratio(state))

    item = collateral_item_symbol(terms.collateral_asset, item_id)
    moves = [Move(1, item, terms.custodian, user, f"withdraw_collateral_{pool_symbol}")]
    return _finish(
        view, pool_symbol, raw, terms, state, moves,
        _origin(OriginType.USER_ACTION, user, pool_symbol, "WITHDRAW_COLLATERAL"),
    )


# ============================================================================
# LIQUIDITY
# ============================================================================

def compute_supply_liquidity(
    view: LedgerView,
    pool_symbol: str,
    user: str,
    amount: int,
    model: InterestRateModel,
) -> PendingTransaction:
    """
    Deposit debt-asset liquidity and mint supply shares.

    The first deposit mints shares 1:1 and must meet min_supply_amount.
    Later deposits mint amount * total_supply_shares // total_supply_assets.

    Raises:
        ZeroAmount: If amount is zero or mints zero shares
        BelowMinimum: If the first deposit is below min_supply_amount
    """
    _require_positive(amount, "amount")
    raw, terms, state = _load_accrued(view, pool_symbol, model)

    if state.total_supply_assets == 0 and amount < state.min_supply_amount:
        raise BelowMinimum(
            f"First deposit into {pool_symbol} must be at least "
            f"{state.min_supply_amount}, got {amount}"
        )

    shares = convert_to_shares(amount, state.total_supply_assets, state.total_supply_shares)
    if shares == 0:
        raise ZeroAmount(f"Deposit of {amount} into {pool_symbol} mints zero shares")

    position = state.position(user)
    state = state.with_position(user, replace(position, supply_shares=position.supply_shares + shares))
    state = replace(
        state,
        total_supply_assets=state.total_supply_assets + amount,
        total_supply_shares=state.total_supply_shares + shares,
    )

    moves = [Move(amount, terms.debt_asset, user, terms.custodian, f"supply_liquidity_{pool_symbol}")]
    return _finish(
        view, pool_symbol, raw, terms, state, moves,
        _origin(OriginType.USER_ACTION, user, pool_symbol, "SUPPLY_LIQUIDITY"),
    )


def compute_withdraw_liquidity(
    view: LedgerView,
    pool_symbol: str,
    user: str,
    shares: int,
    model: InterestRateModel,
) -> PendingTransaction:
    """
    Burn supply shares and withdraw the liquidity they represent.

    Raises:
        ZeroAmount: If shares is zero or redeems zero assets
        InsufficientShares: If shares exceed the user's supply shares
        InsufficientLiquidity: If the withdrawal would leave less supply
            than outstanding debt
    """
    _require_positive(shares, "shares")
    raw, terms, state = _load_accrued(view, pool_symbol, model)

    position = state.position(user)
    if shares > position.supply_shares:
        raise InsufficientShares(
            f"{user} holds {position.supply_shares} supply shares in {pool_symbol}, "
            f"cannot withdraw {shares}"
        )

    amount = convert_to_assets(shares, state.total_supply_assets, state.total_supply_shares)
    if amount == 0:
        raise ZeroAmount(f"{shares} supply shares of {pool_symbol} redeem zero assets")
    if state.total_supply_assets - amount < state.total_borrow_assets:
        raise InsufficientLiquidity(
            f"Withdrawing {amount} from {pool_symbol} would leave "
            f"{state.total_supply_assets - amount} supplied against "
            f"{state.total_borrow_assets} borrowed"
        )

    state = state.with_position(user, replace(position, supply_shares=position.supply_shares - shares))
    state = replace(
        state,
        total_supply_assets=state.total_supply_assets - amount,
        total_supply_shares=state.total_supply_shares - shares,
    )

    moves = [Move(amount, terms.debt_asset, terms.custodian, user, f"withdraw_liquidity_{pool_symbol}")]
    return _finish(
        view, pool_symbol, raw, terms, state, moves,
        _origin(OriginType.USER_ACTION, user, pool_symbol, "WITHDRAW_LIQUIDITY"),
    )


# ============================================================================
# BORROW / REPAY
# ============================================================================

def compute_borrow(
    view: LedgerView,
    pool_symbol: str,
    user: str,
    amount: int,
    model: InterestRateModel,
    risk: RiskEngine,
) -> PendingTransaction:
    """
    Borrow debt-asset liquidity against the user's collateral.

    Checks run on the post-borrow state, in order: liquidity, utilization
    ceiling, position health. The transfer out is the last move.

    Raises:
        ZeroAmount: If amount is zero or mints zero borrow shares
        InsufficientLiquidity: If borrows would exceed supplied assets
        MaxUtilizationExceeded: If utilization reaches the model's ceiling
        PositionUnhealthy: If the new debt is not covered by collateral
        ConfigurationError: If the pool's risk parameters are not set
    """
    _require_positive(amount, "amount")
    raw, terms, state = _load_accrued(view, pool_symbol, model)

    shares = convert_to_shares(amount, state.total_borrow_assets, state.total_borrow_shares)
    if shares == 0:
        raise ZeroAmount(f"Borrow of {amount} from {pool_symbol} mints zero shares")

    position = state.position(user)
    state = state.with_position(user, replace(position, borrow_shares=position.borrow_shares + shares))
    state = replace(
        state,
        total_borrow_assets=state.total_borrow_assets + amount,
        total_borrow_shares=state.total_borrow_shares + shares,
    )

    if state.total_borrow_assets > state.total_supply_assets:
        raise InsufficientLiquidity(
            f"Borrowing {amount} from {pool_symbol} exceeds available liquidity"
        )

    utilization = calculate_utilization(state.total_borrow_assets, state.total_supply_assets)
    if utilization >= model.max_utilization:
        raise MaxUtilizationExceeded(
            f"Utilization {utilization} of {pool_symbol} would reach the ceiling "
            f"{model.max_utilization}"
        )

    risk.require_healthy(pool_symbol, terms, state, user, max_ratio=_origination_ratio(state))

    moves = [Move(amount, terms.debt_asset, terms.custodian, user, f"borrow_{pool_symbol}")]
    return _finish(
        view, pool_symbol, raw, terms, state, moves,
        _origin(OriginType.USER_ACTION, user, pool_symbol, "BORROW"),
    )


def compute_repay(
    view: LedgerView,
    pool_symbol: str,
    user: str,
    shares: int,
    model: InterestRateModel,
    payer: Optional[str] = None,
) -> PendingTransaction:
    """
    Burn borrow shares, pulling the debt they represent from the payer.

    Args:
        payer: Wallet paying the debt (default: the borrower)

    Raises:
        ZeroAmount: If shares is zero or converts to zero assets
        InsufficientShares: If shares exceed the user's borrow shares
    """
    _require_positive(shares, "shares")
    raw, terms, state = _load_accrued(view, pool_symbol, model)

    position = state.position(user)
    if shares > position.borrow_shares:
        raise InsufficientShares(
            f"{user} holds {position.borrow_shares} borrow shares in {pool_symbol}, "
            f"cannot repay {shares}"
        )

    amount = convert_to_assets(shares, state.total_borrow_assets, state.total_borrow_shares)
    if amount == 0:
        raise ZeroAmount(f"{shares} borrow shares of {pool_symbol} convert to zero assets")

    state = state.with_position(user, replace(position, borrow_shares=position.borrow_shares - shares))
    state = replace(
        state,
        total_borrow_assets=state.total_borrow_assets - amount,
        total_borrow_shares=state.total_borrow_shares - shares,
    )

    moves = [Move(amount, terms.debt_asset, payer or user, terms.custodian, f"repay_{pool_symbol}")]
    return _finish(
        view, pool_symbol, raw, terms, state, moves,
        _origin(OriginType.USER_ACTION, payer or user, pool_symbol, "REPAY"),
    )


# ============================================================================
# LIQUIDATION
# ============================================================================

def compute_liquidation(
    view: LedgerView,
    pool_symbol: str,
    liquidator: str,
    borrower: str,
    model: InterestRateModel,
    risk: RiskEngine,
) -> PendingTransaction:
    """
    Liquidate a borrower's entire position.

    The liquidator pays the borrower's full debt into the pool. Collateral is
    split by calculate_liquidation_split: the first nfts_to_liquidator items
    (in collateral set order) go to the liquidator, the rest back to the
    borrower. The borrower's borrow shares and collateral set are zeroed.

    Raises:
        NotLiquidatable: If the position is healthy or has no debt
        ConfigurationError: If the pool's risk parameters are not set
    """
    raw, terms, state = _load_accrued(view, pool_symbol, model)

    assessment = risk.assess(pool_symbol, terms, state, borrower)
    check = assessment.liquidation_check()
    if not check.is_liquidatable:
        raise NotLiquidatable(
            f"{borrower} in {pool_symbol} is not liquidatable: debt value "
            f"{check.debt_value}, max safe debt value {check.max_safe_debt_value}"
        )

    position = state.position(borrower)
    debt = assessment.debt
    ids = position.collateral_ids
    _to_return, to_liquidator = calculate_liquidation_split(
        len(ids), check.liquidation_allocation_value, assessment.collateral_value
    )

    state = state.with_position(borrower, replace(position, borrow_shares=0, collateral_ids=()))
    state = replace(
        state,
        total_borrow_assets=state.total_borrow_assets - debt,
        total_borrow_shares=state.total_borrow_shares - position.borrow_shares,
        total_collateral=state.total_collateral - len(ids),
    )

    contract_id = f"liquidation_{pool_symbol}"
    moves = []
    if debt > 0:
        moves.append(Move(debt, terms.debt_asset, liquidator, terms.custodian, contract_id))
    for index, item_id in enumerate(ids):
        dest = liquidator if index < to_liquidator else borrower
        item = collateral_item_symbol(terms.collateral_asset, item_id)
        moves.append(Move(1, item, terms.custodian, dest, contract_id))

    return _finish(
        view, pool_symbol, raw, terms, state, moves,
        _origin(OriginType.LIQUIDATION, liquidator, pool_symbol, "LIQUIDATE"),
    )


# ============================================================================
# ADMINISTRATION
# ============================================================================

def compute_set_loan_to_value(
    view: LedgerView,
    pool_symbol: str,
    loan_to_value: int,
    admin: str,
    risk: RiskEngine,
) -> PendingTransaction:
    """
    Set the origination LTV of a pool.

    Raises:
        ConfigurationError: If LTV is zero, at least 100%, or not strictly
            below the configured liquidation threshold
    """
    if loan_to_value <= 0 or loan_to_value >= WAD:
        raise ConfigurationError(f"loan_to_value must be in (0, 100%), got {loan_to_value}")
    threshold = risk.parameters(pool_symbol).liquidation_threshold
    if threshold and loan_to_value >= threshold:
        raise ConfigurationError(
            f"loan_to_value {loan_to_value} must be below the liquidation threshold {threshold}"
        )

    raw = view.get_unit_state(pool_symbol)
    terms, state = load_pool(view, pool_symbol)
    state = replace(state, loan_to_value=loan_to_value)
    return _finish(
        view, pool_symbol, raw, terms, state, [],
        _origin(OriginType.ADMIN, admin, pool_symbol, "SET_LOAN_TO_VALUE"),
    )


def compute_set_min_supply_amount(
    view: LedgerView,
    pool_symbol: str,
    min_supply_amount: int,
    admin: str,
) -> PendingTransaction:
    """Set the floor for the first liquidity deposit (must be non-zero)."""
    if min_supply_amount <= 0:
        raise ConfigurationError(f"min_supply_amount must be positive, got {min_supply_amount}")

    raw = view.get_unit_state(pool_symbol)
    terms, state = load_pool(view, pool_symbol)
    state = replace(state, min_supply_amount=min_supply_amount)
    return _finish(
        view, pool_symbol, raw, terms, state, [],
        _origin(OriginType.ADMIN, admin, pool_symbol, "SET_MIN_SUPPLY_AMOUNT"),
    )
