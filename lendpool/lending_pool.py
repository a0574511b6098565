"""
lending_pool.py - Stateful orchestrator for one lending pool

LendingPool binds a pool unit in a Ledger to its collaborators (interest rate
model, risk engine, access controller) and runs every operation:

    1. under the pool's exclusive lock (a nested call from the same thread
       raises ReentrantCall instead of deadlocking)
    2. after the pause and role checks
    3. by building a PendingTransaction with the pure compute_* functions of
       pool.py and executing it atomically on the Ledger

A rejected execution raises TransferFailed; any error leaves the ledger
untouched.

Example:
    pool = LendingPool.create(
        ledger, "PUNK-USDC", "Punks / USDC",
        collateral_collection="PUNK", debt_asset="USDC",
        rate_model=InterestRateModel(wad("0.02"), wad("0.8"), wad("0.10"), wad("0.95"), wad("1")),
        risk=RiskEngine(oracle),
        access=StaticAccessController(admins={"governance"}),
        loan_to_value=wad("0.8"),
        min_supply_amount=1_000_000,
    )
    pool.set_risk_parameters("governance", RiskParameters(wad("0.9"), wad("0.1"), wad("1")))
    pool.supply_liquidity("lender", 2_000_000_000)
    pool.supply_collateral("alice", 7)
    pool.borrow("alice", 500_000_000)
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from .core import (
    PendingTransaction, ExecuteResult,
    ROLE_ADMIN, ROLE_USER,
    asset_spec_of, non_fungible_asset, collateral_item_symbol,
    LedgerError, ConfigurationError, TransferFailed,
    Unauthorized, PoolPaused, ReentrantCall,
)
from .ledger import Ledger
from .access import AccessController
from .interest import (
    InterestRateModel, calculate_utilization, calculate_borrow_rate, calculate_supply_rate,
)
from .oracle import OracleGateway
from .pool_state import (
    PoolTerms, PoolState, UserPosition,
    load_pool, create_lending_pool, custodian_wallet,
    convert_to_shares, convert_to_assets, user_debt, user_supply,
    calculate_accrual,
)
from .pool import (
    compute_accrue_interest,
    compute_supply_collateral, compute_withdraw_collateral,
    compute_supply_liquidity, compute_withdraw_liquidity,
    compute_borrow, compute_repay, compute_liquidation,
    compute_set_loan_to_value, compute_set_min_supply_amount,
)
from .risk import RiskEngine, RiskParameters, LiquidationCheck


@dataclass(frozen=True, slots=True)
class LiquidationResult:
    """Outcome of a liquidation."""
    borrower: str
    liquidator: str
    debt_repaid: int
    items_to_liquidator: Tuple[int, ...]
    items_returned: Tuple[int, ...]


class LendingPool:
    """
    One collateral/debt pool on a Ledger.

    Thread Safety:
        Every operation and view holds the pool's lock, so each sees and
        produces a consistent snapshot. Pools sharing a Ledger may run on
        different threads: the ledger validates and applies each transaction
        under its own lock, so a wallet spent by two pools at once is
        overdrawn by neither; the losing operation raises TransferFailed.
    """

    def __init__(
        self,
        ledger: Ledger,
        symbol: str,
        rate_model: InterestRateModel,
        risk: RiskEngine,
        access: AccessController,
        verbose: Optional[bool] = None,
    ):
        """
        Attach to an existing pool unit.

        Args:
            ledger: Ledger holding the pool unit, tokens and collateral items
            symbol: Pool unit symbol
            rate_model: Interest rate curve of the pool
            risk: Risk engine (oracle + risk parameters)
            access: Authorization and pause gateway
            verbose: Print rejected operations (default: ledger.verbose)
        """
        self.ledger = ledger
        self.symbol = symbol
        self.rate_model = rate_model
        self.risk = risk
        self.access = access
        self.verbose = ledger.verbose if verbose is None else verbose
        self.terms, _state = load_pool(ledger, symbol)
        self._lock = threading.Lock()
        self._owner: Optional[int] = None

    @classmethod
    def create(
        cls,
        ledger: Ledger,
        symbol: str,
        name: str,
        collateral_collection: str,
        debt_asset: str,
        rate_model: InterestRateModel,
        risk: RiskEngine,
        access: AccessController,
        loan_to_value: int = 0,
        min_supply_amount: int = 1,
        verbose: Optional[bool] = None,
    ) -> LendingPool:
        """
        Register a new pool unit and its custodian wallet on the ledger.

        The debt asset must be a registered fungible token; its decimals are
        resolved here once and stored with the pool.

        Raises:
            UnitNotRegistered: If the debt asset is not registered
            ConfigurationError: If the debt asset is not fungible
        """
        debt_spec = asset_spec_of(ledger.get_unit(debt_asset))
        unit = create_lending_pool(
            symbol, name,
            collateral_asset=non_fungible_asset(collateral_collection),
            debt_asset=debt_spec,
            created_at=ledger.current_time,
            loan_to_value=loan_to_value,
            min_supply_amount=min_supply_amount,
        )
        custodian = custodian_wallet(symbol)
        if not ledger.is_registered(custodian):
            ledger.register_wallet(custodian)
        ledger.register_unit(unit)
        return cls(ledger, symbol, rate_model, risk, access, verbose)

    # ========================================================================
    # EXCLUSIVE ACCESS
    # ========================================================================

    @contextmanager
    def _exclusive(self):
        me = threading.get_ident()
        if self._owner == me:
            raise ReentrantCall(f"{self.symbol}: operation already in progress on this thread")
        with self._lock:
            self._owner = me
            try:
                yield
            finally:
                self._owner = None

    def _authorize(self, caller: str, role: str) -> None:
        if role == ROLE_USER and self.access.is_paused(self.symbol):
            raise PoolPaused(f"{self.symbol} is paused")
        if not self.access.is_authorized(caller, role):
            raise Unauthorized(f"{caller} lacks role {role} on {self.symbol}")

    def _execute(self, pending: PendingTransaction) -> None:
        result = self.ledger.execute(pending)
        if result == ExecuteResult.REJECTED:
            event = pending.origin.event_type or "transaction"
            raise TransferFailed(f"{event} on {self.symbol} rejected by ledger {self.ledger.name}")

    def _run(self, caller: str, role: str, build: Callable[[], PendingTransaction]) -> PendingTransaction:
        """Authorize, build and execute one operation under the pool lock."""
        with self._exclusive():
            try:
                self._authorize(caller, role)
                pending = build()
                self._execute(pending)
            except LedgerError as exc:
                if self.verbose:
                    print(f"✗ REJECTED: {self.symbol} {type(exc).__name__}: {exc}")
                raise
            return pending

    # ========================================================================
    # SNAPSHOTS
    # ========================================================================

    def _snapshot(self) -> Tuple[PoolTerms, PoolState]:
        """Pool state with interest projected to the ledger's current time."""
        terms, state = load_pool(self.ledger, self.symbol)
        state, _interest = calculate_accrual(state, self.rate_model, self.ledger.current_time)
        return terms, state

    def snapshot(self) -> PoolState:
        with self._exclusive():
            return self._snapshot()[1]

    @staticmethod
    def _position_delta(pending: PendingTransaction, user: str, field_name: str) -> int:
        change = pending.state_changes[0]
        old = change.old_state['positions'].get(user, {}).get(field_name, 0)
        new = change.new_state['positions'].get(user, {}).get(field_name, 0)
        return new - old

    def _debt_asset_moved(self, pending: PendingTransaction) -> int:
        return sum(m.quantity for m in pending.moves if m.unit_symbol == self.terms.debt_asset)

    # ========================================================================
    # OPERATIONS
    # ========================================================================

    def accrue_interest(self) -> int:
        """Apply pending interest. Returns the interest added to the pool."""
        with self._exclusive():
            _terms, state = load_pool(self.ledger, self.symbol)
            _state, interest = calculate_accrual(state, self.rate_model, self.ledger.current_time)
            self._accrue_locked()
            return interest

    def supply_collateral(self, user: str, item_id: int) -> None:
        """Move one collateral item from the user into pool custody."""
        self._run(user, ROLE_USER, lambda: compute_supply_collateral(
            self.ledger, self.symbol, user, item_id, self.rate_model,
        ))

    def withdraw_collateral(self, user: str, item_id: int) -> None:
        """Return one collateral item if the remaining position stays healthy."""
        self._run(user, ROLE_USER, lambda: compute_withdraw_collateral(
            self.ledger, self.symbol, user, item_id, self.rate_model, self.risk,
        ))

    def supply_liquidity(self, user: str, amount: int) -> int:
        """Deposit liquidity. Returns the supply shares minted."""
        pending = self._run(user, ROLE_USER, lambda: compute_supply_liquidity(
            self.ledger, self.symbol, user, amount, self.rate_model,
        ))
        return self._position_delta(pending, user, 'supply_shares')

    def withdraw_liquidity(self, user: str, shares: int) -> int:
        """Redeem supply shares. Returns the amount withdrawn."""
        pending = self._run(user, ROLE_USER, lambda: compute_withdraw_liquidity(
            self.ledger, self.symbol, user, shares, self.rate_model,
        ))
        return self._debt_asset_moved(pending)

    def borrow(self, user: str, amount: int) -> int:
        """Borrow against collateral. Returns the borrow shares minted."""
        pending = self._run(user, ROLE_USER, lambda: compute_borrow(
            self.ledger, self.symbol, user, amount, self.rate_model, self.risk,
        ))
        return self._position_delta(pending, user, 'borrow_shares')

    def repay(self, user: str, shares: int, payer: Optional[str] = None) -> int:
        """
        Burn borrow shares of `user`. Returns the amount paid.

        The debt is pulled from `payer` (default: the borrower), which is also
        the caller checked by the access controller.
        """
        pending = self._run(payer or user, ROLE_USER, lambda: compute_repay(
            self.ledger, self.symbol, user, shares, self.rate_model, payer,
        ))
        return self._debt_asset_moved(pending)

    def liquidate(self, liquidator: str, borrower: str) -> LiquidationResult:
        """Repay a borrower's full debt and take the liquidator's share of collateral."""
        pending = self._run(liquidator, ROLE_USER, lambda: compute_liquidation(
            self.ledger, self.symbol, liquidator, borrower, self.rate_model, self.risk,
        ))
        change = pending.state_changes[0]
        ids = change.old_state['positions'][borrower]['collateral_ids']
        to_liquidator = sum(
            1 for m in pending.moves
            if m.unit_symbol != self.terms.debt_asset and m.dest == liquidator
        )
        return LiquidationResult(
            borrower=borrower,
            liquidator=liquidator,
            debt_repaid=self._debt_asset_moved(pending),
            items_to_liquidator=tuple(ids[:to_liquidator]),
            items_returned=tuple(ids[to_liquidator:]),
        )

    # ========================================================================
    # ADMINISTRATION
    # ========================================================================

    def set_loan_to_value(self, admin: str, loan_to_value: int) -> None:
        self._run(admin, ROLE_ADMIN, lambda: compute_set_loan_to_value(
            self.ledger, self.symbol, loan_to_value, admin, self.risk,
        ))

    def set_min_supply_amount(self, admin: str, min_supply_amount: int) -> None:
        self._run(admin, ROLE_ADMIN, lambda: compute_set_min_supply_amount(
            self.ledger, self.symbol, min_supply_amount, admin,
        ))

    def set_risk_parameters(self, admin: str, params: RiskParameters) -> None:
        """
        Configure liquidation parameters.

        Raises:
            ConfigurationError: If any parameter is zero, or the threshold is
                not strictly above the configured LTV
        """
        with self._exclusive():
            self._authorize(admin, ROLE_ADMIN)
            if not params.is_configured():
                raise ConfigurationError(f"All risk parameters of {self.symbol} must be non-zero")
            _terms, state = load_pool(self.ledger, self.symbol)
            if state.loan_to_value and params.liquidation_threshold <= state.loan_to_value:
                raise ConfigurationError(
                    f"liquidation threshold {params.liquidation_threshold} must be above "
                    f"loan_to_value {state.loan_to_value}"
                )
            self.risk.set_risk_parameters(self.symbol, params)

    def _accrue_locked(self) -> None:
        self._execute(compute_accrue_interest(self.ledger, self.symbol, self.rate_model))

    def set_rate_model(self, admin: str, rate_model: InterestRateModel) -> None:
        """Switch interest curves; interest up to now accrues under the old one."""
        with self._exclusive():
            self._authorize(admin, ROLE_ADMIN)
            self._accrue_locked()
            self.rate_model = rate_model

    def reconfigure(
        self,
        admin: str,
        oracle: Optional[OracleGateway] = None,
        risk: Optional[RiskEngine] = None,
        rate_model: Optional[InterestRateModel] = None,
        access: Optional[AccessController] = None,
    ) -> None:
        """
        Replace collaborators. Only the arguments given are changed.

        A risk engine may be shared by several pools, so a new oracle is not
        installed on it: this pool gets its own engine reading the new oracle
        and carrying this pool's parameters. Other pools are unaffected.
        """
        with self._exclusive():
            self._authorize(admin, ROLE_ADMIN)
            if rate_model is not None:
                self._accrue_locked()
                self.rate_model = rate_model
            if risk is not None:
                self.risk = risk
            if oracle is not None:
                self.risk = RiskEngine(oracle, {self.symbol: self.risk.parameters(self.symbol)})
            if access is not None:
                self.access = access

    def pause(self, admin: str) -> None:
        with self._exclusive():
            self._authorize(admin, ROLE_ADMIN)
            self.access.pause(self.symbol)

    def unpause(self, admin: str) -> None:
        with self._exclusive():
            self._authorize(admin, ROLE_ADMIN)
            self.access.unpause(self.symbol)

    # ========================================================================
    # VIEWS (interest projected to the ledger's current time)
    # ========================================================================

    def position(self, user: str) -> UserPosition:
        return self.snapshot().position(user)

    def supply_balance(self, user: str) -> int:
        """Liquidity the user's supply shares are worth."""
        return user_supply(self.snapshot(), user)

    def debt_balance(self, user: str) -> int:
        """Debt the user's borrow shares represent, including pending interest."""
        return user_debt(self.snapshot(), user)

    def utilization(self) -> int:
        state = self.snapshot()
        return calculate_utilization(state.total_borrow_assets, state.total_supply_assets)

    def borrow_rate(self) -> int:
        return calculate_borrow_rate(self.rate_model, self.utilization())

    def supply_rate(self) -> int:
        return calculate_supply_rate(self.rate_model, self.utilization())

    def is_healthy(self, user: str) -> bool:
        """True if healthy; raises PositionUnhealthy otherwise."""
        with self._exclusive():
            terms, state = self._snapshot()
            self.risk.require_healthy(self.symbol, terms, state, user)
            return True

    def check_liquidatable(self, user: str) -> LiquidationCheck:
        with self._exclusive():
            terms, state = self._snapshot()
            return self.risk.liquidation_check(self.symbol, terms, state, user)

    def health_factor(self, user: str) -> Optional[int]:
        """WAD health factor; None when the user has no debt."""
        with self._exclusive():
            terms, state = self._snapshot()
            return self.risk.assess(self.symbol, terms, state, user).health_factor

    def max_borrow(self, user: str) -> int:
        """
        Largest additional borrow the origination ratio and the pool's free
        liquidity allow. The utilization ceiling is not applied.
        """
        with self._exclusive():
            terms, state = self._snapshot()
            ratio = state.loan_to_value or self.risk.parameters(self.symbol).liquidation_threshold
            if not ratio:
                raise ConfigurationError(f"{self.symbol} has no LTV or liquidation threshold")
            headroom = self.risk.max_borrow_value(self.symbol, terms, state, user, ratio)
            return min(headroom, state.total_supply_assets - state.total_borrow_assets)

    def preview_supply(self, amount: int) -> int:
        """Supply shares a deposit of `amount` would mint now."""
        state = self.snapshot()
        return convert_to_shares(amount, state.total_supply_assets, state.total_supply_shares)

    def preview_withdraw(self, shares: int) -> int:
        """Liquidity `shares` supply shares would redeem now."""
        state = self.snapshot()
        return convert_to_assets(shares, state.total_supply_assets, state.total_supply_shares)

    def preview_repay(self, shares: int) -> int:
        """Amount repaying `shares` borrow shares would cost now."""
        state = self.snapshot()
        return convert_to_assets(shares, state.total_borrow_assets, state.total_borrow_shares)

    # ========================================================================
    # INVARIANTS
    # ========================================================================

    def verify_invariants(self) -> Dict[str, Any]:
        """
        Check the pool's accounting against itself and against the ledger.

        Returns:
            Dict with keys:
            - 'valid': bool
            - 'violations': List[str]
        """
        with self._exclusive():
            _terms, state = load_pool(self.ledger, self.symbol)
            violations: List[str] = []

            if (state.total_supply_shares == 0) != (state.total_supply_assets == 0):
                violations.append(
                    f"supply shares {state.total_supply_shares} vs assets {state.total_supply_assets}"
                )
            if (state.total_borrow_shares == 0) != (state.total_borrow_assets == 0):
                violations.append(
                    f"borrow shares {state.total_borrow_shares} vs assets {state.total_borrow_assets}"
                )
            if state.total_borrow_assets > state.total_supply_assets:
                violations.append(
                    f"borrowed {state.total_borrow_assets} exceeds supplied {state.total_supply_assets}"
                )

            positions = state.positions.values()
            supply_shares = sum(p.supply_shares for p in positions)
            if supply_shares != state.total_supply_shares:
                violations.append(
                    f"sum of supply shares {supply_shares} != total {state.total_supply_shares}"
                )
            borrow_shares = sum(p.borrow_shares for p in positions)
            if borrow_shares != state.total_borrow_shares:
                violations.append(
                    f"sum of borrow shares {borrow_shares} != total {state.total_borrow_shares}"
                )
            collateral_count = sum(p.collateral_count for p in positions)
            if collateral_count != state.total_collateral:
                violations.append(
                    f"sum of collateral {collateral_count} != total {state.total_collateral}"
                )

            seen = set()
            for user, p in sorted(state.positions.items()):
                for item_id in p.collateral_ids:
                    if item_id in seen:
                        violations.append(f"item {item_id} appears in more than one position")
                    seen.add(item_id)
                    item = collateral_item_symbol(self.terms.collateral_asset, item_id)
                    holder = self.ledger.owner_of(item)
                    if holder != self.terms.custodian:
                        violations.append(f"item {item_id} of {user} held by {holder}, not {self.terms.custodian}")

            custodian_items = {
                symbol for symbol, qty in self.ledger.get_wallet_balances(self.terms.custodian).items()
                if qty and symbol.startswith(f"{self.terms.collateral_asset}#")
            }
            expected_items = {
                collateral_item_symbol(self.terms.collateral_asset, i) for i in seen
            }
            for symbol in sorted(custodian_items - expected_items):
                violations.append(f"{symbol} held by {self.terms.custodian} but in no position")

            cash = self.ledger.get_balance(self.terms.custodian, self.terms.debt_asset)
            expected_cash = state.total_supply_assets - state.total_borrow_assets
            if cash != expected_cash:
                violations.append(
                    f"custodian holds {cash} {self.terms.debt_asset}, expected {expected_cash}"
                )

            return {'valid': not violations, 'violations': violations}

    def __repr__(self):
        return f"LendingPool({self.symbol}: {self.terms.collateral_asset}/{self.terms.debt_asset})"
