"""
ledger.py - Token ledger underneath the lending pools

The Ledger holds every wallet's balance of every unit: the fungible debt
tokens, the collateral items (one unit per item, at most one holder) and the
pool units whose state carries the pool's books. It is the only module that
mutates anything.

Responsibilities:
    - LedgerView for the pure compute_* functions (reads only)
    - Atomic execution of a PendingTransaction: every move and every pool
      state change lands, or nothing does
    - Rejection of pool state changes built from an outdated snapshot
    - A forward-only logical clock that drives interest accrual
    - An append-only audit log of applied transactions
"""

from __future__ import annotations
from collections import defaultdict
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Set, Optional, Tuple, Any
import copy
import threading

from .core import (
    Move, Transaction, Unit,
    PendingTransaction,
    ExecuteResult,
    Positions, UnitState, BalanceMap,
    SYSTEM_WALLET, UNIT_TYPE_COLLATERAL_ITEM,
    LedgerError, UnitNotRegistered, WalletNotRegistered,
    _freeze_state,
)


class Ledger:
    """
    Double-entry token ledger with an audit trail.

    Issuance and redemption go through SYSTEM_WALLET, which may go negative,
    so the balances of every unit across all wallets sum to zero.

    Thread Safety:
        execute() and the registration methods hold an RLock, so pools on
        different threads may share one Ledger. Reads are not locked; a
        pool reads its own unit under its own lock.

    Example:
        ledger = Ledger("main", initial_time=datetime(2025, 1, 1))
        ledger.register_unit(fungible_token("USDC", "USD Coin", decimals=6))
        ledger.register_unit(collateral_item("PUNK", 7))
        ledger.register_wallet("alice")

        ledger.execute(build_transaction(ledger, [
            Move(100_000_000, "USDC", SYSTEM_WALLET, "alice", "faucet"),
            Move(1, "PUNK#7", SYSTEM_WALLET, "alice", "mint"),
        ]))
        ledger.owner_of("PUNK#7")  # "alice"
    """

    def __init__(
        self,
        name: str,
        initial_time: Optional[datetime] = None,
        verbose: bool = True,
        test_mode: bool = False
    ):
        """
        Args:
            name: Ledger identifier, part of every execution id
            initial_time: Starting logical time (default: 1970-01-01)
            verbose: Print applied and rejected transactions (default: True)
            test_mode: Allow set_balance() (default: False)
        """
        self.name = name
        self.verbose = verbose
        self.units: Dict[str, Unit] = {}
        self.balances: Dict[str, Dict[str, int]] = {SYSTEM_WALLET: defaultdict(int)}
        self.registered_wallets: Set[str] = {SYSTEM_WALLET}
        self.transaction_log: List[Transaction] = []
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self._test_mode = test_mode
        self._lock = threading.RLock()

    # ========================================================================
    # READS (LedgerView)
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        return self._current_time

    def _require_wallet(self, wallet_id: str) -> None:
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")

    def get_unit(self, symbol: str) -> Unit:
        """
        Raises:
            UnitNotRegistered: If the symbol was never registered
        """
        try:
            return self.units[symbol]
        except KeyError:
            raise UnitNotRegistered(f"Unit {symbol} not registered") from None

    def get_balance(self, wallet_id: str, unit_symbol: str) -> int:
        """
        Balance of one unit in one wallet (0 if never held).

        Raises:
            WalletNotRegistered, UnitNotRegistered
        """
        self._require_wallet(wallet_id)
        self.get_unit(unit_symbol)
        return self.balances[wallet_id].get(unit_symbol, 0)

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """A deep copy of a unit's state; mutating it does not touch the ledger."""
        return copy.deepcopy(self.get_unit(unit_symbol).state)

    def get_positions(self, unit_symbol: str) -> Positions:
        """Non-zero holdings of a unit, system wallet included."""
        with self._lock:
            return {
                wallet: balances[unit_symbol]
                for wallet, balances in sorted(self.balances.items())
                if balances.get(unit_symbol, 0) != 0
            }

    def get_wallet_balances(self, wallet_id: str) -> BalanceMap:
        """Non-zero balances of a wallet."""
        self._require_wallet(wallet_id)
        with self._lock:
            return {unit: qty for unit, qty in self.balances[wallet_id].items() if qty != 0}

    def owner_of(self, item_symbol: str) -> Optional[str]:
        """
        The wallet holding a collateral item, or None if it was never minted
        or has been redeemed.

        Raises:
            LedgerError: If the unit is not a collateral item
        """
        unit = self.get_unit(item_symbol)
        if unit.unit_type != UNIT_TYPE_COLLATERAL_ITEM:
            raise LedgerError(f"{item_symbol} is not a collateral item")
        holders = [w for w, qty in self.get_positions(item_symbol).items()
                   if w != SYSTEM_WALLET and qty > 0]
        return holders[0] if holders else None

    def list_wallets(self) -> Set[str]:
        return set(self.registered_wallets)

    def list_units(self) -> List[str]:
        return sorted(self.units)

    def is_registered(self, wallet_id: str) -> bool:
        return wallet_id in self.registered_wallets

    def total_supply(self, unit_symbol: str) -> int:
        """Sum of a unit's balances over all wallets (0 when fully accounted)."""
        self.get_unit(unit_symbol)
        return sum(balances.get(unit_symbol, 0) for balances in self.balances.values())

    def transactions_for(self, unit_symbol: str) -> List[Transaction]:
        """Logged transactions that moved the unit or changed its state."""
        return [
            tx for tx in self.transaction_log
            if any(m.unit_symbol == unit_symbol for m in tx.moves)
            or any(sc.unit == unit_symbol for sc in tx.state_changes)
        ]

    def verify_double_entry(
        self,
        expected_supplies: Optional[Dict[str, int]] = None,
    ) -> Dict[str, Any]:
        """
        Check that unit balances sum to their expected totals.

        Every unit is expected to sum to zero unless `expected_supplies`
        names it; only units named there are checked when it is given.

        Returns:
            Dict with keys:
            - 'valid': bool
            - 'supplies': Dict[str, int] - current total of every unit
            - 'discrepancies': List[Dict] - unit, expected, actual, difference

        Example:
            result = ledger.verify_double_entry()
            assert result['valid'], result['discrepancies']
        """
        supplies = {symbol: self.total_supply(symbol) for symbol in self.list_units()}
        expected = expected_supplies if expected_supplies is not None else dict.fromkeys(supplies, 0)

        discrepancies = []
        for symbol, target in sorted(expected.items()):
            if symbol not in supplies:
                discrepancies.append({
                    'unit': symbol,
                    'expected': target,
                    'actual': 0,
                    'difference': -target,
                    'error': 'unit not registered',
                })
            elif supplies[symbol] != target:
                discrepancies.append({
                    'unit': symbol,
                    'expected': target,
                    'actual': supplies[symbol],
                    'difference': supplies[symbol] - target,
                })

        return {'valid': not discrepancies, 'supplies': supplies, 'discrepancies': discrepancies}

    # ========================================================================
    # CLOCK AND REGISTRATION
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Move the logical clock forward. Interest accrues against this clock.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(f"Cannot move time backwards: {new_time} < {self._current_time}")
        self._current_time = new_time

    def register_wallet(self, wallet_id: str) -> str:
        """
        Raises:
            ValueError: If the wallet is already registered
        """
        with self._lock:
            if wallet_id in self.registered_wallets:
                raise ValueError(f"Wallet {wallet_id} already registered")
            self.registered_wallets.add(wallet_id)
            self.balances[wallet_id] = defaultdict(int)
        return wallet_id

    def register_unit(self, unit: Unit) -> None:
        """
        Raises:
            ValueError: If the symbol is already registered
        """
        with self._lock:
            if unit.symbol in self.units:
                raise ValueError(f"Unit {unit.symbol} already registered")
            self.units[unit.symbol] = unit
        if self.verbose:
            print(f"📝 Registered: {unit.symbol} ({unit.name}) [{unit.unit_type}]")

    def set_balance(self, wallet_id: str, unit_symbol: str, quantity: int) -> None:
        """
        Overwrite a balance, bypassing double entry. Test mode only.

        Raises:
            LedgerError: If the ledger was not created with test_mode=True
        """
        if not self._test_mode:
            raise LedgerError(
                "set_balance() bypasses double entry and requires test_mode=True; "
                "use build_transaction() and execute() instead"
            )
        self._require_wallet(wallet_id)
        self.get_unit(unit_symbol)
        self.balances[wallet_id][unit_symbol] = int(quantity)

    # ========================================================================
    # EXECUTION
    # ========================================================================

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Validate a PendingTransaction and apply all of it.

        Nothing is mutated unless every check passes. An empty transaction is
        APPLIED without being logged.

        Validation and application run under the ledger lock, so two pools
        spending from the same wallet on different threads cannot both pass
        the balance check.

        Returns:
            ExecuteResult.APPLIED or ExecuteResult.REJECTED
        """
        with self._lock:
            return self._execute_locked(pending)

    def _execute_locked(self, pending: PendingTransaction) -> ExecuteResult:
        if pending.is_empty():
            return ExecuteResult.APPLIED

        reason = self._rejection_reason(pending)
        if reason is not None:
            if self.verbose:
                print(f"✗ REJECTED: {reason}")
            return ExecuteResult.REJECTED

        sequence = len(self.transaction_log)
        micros = int(self._current_time.timestamp() * 1_000_000)
        tx = Transaction(
            moves=pending.moves,
            state_changes=pending.state_changes,
            origin=pending.origin,
            timestamp=pending.timestamp,
            exec_id=f"exec:{self.name}:{sequence:012d}:{micros}",
            ledger_name=self.name,
            execution_time=self._current_time,
            sequence_number=sequence,
        )

        for move in tx.moves:
            self.balances[move.source][move.unit_symbol] -= move.quantity
            self.balances[move.dest][move.unit_symbol] += move.quantity

        # Units are frozen: install a new Unit carrying the new state
        for sc in tx.state_changes:
            self.units[sc.unit] = replace(
                self.units[sc.unit], _frozen_state=_freeze_state(copy.deepcopy(sc.new_state))
            )

        self.transaction_log.append(tx)
        if self.verbose:
            self._print_applied(tx)
        return ExecuteResult.APPLIED

    def _print_applied(self, tx: Transaction) -> None:
        lines = repr(tx).split('\n')
        width = 100
        lines[-1] = f"├{'─' * width}┤"
        lines.append(f"│{' ✓ APPLIED'.ljust(width)}│")
        lines.append(f"└{'─' * width}┘")
        print("\n".join(lines))

    def _rejection_reason(self, pending: PendingTransaction) -> Optional[str]:
        """
        First reason the transaction cannot be applied, or None.

        Checks, in order: timestamp not in the future, every unit and wallet
        registered, every state change built from the unit's current state,
        and every net balance within the unit's limits.
        """
        if pending.timestamp > self._current_time:
            return f"timestamp {pending.timestamp} is after ledger time {self._current_time}"

        for move in pending.moves:
            if move.unit_symbol not in self.units:
                return f"unit not registered: {move.unit_symbol}"
            for wallet in (move.source, move.dest):
                if wallet not in self.registered_wallets:
                    return f"wallet not registered: {wallet}"

        for sc in pending.state_changes:
            if sc.unit not in self.units:
                return f"unit not registered: {sc.unit}"
            if sc.old_state is not None and sc.old_state != self.units[sc.unit].state:
                return f"stale state for {sc.unit}"

        return self._balance_violation(pending.moves)

    def _balance_violation(self, moves: Tuple[Move, ...]) -> Optional[str]:
        """Check the net effect of all moves; SYSTEM_WALLET is unbounded."""
        net: Dict[Tuple[str, str], int] = defaultdict(int)
        for move in moves:
            net[(move.source, move.unit_symbol)] -= move.quantity
            net[(move.dest, move.unit_symbol)] += move.quantity

        for (wallet, symbol), delta in sorted(net.items()):
            if wallet == SYSTEM_WALLET or delta == 0:
                continue
            unit = self.units[symbol]
            proposed = self.balances[wallet].get(symbol, 0) + delta
            if proposed < unit.min_balance:
                return f"{wallet} holds {proposed - delta} {symbol}, needs {-delta}"
            if unit.max_balance is not None and proposed > unit.max_balance:
                return f"{wallet} would hold {proposed} {symbol}, max {unit.max_balance}"
        return None
