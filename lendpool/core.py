"""
Core types and pure functions for the lending ledger.

This module provides the foundational data structures and protocols:
1. Fixed-point constants and conversion helpers (WAD, wad, mul_div)
2. Asset kind tags: AssetKind, AssetSpec
3. Protocols: LedgerView for read-only ledger access
4. Immutable data structures: Move, PendingTransaction, Transaction, Unit
5. Exceptions: LedgerError and the lending error taxonomy
6. Unit factories: fungible tokens, collateral items

All functions in this module are pure and operate on read-only views.
No function can mutate ledger state directly.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_DOWN
from enum import Enum
import copy
from typing import (
    Dict, List, Set, Optional, Any, Protocol,
    Tuple, FrozenSet, Union, runtime_checkable
)


# ============================================================================
# CONSTANTS
# ============================================================================

# 18-decimal fixed point used for every ratio, rate, price and value.
WAD = 10 ** 18

SECONDS_PER_YEAR = 365 * 24 * 60 * 60

# Reserved wallet for issuance and redemption.
# The system wallet is exempt from balance validation and can hold any balance.
SYSTEM_WALLET = "system"

# Unit type constants (strings, not enum).
UNIT_TYPE_FUNGIBLE = "FUNGIBLE"
UNIT_TYPE_COLLATERAL_ITEM = "COLLATERAL_ITEM"
UNIT_TYPE_LENDING_POOL = "LENDING_POOL"

# Access roles understood by AccessController implementations.
ROLE_ADMIN = "ADMIN"
ROLE_USER = "USER"


# ============================================================================
# TYPE ALIASES
# ============================================================================

# wallet -> balance of one unit
Positions = Dict[str, int]

# unit -> balance within one wallet
BalanceMap = Dict[str, int]

# Unit state; a pool unit keeps its books here
UnitState = Dict[str, Any]


# ============================================================================
# FIXED-POINT HELPERS
# ============================================================================

def wad(value: Union[int, str, Decimal, float]) -> int:
    """
    Convert a human-readable fraction to an 18-decimal fixed-point integer.

    Truncates toward zero, like every other division in the system.

    Example:
        wad("0.8")  -> 800000000000000000
        wad(1)      -> 1000000000000000000
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return value * WAD
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    if value.is_nan() or value.is_infinite():
        raise ValueError(f"Cannot convert {value} to fixed point")
    return int((value * WAD).to_integral_value(rounding=ROUND_DOWN))


def from_wad(value: int) -> Decimal:
    """Convert a WAD integer back to a Decimal fraction (for display only)."""
    return Decimal(value) / Decimal(WAD)


def mul_div(a: int, b: int, denominator: int) -> int:
    """
    Compute a * b // denominator without intermediate overflow.

    Python integers are unbounded, so the product is exact; the division
    truncates toward zero for the non-negative operands used here.
    """
    if denominator == 0:
        raise ZeroDivisionError("mul_div denominator is zero")
    return (a * b) // denominator


# ============================================================================
# ASSET KINDS
# ============================================================================

class AssetKind(Enum):
    """
    What kind of asset a symbol refers to.

    FUNGIBLE: divisible token with native decimals.
    NON_FUNGIBLE: collection of unit items; every item counts as one.
    """
    FUNGIBLE = "fungible"
    NON_FUNGIBLE = "non_fungible"


@dataclass(frozen=True, slots=True)
class AssetSpec:
    """
    Resolved description of an asset, fixed at pool configuration time.

    Attributes:
        symbol: Asset identifier (token symbol or collection name).
        kind: AssetKind tag.
        decimals: Native decimals (always 0 for NON_FUNGIBLE).
    """
    symbol: str
    kind: AssetKind
    decimals: int = 0

    def __post_init__(self):
        if not self.symbol or not self.symbol.strip():
            raise ValueError("AssetSpec symbol cannot be empty")
        if self.decimals < 0:
            raise ValueError(f"decimals cannot be negative, got {self.decimals}")
        if self.kind == AssetKind.NON_FUNGIBLE and self.decimals != 0:
            raise ValueError("non-fungible assets have zero decimals")


def fungible_asset(symbol: str, decimals: int) -> AssetSpec:
    """AssetSpec for a fungible token."""
    return AssetSpec(symbol=symbol, kind=AssetKind.FUNGIBLE, decimals=decimals)


def non_fungible_asset(symbol: str) -> AssetSpec:
    """AssetSpec for a collection of non-fungible items."""
    return AssetSpec(symbol=symbol, kind=AssetKind.NON_FUNGIBLE, decimals=0)


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """
    What pure code may read from a ledger.

    The compute_* functions, the risk engine and the views take a LedgerView
    and never a Ledger, so they cannot move balances or rewrite pool state.
    Tests substitute FakeView.
    """

    @property
    def current_time(self) -> datetime:
        """Logical clock that interest accrues against."""
        ...

    def get_balance(self, wallet_id: str, unit_symbol: str) -> int:
        ...

    def get_unit_state(self, unit_symbol: str) -> UnitState:
        """Copy of the unit's state; pools keep their books here."""
        ...

    def get_positions(self, unit_symbol: str) -> Positions:
        ...

    def list_wallets(self) -> Set[str]:
        ...

    def get_unit(self, symbol: str) -> 'Unit':
        ...


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """
    APPLIED: every move and state change landed.
    REJECTED: nothing landed (balance limit, stale pool state, unknown
              wallet or unit, timestamp ahead of the ledger clock).
    """
    APPLIED = "applied"
    REJECTED = "rejected"


class OriginType(Enum):
    """Who asked for a transaction, recorded in the audit log."""
    USER_ACTION = "user_action"           # Supply, withdraw, borrow, repay
    LIQUIDATION = "liquidation"           # Liquidator-initiated seizure
    ADMIN = "admin"                       # Configuration changes
    SYSTEM = "system"                     # Issuance, interest accrual, setup


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Root of every error raised by lendpool."""
    pass


class UnitNotRegistered(LedgerError):
    """Unknown unit symbol."""
    pass


class WalletNotRegistered(LedgerError):
    """Unknown wallet id."""
    pass


class TransferFailed(LedgerError):
    """The token ledger refused the moves of an operation."""
    pass


class OracleError(LedgerError):
    """The price gateway cannot produce a usable price."""
    pass


class LendingError(LedgerError):
    """Base exception for lending pool operations."""
    pass


# Validation errors: reported synchronously, nothing mutated.

class ValidationError(LendingError):
    pass


class ZeroAmount(ValidationError):
    """Amount or shares is zero, or converts to zero."""
    pass


class NotFound(ValidationError):
    """Collateral item is not in the user's set."""
    pass


class InsufficientShares(ValidationError):
    """Shares exceed the user's balance."""
    pass


class BelowMinimum(ValidationError):
    """First liquidity deposit is below the pool's minimum."""
    pass


# Solvency errors: the whole operation is rejected.

class SolvencyError(LendingError):
    pass


class InsufficientLiquidity(SolvencyError):
    """Operation would leave outstanding debt above supplied assets."""
    pass


class MaxUtilizationExceeded(SolvencyError):
    """Borrow would push utilization to or above the pool's ceiling."""
    pass


class PositionUnhealthy(SolvencyError):
    """Debt value exceeds the maximum safe debt value of the collateral."""
    pass


class NotLiquidatable(SolvencyError):
    """Position is not eligible for liquidation."""
    pass


class ConfigurationError(LendingError):
    """Pool or risk parameters are missing or inconsistent."""
    pass


class AccessError(LendingError):
    pass


class Unauthorized(AccessError):
    """Caller lacks the role required by the operation."""
    pass


class PoolPaused(AccessError):
    """Pool is paused; mutating operations are rejected."""
    pass


class ReentrantCall(AccessError):
    """A pool operation was invoked while another is in progress on the same thread."""
    pass


# ============================================================================
# TRANSACTIONS
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Audit tag attached to every transaction.

    Attributes:
        origin_type: USER_ACTION, LIQUIDATION, ADMIN or SYSTEM
        source_id: Acting wallet (user, liquidator, administrator)
        unit_symbol: Pool the operation ran against, if any
        event_type: Operation name, e.g. "BORROW" or "LIQUIDATE"
    """
    origin_type: OriginType
    source_id: str
    unit_symbol: Optional[str] = None
    event_type: Optional[str] = None

    def __repr__(self) -> str:
        label = f"{self.origin_type.value}:{self.source_id}"
        if self.event_type:
            label = f"{label} {self.event_type}"
        if self.unit_symbol:
            label = f"{label} on {self.unit_symbol}"
        return f"Origin({label})"


@dataclass(frozen=True, slots=True)
class UnitStateChange:
    """
    Replacement of a unit's state. `old_state` is the snapshot the change
    was computed from; the ledger refuses it once the unit has moved on.
    """
    unit: str
    old_state: Any
    new_state: Any

    def changed_fields(self) -> Dict[str, Tuple[Any, Any]]:
        """{field: (old, new)} for every field whose value differs."""
        old = self.old_state if isinstance(self.old_state, dict) else {}
        new = self.new_state if isinstance(self.new_state, dict) else {}
        return {
            key: (old.get(key), new.get(key))
            for key in old.keys() | new.keys()
            if old.get(key) != new.get(key)
        }

    def changed_accounts(self) -> List[str]:
        """Users whose pool position differs between the two snapshots."""
        old = self.old_state.get("positions", {}) if isinstance(self.old_state, dict) else {}
        new = self.new_state.get("positions", {}) if isinstance(self.new_state, dict) else {}
        return sorted(u for u in old.keys() | new.keys() if old.get(u) != new.get(u))


@dataclass(frozen=True, slots=True)
class Move:
    """
    One transfer of a unit between two wallets.

    Debt-asset moves carry native token units; collateral item moves always
    carry quantity 1.

    Attributes:
        quantity: Positive integer amount
        unit_symbol: "USDC", "PUNK#7", ...
        source: Wallet debited
        dest: Wallet credited
        contract_id: Operation that produced the move
    """
    quantity: int
    unit_symbol: str
    source: str
    dest: str
    contract_id: str

    def __post_init__(self):
        for name in ('source', 'dest', 'unit_symbol', 'contract_id'):
            value = getattr(self, name)
            if not value or not value.strip():
                raise ValueError(f"Move {name} cannot be empty")
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise ValueError(f"Move quantity must be int, got {type(self.quantity)}")
        if self.quantity <= 0:
            raise ValueError(f"Move quantity must be positive, got {self.quantity}")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}→{self.dest})"


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    Everything one pool operation wants to change, not yet applied.

    Produced by the compute_* functions and handed to Ledger.execute(),
    which applies all of it or none of it.
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime

    def is_empty(self) -> bool:
        return not (self.moves or self.state_changes)

    def __repr__(self) -> str:
        return f"PendingTransaction({len(self.moves)} moves, {len(self.state_changes)} state changes, {self.origin})"


def build_transaction(
    view: LedgerView,
    moves: List[Move],
    state_changes: Optional[List[UnitStateChange]] = None,
    origin: Optional[TransactionOrigin] = None,
) -> PendingTransaction:
    """
    Assemble a PendingTransaction stamped with the view's current time.

    State snapshots are deep-copied, so the caller may keep mutating its
    dicts afterwards.

    Example:
        moves = [Move(1000, "USDC", "alice", "pool:PUNK-USDC", "supply")]
        changes = [UnitStateChange(unit=symbol, old_state=old, new_state=new)]
        pending = build_transaction(view, moves, changes)
    """
    return PendingTransaction(
        moves=tuple(moves),
        state_changes=tuple(
            UnitStateChange(sc.unit, copy.deepcopy(sc.old_state), copy.deepcopy(sc.new_state))
            for sc in state_changes or ()
        ),
        origin=origin or TransactionOrigin(OriginType.SYSTEM, SYSTEM_WALLET),
        timestamp=view.current_time,
    )


def empty_pending_transaction(view: LedgerView) -> PendingTransaction:
    return PendingTransaction((), (), TransactionOrigin(OriginType.SYSTEM, "noop"), view.current_time)


def _boxed(title: str, sections: List[Tuple[str, List[str]]], width: int = 100) -> str:
    """Render titled sections of lines inside a box-drawing frame."""
    def row(text: str) -> str:
        text = text if len(text) <= width else text[:width - 3] + "..."
        return f"│{text.ljust(width)}│"

    rule = "─" * width
    lines = ["", f"┌{rule}┐", row(f" {title}")]
    for heading, body in sections:
        lines.append(f"├{rule}┤")
        if heading:
            lines.append(row(f" {heading}"))
        lines.extend(row(f"   {text}") for text in body)
    lines.append(f"└{rule}┘")
    return "\n".join(lines)


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    A PendingTransaction after the ledger applied it; entries of the audit log.

    Attributes:
        moves, state_changes, origin, timestamp: As submitted
        exec_id: "exec:{ledger}:{sequence}:{micros}"
        ledger_name: Ledger that applied it
        execution_time: Ledger clock at application
        sequence_number: Position in the ledger's log, from 0
        contract_ids: contract_id of every move (derived)
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[UnitStateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    exec_id: str
    ledger_name: str
    execution_time: datetime
    sequence_number: int
    contract_ids: FrozenSet[str] = None

    def __post_init__(self):
        if not self.moves and not self.state_changes:
            raise ValueError("Transaction must have moves or state_changes")
        if self.contract_ids is None:
            object.__setattr__(self, 'contract_ids', frozenset(m.contract_id for m in self.moves))

    def __repr__(self) -> str:
        header = [
            f"time     : {self.timestamp}",
            f"ledger   : {self.ledger_name} #{self.sequence_number}",
            f"origin   : {self.origin}",
        ]
        moves = [
            f"{move.quantity} {move.unit_symbol}: {move.source} → {move.dest}"
            for move in self.moves
        ]
        sections = [("", header), (f"Moves ({len(self.moves)}):", moves)]

        for sc in self.state_changes:
            body = [
                f"{name}: {old!r} → {new!r}"
                for name, (old, new) in sorted(sc.changed_fields().items())
                if name != 'positions'
            ]
            accounts = sc.changed_accounts()
            if accounts:
                body.append(f"accounts touched: {', '.join(accounts)}")
            sections.append((f"State of {sc.unit}:", body))

        return _boxed(f"Transaction {self.exec_id}", sections)


# ============================================================================
# UNITS
# ============================================================================

def _freeze_state(state: Optional[UnitState]) -> Tuple[Tuple[str, Any], ...]:
    """Unit state as sorted (key, value) pairs, so Unit stays hashable."""
    return tuple(sorted(state.items())) if state else ()


def _thaw_state(frozen_state: Tuple[Tuple[str, Any], ...]) -> UnitState:
    return dict(frozen_state)


@dataclass(frozen=True, slots=True)
class Unit:
    """
    A registered ledger unit: debt token, single collateral item or pool.

    Attributes:
        symbol: "USDC", "PUNK#7", "PUNK-USDC", ...
        name: Display name
        unit_type: UNIT_TYPE_FUNGIBLE, UNIT_TYPE_COLLATERAL_ITEM or UNIT_TYPE_LENDING_POOL
        min_balance: Floor for any non-system wallet
        max_balance: Ceiling for any non-system wallet (None = unbounded)
        decimal_places: Native decimals of balances
    """
    symbol: str
    name: str
    unit_type: str
    min_balance: int = 0
    max_balance: Optional[int] = None
    decimal_places: int = 0
    _frozen_state: Tuple[Tuple[str, Any], ...] = ()

    @property
    def state(self) -> UnitState:
        return _thaw_state(self._frozen_state)


def asset_spec_of(unit: Unit) -> AssetSpec:
    """
    Resolve the asset kind of a registered unit.

    Fungible tokens carry their decimals; collateral items resolve to their
    collection. Any other unit type is a configuration error.
    """
    if unit.unit_type == UNIT_TYPE_FUNGIBLE:
        return fungible_asset(unit.symbol, unit.decimal_places)
    if unit.unit_type == UNIT_TYPE_COLLATERAL_ITEM:
        return non_fungible_asset(unit.state['collection'])
    raise ConfigurationError(
        f"Unit {unit.symbol} of type {unit.unit_type} is not a lendable asset"
    )


# ============================================================================
# UNIT FACTORIES
# ============================================================================

def fungible_token(symbol: str, name: str, decimals: int = 18) -> Unit:
    """
    Create a fungible token unit.

    Balances are integers in the token's smallest denomination and cannot go
    negative, so a transfer without sufficient balance is rejected.

    Args:
        symbol: Token symbol (e.g., "USDC").
        name: Full name (e.g., "USD Coin").
        decimals: Native decimals of the token (default: 18).
    """
    if decimals < 0:
        raise ValueError(f"decimals cannot be negative, got {decimals}")
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_FUNGIBLE,
        decimal_places=decimals,
        min_balance=0,
        _frozen_state=_freeze_state({'decimals': decimals}),
    )


def collateral_item_symbol(collection: str, item_id: int) -> str:
    """Ledger symbol of a single collateral item, e.g. "PUNK#7"."""
    return f"{collection}#{item_id}"


def collateral_item(collection: str, item_id: int) -> Unit:
    """
    Create a unit representing one non-fungible collateral item.

    Every wallet holds either 0 or 1 of it, so exactly one wallet owns the
    item once it has been issued.

    Example:
        ledger.register_unit(collateral_item("PUNK", 7))
        ledger.execute(build_transaction(ledger, [
            Move(1, "PUNK#7", SYSTEM_WALLET, "alice", "mint")
        ]))
    """
    if not collection or not collection.strip():
        raise ValueError("collection cannot be empty")
    return Unit(
        symbol=collateral_item_symbol(collection, item_id),
        name=f"{collection} #{item_id}",
        unit_type=UNIT_TYPE_COLLATERAL_ITEM,
        min_balance=0,
        max_balance=1,
        decimal_places=0,
        _frozen_state=_freeze_state({'collection': collection, 'item_id': item_id}),
    )
