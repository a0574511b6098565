"""
access.py - Authorization and pause gateway

Role administration and emergency stops live outside the lending core. The
pool only asks two questions before it mutates anything: is the caller
allowed to do this, and is the pool paused.
"""

from typing import Iterable, Optional, Protocol, Set, runtime_checkable

from .core import ROLE_ADMIN, ROLE_USER


@runtime_checkable
class AccessController(Protocol):
    """Protocol for the configuration/authorization gateway."""

    def is_authorized(self, caller: str, role: str) -> bool:
        """Return True if caller holds the role."""
        ...

    def is_paused(self, pool_symbol: str) -> bool:
        """Return True if mutating operations on the pool are suspended."""
        ...

    def pause(self, pool_symbol: str) -> None:
        ...

    def unpause(self, pool_symbol: str) -> None:
        ...


class StaticAccessController:
    """
    In-memory access controller.

    Admins hold ROLE_ADMIN. Every caller holds ROLE_USER unless an explicit
    user allow-list is given. Pools can be paused individually.

    Example:
        access = StaticAccessController(admins={"governance"})
        access.pause("PUNK-USDC")
    """

    def __init__(
        self,
        admins: Iterable[str] = (),
        users: Optional[Iterable[str]] = None,
    ):
        self.admins: Set[str] = set(admins)
        self.users: Optional[Set[str]] = set(users) if users is not None else None
        self.paused: Set[str] = set()

    def is_authorized(self, caller: str, role: str) -> bool:
        if role == ROLE_ADMIN:
            return caller in self.admins
        if role == ROLE_USER:
            return self.users is None or caller in self.users or caller in self.admins
        return False

    def is_paused(self, pool_symbol: str) -> bool:
        return pool_symbol in self.paused

    def pause(self, pool_symbol: str) -> None:
        self.paused.add(pool_symbol)

    def unpause(self, pool_symbol: str) -> None:
        self.paused.discard(pool_symbol)

    def grant_admin(self, caller: str) -> None:
        self.admins.add(caller)

    def __repr__(self):
        return f"StaticAccessController({len(self.admins)} admins, {len(self.paused)} paused)"
