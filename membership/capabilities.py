"""
Guards the membership contract checks at each operation boundary.
"""

import threading
from contextlib import contextmanager
from typing import Optional, Set

from .errors import NotOwner, ReentrantCall, TransferNotAllowed


class OwnershipGate:
    """Restricts administrative calls to a single owner address."""

    def __init__(self, owner: str):
        self.owner = owner

    def require(self, sender: str) -> None:
        if sender != self.owner:
            raise NotOwner(f"{sender} is not the contract owner")


class CriticalSection:
    """
    Non-reentrant section keyed by identity.

    A key stays held until the body commits or rolls back; any call that
    tries to enter the same key meanwhile (including a re-entrant one from
    the payout recipient) fails instead of blocking.
    """

    def __init__(self):
        self._held: Set[str] = set()
        self._lock = threading.Lock()

    @contextmanager
    def enter(self, key: str):
        with self._lock:
            if key in self._held:
                raise ReentrantCall(f"Issuance for {key} is already in progress")
            self._held.add(key)
        try:
            yield
        finally:
            with self._lock:
                self._held.discard(key)

    def is_held(self, key: str) -> bool:
        with self._lock:
            return key in self._held


class TransferRestriction:
    """Soul-bound rule: tokens only move at creation (from none)."""

    def check(self, from_address: Optional[str], to_address: str, token_id: int) -> None:
        if from_address is not None:
            raise TransferNotAllowed(
                f"Membership token {token_id} is bound to {from_address} and cannot move to {to_address}"
            )
