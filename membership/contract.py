"""
Soul-bound membership contract.

Stateful application that issues at most one non-transferable membership
token per wallet and pays a fixed grant from the treasury in the same step.

Key ideas:
    * All counters and mappings live on the ``LedgerContract`` row and its
      ``LedgerMembership`` records; only this contract writes to them.
    * ``mint`` is all-or-nothing: the record, the counter, the treasury debit
      and the payout share one savepoint and roll back together.
    * The contract row is locked for the whole mint, and a unique owner
      constraint backs the membership check on databases without row locks.
    * Capabilities (owner gate, per-identity critical section, transfer
      restriction) are separate objects checked at each entry point.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from django.db import IntegrityError, transaction
from django.db.models import F

from .capabilities import CriticalSection, OwnershipGate, TransferRestriction
from .errors import (
    AlreadyMember,
    ExecutionReverted,
    InsufficientTreasury,
    TransferFailed,
)
from .models import LedgerContract, LedgerMembership
from .treasury import TreasuryManager

logger = logging.getLogger(__name__)

MEMBERSHIP_MINTED = 'MembershipMinted'
INITIAL_FUND_SENT = 'InitialFundSent'


@dataclass(frozen=True)
class MembershipRecord:
    token_id: int
    owner: str
    minted_at: int

    @classmethod
    def from_model(cls, membership: LedgerMembership) -> 'MembershipRecord':
        return cls(token_id=membership.token_id, owner=membership.owner, minted_at=membership.minted_at)


@dataclass(frozen=True)
class ContractEvent:
    name: str
    args: Dict[str, Any]


class SoulboundMembershipContract:
    def __init__(
        self,
        address: str,
        admin: str,
        treasury: TreasuryManager,
        pay: Callable[[str, int], None],
    ):
        """
        Args:
            address: contract address that forward requests must target
            admin: owner allowed to replenish and reconfigure the treasury
            treasury: payout pool
            pay: value transfer supplied by the ledger; raises on rejection
        """
        self.address = address
        self.treasury = treasury
        self._pay = pay
        self.ownership = OwnershipGate(admin)
        self.critical_section = CriticalSection()
        self.transfer_restriction = TransferRestriction()

    def lock_state(self) -> LedgerContract:
        """Lock the contract row until the surrounding transaction ends."""
        return LedgerContract.objects.select_for_update().get(address=self.address)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _memberships(self):
        return LedgerMembership.objects.filter(contract__address=self.address)

    def get_membership(self, identity: str) -> Optional[MembershipRecord]:
        membership = self._memberships().filter(owner=identity).first()
        return MembershipRecord.from_model(membership) if membership else None

    def is_member(self, identity: str) -> bool:
        return self._memberships().filter(owner=identity).exists()

    def owner_of(self, token_id: int) -> Optional[str]:
        return self._memberships().filter(token_id=token_id).values_list('owner', flat=True).first()

    @property
    def total_supply(self) -> int:
        return self._memberships().count()

    @property
    def next_token_id(self) -> int:
        return LedgerContract.objects.values_list('next_token_id', flat=True).get(address=self.address)

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def mint(self, identity: str, minted_at: int) -> Tuple[MembershipRecord, List[ContractEvent]]:
        with self.critical_section.enter(identity), transaction.atomic():
            state = self.lock_state()
            existing = self.get_membership(identity)
            if existing:
                raise AlreadyMember(identity, existing.token_id)

            payout = state.payout_amount
            if state.treasury_balance < payout:
                raise InsufficientTreasury(state.treasury_balance, payout)

            token_id = state.next_token_id
            self.transfer_restriction.check(None, identity, token_id)

            try:
                with transaction.atomic():
                    # Record and counter first so a nested issuance for another identity gets the next id
                    LedgerMembership.objects.create(
                        contract=state, token_id=token_id, owner=identity, minted_at=minted_at,
                    )
                    LedgerContract.objects.filter(pk=state.pk).update(next_token_id=F('next_token_id') + 1)
                    if not self.treasury.reserve(payout):
                        raise InsufficientTreasury(self.treasury.balance, payout)
                    self._pay(identity, payout)
            except IntegrityError as e:
                existing = self.get_membership(identity)
                if existing:
                    raise AlreadyMember(identity, existing.token_id) from e
                raise ExecutionReverted(f"Membership token {token_id} is already issued") from e
            except (TransferFailed, InsufficientTreasury):
                logger.error(f"Rolled back membership token {token_id} for {identity[:10]}...")
                raise
            except Exception as e:
                logger.error(f"Rolled back membership token {token_id} for {identity[:10]}...: {e}")
                raise TransferFailed(f"Payout to {identity} failed: {e}") from e

        self.treasury.check_threshold()
        logger.info(f"Minted membership token {token_id} to {identity[:10]}... with payout {payout}")
        record = MembershipRecord(token_id=token_id, owner=identity, minted_at=minted_at)
        events = [
            ContractEvent(MEMBERSHIP_MINTED, {'to': identity, 'tokenId': token_id}),
            ContractEvent(INITIAL_FUND_SENT, {'to': identity, 'amount': payout}),
        ]
        return record, events

    def transfer(self, sender: str, token_id: int, to: str) -> None:
        owner = self.owner_of(token_id)
        if owner is None:
            raise ExecutionReverted(f"Unknown membership token {token_id}")
        self.transfer_restriction.check(owner, to, token_id)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def credit_treasury(self, sender: str, amount: int) -> None:
        self.ownership.require(sender)
        self.treasury.credit(amount)

    def set_payout_amount(self, sender: str, amount: int) -> None:
        self.ownership.require(sender)
        if amount <= 0:
            raise ExecutionReverted('Payout amount must be positive')
        self.treasury.set_payout_amount(amount)

    def set_low_balance_threshold(self, sender: str, threshold: int) -> None:
        self.ownership.require(sender)
        self.treasury.set_low_balance_threshold(threshold)

    # ------------------------------------------------------------------
    # Call routing
    # ------------------------------------------------------------------

    def call(self, sender: str, method: str, args: List[Any], timestamp: int) -> List[ContractEvent]:
        """Route a decoded function call from the ledger. Returns emitted events."""
        if method == 'mint':
            _, events = self.mint(sender, timestamp)
            return events
        if method == 'transfer':
            token_id, to = args
            self.transfer(sender, int(token_id), to)
            return []
        if method == 'creditTreasury':
            self.credit_treasury(sender, int(args[0]))
            return []
        if method == 'setPayoutAmount':
            self.set_payout_amount(sender, int(args[0]))
            return []
        if method == 'setLowBalanceThreshold':
            self.set_low_balance_threshold(sender, int(args[0]))
            return []
        raise ExecutionReverted(f"Unknown method {method!r}")


__all__ = [
    'ContractEvent',
    'INITIAL_FUND_SENT',
    'MEMBERSHIP_MINTED',
    'MembershipRecord',
    'SoulboundMembershipContract',
]
