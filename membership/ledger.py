"""
Ledger runtime for the membership contract.

Exposes the execution interface the rest of the system consumes:
``execute(effective_sender, call)`` is strictly atomic per call, and every
included transaction is appended to an ordered block log that the registry
synchronizer can re-scan.

All state is stored in the database, so every worker, web process and relay
ingress sees one ledger. Each execution locks the contract row inside
``transaction.atomic``; a process-wide re-entrant lock also serialises
executions on databases that ignore ``select_for_update``. Events are
published only after the enclosing transaction commits.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from django.db import transaction
from django.db.models import Max

from .contract import ContractEvent, MembershipRecord, SoulboundMembershipContract
from .errors import ExecutionReverted, MembershipError, TransferFailed
from .forward_request import ForwardRequest, decode_call
from .forwarder import ForwarderVerifier
from .models import LedgerAccount, LedgerBlock, LedgerContract
from .treasury import TreasuryManager

logger = logging.getLogger(__name__)

_execution_lock = threading.RLock()


@dataclass(frozen=True)
class FunctionCall:
    method: str
    args: tuple = ()


def _token_id(events: List[ContractEvent]) -> Optional[int]:
    for event in events:
        if 'tokenId' in event.args:
            return event.args['tokenId']
    return None


@dataclass(frozen=True)
class Block:
    number: int
    tx_hash: str
    sender: str
    fee_payer: str
    timestamp: int
    success: bool
    events: List[ContractEvent] = field(default_factory=list)
    revert_reason: Optional[str] = None

    @classmethod
    def from_model(cls, row: LedgerBlock) -> 'Block':
        return cls(
            number=row.number,
            tx_hash=row.tx_hash,
            sender=row.sender,
            fee_payer=row.fee_payer,
            timestamp=row.timestamp,
            success=row.success,
            events=[ContractEvent(event['name'], event['args']) for event in row.events],
            revert_reason=row.revert_reason or None,
        )

    @property
    def token_id(self) -> Optional[int]:
        return _token_id(self.events)


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    tx_hash: str
    block_number: int
    events: List[ContractEvent] = field(default_factory=list)
    revert_reason: Optional[str] = None
    error: Optional[MembershipError] = None

    @property
    def token_id(self) -> Optional[int]:
        return _token_id(self.events)


class Ledger:
    def __init__(
        self,
        contract_address: str,
        admin: str,
        treasury_balance: int,
        payout_amount: int,
        low_balance_threshold: int = 0,
        fee: int = 1000,
        clock: Callable[[], float] = time.time,
    ):
        """
        Attach to the contract at ``contract_address``, deploying it on first use.

        The treasury and admin arguments only seed a new deployment; an
        existing contract keeps the state already stored for it.
        """
        if treasury_balance < 0 or payout_amount <= 0:
            raise ValueError('Treasury balance must be >= 0 and payout amount > 0')
        self.fee = fee
        self.clock = clock
        self._receivers: Dict[str, Callable[[int], None]] = {}
        self._subscribers: List[Callable[[Dict[str, Any]], None]] = []

        state, self.created = LedgerContract.objects.get_or_create(
            address=contract_address,
            defaults={
                'admin': admin,
                'treasury_balance': treasury_balance,
                'payout_amount': payout_amount,
                'low_balance_threshold': low_balance_threshold,
                'below_threshold': treasury_balance < low_balance_threshold,
            },
        )
        if self.created:
            logger.info(f"Deployed membership contract {contract_address} with treasury {treasury_balance}")

        self.forwarder = ForwarderVerifier(contract_address, clock=clock)
        self.contract = SoulboundMembershipContract(
            address=contract_address,
            admin=state.admin,
            treasury=TreasuryManager(contract_address),
            pay=self._pay,
        )

    # ------------------------------------------------------------------
    # Value transfers
    # ------------------------------------------------------------------

    def register_receiver(self, address: str, hook: Callable[[int], None]) -> None:
        """Attach receive logic to an address; a hook that raises rejects the value."""
        self._receivers[address] = hook

    def fund(self, address: str, amount: int) -> None:
        with transaction.atomic():
            account, _ = LedgerAccount.objects.select_for_update().get_or_create(address=address)
            account.balance += amount
            account.save(update_fields=['balance', 'updated_at'])

    def balance_of(self, address: str) -> int:
        return LedgerAccount.objects.filter(address=address).values_list('balance', flat=True).first() or 0

    def _pay(self, recipient: str, amount: int) -> None:
        try:
            with transaction.atomic():
                self.fund(recipient, amount)
                hook = self._receivers.get(recipient)
                if hook is not None:
                    hook(amount)
        except Exception as e:
            raise TransferFailed(f"Recipient {recipient} rejected {amount}: {e}") from e

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, effective_sender: str, call: FunctionCall, fee_payer: Optional[str] = None) -> ExecutionResult:
        """Run one contract call atomically and include it in a block."""
        with _execution_lock, transaction.atomic():
            self.contract.lock_state()
            payer = fee_payer or effective_sender
            self._charge_fee(payer)
            try:
                with transaction.atomic():
                    events = self.contract.call(effective_sender, call.method, list(call.args), self._now())
            except MembershipError as e:
                return self._include(effective_sender, payer, [], error=e)
            return self._include(effective_sender, payer, events)

    def submit_forward_request(self, request: ForwardRequest, fee_payer: str) -> ExecutionResult:
        """
        Forwarder entry point: verify, execute as ``request.sender`` and consume
        the nonce as one unit. A reverted call leaves the nonce unused.
        """
        with _execution_lock, transaction.atomic():
            self.contract.lock_state()
            self._charge_fee(fee_payer)
            try:
                with transaction.atomic():
                    sender = self.forwarder.verify(request)
                    if request.to != self.contract.address:
                        raise ExecutionReverted(f"Unknown call target {request.to}")
                    if request.value:
                        raise ExecutionReverted('Membership calls do not accept value')
                    try:
                        call = decode_call(request.data)
                    except ValueError as e:
                        raise ExecutionReverted(str(e)) from e
                    events = self.contract.call(sender, call['method'], call['args'], self._now())
                    self.forwarder.consume(request)
            except MembershipError as e:
                return self._include(request.sender, fee_payer, [], error=e, request=request)
            return self._include(sender, fee_payer, events, request=request)

    def _charge_fee(self, payer: str) -> None:
        account, _ = LedgerAccount.objects.select_for_update().get_or_create(address=payer)
        if account.balance < self.fee:
            raise ExecutionReverted(f"Fee payer {payer} cannot cover fee {self.fee}")
        account.balance -= self.fee
        account.save(update_fields=['balance', 'updated_at'])

    def _now(self) -> int:
        return int(self.clock())

    def _include(self, sender, fee_payer, events, error=None, request=None) -> ExecutionResult:
        number = self.head + 1
        seed = request.message() if request is not None else sender.encode('utf-8')
        tx_hash = hashlib.sha256(seed + number.to_bytes(8, 'big')).hexdigest()
        row = LedgerBlock.objects.create(
            number=number,
            tx_hash=tx_hash,
            sender=sender,
            fee_payer=fee_payer,
            timestamp=self._now(),
            success=error is None,
            events=[{'name': event.name, 'args': event.args} for event in events],
            revert_reason=error.code if error else '',
        )
        if error:
            logger.warning(f"Transaction {tx_hash[:12]} reverted: {error.code} {error}")
        else:
            transaction.on_commit(partial(self._publish, Block.from_model(row)))
        return ExecutionResult(
            success=error is None,
            tx_hash=tx_hash,
            block_number=number,
            events=list(events),
            revert_reason=error.code if error else None,
            error=error,
        )

    def subscribe(self, callback: Callable[[Dict[str, Any]], None]) -> None:
        """Receive every event payload of each successful block once it commits."""
        self._subscribers.append(callback)

    def _publish(self, block: Block) -> None:
        for index, event in enumerate(block.events):
            payload = event_payload(block, index, event)
            for callback in self._subscribers:
                try:
                    callback(payload)
                except Exception as e:
                    # Delivery gaps are repaired by the registry backfill
                    logger.error(f"Event delivery failed for {block.tx_hash[:12]}:{index}: {e}")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def head(self) -> int:
        """Number of the latest block, -1 when empty."""
        top = LedgerBlock.objects.aggregate(top=Max('number'))['top']
        return -1 if top is None else top

    def get_receipt(self, tx_hash: str) -> Optional[Block]:
        row = LedgerBlock.objects.filter(tx_hash=tx_hash).first()
        return Block.from_model(row) if row else None

    def blocks_between(self, start: int, end: int) -> List[Block]:
        rows = LedgerBlock.objects.filter(number__gte=max(start, 0), number__lte=end).order_by('number')
        return [Block.from_model(row) for row in rows]

    def event_payloads(self, start: int, end: int) -> List[Dict[str, Any]]:
        """Flatten emitted events in ``[start, end]`` into delivery payloads."""
        payloads = []
        for block in self.blocks_between(start, end):
            for index, event in enumerate(block.events):
                payloads.append(event_payload(block, index, event))
        return payloads

    def get_membership(self, identity: str) -> Optional[MembershipRecord]:
        return self.contract.get_membership(identity)

    def is_member(self, identity: str) -> bool:
        return self.contract.is_member(identity)


def event_payload(block: Block, log_index: int, event: ContractEvent) -> Dict[str, Any]:
    payload = {
        'event': event.name,
        'tx_hash': block.tx_hash,
        'block': block.number,
        'log_index': log_index,
        'timestamp': block.timestamp,
    }
    payload.update(event.args)
    return payload
