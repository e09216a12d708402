"""
Wires the issuance components together from Django settings.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from django.conf import settings

from .dispatcher import DispatchOutcome, RelayDispatcher
from .forward_request import ForwardRequest
from .ledger import Ledger
from .registry import RegistrySynchronizer
from .relay_client import DirectSubmitter, HttpRelayClient, LocalRelay
from .signals import notify_treasury_threshold

logger = logging.getLogger(__name__)


@dataclass
class IssuanceStack:
    ledger: Ledger
    dispatcher: RelayDispatcher
    synchronizer: RegistrySynchronizer

    def issue(self, request: ForwardRequest) -> DispatchOutcome:
        return self.dispatcher.dispatch(request)


def enqueue_membership_event(payload: Dict[str, Any]) -> None:
    from .tasks import sync_membership_event
    sync_membership_event.delay(payload)


def build_issuance_stack(
    relay=None,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], None] = time.sleep,
    publish_events: bool = True,
) -> IssuanceStack:
    """
    Assemble the dispatcher, relay and synchronizer around the shared ledger.

    Every stack built against the same database attaches to the same deployed
    contract; only the first one seeds the treasury and gas balances.
    """
    ledger = Ledger(
        contract_address=settings.MEMBERSHIP_CONTRACT_ADDRESS,
        admin=settings.MEMBERSHIP_ADMIN_ADDRESS,
        treasury_balance=settings.MEMBERSHIP_TREASURY_INITIAL_MICRO,
        payout_amount=settings.MEMBERSHIP_PAYOUT_MICRO,
        low_balance_threshold=settings.MEMBERSHIP_TREASURY_LOW_BALANCE_MICRO,
        fee=settings.MEMBERSHIP_TX_FEE_MICRO,
        clock=clock,
    )
    ledger.contract.treasury.add_listener(notify_treasury_threshold)
    if ledger.created:
        # Relay gas and operator fallback gas are separate budgets from the payout treasury
        ledger.fund(settings.MEMBERSHIP_OPERATOR_ADDRESS, settings.MEMBERSHIP_OPERATOR_GAS_MICRO)
        ledger.fund(settings.MEMBERSHIP_RELAYER_ADDRESS, settings.MEMBERSHIP_RELAYER_GAS_MICRO)

    if relay is None:
        if settings.MEMBERSHIP_RELAY_URL:
            relay = HttpRelayClient(
                settings.MEMBERSHIP_RELAY_URL,
                api_key=settings.MEMBERSHIP_RELAY_API_KEY or None,
                poll_interval=settings.RELAY_POLL_INTERVAL_SECONDS,
                sleep=sleep,
            )
        else:
            logger.warning('MEMBERSHIP_RELAY_URL not configured - using in-process relay')
            relay = LocalRelay(ledger, settings.MEMBERSHIP_RELAYER_ADDRESS)

    dispatcher = RelayDispatcher(
        chain=ledger,
        relay=relay,
        direct_submitter=DirectSubmitter(ledger, settings.MEMBERSHIP_OPERATOR_ADDRESS),
        max_retries=settings.RELAY_MAX_RETRIES,
        relay_timeout=settings.RELAY_TIMEOUT_SECONDS,
        backoff_base=settings.RELAY_BACKOFF_BASE_SECONDS,
        backoff_cap=settings.RELAY_BACKOFF_CAP_SECONDS,
        lock_wait=settings.MEMBERSHIP_DISPATCH_LOCK_WAIT_SECONDS,
        sleep=sleep,
    )
    if publish_events:
        ledger.subscribe(enqueue_membership_event)

    return IssuanceStack(
        ledger=ledger,
        dispatcher=dispatcher,
        synchronizer=RegistrySynchronizer(chain=ledger),
    )


_stack: Optional[IssuanceStack] = None
_stack_lock = threading.Lock()


def get_issuance_stack() -> IssuanceStack:
    global _stack
    with _stack_lock:
        if _stack is None:
            _stack = build_issuance_stack()
        return _stack


def reset_issuance_stack() -> None:
    global _stack
    with _stack_lock:
        _stack = None
