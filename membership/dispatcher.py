"""
Relay dispatcher: drives a signed forward request to a terminal outcome.

Relay first, retried with exponential backoff; when the relay budget is spent
the operator submits the same signed payload directly. Membership is
re-checked before every retry and before the fallback so that a submission
whose confirmation was lost never turns into a duplicate mint.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Optional

from django.core.cache import cache
from django.utils import timezone

from .errors import (
    AlreadyMember,
    DispatchInProgress,
    FallbackExhausted,
    InsufficientTreasury,
    MembershipError,
    NonceReplay,
    RelayError,
    VerificationError,
    error_from_code,
)
from .forward_request import ForwardRequest
from .models import TransactionAttempt
from .relay_client import RelayReceipt

logger = logging.getLogger(__name__)

DISPATCH_LOCK_PREFIX = 'locks:membership:dispatch:'


@contextmanager
def identity_lock(identity: str, ttl: int = 300, wait: float = 30.0, poll: float = 0.05,
                  sleep: Callable[[float], None] = time.sleep):
    """
    Cross-worker mutex for one identity, built on ``cache.add``.

    Waits up to ``wait`` seconds for a concurrent dispatch of the same
    identity to finish; ``ttl`` bounds how long a crashed worker can hold it.
    """
    key = f"{DISPATCH_LOCK_PREFIX}{identity}"
    deadline = time.monotonic() + wait
    while not cache.add(key, '1', timeout=ttl):
        if time.monotonic() >= deadline:
            raise DispatchInProgress(f"Dispatch for {identity} is already in flight")
        sleep(poll)
    try:
        yield
    finally:
        cache.delete(key)


@dataclass(frozen=True)
class DispatchOutcome:
    request_id: str
    status: str
    outcome: str
    token_id: Optional[int] = None
    tx_hash: Optional[str] = None
    error: Optional[MembershipError] = None
    retry_count: int = 0
    via_fallback: bool = False

    @property
    def confirmed(self) -> bool:
        return self.status == 'confirmed'


class RelayDispatcher:
    def __init__(
        self,
        chain,
        relay,
        direct_submitter,
        max_retries: int = 3,
        relay_timeout: float = 30.0,
        backoff_base: float = 1.0,
        backoff_cap: float = 30.0,
        lock_wait: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            chain: read access to contract state (``get_membership``) and the
                forwarder used for boundary checks
            relay: relay client with ``submit`` and ``wait_for_confirmation``
            direct_submitter: operator-paid fallback with ``submit``
            max_retries: relay submissions before falling back
        """
        self.chain = chain
        self.relay = relay
        self.direct = direct_submitter
        self.max_retries = max_retries
        self.relay_timeout = relay_timeout
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.lock_wait = lock_wait
        self.sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** attempt), self.backoff_cap)

    def dispatch(self, request: ForwardRequest) -> DispatchOutcome:
        with identity_lock(request.sender, wait=self.lock_wait, sleep=self.sleep):
            attempt, created = TransactionAttempt.objects.get_or_create(
                request_id=request.request_id,
                defaults={'sender': request.sender, 'nonce': request.nonce},
            )
            if attempt.status == 'confirmed':
                logger.info(f"Request {attempt.request_id[:8]} already confirmed; reporting existing membership")
                return DispatchOutcome(
                    request_id=attempt.request_id,
                    status='confirmed',
                    outcome='already_member',
                    token_id=attempt.token_id,
                    tx_hash=attempt.tx_hash or None,
                    error=AlreadyMember(attempt.sender, attempt.token_id),
                    retry_count=attempt.retry_count,
                    via_fallback=attempt.via_fallback,
                )
            if not created:
                # Failed or abandoned attempts are re-driven from scratch
                attempt.status = 'pending'
                attempt.retry_count = 0
                attempt.last_error = ''
                attempt.error_code = ''
                attempt.save(update_fields=['status', 'retry_count', 'last_error', 'error_code', 'updated_at'])
            return self._drive(request, attempt)

    def _drive(self, request: ForwardRequest, attempt: TransactionAttempt) -> DispatchOutcome:
        # Verify before reporting anything about the claimed sender
        try:
            self.chain.forwarder.check(request)
        except NonceReplay as e:
            # Authentic request whose nonce was spent, possibly by this very request on another path
            shortcut = self._short_circuit_if_member(request, attempt)
            if shortcut:
                return shortcut
            logger.error(f"Rejected forward request from {request.sender[:10]}...: {e.code}")
            return self._finish(attempt, 'failed', 'failed', error=e)
        except VerificationError as e:
            logger.error(f"Rejected forward request from {request.sender[:10]}...: {e.code}")
            return self._finish(attempt, 'failed', 'failed', error=e)

        shortcut = self._short_circuit_if_member(request, attempt)
        if shortcut:
            return shortcut

        last_error: Optional[MembershipError] = None
        for n in range(self.max_retries):
            if n > 0:
                delay = self.backoff_delay(n - 1)
                logger.info(f"Retrying relay for {attempt.request_id[:8]} in {delay}s (attempt {n + 1}/{self.max_retries})")
                self.sleep(delay)
                shortcut = self._short_circuit_if_member(request, attempt)
                if shortcut:
                    return shortcut
                attempt.retry_count = n
                attempt.save(update_fields=['retry_count', 'updated_at'])

            try:
                tx_hash = self.relay.submit(request)
                attempt.tx_hash = tx_hash
                attempt.save(update_fields=['tx_hash', 'updated_at'])
                receipt = self.relay.wait_for_confirmation(tx_hash, self.relay_timeout)
            except RelayError as e:
                last_error = e
                logger.warning(f"Relay attempt {n + 1} for {attempt.request_id[:8]} failed: {e.code} {e}")
                attempt.last_error = str(e)
                attempt.error_code = e.code
                attempt.save(update_fields=['last_error', 'error_code', 'updated_at'])
                continue
            return self._settle(request, attempt, receipt, via_fallback=False)

        shortcut = self._short_circuit_if_member(request, attempt)
        if shortcut:
            return shortcut

        logger.warning(
            f"Relay budget exhausted for {attempt.request_id[:8]} after {self.max_retries} attempts; "
            f"falling back to direct submission"
        )
        try:
            receipt = self.direct.submit(request)
        except MembershipError as e:
            error = FallbackExhausted(f"Direct submission failed: {e}; last relay error: {last_error}")
            logger.error(f"Fallback failed for {attempt.request_id[:8]}: {e}")
            return self._finish(attempt, 'failed', 'failed', error=error, via_fallback=True)
        return self._settle(request, attempt, receipt, via_fallback=True)

    def _short_circuit_if_member(self, request: ForwardRequest, attempt: TransactionAttempt) -> Optional[DispatchOutcome]:
        record = self.chain.get_membership(request.sender)
        if record is None:
            return None
        logger.info(f"{request.sender[:10]}... already holds token {record.token_id}; skipping submission")
        return self._finish(
            attempt,
            'confirmed',
            'already_member',
            token_id=record.token_id,
            error=AlreadyMember(request.sender, record.token_id),
        )

    def _settle(self, request: ForwardRequest, attempt: TransactionAttempt, receipt: RelayReceipt,
                via_fallback: bool) -> DispatchOutcome:
        if receipt.success:
            return self._finish(
                attempt, 'confirmed', 'issued',
                token_id=receipt.token_id, tx_hash=receipt.tx_hash, via_fallback=via_fallback,
            )

        error = error_from_code(receipt.error_code, receipt.error_message)
        record = self.chain.get_membership(request.sender)
        if isinstance(error, (AlreadyMember, NonceReplay)) and record is not None:
            return self._finish(
                attempt, 'confirmed', 'already_member',
                token_id=record.token_id,
                tx_hash=receipt.tx_hash, error=error, via_fallback=via_fallback,
            )
        outcome = 'insufficient_treasury' if isinstance(error, InsufficientTreasury) else 'failed'
        logger.error(f"Forward request {attempt.request_id[:8]} reverted: {error.code} {error}")
        return self._finish(
            attempt, 'failed', outcome,
            tx_hash=receipt.tx_hash, error=error, via_fallback=via_fallback,
        )

    def _finish(self, attempt: TransactionAttempt, status: str, outcome: str, token_id=None,
                tx_hash=None, error: Optional[MembershipError] = None, via_fallback: bool = False) -> DispatchOutcome:
        attempt.status = status
        attempt.outcome = outcome
        attempt.token_id = token_id
        attempt.via_fallback = via_fallback
        attempt.completed_at = timezone.now()
        if tx_hash:
            attempt.tx_hash = tx_hash
        if error is not None:
            attempt.last_error = str(error)
            attempt.error_code = error.code
        attempt.save()
        return DispatchOutcome(
            request_id=attempt.request_id,
            status=status,
            outcome=outcome,
            token_id=token_id,
            tx_hash=attempt.tx_hash or None,
            error=error,
            retry_count=attempt.retry_count,
            via_fallback=via_fallback,
        )
