"""
Off-chain membership registry.

Mirrors on-chain issuance events into ``RegistryEntry`` rows:
- Events arrive at-least-once and possibly out of order; each is applied
  once via a (tx_hash, log_index) marker and an upsert keyed by token id.
- A periodic backfill re-scans a bounded window of recent blocks, recomputes
  entries from canonical chain state and corrects any drift.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone as dt_timezone
from typing import Any, Dict, Optional

from django.conf import settings
from django.core.cache import cache
from django.db import transaction

from .contract import INITIAL_FUND_SENT, MEMBERSHIP_MINTED
from .models import ProcessedMembershipEvent, RegistryCursor, RegistryEntry

logger = logging.getLogger(__name__)

MEMBERSHIP_STREAM = 'membership'
BACKFILL_LOCK_KEY = 'locks:membership:backfill'


def _block_time(timestamp: int) -> datetime:
    return datetime.fromtimestamp(int(timestamp), tz=dt_timezone.utc)


@dataclass
class BackfillReport:
    start_block: int = 0
    end_block: int = -1
    created: int = 0
    corrected: int = 0
    deactivated: int = 0
    unchanged: int = 0
    skipped: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


class RegistrySynchronizer:
    def __init__(self, chain=None):
        self.chain = chain

    # ------------------------------------------------------------------
    # Event consumption
    # ------------------------------------------------------------------

    def apply_event(self, payload: Dict[str, Any]) -> bool:
        """Apply one delivered event. Returns False for duplicates and deferred events."""
        name = payload.get('event')
        if name == MEMBERSHIP_MINTED:
            return self._apply_minted(payload)
        if name == INITIAL_FUND_SENT:
            return self._apply_fund_sent(payload)
        logger.info(f"Ignoring unknown membership event {name!r}")
        return False

    def _apply_minted(self, payload: Dict[str, Any]) -> bool:
        token_id = int(payload['tokenId'])
        with transaction.atomic():
            _, created = ProcessedMembershipEvent.objects.get_or_create(
                tx_hash=payload['tx_hash'],
                log_index=int(payload.get('log_index', 0)),
                defaults={'event_name': MEMBERSHIP_MINTED, 'token_id': token_id},
            )
            if not created:
                logger.info(f"Duplicate MembershipMinted for token {token_id}; skipping")
                return False

            entry, entry_created = RegistryEntry.objects.update_or_create(
                token_id=token_id,
                defaults={
                    'owner': payload['to'],
                    'minted_at': _block_time(payload['timestamp']),
                    'block_number': int(payload['block']),
                    'tx_hash': payload['tx_hash'],
                    'is_active': True,
                },
            )
        logger.info(
            f"Registry {'created' if entry_created else 'updated'} token {token_id} for {entry.owner[:10]}..."
        )
        return True

    def _apply_fund_sent(self, payload: Dict[str, Any]) -> bool:
        with transaction.atomic():
            entry = (
                RegistryEntry.objects.select_for_update()
                .filter(owner=payload['to'], tx_hash=payload['tx_hash'])
                .first()
            )
            if entry is None:
                # Arrived before its mint; leave unmarked so redelivery or backfill applies it
                logger.info(f"InitialFundSent for {payload['to'][:10]}... precedes its mint; deferring")
                return False

            _, created = ProcessedMembershipEvent.objects.get_or_create(
                tx_hash=payload['tx_hash'],
                log_index=int(payload.get('log_index', 0)),
                defaults={'event_name': INITIAL_FUND_SENT, 'token_id': entry.token_id},
            )
            if not created:
                return False
            entry.payout_amount = int(payload['amount'])
            entry.save(update_fields=['payout_amount', 'synced_at'])
        return True

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    def backfill(self, window: Optional[int] = None) -> BackfillReport:
        """Reconcile the last ``window`` blocks against canonical chain state."""
        if not cache.add(BACKFILL_LOCK_KEY, '1', timeout=300):
            logger.info('[RegistryBackfill] Skipping run: another backfill is active')
            return BackfillReport(skipped=True)
        try:
            return self._backfill(window or getattr(settings, 'MEMBERSHIP_BACKFILL_WINDOW_BLOCKS', 500))
        finally:
            cache.delete(BACKFILL_LOCK_KEY)

    def _backfill(self, window: int) -> BackfillReport:
        head = self.chain.head
        report = BackfillReport(start_block=max(0, head - window + 1), end_block=head)
        if head < 0:
            return report

        canonical: Dict[int, Dict[str, Any]] = {}
        payouts: Dict[str, int] = {}
        for payload in self.chain.event_payloads(report.start_block, head):
            if payload['event'] == MEMBERSHIP_MINTED:
                record = self.chain.get_membership(payload['to'])
                if record is None or record.token_id != int(payload['tokenId']):
                    continue
                canonical[record.token_id] = {
                    'owner': record.owner,
                    'minted_at': _block_time(record.minted_at),
                    'block_number': payload['block'],
                    'tx_hash': payload['tx_hash'],
                    'log_index': payload['log_index'],
                }
            elif payload['event'] == INITIAL_FUND_SENT:
                payouts[payload['tx_hash']] = int(payload['amount'])

        with transaction.atomic():
            for token_id, fields in canonical.items():
                fields['payout_amount'] = payouts.get(fields['tx_hash'])
                fields['is_active'] = True
                log_index = fields.pop('log_index')
                ProcessedMembershipEvent.objects.get_or_create(
                    tx_hash=fields['tx_hash'],
                    log_index=log_index,
                    defaults={'event_name': MEMBERSHIP_MINTED, 'token_id': token_id},
                )

                entry = RegistryEntry.objects.select_for_update().filter(token_id=token_id).first()
                if entry is None:
                    RegistryEntry.objects.create(token_id=token_id, **fields)
                    report.created += 1
                    continue
                drift = {k: v for k, v in fields.items() if getattr(entry, k) != v}
                if not drift:
                    report.unchanged += 1
                    continue
                logger.warning(f"[RegistryBackfill] Correcting token {token_id}: {sorted(drift)}")
                for key, value in drift.items():
                    setattr(entry, key, value)
                entry.save()
                report.corrected += 1

            stale = RegistryEntry.objects.filter(
                block_number__gte=report.start_block,
                block_number__lte=head,
                is_active=True,
            ).exclude(token_id__in=list(canonical))
            report.deactivated = stale.update(is_active=False)

            RegistryCursor.objects.update_or_create(
                stream=MEMBERSHIP_STREAM,
                defaults={'last_scanned_block': head},
            )

        logger.info(
            f"[RegistryBackfill] blocks {report.start_block}-{head}: created={report.created} "
            f"corrected={report.corrected} deactivated={report.deactivated}"
        )
        return report


# ----------------------------------------------------------------------
# Read API
# ----------------------------------------------------------------------

def get_membership(address: str) -> Optional[RegistryEntry]:
    return RegistryEntry.objects.filter(owner=address, is_active=True).order_by('token_id').first()


def is_member(address: str) -> bool:
    return RegistryEntry.objects.filter(owner=address, is_active=True).exists()
