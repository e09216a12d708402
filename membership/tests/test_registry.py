from django.core.cache import cache
from django.test import TestCase

from membership import registry
from membership.contract import INITIAL_FUND_SENT, MEMBERSHIP_MINTED
from membership.ledger import FunctionCall
from membership.models import ProcessedMembershipEvent, RegistryCursor, RegistryEntry
from membership.registry import BACKFILL_LOCK_KEY, MEMBERSHIP_STREAM, RegistrySynchronizer
from membership.tests.fakes import ADMIN, make_ledger


class RegistryTestCase(TestCase):
    def setUp(self):
        cache.clear()
        self.ledger = make_ledger()
        self.sync = RegistrySynchronizer(chain=self.ledger)

    def mint(self, identity):
        result = self.ledger.execute(identity, FunctionCall('mint'), fee_payer=ADMIN)
        self.assertTrue(result.success)
        return self.ledger.event_payloads(result.block_number, result.block_number)


class ApplyEventTests(RegistryTestCase):
    def test_minted_event_creates_entry(self):
        minted, funded = self.mint('member-a')

        self.assertTrue(self.sync.apply_event(minted))
        self.assertTrue(self.sync.apply_event(funded))

        entry = RegistryEntry.objects.get(token_id=0)
        self.assertEqual(entry.owner, 'member-a')
        self.assertEqual(entry.payout_amount, 30_000)
        self.assertEqual(entry.block_number, minted['block'])
        self.assertEqual(entry.tx_hash, minted['tx_hash'])
        self.assertTrue(entry.is_active)

    def test_duplicate_delivery_is_applied_once(self):
        """Test that at-least-once delivery never produces a second entry"""
        minted, _ = self.mint('member-a')

        self.assertTrue(self.sync.apply_event(minted))
        self.assertFalse(self.sync.apply_event(dict(minted)))

        self.assertEqual(RegistryEntry.objects.count(), 1)
        self.assertEqual(ProcessedMembershipEvent.objects.count(), 1)

    def test_fund_sent_before_mint_is_deferred(self):
        minted, funded = self.mint('member-a')

        self.assertFalse(self.sync.apply_event(funded))
        self.assertEqual(ProcessedMembershipEvent.objects.count(), 0)

        self.assertTrue(self.sync.apply_event(minted))
        self.assertTrue(self.sync.apply_event(funded))
        self.assertEqual(RegistryEntry.objects.get(token_id=0).payout_amount, 30_000)

    def test_replayed_mint_after_manual_edit_keeps_single_row(self):
        minted, _ = self.mint('member-a')
        self.sync.apply_event(minted)
        ProcessedMembershipEvent.objects.all().delete()

        self.assertTrue(self.sync.apply_event(minted))
        self.assertEqual(RegistryEntry.objects.filter(token_id=0).count(), 1)

    def test_unknown_event_is_ignored(self):
        self.assertFalse(self.sync.apply_event({'event': 'Approval', 'tx_hash': 'x'}))


class BackfillTests(RegistryTestCase):
    def test_backfill_creates_missed_entries(self):
        self.mint('member-a')
        self.mint('member-b')

        report = self.sync.backfill()

        self.assertEqual(report.created, 2)
        self.assertEqual(report.end_block, self.ledger.head)
        self.assertEqual(
            list(RegistryEntry.objects.values_list('token_id', 'owner', 'payout_amount')),
            [(0, 'member-a', 30_000), (1, 'member-b', 30_000)],
        )
        cursor = RegistryCursor.objects.get(stream=MEMBERSHIP_STREAM)
        self.assertEqual(cursor.last_scanned_block, self.ledger.head)

    def test_backfill_after_live_delivery_is_a_no_op(self):
        for payload in self.mint('member-a'):
            self.sync.apply_event(payload)

        report = self.sync.backfill()

        self.assertEqual(report.created, 0)
        self.assertEqual(report.corrected, 0)
        self.assertEqual(report.unchanged, 1)

    def test_backfill_corrects_drift(self):
        for payload in self.mint('member-a'):
            self.sync.apply_event(payload)
        RegistryEntry.objects.filter(token_id=0).update(owner='member-z', payout_amount=None)

        report = self.sync.backfill()

        self.assertEqual(report.corrected, 1)
        entry = RegistryEntry.objects.get(token_id=0)
        self.assertEqual(entry.owner, 'member-a')
        self.assertEqual(entry.payout_amount, 30_000)

    def test_backfill_deactivates_entries_without_chain_backing(self):
        minted, _ = self.mint('member-a')
        RegistryEntry.objects.create(
            token_id=99,
            owner='ghost',
            minted_at=registry._block_time(minted['timestamp']),
            block_number=minted['block'],
            tx_hash='not-on-chain',
        )

        report = self.sync.backfill()

        self.assertEqual(report.deactivated, 1)
        self.assertFalse(RegistryEntry.objects.get(token_id=99).is_active)
        self.assertFalse(registry.is_member('ghost'))

    def test_backfill_skips_when_locked(self):
        self.mint('member-a')
        cache.add(BACKFILL_LOCK_KEY, '1', timeout=60)

        report = self.sync.backfill()

        self.assertTrue(report.skipped)
        self.assertEqual(RegistryEntry.objects.count(), 0)

    def test_backfill_respects_window(self):
        self.mint('member-a')
        self.mint('member-b')

        report = self.sync.backfill(window=1)

        self.assertEqual(report.start_block, self.ledger.head)
        self.assertEqual(list(RegistryEntry.objects.values_list('owner', flat=True)), ['member-b'])

    def test_empty_chain(self):
        report = self.sync.backfill()
        self.assertEqual(report.end_block, -1)
        self.assertEqual(RegistryEntry.objects.count(), 0)


class ReadApiTests(RegistryTestCase):
    def test_membership_lookup(self):
        for payload in self.mint('member-a'):
            self.sync.apply_event(payload)

        self.assertTrue(registry.is_member('member-a'))
        self.assertEqual(registry.get_membership('member-a').token_id, 0)
        self.assertFalse(registry.is_member('member-b'))
        self.assertIsNone(registry.get_membership('member-b'))

    def test_inactive_entry_is_not_a_member(self):
        for payload in self.mint('member-a'):
            self.sync.apply_event(payload)
        RegistryEntry.objects.filter(token_id=0).update(is_active=False)

        self.assertFalse(registry.is_member('member-a'))
        self.assertIsNone(registry.get_membership('member-a'))

    def test_event_names(self):
        minted, funded = self.mint('member-a')
        self.assertEqual(minted['event'], MEMBERSHIP_MINTED)
        self.assertEqual(funded['event'], INITIAL_FUND_SENT)
