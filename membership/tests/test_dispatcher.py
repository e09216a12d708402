import threading
import time

from django.core.cache import cache
from django.db import connection
from django.test import SimpleTestCase, TestCase, TransactionTestCase, skipUnlessDBFeature

from membership.dispatcher import RelayDispatcher, identity_lock
from membership.errors import (
    DispatchInProgress,
    FallbackExhausted,
    InsufficientTreasury,
    NonceReplay,
    RelayRejected,
    RelayTimeout,
    RequestExpired,
    SignatureInvalid,
    TransferFailed,
)
from membership.models import LedgerMembership, TransactionAttempt
from membership.relay_client import DirectSubmitter
from membership.tests.fakes import (
    OPERATOR,
    RELAYER,
    FakeClock,
    ScriptedRelay,
    make_ledger,
    new_wallet,
    signed_mint,
)


class RelayDispatcherTests(TestCase):
    def setUp(self):
        cache.clear()
        self.sleeps = []
        self.ledger = make_ledger(balance=300_000, payout=30_000)
        self.ledger.fund(RELAYER, 1_000_000)
        self.private_key, self.address = new_wallet()
        self.request = signed_mint(self.private_key, self.address)

    def make_dispatcher(self, relay=None, **kwargs):
        self.relay = relay or ScriptedRelay(self.ledger)
        return RelayDispatcher(
            chain=self.ledger,
            relay=self.relay,
            direct_submitter=DirectSubmitter(self.ledger, OPERATOR),
            sleep=self.sleeps.append,
            **kwargs
        )

    def test_relay_success_issues_membership(self):
        outcome = self.make_dispatcher().dispatch(self.request)

        self.assertEqual(outcome.status, 'confirmed')
        self.assertEqual(outcome.outcome, 'issued')
        self.assertEqual(outcome.token_id, 0)
        self.assertFalse(outcome.via_fallback)
        self.assertEqual(self.relay.submissions, 1)
        self.assertEqual(self.sleeps, [])

        attempt = TransactionAttempt.objects.get(request_id=self.request.request_id)
        self.assertEqual(attempt.status, 'confirmed')
        self.assertEqual(attempt.token_id, 0)
        self.assertEqual(attempt.tx_hash, outcome.tx_hash)
        self.assertIsNotNone(attempt.completed_at)

    def test_relay_timeouts_fall_back_to_direct_submission(self):
        """Test that three relay timeouts end in an operator-paid mint"""
        self.ledger.fund(OPERATOR, 1_000_000)
        relay = ScriptedRelay(self.ledger, submit_errors=[RelayTimeout('t1'), RelayTimeout('t2'), RelayTimeout('t3')])
        outcome = self.make_dispatcher(relay).dispatch(self.request)

        self.assertEqual(outcome.status, 'confirmed')
        self.assertEqual(outcome.outcome, 'issued')
        self.assertEqual(outcome.token_id, 0)
        self.assertTrue(outcome.via_fallback)
        self.assertEqual(outcome.retry_count, 2)
        self.assertEqual(relay.submissions, 3)
        self.assertEqual(self.sleeps, [1.0, 2.0])
        self.assertEqual(self.ledger.balance_of(OPERATOR), 1_000_000 - self.ledger.fee)
        self.assertEqual(self.ledger.balance_of(RELAYER), 1_000_000)

    def test_relay_recovers_on_second_attempt(self):
        relay = ScriptedRelay(self.ledger, submit_errors=[RelayRejected('busy')])
        outcome = self.make_dispatcher(relay).dispatch(self.request)

        self.assertEqual(outcome.outcome, 'issued')
        self.assertFalse(outcome.via_fallback)
        self.assertEqual(outcome.retry_count, 1)
        self.assertEqual(self.sleeps, [1.0])

    def test_lost_confirmation_does_not_mint_twice(self):
        """Test that a mint whose confirmation was lost is detected before retrying"""
        relay = ScriptedRelay(self.ledger, lost_confirmations=1)
        outcome = self.make_dispatcher(relay).dispatch(self.request)

        self.assertEqual(outcome.status, 'confirmed')
        self.assertEqual(outcome.outcome, 'already_member')
        self.assertEqual(outcome.token_id, 0)
        self.assertEqual(relay.submissions, 1)
        self.assertEqual(self.ledger.contract.total_supply, 1)
        self.assertEqual(self.ledger.contract.treasury.balance, 270_000)

    def test_existing_member_is_never_submitted(self):
        other = signed_mint(self.private_key, self.address, nonce=0)
        self.make_dispatcher().dispatch(other)

        again = signed_mint(self.private_key, self.address, nonce=1)
        outcome = self.make_dispatcher().dispatch(again)

        self.assertEqual(outcome.outcome, 'already_member')
        self.assertEqual(outcome.token_id, 0)
        self.assertEqual(self.relay.submissions, 0)

    def test_insufficient_treasury_is_terminal_until_replenished(self):
        self.ledger.contract.treasury.reserve(290_000)
        dispatcher = self.make_dispatcher()

        outcome = dispatcher.dispatch(self.request)

        self.assertEqual(outcome.status, 'failed')
        self.assertEqual(outcome.outcome, 'insufficient_treasury')
        self.assertIsInstance(outcome.error, InsufficientTreasury)
        self.assertEqual(self.relay.submissions, 1)
        self.assertEqual(self.sleeps, [])
        self.assertFalse(outcome.via_fallback)

        self.ledger.contract.treasury.credit(100_000)
        retried = dispatcher.dispatch(self.request)

        self.assertEqual(retried.outcome, 'issued')
        self.assertEqual(retried.token_id, 0)
        self.assertEqual(TransactionAttempt.objects.filter(request_id=self.request.request_id).count(), 1)

    def test_invalid_signature_is_never_submitted(self):
        other_key, _ = new_wallet()
        forged = self.request.signed(other_key)

        outcome = self.make_dispatcher().dispatch(forged)

        self.assertEqual(outcome.status, 'failed')
        self.assertIsInstance(outcome.error, SignatureInvalid)
        self.assertEqual(self.relay.submissions, 0)
        self.assertFalse(self.ledger.is_member(self.address))

    def test_forged_request_for_existing_member_is_rejected(self):
        """Test that a member's address signed with another key is never reported as confirmed"""
        self.make_dispatcher().dispatch(self.request)
        other_key, _ = new_wallet()
        forged = signed_mint(self.private_key, self.address, nonce=1).signed(other_key)

        outcome = self.make_dispatcher().dispatch(forged)

        self.assertEqual(outcome.status, 'failed')
        self.assertEqual(outcome.outcome, 'failed')
        self.assertIsInstance(outcome.error, SignatureInvalid)
        self.assertIsNone(outcome.token_id)
        self.assertEqual(self.relay.submissions, 0)
        attempt = TransactionAttempt.objects.get(request_id=forged.request_id)
        self.assertEqual(attempt.status, 'failed')
        self.assertEqual(attempt.error_code, 'signature_invalid')

    def test_request_executed_elsewhere_reports_existing_membership(self):
        """Test that a request already included by another submitter settles as already_member"""
        self.ledger.submit_forward_request(self.request, fee_payer=RELAYER)

        outcome = self.make_dispatcher().dispatch(self.request)

        self.assertEqual(outcome.status, 'confirmed')
        self.assertEqual(outcome.outcome, 'already_member')
        self.assertEqual(outcome.token_id, 0)
        self.assertEqual(self.relay.submissions, 0)

    def test_spent_nonce_without_membership_fails(self):
        self.ledger.forwarder.consume(self.request)

        outcome = self.make_dispatcher().dispatch(self.request)

        self.assertEqual(outcome.status, 'failed')
        self.assertIsInstance(outcome.error, NonceReplay)
        self.assertEqual(self.relay.submissions, 0)

    def test_dispatchers_on_separate_ledgers_share_membership(self):
        """Test that a second worker's ledger sees issuances made through the first"""
        self.make_dispatcher().dispatch(self.request)
        other_ledger = make_ledger()
        other = RelayDispatcher(
            chain=other_ledger,
            relay=ScriptedRelay(other_ledger),
            direct_submitter=DirectSubmitter(other_ledger, OPERATOR),
            sleep=self.sleeps.append,
        )
        friend_key, friend = new_wallet()

        second = other.dispatch(signed_mint(friend_key, friend))
        again = other.dispatch(signed_mint(self.private_key, self.address, nonce=1))

        self.assertEqual(second.outcome, 'issued')
        self.assertEqual(second.token_id, 1)
        self.assertEqual(again.outcome, 'already_member')
        self.assertEqual(again.token_id, 0)
        self.assertEqual(LedgerMembership.objects.count(), 2)
        self.assertEqual(self.ledger.contract.treasury.balance, 240_000)

        self.assertFalse(self.ledger.is_member(self.address))

    def test_expired_request_is_never_submitted(self):
        self.ledger.clock.now = self.request.valid_until + 1

        outcome = self.make_dispatcher().dispatch(self.request)

        self.assertIsInstance(outcome.error, RequestExpired)
        self.assertEqual(self.relay.submissions, 0)

    def test_resubmitting_confirmed_request_reports_existing_membership(self):
        dispatcher = self.make_dispatcher()
        first = dispatcher.dispatch(self.request)

        second = dispatcher.dispatch(self.request)

        self.assertEqual(second.status, 'confirmed')
        self.assertEqual(second.outcome, 'already_member')
        self.assertEqual(second.token_id, first.token_id)
        self.assertEqual(self.relay.submissions, 1)

    def test_fallback_failure_is_reported(self):
        """Test that an operator without gas ends the dispatch as failed"""
        relay = ScriptedRelay(self.ledger, submit_errors=[RelayTimeout('t')] * 3)

        outcome = self.make_dispatcher(relay).dispatch(self.request)

        self.assertEqual(outcome.status, 'failed')
        self.assertIsInstance(outcome.error, FallbackExhausted)
        self.assertTrue(outcome.via_fallback)
        self.assertFalse(self.ledger.is_member(self.address))
        attempt = TransactionAttempt.objects.get(request_id=self.request.request_id)
        self.assertEqual(attempt.error_code, 'fallback_exhausted')

    def test_payout_rejection_is_terminal(self):
        def reject(amount):
            raise RuntimeError('reject')

        self.ledger.register_receiver(self.address, reject)

        outcome = self.make_dispatcher().dispatch(self.request)

        self.assertEqual(outcome.status, 'failed')
        self.assertEqual(outcome.outcome, 'failed')
        self.assertIsInstance(outcome.error, TransferFailed)
        self.assertEqual(self.relay.submissions, 1)
        self.assertEqual(self.ledger.contract.treasury.balance, 300_000)

    def test_backoff_is_capped(self):
        dispatcher = self.make_dispatcher(backoff_base=1.0, backoff_cap=3.0)
        self.assertEqual([dispatcher.backoff_delay(n) for n in range(4)], [1.0, 2.0, 3.0, 3.0])


@skipUnlessDBFeature('has_select_for_update')
class ConcurrentDispatchTests(TransactionTestCase):
    def setUp(self):
        cache.clear()

    def test_parallel_dispatch_for_one_identity_issues_once(self):
        """Test that workers dispatching different nonces for one identity mint a single token"""
        private_key, address = new_wallet()
        make_ledger().fund(RELAYER, 1_000_000)
        outcomes = []
        start = threading.Barrier(4)

        def worker(nonce):
            ledger = make_ledger(clock=FakeClock())
            dispatcher = RelayDispatcher(
                chain=ledger,
                relay=ScriptedRelay(ledger),
                direct_submitter=DirectSubmitter(ledger, OPERATOR),
                lock_wait=10,
            )
            start.wait()
            try:
                outcomes.append(dispatcher.dispatch(signed_mint(private_key, address, nonce=nonce)))
            finally:
                connection.close()

        threads = [threading.Thread(target=worker, args=(nonce,)) for nonce in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(sorted(o.outcome for o in outcomes), ['already_member'] * 3 + ['issued'])
        self.assertEqual(LedgerMembership.objects.filter(owner=address).count(), 1)
        self.assertEqual(make_ledger().contract.treasury.balance, 270_000)


class IdentityLockTests(SimpleTestCase):
    def setUp(self):
        cache.clear()

    def test_same_identity_is_exclusive(self):
        with identity_lock('member-a'):
            with self.assertRaises(DispatchInProgress):
                with identity_lock('member-a', wait=0):
                    pass
            with identity_lock('member-b', wait=0):
                pass

        with identity_lock('member-a', wait=0):
            pass

    def test_waiter_proceeds_after_release(self):
        order = []
        waiting = threading.Event()

        def poll_sleep(seconds):
            waiting.set()
            time.sleep(0.01)

        def contender():
            with identity_lock('member-a', wait=5, sleep=poll_sleep):
                order.append('contender')

        with identity_lock('member-a'):
            thread = threading.Thread(target=contender)
            thread.start()
            self.assertTrue(waiting.wait(5))
            order.append('holder')
        thread.join(5)

        self.assertEqual(order, ['holder', 'contender'])

    def test_lock_released_on_error(self):
        with self.assertRaises(RuntimeError):
            with identity_lock('member-a'):
                raise RuntimeError('boom')

        with identity_lock('member-a', wait=0):
            pass
