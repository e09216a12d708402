import json
from unittest.mock import patch

from django.core.cache import cache
from django.test import TestCase, override_settings

from membership.services import build_issuance_stack
from membership.tests.fakes import RELAYER, FakeClock, new_wallet, signed_mint

AUTH = {'HTTP_AUTHORIZATION': 'Bearer ledger-secret'}


@override_settings(MEMBERSHIP_LEDGER_API_KEY='ledger-secret', MEMBERSHIP_RELAYER_ADDRESS=RELAYER)
class LedgerIngressTests(TestCase):
    def setUp(self):
        cache.clear()
        self.stack = build_issuance_stack(clock=FakeClock(), sleep=lambda seconds: None, publish_events=False)
        patcher = patch('membership.views.get_issuance_stack', return_value=self.stack)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.private_key, self.address = new_wallet()

    def submit(self, payload, **extra):
        return self.client.post('/ledger/submit', data=json.dumps(payload), content_type='application/json', **extra)

    def status(self, tx_hash):
        return self.client.get(f'/ledger/status/{tx_hash}', **AUTH).json()

    def test_relay_submission_mints_on_shared_ledger(self):
        request = signed_mint(self.private_key, self.address)
        relayer_before = self.stack.ledger.balance_of(RELAYER)

        response = self.submit(request.to_payload(), **AUTH)

        self.assertEqual(response.status_code, 200)
        tx_hash = response.json()['txHash']
        self.assertEqual(self.status(tx_hash), {'txHash': tx_hash, 'block': 0, 'status': 'confirmed', 'tokenId': 0})
        self.assertEqual(self.stack.ledger.get_membership(self.address).token_id, 0)
        self.assertEqual(self.stack.ledger.balance_of(RELAYER), relayer_before - self.stack.ledger.fee)

    def test_replayed_submission_reports_failed_status(self):
        request = signed_mint(self.private_key, self.address)
        self.submit(request.to_payload(), **AUTH)

        response = self.submit(request.to_payload(), **AUTH)

        status = self.status(response.json()['txHash'])
        self.assertEqual(status['status'], 'failed')
        self.assertEqual(status['code'], 'nonce_replay')
        self.assertEqual(self.stack.ledger.contract.total_supply, 1)

    def test_unauthorized_submission_is_refused(self):
        request = signed_mint(self.private_key, self.address)

        response = self.submit(request.to_payload(), HTTP_AUTHORIZATION='Bearer wrong')

        self.assertEqual(response.status_code, 401)
        self.assertEqual(self.stack.ledger.head, -1)

    def test_malformed_submission_is_rejected(self):
        response = self.submit({'from': self.address}, **AUTH)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['code'], 'malformed_request')

    def test_unknown_transaction_is_pending(self):
        self.assertEqual(self.status('feed'), {'txHash': 'feed', 'status': 'pending'})

    def test_submit_requires_post(self):
        response = self.client.get('/ledger/submit', **AUTH)
        self.assertEqual(response.status_code, 405)
