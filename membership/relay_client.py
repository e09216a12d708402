"""
Submission paths for forward requests: the relay network (HTTP), an
in-process relay for development, and direct submission paid by the
operator.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import requests

from .errors import ExecutionReverted, RelayRejected, RelayTimeout
from .forward_request import ForwardRequest
from .ledger import Block, ExecutionResult, Ledger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RelayReceipt:
    tx_hash: str
    success: bool
    token_id: Optional[int] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def from_execution(cls, result: ExecutionResult) -> 'RelayReceipt':
        return cls(
            tx_hash=result.tx_hash,
            success=result.success,
            token_id=result.token_id,
            error_code=result.revert_reason,
            error_message=str(result.error) if result.error else None,
        )

    @classmethod
    def from_block(cls, block: Block) -> 'RelayReceipt':
        return cls(
            tx_hash=block.tx_hash,
            success=block.success,
            token_id=block.token_id,
            error_code=block.revert_reason,
        )


class HttpRelayClient:
    """
    Client for a relay service speaking JSON over HTTP.

    POST {base_url}/submit           -> {"txHash": ...} or {"error": ..., "code": ...}
    GET  {base_url}/status/<txHash>  -> {"status": "pending"|"confirmed"|"failed", ...}
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        poll_interval: float = 1.0,
        request_timeout: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.base_url = base_url.rstrip('/')
        self.poll_interval = poll_interval
        self.request_timeout = request_timeout
        self.sleep = sleep
        self.clock = clock
        self.session = requests.Session()
        if api_key:
            self.session.headers['Authorization'] = f"Bearer {api_key}"

    def submit(self, request: ForwardRequest) -> str:
        url = f"{self.base_url}/submit"
        try:
            resp = self.session.post(url, json=request.to_payload(), timeout=self.request_timeout)
        except requests.Timeout as e:
            raise RelayTimeout(f"Relay submit timed out: {e}") from e
        except requests.RequestException as e:
            raise RelayRejected(f"Relay unreachable: {e}") from e

        if resp.status_code >= 400:
            body = self._json(resp)
            raise RelayRejected(
                f"Relay rejected request ({resp.status_code}): {body.get('code') or body.get('error') or resp.text}"
            )
        tx_hash = self._json(resp).get('txHash')
        if not tx_hash:
            raise RelayRejected('Relay accepted request without a txHash')
        return tx_hash

    def wait_for_confirmation(self, tx_hash: str, timeout: float) -> RelayReceipt:
        deadline = self.clock() + timeout
        while True:
            status = self._status(tx_hash)
            state = status.get('status')
            if state == 'confirmed':
                return RelayReceipt(tx_hash=tx_hash, success=True, token_id=status.get('tokenId'))
            if state == 'failed':
                return RelayReceipt(
                    tx_hash=tx_hash,
                    success=False,
                    error_code=status.get('code'),
                    error_message=status.get('error'),
                )
            if self.clock() >= deadline:
                raise RelayTimeout(f"No confirmation for {tx_hash} within {timeout}s")
            self.sleep(self.poll_interval)

    def _status(self, tx_hash: str) -> Dict:
        try:
            resp = self.session.get(f"{self.base_url}/status/{tx_hash}", timeout=self.request_timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            # Treat as still pending; the deadline bounds how long we keep asking
            logger.warning(f"Relay status poll failed for {tx_hash[:12]}: {e}")
            return {'status': 'pending'}
        return self._json(resp)

    @staticmethod
    def _json(resp) -> Dict:
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}


class LocalRelay:
    """Relay that submits to the shared ledger in-process, paying fees from ``relayer``."""

    def __init__(self, ledger: Ledger, relayer: str):
        self.ledger = ledger
        self.relayer = relayer

    def submit(self, request: ForwardRequest) -> str:
        try:
            result = self.ledger.submit_forward_request(request, fee_payer=self.relayer)
        except ExecutionReverted as e:
            raise RelayRejected(str(e)) from e
        return result.tx_hash

    def wait_for_confirmation(self, tx_hash: str, timeout: float) -> RelayReceipt:
        block = self.ledger.get_receipt(tx_hash)
        if block is None:
            raise RelayTimeout(f"Unknown relay transaction {tx_hash}")
        return RelayReceipt.from_block(block)


class DirectSubmitter:
    """Fallback path: the operator submits the signed request and pays the fee."""

    def __init__(self, ledger: Ledger, operator: str):
        self.ledger = ledger
        self.operator = operator

    def submit(self, request: ForwardRequest) -> RelayReceipt:
        result = self.ledger.submit_forward_request(request, fee_payer=self.operator)
        logger.info(
            f"Direct submission {result.tx_hash[:12]} for {request.sender[:10]}... "
            f"paid by operator, success={result.success}"
        )
        return RelayReceipt.from_execution(result)
