"""
Signed forward requests (EIP-2771 style meta-transactions).

The user signs the request body with their wallet key; a relay or the
operator then submits it and pays the fee, while the contract executes it on
behalf of ``sender``.
"""

from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

import msgpack
from algosdk import util

from .errors import MalformedRequest

# Domain tag keeps forward-request signatures from being valid for any other
# message signed with the same wallet key
FORWARD_REQUEST_DOMAIN = b"membership.forward-request.v1:"

SIGNED_FIELDS = ('from', 'to', 'value', 'gasLimit', 'nonce', 'data', 'validUntil')


@dataclass(frozen=True)
class ForwardRequest:
    sender: str
    to: str
    value: int
    gas_limit: int
    nonce: int
    data: bytes
    valid_until: int
    signature: Optional[str] = None

    def signed_body(self) -> Dict[str, Any]:
        return {
            'from': self.sender,
            'to': self.to,
            'value': int(self.value),
            'gasLimit': int(self.gas_limit),
            'nonce': int(self.nonce),
            'data': bytes(self.data),
            'validUntil': int(self.valid_until),
        }

    def message(self) -> bytes:
        """Canonical bytes covered by the signature."""
        body = self.signed_body()
        packed = msgpack.packb(
            [[key, body[key]] for key in SIGNED_FIELDS],
            use_bin_type=True,
        )
        return FORWARD_REQUEST_DOMAIN + packed

    @property
    def request_id(self) -> str:
        """Stable identifier of the signed payload, used to track attempts."""
        digest = hashlib.sha256(self.message())
        digest.update((self.signature or '').encode('utf-8'))
        return digest.hexdigest()

    def signed(self, private_key: str) -> 'ForwardRequest':
        return replace(self, signature=util.sign_bytes(self.message(), private_key))

    def to_payload(self) -> Dict[str, Any]:
        """JSON-safe representation for the relay API and Celery."""
        return {
            'from': self.sender,
            'to': self.to,
            'value': self.value,
            'gasLimit': self.gas_limit,
            'nonce': self.nonce,
            'data': base64.b64encode(self.data).decode('ascii'),
            'validUntil': self.valid_until,
            'signature': self.signature,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> 'ForwardRequest':
        try:
            return cls(
                sender=payload['from'],
                to=payload['to'],
                value=int(payload.get('value', 0)),
                gas_limit=int(payload['gasLimit']),
                nonce=int(payload['nonce']),
                data=base64.b64decode(payload.get('data') or b''),
                valid_until=int(payload['validUntil']),
                signature=payload.get('signature'),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise MalformedRequest(f"Malformed forward request payload: {e!r}") from e


def encode_call(method: str, *args) -> bytes:
    return msgpack.packb({'method': method, 'args': list(args)}, use_bin_type=True)


def decode_call(data: bytes) -> Dict[str, Any]:
    call = msgpack.unpackb(data, raw=False)
    if not isinstance(call, dict) or 'method' not in call:
        raise ValueError('Malformed call data')
    call.setdefault('args', [])
    return call


def sign_forward_request(
    private_key: str,
    sender: str,
    to: str,
    nonce: int,
    valid_until: int,
    method: str = 'mint',
    gas_limit: int = 200_000,
    value: int = 0,
) -> ForwardRequest:
    """
    Build and sign a forward request on the user's side.

    Args:
        private_key: base64 algosdk private key of ``sender``
        sender: the user's wallet address
        to: membership contract address
        nonce: unused nonce for ``sender``
        valid_until: unix timestamp after which the request is rejected
    """
    request = ForwardRequest(
        sender=sender,
        to=to,
        value=value,
        gas_limit=gas_limit,
        nonce=nonce,
        data=encode_call(method),
        valid_until=valid_until,
    )
    return request.signed(private_key)
