"""
Trusted forwarder: verifies signed forward requests and exposes the signer as
the effective sender of the downstream call.
"""

import logging
import time
from typing import Callable

from algosdk import encoding, util
from django.db import IntegrityError, transaction

from .errors import NonceReplay, RequestExpired, SignatureInvalid
from .forward_request import ForwardRequest
from .models import ConsumedNonce

logger = logging.getLogger(__name__)


class ForwarderVerifier:
    """
    Validates a ForwardRequest before anything executes.

    For ed25519 wallets the public key is the address itself, so recovering
    the signer means checking the signature under the claimed ``sender``.
    A signature made by any other key does not verify. Spent nonces are
    stored per forwarder address, shared by every process.
    """

    def __init__(self, address: str, clock: Callable[[], float] = time.time):
        self.address = address
        self.clock = clock

    def verify(self, request: ForwardRequest) -> str:
        """Run every check without consuming the nonce. Returns the effective sender."""
        if not request.signature or not encoding.is_valid_address(request.sender):
            raise SignatureInvalid(f"Missing signature or malformed sender {request.sender!r}")

        try:
            verified = util.verify_bytes(request.message(), request.signature, request.sender)
        except (ValueError, TypeError) as e:
            logger.warning(f"Signature decode failed for {request.sender[:10]}...: {e}")
            verified = False
        if not verified:
            raise SignatureInvalid(f"Signature does not match sender {request.sender}")

        if self.is_consumed(request.sender, request.nonce):
            raise NonceReplay(f"Nonce {request.nonce} already used by {request.sender}")

        if self.clock() > request.valid_until:
            raise RequestExpired(f"Request expired at {request.valid_until}")

        return request.sender

    # Boundary validation used by the dispatcher reads the same way
    check = verify

    def consume(self, request: ForwardRequest) -> None:
        """Mark the nonce used. The unique constraint rejects a concurrent second use."""
        try:
            with transaction.atomic():
                ConsumedNonce.objects.create(forwarder=self.address, sender=request.sender, nonce=request.nonce)
        except IntegrityError as e:
            raise NonceReplay(f"Nonce {request.nonce} already used by {request.sender}") from e

    def is_consumed(self, sender: str, nonce: int) -> bool:
        return ConsumedNonce.objects.filter(forwarder=self.address, sender=sender, nonce=nonce).exists()
