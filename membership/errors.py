"""
Error taxonomy for gasless membership issuance.

Every failure carries a stable ``code`` so that dispatch outcomes, task
results and GraphQL payloads can report it without leaking exception text.
"""


class MembershipError(Exception):
    """Base class for all issuance failures."""

    code = 'membership_error'
    retryable = False

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__name__)


# Request-level failures, rejected at the boundary before execution

class VerificationError(MembershipError):
    code = 'verification_failed'


class SignatureInvalid(VerificationError):
    code = 'signature_invalid'


class NonceReplay(VerificationError):
    code = 'nonce_replay'


class RequestExpired(VerificationError):
    code = 'request_expired'


class MalformedRequest(VerificationError):
    code = 'malformed_request'


# Execution-level failures, raised inside the contract and rolled back

class AlreadyMember(MembershipError):
    code = 'already_member'

    def __init__(self, identity=None, token_id=None, message=None):
        self.identity = identity
        self.token_id = token_id
        super().__init__(message or f"{identity} already holds membership token {token_id}")


class InsufficientTreasury(MembershipError):
    code = 'insufficient_treasury'

    def __init__(self, balance=None, required=None, message=None):
        self.balance = balance
        self.required = required
        super().__init__(message or f"Treasury balance {balance} is below payout {required}")


class TransferFailed(MembershipError):
    code = 'transfer_failed'


class TransferNotAllowed(MembershipError):
    code = 'transfer_not_allowed'


class ReentrantCall(MembershipError):
    code = 'reentrant_call'


class NotOwner(MembershipError):
    code = 'not_owner'


class ExecutionReverted(MembershipError):
    code = 'execution_reverted'


# Relay failures, retried up to the dispatcher's budget

class RelayError(MembershipError):
    code = 'relay_error'
    retryable = True


class RelayTimeout(RelayError):
    code = 'relay_timeout'


class RelayRejected(RelayError):
    code = 'relay_rejected'


class FallbackExhausted(MembershipError):
    code = 'fallback_exhausted'


class DispatchInProgress(MembershipError):
    """Another worker holds the dispatch lock for this identity."""
    code = 'dispatch_in_progress'
    retryable = True


# Revert reasons travel over the relay as codes; map them back to classes
REVERT_ERRORS = {
    cls.code: cls
    for cls in (
        SignatureInvalid,
        NonceReplay,
        RequestExpired,
        MalformedRequest,
        TransferFailed,
        TransferNotAllowed,
        ReentrantCall,
        NotOwner,
        ExecutionReverted,
    )
}


def error_from_code(code, message=None):
    """Rebuild a membership error from a relay-reported revert code."""
    if code == AlreadyMember.code:
        return AlreadyMember(message=message)
    if code == InsufficientTreasury.code:
        return InsufficientTreasury(message=message)
    cls = REVERT_ERRORS.get(code, ExecutionReverted)
    return cls(message)
