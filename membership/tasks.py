from celery import shared_task
from celery.utils.log import get_task_logger

from .errors import DispatchInProgress, MalformedRequest
from .forward_request import ForwardRequest
from .registry import RegistrySynchronizer
from .services import get_issuance_stack

logger = get_task_logger(__name__)


def _failed_result(request_id, error):
    return {
        'request_id': request_id,
        'status': 'failed',
        'outcome': 'failed',
        'token_id': None,
        'tx_hash': None,
        'error': error.code,
        'via_fallback': False,
    }


@shared_task(bind=True, max_retries=3)
def dispatch_forward_request(self, payload):
    """
    Drive a signed forward request to a terminal outcome.

    Returns the user-visible status: issued / already_member /
    insufficient_treasury / failed. A malformed payload or a dispatch lock
    that stays busy past the retry budget ends as failed with its error code.
    """
    try:
        request = ForwardRequest.from_payload(payload)
    except MalformedRequest as exc:
        logger.error(f"Dropping malformed forward request: {exc}")
        return _failed_result(None, exc)

    try:
        outcome = get_issuance_stack().issue(request)
    except DispatchInProgress as exc:
        if self.request.retries >= self.max_retries:
            logger.error(f"Dispatch for {request.sender[:10]}... still in flight after {self.max_retries} retries")
            return _failed_result(request.request_id, exc)
        logger.info(f"Dispatch for {request.sender[:10]}... in flight, retrying later")
        raise self.retry(exc=exc, countdown=2 ** self.request.retries * 5)

    return {
        'request_id': outcome.request_id,
        'status': outcome.status,
        'outcome': outcome.outcome,
        'token_id': outcome.token_id,
        'tx_hash': outcome.tx_hash,
        'error': outcome.error.code if outcome.error else None,
        'via_fallback': outcome.via_fallback,
    }


@shared_task(bind=True, autoretry_for=(Exception,), retry_backoff=5, retry_kwargs={"max_retries": 6})
def sync_membership_event(self, payload):
    """Apply one membership event to the registry; safe to deliver more than once."""
    applied = RegistrySynchronizer().apply_event(payload)
    return {'applied': applied, 'event': payload.get('event'), 'tx_hash': payload.get('tx_hash')}


@shared_task(name='membership.backfill_registry')
def backfill_membership_registry(window=None):
    """Re-scan recent blocks and correct registry drift."""
    stack = get_issuance_stack()
    report = stack.synchronizer.backfill(window)
    return report.as_dict()
