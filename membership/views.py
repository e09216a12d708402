"""
Ledger ingress for the relay network.

An external relay executes forward requests by posting them here; the call
lands on the same database ledger the dispatcher, fallback and registry read.
Responses use the relay status format consumed by ``HttpRelayClient``.
"""

import json
import logging

from django.conf import settings
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from .errors import ExecutionReverted, MalformedRequest
from .forward_request import ForwardRequest
from .services import get_issuance_stack

logger = logging.getLogger(__name__)


def _authorized(request):
    api_key = settings.MEMBERSHIP_LEDGER_API_KEY
    return bool(api_key) and request.headers.get('Authorization') == f"Bearer {api_key}"


def _status_payload(block):
    payload = {
        'txHash': block.tx_hash,
        'block': block.number,
        'status': 'confirmed' if block.success else 'failed',
    }
    if block.success:
        payload['tokenId'] = block.token_id
    else:
        payload['code'] = block.revert_reason
    return payload


@csrf_exempt
@require_http_methods(["POST"])
def submit_forward_request(request):
    if not _authorized(request):
        return JsonResponse({'error': 'unauthorized'}, status=401)

    try:
        forward_request = ForwardRequest.from_payload(json.loads(request.body))
    except (ValueError, MalformedRequest) as e:
        logger.warning(f"Rejected ledger submission: {e}")
        return JsonResponse({'error': str(e), 'code': MalformedRequest.code}, status=400)

    ledger = get_issuance_stack().ledger
    try:
        result = ledger.submit_forward_request(forward_request, fee_payer=settings.MEMBERSHIP_RELAYER_ADDRESS)
    except ExecutionReverted as e:
        # Relayer gas exhausted; nothing was included
        logger.error(f"Ledger submission for {forward_request.sender[:10]}... not included: {e}")
        return JsonResponse({'error': str(e), 'code': e.code}, status=402)

    logger.info(f"Ledger included {result.tx_hash[:12]} for {forward_request.sender[:10]}... success={result.success}")
    return JsonResponse({'txHash': result.tx_hash, 'block': result.block_number})


@require_http_methods(["GET"])
def transaction_status(request, tx_hash):
    if not _authorized(request):
        return JsonResponse({'error': 'unauthorized'}, status=401)

    block = get_issuance_stack().ledger.get_receipt(tx_hash)
    if block is None:
        return JsonResponse({'txHash': tx_hash, 'status': 'pending'})
    return JsonResponse(_status_payload(block))
