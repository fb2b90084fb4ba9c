"""
Payment provider webhook route.

POST /webhooks/payment-provider verifies the signature, records the event
and applies it. Once recorded the response is 200 even when applying it
failed; failed events are replayed later.
"""
from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from streamvault.api.schemas import WebhookAck
from streamvault.features.billing.reconciler import process_webhook


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/payment-provider", response_model=WebhookAck)
async def payment_provider_webhook(request: Request):
    """
    Errors:
        400: invalid signature or payload (nothing recorded)
        503: billing not configured
    """
    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)
    result = await run_in_threadpool(process_webhook, headers, body)
    return WebhookAck(event_id=result["event_id"], status=result["status"], duplicate=result["duplicate"])
