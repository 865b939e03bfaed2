import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from coordinator.api.deps import ServicesDep
from coordinator.auth.signature import WebhookSignatureVerifier
from coordinator.services.ingest import ingest_webhook
from coordinator.services.rate_limiter import RateLimit

logger = logging.getLogger(__name__)

router = APIRouter()

verify_webhook_signature = WebhookSignatureVerifier()


class WebhookAck(BaseModel):
    success: bool = True
    eventId: Optional[str] = None
    duplicate: Optional[bool] = None
    eventLogged: Optional[bool] = None


# Order matters: throttle before spending an HMAC on the body
@router.post(
    "/events",
    response_model=WebhookAck,
    response_model_exclude_none=True,
    dependencies=[Depends(RateLimit("webhooks", "global"))],
)
async def receive_event(
    request: Request,
    services: ServicesDep,
    raw_body: bytes = Depends(verify_webhook_signature),
):
    tenant_header = request.headers.get(services.settings.TENANT_HEADER)
    # A ValidationError surfaces as 400 through the app handler
    result = await ingest_webhook(
        services.session_factory,
        raw_body,
        tenant_header=tenant_header,
        defaults=services.webhook_defaults,
    )

    if not result.duplicate and not result.enqueued:
        # Durably recorded; reconciliation will enqueue it. The sender must
        # not retry, it would only be a duplicate.
        return WebhookAck(eventId=result.event_id, eventLogged=True)

    return WebhookAck(eventId=result.event_id, duplicate=result.duplicate)
