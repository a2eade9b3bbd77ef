"""Payment provider webhook endpoint.

The raw body is handed to the service untouched; the HMAC signature is
computed over the exact bytes the provider sent.

Responses:
    200 — processed, duplicate, or ignored (provider stops redelivering)
    400 — bad signature or malformed envelope (never retried usefully)
    500 — handler failure, nothing recorded (provider redelivers)
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header, Request

from talent_escrow.api.deps import get_webhook_service
from talent_escrow.schemas.webhooks import WebhookAckResponse
from talent_escrow.services.webhook_service import WebhookService  # noqa: TC001

router = APIRouter(prefix="/api/v1/webhooks", tags=["Webhooks"])


@router.post(
    "/payments",
    response_model=WebhookAckResponse,
    summary="Receive a payment provider event",
)
async def receive_payment_webhook(
    request: Request,
    signature: str | None = Header(default=None),
    svc: WebhookService = Depends(get_webhook_service),
) -> WebhookAckResponse:
    raw_payload = await request.body()
    outcome = await svc.handle(raw_payload, signature)
    return WebhookAckResponse(received=True, outcome=outcome)
