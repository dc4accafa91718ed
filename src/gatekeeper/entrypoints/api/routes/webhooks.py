"""Payment processor webhook ingress."""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel

from gatekeeper.core.exceptions import WebhookVerificationError
from gatekeeper.entrypoints.api.deps import (
    Container,
    EventVerifier,
    get_container,
    get_event_verifier,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

ContainerDep = Annotated[Container, Depends(get_container)]
VerifierDep = Annotated[EventVerifier, Depends(get_event_verifier)]


class WebhookAck(BaseModel):
    """Acknowledgement returned to the processor."""

    received: bool = True
    duplicate: bool = False


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    container: ContainerDep,
    verify: VerifierDep,
    stripe_signature: Annotated[str | None, Header(alias="Stripe-Signature")] = None,
) -> WebhookAck:
    """Verify, de-duplicate and queue a Stripe event.

    Processing happens on the background queue so the processor gets its
    200 without waiting on database or platform calls.
    """
    if not stripe_signature:
        raise HTTPException(status_code=400, detail="Missing Stripe-Signature header")

    payload = await request.body()
    try:
        event = verify(payload, stripe_signature)
    except WebhookVerificationError as e:
        logger.warning("webhook_signature_invalid", error=str(e))
        raise HTTPException(status_code=400, detail="Invalid signature") from e

    event_id = str(event.get("id", ""))
    event_type = str(event.get("type", ""))
    if not await container.ledger.record_if_new(event_id, event_type, event):
        logger.info("webhook_duplicate", event_id=event_id, event_type=event_type)
        return WebhookAck(duplicate=True)

    container.queue.submit(
        f"stripe:{event_type}:{event_id}",
        lambda: container.billing_handler.handle_event(event),
    )
    logger.info("webhook_queued", event_id=event_id, event_type=event_type)
    return WebhookAck()
