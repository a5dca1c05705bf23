"""Webhook ingestion routes for external messaging channels.

Webhooks only verify, split and publish. The dispatcher workers consuming the
inbound topic do the rest, so a slow responder never holds a provider's
webhook request open.
"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..config import get_settings
from ..channels import get_adapter
from ..conversations import schemas
from ..conversations.models import Channel
from ..delivery.tracker import DeliveryTracker
from ..errors import NormalizationError
from ..ingestion.bus import EventBus
from ..ingestion.events import INBOUND_TOPIC
from .deps import get_event_bus, get_tracker, limiter, webhook_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


def _adapter_for(channel: str):
    try:
        return get_adapter(channel.lower())()
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc.args[0])) from exc


@router.post(
    "/api/webhooks/{channel}",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=schemas.WebhookAccepted,
)
@limiter.limit(webhook_rate_limit)
async def ingest_webhook(
    channel: str,
    request: Request,
    bus: EventBus = Depends(get_event_bus),
) -> schemas.WebhookAccepted:
    """Verify a provider webhook and publish its messages as inbound events."""
    adapter = _adapter_for(channel)
    body_bytes = await request.body()
    if not adapter.verify_signature(
        body_bytes, request.headers, get_settings().webhook_secret(adapter.channel.value)
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature"
        )
    try:
        payload = json.loads(body_bytes.decode("utf-8")) if body_bytes else {}
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise HTTPException(
            status_code=400, detail=f"Invalid JSON payload: {exc}"
        ) from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Webhook payload must be an object")

    published = 0
    for event in adapter.parse_incoming(payload, request.headers):
        try:
            key = adapter.normalize(event).contact.partition_key()
        except NormalizationError:
            # Published anyway so the dispatcher records it as a dead letter.
            key = None
        bus.publish(INBOUND_TOPIC, event, key=key)
        published += 1
    logger.info(
        "Published %d %s events",
        published,
        adapter.channel.value,
        extra={"event": "webhook_published", "channel": adapter.channel.value, "count": published},
    )
    return schemas.WebhookAccepted(channel=adapter.channel.value, published=published)


@router.post(
    "/api/webhooks/{channel}/receipts",
    response_model=schemas.DeliveryReceiptResponse,
)
async def delivery_receipt(
    channel: str,
    receipt: schemas.DeliveryReceiptRequest,
    request: Request,
    tracker: DeliveryTracker = Depends(get_tracker),
) -> schemas.DeliveryReceiptResponse:
    """Apply a provider delivery receipt to the matching outbound message."""
    adapter = _adapter_for(channel)
    if not adapter.verify_signature(
        await request.body(),
        request.headers,
        get_settings().webhook_secret(adapter.channel.value),
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature"
        )
    message, applied = tracker.record_receipt(
        Channel(adapter.channel), receipt.external_id, receipt.status
    )
    if message is None:
        raise HTTPException(status_code=404, detail="Unknown external message id")
    return schemas.DeliveryReceiptResponse(
        external_id=receipt.external_id,
        message_id=message.id,
        status=message.delivery_status,
        applied=applied,
    )
