"""Channel-segmented operational metrics."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException

from ..conversations import schemas
from ..conversations.service import ConversationQueryService
from .deps import get_query_service

router = APIRouter(tags=["metrics"])


@router.get("/api/metrics/channels", response_model=schemas.ChannelMetricsResponse)
def channel_metrics(
    since: datetime | None = None,
    until: datetime | None = None,
    service: ConversationQueryService = Depends(get_query_service),
) -> schemas.ChannelMetricsResponse:
    """Inbound volume, escalations, latency and tool calls per channel.

    Defaults to the last 24 hours.
    """
    try:
        return service.channel_metrics(since, until)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
