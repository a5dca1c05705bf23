"""Customer lookup and conversation history routes."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query

from ..conversations import schemas
from ..conversations.service import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    ConversationQueryService,
)
from ..errors import NormalizationError, NotFoundError
from .deps import get_query_service

router = APIRouter(tags=["conversations"])


@router.get("/api/customers/lookup", response_model=schemas.CustomerLookupResponse)
def lookup_customer(
    identifier_type: str,
    value: str,
    service: ConversationQueryService = Depends(get_query_service),
) -> schemas.CustomerLookupResponse:
    """Find the customer owning an e-mail, phone number or anonymous token."""
    try:
        return service.lookup_customer(identifier_type, value)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except (NormalizationError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get(
    "/api/conversations/{conversation_id}/messages",
    response_model=schemas.MessagePage,
)
def list_messages(
    conversation_id: UUID,
    after: str | None = None,
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    service: ConversationQueryService = Depends(get_query_service),
) -> schemas.MessagePage:
    """Return the conversation's messages in order, one page at a time."""
    try:
        return service.message_page(conversation_id, after=after, limit=limit)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
