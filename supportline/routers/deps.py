"""Shared FastAPI dependencies: repository, event bus, tracker and limiter."""

from __future__ import annotations

from fastapi import Request
from slowapi import Limiter
from sqlalchemy.orm import Session, sessionmaker

from ..config import get_settings
from ..conversations.repository import SqlAlchemySupportRepository, SupportRepository
from ..conversations.service import ConversationQueryService
from ..delivery.senders import build_senders
from ..delivery.tracker import DeliveryTracker
from ..ingestion.bus import EventBus, build_event_bus
from ..ingestion.events import EventPublisher
from ..models.session import engine_from_settings

_SESSION_FACTORY: sessionmaker[Session] | None = None
_EVENT_BUS: EventBus | None = None


def get_client_ip(request: Request) -> str:
    """Extract a best-effort client IP for rate limiting.

    Prefer ``X-Forwarded-For`` (first hop) if present, otherwise use the
    socket peer address.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


limiter = Limiter(key_func=get_client_ip)


def webhook_rate_limit() -> str:
    return get_settings().webhook_rate_limit


def _get_session_factory() -> sessionmaker[Session]:
    global _SESSION_FACTORY
    if _SESSION_FACTORY is None:
        settings = get_settings()
        engine = engine_from_settings(
            settings.database_url,
            pool_size=settings.db_pool_size,
            pool_timeout=settings.db_pool_timeout,
        )
        _SESSION_FACTORY = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    return _SESSION_FACTORY


def get_repository() -> SupportRepository:
    return SqlAlchemySupportRepository(_get_session_factory())


def get_event_bus() -> EventBus:
    global _EVENT_BUS
    if _EVENT_BUS is None:
        _EVENT_BUS = build_event_bus(get_settings())
    return _EVENT_BUS


def get_query_service() -> ConversationQueryService:
    return ConversationQueryService(get_repository())


def get_tracker() -> DeliveryTracker:
    settings = get_settings()
    return DeliveryTracker(
        get_repository(),
        build_senders(settings),
        events=EventPublisher(get_event_bus()),
        max_attempts=settings.delivery_max_attempts,
        backoff_base=settings.delivery_backoff_seconds,
        backoff_max=settings.delivery_backoff_max_seconds,
    )


def reset_dependencies() -> None:
    """Forget cached engines and buses; useful in tests when env vars change."""

    global _SESSION_FACTORY, _EVENT_BUS
    if _SESSION_FACTORY is not None:
        _SESSION_FACTORY.kw["bind"].dispose()
    if _EVENT_BUS is not None:
        _EVENT_BUS.close()
    _SESSION_FACTORY = None
    _EVENT_BUS = None


__all__ = [
    "get_client_ip",
    "get_event_bus",
    "get_query_service",
    "get_repository",
    "get_tracker",
    "limiter",
    "reset_dependencies",
    "webhook_rate_limit",
]
