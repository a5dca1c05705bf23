"""Runtime configuration for the ingestion core.

Settings are read from environment variables once and cached. Entry points
(``supportline.main`` and ``worker.py``) call :func:`dotenv.load_dotenv` before
the first lookup so a local ``.env`` file is honoured. Tests change the
environment with ``monkeypatch`` and call :func:`reset_settings_cache`.
"""

from __future__ import annotations

import dataclasses
import json
import os
from functools import lru_cache
from typing import Mapping

DEFAULT_ESCALATION_KEYWORDS: dict[str, tuple[str, ...]] = {
    "legal_language": ("lawyer", "attorney", "lawsuit", "sue", "legal"),
    "refund_request": ("refund", "chargeback"),
    "pricing_inquiry": ("pricing", "price", "discount"),
}


@dataclasses.dataclass(frozen=True)
class SupportSettings:
    """Tunables shared by the dispatcher, workers and HTTP API."""

    database_url: str | None = None
    db_pool_size: int = 5
    db_pool_timeout: float = 10.0

    event_bus: str = "memory"
    kafka_hosts: tuple[str, ...] = ("localhost:9092",)
    kafka_topic_prefix: str = ""
    kafka_consumer_group: str = "supportline-workers"

    continuity_window_hours: float = 24.0
    idle_timeout_hours: float = 24.0
    sentiment_floor: float = 0.3
    escalation_keywords: Mapping[str, tuple[str, ...]] = dataclasses.field(
        default_factory=lambda: dict(DEFAULT_ESCALATION_KEYWORDS)
    )

    responder_timeout_seconds: float = 30.0
    responder_max_attempts: int = 3
    event_max_attempts: int = 3
    event_retry_backoff_seconds: float = 0.5
    delivery_max_attempts: int = 3
    delivery_backoff_seconds: float = 1.0
    delivery_backoff_max_seconds: float = 30.0
    history_limit: int = 20
    worker_count: int = 4

    openai_model: str = "gpt-4o-mini"
    email_api_url: str | None = None
    email_api_key: str | None = None
    email_from: str = "support@example.com"
    chat_api_url: str | None = None
    chat_api_token: str | None = None
    web_notify_url: str | None = None
    sender_timeout_seconds: float = 10.0
    webhook_rate_limit: str = "120/minute"

    def webhook_secret(self, channel: str) -> str | None:
        """Return the shared webhook secret configured for ``channel``."""

        return os.getenv(f"WEBHOOK_SECRET_{channel.upper()}") or None


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number, got {raw!r}") from exc


def _keywords(name: str) -> dict[str, tuple[str, ...]]:
    raw = os.getenv(name)
    if not raw:
        return dict(DEFAULT_ESCALATION_KEYWORDS)
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"{name} must be a JSON object: {exc}") from exc
    if not isinstance(parsed, dict):
        raise RuntimeError(f"{name} must map categories to keyword lists")
    keywords: dict[str, tuple[str, ...]] = {}
    for category, words in parsed.items():
        if isinstance(words, str):
            words = [words]
        keywords[str(category)] = tuple(
            str(word).strip().lower() for word in words if str(word).strip()
        )
    return keywords


@lru_cache(maxsize=1)
def get_settings() -> SupportSettings:
    """Load settings from the environment with development defaults."""

    hosts = os.getenv("KAFKA_HOSTS", "localhost:9092")
    return SupportSettings(
        database_url=os.getenv("DATABASE_URL") or None,
        db_pool_size=_int("DB_POOL_SIZE", 5),
        db_pool_timeout=_float("DB_POOL_TIMEOUT", 10.0),
        event_bus=os.getenv("EVENT_BUS", "memory").strip().lower(),
        kafka_hosts=tuple(h.strip() for h in hosts.split(",") if h.strip()),
        kafka_topic_prefix=os.getenv("KAFKA_TOPIC_PREFIX", ""),
        kafka_consumer_group=os.getenv("KAFKA_CONSUMER_GROUP", "supportline-workers"),
        continuity_window_hours=_float("CONTINUITY_WINDOW_HOURS", 24.0),
        idle_timeout_hours=_float("IDLE_TIMEOUT_HOURS", 24.0),
        sentiment_floor=_float("SENTIMENT_FLOOR", 0.3),
        escalation_keywords=_keywords("ESCALATION_KEYWORDS"),
        responder_timeout_seconds=_float("RESPONDER_TIMEOUT_SECONDS", 30.0),
        responder_max_attempts=_int("RESPONDER_MAX_ATTEMPTS", 3),
        event_max_attempts=_int("EVENT_MAX_ATTEMPTS", 3),
        event_retry_backoff_seconds=_float("EVENT_RETRY_BACKOFF_SECONDS", 0.5),
        delivery_max_attempts=_int("DELIVERY_MAX_ATTEMPTS", 3),
        delivery_backoff_seconds=_float("DELIVERY_BACKOFF_SECONDS", 1.0),
        delivery_backoff_max_seconds=_float("DELIVERY_BACKOFF_MAX_SECONDS", 30.0),
        history_limit=_int("HISTORY_LIMIT", 20),
        worker_count=_int("WORKER_COUNT", 4),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        email_api_url=os.getenv("EMAIL_API_URL") or None,
        email_api_key=os.getenv("EMAIL_API_KEY") or None,
        email_from=os.getenv("EMAIL_FROM", "support@example.com"),
        chat_api_url=os.getenv("CHAT_API_URL") or None,
        chat_api_token=os.getenv("CHAT_API_TOKEN") or None,
        web_notify_url=os.getenv("WEB_NOTIFY_URL") or None,
        sender_timeout_seconds=_float("SENDER_TIMEOUT_SECONDS", 10.0),
        webhook_rate_limit=os.getenv("WEBHOOK_RATE_LIMIT", "120/minute"),
    )


def reset_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_settings.cache_clear()


__all__ = [
    "DEFAULT_ESCALATION_KEYWORDS",
    "SupportSettings",
    "get_settings",
    "reset_settings_cache",
]
