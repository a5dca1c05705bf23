"""Operations CLI for the ingestion workers.

Subcommands:

- ``run``: start the worker pool consuming the inbound topic until SIGINT or
  SIGTERM. Run several processes with the same ``KAFKA_CONSUMER_GROUP`` to
  scale out; the in-memory bus only reaches consumers in the same process.
- ``sweep``: close conversations idle for longer than ``IDLE_TIMEOUT_HOURS``.
- ``replay-dead-letters``: re-publish stored dead letters to the inbound topic
  and mark them replayed.
- ``init-db``: create every table (development and tests; production uses the
  migrations in ``supportline/migrations``).
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone

from dotenv import load_dotenv
from sqlalchemy import Engine
from sqlalchemy.orm import sessionmaker

from supportline.app_logging import init_logging
from supportline.channels.normalizer import normalize_event
from supportline.config import SupportSettings, get_settings
from supportline.conversations.identity import IdentityResolver
from supportline.conversations.models import Channel
from supportline.conversations.repository import SqlAlchemySupportRepository
from supportline.conversations.sessions import ConversationSessionManager
from supportline.delivery.senders import Sender, build_senders
from supportline.delivery.tracker import DeliveryTracker
from supportline.errors import NormalizationError
from supportline.ingestion.bus import EventBus, build_event_bus
from supportline.ingestion.dispatcher import IngestionDispatcher
from supportline.ingestion.events import INBOUND_TOPIC, EventPublisher
from supportline.ingestion.locks import build_keyed_lock
from supportline.ingestion.runner import WorkerPool
from supportline.models.session import create_all, engine_from_settings
from supportline.nlp import NlpPipeline
from supportline.responders.base import Responder
from supportline.responders.openai_responder import OpenAIResponder
from supportline.tickets.state_machine import EscalationPolicy, TicketStateMachine

log = logging.getLogger("supportline.worker")


def _engine(settings: SupportSettings) -> Engine:
    return engine_from_settings(
        settings.database_url,
        pool_size=settings.db_pool_size,
        pool_timeout=settings.db_pool_timeout,
    )


def build_dispatcher(
    settings: SupportSettings,
    *,
    engine: Engine,
    bus: EventBus,
    responder: Responder | None = None,
    senders: Mapping[Channel, Sender] | None = None,
    clock: Callable[[], datetime] | None = None,
    sleep: Callable[[float], None] | None = None,
) -> IngestionDispatcher:
    """Wire an :class:`IngestionDispatcher` from configuration."""

    if responder is None:
        responder = OpenAIResponder(
            model=settings.openai_model, timeout=settings.responder_timeout_seconds
        )
    session_factory = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    repository = SqlAlchemySupportRepository(session_factory)
    events = EventPublisher(bus)
    nlp = NlpPipeline()
    extra: dict[str, object] = {}
    if sleep is not None:
        extra["sleep"] = sleep
    tracker = DeliveryTracker(
        repository,
        senders if senders is not None else build_senders(settings),
        events=events,
        max_attempts=settings.delivery_max_attempts,
        backoff_base=settings.delivery_backoff_seconds,
        backoff_max=settings.delivery_backoff_max_seconds,
        clock=clock,
        **extra,
    )
    return IngestionDispatcher(
        repository=repository,
        resolver=IdentityResolver(repository, clock=clock),
        sessions=ConversationSessionManager(
            repository,
            continuity_window=timedelta(hours=settings.continuity_window_hours),
            idle_timeout=timedelta(hours=settings.idle_timeout_hours),
            clock=clock,
        ),
        tickets=TicketStateMachine(repository, clock=clock),
        policy=EscalationPolicy(
            keywords=settings.escalation_keywords,
            sentiment_floor=settings.sentiment_floor,
            nlp=nlp,
        ),
        responder=responder,
        tracker=tracker,
        events=events,
        lock=build_keyed_lock(engine, timeout=settings.db_pool_timeout * 3),
        nlp=nlp,
        responder_timeout=settings.responder_timeout_seconds,
        responder_max_attempts=settings.responder_max_attempts,
        max_attempts=settings.event_max_attempts,
        retry_backoff=settings.event_retry_backoff_seconds,
        history_limit=settings.history_limit,
        responder_workers=settings.worker_count,
        clock=clock,
        **extra,
    )


def cmd_run(settings: SupportSettings, args: argparse.Namespace) -> int:
    engine = _engine(settings)
    bus = build_event_bus(settings)
    dispatcher = build_dispatcher(settings, engine=engine, bus=bus)
    workers = args.workers or settings.worker_count
    pool = WorkerPool(max_workers=workers)
    stop = threading.Event()

    def _shutdown(signum, _frame) -> None:
        log.info("received signal %s, stopping workers", signum)
        stop.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    pool.start_consumers(bus, INBOUND_TOPIC, dispatcher.handle_record, workers)
    log.info("started %d workers on %s", workers, INBOUND_TOPIC)
    stop.wait()
    pool.stop()
    dispatcher.close()
    bus.close()
    engine.dispose()
    return 0


def cmd_sweep(settings: SupportSettings, args: argparse.Namespace) -> int:
    engine = _engine(settings)
    repository = SqlAlchemySupportRepository(
        sessionmaker(bind=engine, expire_on_commit=False, future=True)
    )
    sessions = ConversationSessionManager(
        repository,
        continuity_window=timedelta(hours=settings.continuity_window_hours),
        idle_timeout=timedelta(hours=settings.idle_timeout_hours),
    )
    closed = sessions.close_idle_conversations()
    log.info("closed %d idle conversations", len(closed))
    engine.dispose()
    return 0


def cmd_replay(settings: SupportSettings, args: argparse.Namespace) -> int:
    engine = _engine(settings)
    repository = SqlAlchemySupportRepository(
        sessionmaker(bind=engine, expire_on_commit=False, future=True)
    )
    bus = build_event_bus(settings)
    replayed = 0
    for letter in repository.list_dead_letters(limit=args.limit):
        if args.error_type and letter.error_type != args.error_type:
            continue
        bus.publish(INBOUND_TOPIC, letter.payload, key=_partition_key(letter.payload))
        repository.mark_dead_letter_replayed(letter.id, datetime.now(timezone.utc))
        replayed += 1
    log.info("replayed %d dead letters", replayed)
    bus.close()
    engine.dispose()
    return 0


def _partition_key(payload: Mapping[str, object]) -> str | None:
    try:
        return normalize_event(payload).contact.partition_key()
    except NormalizationError:
        return None


def cmd_init_db(settings: SupportSettings, args: argparse.Namespace) -> int:
    engine = _engine(settings)
    create_all(engine)
    log.info("database tables created")
    engine.dispose()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="supportline ingestion workers")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Consume inbound events")
    run.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of consumer threads (default: WORKER_COUNT)",
    )
    run.set_defaults(func=cmd_run)

    sweep = sub.add_parser("sweep", help="Close idle conversations")
    sweep.set_defaults(func=cmd_sweep)

    replay = sub.add_parser("replay-dead-letters", help="Re-publish dead letters")
    replay.add_argument("--limit", type=int, default=100, help="Maximum letters to replay")
    replay.add_argument(
        "--error-type",
        default=None,
        help="Only replay letters with this error type (e.g. ResponderTimeoutError)",
    )
    replay.set_defaults(func=cmd_replay)

    init_db = sub.add_parser("init-db", help="Create database tables")
    init_db.set_defaults(func=cmd_init_db)
    return parser


def main(argv: list[str] | None = None) -> int:
    """Parse CLI arguments and run the requested subcommand."""

    load_dotenv()
    args = build_parser().parse_args(argv)
    init_logging()
    return args.func(get_settings(), args)


if __name__ == "__main__":  # pragma: no cover - CLI execution
    sys.exit(main())
