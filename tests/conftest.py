import pathlib
import sys
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI, Request
from sqlalchemy.orm import Session, sessionmaker

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from supportline.app_logging import init_logging
from supportline.config import DEFAULT_ESCALATION_KEYWORDS, reset_settings_cache
from supportline.conversations.identity import IdentityResolver
from supportline.conversations.models import Channel, DeliveryStatus
from supportline.conversations.repository import SqlAlchemySupportRepository
from supportline.conversations.sessions import ConversationSessionManager
from supportline.delivery.senders import SendResult
from supportline.delivery.tracker import DeliveryTracker
from supportline.ingestion.bus import InMemoryEventBus
from supportline.ingestion.dispatcher import IngestionDispatcher
from supportline.ingestion.events import EventPublisher
from supportline.ingestion.locks import InProcessKeyedLock
from supportline.models.session import create_all, get_engine
from supportline.nlp import NlpPipeline
from supportline.responders.base import ResponderReply
from supportline.tickets.state_machine import EscalationPolicy, TicketStateMachine

T0 = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock shared by every collaborator in a test."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ScriptedResponder:
    """Responder returning (or raising) scripted results in order.

    Once the script is exhausted every call returns ``default``. ``on_call``
    runs before each answer so tests can inspect state mid-pipeline.
    """

    def __init__(self, *script, default=None, on_call=None):
        self.script = list(script)
        self.default = default or ResponderReply(
            text="You can reset your password from the login page."
        )
        self.on_call = on_call
        self.calls = []

    def respond(self, history, customer_context):
        self.calls.append((list(history), customer_context))
        if self.on_call is not None:
            self.on_call(history, customer_context)
        result = self.script.pop(0) if self.script else self.default
        if isinstance(result, BaseException):
            raise result
        return result


class FakeSender:
    """Channel sender recording every call; scripted results or errors."""

    def __init__(self, *script, status=DeliveryStatus.SENT, prefix="ext"):
        self.script = list(script)
        self.status = status
        self.prefix = prefix
        self.calls = []

    def send(self, destination, text, *, subject=None):
        self.calls.append({"destination": destination, "text": text, "subject": subject})
        result = self.script.pop(0) if self.script else None
        if isinstance(result, BaseException):
            raise result
        if result is None:
            result = SendResult(
                external_id=f"{self.prefix}-{len(self.calls)}", status=self.status
            )
        return result


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(tmp_path):
    engine = get_engine(f"sqlite+pysqlite:///{tmp_path / 'supportline.db'}")
    create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)


@pytest.fixture
def repository(session_factory):
    return SqlAlchemySupportRepository(session_factory)


@pytest.fixture
def bus():
    return InMemoryEventBus(poll_interval=0.01)


@pytest.fixture
def senders():
    return {
        Channel.EMAIL: FakeSender(prefix="mail"),
        Channel.CHAT: FakeSender(prefix="wamid"),
        Channel.WEB_FORM: FakeSender(prefix="web", status=DeliveryStatus.DELIVERED),
    }


@pytest.fixture
def make_dispatcher(repository, bus, clock, senders):
    created = []

    def _make(responder=None, *, sender_overrides=None, **overrides):
        nlp = NlpPipeline()
        events = EventPublisher(bus)
        channel_senders = dict(senders)
        channel_senders.update(sender_overrides or {})
        tracker = DeliveryTracker(
            repository,
            channel_senders,
            events=events,
            max_attempts=3,
            sleep=lambda _seconds: None,
            clock=clock,
        )
        options = {
            "responder_timeout": 5.0,
            "responder_max_attempts": 3,
            "max_attempts": 3,
            "retry_backoff": 0.0,
        }
        options.update(overrides)
        dispatcher = IngestionDispatcher(
            repository=repository,
            resolver=IdentityResolver(repository, clock=clock),
            sessions=ConversationSessionManager(repository, clock=clock),
            tickets=TicketStateMachine(repository, clock=clock),
            policy=EscalationPolicy(keywords=DEFAULT_ESCALATION_KEYWORDS, nlp=nlp),
            responder=responder or ScriptedResponder(),
            tracker=tracker,
            events=events,
            lock=InProcessKeyedLock(timeout=5.0),
            nlp=nlp,
            clock=clock,
            sleep=lambda _seconds: None,
            **options,
        )
        created.append(dispatcher)
        return dispatcher

    yield _make
    for dispatcher in created:
        dispatcher.close()


@pytest.fixture
def settings_env(monkeypatch, tmp_path):
    """Point settings at a scratch SQLite database and the in-memory bus."""

    db_url = f"sqlite+pysqlite:///{tmp_path / 'api.db'}"
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.setenv("EVENT_BUS", "memory")
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    reset_settings_cache()
    yield db_url
    reset_settings_cache()


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app


def web_form_event(
    message_id="wf-1",
    *,
    email="a@x.com",
    body="How do I reset my password?",
    received_at=T0,
    **extra,
):
    event = {
        "channel": "web_form",
        "channel_message_id": message_id,
        "contact": {"email": email},
        "body": body,
        "received_at": received_at.isoformat(),
    }
    event.update(extra)
    return event


def chat_event(
    message_id="wamid.1",
    *,
    phone="+5511999990000",
    body="Hi, my order has not arrived",
    received_at=T0,
    name=None,
):
    contact = {"phone": phone}
    if name:
        contact["name"] = name
    return {
        "channel": "chat",
        "channel_message_id": message_id,
        "contact": contact,
        "body": body,
        "received_at": received_at.isoformat(),
    }


def email_event(
    message_id="msg-1@mail.example",
    *,
    email="jane@example.com",
    phone=None,
    body="Hello, I was charged twice this month.",
    subject="Billing question",
    received_at=T0,
):
    contact = {"email": email, "name": "Jane Doe"}
    if phone:
        contact["phone"] = phone
    return {
        "channel": "email",
        "channel_message_id": message_id,
        "contact": contact,
        "subject": subject,
        "body": body,
        "received_at": received_at.isoformat(),
    }
