from datetime import timedelta

from supportline.conversations.identity import IdentityResolver
from supportline.conversations.models import Channel, ContactEvidence
from supportline.conversations.sessions import ConversationSessionManager

from conftest import T0


def _customer(repository, clock, email="a@x.com"):
    return IdentityResolver(repository, clock=clock).resolve(ContactEvidence(email=email))


def test_message_within_window_reuses_conversation(repository, clock):
    manager = ConversationSessionManager(repository, clock=clock)
    customer_id = _customer(repository, clock)

    first = manager.attach(customer_id, Channel.WEB_FORM, T0)
    second = manager.attach(customer_id, Channel.WEB_FORM, T0 + timedelta(hours=23, minutes=59))

    assert first.created is True
    assert second.created is False
    assert second.conversation_id == first.conversation_id


def test_message_outside_window_starts_new_conversation(repository, clock):
    manager = ConversationSessionManager(repository, clock=clock)
    customer_id = _customer(repository, clock)

    first = manager.attach(customer_id, Channel.WEB_FORM, T0)
    later = T0 + timedelta(hours=24, minutes=1)
    second = manager.attach(customer_id, Channel.EMAIL, later)

    assert second.created is True
    assert second.conversation_id != first.conversation_id
    old = repository.get_conversation(first.conversation_id)
    assert old.status == "closed"
    assert old.resolution_type == "expired"
    assert old.end_time == later
    assert [c.id for c in repository.list_active_conversations(customer_id)] == [
        second.conversation_id
    ]


def test_cross_channel_messages_share_a_conversation(repository, clock):
    manager = ConversationSessionManager(repository, clock=clock)
    customer_id = _customer(repository, clock)

    by_form = manager.attach_to_conversation(customer_id, Channel.WEB_FORM, T0)
    by_chat = manager.attach(customer_id, Channel.CHAT, T0 + timedelta(hours=2))

    assert by_chat.conversation_id == by_form
    assert by_chat.initiating_channel is Channel.WEB_FORM
    assert repository.get_conversation(by_form).initiating_channel == "web_form"


def test_configurable_window(repository, clock):
    manager = ConversationSessionManager(repository, continuity_window=timedelta(hours=1), clock=clock)
    customer_id = _customer(repository, clock)

    first = manager.attach_to_conversation(customer_id, Channel.CHAT, T0)
    second = manager.attach_to_conversation(customer_id, Channel.CHAT, T0 + timedelta(minutes=61))

    assert first != second


def test_activity_tracks_last_message_and_sentiment(repository, clock):
    manager = ConversationSessionManager(repository, clock=clock)
    customer_id = _customer(repository, clock)
    conversation_id = manager.attach_to_conversation(customer_id, Channel.CHAT, T0)

    manager.record_activity(conversation_id, T0 + timedelta(minutes=10), 0.9)
    manager.record_activity(conversation_id, T0 + timedelta(minutes=5), 0.3)

    conversation = repository.get_conversation(conversation_id)
    assert conversation.last_message_at == T0 + timedelta(minutes=10)
    assert conversation.sentiment_score == 0.6


def test_idle_sweep_closes_only_idle_conversations(repository, clock):
    manager = ConversationSessionManager(repository, idle_timeout=timedelta(hours=24), clock=clock)
    idle_customer = _customer(repository, clock, "idle@x.com")
    busy_customer = _customer(repository, clock, "busy@x.com")
    idle = manager.attach_to_conversation(idle_customer, Channel.EMAIL, T0)
    busy = manager.attach_to_conversation(busy_customer, Channel.CHAT, T0)
    manager.record_activity(busy, T0 + timedelta(hours=20))

    clock.advance(hours=25)
    closed = manager.close_idle_conversations()

    assert closed == [idle]
    assert repository.get_conversation(idle).resolution_type == "idle_timeout"
    assert repository.get_conversation(busy).status == "active"
    assert manager.close_idle_conversations() == []
