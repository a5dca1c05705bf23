import threading
import time

from sqlalchemy import func, select

from supportline.conversations.models import Channel, DeliveryStatus
from supportline.errors import DeliveryPermanentError, DeliveryTransientError
from supportline.ingestion.dispatcher import (
    APOLOGY_MESSAGE,
    DEAD_LETTERED,
    DUPLICATE,
    ESCALATED,
    HANDED_OFF,
    HANDOFF_MESSAGE,
    PROCESSED,
)
from supportline.ingestion.events import (
    DEAD_LETTER_TOPIC,
    ESCALATIONS_TOPIC,
    INBOUND_TOPIC,
    METRICS_TOPIC,
)
from supportline.models import Customer, Message
from supportline.nlp import NlpPipeline
from supportline.responders.base import ResponderReply

from conftest import T0, FakeSender, ScriptedResponder, chat_event, email_event, web_form_event


def _count(session_factory, model):
    with session_factory() as session:
        return session.scalar(select(func.count()).select_from(model))


def _messages(repository, conversation_id):
    return repository.list_messages(conversation_id, limit=100)


def test_web_form_question_is_answered_and_resolved(
    make_dispatcher, repository, session_factory, senders
):
    seen = {}

    def inspect(history, context):
        ticket = repository.get_ticket_for_conversation(context.conversation_id)
        conversation = repository.get_conversation(context.conversation_id)
        seen["ticket_status"] = ticket.status
        seen["conversation_status"] = conversation.status
        seen["history"] = [(h.role, h.content) for h in history]

    responder = ScriptedResponder(
        ResponderReply(text="Use the 'Forgot password' link on the login page."),
        on_call=inspect,
    )
    result = make_dispatcher(responder).process(web_form_event())

    assert result.outcome == PROCESSED
    assert seen == {
        "ticket_status": "open",
        "conversation_status": "active",
        "history": [("customer", "How do I reset my password?")],
    }
    assert _count(session_factory, Customer) == 1

    ticket = repository.get_ticket(result.ticket_id)
    assert ticket.status == "resolved"
    assert ticket.category == "access"
    assert [(t.from_status, t.to_status) for t in repository.list_transitions(ticket.id)] == [
        ("open", "in_progress"),
        ("in_progress", "resolved"),
    ]

    inbound, outbound = _messages(repository, result.conversation_id)
    assert (inbound.direction, inbound.channel_message_id) == ("inbound", "wf-1")
    assert inbound.processed_at is not None
    assert outbound.direction == "outbound"
    assert outbound.destination == "a@x.com"
    assert outbound.delivery_status == "delivered"
    [attempt] = repository.list_delivery_attempts(outbound.id)
    assert attempt.status == "delivered"
    assert senders[Channel.WEB_FORM].calls[0]["destination"] == "a@x.com"


def test_redelivered_event_stores_nothing_new(make_dispatcher, repository, session_factory, senders):
    dispatcher = make_dispatcher()
    first = dispatcher.process(web_form_event())
    second = dispatcher.process(web_form_event())

    assert second.outcome == DUPLICATE
    assert second.message_id == first.message_id
    assert _count(session_factory, Message) == 2
    assert len(senders[Channel.WEB_FORM].calls) == 1


def test_lawyer_keyword_escalates_without_responder(make_dispatcher, repository, bus, senders):
    responder = ScriptedResponder(ResponderReply(text="should never be used"))
    result = make_dispatcher(responder).process(
        chat_event(body="Fix this now or I will talk to my lawyer")
    )

    assert result.outcome == ESCALATED
    assert result.escalation_reason == "keyword:legal_language:lawyer"
    assert responder.calls == []
    ticket = repository.get_ticket(result.ticket_id)
    assert ticket.status == "escalated"
    assert ticket.escalation_reason.startswith("keyword:")

    [escalation] = bus.messages(ESCALATIONS_TOPIC)
    assert escalation["ticket_id"] == str(ticket.id)
    assert escalation["urgency"] == "high"
    snapshot = escalation["conversation_snapshot"]
    assert snapshot["initiating_channel"] == "chat"
    assert snapshot["messages"][0]["content"] == "Fix this now or I will talk to my lawyer"

    assert senders[Channel.CHAT].calls[0]["text"] == HANDOFF_MESSAGE
    assert bus.messages(METRICS_TOPIC)[-1]["escalated"] is True


def test_follow_up_on_escalated_ticket_is_handed_off(make_dispatcher, repository, clock, senders):
    responder = ScriptedResponder()
    dispatcher = make_dispatcher(responder)
    dispatcher.process(chat_event(body="I want a refund, my lawyer says so"))
    clock.advance(minutes=3)

    result = dispatcher.process(
        chat_event("wamid.2", body="Any news?", received_at=T0.replace(minute=3))
    )

    assert result.outcome == HANDED_OFF
    assert responder.calls == []
    assert len(senders[Channel.CHAT].calls) == 1
    assert repository.get_message(result.message_id).processed_at is not None


def test_cross_channel_follow_up_joins_conversation(make_dispatcher, repository):
    responder = ScriptedResponder()
    dispatcher = make_dispatcher(responder)
    first = dispatcher.process(
        email_event(phone="+5511999990000", body="My package has not arrived yet.")
    )
    second = dispatcher.process(
        chat_event(body="Following up on my email", received_at=T0.replace(hour=11))
    )

    assert second.conversation_id == first.conversation_id
    history, context = responder.calls[-1]
    assert [entry.channel for entry in history][:2] == ["email", "email"]
    assert context.channels_seen == ["chat", "email"]
    assert context.display_name == "Jane Doe"


def test_responder_failures_escalate_with_apology(make_dispatcher, repository, bus, senders):
    responder = ScriptedResponder(*[RuntimeError("model overloaded")] * 3)
    result = make_dispatcher(responder).process(web_form_event())

    assert result.outcome == ESCALATED
    assert result.escalation_reason == "processing_failure"
    assert result.attempts == 3
    assert len(responder.calls) == 3
    ticket = repository.get_ticket(result.ticket_id)
    assert ticket.status == "escalated"
    inbound = repository.get_message(result.message_id)
    assert inbound.processing_attempts == 3
    assert senders[Channel.WEB_FORM].calls[-1]["text"] == APOLOGY_MESSAGE
    assert bus.messages(ESCALATIONS_TOPIC)[0]["reason"] == "processing_failure"
    assert bus.messages(DEAD_LETTER_TOPIC) == []


def test_responder_recovers_on_retry(make_dispatcher, repository):
    responder = ScriptedResponder(RuntimeError("flaky"))
    result = make_dispatcher(responder).process(web_form_event())

    assert result.outcome == PROCESSED
    assert result.attempts == 2
    assert repository.get_ticket(result.ticket_id).status == "resolved"
    assert len(_messages(repository, result.conversation_id)) == 2


def test_responder_timeout_is_bounded(make_dispatcher, repository):
    class SlowResponder(ScriptedResponder):
        def respond(self, history, customer_context):
            time.sleep(0.3)
            return super().respond(history, customer_context)

    result = make_dispatcher(
        SlowResponder(), responder_timeout=0.05, responder_max_attempts=1
    ).process(web_form_event())

    assert result.outcome == ESCALATED
    assert result.escalation_reason == "processing_failure"
    assert "ResponderTimeoutError" in result.error


def test_responder_requested_escalation(make_dispatcher, repository):
    responder = ScriptedResponder(
        ResponderReply(text="Let me get a colleague.", escalate=True, reason="human_requested")
    )
    result = make_dispatcher(responder).process(web_form_event())

    assert result.outcome == ESCALATED
    assert result.escalation_reason == "human_requested"
    assert result.delivery_status == "delivered"
    assert repository.get_ticket(result.ticket_id).status == "escalated"


def test_delivery_failure_apologizes_on_alternate_channel(make_dispatcher, repository, senders):
    failing_chat = FakeSender(*[DeliveryTransientError("503")] * 3)
    dispatcher = make_dispatcher(sender_overrides={Channel.CHAT: failing_chat})
    dispatcher.process(email_event(phone="+5511999990000", body="Where is my parcel?"))

    result = dispatcher.process(
        chat_event("wamid.9", body="Hello again", received_at=T0.replace(hour=10))
    )

    assert result.outcome == ESCALATED
    assert result.escalation_reason == "delivery_failure"
    assert result.delivery_status == "failed"
    assert len(failing_chat.calls) == 3
    apology = senders[Channel.EMAIL].calls[-1]
    assert apology["destination"] == "jane@example.com"
    assert APOLOGY_MESSAGE in apology["text"]


def test_permanent_delivery_failure_is_attempted_once(make_dispatcher, repository):
    rejecting = FakeSender(DeliveryPermanentError("bad number"))
    result = make_dispatcher(sender_overrides={Channel.CHAT: rejecting}).process(chat_event())

    assert result.escalation_reason == "delivery_failure"
    outbound = [
        m for m in _messages(repository, result.conversation_id) if m.direction == "outbound"
    ]
    reply_attempts = repository.list_delivery_attempts(outbound[0].id)
    assert len(reply_attempts) == 1
    assert outbound[0].delivery_status == DeliveryStatus.FAILED.value


def test_reprocessing_after_delivery_does_not_resend(
    make_dispatcher, repository, session_factory, senders
):
    dispatcher = make_dispatcher()
    result = dispatcher.process(web_form_event())
    with session_factory.begin() as session:
        session.get(Message, result.message_id).processed_at = None

    again = dispatcher.process(web_form_event())

    assert again.outcome == PROCESSED
    assert len(senders[Channel.WEB_FORM].calls) == 1
    assert len(_messages(repository, result.conversation_id)) == 2


def test_malformed_event_is_dead_lettered(make_dispatcher, repository, bus):
    raw = web_form_event(body="")
    result = make_dispatcher().process(raw)

    assert result.outcome == DEAD_LETTERED
    assert result.attempts == 1
    [letter] = repository.list_dead_letters()
    assert letter.error_type == "NormalizationError"
    assert letter.channel == "web_form"
    assert letter.channel_message_id == "wf-1"
    assert letter.payload["body"] == ""
    assert letter.context == {"retryable": False, "field": "body"}
    assert bus.messages(DEAD_LETTER_TOPIC)[0]["error_type"] == "NormalizationError"


def test_persistent_storage_failure_is_retried_then_dead_lettered(make_dispatcher, repository):
    dispatcher = make_dispatcher()
    calls = []

    def broken_attach(*args, **kwargs):
        calls.append(args)
        raise ConnectionError("database unavailable")

    dispatcher._sessions.attach = broken_attach
    result = dispatcher.process(web_form_event())

    assert result.outcome == DEAD_LETTERED
    assert result.attempts == 3
    assert len(calls) == 3
    [letter] = repository.list_dead_letters()
    assert letter.error_type == "ConnectionError"
    assert letter.attempts == 3


def test_handle_record_acks_after_processing(make_dispatcher, bus):
    dispatcher = make_dispatcher()
    bus.publish(INBOUND_TOPIC, web_form_event(), key="email:a@x.com")
    stop = threading.Event()
    record = next(bus.consume(INBOUND_TOPIC, stop))

    result = dispatcher.handle_record(record)

    assert result.outcome == PROCESSED
    assert record.acked
    bus.join(INBOUND_TOPIC)


def test_metrics_are_recorded_per_channel(make_dispatcher, repository, clock):
    dispatcher = make_dispatcher()
    dispatcher.process(web_form_event())
    dispatcher.process(chat_event(body="I will sue you"))

    rows = {row.channel: row for row in repository.channel_metrics(T0, T0.replace(hour=10))}
    assert rows["web_form"].inbound_messages == 1
    assert rows["web_form"].escalations == 0
    assert rows["chat"].escalations == 1


def test_simultaneous_messages_on_two_channels_share_one_conversation(
    make_dispatcher, repository, monkeypatch
):
    dispatcher = make_dispatcher()
    seeded = dispatcher.process(
        email_event(phone="+5511999990000", body="Where is my parcel?")
    )
    repository.close_conversation(
        seeded.conversation_id, ended_at=T0.replace(minute=30), resolution_type="resolved"
    )
    customer_id = repository.get_conversation(seeded.conversation_id).customer_id

    barrier = threading.Barrier(2)
    original = repository.list_active_conversations

    def paused(customer):
        rows = original(customer)
        try:
            barrier.wait(timeout=0.5)
        except threading.BrokenBarrierError:
            pass
        return rows

    monkeypatch.setattr(repository, "list_active_conversations", paused)
    results = []
    events = [
        email_event("msg-2@mail.example", received_at=T0.replace(hour=10)),
        chat_event("wamid.2", received_at=T0.replace(hour=10)),
    ]
    threads = [
        threading.Thread(target=lambda event=event: results.append(dispatcher.process(event)))
        for event in events
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(results) == 2
    assert len({result.conversation_id for result in results}) == 1
    assert len(original(customer_id)) == 1


def test_blank_contact_name_still_gets_a_reply(make_dispatcher, senders):
    event = email_event()
    event["contact"]["name"] = "   "
    result = make_dispatcher().process(event)

    assert result.outcome == PROCESSED
    assert senders[Channel.EMAIL].calls[-1]["text"].startswith("Hello,")


def test_sender_crash_escalates_instead_of_dead_lettering(make_dispatcher, repository, bus):
    crashing = FakeSender(ValueError("unexpected payload"))
    result = make_dispatcher(sender_overrides={Channel.CHAT: crashing}).process(chat_event())

    assert result.outcome == ESCALATED
    assert result.escalation_reason == "delivery_failure"
    assert result.attempts == 1
    assert len(crashing.calls) == 2
    assert APOLOGY_MESSAGE in crashing.calls[-1]["text"]
    assert repository.get_ticket(result.ticket_id).status == "escalated"
    assert bus.messages(DEAD_LETTER_TOPIC) == []


def test_responder_escalation_without_text_hands_off(make_dispatcher, repository, senders):
    responder = ScriptedResponder(ResponderReply(text="", escalate=True, reason="wants_human"))
    result = make_dispatcher(responder).process(web_form_event())

    assert result.outcome == ESCALATED
    assert result.escalation_reason == "wants_human"
    assert result.attempts == 1
    assert len(responder.calls) == 1
    assert repository.get_ticket(result.ticket_id).status == "escalated"
    assert repository.get_message(result.message_id).processing_attempts == 0
    assert [call["text"] for call in senders[Channel.WEB_FORM].calls] == [HANDOFF_MESSAGE]


def test_inbound_triage_skips_language_detection(make_dispatcher, repository, monkeypatch):
    def no_detection(self, text):
        raise AssertionError("language detection is only for the responder")

    monkeypatch.setattr(NlpPipeline, "_language", no_detection)
    result = make_dispatcher().process(
        web_form_event(body="The checkout is terrible and I was charged twice")
    )

    ticket = repository.get_ticket(result.ticket_id)
    assert ticket.category == "billing"
    assert ticket.priority == "high"
