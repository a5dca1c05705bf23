import pytest
import requests

from supportline.config import SupportSettings
from supportline.conversations.models import Channel, DeliveryStatus
from supportline.delivery.senders import (
    ChatSender,
    EmailSender,
    WebNotificationSender,
    build_senders,
)
from supportline.errors import DeliveryPermanentError, DeliveryTransientError


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


def test_chat_sender_posts_digits_and_reads_message_id():
    session = FakeSession(FakeResponse(200, {"messages": [{"id": "wamid.ABC"}]}))
    sender = ChatSender("https://graph.example/messages", token="t0k", timeout=3, session=session)

    result = sender.send("+55 11 99999-0000", "Your order shipped")

    assert result.external_id == "wamid.ABC"
    assert result.status is DeliveryStatus.SENT
    call = session.calls[0]
    assert call["json"]["to"] == "5511999990000"
    assert call["json"]["text"] == {"body": "Your order shipped"}
    assert call["headers"]["Authorization"] == "Bearer t0k"
    assert call["timeout"] == 3


def test_email_sender_prefixes_subject_once():
    session = FakeSession(FakeResponse(202, {"id": "mail-1"}), FakeResponse(202, {"message_id": "mail-2"}))
    sender = EmailSender("https://mail.example/send", sender_address="help@example.com", session=session)

    first = sender.send("jane@example.com", "Hello", subject="Billing question")
    second = sender.send("jane@example.com", "Hello", subject="RE: Billing question")

    assert (first.external_id, second.external_id) == ("mail-1", "mail-2")
    assert session.calls[0]["json"]["subject"] == "Re: Billing question"
    assert session.calls[0]["json"]["from"] == "help@example.com"
    assert session.calls[1]["json"]["subject"] == "RE: Billing question"


def test_web_sender_reports_synchronous_delivery():
    session = FakeSession(FakeResponse(200, {"id": "n-1", "status": "delivered"}), FakeResponse(204))
    sender = WebNotificationSender("https://widget.example/notify", session=session)

    delivered = sender.send("a@x.com", "Done")
    queued = sender.send("a@x.com", "Done again")

    assert delivered.status is DeliveryStatus.DELIVERED
    assert queued.status is DeliveryStatus.SENT
    assert queued.external_id is None


@pytest.mark.parametrize(
    "response, error",
    [
        (FakeResponse(429), DeliveryTransientError),
        (FakeResponse(503), DeliveryTransientError),
        (requests.Timeout("slow"), DeliveryTransientError),
        (requests.ConnectionError("refused"), DeliveryTransientError),
        (FakeResponse(400, text="invalid recipient"), DeliveryPermanentError),
        (FakeResponse(404), DeliveryPermanentError),
    ],
)
def test_failures_are_classified(response, error):
    sender = ChatSender("https://graph.example/messages", session=FakeSession(response))

    with pytest.raises(error) as excinfo:
        sender.send("+5511999990000", "hi")

    assert excinfo.value.retryable is (error is DeliveryTransientError)


def test_unusable_destinations_are_permanent():
    session = FakeSession()
    with pytest.raises(DeliveryPermanentError):
        EmailSender("https://mail.example", sender_address="x@y", session=session).send("+1555", "hi")
    with pytest.raises(DeliveryPermanentError):
        ChatSender("https://graph.example", session=session).send("jane@example.com", "hi")
    with pytest.raises(DeliveryPermanentError):
        WebNotificationSender("https://widget.example", session=session).send("", "hi")
    assert session.calls == []


def test_unconfigured_endpoint_is_permanent():
    senders = build_senders(SupportSettings(), session=FakeSession())

    assert set(senders) == {Channel.EMAIL, Channel.CHAT, Channel.WEB_FORM}
    with pytest.raises(DeliveryPermanentError):
        senders[Channel.CHAT].send("+5511999990000", "hi")
