import json
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace

import httpx
import pytest
from openai import APITimeoutError, OpenAIError

from supportline.errors import ResponderFailureError, ResponderTimeoutError
from supportline.responders.base import CustomerContext, HistoryEntry
from supportline.responders.openai_responder import OpenAIResponder


def _message(content=None, tool_calls=None):
    return SimpleNamespace(content=content, tool_calls=tool_calls)


def _completion(message):
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _tool_call(call_id, query):
    return SimpleNamespace(
        id=call_id,
        function=SimpleNamespace(
            name="search_knowledge_base", arguments=json.dumps({"query": query})
        ),
    )


class FakeClient:
    def __init__(self, *results):
        self.results = list(results)
        self.requests = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs):
        self.requests.append(kwargs)
        result = self.results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result


class FakeKnowledge:
    def __init__(self):
        self.queries = []

    def search(self, query, limit=3):
        self.queries.append(query)
        return [f"passage about {query}"]


@pytest.fixture
def context():
    return CustomerContext(
        customer_id=uuid.uuid4(),
        conversation_id=uuid.uuid4(),
        channel="chat",
        display_name="Jane",
        channels_seen=["chat", "email"],
    )


@pytest.fixture
def history():
    at = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
    return [
        HistoryEntry(role="customer", channel="email", content="My parcel is late", created_at=at),
        HistoryEntry(role="agent", channel="email", content="Sorry, checking", created_at=at),
        HistoryEntry(role="customer", channel="chat", content="Any update on my parcel?", created_at=at),
    ]


def test_json_reply_is_parsed(context, history):
    client = FakeClient(
        _completion(_message(json.dumps({"reply": "It ships today.", "escalate": False})))
    )

    reply = OpenAIResponder(client=client, model="test-model").respond(history, context)

    assert reply.text == "It ships today."
    assert reply.escalate is False
    assert reply.tool_calls_count == 0
    request = client.requests[0]
    assert request["model"] == "test-model"
    assert request["response_format"] == {"type": "json_object"}
    assert "chat channel" in request["messages"][0]["content"]
    assert "channels_seen=chat,email" in request["messages"][1]["content"]
    assert request["messages"][-1] == {"role": "user", "content": "[chat] Any update on my parcel?"}
    assert request["messages"][-2]["role"] == "assistant"


def test_escalation_request_is_reported(context, history):
    client = FakeClient(
        _completion(_message('{"reply": "", "escalate": true, "reason": "human_requested"}'))
    )

    reply = OpenAIResponder(client=client).respond(history, context)

    assert reply.escalate is True
    assert reply.reason == "human_requested"


def test_plain_text_reply_is_used_verbatim(context, history):
    client = FakeClient(_completion(_message("Your parcel ships today.")))

    assert OpenAIResponder(client=client).respond(history, context).text == "Your parcel ships today."


def test_tool_calls_are_counted(context, history):
    knowledge = FakeKnowledge()
    client = FakeClient(
        _completion(_message(tool_calls=[_tool_call("c1", "shipping"), _tool_call("c2", "delays")])),
        _completion(_message('{"reply": "Delays are up to 2 days."}')),
    )

    reply = OpenAIResponder(client=client, knowledge=knowledge).respond(history, context)

    assert reply.text == "Delays are up to 2 days."
    assert reply.tool_calls_count == 2
    assert knowledge.queries == ["shipping", "delays"]
    second = client.requests[1]["messages"]
    assert [m["role"] for m in second[-3:]] == ["assistant", "tool", "tool"]
    assert json.loads(second[-1]["content"]) == {"passages": ["passage about delays"]}
    assert "tools" in client.requests[0]


def test_too_many_tool_rounds_fail(context, history):
    looping = [_completion(_message(tool_calls=[_tool_call(f"c{n}", "x")])) for n in range(2)]
    client = FakeClient(*looping)

    with pytest.raises(ResponderFailureError):
        OpenAIResponder(client=client, knowledge=FakeKnowledge(), max_tool_rounds=1).respond(
            history, context
        )


@pytest.mark.parametrize("content", ["", "   ", '{"reply": "", "escalate": false}'])
def test_empty_reply_is_a_failure(context, history, content):
    client = FakeClient(_completion(_message(content)))

    with pytest.raises(ResponderFailureError):
        OpenAIResponder(client=client).respond(history, context)


def test_api_errors_are_mapped(context, history):
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    client = FakeClient(APITimeoutError(request=request), OpenAIError("rate limited"))
    responder = OpenAIResponder(client=client)

    with pytest.raises(ResponderTimeoutError) as timeout:
        responder.respond(history, context)
    with pytest.raises(ResponderFailureError):
        responder.respond(history, context)

    assert timeout.value.retryable is True
