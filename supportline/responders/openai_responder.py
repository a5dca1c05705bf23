"""Responder backed by the OpenAI chat completions API.

The model is asked to answer with a JSON object::

    {"reply": "...", "escalate": false, "reason": null}

When a :class:`~supportline.responders.base.KnowledgeLookup` is configured the
model can call a ``search_knowledge_base`` tool; each call is counted and
reported back in :attr:`ResponderReply.tool_calls_count`.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any

from openai import APITimeoutError, OpenAI, OpenAIError

from ..errors import ResponderFailureError, ResponderTimeoutError
from ..nlp import NlpPipeline
from .base import CustomerContext, HistoryEntry, KnowledgeLookup, ResponderReply

logger = logging.getLogger(__name__)

CHANNEL_GUIDANCE = {
    "email": "Formal and detailed. At most 400 words; use bullet points for steps.",
    "chat": "Concise and conversational. Keep it under 300 characters.",
    "web_form": "Semi-formal and helpful. Between 100 and 250 words.",
}

SYSTEM_PROMPT = (
    "You are a customer support agent answering on the {channel} channel. "
    "{guidance} {language} "
    "Escalate (set \"escalate\": true with a short snake_case \"reason\") when the "
    "customer asks for a human, mentions legal action, or you cannot help. "
    "If the customer switched channels, acknowledge you have their earlier "
    "request on file. Answer only with a JSON object with the keys "
    "\"reply\", \"escalate\" and \"reason\"."
)

_SEARCH_TOOL = {
    "type": "function",
    "function": {
        "name": "search_knowledge_base",
        "description": "Search product documentation for passages relevant to a query.",
        "parameters": {
            "type": "object",
            "properties": {"query": {"type": "string"}},
            "required": ["query"],
        },
    },
}


class OpenAIResponder:
    def __init__(
        self,
        *,
        client: Any | None = None,
        model: str = "gpt-4o-mini",
        knowledge: KnowledgeLookup | None = None,
        max_tool_rounds: int = 3,
        timeout: float | None = None,
    ) -> None:
        if client is None:
            client = OpenAI(timeout=timeout) if timeout is not None else OpenAI()
        self._client = client
        self.model = model
        self.knowledge = knowledge
        self.max_tool_rounds = max_tool_rounds
        self._nlp = NlpPipeline()

    def respond(
        self, history: Sequence[HistoryEntry], customer_context: CustomerContext
    ) -> ResponderReply:
        messages = self._build_messages(history, customer_context)
        tool_calls_count = 0
        for _ in range(self.max_tool_rounds + 1):
            message = self._complete(messages, with_tools=self.knowledge is not None)
            tool_calls = getattr(message, "tool_calls", None) or []
            if not tool_calls:
                reply = _parse_reply(message.content)
                reply.tool_calls_count = tool_calls_count
                return reply
            messages.append(
                {
                    "role": "assistant",
                    "content": message.content or "",
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.function.name,
                                "arguments": call.function.arguments,
                            },
                        }
                        for call in tool_calls
                    ],
                }
            )
            for call in tool_calls:
                tool_calls_count += 1
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": self._run_tool(call.function.name, call.function.arguments),
                    }
                )
        raise ResponderFailureError(
            f"responder exceeded {self.max_tool_rounds} tool rounds",
            tool_calls_count=tool_calls_count,
        )

    def _complete(self, messages: list[dict[str, Any]], *, with_tools: bool) -> Any:
        kwargs: dict[str, Any] = {"model": self.model, "messages": messages}
        if with_tools:
            kwargs["tools"] = [_SEARCH_TOOL]
        else:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            completion = self._client.chat.completions.create(**kwargs)
        except APITimeoutError as exc:
            raise ResponderTimeoutError(f"OpenAI request timed out: {exc}") from exc
        except OpenAIError as exc:
            raise ResponderFailureError(f"OpenAI request failed: {exc}") from exc
        if not completion.choices:
            raise ResponderFailureError("OpenAI returned no choices")
        return completion.choices[0].message

    def _run_tool(self, name: str, arguments: str) -> str:
        if name != "search_knowledge_base" or self.knowledge is None:
            return json.dumps({"error": f"unknown tool {name}"})
        try:
            query = json.loads(arguments or "{}").get("query", "")
        except json.JSONDecodeError:
            query = arguments
        passages = self.knowledge.search(str(query))
        return json.dumps({"passages": passages})

    def _build_messages(
        self, history: Sequence[HistoryEntry], context: CustomerContext
    ) -> list[dict[str, Any]]:
        latest_customer = next(
            (entry.content for entry in reversed(history) if entry.role == "customer"), ""
        )
        lang = self._nlp.analyse(latest_customer)["language"]
        language = (
            f"Reply in {lang}." if lang else "Reply in the same language as the customer."
        )
        system = SYSTEM_PROMPT.format(
            channel=context.channel,
            guidance=CHANNEL_GUIDANCE.get(context.channel, ""),
            language=language,
        )
        facts = [f"customer_id={context.customer_id}"]
        if context.display_name:
            facts.append(f"name={context.display_name}")
        if context.ticket_category:
            facts.append(f"category={context.ticket_category}")
        if context.channels_seen:
            facts.append(f"channels_seen={','.join(context.channels_seen)}")
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": system},
            {"role": "system", "content": "Customer context: " + "; ".join(facts)},
        ]
        for entry in history:
            role = "user" if entry.role == "customer" else "assistant"
            messages.append({"role": role, "content": f"[{entry.channel}] {entry.content}"})
        return messages


def _parse_reply(content: str | None) -> ResponderReply:
    text = (content or "").strip()
    if not text:
        raise ResponderFailureError("OpenAI returned an empty reply")
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.debug("Responder reply was not JSON; using it verbatim")
        return ResponderReply(text=text)
    if not isinstance(data, dict):
        return ResponderReply(text=text)
    reply = str(data.get("reply") or "").strip()
    escalate = bool(data.get("escalate"))
    if not reply and not escalate:
        raise ResponderFailureError("OpenAI reply JSON had no reply text")
    reason = data.get("reason")
    return ResponderReply(
        text=reply,
        escalate=escalate,
        reason=str(reason) if reason else None,
    )


__all__ = ["CHANNEL_GUIDANCE", "OpenAIResponder"]
