"""
Tests for generate_safe_response: reply passthrough, fallbacks and escalation records.
"""

import asyncio

import pytest

from conftest import FakeLLM
from whatsapp_pipeline import storage
from whatsapp_pipeline.ai_response import generate_safe_response, messages_to_history
from whatsapp_pipeline.config import settings
from whatsapp_pipeline.llm import LLMError, LLMResponse
from whatsapp_pipeline.models import Chat, Message, WebhookLog
from whatsapp_pipeline.safety import FAILURE_RESPONSES, FALLBACK_RESPONSE
from whatsapp_pipeline.schemas import IncomingMessage
from whatsapp_pipeline.storage import SessionLocal


PAYLOAD = IncomingMessage(MessageSid="SM1", From="whatsapp:+15551234567", To="whatsapp:+15557654321", Body="Hi")
HISTORY = [{"role": "user", "content": "Hi"}]


def generate(llm, chat_id="chat-1"):
    return asyncio.run(
        generate_safe_response(
            history=HISTORY,
            payload=PAYLOAD,
            chat_id=chat_id,
            inbound_message_id="msg-1",
            request_url="https://example.com/webhook",
            llm=llm,
        )
    )


def escalations():
    with SessionLocal() as db:
        return db.query(WebhookLog).filter(WebhookLog.status == "escalation_ai_failure").all()


class SequenceLLM:
    """Raises or returns each item of `results` in turn."""

    def __init__(self, results):
        self.results = list(results)
        self.calls = 0

    async def generate(self, system, messages):
        self.calls += 1
        result = self.results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return LLMResponse(content=result, model="test-model")


class SlowLLM:
    async def generate(self, system, messages):
        await asyncio.sleep(1)
        return LLMResponse(content="too late", model="test-model")


def test_returns_model_reply(db_tables, llm):
    response = generate(llm)

    assert response.message == "Hello from the assistant"
    assert escalations() == []
    assert llm.calls[0]["messages"] == HISTORY
    assert "Profile Name" in llm.calls[0]["system"]


def test_structured_reply_is_parsed(db_tables):
    response = generate(FakeLLM(content='{"message": "Choose", "buttons": [{"label": "A"}]}'))

    assert response.message == "Choose"
    assert response.buttons[0].label == "A"


def test_timeout_error_returns_timeout_message_and_one_escalation(db_tables):
    response = generate(FakeLLM(error=RuntimeError("Request timeout")))

    assert response.message == FAILURE_RESPONSES["timeout"]
    rows = escalations()
    assert len(rows) == 1
    assert rows[0].payload["failureType"] == "timeout"
    assert rows[0].payload["chatId"] == "chat-1"
    assert rows[0].payload["messageId"] == "msg-1"


def test_deadline_bounds_the_call(db_tables, monkeypatch):
    monkeypatch.setattr(settings, "LLM_TIMEOUT_MS", 50)

    response = generate(SlowLLM())

    assert response.message == FAILURE_RESPONSES["timeout"]
    assert len(escalations()) == 1


def test_whitespace_reply_returns_generic_fallback(db_tables):
    response = generate(FakeLLM(content="   \n "))

    assert response.message == FALLBACK_RESPONSE
    rows = escalations()
    assert len(rows) == 1
    assert rows[0].payload["failureType"] == "invalid_response"


def test_empty_reply_is_empty_response(db_tables):
    response = generate(FakeLLM(content=""))

    assert response.message == FALLBACK_RESPONSE
    assert escalations()[0].payload["failureType"] == "empty_response"


def test_schema_failure_falls_back(db_tables):
    response = generate(FakeLLM(content='{"buttons": [{"label": "A"}]}'))

    assert response.message == FALLBACK_RESPONSE
    assert escalations()[0].payload["failureType"] == "schema_validation_failed"


def test_transient_api_error_is_retried(db_tables):
    llm = SequenceLLM([LLMError(503, "unavailable"), "Recovered"])

    response = generate(llm)

    assert response.message == "Recovered"
    assert llm.calls == 2
    assert escalations() == []


def test_client_error_is_not_retried(db_tables):
    llm = SequenceLLM([LLMError(400, "bad request"), "never"])

    response = generate(llm)

    assert llm.calls == 1
    assert response.message == FAILURE_RESPONSES["api_error"]


def test_retries_are_bounded(db_tables, monkeypatch):
    monkeypatch.setattr(settings, "LLM_MAX_RETRIES", 2)
    llm = SequenceLLM([LLMError(500, "boom")] * 5)

    response = generate(llm)

    assert llm.calls == 3
    assert response.message == FAILURE_RESPONSES["api_error"]
    assert len(escalations()) == 1


def test_escalated_error_is_redacted(db_tables):
    generate(FakeLLM(error=RuntimeError("failed for +15551234567")))

    assert "+15551234567" not in escalations()[0].error


def test_usage_snapshot_saved_on_chat(known_user):
    with SessionLocal() as db:
        storage.save_chat(db, chat_id="chat-usage", user_id=known_user.id, title="WhatsApp Ada")

    generate(FakeLLM(usage={"total_tokens": 42}), chat_id="chat-usage")

    with SessionLocal() as db:
        chat = db.get(Chat, "chat-usage")
    assert chat.last_context == {"model": "test-model", "usage": {"total_tokens": 42}}


def test_messages_to_history():
    messages = [
        Message(role="user", parts=[{"type": "text", "text": "one"}]),
        Message(role="assistant", parts=[{"type": "text", "text": "two"}]),
        Message(role="user", parts=[]),
        Message(role="user", parts=[{"type": "text", "text": "three"}]),
    ]

    assert messages_to_history(messages) == [
        {"role": "user", "content": "one"},
        {"role": "assistant", "content": "two"},
        {"role": "user", "content": "three"},
    ]
    assert messages_to_history(messages, limit=1) == [{"role": "user", "content": "three"}]


@pytest.mark.parametrize("error", [LLMError(429, "slow down"), ConnectionError("ECONNRESET")])
def test_transient_errors_by_kind(db_tables, error):
    llm = SequenceLLM([error, "ok"])

    assert generate(llm).message == "ok"
    assert llm.calls == 2
