"""
Tests for the POST /webhook endpoint.

Tests cover:
- Valid signature: TwiML acknowledgement and background reply
- Duplicate MessageSid handling (idempotency)
- Invalid/missing signature (403)
- Validation errors (400)
- Health and metrics endpoints
"""

import base64
import hashlib
import hmac
import os
from unittest.mock import patch
from urllib.parse import urlencode

import pytest
from fastapi.testclient import TestClient

from conftest import KNOWN_PHONE, OUR_NUMBER, FakeLLM, FakeTwilioClient
from whatsapp_pipeline.config import settings
from whatsapp_pipeline.main import app
from whatsapp_pipeline.models import Message, WebhookLog
from whatsapp_pipeline.storage import SessionLocal


WEBHOOK_URL = os.environ["TWILIO_WHATSAPP_WEBHOOK_URL"]
AUTH_TOKEN = os.environ["TWILIO_AUTH_TOKEN"]
FORM = {"Content-Type": "application/x-www-form-urlencoded"}


def compute_signature(params: dict, token: str = AUTH_TOKEN, url: str = WEBHOOK_URL) -> str:
    """Twilio signature: base64 HMAC-SHA1 over the URL plus sorted key/value pairs."""
    data = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(token.encode("utf-8"), data.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def form_params(**overrides) -> dict:
    params = {
        "MessageSid": "SM0001",
        "From": f"whatsapp:{KNOWN_PHONE}",
        "To": f"whatsapp:{OUR_NUMBER}",
        "Body": "Hello",
        "ProfileName": "Ada",
        "WaId": KNOWN_PHONE.lstrip("+"),
        "NumMedia": "0",
    }
    params.update(overrides)
    return params


@pytest.fixture
def fakes():
    """Patch the outbound clients used by the background reply."""
    twilio = FakeTwilioClient()
    llm = FakeLLM()
    with patch("whatsapp_pipeline.service.create_twilio_client", return_value=twilio), \
            patch("whatsapp_pipeline.ai_response.get_llm_client", return_value=llm):
        yield twilio, llm


@pytest.fixture(scope="function")
def client(known_user, fakes):
    """Test client with a fresh database and a registered user."""
    with TestClient(app) as test_client:
        yield test_client


def post_signed(client, params: dict, signature: str = None):
    headers = {**FORM, "X-Twilio-Signature": signature or compute_signature(params)}
    return client.post("/webhook", content=urlencode(params), headers=headers)


def messages():
    with SessionLocal() as db:
        return db.query(Message).order_by(Message.created_at.asc()).all()


def logs_with_status(status):
    with SessionLocal() as db:
        return db.query(WebhookLog).filter(WebhookLog.status == status).all()


class TestWebhookValidSignature:
    """Test webhook with valid signatures."""

    def test_acknowledges_with_empty_twiml(self, client):
        response = post_signed(client, form_params())

        assert response.status_code == 200
        assert response.text == "<Response></Response>"
        assert response.headers["content-type"].startswith("text/xml")

    def test_reply_is_generated_and_sent(self, client, fakes):
        twilio, llm = fakes

        post_signed(client, form_params())

        assert [m.role for m in messages()] == ["user", "assistant"]
        assert messages()[1].metadata_["sendStatus"] == "sent"
        assert len(llm.calls) == 1
        assert twilio.create_calls[0]["Body"] == "Hello from the assistant"

        with SessionLocal() as db:
            entry = db.query(WebhookLog).filter(WebhookLog.message_sid == "SM0001").one()
        assert entry.status == "processed"
        assert entry.from_number == KNOWN_PHONE
        assert entry.to_number == OUR_NUMBER
        assert entry.request_url == WEBHOOK_URL

    def test_duplicate_message_processed_once(self, client, fakes):
        twilio, llm = fakes
        params = form_params()

        first = post_signed(client, params)
        second = post_signed(client, params)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.text == "<Response></Response>"
        assert [m.role for m in messages()] == ["user", "assistant"]
        assert len(twilio.create_calls) == 1
        assert len(llm.calls) == 1

    def test_multiple_different_messages(self, client, fakes):
        twilio, _ = fakes

        for index in range(3):
            response = post_signed(client, form_params(MessageSid=f"SM{index}", Body=f"Message {index}"))
            assert response.status_code == 200

        assert len(messages()) == 6
        assert len(twilio.create_calls) == 3
        assert len({m.chat_id for m in messages()}) == 1

    def test_unknown_sender_acknowledged_without_reply(self, client, fakes):
        twilio, _ = fakes

        response = post_signed(client, form_params(From="whatsapp:+15550000000"))

        assert response.status_code == 200
        assert messages() == []
        assert twilio.create_calls == []
        assert logs_with_status("processing_error")[0].message_sid == "SM0001"

    def test_media_attachments_persisted(self, client):
        params = form_params(
            NumMedia="2",
            MediaUrl0="https://media.example.com/a",
            MediaContentType0="image/jpeg",
            MediaUrl1="https://media.example.com/b",
            MediaContentType1="application/pdf",
        )

        post_signed(client, params)

        inbound = messages()[0]
        assert [a["url"] for a in inbound.attachments] == ["https://media.example.com/a", "https://media.example.com/b"]
        assert inbound.attachments[1]["contentType"] == "application/pdf"

    def test_pending_log_error_still_acknowledged(self, client, fakes):
        twilio, _ = fakes

        with patch("whatsapp_pipeline.repository.create_pending_log", return_value={"outcome": "error"}):
            response = post_signed(client, form_params())

        assert response.status_code == 200
        assert twilio.create_calls == []
        rows = logs_with_status("pending_log_failed")
        assert len(rows) == 1
        assert rows[0].payload["messageSid"] == "SM0001"
        assert rows[0].message_sid is None


class TestWebhookInvalidSignature:
    """Test webhook with invalid or missing signatures."""

    def test_missing_signature_header(self, client):
        response = client.post("/webhook", content=urlencode(form_params()), headers=FORM)

        assert response.status_code == 403
        assert response.text == "Forbidden"
        assert messages() == []
        assert len(logs_with_status("missing_signature")) == 1

    def test_empty_signature(self, client):
        response = client.post(
            "/webhook",
            content=urlencode(form_params()),
            headers={**FORM, "X-Twilio-Signature": ""},
        )

        assert response.status_code == 403

    def test_invalid_signature(self, client, fakes):
        twilio, _ = fakes

        response = post_signed(client, form_params(), signature="bm90LWEtc2lnbmF0dXJl")

        assert response.status_code == 403
        assert messages() == []
        assert twilio.create_calls == []
        rows = logs_with_status("signature_failed")
        assert len(rows) == 1
        assert rows[0].message_sid is None

    def test_signature_with_different_body(self, client):
        signature = compute_signature(form_params(Body="Original"))

        response = post_signed(client, form_params(Body="Tampered"), signature=signature)

        assert response.status_code == 403

    def test_signature_with_different_token(self, client):
        params = form_params()

        response = post_signed(client, params, signature=compute_signature(params, token="wrong_token"))

        assert response.status_code == 403

    def test_signature_for_different_url(self, client):
        params = form_params()
        signature = compute_signature(params, url="https://attacker.example.com/webhook")

        response = post_signed(client, params, signature=signature)

        assert response.status_code == 403

    def test_rejected_sid_can_still_be_delivered(self, client):
        params = form_params()

        post_signed(client, params, signature="bm90LWEtc2lnbmF0dXJl")
        response = post_signed(client, params)

        assert response.status_code == 200
        assert [m.role for m in messages()] == ["user", "assistant"]

    def test_missing_auth_token_is_server_error(self, client, monkeypatch):
        monkeypatch.setattr(settings, "TWILIO_AUTH_TOKEN", None)

        response = post_signed(client, form_params())

        assert response.status_code == 500
        assert response.text == "Server misconfigured"


class TestWebhookValidationErrors:
    """Test webhook payload validation."""

    def test_empty_body(self, client):
        response = client.post("/webhook", content=b"", headers=FORM)

        assert response.status_code == 400
        assert response.text == "Missing payload"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"MessageSid": ""},
            {"From": "+15551234567x"},
            {"From": "whatsapp:15551234567"},
            {"To": "not-a-number"},
            {"NumMedia": "-1"},
        ],
    )
    def test_invalid_fields(self, client, overrides):
        params = form_params(**overrides)

        response = post_signed(client, params)

        assert response.status_code == 400
        assert response.text == "Invalid payload"
        assert messages() == []

    def test_missing_message_sid(self, client):
        params = form_params()
        del params["MessageSid"]

        response = post_signed(client, params)

        assert response.status_code == 400
        rows = logs_with_status("invalid_payload")
        assert len(rows) == 1
        assert rows[0].payload["issues"][0]["field"] == "MessageSid"

    def test_message_without_body(self, client):
        params = form_params()
        del params["Body"]

        response = post_signed(client, params)

        assert response.status_code == 200
        assert messages()[0].parts == [{"type": "text", "text": ""}]


class TestHealthAndMetrics:
    def test_liveness(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "reason": None}

    def test_readiness(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_readiness_without_webhook_url(self, client, monkeypatch):
        monkeypatch.setattr(settings, "TWILIO_WHATSAPP_WEBHOOK_URL", None)

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"

    def test_metrics_exposes_webhook_outcomes(self, client):
        post_signed(client, form_params())

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "webhook_requests_total" in response.text
        assert 'result="created"' in response.text
