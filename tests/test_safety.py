"""
Tests for AI output validation, failure classification and PII redaction.
"""

import asyncio

import pytest

from whatsapp_pipeline.safety import (
    FALLBACK_RESPONSE,
    FAILURE_RESPONSES,
    SchemaValidationError,
    classify_ai_error,
    get_failure_response,
    get_safe_error_message,
    is_valid_whatsapp_response,
    parse_ai_output,
    redact_pii,
)


class TestClassifyAIError:
    @pytest.mark.parametrize(
        "message,expected",
        [
            ("Request timeout after 30000ms", "timeout"),
            ("The operation was aborted", "timeout"),
            ("AI output failed schema validation", "schema_validation_failed"),
            ("LLM API error: 503 - unavailable", "api_error"),
            ("Rate limit reached", "api_error"),
            ("status 429", "api_error"),
            ("HTTP 500", "api_error"),
            ("something odd happened", "unknown"),
        ],
    )
    def test_classifies_by_message(self, message, expected):
        assert classify_ai_error(Exception(message)) == expected

    def test_asyncio_timeout_has_no_message(self):
        assert classify_ai_error(asyncio.TimeoutError()) == "timeout"


class TestFailureResponses:
    def test_timeout_and_api_error_are_distinct(self):
        assert get_failure_response("timeout") != FALLBACK_RESPONSE
        assert get_failure_response("api_error") != FALLBACK_RESPONSE
        assert get_failure_response("timeout") != get_failure_response("api_error")

    @pytest.mark.parametrize("failure_type", ["invalid_response", "empty_response", "schema_validation_failed", "unknown"])
    def test_other_types_use_generic_fallback(self, failure_type):
        assert FAILURE_RESPONSES[failure_type] == FALLBACK_RESPONSE

    def test_unrecognised_type_falls_back(self):
        assert get_failure_response("nope") == FALLBACK_RESPONSE


class TestValidation:
    @pytest.mark.parametrize("text", [None, "", "   ", "\n\t"])
    def test_rejects_empty(self, text):
        assert is_valid_whatsapp_response(text) is False

    def test_accepts_text(self):
        assert is_valid_whatsapp_response("ok") is True


class TestRedaction:
    def test_redacts_phone_numbers(self):
        assert redact_pii("call +15551234567 now") == "call [PHONE_REDACTED] now"
        assert redact_pii("call (555) 123-4567") == "call [PHONE_REDACTED]"

    def test_redacts_email(self):
        assert redact_pii("mail ada@example.com") == "mail [EMAIL_REDACTED]"

    def test_redacts_wa_id_before_phone(self):
        assert redact_pii("wa_id=15551234567") == "wa_id=[ID_REDACTED]"

    def test_redacts_ssn_and_card(self):
        assert redact_pii("ssn 123-45-6789") == "ssn [SSN_REDACTED]"
        assert redact_pii("card 4111 1111 1111 1111") == "card [CC_REDACTED]"

    def test_safe_error_message_truncates(self):
        message = get_safe_error_message(Exception("x" * 2000))
        assert len(message) == 500


class TestParseAIOutput:
    def test_plain_text(self):
        assert parse_ai_output("  Hello there  ").message == "Hello there"

    def test_structured_reply(self):
        response = parse_ai_output(
            '{"message": "Pick one", "buttons": [{"label": "Yes"}, {"id": "no", "label": "No"}],'
            ' "mediaUrl": "https://example.com/a.png",'
            ' "location": {"name": "Office", "latitude": 1.5, "longitude": 2.5}}'
        )
        assert response.message == "Pick one"
        assert [b.label for b in response.buttons] == ["Yes", "No"]
        assert response.media_url == "https://example.com/a.png"
        assert response.location.name == "Office"

    def test_schema_failure_raises(self):
        with pytest.raises(SchemaValidationError) as exc_info:
            parse_ai_output('{"buttons": []}')
        assert classify_ai_error(exc_info.value) == "schema_validation_failed"

    def test_broken_json_is_plain_text(self):
        assert parse_ai_output("{not json").message == "{not json"
