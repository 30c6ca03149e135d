"""
Pytest configuration and shared fixtures.

Test environment variables are set here, before any package import, and the
settings cache is cleared so they are the ones used.
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["TWILIO_ACCOUNT_SID"] = "ACtest"
os.environ["TWILIO_AUTH_TOKEN"] = "test_auth_token"
os.environ["TWILIO_WHATSAPP_WEBHOOK_URL"] = "https://example.com/webhook"
os.environ["TWILIO_WHATSAPP_FROM"] = "whatsapp:+14155238886"
os.environ["CRON_SECRET"] = "test_cron_secret"
os.environ["OPENAI_API_KEY"] = "test-openai-key"
os.environ["WHATSAPP_CHUNK_DELAY_MS"] = "0"
os.environ["WHATSAPP_RETRY_BASE_DELAY_MS"] = "0"
os.environ["LLM_RETRY_BASE_DELAY_MS"] = "0"

import pytest  # noqa: E402

# Clear settings cache before any app imports to ensure test env vars are used
from whatsapp_pipeline.config import get_settings  # noqa: E402
get_settings.cache_clear()

from whatsapp_pipeline import models  # noqa: E402,F401
from whatsapp_pipeline.llm import LLMResponse  # noqa: E402
from whatsapp_pipeline.storage import Base, SessionLocal, engine  # noqa: E402


KNOWN_PHONE = "+15551234567"
OUR_NUMBER = "+15557654321"


@pytest.fixture
def db_tables():
    """Fresh schema for each test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def known_user(db_tables):
    user = models.User(email="ada@example.com", phone=KNOWN_PHONE, password=None)
    with SessionLocal() as db:
        db.add(user)
        db.commit()
    return user


class FakeTwilioClient:
    """Stands in for TwilioClient; records every call.

    ``failures`` are raised by successive create_message calls; a None entry
    lets that call succeed.
    """

    def __init__(self, failures=None, participants=None):
        self.failures = list(failures or [])
        self.participants = participants or []
        self.create_calls = []
        self.typing_calls = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    async def create_message(self, **params):
        self.create_calls.append(params)
        failure = self.failures.pop(0) if self.failures else None
        if failure is not None:
            raise failure
        return {"sid": f"SMout{len(self.create_calls)}", "status": "queued"}

    async def list_participants(self, conversation_sid):
        return self.participants

    async def send_typing(self, conversation_sid, participant_sid):
        self.typing_calls.append((conversation_sid, participant_sid))


class FakeLLM:
    """Stands in for LLMClient: returns `content` or raises `error`."""

    def __init__(self, content="Hello from the assistant", error=None, usage=None):
        self.content = content
        self.error = error
        self.usage = usage
        self.calls = []

    async def generate(self, system, messages):
        self.calls.append({"system": system, "messages": messages})
        if self.error is not None:
            raise self.error
        return LLMResponse(content=self.content, model="test-model", usage=self.usage)


@pytest.fixture
def twilio():
    return FakeTwilioClient()


@pytest.fixture
def llm():
    return FakeLLM()
