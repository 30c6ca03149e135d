from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SYSTEM_PROMPT = (
    "You are a friendly, concise assistant. Answer helpfully and accurately, "
    "and ask a short clarifying question when the request is ambiguous."
)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required
    DATABASE_URL: str

    LOG_LEVEL: str = "INFO"

    # Twilio credentials. The auth token doubles as the webhook shared secret.
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_WHATSAPP_WEBHOOK_URL: Optional[str] = None
    TWILIO_WHATSAPP_FROM: Optional[str] = None
    TWILIO_MESSAGING_SERVICE_SID: Optional[str] = None
    TWILIO_CONVERSATIONS_AGENT_IDENTITY: Optional[str] = None
    TWILIO_WHATSAPP_BUTTONS_CONTENT_SID: Optional[str] = None
    TWILIO_API_BASE_URL: str = "https://api.twilio.com/2010-04-01"
    TWILIO_CONVERSATIONS_BASE_URL: str = "https://conversations.twilio.com/v1"
    TWILIO_HTTP_TIMEOUT_SECONDS: float = 15.0

    # Per-environment feature toggles
    WHATSAPP_TYPING_INDICATOR_ENABLED: bool = True
    WHATSAPP_BUTTONS_ENABLED: bool = True

    # Channel limits
    WHATSAPP_MAX_MESSAGE_LENGTH: int = 1600
    WHATSAPP_CHUNK_DELAY_MS: int = 500
    WHATSAPP_SENDER_RATE_PER_SECOND: float = 80
    WHATSAPP_SENDER_RATE_BURST: int = 80
    WHATSAPP_SENDER_RATE_MAX_WAIT_MS: int = 5000
    WHATSAPP_RATE_LIMIT_CLEANUP_MS: int = 300_000
    WHATSAPP_RETRY_MAX_ATTEMPTS: int = 3
    WHATSAPP_RETRY_BASE_DELAY_MS: int = 1000
    WHATSAPP_RETRY_MAX_DELAY_MS: int = 30_000

    # Text generation
    OPENAI_API_KEY: Optional[str] = None
    LLM_BASE_URL: str = "https://api.openai.com/v1"
    LLM_MODEL: str = "gpt-4o-mini"
    LLM_TIMEOUT_MS: int = 30_000
    LLM_MAX_RETRIES: int = 2
    LLM_MIN_RESPONSE_LENGTH: int = 1
    LLM_RETRY_BASE_DELAY_MS: int = 500
    LLM_HISTORY_LIMIT: int = 30
    ASSISTANT_SYSTEM_PROMPT: str = DEFAULT_SYSTEM_PROMPT

    # Cron sweeps
    CRON_SECRET: Optional[str] = None
    CRON_BATCH_SIZE: int = 50
    FAILED_SEND_MAX_RETRIES: int = 3


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
