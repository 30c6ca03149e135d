"""OpenAI-compatible chat completions client used for assistant replies."""

import logging
from dataclasses import dataclass
from typing import List, Optional

import httpx

from whatsapp_pipeline.config import settings

logger = logging.getLogger(__name__)


class LLMError(Exception):
    """Generation API returned a non-200 response."""

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"LLM API error: {status_code} - {body[:200]}")


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None
    finish_reason: Optional[str] = None


class LLMClient:
    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 60.0,
    ):
        self.api_key = api_key
        self.model = model
        self.url = f"{base_url.rstrip('/')}/chat/completions"
        self.timeout_seconds = timeout_seconds

    async def generate(
        self,
        system: str,
        messages: List[dict],
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> LLMResponse:
        payload = {
            "model": self.model,
            "messages": [{"role": "system", "content": system}, *messages],
            "temperature": temperature,
            "max_completion_tokens": max_tokens,
        }
        logger.debug(f"LLM request: model={self.model}, messages_count={len(messages)}")

        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.post(
                self.url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
            )

        if response.status_code != 200:
            logger.error(f"LLM error: {response.status_code}")
            raise LLMError(response.status_code, response.text)

        data = response.json()
        content = ""
        finish_reason = None
        if data.get("choices"):
            choice = data["choices"][0]
            content = (choice.get("message") or {}).get("content") or ""
            finish_reason = choice.get("finish_reason")

        return LLMResponse(
            content=content,
            model=data.get("model", self.model),
            usage=data.get("usage"),
            finish_reason=finish_reason,
        )


def get_llm_client() -> LLMClient:
    if not settings.OPENAI_API_KEY:
        raise RuntimeError("LLM API error: OPENAI_API_KEY is not configured")
    return LLMClient(
        api_key=settings.OPENAI_API_KEY,
        model=settings.LLM_MODEL,
        base_url=settings.LLM_BASE_URL,
        timeout_seconds=settings.LLM_TIMEOUT_MS / 1000,
    )
