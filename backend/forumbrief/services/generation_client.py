"""Structured-output generation backends.

Both clients take a system prompt, a user prompt and a JSON schema, and
return the raw JSON text produced by the model. Parsing and validation live
in the summary generator so every provider is held to the same rules.
"""
import asyncio
import json
import logging
from typing import Any, Optional, Protocol

import httpx
from openai import AsyncOpenAI

from forumbrief.config import Settings
from forumbrief.schemas.summary import ErrorCategory
from forumbrief.services.error_classifier import ClassifiedError

logger = logging.getLogger(__name__)

GEMINI_STATUS_CATEGORIES = {
    401: ErrorCategory.AUTHENTICATION,
    403: ErrorCategory.AUTHENTICATION,
    429: ErrorCategory.RATE_LIMIT,
}


class StructuredGenerationClient(Protocol):
    model: str

    async def generate_json(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: dict[str, Any],
        timeout: float,
    ) -> str:
        ...

    async def close(self) -> None:
        ...


class OpenAIStructuredClient:
    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        temperature: float = 0.3,
        max_tokens: int = 1500,
    ):
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client: Optional[AsyncOpenAI] = None

    @property
    def client(self) -> AsyncOpenAI:
        if not self.api_key:
            raise ClassifiedError("OpenAI API key is not configured", ErrorCategory.AUTHENTICATION)
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key, max_retries=0)
        return self._client

    async def generate_json(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: dict[str, Any],
        timeout: float,
    ) -> str:
        # The pipeline owns retries, so the SDK's own retry loop is disabled above
        response = await asyncio.wait_for(
            self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                response_format={
                    "type": "json_schema",
                    "json_schema": {"name": "thread_summary", "schema": schema},
                },
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                timeout=timeout,
            ),
            timeout=timeout,
        )
        content = response.choices[0].message.content if response.choices else None
        return content or ""

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


class GeminiStructuredClient:
    """Gemini REST client; the schema is sent as JSON guidance alongside a JSON mime type."""

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.0-flash",
        temperature: float = 0.3,
        max_tokens: int = 1500,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._transport = transport

    async def generate_json(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: dict[str, Any],
        timeout: float,
    ) -> str:
        if not self.api_key:
            raise ClassifiedError("Gemini API key is not configured", ErrorCategory.AUTHENTICATION)
        url = f"https://generativelanguage.googleapis.com/v1beta/models/{self.model}:generateContent"
        prompt = (
            f"{user_prompt}\n\n"
            "Respond with a single JSON object that validates against this JSON schema:\n"
            f"{json.dumps(schema)}"
        )
        payload = {
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_tokens,
                "responseMimeType": "application/json",
            },
        }
        # Key stays out of the URL
        headers = {"x-goog-api-key": self.api_key}
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            response = await asyncio.wait_for(
                client.post(url, headers=headers, json=payload),
                timeout=timeout,
            )
        if response.status_code >= 400:
            raise ClassifiedError(
                f"Gemini request failed with status {response.status_code}",
                GEMINI_STATUS_CATEGORIES.get(response.status_code, ErrorCategory.AI_PROCESSING),
            )
        data = response.json()

        candidates = data.get("candidates") or []
        if not candidates:
            raise RuntimeError("Gemini generation returned no candidates")
        parts = candidates[0].get("content", {}).get("parts", [])
        if not parts or "text" not in parts[0]:
            raise RuntimeError("Gemini generation returned no text")
        return parts[0]["text"].strip()

    async def close(self) -> None:
        return None


def build_generation_client(settings: Settings) -> StructuredGenerationClient:
    if settings.summary_provider == "gemini":
        logger.info("Summary generation via Gemini (%s)", settings.gemini_model)
        return GeminiStructuredClient(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            temperature=settings.summary_temperature,
            max_tokens=settings.summary_max_tokens,
        )
    if settings.summary_provider != "openai":
        logger.warning("Unknown summary_provider %r, using OpenAI", settings.summary_provider)
    logger.info("Summary generation via OpenAI (%s)", settings.openai_model)
    return OpenAIStructuredClient(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        temperature=settings.summary_temperature,
        max_tokens=settings.summary_max_tokens,
    )
