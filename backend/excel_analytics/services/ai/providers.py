"""
Insight provider backends.

Each provider wraps one hosted LLM REST API:
- OpenAI   POST {base}/chat/completions          -> choices[0].message.content
- Gemini   POST {base}/models/{m}:generateContent -> candidates[0].content.parts[].text

Providers try their models in order. Errors that belong to the credential
(AuthError, QuotaExceeded) stop the provider immediately; anything else
moves on to the next model.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from excel_analytics.config import Settings, split_csv
from excel_analytics.exceptions import (
    AuthError,
    ContentFiltered,
    MalformedInsightResponse,
    ModelUnavailable,
    ProviderError,
    QuotaExceeded,
    TransientNetworkError,
)
from excel_analytics.schemas.insight import Insight
from excel_analytics.services.ai.insight_parser import parse_insight_response
from excel_analytics.services.ai.prompt_builder import InsightPrompt

logger = logging.getLogger(__name__)

# Errors that would repeat for every model of the same provider
CREDENTIAL_ERRORS = (AuthError, QuotaExceeded)


def classify_http_error(
    status_code: int, body: str, provider: str, model: str
) -> ProviderError:
    """Map a non-2xx provider response onto the provider error family."""
    lowered = body.lower()
    context = {"provider": provider, "model": model, "details": {"status_code": status_code}}

    if status_code in (401, 403) or "api_key_invalid" in lowered or "api key not valid" in lowered:
        return AuthError(**context)
    if status_code == 429 or "quota" in lowered or "resource_exhausted" in lowered:
        return QuotaExceeded(**context)
    if "safety" in lowered or "content_filter" in lowered or "content management policy" in lowered:
        return ContentFiltered(**context)
    if status_code == 404 or "model_not_found" in lowered:
        return ModelUnavailable(**context)
    if status_code >= 500:
        return TransientNetworkError(**context)
    return ProviderError(f"AI service request failed with status {status_code}", **context)


class InsightProvider:
    """One AI backend capable of turning an analysis prompt into an Insight."""

    name: str = ""

    def __init__(
        self,
        api_key: str,
        models: list[str],
        base_url: str,
        timeout_s: float = 30.0,
        temperature: float = 0.3,
        max_tokens: int = 1000,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = (api_key or "").strip()
        self.models = [m for m in models if m]
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def analyze(self, prompt: InsightPrompt) -> Insight:
        """Run the prompt against each model until one yields a valid insight."""
        if not self.models:
            raise ModelUnavailable("No models configured", provider=self.name)

        last_error: ProviderError | None = None
        for model in self.models:
            try:
                text = await self._complete(model, prompt)
                payload = parse_insight_response(text, provider=self.name, model=model)
            except CREDENTIAL_ERRORS:
                raise
            except ProviderError as e:
                logger.warning(
                    "%s model %s failed (%s): %s", self.name, model, type(e).__name__, e.message
                )
                last_error = e
                continue

            logger.info("Insight generated by %s using %s", self.name, model)
            return Insight(
                **payload.model_dump(),
                generated_by=f"{self.name}:{model}",
                generated_at=datetime.now(timezone.utc),
            )

        raise last_error

    async def _complete(self, model: str, prompt: InsightPrompt) -> str:
        raise NotImplementedError

    async def _post_json(
        self,
        path: str,
        model: str,
        payload: dict[str, Any],
        headers: dict[str, str],
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout_s, transport=self._transport
            ) as client:
                resp = await client.post(path, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(
                "AI service request timed out", provider=self.name, model=model
            ) from e
        except httpx.TransportError as e:
            raise TransientNetworkError(provider=self.name, model=model) from e

        if resp.status_code != 200:
            # Avoid dumping huge bodies into logs
            body = resp.text[:500]
            logger.debug("%s returned %s: %s", self.name, resp.status_code, body)
            raise classify_http_error(resp.status_code, body, self.name, model)

        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedInsightResponse(
                "AI service returned a non-JSON body", provider=self.name, model=model
            ) from e
        if not isinstance(data, dict):
            raise MalformedInsightResponse(provider=self.name, model=model)
        return data


class OpenAIProvider(InsightProvider):
    name = "openai"

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> "OpenAIProvider":
        return cls(
            api_key=settings.openai_api_key,
            models=split_csv(settings.openai_models),
            base_url=settings.openai_base_url,
            timeout_s=settings.insight_timeout_seconds,
            temperature=settings.insight_temperature,
            max_tokens=settings.insight_max_tokens,
            transport=transport,
        )

    async def _complete(self, model: str, prompt: InsightPrompt) -> str:
        data = await self._post_json(
            "/chat/completions",
            model,
            payload={
                "model": model,
                "messages": [
                    {"role": "system", "content": prompt.system_prompt},
                    {"role": "user", "content": prompt.user_prompt},
                ],
                "temperature": self.temperature,
                "max_tokens": self.max_tokens,
            },
            headers={"Authorization": f"Bearer {self.api_key}"},
        )

        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            raise MalformedInsightResponse(
                "No content received from OpenAI API", provider=self.name, model=model
            )
        choice = choices[0]
        if choice.get("finish_reason") == "content_filter":
            raise ContentFiltered(provider=self.name, model=model)

        content = (choice.get("message") or {}).get("content")
        if not isinstance(content, str) or not content.strip():
            raise MalformedInsightResponse(
                "No content received from OpenAI API", provider=self.name, model=model
            )
        return content


class GeminiProvider(InsightProvider):
    name = "gemini"

    BLOCKED_FINISH_REASONS = {"SAFETY", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII"}

    @classmethod
    def from_settings(
        cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None
    ) -> "GeminiProvider":
        return cls(
            api_key=settings.gemini_api_key,
            models=split_csv(settings.gemini_models),
            base_url=settings.gemini_base_url,
            timeout_s=settings.insight_timeout_seconds,
            temperature=settings.insight_temperature,
            max_tokens=settings.insight_max_tokens,
            transport=transport,
        )

    async def _complete(self, model: str, prompt: InsightPrompt) -> str:
        data = await self._post_json(
            f"/models/{model}:generateContent",
            model,
            payload={
                "systemInstruction": {"parts": [{"text": prompt.system_prompt}]},
                "contents": [{"role": "user", "parts": [{"text": prompt.user_prompt}]}],
                "generationConfig": {
                    "temperature": self.temperature,
                    "maxOutputTokens": self.max_tokens,
                },
            },
            headers={"x-goog-api-key": self.api_key},
        )

        feedback = data.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            raise ContentFiltered(provider=self.name, model=model)

        candidates = data.get("candidates") or []
        if not candidates or not isinstance(candidates[0], dict):
            raise MalformedInsightResponse(
                "No content received from Gemini API", provider=self.name, model=model
            )
        candidate = candidates[0]
        if candidate.get("finishReason") in self.BLOCKED_FINISH_REASONS:
            raise ContentFiltered(provider=self.name, model=model)

        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
        if not text.strip():
            raise MalformedInsightResponse(
                "No content received from Gemini API", provider=self.name, model=model
            )
        return text


PROVIDER_CLASSES: dict[str, type[InsightProvider]] = {
    OpenAIProvider.name: OpenAIProvider,
    GeminiProvider.name: GeminiProvider,
}
