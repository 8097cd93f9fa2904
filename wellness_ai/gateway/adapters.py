"""Provider Adapters: protocol-level handling for each external provider.

An adapter turns an opaque request payload into the provider's HTTP protocol,
sends it, and returns the response as bytes. All failures surface as
``GatewayError`` subclasses so the orchestrator can classify them without
knowing anything about the provider.

Request payload (JSON) understood by the reference adapters:
    {"prompt": "...", "system_prompt": "...", "image_base64": "...", "mime_type": "image/jpeg"}

Response bytes are a ``ProviderTextResult`` JSON document:
    {"text": "...", "model": "...", "provider": "..."}

Provider-specific behaviors:
  - Gemini: generateContent, finishReason SAFETY / blocked prompt → ProviderClientError
  - OpenAI-compatible: chat/completions, vision via image_url data URLs
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from wellness_ai.gateway.cancellation import CancelToken
from wellness_ai.gateway.errors import (
    NetworkError,
    ProviderClientError,
    ProviderTimeoutError,
    ResponseValidationError,
    error_for_status,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 45.0


class ProviderTextResult(BaseModel):
    """Normalized text response shared by the reference adapters."""

    text: str
    model: str = ""
    provider: str = ""


class TextPrompt(BaseModel):
    prompt: str
    system_prompt: str | None = None
    image_base64: str | None = None
    mime_type: str = "image/jpeg"


class ProviderAdapter(ABC):
    """Base class for all provider adapters."""

    provider_id: str = ""
    result_model: type[BaseModel] | None = None
    default_timeout: float = DEFAULT_TIMEOUT

    @abstractmethod
    async def invoke(
        self,
        payload: bytes,
        options: Mapping[str, Any],
        timeout: float,
        cancel_token: CancelToken | None = None,
    ) -> bytes:
        """Send one request. Raises GatewayError subclasses on failure."""
        ...

    async def health_check(self) -> bool:
        return True

    async def aclose(self) -> None:
        pass


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header (delta-seconds or HTTP-date) into seconds."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


class HttpProviderAdapter(ProviderAdapter):
    """httpx-backed adapter: owns one AsyncClient and maps HTTP failures."""

    result_model = ProviderTextResult
    default_model: str = ""
    default_base_url: str = ""

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        model: str | None = None,
        default_timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
        provider_id: str | None = None,
    ):
        self.api_key = api_key
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.model = model or self.default_model
        self.default_timeout = default_timeout
        if provider_id:
            self.provider_id = provider_id
        self._client = client or httpx.AsyncClient(timeout=default_timeout)
        self._owns_client = client is None

    @staticmethod
    def _parse_prompt(payload: bytes) -> TextPrompt:
        try:
            return TextPrompt.model_validate_json(payload)
        except ValidationError as exc:
            raise ProviderClientError(f"Invalid request payload: {exc}", status_code=400) from exc

    def _result(self, text: str, model: str) -> bytes:
        return ProviderTextResult(text=text, model=model, provider=self.provider_id).model_dump_json().encode()

    async def _request_json(
        self,
        method: str,
        url: str,
        timeout: float,
        **kwargs: Any,
    ) -> dict:
        try:
            resp = await self._client.request(method, url, timeout=timeout, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(f"{self.provider_id} timeout after {timeout}s", self.provider_id) from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"{self.provider_id} unreachable: {exc}", self.provider_id) from exc

        if resp.status_code >= 400:
            retry_after = parse_retry_after(resp.headers.get("Retry-After")) if resp.status_code == 429 else None
            raise error_for_status(
                resp.status_code,
                f"{self.provider_id} returned HTTP {resp.status_code}: {resp.text[:200]}",
                self.provider_id,
                retry_after=retry_after,
            )

        try:
            return resp.json()
        except ValueError as exc:
            raise ResponseValidationError(f"{self.provider_id} returned non-JSON body", self.provider_id) from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ---------------------------------------------------------------------------
# Gemini Adapter
# ---------------------------------------------------------------------------


class GeminiAdapter(HttpProviderAdapter):
    """Google Gemini adapter with SAFETY filter detection."""

    provider_id = "gemini"
    default_model = "gemini-2.5-flash"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"

    async def invoke(
        self,
        payload: bytes,
        options: Mapping[str, Any],
        timeout: float,
        cancel_token: CancelToken | None = None,
    ) -> bytes:
        prompt = self._parse_prompt(payload)
        model = options.get("model") or self.model

        parts: list[dict] = []
        if prompt.image_base64:
            parts.append({"inlineData": {"mimeType": prompt.mime_type, "data": prompt.image_base64}})
        parts.append({"text": prompt.prompt})

        generation_config: dict[str, Any] = {"temperature": options.get("temperature", 0.7)}
        if options.get("max_tokens"):
            generation_config["maxOutputTokens"] = options["max_tokens"]
        if options.get("response_format") == "json":
            generation_config["responseMimeType"] = "application/json"

        body: dict[str, Any] = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": generation_config,
        }
        # System instruction is separate from contents in the Gemini API
        if prompt.system_prompt:
            body["systemInstruction"] = {"parts": [{"text": prompt.system_prompt}]}

        data = await self._request_json(
            "POST",
            f"{self.base_url}/models/{model}:generateContent",
            timeout,
            json=body,
            params={"key": self.api_key},
        )

        candidates = data.get("candidates") or []
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason", "")
            if block_reason:
                raise ProviderClientError(f"Prompt blocked by Gemini: {block_reason}", self.provider_id, status_code=400)
            raise ResponseValidationError("Gemini returned no candidates", self.provider_id)

        candidate = candidates[0]
        if candidate.get("finishReason") == "SAFETY":
            raise ProviderClientError("Gemini safety filter triggered", self.provider_id, status_code=400)

        content_parts = (candidate.get("content") or {}).get("parts", [])
        text = "".join(p.get("text", "") for p in content_parts if "text" in p)
        return self._result(text, model)

    async def health_check(self) -> bool:
        try:
            await self._request_json("GET", f"{self.base_url}/models", 10.0, params={"key": self.api_key})
        except Exception as exc:
            logger.warning("Gemini health check failed: %s", exc)
            return False
        return True


# ---------------------------------------------------------------------------
# OpenAI-compatible Adapter
# ---------------------------------------------------------------------------


class OpenAICompatibleAdapter(HttpProviderAdapter):
    """OpenAI Chat Completions adapter (also fits any compatible endpoint)."""

    provider_id = "openai"
    default_model = "gpt-4o-mini"
    default_base_url = "https://api.openai.com/v1"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def invoke(
        self,
        payload: bytes,
        options: Mapping[str, Any],
        timeout: float,
        cancel_token: CancelToken | None = None,
    ) -> bytes:
        prompt = self._parse_prompt(payload)
        model = options.get("model") or self.model

        messages: list[dict] = []
        if prompt.system_prompt:
            messages.append({"role": "system", "content": prompt.system_prompt})
        if prompt.image_base64:
            messages.append(
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt.prompt},
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:{prompt.mime_type};base64,{prompt.image_base64}"},
                        },
                    ],
                }
            )
        else:
            messages.append({"role": "user", "content": prompt.prompt})

        body: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": options.get("temperature", 0.7),
        }
        if options.get("max_tokens"):
            body["max_tokens"] = options["max_tokens"]
        if options.get("response_format") == "json":
            body["response_format"] = {"type": "json_object"}

        data = await self._request_json(
            "POST",
            f"{self.base_url}/chat/completions",
            timeout,
            json=body,
            headers=self._headers(),
        )

        try:
            text = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise ResponseValidationError(f"Unexpected {self.provider_id} response shape", self.provider_id) from exc
        return self._result(text, data.get("model", model))

    async def health_check(self) -> bool:
        try:
            await self._request_json("GET", f"{self.base_url}/models", 10.0, headers=self._headers())
        except Exception as exc:
            logger.warning("%s health check failed: %s", self.provider_id, exc)
            return False
        return True


# ---------------------------------------------------------------------------
# Adapter registry
# ---------------------------------------------------------------------------

ADAPTER_REGISTRY: dict[str, type[HttpProviderAdapter]] = {
    "gemini": GeminiAdapter,
    "openai": OpenAICompatibleAdapter,
}


def get_adapter(provider_id: str, api_key: str, **kwargs) -> HttpProviderAdapter:
    """Factory: get the appropriate adapter for a provider."""
    cls = ADAPTER_REGISTRY.get(provider_id)
    if cls is None:
        raise ValueError(f"No adapter registered for provider: {provider_id}")
    return cls(api_key=api_key, **kwargs)
