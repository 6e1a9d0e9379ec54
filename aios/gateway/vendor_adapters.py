"""Provider Adapters: protocol-level handling for each AI vendor.

Each adapter draws a key from its provider's credential pool, translates a
Task into the vendor's HTTP protocol, sends it, and returns a normalized
Response or raises a classified ProviderError.

Vendor-specific behaviors:
  - OpenAI-protocol vendors (OpenAI, Groq, DeepSeek, custom endpoints):
    POST {base_url}/chat/completions, Bearer auth, response_format for JSON
  - OpenAI: json_schema structured output when the task carries a schema
  - Gemini: generateContent, systemInstruction, finishReason SAFETY → ContentBlocked
"""

from __future__ import annotations

import logging
import mimetypes
import time
from abc import ABC, abstractmethod
from typing import Any

import httpx

from aios.core.logging import mask_key
from aios.gateway.credentials import CredentialPool
from aios.gateway.errors import (
    AuthFailure,
    ContentBlocked,
    NoUsableCredential,
    ProviderError,
    TransientFailure,
    UnknownProvider,
)
from aios.gateway.normalizer import normalize_response
from aios.gateway.types import ProviderConfig, Response, Task, TaskType

logger = logging.getLogger(__name__)

PROBE_PROMPT = "Hello"
DEFAULT_TEMPERATURE = 0.7

# Body fragments vendors use for a bad key (some send them with a 400)
_INVALID_KEY_MARKERS = ("invalid_api_key", "API_KEY_INVALID", "invalid api key", "Incorrect API key")


class BaseProviderAdapter(ABC):
    """Base class for all provider adapters."""

    default_base_url: str = ""
    default_model: str = ""

    def __init__(self, config: ProviderConfig, timeout: float = 60.0):
        self.config = config
        self.timeout = timeout

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def credentials(self) -> CredentialPool:
        return self.config.credentials

    def get_base_url(self) -> str:
        return (self.config.base_url or self.default_base_url).rstrip("/")

    def get_default_model(self) -> str:
        return self.default_model or self.config.first_enabled_model() or ""

    async def generate_content(self, task: Task) -> Response:
        """Run one task against this provider with a freshly selected key."""
        key = self.credentials.select()
        if key is None:
            raise NoUsableCredential(self.id)

        model = task.model_preference or self.get_default_model()
        start = time.monotonic()

        try:
            response = await self._send(task, model, key)
        except ContentBlocked:
            raise
        except AuthFailure as e:
            logger.warning("%s rejected key %s: %s", self.id, mask_key(key), e)
            self.credentials.mark_error(key)
            self.credentials.mark_exhausted(key)
            raise
        except Exception:
            self.credentials.mark_error(key)
            raise

        response.latency_ms = int((time.monotonic() - start) * 1000)
        return normalize_response(response, task.type, self.config.get_model(model))

    async def test_connection(self) -> bool:
        """Send a minimal probe. Never raises."""
        try:
            await self.generate_content(Task(prompt=PROBE_PROMPT, model_preference=self.get_default_model()))
            return True
        except Exception as e:
            logger.error("%s connection test failed: %s", self.id, e)
            return False

    @abstractmethod
    async def _send(self, task: Task, model: str, key: str) -> Response:
        """Build the vendor request, send it and parse the success payload."""
        ...

    async def _post(self, url: str, payload: dict, headers: dict[str, str]) -> Any:
        """POST and return decoded JSON, raising a classified ProviderError otherwise."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException:
            raise TransientFailure(f"{self.id} timeout after {self.timeout}s", provider_id=self.id)
        except httpx.TransportError as e:
            raise TransientFailure(f"{self.id} transport error: {e}", provider_id=self.id)

        if not resp.is_success:
            raise self._classify_error(resp)

        try:
            return resp.json()
        except ValueError:
            raise ProviderError(f"{self.id} returned a non-JSON body", provider_id=self.id, status_code=resp.status_code)

    def _classify_error(self, resp: httpx.Response) -> ProviderError:
        status = resp.status_code
        body = resp.text[:500]
        message = f"API Error {status}: {body}"

        if status in (401, 403) or any(marker in body for marker in _INVALID_KEY_MARKERS):
            return AuthFailure(message, provider_id=self.id, status_code=status)
        if status in (408, 429) or status >= 500:
            return TransientFailure(message, provider_id=self.id, status_code=status)
        return ProviderError(message, provider_id=self.id, status_code=status)


# ---------------------------------------------------------------------------
# OpenAI-compatible chat completions
# ---------------------------------------------------------------------------


class OpenAICompatibleAdapter(BaseProviderAdapter):
    """Chat-completions protocol shared by OpenAI, Groq, DeepSeek and others.

    Vendors speaking this protocol only override ``default_base_url`` and
    ``default_model``. Used directly for custom providers configured with a
    ``base_url``; the default model is then the first enabled model.
    """

    def _response_format(self, task: Task) -> dict:
        return {"type": "json_object"}

    @staticmethod
    def _user_content(task: Task) -> str | list[dict]:
        if task.type == TaskType.IMAGE_TO_TEXT and task.image_url:
            return [
                {"type": "text", "text": task.prompt},
                {"type": "image_url", "image_url": {"url": task.image_url}},
            ]
        return task.prompt

    async def _send(self, task: Task, model: str, key: str) -> Response:
        base_url = self.get_base_url()
        if not base_url:
            raise ProviderError(f"No base URL configured for {self.id}", provider_id=self.id)

        messages = []
        if task.system_instruction:
            messages.append({"role": "system", "content": task.system_instruction})
        messages.append({"role": "user", "content": self._user_content(task)})

        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": task.temperature if task.temperature is not None else DEFAULT_TEMPERATURE,
        }
        if task.type == TaskType.JSON:
            payload["response_format"] = self._response_format(task)

        data = await self._post(
            f"{base_url}/chat/completions",
            payload,
            headers={
                "Authorization": f"Bearer {key}",
                "Content-Type": "application/json",
            },
        )

        try:
            text = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            raise ProviderError(f"{self.id} returned no choices", provider_id=self.id)

        usage = data.get("usage") or {}
        return Response(
            text=text,
            model_used=model,
            provider_used=self.id,
            input_tokens=usage.get("prompt_tokens"),
            output_tokens=usage.get("completion_tokens"),
            total_tokens=usage.get("total_tokens"),
            raw=data,
        )


class OpenAIAdapter(OpenAICompatibleAdapter):
    """OpenAI Chat Completions, with schema-constrained JSON output."""

    default_base_url = "https://api.openai.com/v1"
    default_model = "gpt-4o"

    def _response_format(self, task: Task) -> dict:
        if task.json_schema:
            return {
                "type": "json_schema",
                "json_schema": {"name": "task_output", "schema": task.json_schema},
            }
        return {"type": "json_object"}


class GroqAdapter(OpenAICompatibleAdapter):
    default_base_url = "https://api.groq.com/openai/v1"
    default_model = "llama-3.3-70b-versatile"


class DeepSeekAdapter(OpenAICompatibleAdapter):
    default_base_url = "https://api.deepseek.com"
    default_model = "deepseek-chat"


# ---------------------------------------------------------------------------
# Gemini Adapter (Google AI)
# ---------------------------------------------------------------------------


class GeminiAdapter(BaseProviderAdapter):
    """Google Gemini generateContent adapter with SAFETY filter detection."""

    default_base_url = "https://generativelanguage.googleapis.com/v1beta"
    default_model = "gemini-2.0-flash"

    @staticmethod
    def _parts(task: Task) -> list[dict]:
        parts: list[dict] = [{"text": task.prompt}]
        if task.type == TaskType.IMAGE_TO_TEXT and task.image_url:
            mime_type = mimetypes.guess_type(task.image_url)[0] or "image/jpeg"
            parts.append({"fileData": {"mimeType": mime_type, "fileUri": task.image_url}})
        return parts

    async def _send(self, task: Task, model: str, key: str) -> Response:
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": self._parts(task)}],
        }

        generation_config: dict[str, Any] = {}
        if task.temperature is not None:
            generation_config["temperature"] = task.temperature
        if task.type == TaskType.JSON:
            generation_config["responseMimeType"] = "application/json"
            if task.json_schema:
                generation_config["responseSchema"] = task.json_schema
        if generation_config:
            payload["generationConfig"] = generation_config

        # System instruction (separate from contents in Gemini API)
        if task.system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": task.system_instruction}]}

        data = await self._post(
            f"{self.get_base_url()}/models/{model}:generateContent",
            payload,
            headers={
                "x-goog-api-key": key,
                "Content-Type": "application/json",
            },
        )

        candidates = data.get("candidates") or []
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason", "")
            if block_reason:
                raise ContentBlocked(f"Gemini blocked the prompt: {block_reason}", provider_id=self.id)
            raise ProviderError("Gemini returned no candidates", provider_id=self.id)

        candidate = candidates[0]
        if candidate.get("finishReason") == "SAFETY":
            raise ContentBlocked("Gemini safety filter triggered", provider_id=self.id)

        parts = (candidate.get("content") or {}).get("parts", [])
        text = "".join(p.get("text", "") for p in parts if "text" in p)

        usage = data.get("usageMetadata") or {}
        return Response(
            text=text,
            model_used=model,
            provider_used=self.id,
            input_tokens=usage.get("promptTokenCount"),
            output_tokens=usage.get("candidatesTokenCount"),
            total_tokens=usage.get("totalTokenCount"),
            raw=data,
        )


# ---------------------------------------------------------------------------
# Adapter registry
# ---------------------------------------------------------------------------

ADAPTER_REGISTRY: dict[str, type[BaseProviderAdapter]] = {
    "gemini": GeminiAdapter,
    "groq": GroqAdapter,
    "openai": OpenAIAdapter,
    "deepseek": DeepSeekAdapter,
}


def get_adapter(config: ProviderConfig, timeout: float = 60.0) -> BaseProviderAdapter:
    """Factory: build the adapter for a provider configuration.

    Unknown provider ids with a ``base_url`` get the generic
    OpenAI-compatible adapter.
    """
    cls = ADAPTER_REGISTRY.get(config.id)
    if cls is None:
        if not config.base_url:
            raise UnknownProvider(config.id)
        cls = OpenAICompatibleAdapter
    return cls(config, timeout=timeout)
