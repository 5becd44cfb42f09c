"""LLM client abstractions used by the classifier."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urljoin

import httpx

from ..core.config import LlmSettings

LOGGER = logging.getLogger(__name__)

_RETRYABLE_STATUS = frozenset({408, 429})


class LLMError(RuntimeError):
    """Raised when the LLM provider fails to respond as expected."""


class LLMClient(Protocol):
    """Protocol describing the minimal LLM client behaviour."""

    @property
    def provider_id(self) -> str:
        """Identifier describing the backing model/provider."""
        raise NotImplementedError

    async def generate(self, prompt: str) -> str:
        """Return the raw text completion for ``prompt``."""
        raise NotImplementedError


@dataclass(slots=True)
class OllamaClient:
    """Thin asynchronous client for the Ollama HTTP API."""

    settings: LlmSettings
    transport: httpx.AsyncBaseTransport | None = None

    async def generate(self, prompt: str) -> str:
        """Send a completion request, retrying transient failures with backoff."""
        endpoint = _resolve_endpoint(self.settings.base_url)
        options: dict[str, object] = {"temperature": self.settings.temperature}
        if self.settings.max_output_tokens is not None:
            options["num_predict"] = self.settings.max_output_tokens
        payload: dict[str, object] = {
            "model": self.settings.model,
            "prompt": prompt,
            "stream": False,
            "format": "json",
            "options": options,
        }

        max_attempts = self.settings.max_retries
        data: dict[str, object] | None = None
        last_error: Exception | None = None
        async with httpx.AsyncClient(
            timeout=self.settings.timeout_seconds, transport=self.transport
        ) as client:
            for attempt in range(1, max_attempts + 1):
                try:
                    response = await client.post(endpoint, json=payload)
                    response.raise_for_status()
                    data = response.json()
                    break
                except httpx.HTTPStatusError as exc:
                    if not _is_retryable_status(exc.response.status_code):
                        raise LLMError(
                            f"LLM request rejected with HTTP {exc.response.status_code}"
                        ) from exc
                    last_error = exc
                except httpx.TransportError as exc:
                    last_error = exc
                except json.JSONDecodeError as exc:
                    raise LLMError("LLM returned invalid JSON") from exc

                if attempt < max_attempts:
                    delay = self.backoff_delay(attempt)
                    LOGGER.info(
                        "LLM call failed (attempt %s/%s): %s; retrying in %.1fs",
                        attempt,
                        max_attempts,
                        last_error,
                        delay,
                    )
                    await asyncio.sleep(delay)

        if data is None:
            raise LLMError("LLM request failed after retries") from last_error

        result = data.get("response") if isinstance(data, dict) else None
        if not isinstance(result, str) or not result.strip():
            raise LLMError("LLM response missing 'response' field")
        return result.strip()

    def backoff_delay(self, attempt: int) -> float:
        """Delay after failed ``attempt`` (1-based), capped by the settings."""
        delay = self.settings.initial_retry_delay_seconds * 2 ** (attempt - 1)
        return min(delay, self.settings.max_retry_delay_seconds)

    @property
    def provider_id(self) -> str:
        """Return a human readable identifier for the configured model."""
        return f"ollama:{self.settings.model}"


def _is_retryable_status(status_code: int) -> bool:
    return status_code in _RETRYABLE_STATUS or status_code >= 500


def _resolve_endpoint(base_url: str) -> str:
    trimmed = base_url.rstrip("/") + "/"
    return urljoin(trimmed, "api/generate")


__all__ = ["LLMClient", "OllamaClient", "LLMError"]
