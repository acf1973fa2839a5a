"""Model provider boundary and the OpenAI-compatible adapter."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Protocol, runtime_checkable

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAIError, RateLimitError

from ..core.errors import ProviderError
from ..services.settings import EffectiveSettings
from .client import AIClient, ClientSettings

__all__ = ["ModelProvider", "OpenAIProvider", "translate_provider_error", "DEFAULT_SYSTEM_PROMPT"]

LOGGER = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "Answer with a single JSON object and nothing else."
_JSON_RESPONSE_FORMAT: Mapping[str, Any] = {"type": "json_object"}


@runtime_checkable
class ModelProvider(Protocol):
    """Anything able to turn a prompt into raw response text."""

    async def submit(self, prompt: str, model_id: str, timeout: float) -> str:
        ...

    async def aclose(self) -> None:
        ...


def translate_provider_error(exc: BaseException) -> ProviderError:
    """Map openai/httpx failures onto :class:`ProviderError`."""

    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, (APITimeoutError, httpx.TimeoutException, asyncio.TimeoutError)):
        return ProviderError(f"Provider request timed out: {exc}", kind="timeout", transient=True)
    if isinstance(exc, RateLimitError):
        return ProviderError(
            f"Provider rate limit reached: {exc}",
            kind="rate_limit",
            transient=True,
            status_code=getattr(exc, "status_code", 429),
        )
    if isinstance(exc, APIStatusError):
        status = getattr(exc, "status_code", None)
        transient = status is None or status >= 500
        return ProviderError(
            f"Provider answered with status {status}: {exc}",
            kind="status",
            transient=transient,
            status_code=status,
        )
    if isinstance(exc, (APIConnectionError, httpx.TransportError)):
        return ProviderError(f"Provider connection failed: {exc}", kind="network", transient=True)
    if isinstance(exc, (OpenAIError, httpx.HTTPError, ValueError)):
        return ProviderError(f"Provider request failed: {exc}", kind="unknown", transient=False)
    return ProviderError(f"Unexpected provider failure: {exc!r}", kind="unknown", transient=True)


class OpenAIProvider:
    """:class:`ModelProvider` backed by an OpenAI-compatible chat endpoint."""

    def __init__(
        self,
        client: AIClient,
        *,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        temperature: float | None = 0.2,
        json_mode: bool = True,
    ) -> None:
        self._client = client
        self._system_prompt = system_prompt
        self._temperature = temperature
        self._json_mode = json_mode
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        settings: EffectiveSettings,
        *,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        debug_logging: bool = False,
    ) -> "OpenAIProvider":
        provider = settings.provider
        client_settings = ClientSettings(
            base_url=provider.base_url,
            api_key=provider.api_key,
            model=settings.model_id,
            organization=provider.organization,
            request_timeout=settings.request_timeout_seconds,
            max_attempts=provider.max_attempts,
            default_headers=dict(provider.default_headers) or None,
            debug_logging=debug_logging,
        )
        return cls(
            AIClient(client_settings),
            system_prompt=system_prompt,
            temperature=provider.temperature,
        )

    @property
    def client(self) -> AIClient:
        return self._client

    async def submit(self, prompt: str, model_id: str, timeout: float) -> str:
        if self._closed:
            raise ProviderError("Provider has been closed", kind="unknown", transient=False)
        messages = [
            {"role": "system", "content": self._system_prompt},
            {"role": "user", "content": prompt},
        ]
        try:
            return await self._client.complete(
                messages,
                model=model_id,
                timeout=timeout,
                temperature=self._temperature,
                response_format=_JSON_RESPONSE_FORMAT if self._json_mode else None,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = translate_provider_error(exc)
            LOGGER.debug("Provider call failed (%s): %s", error.kind, exc)
            raise error from exc

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._client.aclose()
