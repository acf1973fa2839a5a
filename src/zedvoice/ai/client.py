"""Async AI client wrapper built around OpenAI-compatible endpoints."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Sequence, cast

import httpx
from openai import APIConnectionError, AsyncOpenAI, RateLimitError
from openai.types.chat import ChatCompletionMessageParam
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 15.0
    max_attempts: int = 1
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 4.0
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


class AIClient:
    """Async client issuing single chat completions with bounded retry semantics."""

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def complete(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        model: str | None = None,
        timeout: float | None = None,
        temperature: float | None = 0.2,
        response_format: Mapping[str, Any] | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """Return the text of a single non-streamed chat completion."""

        payload = self._build_chat_payload(
            messages=self._coerce_messages(messages),
            model=model,
            timeout=timeout,
            temperature=temperature,
            response_format=response_format,
            max_tokens=max_tokens,
        )
        LOGGER.debug(
            "Requesting chat completion via %s with %s message(s)",
            payload["model"],
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        content = ""
        async for attempt in self._retrying():
            with attempt:
                response = await self._client.chat.completions.create(**payload)
                content = self._extract_content(response)
        return content

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key or "not-set",
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            max_retries=0,
            default_headers=headers,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_attempts)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(
                (
                    APIConnectionError,
                    RateLimitError,
                    httpx.TimeoutException,
                )
            ),
        )

    def _coerce_messages(
        self, messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam]
    ) -> List[ChatCompletionMessageParam]:
        normalized: List[ChatCompletionMessageParam] = []
        for message in messages:
            if isinstance(message, MutableMapping):
                normalized.append(cast(ChatCompletionMessageParam, dict(message)))
            else:
                try:
                    normalized.append(cast(ChatCompletionMessageParam, dict(message)))
                except TypeError as exc:  # pragma: no cover - defensive guard
                    raise TypeError("Messages must be mapping-like objects") from exc
        if not normalized:
            raise ValueError("At least one message is required to request a completion")
        return normalized

    def _build_chat_payload(
        self,
        *,
        messages: Sequence[ChatCompletionMessageParam],
        model: str | None,
        timeout: float | None,
        temperature: float | None,
        response_format: Mapping[str, Any] | None,
        max_tokens: int | None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model or self._settings.model,
            "messages": list(messages),
        }
        if timeout is not None:
            payload["timeout"] = timeout
        if temperature is not None:
            payload["temperature"] = temperature
        if response_format is not None:
            payload["response_format"] = dict(response_format)
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        return payload

    @staticmethod
    def _extract_content(response: Any) -> str:
        choices = getattr(response, "choices", None) or []
        if not choices:
            raise ValueError("Chat completion returned no choices")
        message = getattr(choices[0], "message", None)
        content = getattr(message, "content", None)
        return str(content or "")

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
        except Exception as exc:  # pragma: no cover - defensive guard
            LOGGER.debug("AI client close failed to start: %s", exc)
            return
        if inspect.isawaitable(result):
            await result


__all__ = ["AIClient", "ClientSettings"]
