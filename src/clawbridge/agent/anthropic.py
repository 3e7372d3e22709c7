"""Anthropic Messages API backend on the official ``anthropic`` SDK.

Batch calls go through ``messages.create``; streaming calls use
``messages.stream`` and yield text deltas as they arrive. SDK errors surface
as ``BackendError`` so the engine never sees provider exception types.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import anthropic
from anthropic import AsyncAnthropic

from clawbridge.agent.sessions import ChatMessage
from clawbridge.config import Settings, get_settings
from clawbridge.logger import logger


class BackendError(Exception):
    def __init__(self, message: str, status: int | None = None) -> None:
        self.status = status
        super().__init__(message)


def build_request(
    messages: list[ChatMessage],
    *,
    model: str,
    max_tokens: int,
    system: str | None = None,
) -> dict[str, Any]:
    """Build ``messages.create`` kwargs. System-role history entries move to ``system``."""
    system_parts = [system] if system else []
    system_parts.extend(m.content for m in messages if m.role == "system")
    kwargs: dict[str, Any] = {
        "model": model,
        "max_tokens": max_tokens,
        "messages": [m.to_dict() for m in messages if m.role != "system"],
    }
    if system_parts:
        kwargs["system"] = "\n\n".join(system_parts)
    return kwargs


def _backend_error(exc: anthropic.APIError) -> BackendError:
    if isinstance(exc, anthropic.APIStatusError):
        return BackendError(
            f"Anthropic API error {exc.status_code}: {exc.message}", status=exc.status_code
        )
    return BackendError(f"Anthropic request failed: {type(exc).__name__}: {exc}")


class AnthropicBackend:
    def __init__(
        self,
        api_key: str | None,
        *,
        model: str,
        max_tokens: int = 4096,
        base_url: str | None = None,
        timeout: float = 120.0,
        max_retries: int = 2,
        client: AsyncAnthropic | None = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = timeout
        self._max_retries = max_retries
        self._client_instance = client

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> AnthropicBackend:
        s = settings or get_settings()
        key = s.secrets.anthropic_api_key
        if key is None:
            logger.warning("No Anthropic API key in settings, falling back to ANTHROPIC_API_KEY")
        return cls(
            key.get_secret_value() if key else None,
            model=s.agent.model,
            max_tokens=s.agent.max_tokens,
            base_url=s.agent.base_url,
            timeout=s.agent.request_timeout,
            max_retries=s.agent.max_retries,
        )

    def _client(self) -> AsyncAnthropic:
        if self._client_instance is None:
            self._client_instance = AsyncAnthropic(
                api_key=self._api_key,
                base_url=self._base_url,
                timeout=self._timeout,
                max_retries=self._max_retries,
            )
        return self._client_instance

    async def complete(self, messages: list[ChatMessage], *, system: str | None = None) -> str:
        kwargs = build_request(
            messages, model=self.model, max_tokens=self.max_tokens, system=system
        )
        try:
            response = await self._client().messages.create(**kwargs)
        except anthropic.APIError as exc:
            raise _backend_error(exc) from exc
        logger.debug(
            "Anthropic completion",
            model=self.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        return "".join(block.text for block in response.content if block.type == "text")

    async def stream(
        self, messages: list[ChatMessage], *, system: str | None = None
    ) -> AsyncIterator[str]:
        kwargs = build_request(
            messages, model=self.model, max_tokens=self.max_tokens, system=system
        )
        try:
            async with self._client().messages.stream(**kwargs) as stream:
                async for text in stream.text_stream:
                    yield text
        except anthropic.APIError as exc:
            raise _backend_error(exc) from exc

    async def close(self) -> None:
        if self._client_instance is not None:
            await self._client_instance.close()
            self._client_instance = None
