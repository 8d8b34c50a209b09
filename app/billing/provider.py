from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, Protocol

import openai

from app.core.config import get_settings


logger = logging.getLogger("app.billing")


class ProviderError(Exception):
    pass


@dataclass(slots=True)
class CompletionRequest:
    model: str
    messages: list[dict[str, Any]]
    max_completion_tokens: int | None = None
    temperature: float | None = None
    response_format: dict[str, Any] | None = None
    tools: list[dict[str, Any]] | None = None
    tool_choice: str | dict[str, Any] | None = None

    def to_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {"model": self.model, "messages": self.messages}
        if self.max_completion_tokens:
            params["max_completion_tokens"] = self.max_completion_tokens
        if self.temperature is not None:
            params["temperature"] = self.temperature
        if self.response_format:
            params["response_format"] = self.response_format
        if self.tools:
            params["tools"] = self.tools
            if self.tool_choice:
                params["tool_choice"] = self.tool_choice
        return params


@dataclass(slots=True)
class TokenUsage:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass(slots=True)
class CompletionResult:
    id: str
    model: str
    content: str
    usage: TokenUsage | None = None
    tool_calls: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class StreamChunk:
    id: str | None = None
    content: str | None = None
    tool_name: str | None = None
    tool_arguments: str | None = None


class AIProvider(Protocol):
    def complete(self, request: CompletionRequest) -> CompletionResult: ...

    def stream(self, request: CompletionRequest) -> Iterator[StreamChunk]: ...


class OpenAIProvider:
    def __init__(self, api_key: str | None, timeout: float) -> None:
        self._client = openai.OpenAI(api_key=api_key, timeout=timeout, max_retries=0) if api_key else None

    def _require_client(self) -> openai.OpenAI:
        if self._client is None:
            raise ProviderError("OpenAI API key not configured")
        return self._client

    def complete(self, request: CompletionRequest) -> CompletionResult:
        client = self._require_client()
        try:
            response = client.chat.completions.create(**request.to_params())
        except openai.OpenAIError as exc:
            logger.warning("ai.provider.error", extra={"model": request.model, "error": str(exc)[:500]})
            raise ProviderError(str(exc)) from exc

        message = response.choices[0].message if response.choices else None
        usage = None
        if response.usage is not None:
            prompt_tokens = response.usage.prompt_tokens or 0
            completion_tokens = response.usage.completion_tokens or 0
            usage = TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=response.usage.total_tokens or prompt_tokens + completion_tokens,
            )
        raw_calls = (message.tool_calls or []) if message is not None else []
        tool_calls = [
            {"id": call.id, "name": call.function.name, "arguments": call.function.arguments}
            for call in raw_calls
            if getattr(call, "function", None) is not None
        ]
        return CompletionResult(
            id=response.id,
            model=response.model,
            content=(message.content or "") if message is not None else "",
            usage=usage,
            tool_calls=tool_calls,
        )

    def stream(self, request: CompletionRequest) -> Iterator[StreamChunk]:
        client = self._require_client()
        try:
            events = client.chat.completions.create(**request.to_params(), stream=True)
            for event in events:
                delta = event.choices[0].delta if event.choices else None
                if delta is None:
                    yield StreamChunk(id=event.id)
                    continue
                chunk = StreamChunk(id=event.id, content=delta.content)
                if delta.tool_calls:
                    function = delta.tool_calls[0].function
                    if function is not None:
                        chunk.tool_name = function.name
                        chunk.tool_arguments = function.arguments
                yield chunk
        except openai.OpenAIError as exc:
            logger.warning("ai.provider.error", extra={"model": request.model, "error": str(exc)[:500]})
            raise ProviderError(str(exc)) from exc


def get_ai_provider() -> AIProvider:
    settings = get_settings()
    return OpenAIProvider(settings.openai_api_key, settings.ai_request_timeout_seconds)
