"""Direct HTTP streaming adapter (httpx).

Talks to each provider's native streaming endpoint and feeds the raw response
bytes through a per-request StreamNormalizer. Each provider family has a
request-spec class that knows its URL, auth headers and body shape:

    OpenAIRequestSpec     POST {base}/chat/completions            Bearer auth
    GroqRequestSpec       same wire format, Groq base URL
    AnthropicRequestSpec  POST {base}/messages                    x-api-key + anthropic-version
    GeminiRequestSpec     POST {base}/models/{m}:streamGenerateContent?alt=sse
                                                                  x-goog-api-key

Only the connect phase has an httpx timeout; the execution engine bounds the
whole attempt and cancels the stream on expiry.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from llm_broker.config import Settings
from llm_broker.errors import ProviderError, ProviderTimeout
from llm_broker.providers.base import Message, ProviderAdapter, TokenChunk
from llm_broker.registry import ModelDescriptor, ProviderKind
from llm_broker.streaming import StreamNormalizer

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class HttpRequest:
    url: str
    headers: dict[str, str]
    body: dict[str, Any]


class ProviderRequestSpec(ABC):
    """Builds the streaming HTTP request for one provider family."""

    kind: ProviderKind

    def __init__(self, base_url: str, api_key: str) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key

    @abstractmethod
    def build(
        self,
        messages: list[Message],
        *,
        model: ModelDescriptor,
        max_tokens: int,
        temperature: float,
    ) -> HttpRequest: ...


class OpenAIRequestSpec(ProviderRequestSpec):
    kind = ProviderKind.OPENAI

    def build(
        self,
        messages: list[Message],
        *,
        model: ModelDescriptor,
        max_tokens: int,
        temperature: float,
    ) -> HttpRequest:
        return HttpRequest(
            url=f"{self.base_url}/chat/completions",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            body={
                "model": model.upstream_model,
                "messages": messages,
                "max_tokens": max_tokens,
                "temperature": temperature,
                "stream": True,
            },
        )


class GroqRequestSpec(OpenAIRequestSpec):
    kind = ProviderKind.GROQ


class AnthropicRequestSpec(ProviderRequestSpec):
    kind = ProviderKind.ANTHROPIC

    def __init__(self, base_url: str, api_key: str, version: str = "2023-06-01") -> None:
        super().__init__(base_url, api_key)
        self.version = version

    def build(
        self,
        messages: list[Message],
        *,
        model: ModelDescriptor,
        max_tokens: int,
        temperature: float,
    ) -> HttpRequest:
        # System prompts go in a top-level field, not the message list
        system = "\n\n".join(m["content"] for m in messages if m.get("role") == "system")
        body: dict[str, Any] = {
            "model": model.upstream_model,
            "messages": [
                {"role": m["role"], "content": m["content"]}
                for m in messages
                if m.get("role") != "system"
            ],
            "max_tokens": max_tokens,
            "temperature": temperature,
            "stream": True,
        }
        if system:
            body["system"] = system

        return HttpRequest(
            url=f"{self.base_url}/messages",
            headers={
                "x-api-key": self.api_key,
                "anthropic-version": self.version,
                "Content-Type": "application/json",
            },
            body=body,
        )


class GeminiRequestSpec(ProviderRequestSpec):
    kind = ProviderKind.GEMINI

    def build(
        self,
        messages: list[Message],
        *,
        model: ModelDescriptor,
        max_tokens: int,
        temperature: float,
    ) -> HttpRequest:
        system = "\n\n".join(m["content"] for m in messages if m.get("role") == "system")
        contents = [
            {
                "role": "model" if m.get("role") == "assistant" else "user",
                "parts": [{"text": m["content"]}],
            }
            for m in messages
            if m.get("role") != "system"
        ]
        body: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "maxOutputTokens": max_tokens,
                "temperature": temperature,
            },
        }
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}

        return HttpRequest(
            url=f"{self.base_url}/models/{model.upstream_model}:streamGenerateContent?alt=sse",
            headers={
                "x-goog-api-key": self.api_key,
                "Content-Type": "application/json",
            },
            body=body,
        )


class HttpStreamAdapter(ProviderAdapter):
    """Streams a provider's native SSE endpoint over a shared httpx client."""

    def __init__(
        self,
        spec: ProviderRequestSpec,
        *,
        client: httpx.AsyncClient | None = None,
        connect_timeout: float = 10.0,
        max_pending_lines: int = 64,
    ) -> None:
        self.kind = spec.kind
        self._spec = spec
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(None, connect=connect_timeout),
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
        )
        self._max_pending_lines = max_pending_lines
        self._connect_timeout = connect_timeout

    async def send(
        self,
        messages: list[Message],
        *,
        model: ModelDescriptor,
        max_tokens: int,
        temperature: float,
    ) -> AsyncIterator[TokenChunk]:
        request = self._spec.build(
            messages,
            model=model,
            max_tokens=min(max_tokens, model.max_output_tokens),
            temperature=temperature,
        )
        normalizer = StreamNormalizer(max_pending_lines=self._max_pending_lines)

        try:
            async with self._client.stream(
                "POST",
                request.url,
                headers=request.headers,
                json=request.body,
            ) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    raise ProviderError(
                        f"{self.kind.value} returned HTTP {response.status_code}: {detail[:300]}",
                        model_id=model.id,
                        status_code=response.status_code,
                    )

                async for raw in response.aiter_bytes():
                    for token in normalizer.normalize(self.kind, raw):
                        yield TokenChunk(token)
                    self._raise_stream_error(normalizer, model)
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(model.id, self._connect_timeout * 1000) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(
                f"{self.kind.value} transport error: {exc}",
                model_id=model.id,
            ) from exc

        for token in normalizer.flush():
            yield TokenChunk(token)
        self._raise_stream_error(normalizer, model)

        if normalizer.usage:
            yield TokenChunk(
                "",
                input_tokens=normalizer.usage.get("input_tokens"),
                output_tokens=normalizer.usage.get("output_tokens"),
            )

    def _raise_stream_error(self, normalizer: StreamNormalizer, model: ModelDescriptor) -> None:
        if normalizer.error is not None:
            raise ProviderError(
                f"{self.kind.value} stream error: {normalizer.error}",
                model_id=model.id,
            )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build_http_adapters(
    settings: Settings,
    *,
    client: httpx.AsyncClient | None = None,
) -> dict[ProviderKind, HttpStreamAdapter]:
    """One HttpStreamAdapter per provider family, configured from settings."""
    specs: list[ProviderRequestSpec] = [
        OpenAIRequestSpec(settings.openai_base_url, settings.openai_api_key.get_secret_value()),
        AnthropicRequestSpec(
            settings.anthropic_base_url,
            settings.anthropic_api_key.get_secret_value(),
            settings.anthropic_version,
        ),
        GeminiRequestSpec(settings.gemini_base_url, settings.gemini_api_key.get_secret_value()),
        GroqRequestSpec(settings.groq_base_url, settings.groq_api_key.get_secret_value()),
    ]
    return {
        spec.kind: HttpStreamAdapter(
            spec,
            client=client,
            connect_timeout=settings.provider_connect_timeout_seconds,
        )
        for spec in specs
    }
