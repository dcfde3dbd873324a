"""LiteLLM-backed adapter.

LiteLLM gives one call signature for every provider family. The model string
is ``"<provider>/<upstream model>"`` (e.g. ``"anthropic/claude-3-5-sonnet-20240620"``)
and streaming chunks come back in the OpenAI delta shape for all of them.

Retries are NOT done here; the execution engine owns attempts and backoff.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import litellm
import structlog

from llm_broker.errors import ProviderError, ProviderTimeout
from llm_broker.providers.base import Message, ProviderAdapter, TokenChunk
from llm_broker.registry import ModelDescriptor, ProviderKind

log = structlog.get_logger(__name__)


class LiteLLMAdapter(ProviderAdapter):
    """Streams completions for one provider family through litellm.acompletion."""

    def __init__(
        self,
        kind: ProviderKind,
        *,
        api_key: str | None = None,
        api_base: str | None = None,
        timeout_seconds: float | None = None,
        **extra: Any,
    ) -> None:
        self.kind = kind
        self._api_key = api_key
        self._api_base = api_base
        self._timeout_seconds = timeout_seconds
        self._extra = extra

    def litellm_model(self, model: ModelDescriptor) -> str:
        return f"{self.kind.value}/{model.upstream_model}"

    async def send(
        self,
        messages: list[Message],
        *,
        model: ModelDescriptor,
        max_tokens: int,
        temperature: float,
    ) -> AsyncIterator[TokenChunk]:
        effective_model = self.litellm_model(model)
        kwargs: dict[str, Any] = dict(self._extra)
        if self._api_key:
            kwargs["api_key"] = self._api_key
        if self._api_base:
            kwargs["api_base"] = self._api_base
        if self._timeout_seconds:
            kwargs["timeout"] = self._timeout_seconds
        # Ask for a trailing usage chunk so billing uses real token counts
        kwargs.setdefault("stream_options", {"include_usage": True})

        log.debug(
            "litellm_adapter.request",
            model=effective_model,
            message_count=len(messages),
            max_tokens=max_tokens,
        )

        try:
            response = await litellm.acompletion(
                model=effective_model,
                messages=messages,
                max_tokens=min(max_tokens, model.max_output_tokens),
                temperature=temperature,
                stream=True,
                **kwargs,
            )
            usage: tuple[int, int] | None = None
            async for chunk in response:
                text = self._extract_text(chunk)
                if text:
                    yield TokenChunk(text)
                usage = self._extract_usage(chunk) or usage
            if usage is not None:
                yield TokenChunk("", input_tokens=usage[0], output_tokens=usage[1])
        except litellm.exceptions.Timeout as exc:
            raise ProviderTimeout(model.id, (self._timeout_seconds or 0) * 1000) from exc
        except litellm.exceptions.APIError as exc:
            raise ProviderError(
                f"{self.kind.value} API error: {exc}",
                model_id=model.id,
                status_code=getattr(exc, "status_code", None),
            ) from exc
        except (litellm.exceptions.RateLimitError, litellm.exceptions.ServiceUnavailableError) as exc:
            raise ProviderError(
                f"{self.kind.value} unavailable: {exc}",
                model_id=model.id,
                status_code=getattr(exc, "status_code", None),
            ) from exc

    @staticmethod
    def _extract_text(chunk: Any) -> str:
        try:
            return chunk.choices[0].delta.content or ""
        except (AttributeError, IndexError, KeyError):
            return ""

    @staticmethod
    def _extract_usage(chunk: Any) -> tuple[int, int] | None:
        usage = getattr(chunk, "usage", None)
        if usage is None:
            return None
        prompt_tokens = getattr(usage, "prompt_tokens", None)
        completion_tokens = getattr(usage, "completion_tokens", None)
        if prompt_tokens is None or completion_tokens is None:
            return None
        return int(prompt_tokens), int(completion_tokens)
