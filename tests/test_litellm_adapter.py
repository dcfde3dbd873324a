"""Tests for LiteLLMAdapter with litellm.acompletion mocked out."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from llm_broker.providers.litellm_adapter import LiteLLMAdapter
from llm_broker.registry import ProviderKind


def _chunk(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


async def _stream(*chunks):
    for chunk in chunks:
        yield chunk


class TestLiteLLMAdapter:
    @pytest.mark.asyncio
    async def test_streams_delta_content(self, registry):
        adapter = LiteLLMAdapter(
            ProviderKind.ANTHROPIC,
            api_key="ak",
            api_base="https://a.test/v1",
            timeout_seconds=30.0,
        )
        mock_completion = AsyncMock(
            return_value=_stream(_chunk("Hel"), _chunk(None), _chunk("lo"), SimpleNamespace(choices=[]))
        )

        with patch("llm_broker.providers.litellm_adapter.litellm.acompletion", mock_completion):
            chunks = [
                c
                async for c in adapter.send(
                    [{"role": "user", "content": "hi"}],
                    model=registry.get("claude-3-5-sonnet"),
                    max_tokens=500,
                    temperature=0.2,
                )
            ]

        assert [c.text for c in chunks] == ["Hel", "lo"]
        kwargs = mock_completion.call_args.kwargs
        assert kwargs["model"] == "anthropic/claude-3-5-sonnet-20240620"
        assert kwargs["stream"] is True
        assert kwargs["api_key"] == "ak"
        assert kwargs["api_base"] == "https://a.test/v1"
        assert kwargs["timeout"] == 30.0
        assert kwargs["max_tokens"] == 500
        assert kwargs["temperature"] == 0.2

    @pytest.mark.asyncio
    async def test_max_tokens_clamped_to_model_limit(self, registry):
        adapter = LiteLLMAdapter(ProviderKind.GEMINI, api_key="gk")
        mock_completion = AsyncMock(return_value=_stream(_chunk("ok")))

        with patch("llm_broker.providers.litellm_adapter.litellm.acompletion", mock_completion):
            async for _ in adapter.send(
                [{"role": "user", "content": "hi"}],
                model=registry.get("gemini-pro"),
                max_tokens=10_000,
                temperature=0.7,
            ):
                pass

        kwargs = mock_completion.call_args.kwargs
        assert kwargs["max_tokens"] == 2048
        assert kwargs["model"] == "gemini/gemini-1.5-pro"
        assert "api_base" not in kwargs

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate(self, registry):
        adapter = LiteLLMAdapter(ProviderKind.OPENAI)
        mock_completion = AsyncMock(side_effect=RuntimeError("boom"))

        with patch("llm_broker.providers.litellm_adapter.litellm.acompletion", mock_completion):
            with pytest.raises(RuntimeError, match="boom"):
                async for _ in adapter.send(
                    [{"role": "user", "content": "hi"}],
                    model=registry.get("gpt-4o"),
                    max_tokens=10,
                    temperature=0.0,
                ):
                    pass

    @pytest.mark.asyncio
    async def test_reports_provider_usage(self, registry):
        adapter = LiteLLMAdapter(ProviderKind.OPENAI, api_key="sk")
        usage_chunk = SimpleNamespace(
            choices=[], usage=SimpleNamespace(prompt_tokens=12, completion_tokens=3)
        )
        mock_completion = AsyncMock(return_value=_stream(_chunk("Hi"), _chunk("!"), usage_chunk))

        with patch("llm_broker.providers.litellm_adapter.litellm.acompletion", mock_completion):
            chunks = [
                c
                async for c in adapter.send(
                    [{"role": "user", "content": "hi"}],
                    model=registry.get("gpt-4o"),
                    max_tokens=10,
                    temperature=0.0,
                )
            ]

        assert mock_completion.call_args.kwargs["stream_options"] == {"include_usage": True}
        assert "".join(c.text for c in chunks) == "Hi!"
        assert chunks[-1].input_tokens == 12
        assert chunks[-1].output_tokens == 3

    @pytest.mark.asyncio
    async def test_no_usage_chunk_without_usage(self, registry):
        adapter = LiteLLMAdapter(ProviderKind.OPENAI)
        empty_usage = SimpleNamespace(choices=[], usage=None)
        mock_completion = AsyncMock(return_value=_stream(_chunk("ok"), empty_usage))

        with patch("llm_broker.providers.litellm_adapter.litellm.acompletion", mock_completion):
            chunks = [
                c
                async for c in adapter.send(
                    [{"role": "user", "content": "hi"}],
                    model=registry.get("gpt-4o"),
                    max_tokens=10,
                    temperature=0.0,
                )
            ]

        assert all(c.input_tokens is None and c.output_tokens is None for c in chunks)
