"""Provider adapters: one streaming client per provider family."""

from __future__ import annotations

from llm_broker.config import ProviderBackend, Settings
from llm_broker.providers.base import Message, ProviderAdapter, TokenChunk
from llm_broker.providers.http import HttpStreamAdapter, build_http_adapters
from llm_broker.providers.litellm_adapter import LiteLLMAdapter
from llm_broker.providers.registry import AdapterRegistry
from llm_broker.registry import ProviderKind


def build_adapter_registry(settings: Settings) -> AdapterRegistry:
    """Create the adapter registry for the configured backend."""
    if settings.provider_backend == ProviderBackend.HTTP:
        return AdapterRegistry(build_http_adapters(settings))

    credentials = {
        ProviderKind.OPENAI: (settings.openai_api_key, settings.openai_base_url),
        ProviderKind.ANTHROPIC: (settings.anthropic_api_key, settings.anthropic_base_url),
        ProviderKind.GEMINI: (settings.gemini_api_key, None),
        ProviderKind.GROQ: (settings.groq_api_key, settings.groq_base_url),
    }
    return AdapterRegistry(
        {
            kind: LiteLLMAdapter(
                kind,
                api_key=key.get_secret_value(),
                api_base=base_url,
                timeout_seconds=settings.attempt_timeout_ms / 1000,
            )
            for kind, (key, base_url) in credentials.items()
        }
    )


__all__ = [
    "AdapterRegistry",
    "HttpStreamAdapter",
    "LiteLLMAdapter",
    "Message",
    "ProviderAdapter",
    "TokenChunk",
    "build_adapter_registry",
]
