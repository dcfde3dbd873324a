"""Adapter lookup keyed by provider family."""

from __future__ import annotations

from collections.abc import Mapping

import structlog

from llm_broker.errors import ProviderError
from llm_broker.providers.base import ProviderAdapter
from llm_broker.registry import ModelDescriptor, ProviderKind

log = structlog.get_logger(__name__)


class AdapterRegistry:
    """Maps each ProviderKind to the adapter that serves it."""

    def __init__(self, adapters: Mapping[ProviderKind, ProviderAdapter] | None = None) -> None:
        self._adapters: dict[ProviderKind, ProviderAdapter] = dict(adapters or {})

    def register(self, kind: ProviderKind, adapter: ProviderAdapter) -> None:
        if kind in self._adapters:
            log.warning("adapter_registry.replaced", provider=kind.value)
        self._adapters[kind] = adapter

    def for_model(self, model: ModelDescriptor) -> ProviderAdapter:
        """Return the adapter for ``model``'s provider.

        Raises:
            ProviderError: No adapter is registered for the provider
        """
        try:
            return self._adapters[model.provider]
        except KeyError:
            raise ProviderError(
                f"No adapter registered for provider {model.provider.value}",
                model_id=model.id,
            ) from None

    def kinds(self) -> list[ProviderKind]:
        return list(self._adapters)

    async def aclose(self) -> None:
        """Close every distinct adapter once."""
        seen: set[int] = set()
        for adapter in self._adapters.values():
            if id(adapter) in seen:
                continue
            seen.add(id(adapter))
            await adapter.aclose()
