"""
Shared test fixtures for pytest.

Provides the broker components wired against a scripted fake adapter:
- registry: Built-in model catalog
- health: HealthMonitor without a prober
- fake_adapter: Scripted ProviderAdapter registered for every provider kind
- sleeps: Records backoff sleeps instead of waiting
- engine, margin_store, guard, orchestrator: Components under test
- mark_offline: Helper that drives a model's error rate past the offline threshold
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

from llm_broker.config import get_settings
from llm_broker.execution import ExecutionEngine, ExecutionOptions
from llm_broker.health import HealthMonitor
from llm_broker.margin import CostMarginGuard, InMemoryMarginStore
from llm_broker.orchestrator import Orchestrator
from llm_broker.providers.base import Message, ProviderAdapter, TokenChunk
from llm_broker.providers.registry import AdapterRegistry
from llm_broker.registry import ModelDescriptor, ModelRegistry, ProviderKind, build_default_registry
from llm_broker.telemetry import clear_context


@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _clear_log_context():
    yield
    clear_context()


# ------------------------------------------------------------------ #
# Fake provider adapter
# ------------------------------------------------------------------ #


class FakeAdapter(ProviderAdapter):
    """Scripted adapter.

    Behaviours per model are consumed in order; the last one repeats. A
    behaviour is a response string, an exception instance, or a number of
    seconds to stall before answering ``"late answer"``.
    Models without a script answer ``"response from <model_id>"``.
    """

    def __init__(self) -> None:
        self.kind = ProviderKind.OPENAI
        self.calls: list[str] = []
        self.messages: list[list[Message]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._scripts: dict[str, list[Any]] = {}

    def script(self, model_id: str, *behaviours: Any) -> None:
        self._scripts[model_id] = list(behaviours)

    def _next(self, model_id: str) -> Any:
        queue = self._scripts.get(model_id)
        if not queue:
            return f"response from {model_id}"
        if len(queue) > 1:
            return queue.pop(0)
        return queue[0]

    async def send(
        self,
        messages: list[Message],
        *,
        model: ModelDescriptor,
        max_tokens: int,
        temperature: float,
    ) -> AsyncIterator[TokenChunk]:
        self.calls.append(model.id)
        self.messages.append(list(messages))
        behaviour = self._next(model.id)

        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            # Yield control so concurrent sends overlap
            await asyncio.sleep(0)
            if isinstance(behaviour, BaseException):
                raise behaviour
            if isinstance(behaviour, (int, float)):
                await asyncio.sleep(behaviour)
                behaviour = "late answer"
            for idx, word in enumerate(behaviour.split(" ")):
                yield TokenChunk(word if idx == 0 else f" {word}")
        finally:
            self.in_flight -= 1


@pytest.fixture
def registry() -> ModelRegistry:
    return build_default_registry()


@pytest.fixture
def health(registry: ModelRegistry) -> HealthMonitor:
    return HealthMonitor(registry)


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def adapters(fake_adapter: FakeAdapter) -> AdapterRegistry:
    return AdapterRegistry({kind: fake_adapter for kind in ProviderKind})


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def engine(
    registry: ModelRegistry,
    adapters: AdapterRegistry,
    health: HealthMonitor,
    sleeps: list[float],
) -> ExecutionEngine:
    async def _record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return ExecutionEngine(registry, adapters, health, concurrency=6, sleep=_record_sleep)


@pytest.fixture
def options() -> ExecutionOptions:
    return ExecutionOptions(max_retries=3, retry_delay_ms=1000, timeout_ms=1000)


@pytest.fixture
def margin_store() -> InMemoryMarginStore:
    return InMemoryMarginStore()


@pytest.fixture
def guard(registry: ModelRegistry, margin_store: InMemoryMarginStore) -> CostMarginGuard:
    return CostMarginGuard(registry, margin_store, min_margin_pct=50.0)


@pytest.fixture
def orchestrator(
    registry: ModelRegistry,
    health: HealthMonitor,
    engine: ExecutionEngine,
    guard: CostMarginGuard,
    adapters: AdapterRegistry,
    options: ExecutionOptions,
) -> Orchestrator:
    return Orchestrator(
        registry,
        health,
        engine,
        guard,
        options=options,
        adapters=adapters,
        max_parallel_models=8,
    )


@pytest.fixture
def mark_offline(health: HealthMonitor):
    """Three failures take a model from 0.0 to 0.6 error rate (offline)."""

    def _mark(*model_ids: str) -> None:
        for model_id in model_ids:
            for _ in range(3):
                health.record_failure(model_id, "down")

    return _mark
