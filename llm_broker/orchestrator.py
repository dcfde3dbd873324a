"""Orchestrator facade: the single entry point for brokering a request.

Request flow:
1. Validate the request and build the chat messages
2. Margin gate: reject with MarginExceeded before any provider call
3. Pick models (ComplexityAnalyzer when none were named)
4. Execute (sequential failover or parallel fan-out)
5. Reduce parallel results for consensus / compare
6. Record cost once per billed model

Modes:
- failover:  first successful model in a health-filtered chain
- parallel:  every requested model, successes and failures listed separately
- consensus: parallel, then the median-length response
- compare:   parallel, plus diversity score, consensus and a recommendation
"""

from __future__ import annotations

import math
import time
from collections.abc import Awaitable, Callable, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from llm_broker.complexity import ComplexityAnalyzer, ComplexityScore
from llm_broker.config import Settings
from llm_broker.errors import AllProvidersFailed, EmptyResponse, ValidationError
from llm_broker.execution import (
    AttemptOutcome,
    CompletionRequest,
    ExecutionAttempt,
    ExecutionEngine,
    ExecutionOptions,
    ExecutionResult,
    ModelFailure,
    ModelResponse,
)
from llm_broker.fallback import FallbackChainBuilder
from llm_broker.health import HealthMonitor, HealthRecord
from llm_broker.margin import CostMarginGuard, InMemoryMarginStore, MarginStore, Subscription
from llm_broker.providers import build_adapter_registry
from llm_broker.providers.base import Message
from llm_broker.providers.registry import AdapterRegistry
from llm_broker.registry import ModelRegistry, build_default_registry
from llm_broker.telemetry import bind_request_context, new_request_id

log = structlog.get_logger(__name__)

_VALID_ROLES = frozenset({"system", "user", "assistant"})


class Mode(StrEnum):
    FAILOVER = "failover"
    PARALLEL = "parallel"
    CONSENSUS = "consensus"
    COMPARE = "compare"


@dataclass
class OrchestrationRequest:
    """Inbound request.

    Attributes:
        prompt: Latest user turn; appended after ``messages`` when both are given
        messages: Prior conversation in OpenAI chat format
        context: Extra reference text, sent as a system message and scored
        models: Explicit model ids; required for the parallel modes
        mode: Execution mode
        max_tokens: Completion limit (settings default when None)
        temperature: Sampling temperature (settings default when None)
    """

    prompt: str | None = None
    messages: list[Message] = field(default_factory=list)
    context: list[str] = field(default_factory=list)
    models: list[str] = field(default_factory=list)
    mode: Mode = Mode.FAILOVER
    max_tokens: int | None = None
    temperature: float | None = None


@dataclass
class OrchestrationResult:
    request_id: str
    mode: Mode
    content: Any
    providers_used: list[str]
    cost: float
    latency_ms: float
    tokens: int
    failures: list[ModelFailure] = field(default_factory=list)
    attempts: list[ExecutionAttempt] = field(default_factory=list)
    complexity: ComplexityScore | None = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": True,
            "request_id": self.request_id,
            "mode": self.mode.value,
            "content": self.content,
            "providers_used": self.providers_used,
            "cost": round(self.cost, 6),
            "latency_ms": round(self.latency_ms, 1),
            "tokens": self.tokens,
            "failures": [f.to_dict() for f in self.failures],
            "attempts": len(self.attempts),
        }
        if self.complexity is not None:
            body["complexity"] = self.complexity.to_dict()
        return body


# ---------------------------------------------------------------------- #
# Response reducers
# ---------------------------------------------------------------------- #


def find_consensus(responses: Sequence[ModelResponse]) -> ModelResponse:
    """Median-length response; equal lengths keep their original order."""
    ordered = sorted(responses, key=lambda r: len(r.content))
    return ordered[len(ordered) // 2]


def diversity_score(responses: Sequence[ModelResponse]) -> float:
    """Coefficient of variation of response lengths (population std / mean)."""
    lengths = [len(r.content) for r in responses]
    if not lengths:
        return 0.0
    mean = sum(lengths) / len(lengths)
    if mean == 0:
        return 0.0
    variance = sum((n - mean) ** 2 for n in lengths) / len(lengths)
    return math.sqrt(variance) / mean


def recommend(responses: Sequence[ModelResponse]) -> ModelResponse:
    """Highest length-per-second response; the earliest wins ties."""
    best = responses[0]
    best_score = -1.0
    for response in responses:
        latency_s = max(response.latency_ms, 1.0) / 1000
        score = len(response.content) / latency_s
        if score > best_score:
            best, best_score = response, score
    return best


class Orchestrator:
    """Brokers requests across providers with margin gating and failover."""

    def __init__(
        self,
        registry: ModelRegistry,
        health: HealthMonitor,
        engine: ExecutionEngine,
        margin: CostMarginGuard,
        *,
        analyzer: ComplexityAnalyzer | None = None,
        chains: FallbackChainBuilder | None = None,
        adapters: AdapterRegistry | None = None,
        options: ExecutionOptions | None = None,
        max_parallel_models: int = 8,
        default_max_tokens: int = 1000,
        default_temperature: float = 0.7,
    ) -> None:
        self._registry = registry
        self._health = health
        self._engine = engine
        self._margin = margin
        self._chains = chains or FallbackChainBuilder(registry, health)
        self._analyzer = analyzer or ComplexityAnalyzer(registry, health, self._chains)
        self._options = options or ExecutionOptions()
        self._adapters = adapters
        self._max_parallel_models = max_parallel_models
        self._default_max_tokens = default_max_tokens
        self._default_temperature = default_temperature

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        await self._health.start()

    async def stop(self) -> None:
        await self._health.stop()
        if self._adapters is not None:
            await self._adapters.aclose()

    def health_snapshot(self) -> list[HealthRecord]:
        return self._health.snapshot()

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #

    async def execute(
        self,
        request: OrchestrationRequest,
        subscription: Subscription | None = None,
        *,
        request_id: str | None = None,
    ) -> OrchestrationResult:
        """Broker ``request`` and return the aggregated result.

        Without a subscription the margin gate and cost recording are skipped.
        The gate measures spend so far against ``subscription.value``.

        Raises:
            ValidationError: Malformed request or non-positive subscription value
            MarginExceeded: Account is below the margin floor
            NoHealthyModels: No routable model for a failover request
            AllProvidersFailed: No model produced content
            DeadlineExceeded: The request deadline passed first
        """
        request_id = request_id or new_request_id()
        bind_request_context(request_id)
        started = time.perf_counter()

        mode = self._coerce_mode(request.mode)
        completion = self._build_completion(request)
        models = self._validate_models(request.models, mode)

        if subscription is not None:
            if subscription.value <= 0:
                raise ValidationError(
                    "Subscription value must be positive",
                    details={"uid": subscription.uid, "subscription_value": subscription.value},
                )
            await self._margin.ensure_margin(
                subscription.uid, subscription_value=subscription.value
            )

        log.info(
            "orchestrator.request_started",
            mode=mode.value,
            models=models,
            message_count=len(completion.messages),
            uid=subscription.uid if subscription else None,
        )

        complexity: ComplexityScore | None = None
        if mode == Mode.FAILOVER:
            complexity, result = await self._run_failover(request, completion, models)
            content: Any = result.content
        else:
            result = await self._run_parallel(completion, models)
            content = self._reduce(mode, result)

        if subscription is not None:
            for response in result.responses:
                await self._margin.record_cost(subscription.uid, response.cost, subscription.value)

        latency_ms = (time.perf_counter() - started) * 1000
        log.info(
            "orchestrator.request_completed",
            mode=mode.value,
            providers_used=result.models_used,
            failed=[f.model_id for f in result.failures],
            cost=round(result.total_cost, 6),
            latency_ms=round(latency_ms, 1),
        )
        return OrchestrationResult(
            request_id=request_id,
            mode=mode,
            content=content,
            providers_used=result.models_used,
            cost=result.total_cost,
            latency_ms=latency_ms,
            tokens=result.total_tokens,
            failures=result.failures,
            attempts=result.attempts,
            complexity=complexity,
        )

    async def _run_failover(
        self,
        request: OrchestrationRequest,
        completion: CompletionRequest,
        models: list[str],
    ) -> tuple[ComplexityScore | None, ExecutionResult]:
        complexity: ComplexityScore | None = None
        if len(models) == 1:
            chain = self._chains.build(preferred=models[0])
        elif models:
            chain = self._chains.build(preferred=models[0], candidates=models)
        else:
            complexity = self._analyzer.analyze(self._scoring_text(request), request.context)
            chain = complexity.fallback_chain

        result = await self._engine.execute_with_fallback(completion, chain, self._options)
        return complexity, result

    async def _run_parallel(self, completion: CompletionRequest, models: list[str]) -> ExecutionResult:
        offline = [m for m in models if not self._health.is_healthy(m)]
        runnable = [m for m in models if m not in offline]
        skipped = [
            ModelFailure(
                model_id=m,
                outcome=AttemptOutcome.PROVIDER_ERROR,
                error="Model is offline",
                attempts=0,
            )
            for m in offline
        ]
        if offline:
            log.warning("orchestrator.offline_models_skipped", models=offline)

        if not runnable:
            raise AllProvidersFailed(skipped)

        order = {m: idx for idx, m in enumerate(models)}
        try:
            result = await self._engine.execute_parallel(completion, runnable, self._options)
        except AllProvidersFailed as exc:
            if not skipped:
                raise
            failures = sorted(skipped + exc.failures, key=lambda f: order[f.model_id])
            raise AllProvidersFailed(failures) from exc

        result.failures = sorted(skipped + result.failures, key=lambda f: order[f.model_id])
        return result

    def _reduce(self, mode: Mode, result: ExecutionResult) -> Any:
        responses = [r.to_dict() for r in result.responses]
        if mode == Mode.PARALLEL:
            return responses

        consensus = find_consensus(result.responses)
        if mode == Mode.CONSENSUS:
            return consensus.content

        recommended = recommend(result.responses)
        return {
            "responses": responses,
            "consensus": consensus.content,
            "diversity_score": round(diversity_score(result.responses), 4),
            "recommended": recommended.content,
            "recommended_model": recommended.model_id,
        }

    # ------------------------------------------------------------------ #
    # Validation
    # ------------------------------------------------------------------ #

    @staticmethod
    def _coerce_mode(mode: Mode | str) -> Mode:
        try:
            return Mode(mode)
        except ValueError:
            raise ValidationError(
                f"Unknown mode: {mode}",
                details={"allowed": [m.value for m in Mode]},
            ) from None

    def _build_completion(self, request: OrchestrationRequest) -> CompletionRequest:
        prompt = (request.prompt or "").strip()
        if not prompt and not request.messages:
            raise ValidationError("Invalid request: prompt or messages required")

        messages: list[Message] = []
        for idx, message in enumerate(request.messages):
            role = message.get("role")
            content = message.get("content")
            if role not in _VALID_ROLES or not isinstance(content, str):
                raise ValidationError(
                    f"Invalid message at index {idx}",
                    details={"index": idx, "allowed_roles": sorted(_VALID_ROLES)},
                )
            messages.append({"role": role, "content": content})

        if request.context:
            context = "\n\n".join(c for c in request.context if c)
            if context:
                messages.insert(0, {"role": "system", "content": f"Context:\n{context}"})
        if prompt:
            messages.append({"role": "user", "content": prompt})

        max_tokens = request.max_tokens if request.max_tokens is not None else self._default_max_tokens
        temperature = (
            request.temperature if request.temperature is not None else self._default_temperature
        )
        if max_tokens < 1:
            raise ValidationError("max_tokens must be positive")
        if not 0.0 <= temperature <= 2.0:
            raise ValidationError("temperature must be between 0 and 2")

        return CompletionRequest(messages=messages, max_tokens=max_tokens, temperature=temperature)

    def _validate_models(self, models: Sequence[str], mode: Mode) -> list[str]:
        models = list(dict.fromkeys(models))
        unknown = [m for m in models if m not in self._registry]
        if unknown:
            raise ValidationError(
                f"Unknown models: {', '.join(unknown)}",
                details={"unknown_models": unknown, "available": self._registry.ids()},
            )
        if mode != Mode.FAILOVER:
            if not models:
                raise ValidationError(f"Mode {mode.value} requires at least one model")
            if len(models) > self._max_parallel_models:
                raise ValidationError(
                    f"Mode {mode.value} accepts at most {self._max_parallel_models} models",
                    details={"requested": len(models), "max": self._max_parallel_models},
                )
        return models

    @staticmethod
    def _scoring_text(request: OrchestrationRequest) -> str:
        if request.prompt:
            return request.prompt
        for message in reversed(request.messages):
            if message.get("role") == "user":
                return message.get("content", "")
        return ""

    # ------------------------------------------------------------------ #
    # Construction
    # ------------------------------------------------------------------ #

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        registry: ModelRegistry | None = None,
        adapters: AdapterRegistry | None = None,
        store: MarginStore | None = None,
    ) -> Orchestrator:
        """Wire every component from settings.

        Args:
            settings: Application settings
            registry: Model catalog (built-in catalog when None)
            adapters: Provider adapters (built for the configured backend when None)
            store: Margin store (in-memory when None)
        """
        registry = registry or build_default_registry()
        adapters = adapters or build_adapter_registry(settings)
        prober = make_prober(registry, adapters, settings.health_probe_prompt)

        health = HealthMonitor(
            registry,
            prober=prober if settings.health_probe_enabled else None,
            interval=settings.health_probe_interval_seconds,
            probe_timeout=settings.health_probe_timeout_seconds,
        )
        engine = ExecutionEngine(
            registry,
            adapters,
            health,
            concurrency=settings.parallel_concurrency,
        )
        margin = CostMarginGuard(
            registry,
            store or InMemoryMarginStore(),
            min_margin_pct=settings.min_margin_pct,
            retry_after_seconds=settings.margin_retry_after_seconds,
        )
        options = ExecutionOptions(
            max_retries=settings.max_retries,
            retry_delay_ms=settings.retry_delay_ms,
            timeout_ms=settings.attempt_timeout_ms,
            deadline_ms=settings.request_deadline_ms,
        )
        return cls(
            registry,
            health,
            engine,
            margin,
            options=options,
            adapters=adapters,
            max_parallel_models=settings.max_parallel_models,
            default_max_tokens=settings.default_max_tokens,
            default_temperature=settings.default_temperature,
        )


def make_prober(
    registry: ModelRegistry,
    adapters: AdapterRegistry,
    prompt: str = "Hello",
) -> Callable[[str], Awaitable[None]]:
    """Build the health probe: one tiny completion per model.

    The returned coroutine raises when the model fails or answers with
    nothing, which the HealthMonitor records as a failure.
    """
    messages: list[Message] = [{"role": "user", "content": prompt}]

    async def _probe(model_id: str) -> None:
        model = registry.get(model_id)
        adapter = adapters.for_model(model)
        received = False
        async with aclosing(
            adapter.send(messages, model=model, max_tokens=5, temperature=0.0)
        ) as stream:
            async for chunk in stream:
                received = received or bool(chunk.text.strip())
        if not received:
            raise EmptyResponse(model_id)

    return _probe
