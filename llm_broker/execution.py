"""Execution engine: attempts, retries, failover and parallel fan-out.

Each model gets up to ``max_retries`` attempts. Attempt n that fails is
followed by a backoff of ``retry_delay_ms * 2**(n-1)`` before attempt n+1
(tenacity ``wait_exponential``). Every attempt runs under its own timeout;
expiry cancels the adapter stream.

Failover (``execute_with_fallback``):
1. Walk the chain in order
2. First non-blank response wins and short-circuits the chain
3. A model that exhausts its retries is recorded once as a health failure
4. All models exhausted -> AllProvidersFailed

Parallel (``execute_parallel``):
- All models run concurrently, bounded by a semaphore
- No cross-model fallback; each model only retries itself
- The result lists successes and failures separately

Caller deadline: checked before every attempt; attempt timeouts and backoff
sleeps never run past it. Work cut short by the deadline does not update
health state.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Awaitable, Callable, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from llm_broker.errors import (
    AllProvidersFailed,
    BrokerError,
    DeadlineExceeded,
    EmptyResponse,
    NoHealthyModels,
    ProviderError,
    ProviderTimeout,
    ValidationError,
)
from llm_broker.health import HealthMonitor
from llm_broker.providers.base import Message
from llm_broker.providers.registry import AdapterRegistry
from llm_broker.registry import ModelDescriptor, ModelRegistry

log = structlog.get_logger(__name__)

TOKENS_PER_WORD = 1.3

# Per-attempt failures that are worth another attempt on the same model
_RETRYABLE = (ProviderTimeout, ProviderError, EmptyResponse)


def estimate_tokens(text: str) -> int:
    """Rough token count: ceil(words * 1.3)."""
    words = len(text.split())
    return math.ceil(words * TOKENS_PER_WORD) if words else 0


class AttemptOutcome(StrEnum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    PROVIDER_ERROR = "provider_error"
    EMPTY_RESPONSE = "empty_response"

    @classmethod
    def from_error(cls, error: BaseException) -> AttemptOutcome:
        if isinstance(error, ProviderTimeout):
            return cls.TIMEOUT
        if isinstance(error, EmptyResponse):
            return cls.EMPTY_RESPONSE
        return cls.PROVIDER_ERROR


@dataclass
class CompletionRequest:
    """The provider-agnostic payload sent to every model."""

    messages: list[Message]
    max_tokens: int = 1000
    temperature: float = 0.7

    def input_text(self) -> str:
        return " ".join(m.get("content", "") for m in self.messages)


@dataclass(frozen=True)
class ExecutionOptions:
    """Retry and timing knobs for one execution.

    Attributes:
        max_retries: Attempts per model (1 = no retry)
        retry_delay_ms: Base backoff between attempts
        timeout_ms: Upper bound for a single attempt
        deadline_ms: Budget for the whole execution, measured from its start
    """

    max_retries: int = 3
    retry_delay_ms: float = 1000
    timeout_ms: float = 30_000
    deadline_ms: float | None = None

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.retry_delay_ms < 0 or self.timeout_ms <= 0:
            raise ValueError("retry_delay_ms must be >= 0 and timeout_ms > 0")


@dataclass
class ExecutionAttempt:
    model_id: str
    attempt_number: int
    started_at: datetime
    outcome: AttemptOutcome
    latency_ms: float
    tokens: int = 0
    cost: float = 0.0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_id": self.model_id,
            "attempt_number": self.attempt_number,
            "started_at": self.started_at.isoformat(),
            "outcome": self.outcome.value,
            "latency_ms": round(self.latency_ms, 1),
            "tokens": self.tokens,
            "cost": self.cost,
            "error": self.error,
        }


@dataclass
class ModelResponse:
    """Successful output of one model."""

    model_id: str
    content: str
    latency_ms: float
    input_tokens: int
    output_tokens: int
    cost: float

    @property
    def tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_id": self.model_id,
            "content": self.content,
            "latency_ms": round(self.latency_ms, 1),
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cost": self.cost,
        }


@dataclass
class ModelFailure:
    """Terminal failure of one model after all of its attempts."""

    model_id: str
    outcome: AttemptOutcome
    error: str
    attempts: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_id": self.model_id,
            "outcome": self.outcome.value,
            "error": self.error,
            "attempts": self.attempts,
        }


@dataclass
class ExecutionResult:
    """Aggregated outcome of a failover or parallel execution."""

    content: str | None = None
    responses: list[ModelResponse] = field(default_factory=list)
    failures: list[ModelFailure] = field(default_factory=list)
    attempts: list[ExecutionAttempt] = field(default_factory=list)
    total_latency_ms: float = 0.0

    @property
    def total_cost(self) -> float:
        return sum(r.cost for r in self.responses)

    @property
    def total_tokens(self) -> int:
        return sum(r.tokens for r in self.responses)

    @property
    def models_used(self) -> list[str]:
        return [r.model_id for r in self.responses]


class _DeadlineReached(Exception):
    """Internal: the caller deadline passed before or during an attempt."""


class _ModelExhausted(Exception):
    """Internal: a model used up its retries."""

    def __init__(self, failure: ModelFailure) -> None:
        super().__init__(failure.error)
        self.failure = failure


class ExecutionEngine:
    """Runs requests against models through their provider adapters."""

    def __init__(
        self,
        registry: ModelRegistry,
        adapters: AdapterRegistry,
        health: HealthMonitor,
        *,
        concurrency: int = 6,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the engine.

        Args:
            registry: Model catalog
            adapters: Adapter per provider family
            health: Monitor updated after every model outcome
            concurrency: Max models in flight during parallel fan-out
            sleep: Backoff sleep (injectable for tests)
            clock: Monotonic clock in seconds used for deadlines
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._registry = registry
        self._adapters = adapters
        self._health = health
        self._concurrency = concurrency
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------ #
    # Failover
    # ------------------------------------------------------------------ #

    async def execute_with_fallback(
        self,
        request: CompletionRequest,
        chain: Sequence[str],
        options: ExecutionOptions | None = None,
    ) -> ExecutionResult:
        """Try each model in ``chain`` until one returns content.

        Raises:
            NoHealthyModels: ``chain`` is empty
            AllProvidersFailed: Every model exhausted its retries
            DeadlineExceeded: The caller deadline passed first
        """
        options = options or ExecutionOptions()
        if not chain:
            raise NoHealthyModels()
        self._validate_models(chain)

        started = time.perf_counter()
        deadline_at = self._deadline_at(options)
        attempts: list[ExecutionAttempt] = []
        failures: list[ModelFailure] = []

        for model_id in chain:
            if not self._health.is_healthy(model_id):
                log.warning("execution.model_skipped_unhealthy", model_id=model_id)
                continue

            try:
                response = await self._run_model(request, model_id, options, deadline_at, attempts)
            except _ModelExhausted as exc:
                failures.append(exc.failure)
                log.warning(
                    "execution.model_exhausted",
                    model_id=model_id,
                    outcome=exc.failure.outcome.value,
                    error=exc.failure.error,
                    attempts=exc.failure.attempts,
                )
                continue
            except _DeadlineReached:
                log.warning(
                    "execution.deadline_exceeded",
                    deadline_ms=options.deadline_ms,
                    failed_models=[f.model_id for f in failures],
                )
                raise DeadlineExceeded(options.deadline_ms or 0, failures) from None

            log.info(
                "execution.failover_succeeded",
                model_id=model_id,
                fallback_occurred=model_id != chain[0],
                attempts=len(attempts),
            )
            return ExecutionResult(
                content=response.content,
                responses=[response],
                failures=failures,
                attempts=attempts,
                total_latency_ms=(time.perf_counter() - started) * 1000,
            )

        log.error(
            "execution.all_providers_failed",
            chain=list(chain),
            attempts=len(attempts),
        )
        raise AllProvidersFailed(failures)

    # ------------------------------------------------------------------ #
    # Parallel fan-out
    # ------------------------------------------------------------------ #

    async def execute_parallel(
        self,
        request: CompletionRequest,
        models: Sequence[str],
        options: ExecutionOptions | None = None,
    ) -> ExecutionResult:
        """Send ``request`` to every model concurrently.

        Waits for every model to settle. Models still running when the
        deadline fires are cancelled and reported as timeouts.

        Raises:
            ValidationError: ``models`` is empty or names an unknown model
            AllProvidersFailed: No model succeeded
        """
        options = options or ExecutionOptions()
        models = list(dict.fromkeys(models))
        if not models:
            raise ValidationError("At least one model is required for parallel execution")
        self._validate_models(models)

        started = time.perf_counter()
        deadline_at = self._deadline_at(options)
        attempts: list[ExecutionAttempt] = []
        semaphore = asyncio.Semaphore(self._concurrency)

        async def _bounded(model_id: str) -> ModelResponse:
            async with semaphore:
                return await self._run_model(request, model_id, options, deadline_at, attempts)

        tasks = {m: asyncio.create_task(_bounded(m), name=f"parallel-{m}") for m in models}
        timeout = self._remaining(deadline_at)
        _, pending = await asyncio.wait(tasks.values(), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        responses: list[ModelResponse] = []
        failures: list[ModelFailure] = []
        for model_id, task in tasks.items():
            if task.cancelled():
                failures.append(
                    ModelFailure(
                        model_id=model_id,
                        outcome=AttemptOutcome.TIMEOUT,
                        error=f"Request deadline of {options.deadline_ms:.0f}ms exceeded",
                        attempts=sum(1 for a in attempts if a.model_id == model_id),
                    )
                )
                continue

            exc = task.exception()
            if exc is None:
                responses.append(task.result())
            elif isinstance(exc, _ModelExhausted):
                failures.append(exc.failure)
            elif isinstance(exc, _DeadlineReached):
                failures.append(
                    ModelFailure(
                        model_id=model_id,
                        outcome=AttemptOutcome.TIMEOUT,
                        error=f"Request deadline of {options.deadline_ms:.0f}ms exceeded",
                        attempts=sum(1 for a in attempts if a.model_id == model_id),
                    )
                )
            else:
                raise exc

        log.info(
            "execution.parallel_completed",
            succeeded=[r.model_id for r in responses],
            failed=[f.model_id for f in failures],
            cancelled=len(pending),
        )
        if not responses:
            raise AllProvidersFailed(failures)

        return ExecutionResult(
            content=None,
            responses=responses,
            failures=failures,
            attempts=attempts,
            total_latency_ms=(time.perf_counter() - started) * 1000,
        )

    # ------------------------------------------------------------------ #
    # Per-model retry loop
    # ------------------------------------------------------------------ #

    async def _run_model(
        self,
        request: CompletionRequest,
        model_id: str,
        options: ExecutionOptions,
        deadline_at: float | None,
        attempts: list[ExecutionAttempt],
    ) -> ModelResponse:
        descriptor = self._registry.get(model_id)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(options.max_retries),
            wait=wait_exponential(multiplier=options.retry_delay_ms / 1000, exp_base=2),
            retry=retry_if_exception_type(_RETRYABLE),
            sleep=self._capped_sleep(deadline_at),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._attempt(
                        request,
                        descriptor,
                        attempt.retry_state.attempt_number,
                        options,
                        deadline_at,
                        attempts,
                    )
        except _RETRYABLE as exc:
            failure = ModelFailure(
                model_id=model_id,
                outcome=AttemptOutcome.from_error(exc),
                error=exc.message,
                attempts=sum(1 for a in attempts if a.model_id == model_id),
            )
            self._health.record_failure(model_id, exc)
            raise _ModelExhausted(failure) from exc

        self._health.record_success(model_id, response.latency_ms)
        return response

    async def _attempt(
        self,
        request: CompletionRequest,
        model: ModelDescriptor,
        attempt_number: int,
        options: ExecutionOptions,
        deadline_at: float | None,
        attempts: list[ExecutionAttempt],
    ) -> ModelResponse:
        remaining = self._remaining(deadline_at)
        if remaining is not None and remaining <= 0:
            raise _DeadlineReached()

        timeout_s = options.timeout_ms / 1000
        cut_by_deadline = remaining is not None and remaining < timeout_s
        if cut_by_deadline:
            timeout_s = remaining

        started_at = datetime.now(UTC)
        start = time.perf_counter()
        log.debug(
            "execution.attempt_started",
            model_id=model.id,
            attempt=attempt_number,
            max_attempts=options.max_retries,
            timeout_ms=round(timeout_s * 1000),
        )

        error: BrokerError
        try:
            adapter = self._adapters.for_model(model)
            async with asyncio.timeout(timeout_s):
                content, input_tokens, output_tokens = await self._collect(
                    adapter.send(
                        request.messages,
                        model=model,
                        max_tokens=request.max_tokens,
                        temperature=request.temperature,
                    )
                )
        except TimeoutError:
            if cut_by_deadline:
                # The caller's deadline expired, not the model's own timeout
                attempts.append(
                    ExecutionAttempt(
                        model_id=model.id,
                        attempt_number=attempt_number,
                        started_at=started_at,
                        outcome=AttemptOutcome.TIMEOUT,
                        latency_ms=(time.perf_counter() - start) * 1000,
                        error="Request deadline reached",
                    )
                )
                log.warning(
                    "execution.attempt_cut_by_deadline", model_id=model.id, attempt=attempt_number
                )
                raise _DeadlineReached() from None
            error = ProviderTimeout(model.id, timeout_s * 1000)
        except _RETRYABLE as exc:
            error = exc
        except Exception as exc:
            error = ProviderError(f"{type(exc).__name__}: {exc}", model_id=model.id)
        else:
            latency_ms = (time.perf_counter() - start) * 1000
            if not content.strip():
                error = EmptyResponse(model.id)
            else:
                input_tokens = (
                    input_tokens
                    if input_tokens is not None
                    else estimate_tokens(request.input_text())
                )
                output_tokens = (
                    output_tokens if output_tokens is not None else estimate_tokens(content)
                )
                cost = adapter.estimate_cost(input_tokens, output_tokens)
                if cost is None:
                    cost = model.cost(input_tokens, output_tokens)

                attempts.append(
                    ExecutionAttempt(
                        model_id=model.id,
                        attempt_number=attempt_number,
                        started_at=started_at,
                        outcome=AttemptOutcome.SUCCESS,
                        latency_ms=latency_ms,
                        tokens=input_tokens + output_tokens,
                        cost=cost,
                    )
                )
                log.info(
                    "execution.attempt_succeeded",
                    model_id=model.id,
                    attempt=attempt_number,
                    latency_ms=round(latency_ms, 1),
                    output_tokens=output_tokens,
                    cost=cost,
                )
                return ModelResponse(
                    model_id=model.id,
                    content=content,
                    latency_ms=latency_ms,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    cost=cost,
                )

        latency_ms = (time.perf_counter() - start) * 1000
        outcome = AttemptOutcome.from_error(error)
        attempts.append(
            ExecutionAttempt(
                model_id=model.id,
                attempt_number=attempt_number,
                started_at=started_at,
                outcome=outcome,
                latency_ms=latency_ms,
                error=error.message,
            )
        )
        log.warning(
            "execution.attempt_failed",
            model_id=model.id,
            attempt=attempt_number,
            outcome=outcome.value,
            error=error.message,
            latency_ms=round(latency_ms, 1),
        )
        raise error

    @staticmethod
    async def _collect(stream: Any) -> tuple[str, int | None, int | None]:
        parts: list[str] = []
        input_tokens: int | None = None
        output_tokens: int | None = None
        async with aclosing(stream) as chunks:
            async for chunk in chunks:
                parts.append(chunk.text)
                if chunk.input_tokens is not None:
                    input_tokens = chunk.input_tokens
                if chunk.output_tokens is not None:
                    output_tokens = chunk.output_tokens
        return "".join(parts), input_tokens, output_tokens

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _validate_models(self, models: Sequence[str]) -> None:
        unknown = [m for m in models if m not in self._registry]
        if unknown:
            raise ValidationError(
                f"Unknown models: {', '.join(unknown)}",
                details={"unknown_models": unknown},
            )

    def _deadline_at(self, options: ExecutionOptions) -> float | None:
        if options.deadline_ms is None:
            return None
        return self._clock() + options.deadline_ms / 1000

    def _remaining(self, deadline_at: float | None) -> float | None:
        if deadline_at is None:
            return None
        return max(0.0, deadline_at - self._clock())

    def _capped_sleep(self, deadline_at: float | None) -> Callable[[float], Awaitable[None]]:
        async def _sleep(seconds: float) -> None:
            remaining = self._remaining(deadline_at)
            if remaining is not None:
                seconds = min(seconds, remaining)
            await self._sleep(seconds)

        return _sleep
