"""Tests for ExecutionEngine failover, retries, deadlines and parallel fan-out.

Backoff sleeps go through the ``sleeps`` fixture so nothing waits for real.
"""

from __future__ import annotations

import asyncio

import pytest

from llm_broker.errors import (
    AllProvidersFailed,
    DeadlineExceeded,
    NoHealthyModels,
    ProviderError,
    ValidationError,
)
from llm_broker.execution import (
    AttemptOutcome,
    CompletionRequest,
    ExecutionEngine,
    ExecutionOptions,
    estimate_tokens,
)
from llm_broker.providers.registry import AdapterRegistry


@pytest.fixture
def request_() -> CompletionRequest:
    return CompletionRequest(messages=[{"role": "user", "content": "hi there"}], max_tokens=100)


class TestEstimateTokens:
    @pytest.mark.parametrize(
        "text,expected",
        [("", 0), ("   ", 0), ("one", 2), ("hi there", 3), ("one two three", 4)],
    )
    def test_estimate(self, text, expected):
        assert estimate_tokens(text) == expected


class TestExecutionOptions:
    def test_defaults(self):
        options = ExecutionOptions()
        assert options.max_retries == 3
        assert options.retry_delay_ms == 1000
        assert options.timeout_ms == 30_000
        assert options.deadline_ms is None

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_retries": 0}, {"retry_delay_ms": -1}, {"timeout_ms": 0}],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            ExecutionOptions(**kwargs)


class TestFailover:
    @pytest.mark.asyncio
    async def test_first_success_short_circuits(self, engine, fake_adapter, request_, options):
        result = await engine.execute_with_fallback(
            request_, ["gpt-4o", "claude-3-5-sonnet"], options
        )
        assert result.content == "response from gpt-4o"
        assert result.models_used == ["gpt-4o"]
        assert result.failures == []
        assert fake_adapter.calls == ["gpt-4o"]

    @pytest.mark.asyncio
    async def test_falls_back_after_retries(
        self, engine, fake_adapter, health, sleeps, request_, options
    ):
        fake_adapter.script("gpt-4o", ProviderError("upstream 500"))

        result = await engine.execute_with_fallback(
            request_, ["gpt-4o", "claude-3-5-sonnet"], options
        )

        assert fake_adapter.calls == ["gpt-4o", "gpt-4o", "gpt-4o", "claude-3-5-sonnet"]
        assert sleeps == [1.0, 2.0]
        assert result.content == "response from claude-3-5-sonnet"
        assert len(result.failures) == 1
        failure = result.failures[0]
        assert failure.model_id == "gpt-4o"
        assert failure.outcome == AttemptOutcome.PROVIDER_ERROR
        assert failure.attempts == 3
        assert [a.outcome for a in result.attempts] == [
            AttemptOutcome.PROVIDER_ERROR,
            AttemptOutcome.PROVIDER_ERROR,
            AttemptOutcome.PROVIDER_ERROR,
            AttemptOutcome.SUCCESS,
        ]
        # One health failure per exhausted model, not per attempt
        assert health.get("gpt-4o").error_rate == 0.2

    @pytest.mark.asyncio
    async def test_retry_then_success(self, engine, fake_adapter, health, sleeps, request_, options):
        fake_adapter.script("gpt-4o", ProviderError("flaky"), "ok now")

        result = await engine.execute_with_fallback(request_, ["gpt-4o"], options)

        assert result.content == "ok now"
        assert fake_adapter.calls == ["gpt-4o", "gpt-4o"]
        assert sleeps == [1.0]
        assert result.failures == []
        assert health.get("gpt-4o").error_rate == 0.0

    @pytest.mark.asyncio
    async def test_unexpected_adapter_exception_is_provider_error(
        self, engine, fake_adapter, request_, options
    ):
        fake_adapter.script("gpt-4o", RuntimeError("socket closed"))

        result = await engine.execute_with_fallback(
            request_, ["gpt-4o", "gpt-4o-mini"], options
        )

        assert result.models_used == ["gpt-4o-mini"]
        assert result.failures[0].outcome == AttemptOutcome.PROVIDER_ERROR
        assert "socket closed" in result.failures[0].error

    @pytest.mark.asyncio
    async def test_blank_response_is_empty_response(self, engine, fake_adapter, request_, options):
        fake_adapter.script("gpt-4o", "   ")

        result = await engine.execute_with_fallback(
            request_, ["gpt-4o", "claude-3-5-sonnet"], options
        )

        assert result.failures[0].outcome == AttemptOutcome.EMPTY_RESPONSE
        assert result.content == "response from claude-3-5-sonnet"

    @pytest.mark.asyncio
    async def test_attempt_timeout(self, engine, fake_adapter, request_):
        fake_adapter.script("gpt-4o", 5.0)
        options = ExecutionOptions(max_retries=1, timeout_ms=50)

        result = await asyncio.wait_for(
            engine.execute_with_fallback(request_, ["gpt-4o", "gpt-4o-mini"], options),
            timeout=2,
        )

        assert result.failures[0].outcome == AttemptOutcome.TIMEOUT
        assert result.content == "response from gpt-4o-mini"
        assert fake_adapter.in_flight == 0

    @pytest.mark.asyncio
    async def test_all_models_fail(self, engine, fake_adapter, health, request_, options):
        fake_adapter.script("gpt-4o", ProviderError("down"))
        fake_adapter.script("gpt-4o-mini", ProviderError("down"))

        with pytest.raises(AllProvidersFailed) as exc_info:
            await engine.execute_with_fallback(request_, ["gpt-4o", "gpt-4o-mini"], options)

        assert [f.model_id for f in exc_info.value.failures] == ["gpt-4o", "gpt-4o-mini"]
        assert len(fake_adapter.calls) == 6
        assert exc_info.value.http_status == 502

    @pytest.mark.asyncio
    async def test_empty_chain(self, engine, request_, options):
        with pytest.raises(NoHealthyModels):
            await engine.execute_with_fallback(request_, [], options)

    @pytest.mark.asyncio
    async def test_unknown_model(self, engine, fake_adapter, request_, options):
        with pytest.raises(ValidationError):
            await engine.execute_with_fallback(request_, ["gpt-4o", "gpt-9"], options)
        assert fake_adapter.calls == []

    @pytest.mark.asyncio
    async def test_skips_model_that_went_offline(
        self, engine, fake_adapter, request_, options, mark_offline
    ):
        mark_offline("gpt-4o")
        result = await engine.execute_with_fallback(
            request_, ["gpt-4o", "claude-3-haiku"], options
        )
        assert fake_adapter.calls == ["claude-3-haiku"]
        assert result.models_used == ["claude-3-haiku"]

    @pytest.mark.asyncio
    async def test_missing_adapter_is_provider_error(self, registry, health, request_, options):
        engine = ExecutionEngine(registry, AdapterRegistry(), health, sleep=_no_sleep)

        with pytest.raises(AllProvidersFailed) as exc_info:
            await engine.execute_with_fallback(request_, ["gpt-4o"], options)

        assert exc_info.value.failures[0].outcome == AttemptOutcome.PROVIDER_ERROR
        assert "No adapter registered" in exc_info.value.failures[0].error

    @pytest.mark.asyncio
    async def test_cost_from_estimated_tokens(self, engine, fake_adapter, request_, options):
        fake_adapter.script("gpt-4o", "one two three")

        result = await engine.execute_with_fallback(request_, ["gpt-4o"], options)

        response = result.responses[0]
        assert response.input_tokens == 3
        assert response.output_tokens == 4
        assert result.total_tokens == 7
        assert result.total_cost == pytest.approx(0.000075)

    @pytest.mark.asyncio
    async def test_records_success_latency(self, engine, health, request_, options):
        await engine.execute_with_fallback(request_, ["gpt-4o"], options)
        assert health.get("gpt-4o").latency_ms > 0


class TestDeadline:
    @pytest.mark.asyncio
    async def test_deadline_stops_retries(self, registry, adapters, health, fake_adapter, request_):
        now = [0.0]
        slept: list[float] = []

        async def advance(seconds: float) -> None:
            slept.append(seconds)
            now[0] += seconds

        engine = ExecutionEngine(registry, adapters, health, sleep=advance, clock=lambda: now[0])
        fake_adapter.script("gpt-4o", ProviderError("down"))
        options = ExecutionOptions(max_retries=3, retry_delay_ms=1000, deadline_ms=1500)

        with pytest.raises(DeadlineExceeded) as exc_info:
            await engine.execute_with_fallback(request_, ["gpt-4o", "gpt-4o-mini"], options)

        assert fake_adapter.calls == ["gpt-4o", "gpt-4o"]
        # Second backoff is capped at the time left
        assert slept == [1.0, 0.5]
        assert exc_info.value.http_status == 504
        # Work cut short by the deadline leaves health untouched
        assert health.get("gpt-4o").error_rate == 0.0

    @pytest.mark.asyncio
    async def test_deadline_cut_attempt_is_not_a_model_failure(
        self, engine, health, fake_adapter, request_
    ):
        fake_adapter.script("gpt-4o", 1.0)
        options = ExecutionOptions(max_retries=3, timeout_ms=5000, deadline_ms=50)

        with pytest.raises(DeadlineExceeded):
            await asyncio.wait_for(
                engine.execute_with_fallback(request_, ["gpt-4o", "gpt-4o-mini"], options),
                timeout=2,
            )

        # Not retried and not charged to the model's health
        assert fake_adapter.calls == ["gpt-4o"]
        record = health.get("gpt-4o")
        assert record.error_rate == 0.0
        assert record.consecutive_failures == 0
        assert record.last_error is None

    @pytest.mark.asyncio
    async def test_model_timeout_within_deadline_still_counts(
        self, engine, health, fake_adapter, request_
    ):
        fake_adapter.script("gpt-4o", 1.0)
        fake_adapter.script("gpt-4o-mini", "fallback answer")
        options = ExecutionOptions(max_retries=1, timeout_ms=50, deadline_ms=5000)

        result = await engine.execute_with_fallback(request_, ["gpt-4o", "gpt-4o-mini"], options)

        assert result.content == "fallback answer"
        assert result.failures[0].outcome == AttemptOutcome.TIMEOUT
        assert health.get("gpt-4o").consecutive_failures == 1


class TestParallel:
    @pytest.mark.asyncio
    async def test_partial_failure(self, engine, fake_adapter, request_, options):
        fake_adapter.script("claude-3-5-sonnet", ProviderError("overloaded"))

        result = await engine.execute_parallel(
            request_, ["gpt-4o", "claude-3-5-sonnet", "gemini-pro"], options
        )

        assert sorted(result.models_used) == ["gemini-pro", "gpt-4o"]
        assert [f.model_id for f in result.failures] == ["claude-3-5-sonnet"]
        assert result.failures[0].attempts == 3
        assert result.content is None
        # No cross-model fallback
        assert "gpt-3.5-turbo" not in fake_adapter.calls

    @pytest.mark.asyncio
    async def test_runs_concurrently(self, engine, fake_adapter, request_, options):
        await engine.execute_parallel(
            request_, ["gpt-4o", "claude-3-5-sonnet", "gemini-pro"], options
        )
        assert fake_adapter.max_in_flight > 1

    @pytest.mark.asyncio
    async def test_concurrency_bound(self, registry, adapters, health, fake_adapter, request_, options):
        engine = ExecutionEngine(registry, adapters, health, concurrency=1, sleep=_no_sleep)

        result = await engine.execute_parallel(
            request_, ["gpt-4o", "claude-3-5-sonnet", "gemini-pro"], options
        )

        assert len(result.responses) == 3
        assert fake_adapter.max_in_flight == 1

    @pytest.mark.asyncio
    async def test_deadline_cancels_slow_models(self, engine, fake_adapter, request_):
        fake_adapter.script("gemini-pro", 5.0)
        options = ExecutionOptions(max_retries=1, timeout_ms=1000, deadline_ms=100)

        result = await asyncio.wait_for(
            engine.execute_parallel(request_, ["gpt-4o", "gemini-pro"], options),
            timeout=2,
        )

        assert result.models_used == ["gpt-4o"]
        assert [f.model_id for f in result.failures] == ["gemini-pro"]
        assert result.failures[0].outcome == AttemptOutcome.TIMEOUT
        assert fake_adapter.in_flight == 0

    @pytest.mark.asyncio
    async def test_all_fail(self, engine, fake_adapter, request_, options):
        fake_adapter.script("gpt-4o", ProviderError("down"))
        fake_adapter.script("gemini-pro", ProviderError("down"))

        with pytest.raises(AllProvidersFailed) as exc_info:
            await engine.execute_parallel(request_, ["gpt-4o", "gemini-pro"], options)

        assert {f.model_id for f in exc_info.value.failures} == {"gpt-4o", "gemini-pro"}

    @pytest.mark.asyncio
    async def test_duplicates_are_sent_once(self, engine, fake_adapter, request_, options):
        await engine.execute_parallel(request_, ["gpt-4o", "gpt-4o"], options)
        assert fake_adapter.calls == ["gpt-4o"]

    @pytest.mark.asyncio
    async def test_empty_model_list(self, engine, request_, options):
        with pytest.raises(ValidationError):
            await engine.execute_parallel(request_, [], options)


async def _no_sleep(seconds: float) -> None:
    return None
