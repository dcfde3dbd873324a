"""Per-model health tracking with a periodic background probe.

Every model in the registry has one HealthRecord holding an exponentially
weighted latency and error rate. Status is derived from the error rate:

    error_rate > 0.5  -> offline   (removed from every fallback chain)
    error_rate > 0.2  -> degraded  (still routable, ranked after online)
    otherwise         -> online

Updates:
- success: latency = 0.8 * latency + 0.2 * sample, error_rate -= 0.1 (floor 0)
- failure: error_rate += 0.2 (cap 1)

Three consecutive failures therefore take a model offline. Only the probe loop
can bring an offline model back, because execution never attempts it.

Concurrency: records are shared across concurrent requests. Each model has its
own lock so an update is a single recomputation step; there is no global lock.
"""

from __future__ import annotations

import asyncio
import contextlib
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog

from llm_broker.registry import ModelRegistry

log = structlog.get_logger(__name__)

Prober = Callable[[str], Awaitable[Any]]


class HealthStatus(StrEnum):
    ONLINE = "online"
    DEGRADED = "degraded"
    OFFLINE = "offline"


_STATUS_RANK = {
    HealthStatus.ONLINE: 0,
    HealthStatus.DEGRADED: 1,
    HealthStatus.OFFLINE: 2,
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class HealthRecord:
    """Live health of one model.

    Attributes:
        model_id: Registry model id
        status: Derived from error_rate on every update
        latency_ms: EWMA of successful call latency
        error_rate: EWMA-style error signal in [0, 1]
        last_checked: Time of the last update (call or probe)
        consecutive_failures: Failures since the last success
        last_error: Message of the most recent failure
    """

    model_id: str
    status: HealthStatus = HealthStatus.ONLINE
    latency_ms: float = 0.0
    error_rate: float = 0.0
    last_checked: datetime = field(default_factory=_utcnow)
    consecutive_failures: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_id": self.model_id,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 1),
            "error_rate": self.error_rate,
            "last_checked": self.last_checked.isoformat(),
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
        }


@dataclass
class _Slot:
    record: HealthRecord
    lock: threading.Lock = field(default_factory=threading.Lock)


class HealthMonitor:
    """Maintains HealthRecords and runs the periodic probe.

    Example:
        monitor = HealthMonitor(registry, prober=send_ping, interval=60.0)
        await monitor.start()
        ...
        monitor.is_healthy("gpt-4o")
        await monitor.stop()
    """

    OFFLINE_THRESHOLD = 0.5
    DEGRADED_THRESHOLD = 0.2
    LATENCY_WEIGHT = 0.2
    SUCCESS_DECAY = 0.1
    FAILURE_PENALTY = 0.2

    def __init__(
        self,
        registry: ModelRegistry,
        *,
        prober: Prober | None = None,
        interval: float = 60.0,
        probe_timeout: float = 10.0,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize one online record per registry model.

        Args:
            registry: Model catalog to track
            prober: Async callable issuing a minimal request to a model;
                it should raise on failure
            interval: Seconds between probe rounds
            probe_timeout: Upper bound in seconds for a single probe call
            clock: Source of wall-clock timestamps for last_checked
            sleep: Awaitable sleep used between probe rounds
        """
        self._registry = registry
        self._prober = prober
        self._interval = interval
        self._probe_timeout = probe_timeout
        self._clock = clock
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None

        now = clock()
        self._slots: dict[str, _Slot] = {
            model_id: _Slot(HealthRecord(model_id=model_id, last_checked=now))
            for model_id in registry.ids()
        }

        log.info(
            "health_monitor.initialized",
            models=len(self._slots),
            interval_s=interval,
            probe_timeout_s=probe_timeout,
        )

    # ------------------------------------------------------------------ #
    # Recording
    # ------------------------------------------------------------------ #

    def record_success(self, model_id: str, latency_ms: float) -> None:
        """Fold a successful call into the model's latency and error rate."""
        slot = self._slots.get(model_id)
        if slot is None:
            log.warning("health_monitor.unknown_model", model_id=model_id, op="success")
            return

        with slot.lock:
            rec = slot.record
            previous = rec.status
            rec.latency_ms = (
                (1 - self.LATENCY_WEIGHT) * rec.latency_ms + self.LATENCY_WEIGHT * latency_ms
            )
            rec.error_rate = round(max(0.0, rec.error_rate - self.SUCCESS_DECAY), 4)
            rec.consecutive_failures = 0
            rec.last_checked = self._clock()
            rec.status = self._derive_status(rec.error_rate)
            current = rec.status

        if current != previous:
            log.info(
                "health_monitor.status_changed",
                model_id=model_id,
                previous=previous.value,
                status=current.value,
            )

    def record_failure(self, model_id: str, error: BaseException | str | None = None) -> None:
        """Penalize the model's error rate after a failed call."""
        slot = self._slots.get(model_id)
        if slot is None:
            log.warning("health_monitor.unknown_model", model_id=model_id, op="failure")
            return

        message = str(error) if error is not None else None
        with slot.lock:
            rec = slot.record
            previous = rec.status
            rec.error_rate = round(min(1.0, rec.error_rate + self.FAILURE_PENALTY), 4)
            rec.consecutive_failures += 1
            rec.last_error = message
            rec.last_checked = self._clock()
            rec.status = self._derive_status(rec.error_rate)
            current = rec.status
            failures = rec.consecutive_failures
            error_rate = rec.error_rate

        log_fn = log.warning if current == HealthStatus.OFFLINE else log.info
        log_fn(
            "health_monitor.failure_recorded",
            model_id=model_id,
            error=message,
            error_rate=error_rate,
            consecutive_failures=failures,
            status=current.value,
            status_changed=current != previous,
        )

    @classmethod
    def _derive_status(cls, error_rate: float) -> HealthStatus:
        if error_rate > cls.OFFLINE_THRESHOLD:
            return HealthStatus.OFFLINE
        if error_rate > cls.DEGRADED_THRESHOLD:
            return HealthStatus.DEGRADED
        return HealthStatus.ONLINE

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def snapshot(self) -> list[HealthRecord]:
        """Copies of every record in registry order."""
        records = []
        for slot in self._slots.values():
            with slot.lock:
                records.append(replace(slot.record))
        return records

    def get(self, model_id: str) -> HealthRecord | None:
        slot = self._slots.get(model_id)
        if slot is None:
            return None
        with slot.lock:
            return replace(slot.record)

    def is_healthy(self, model_id: str) -> bool:
        """True unless the model is offline or unknown."""
        record = self.get(model_id)
        return record is not None and record.status != HealthStatus.OFFLINE

    def healthy_models(self) -> list[str]:
        """Routable models, healthiest first.

        Ordered by status (online before degraded), then error rate, then
        latency; ties go to higher priority, then catalog order.
        """
        order = {model_id: idx for idx, model_id in enumerate(self._registry.ids())}
        healthy = [r for r in self.snapshot() if r.status != HealthStatus.OFFLINE]
        healthy.sort(
            key=lambda r: (
                _STATUS_RANK[r.status],
                r.error_rate,
                r.latency_ms,
                -self._registry.get(r.model_id).priority,
                order[r.model_id],
            )
        )
        return [r.model_id for r in healthy]

    # ------------------------------------------------------------------ #
    # Probing
    # ------------------------------------------------------------------ #

    async def run_probe(self) -> None:
        """Probe every model once, concurrently.

        Each probe is bounded by probe_timeout. Failures and timeouts are
        recorded against the model and never raised.
        """
        if self._prober is None:
            log.debug("health_monitor.probe_skipped", reason="no_prober")
            return

        prober = self._prober

        async def _probe(model_id: str) -> None:
            start = time.perf_counter()
            try:
                async with asyncio.timeout(self._probe_timeout):
                    await prober(model_id)
            except Exception as exc:
                if isinstance(exc, TimeoutError):
                    exc = TimeoutError(f"Probe timed out after {self._probe_timeout}s")
                self.record_failure(model_id, exc)
                return
            self.record_success(model_id, (time.perf_counter() - start) * 1000)

        start = time.perf_counter()
        await asyncio.gather(*(_probe(model_id) for model_id in self._slots))
        log.info(
            "health_monitor.probe_completed",
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
            statuses={r.model_id: r.status.value for r in self.snapshot()},
        )

    async def start(self) -> None:
        """Start the background probe loop."""
        if self._task is not None and not self._task.done():
            log.warning("health_monitor.already_running")
            return
        self._task = asyncio.create_task(self._probe_loop(), name="health-monitor-probe")
        log.info("health_monitor.started", interval_s=self._interval)

    async def stop(self) -> None:
        """Cancel the probe loop and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        log.info("health_monitor.stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _probe_loop(self) -> None:
        while True:
            await self._sleep(self._interval)
            try:
                await self.run_probe()
            except Exception as exc:
                log.error("health_monitor.probe_round_failed", error=str(exc), exc_info=True)
