"""Domain exceptions for the broker.

Every error that can cross the orchestrator boundary derives from BrokerError
and carries a machine-readable ``code`` plus the HTTP status the outward API
layer should answer with. Per-attempt failures (timeouts, provider errors,
empty responses) are raised inside the execution engine, recorded, and only
surface when they are the terminal outcome of a whole chain.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from llm_broker.execution import ModelFailure


class BrokerError(Exception):
    """Base exception for all broker failures."""

    code: str = "broker_error"
    http_status: int = 500
    retryable: bool = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the error body returned by the API layer."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(BrokerError):
    """Request is malformed (missing prompt, unknown model, bad mode)."""

    code = "validation_error"
    http_status = 400


class MarginExceeded(BrokerError):
    """Account margin is below the configured floor; nothing was dispatched."""

    code = "margin_exceeded"
    http_status = 429

    def __init__(
        self,
        uid: str,
        margin_pct: float,
        min_margin_pct: float,
        *,
        retry_after_seconds: int = 3600,
    ) -> None:
        super().__init__(
            f"Usage limit reached for account {uid}: margin {margin_pct:.1f}% "
            f"is below the {min_margin_pct:.1f}% floor",
            details={
                "uid": uid,
                "margin_pct": round(margin_pct, 2),
                "min_margin_pct": min_margin_pct,
                "retry_after_seconds": retry_after_seconds,
            },
        )
        self.uid = uid
        self.margin_pct = margin_pct
        self.min_margin_pct = min_margin_pct
        self.retry_after_seconds = retry_after_seconds


class RateLimited(BrokerError):
    """Caller exceeded its request rate."""

    code = "rate_limited"
    http_status = 429
    retryable = True

    def __init__(self, key: str, limit: int, *, retry_after_seconds: int) -> None:
        super().__init__(
            f"Rate limit exceeded: {limit} requests per minute",
            details={"key": key, "limit": limit, "retry_after_seconds": retry_after_seconds},
        )
        self.retry_after_seconds = retry_after_seconds


class ProviderTimeout(BrokerError):
    """A single attempt exceeded its deadline."""

    code = "provider_timeout"
    http_status = 504
    retryable = True

    def __init__(self, model_id: str, timeout_ms: float) -> None:
        super().__init__(
            f"Timeout after {timeout_ms:.0f}ms for {model_id}",
            details={"model_id": model_id, "timeout_ms": timeout_ms},
        )
        self.model_id = model_id


class ProviderError(BrokerError):
    """Adapter reported a non-timeout failure (bad status, malformed payload)."""

    code = "provider_error"
    http_status = 502
    retryable = True

    def __init__(self, message: str, *, model_id: str | None = None, status_code: int | None = None) -> None:
        super().__init__(
            message,
            details={"model_id": model_id, "status_code": status_code},
        )
        self.model_id = model_id
        self.status_code = status_code


class EmptyResponse(BrokerError):
    """Adapter succeeded but produced no usable content."""

    code = "empty_response"
    http_status = 502
    retryable = True

    def __init__(self, model_id: str) -> None:
        super().__init__(f"Empty response from {model_id}", details={"model_id": model_id})
        self.model_id = model_id


class NoHealthyModels(BrokerError):
    """The fallback chain was empty before any attempt was made."""

    code = "no_healthy_models"
    http_status = 503

    def __init__(self, message: str = "No healthy models available") -> None:
        super().__init__(message)


class DeadlineExceeded(BrokerError):
    """The caller-level deadline elapsed before any model succeeded."""

    code = "deadline_exceeded"
    http_status = 504

    def __init__(self, deadline_ms: float, failures: list[ModelFailure] | None = None) -> None:
        self.failures = list(failures or [])
        super().__init__(
            f"Request deadline of {deadline_ms:.0f}ms exceeded",
            details={
                "deadline_ms": deadline_ms,
                "failures": [f.to_dict() for f in self.failures],
            },
        )


class AllProvidersFailed(BrokerError):
    """Every model in the chain was exhausted."""

    code = "all_providers_failed"
    http_status = 502

    def __init__(self, failures: list[ModelFailure]) -> None:
        self.failures = list(failures)
        attempted = ", ".join(f.model_id for f in self.failures) or "none"
        super().__init__(
            f"All providers failed ({attempted})",
            details={"failures": [f.to_dict() for f in self.failures]},
        )
