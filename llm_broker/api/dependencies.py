"""FastAPI dependencies resolving the components created in lifespan."""

from __future__ import annotations

from fastapi import Request

from llm_broker.orchestrator import Orchestrator
from llm_broker.rate_limit import RateLimiter


def get_orchestrator(request: Request) -> Orchestrator:
    orchestrator: Orchestrator | None = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise RuntimeError("Orchestrator not initialized. Is the lifespan running?")
    return orchestrator


def get_rate_limiter(request: Request) -> RateLimiter:
    limiter: RateLimiter | None = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        raise RuntimeError("Rate limiter not initialized. Is the lifespan running?")
    return limiter
