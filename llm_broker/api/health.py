"""Health endpoints.

/healthz           - Liveness probe: is the process up?
/v1/health/models  - Per-model health snapshot from the HealthMonitor

These are public endpoints - no account headers required.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends

from llm_broker.api.dependencies import get_orchestrator
from llm_broker.health import HealthStatus
from llm_broker.orchestrator import Orchestrator

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def liveness() -> dict[str, Any]:
    """Liveness probe - always returns 200 if the process is running."""
    return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}


@router.get("/v1/health/models")
async def model_health(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    records = orchestrator.health_snapshot()
    counts = {status.value: 0 for status in HealthStatus}
    for record in records:
        counts[record.status.value] += 1
    return {
        "models": [r.to_dict() for r in records],
        "summary": counts,
        "timestamp": datetime.now(UTC).isoformat(),
    }
