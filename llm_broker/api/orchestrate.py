"""Orchestration endpoint - POST /v1/orchestrate

1. Resolve the account from the headers set by the upstream auth layer
2. Check the per-account rate limit
3. Hand the request to the Orchestrator (margin gate, routing, execution)
4. Return the aggregated result

Broker errors propagate to the exception handlers registered in main.py,
which map them to HTTP status codes.
"""

from __future__ import annotations

from typing import Any, Literal

import structlog
from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, ConfigDict, Field

from llm_broker.api.dependencies import get_orchestrator, get_rate_limiter
from llm_broker.config import Settings, get_settings
from llm_broker.margin import Subscription
from llm_broker.orchestrator import Mode, OrchestrationRequest, Orchestrator
from llm_broker.rate_limit import RateLimiter
from llm_broker.telemetry import bind_account_context, new_request_id

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/v1", tags=["orchestrate"])


class MessageBody(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str = Field(..., max_length=64_000)


class OrchestrateRequestBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt: str | None = Field(
        default=None,
        max_length=32_000,
        description="Latest user message. Appended after `messages` when both are given.",
    )
    messages: list[MessageBody] = Field(default_factory=list, description="Conversation history")
    context: list[str] = Field(default_factory=list, description="Reference text for the model")
    models: list[str] = Field(
        default_factory=list,
        description="Explicit model ids. Omit in failover mode for automatic routing.",
    )
    mode: Mode = Mode.FAILOVER
    max_tokens: int | None = Field(default=None, ge=1, alias="maxTokens")
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)


@router.post("/orchestrate")
async def orchestrate(
    body: OrchestrateRequestBody,
    request: Request,
    x_account_id: str | None = Header(default=None),
    x_subscription_value: float | None = Header(default=None, ge=0.0),
    orchestrator: Orchestrator = Depends(get_orchestrator),
    limiter: RateLimiter = Depends(get_rate_limiter),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    """Broker a chat completion across providers."""
    request_id = new_request_id()
    request.state.request_id = request_id

    subscription: Subscription | None = None
    if x_account_id:
        bind_account_context(x_account_id)
        value = (
            x_subscription_value
            if x_subscription_value is not None
            else settings.default_subscription_value
        )
        subscription = Subscription(uid=x_account_id, value=value)

    client_host = request.client.host if request.client else "unknown"
    await limiter.check(x_account_id or f"ip:{client_host}")

    result = await orchestrator.execute(
        OrchestrationRequest(
            prompt=body.prompt,
            messages=[m.model_dump() for m in body.messages],
            context=body.context,
            models=body.models,
            mode=body.mode,
            max_tokens=body.max_tokens,
            temperature=body.temperature,
        ),
        subscription,
        request_id=request_id,
    )
    return result.to_dict()
