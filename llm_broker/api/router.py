"""Main API router - aggregates all sub-routers."""

from __future__ import annotations

from fastapi import APIRouter

from llm_broker.api import health, orchestrate

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(orchestrate.router)
