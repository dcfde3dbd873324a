"""FastAPI application entrypoint.

Application startup order:
1. Load settings (from environment)
2. Configure structured logging
3. Initialize the database (only for the database margin store)
4. Build the Orchestrator and start the health probe loop
5. Start the rate limiter cleanup task

Shutdown runs the same steps in reverse.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from llm_broker import __version__
from llm_broker.api.router import api_router
from llm_broker.config import MarginStoreKind, get_settings
from llm_broker.database import close_db, create_tables, get_session_factory, init_db
from llm_broker.errors import BrokerError, ValidationError
from llm_broker.margin import MarginStore, SqlMarginStore
from llm_broker.orchestrator import Orchestrator
from llm_broker.rate_limit import RateLimiter
from llm_broker.telemetry import clear_context, configure_logging

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    settings = get_settings()

    # Configure structured logging first (before any log calls)
    configure_logging(
        json_logs=settings.is_prod,
        log_level="DEBUG" if settings.debug else "INFO",
    )

    log.info(
        "app.starting",
        environment=settings.environment,
        provider_backend=settings.provider_backend,
        margin_store=settings.margin_store,
    )

    store: MarginStore | None = None
    if settings.margin_store == MarginStoreKind.DATABASE:
        init_db(settings)
        await create_tables()
        store = SqlMarginStore(get_session_factory())

    orchestrator: Orchestrator = getattr(app.state, "orchestrator", None) or Orchestrator.from_settings(
        settings, store=store
    )
    rate_limiter: RateLimiter = getattr(app.state, "rate_limiter", None) or RateLimiter(
        settings.rate_limit_per_minute
    )
    app.state.orchestrator = orchestrator
    app.state.rate_limiter = rate_limiter

    await orchestrator.start()
    await rate_limiter.start()

    log.info("app.ready")
    yield

    await rate_limiter.stop()
    await orchestrator.stop()
    if settings.margin_store == MarginStoreKind.DATABASE:
        await close_db()
    log.info("app.shutdown")


def _error_response(exc: BrokerError) -> JSONResponse:
    headers: dict[str, str] = {}
    retry_after = getattr(exc, "retry_after_seconds", None)
    if retry_after is not None:
        headers["Retry-After"] = str(retry_after)
    return JSONResponse(
        status_code=exc.http_status,
        content={"success": False, "error": exc.to_dict()},
        headers=headers,
    )


def create_app(
    *,
    orchestrator: Orchestrator | None = None,
    rate_limiter: RateLimiter | None = None,
) -> FastAPI:
    """Application factory.

    Args:
        orchestrator: Pre-built orchestrator (tests); built from settings when None
        rate_limiter: Pre-built rate limiter (tests); built from settings when None
    """
    settings = get_settings()

    app = FastAPI(
        title="LLM Broker",
        description="Routes chat completions across LLM providers with failover and margin gating.",
        version=__version__,
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
        openapi_url="/openapi.json" if settings.is_dev else None,
        lifespan=lifespan,
    )
    if orchestrator is not None:
        app.state.orchestrator = orchestrator
    if rate_limiter is not None:
        app.state.rate_limiter = rate_limiter

    app.include_router(api_router)

    # ------------------------------------------------------------------ #
    # Exception handlers
    # ------------------------------------------------------------------ #

    @app.middleware("http")
    async def clear_log_context(request: Request, call_next):  # type: ignore[no-untyped-def]
        clear_context()
        return await call_next(request)

    @app.exception_handler(BrokerError)
    async def broker_error_handler(request: Request, exc: BrokerError) -> JSONResponse:
        log_fn = log.warning if exc.http_status < 500 else log.error
        log_fn(
            "app.broker_error",
            path=request.url.path,
            code=exc.code,
            status=exc.http_status,
            error=exc.message,
        )
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        error = ValidationError(
            "Invalid request body",
            details={"errors": [
                {"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()
            ]},
        )
        return _error_response(error)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "app.unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": {"code": "internal_error", "message": "Internal server error", "details": {}},
            },
        )

    return app


# Module-level app instance for uvicorn
app = create_app()
