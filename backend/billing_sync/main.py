"""Billing Sync Backend: FastAPI application entry point."""

import asyncio
import signal
import uuid
from contextlib import asynccontextmanager, suppress

# structlog freezes its processor chain on first use, so logging is
# configured before anything below imports a logger.
from billing_sync.core.config import get_settings
from billing_sync.core.logging import configure_structlog

configure_structlog(
    log_level="DEBUG" if get_settings().debug else "INFO",
    json_logs=not get_settings().debug,
)

import structlog

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from billing_sync.api.routes import api_router
from billing_sync.core.exceptions import BillingError
from billing_sync.db import close_db, close_redis, get_session_factory, init_db, init_redis
from billing_sync.domain.plans import PlanCatalog
from billing_sync.middleware.correlation import get_correlation_id, setup_correlation_middleware
from billing_sync.services.retention import RetentionSweeper
from billing_sync.services.subscription_store import SubscriptionStore

logger = structlog.get_logger(__name__)

# Seconds a client or the processor should wait before retrying a 503
_RETRY_AFTER_SECONDS = "5"


def validate_price_map() -> None:
    """Refuse to start when a paid plan/cycle has no processor price configured.

    Debug mode skips the check so local runs work with a partial catalog.
    """
    settings = get_settings()
    if settings.debug:
        return
    missing = PlanCatalog.from_settings(settings).missing_prices()
    if missing:
        raise RuntimeError(f"Missing Stripe price IDs at startup: {missing}")


def _install_drain_flag(app: FastAPI) -> None:
    """SIGTERM flips ``app.state.shutting_down`` so /health starts returning 503."""
    app.state.shutting_down = False

    def _on_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="draining")

    signal.signal(signal.SIGTERM, _on_sigterm)


@asynccontextmanager
async def lifespan(app: FastAPI):
    _install_drain_flag(app)

    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    validate_price_map()
    await init_db()
    logger.info("db_initialized")
    # The status stream degrades to a single snapshot without Redis
    await init_redis()

    sweeper = RetentionSweeper(
        SubscriptionStore(get_session_factory()),
        retention_days=settings.webhook_event_retention_days,
        interval_seconds=settings.retention_sweep_interval_seconds,
    )
    sweeper_task = asyncio.create_task(sweeper.run())

    yield

    logger.info("shutdown_begin")
    sweeper_task.cancel()
    with suppress(asyncio.CancelledError):
        await sweeper_task
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


# ── Exception handlers ──────────────────────────────────────────────
# Every error response carries a debug_id that also appears in the server
# log line, next to the request's correlation ID.


def _error_response(
    request: Request,
    log_event: str,
    status_code: int,
    content: dict,
    headers: dict | None = None,
    **log_fields,
) -> JSONResponse:
    debug_id = str(uuid.uuid4())
    log = logger.error if status_code >= 500 else logger.warning
    log(
        log_event,
        status_code=status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        account_id=getattr(request.state, "account_id", None),
        **log_fields,
    )
    return JSONResponse(status_code=status_code, content={**content, "debug_id": debug_id}, headers=headers)


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Map the billing error taxonomy onto HTTP.

    Retryable errors carry ``Retry-After`` so both browsers and the
    processor's redelivery back off.
    """
    return _error_response(
        request,
        "billing_error",
        exc.status_code,
        {"detail": exc.detail, "code": exc.code, "retryable": exc.retryable},
        headers={"Retry-After": _RETRY_AFTER_SECONDS} if exc.retryable else None,
        code=exc.code,
        retryable=exc.retryable,
        detail=exc.detail,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error_response(request, "http_exception", exc.status_code, {"detail": exc.detail}, detail=exc.detail)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort: full traceback in the log, a generic 500 to the caller."""
    return _error_response(
        request,
        "unhandled_exception",
        500,
        {"detail": "Internal server error"},
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=exc,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BillingError, billing_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Subscription lifecycle sync between the payment processor and the account store",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url, *settings.cors_allowed_origins],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Added last so it wraps CORS and tags every request
    setup_correlation_middleware(app)

    register_exception_handlers(app)
    app.include_router(api_router, prefix="/api")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("billing_sync.main:app", host="0.0.0.0", port=8000, reload=True)
