"""Top Voices API — FastAPI application."""
from __future__ import annotations

import logging

from topvoices.logging_config import setup_logging
setup_logging()
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.settings import settings
from topvoices.errors import (
    ExternalUnavailableError,
    InvalidInputError,
    NotConfiguredError,
    NotFoundError,
    TopVoicesError,
)
from topvoices.models import TierPolicy
from topvoices.services.admin import SubscriptionAdmin
from topvoices.services.chat_relay import ChatRelay
from topvoices.services.gumroad_gateway import GumroadGateway
from topvoices.services.reconciliation import ReconciliationEngine
from topvoices.services.stripe_gateway import StripeGateway
from topvoices.services.stripe_webhooks import StripeWebhookHandler
from topvoices.services.usage import UsageGate, UsageMeter
from topvoices.storage.container import Storage

VERSION = "1.0.0"

# ── Sentry Error Tracking ────────────────────────
if settings.SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.WARNING, event_level=logging.ERROR),
        ],
        # Scrub sensitive data
        send_default_pii=False,
    )

logger = logging.getLogger(__name__)


def attach_services(
    app: FastAPI,
    storage: Storage,
    gateway: StripeGateway | None = None,
    relay: ChatRelay | None = None,
    policy: TierPolicy | None = None,
    gumroad: GumroadGateway | None = None,
) -> None:
    """Build every service around one ``Storage`` and hang them on app.state."""
    policy = policy or TierPolicy()
    gateway = gateway or StripeGateway()
    meter = UsageMeter(storage)

    app.state.storage = storage
    app.state.gateway = gateway
    app.state.policy = policy
    app.state.engine = ReconciliationEngine(storage, gateway, policy)
    app.state.meter = meter
    app.state.gate = UsageGate(meter, storage, policy)
    app.state.admin = SubscriptionAdmin(storage, gateway, policy, gumroad)
    app.state.webhooks = StripeWebhookHandler(storage, gateway)
    app.state.relay = relay or ChatRelay()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate config, open storage, wire services."""
    from topvoices.startup_checks import validate_settings
    validate_settings()

    storage = await Storage().init()
    attach_services(app, storage)

    yield

    logger.info("Shutting down — draining connections...")
    await storage.close()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Top Voices API",
    version=VERSION,
    description="LinkedIn Top Voices assistant backend — premium entitlements and usage metering",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request ID tracing
from topvoices.middleware.request_id import RequestIDMiddleware  # noqa: E402
app.add_middleware(RequestIDMiddleware)

from topvoices.api.admin import router as admin_router  # noqa: E402
from topvoices.api.auth import router as auth_router  # noqa: E402
from topvoices.api.chat import router as chat_router  # noqa: E402
from topvoices.api.stripe_webhook import router as stripe_router  # noqa: E402
from topvoices.api.subscriptions import router as subscriptions_router  # noqa: E402

app.include_router(subscriptions_router)
app.include_router(chat_router)
app.include_router(admin_router)
app.include_router(auth_router)
app.include_router(stripe_router)


@app.get("/health")
async def health(request: Request):
    """Deep health check — validates DB connectivity."""
    storage: Storage | None = getattr(request.app.state, "storage", None)
    db_ok = storage is not None and storage.ready and await storage.ping()
    db_status = "connected" if db_ok else "error"
    status = "ok" if db_ok else "degraded"
    return {"status": status, "db": db_status, "version": VERSION}


# --- Structured Error Responses ---

def _status_for(exc: TopVoicesError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, InvalidInputError):
        return 400
    if isinstance(exc, NotConfiguredError):
        return 503
    if isinstance(exc, ExternalUnavailableError):
        return 502
    return 500


@app.exception_handler(TopVoicesError)
async def domain_error_handler(request: Request, exc: TopVoicesError):
    status = _status_for(exc)
    logger.info("%s %s → %s: %s", request.method, request.url.path, status, exc.message)
    return JSONResponse(status_code=status, content={
        "error": exc.kind.value,
        "message": exc.message,
    })


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Return clean, structured validation errors instead of raw Pydantic output."""
    errors = []
    for err in exc.errors():
        field = " → ".join(str(loc) for loc in err["loc"]) if err.get("loc") else "unknown"
        errors.append({"field": field, "message": err["msg"]})
    return JSONResponse(status_code=422, content={
        "error": "validation_error",
        "message": "Invalid request data",
        "details": errors,
    })


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    """Consistent error envelope for all HTTP errors."""
    return JSONResponse(status_code=exc.status_code, content={
        "error": exc.detail if isinstance(exc.detail, str) else "error",
        "message": exc.detail,
    })


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    """Catch-all for unhandled exceptions — never leak stack traces."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={
        "error": "internal_error",
        "message": "Something went wrong. Please try again.",
    })
