"""
api/main.py -- FastAPI application entry point for the helpdesk.

Exposes the ticket/incident lifecycle engine over HTTP. Every route under
/api/v1 except /auth/login and /health requires a bearer token or the
access_token cookie.

Run with:  uvicorn asgi:app --reload

Request path through the middleware, first to last:
  1. TrustedHostMiddleware -- Host header must match ALLOWED_HOSTS
  2. CORSMiddleware        -- browser origins from CORS_ORIGINS
  3. SlowAPIMiddleware     -- per-route limits declared with @limiter.limit

Lifespan opens the desk and auth stores, builds the managers on app.state,
and closes both stores on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.audit import router as audit_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.incidents import router as incidents_router
from api.routes.v1.notifications import router as notifications_router
from api.routes.v1.sla import router as sla_router
from api.routes.v1.tickets import router as tickets_router
from auth.dependencies import get_current_user
from auth.store import UserStore
from cache.store import BranchDirectory
from core.config import Settings, get_settings
from core.errors import DeskError
from core.models import Actor
from core.sla import SlaCalculator
from desk.attachments import AttachmentIndex
from desk.conversion import ConversionCoordinator
from desk.dispatcher import Dispatcher
from desk.incidents import IncidentManager
from desk.numbering import NumberingService
from desk.sla_rules import SlaAdmin
from desk.store import DeskStore
from desk.tickets import TicketManager

_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("helpdesk.api")

settings = get_settings()


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def wire_services(state: Any, store: DeskStore, user_store: UserStore, config: Settings) -> None:
    """Build the managers over the given stores and attach them to state.

    Shared by the lifespan and the test suite so both assemble the object
    graph the same way.
    """
    branches = BranchDirectory(
        store.list_branch_acronyms,
        fallback=config.default_branches,
        ttl=config.branch_cache_seconds,
    )
    sla = SlaCalculator(store)
    numbering = NumberingService(store, branches)
    dispatcher = Dispatcher(store)
    attachments = AttachmentIndex(store, config.uploads_dir)

    state.desk_store = store
    state.user_store = user_store
    state.branches = branches
    state.dispatcher = dispatcher
    state.tickets = TicketManager(store, user_store, sla, numbering, dispatcher, attachments)
    state.incidents = IncidentManager(store, user_store, numbering, dispatcher)
    state.conversion = ConversionCoordinator(store, user_store, numbering, dispatcher)
    state.sla_admin = SlaAdmin(store, sla, dispatcher)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open stores on startup, close them on shutdown."""
    logger.info("Helpdesk API starting up")
    store = DeskStore(settings.database_url)
    user_store = UserStore(settings.auth_database_url)
    wire_services(app.state, store, user_store, settings)
    if not user_store.has_users():
        logger.warning("No users exist -- run `python main.py create-admin` to create the administrator")
    logger.info("Stores initialized")

    yield

    store.close()
    user_store.close()
    logger.info("Helpdesk API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Helpdesk API",
    description="Support tickets, security incidents, SLA tracking, and ticket-to-incident conversion.",
    version=_VERSION,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced by auth-protected routes below.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    allow_credentials=True,
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPIMiddleware reads the limiter from app.state.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(tickets_router, prefix="/api/v1", tags=["Tickets"])
app.include_router(incidents_router, prefix="/api/v1", tags=["Incidents"])
app.include_router(sla_router, prefix="/api/v1", tags=["SLA"])
app.include_router(notifications_router, prefix="/api/v1", tags=["Notifications"])
app.include_router(audit_router, prefix="/api/v1", tags=["Audit"])


# ---------------------------------------------------------------------------
# API documentation (signed-in actors only)
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(actor: Actor = Depends(get_current_user)):
    """Swagger UI for signed-in actors."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Helpdesk API")


@app.get("/redoc", include_in_schema=False)
async def redoc(actor: Actor = Depends(get_current_user)):
    """ReDoc for signed-in actors."""
    return get_redoc_html(openapi_url="/openapi.json", title="Helpdesk API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every failure, engine or framework, leaves as {"error": {code, message, detail, context}}.
# ---------------------------------------------------------------------------


@app.exception_handler(DeskError)
async def desk_error_handler(request: Request, exc: DeskError) -> JSONResponse:
    """Translate engine errors into the envelope, keeping their context.

    ConversionIncomplete is logged at ERROR: it marks a half-finished
    conversion that an operator has to reconcile.
    """
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s %s", exc.code, request.method, request.url.path, exc.message, exc.context)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=exc.code,
                message=exc.message,
                context=exc.context or None,
            )
        ).model_dump(),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error and a Retry-After header."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed body, path, or query: 422 validation_error."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Wrap HTTPException in the envelope.

    Auth dependencies raise with a dict detail ({"code", "message"}); that
    dict becomes the error object as is.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(OperationalError)
async def store_unavailable_handler(request: Request, exc: OperationalError) -> JSONResponse:
    """The database could not be reached or refused the statement."""
    logger.exception("Store unavailable on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=503,
        content=ErrorResponse(
            error=ErrorDetail(
                code="dependency_failure",
                message="The data store is unavailable. Try again later.",
                context={"partial": False},
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything not handled above answers 500 internal_error.

    The traceback goes to the log; the body carries no exception text.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable.
# No rate limit and no auth -- load balancers must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and database reachability."""
    database = "ok"
    try:
        request.app.state.desk_store.ping()
    except SQLAlchemyError:
        logger.warning("Health check: database unreachable")
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=_VERSION,
        components={"app": "ok", "database": database},
    )
