"""
FastAPI application for the academic portal API.

Routers: break-glass elevation, audit log queries and user/role management.
Every BreakGlassError becomes a JSON body ``{"error", "kind"}`` with the
error's status code.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from academic_portal.core.config import settings
from academic_portal.core.database import close_db, init_db
from academic_portal.core.errors import BreakGlassError, ValidationFailed
from academic_portal.core.middleware import (
    add_security_headers,
    configure_csrf,
    configure_rate_limiting,
)
from academic_portal.modules.audit.routes import router as audit_router
from academic_portal.modules.break_glass.routes import router as break_glass_router
from academic_portal.modules.users.routes import router as users_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from academic_portal.core.sentry import init_sentry

    init_sentry()
    # Deployed databases are migrated with Alembic
    if settings.ENVIRONMENT == "development":
        await init_db()
    logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} started ({settings.ENVIRONMENT})")

    yield

    await close_db()
    logger.info(f"{settings.APP_NAME} stopped")


async def break_glass_error_handler(request: Request, exc: BreakGlassError) -> JSONResponse:
    headers = {"Retry-After": "1"} if exc.retryable else None
    if exc.status_code >= 500:
        logger.warning(f"{exc.kind} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies and query strings are reported like any other ValidationFailed."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ())[1:])
    message = f"Invalid {field}: {first.get('msg')}" if field else "Invalid request"
    return await break_glass_error_handler(request, ValidationFailed(message))


async def health_check():
    """
    Component health for uptime monitoring.

    ``status`` is healthy, degraded (a warning such as a stalled expiry
    sweep) or unhealthy (database or Redis unreachable).
    """
    from academic_portal.core.health import get_health_metrics

    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        **await get_health_metrics(),
    }


def _allowed_origins():
    if settings.DEBUG:
        return ["http://localhost:3000", "http://localhost:8000"]
    return [settings.APP_URL]


def create_app(enable_security_middleware: bool = True) -> FastAPI:
    """
    Build the application.

    Args:
        enable_security_middleware: False skips CSRF and rate limiting (tests)
    """
    app = FastAPI(
        title=settings.APP_NAME,
        description="Academic portal API: roles, break-glass elevation and audit log",
        version=settings.APP_VERSION,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url=None,
        lifespan=lifespan,
    )

    app.add_exception_handler(BreakGlassError, break_glass_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)

    # Last registered runs first: headers, rate limit, CSRF, CORS, then the session cookie
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.SESSION_SECRET_KEY,
        max_age=settings.SESSION_MAX_AGE_HOURS * 3600,
        same_site="lax",
        https_only=settings.is_production,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if enable_security_middleware:
        configure_csrf(app)
        configure_rate_limiting(app)
    add_security_headers(app)

    for router in (break_glass_router, audit_router, users_router):
        app.include_router(router)
    app.add_api_route("/health", health_check, methods=["GET"])

    return app


app = create_app()
