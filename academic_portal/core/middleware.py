"""
Request hardening for the portal API: CSRF, rate limits and response headers.

All three are wired in ``create_app``. Tests build the app with
``enable_security_middleware=False``, which keeps the headers but skips
CSRF and the Redis-backed limiter.
"""

from typing import Callable, Dict

from fastapi import FastAPI, Request, Response
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware
from starlette_csrf import CSRFMiddleware

from academic_portal.core.config import settings

CSRF_EXEMPT_PATHS = ["/health"]


def security_headers(production: bool) -> Dict[str, str]:
    headers = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
        "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'; base-uri 'none'",
        # Break-glass responses can carry a promotion code
        "Cache-Control": "no-store",
    }
    if production:
        headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return headers


class SecurityHeadersMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        response.headers.update(security_headers(settings.is_production))
        return response


def configure_csrf(app: FastAPI) -> None:
    """Double-submit cookie; the frontend echoes ``csrf_token`` in ``X-CSRF-Token``."""
    app.add_middleware(
        CSRFMiddleware,
        secret=settings.SECRET_KEY,
        cookie_name="csrf_token",
        cookie_secure=settings.is_production,
        cookie_httponly=False,
        cookie_samesite="lax",
        header_name="X-CSRF-Token",
        exempt_urls=CSRF_EXEMPT_PATHS,
    )


def configure_rate_limiting(app: FastAPI, storage_uri: str = None) -> Limiter:
    """
    Attach a per-client fixed-window limiter.

    Counters live in Redis (``REDIS_URL``) so every API worker shares them.
    Returns the limiter so routes can add tighter per-endpoint limits.
    """
    limiter = Limiter(
        key_func=get_remote_address,
        default_limits=[settings.RATE_LIMIT_DEFAULT],
        storage_uri=storage_uri or settings.REDIS_URL,
        strategy="fixed-window",
        headers_enabled=True,
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)
    return limiter


def add_security_headers(app: FastAPI) -> None:
    app.add_middleware(SecurityHeadersMiddleware)
