"""Middleware for admission control, authentication and access logging in insight."""
import math
import time
import uuid
import logging
from datetime import datetime, timezone
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from auth import AuthGate, requires_auth
from exceptions import AuthenticationError, AuthorizationError, InsightError
from ratelimit import HEALTH_PATHS, RateLimiter, client_key_from_headers

logger = logging.getLogger("insight.middleware")


def client_identity(request: Request) -> str:
    return client_key_from_headers(request.headers, request.client.host if request.client else None)


def error_response(request: Request, status_code: int, error: str, message: str, **extra) -> JSONResponse:
    """Structured error body shared by middleware and exception handlers."""
    content = {
        "error": error,
        "message": message,
        "status_code": status_code,
        "request_id": getattr(request.state, "request_id", None),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


def insight_error_response(request: Request, exc: InsightError) -> JSONResponse:
    return error_response(request, exc.status_code, exc.error, exc.message)


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Assigns a request ID and logs method, path, status and latency."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = request_id

        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception as e:
            logger.error(f"Request error: {str(e)}")
            raise
        finally:
            duration_ms = (time.time() - start_time) * 1000
            logger.info(
                f"{request.method} {request.url.path} {status_code} {duration_ms:.2f}ms "
                f"client={client_identity(request)} request_id={request_id}"
            )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rejects requests once a client exceeds its quota for the current window."""

    def __init__(self, app, limiter: RateLimiter):
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(self, request: Request, call_next):
        # Health checks never consume or report quota
        if request.url.path in HEALTH_PATHS:
            return await call_next(request)

        client_key = client_identity(request)
        allowed, remaining = self.limiter.admit(client_key)
        limit_headers = {
            "X-RateLimit-Limit": str(self.limiter.max_requests),
            "X-RateLimit-Remaining": str(remaining),
        }

        if not allowed:
            window = math.ceil(self.limiter.window_seconds)
            logger.warning(f"Rate limit exceeded for {client_key}: {request.method} {request.url.path}")
            response = error_response(
                request,
                429,
                "Rate limit exceeded",
                f"Maximum {self.limiter.max_requests} requests per {window} seconds allowed",
                limit=self.limiter.max_requests,
                window_seconds=window,
                retry_after=self.limiter.retry_after(client_key),
            )
            response.headers.update(limit_headers)
            response.headers["Retry-After"] = str(window)
            return response

        response = await call_next(request)
        response.headers.update(limit_headers)
        return response


class AuthMiddleware(BaseHTTPMiddleware):
    """Authenticates every non-health request and enforces the path role table."""

    def __init__(self, app, gate: AuthGate):
        super().__init__(app)
        self.gate = gate

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        request.state.role = None

        if not requires_auth(path):
            logger.debug(f"Public endpoint accessed: {request.method} {path}")
            return await call_next(request)

        if not self.gate.enabled:
            logger.debug(f"Authentication disabled, allowing {request.method} {path}")
            return await call_next(request)

        try:
            request.state.role = self.gate.check(request)
        except AuthenticationError as e:
            logger.warning(f"Authentication failed from {client_identity(request)}: {request.method} {path}")
            return insight_error_response(request, e)
        except AuthorizationError as e:
            logger.warning(f"Access denied for {client_identity(request)}: {request.method} {path}: {e.message}")
            return insight_error_response(request, e)

        logger.debug(f"Authenticated request: {request.method} {path} as {request.state.role}")
        return await call_next(request)
