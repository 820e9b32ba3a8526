"""insight: telemetry ingestion and query service for metrics, logs and traces."""
import os
import uuid
import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import Settings, settings, get_environment_info
from db import Database, db
from auth import AuthGate, issue_token
from exceptions import InsightError, ValidationError
from ingestion import ingest_bulk, ingest_log, record_metric
from middleware import AccessLogMiddleware, AuthMiddleware, RateLimitMiddleware, error_response, insight_error_response
from models import (
    BulkLogResponse,
    EndpointMetric,
    LogEntry,
    LogFilter,
    MetricFilter,
    Span,
    SpanCreate,
    TokenRequest,
    TokenResponse,
    Trace,
    TraceCreate,
    TraceFilter,
)
from ratelimit import RateLimiter
from tracing import TraceLifecycle


# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("insight")

VERSION = "1.0.0"

router = APIRouter()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    """RFC 3339 query parameter; unparseable values are ignored."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _paging(request: Request, limit: Optional[str], offset: Optional[str]):
    app_settings: Settings = request.app.state.settings
    parsed_limit = _parse_int(limit)
    if parsed_limit is None or parsed_limit < 1:
        parsed_limit = app_settings.DEFAULT_QUERY_LIMIT
    parsed_limit = min(parsed_limit, app_settings.MAX_QUERY_LIMIT)

    parsed_offset = _parse_int(offset)
    if parsed_offset is None or parsed_offset < 0:
        parsed_offset = 0
    return parsed_limit, parsed_offset


def get_store(request: Request) -> Database:
    return request.app.state.db


def get_lifecycle(request: Request) -> TraceLifecycle:
    return request.app.state.lifecycle


# Health and system endpoints
@router.get("/health", tags=["System"])
@router.get("/api/health", tags=["System"])
async def health_check(store: Database = Depends(get_store)):
    """Public health check; never rate limited or authenticated."""
    db_health = await store.health_check()
    return {
        "status": "healthy" if db_health.get("status") == "healthy" else "degraded",
        "timestamp": _now(),
        "version": VERSION,
        "database": db_health,
    }


@router.get("/", tags=["Root"])
async def root(request: Request):
    """Root endpoint with service information."""
    return {
        "service": "insight",
        "version": VERSION,
        "description": "Metrics, logs and distributed traces over HTTP",
        "status": "operational",
        "timestamp": _now(),
        "environment": get_environment_info(request.app.state.settings),
        "endpoints": {
            "health": "/health",
            "metrics": "/api/metrics",
            "logs": "/api/logs",
            "bulk_logs": "/api/logs/bulk",
            "traces": "/api/traces",
            "spans": "/api/spans",
        },
    }


# Metrics endpoints
@router.post("/api/metrics", status_code=201, response_model=EndpointMetric, tags=["Metrics"])
async def post_metric(metric: EndpointMetric = Body(...), store: Database = Depends(get_store)):
    return await record_metric(store, metric)


@router.get("/api/metrics", response_model=List[EndpointMetric], tags=["Metrics"])
async def get_metrics(
    request: Request,
    service: Optional[str] = None,
    path: Optional[str] = None,
    method: Optional[str] = None,
    min_status: Optional[str] = None,
    max_status: Optional[str] = None,
    limit: Optional[str] = None,
    offset: Optional[str] = None,
    store: Database = Depends(get_store),
):
    page_limit, page_offset = _paging(request, limit, offset)
    filters = MetricFilter(
        service=service,
        path=path,
        method=method,
        min_status=_parse_int(min_status),
        max_status=_parse_int(max_status),
        limit=page_limit,
        offset=page_offset,
    )
    return await store.fetch_metrics(filters)


# Log endpoints
@router.post("/api/logs", status_code=201, response_model=LogEntry, tags=["Logs"])
async def post_log(entry: LogEntry = Body(...), store: Database = Depends(get_store)):
    return await ingest_log(store, entry)


@router.post("/api/logs/bulk", status_code=201, response_model=BulkLogResponse, tags=["Logs"])
async def post_logs_bulk(entries: List[LogEntry] = Body(...), store: Database = Depends(get_store)):
    """Insert a batch of log entries atomically; IDs come back in submission order."""
    stored = await ingest_bulk(store, entries)
    return BulkLogResponse(count=len(stored), ids=[entry.id for entry in stored], entries=stored)


@router.get("/api/logs", response_model=List[LogEntry], tags=["Logs"])
async def get_logs(
    request: Request,
    service: Optional[str] = None,
    level: Optional[str] = None,
    message: Optional[str] = None,
    start_time: Optional[str] = None,
    end_time: Optional[str] = None,
    limit: Optional[str] = None,
    offset: Optional[str] = None,
    store: Database = Depends(get_store),
):
    page_limit, page_offset = _paging(request, limit, offset)
    filters = LogFilter(
        service=service,
        level=level,
        message=message,
        start_time=_parse_time(start_time),
        end_time=_parse_time(end_time),
        limit=page_limit,
        offset=page_offset,
    )
    return await store.fetch_logs(filters)


# Trace endpoints
@router.post("/api/traces", status_code=201, response_model=Trace, tags=["Traces"])
async def create_trace(payload: TraceCreate = Body(...), lifecycle: TraceLifecycle = Depends(get_lifecycle)):
    return await lifecycle.start_trace(
        payload.service_name,
        trace_id=payload.id,
        start_time=payload.start_time,
        end_time=payload.end_time,
    )


@router.get("/api/traces", response_model=List[Trace], tags=["Traces"])
async def get_traces(
    request: Request,
    service: Optional[str] = None,
    start_time: Optional[str] = None,
    end_time: Optional[str] = None,
    limit: Optional[str] = None,
    offset: Optional[str] = None,
    lifecycle: TraceLifecycle = Depends(get_lifecycle),
):
    page_limit, page_offset = _paging(request, limit, offset)
    filters = TraceFilter(
        service=service,
        start_time=_parse_time(start_time),
        end_time=_parse_time(end_time),
        limit=page_limit,
        offset=page_offset,
    )
    return await lifecycle.list_traces(filters)


@router.get("/api/traces/{trace_id}", response_model=Trace, tags=["Traces"])
async def get_trace(trace_id: str, lifecycle: TraceLifecycle = Depends(get_lifecycle)):
    return await lifecycle.get_trace(trace_id)


@router.post("/api/traces/{trace_id}/end", response_model=Trace, tags=["Traces"])
async def end_trace(trace_id: str, lifecycle: TraceLifecycle = Depends(get_lifecycle)):
    return await lifecycle.end_trace(trace_id)


@router.get("/api/traces/{trace_id}/spans", response_model=List[Span], tags=["Traces"])
async def get_trace_spans(trace_id: str, lifecycle: TraceLifecycle = Depends(get_lifecycle)):
    return await lifecycle.list_spans(trace_id)


# Span endpoints
@router.post("/api/spans", status_code=201, response_model=Span, tags=["Spans"])
async def create_span(payload: SpanCreate = Body(...), lifecycle: TraceLifecycle = Depends(get_lifecycle)):
    return await lifecycle.start_span(
        payload.trace_id,
        payload.service,
        payload.operation,
        parent_id=payload.parent_id,
        span_id=payload.id,
        start_time=payload.start_time,
        end_time=payload.end_time,
    )


@router.get("/api/spans/{span_id}", response_model=Span, tags=["Spans"])
async def get_span(span_id: str, lifecycle: TraceLifecycle = Depends(get_lifecycle)):
    return await lifecycle.get_span(span_id)


@router.post("/api/spans/{span_id}/end", response_model=Span, tags=["Spans"])
async def end_span(span_id: str, lifecycle: TraceLifecycle = Depends(get_lifecycle)):
    return await lifecycle.end_span(span_id)


# Authentication endpoints
@router.post("/api/auth/token", status_code=201, response_model=TokenResponse, tags=["Authentication"])
async def generate_token_endpoint(request: Request, payload: TokenRequest = Body(...)):
    """Mint a role token signed with JWT_SECRET (admin only)."""
    secret = request.app.state.settings.JWT_SECRET
    if not secret:
        raise ValidationError("JWT_SECRET is not configured; tokens cannot be issued")
    if not payload.role.strip():
        raise ValidationError("role is required")

    token, expires_at = issue_token(payload.role, secret, payload.expires_in)
    logger.info(f"Token issued for role {payload.role.strip()}")
    return TokenResponse(token=token, role=payload.role.strip(), expires_at=expires_at)


async def sweep_rate_limits(limiter: RateLimiter, interval: float):
    """Periodically drop buckets whose window has expired."""
    while True:
        await asyncio.sleep(interval)
        removed = limiter.sweep()
        if removed:
            logger.debug(f"Rate limit sweep removed {removed} buckets, {len(limiter)} remain")


def create_app(app_settings: Settings = settings, database: Optional[Database] = None) -> FastAPI:
    """Build the application with its own limiter, auth gate and lifecycle manager."""
    database = database or db

    app = FastAPI(
        title="insight",
        description="Metrics, logs and distributed traces over HTTP",
        version=VERSION,
        docs_url="/docs" if app_settings.DEBUG else None,
        redoc_url="/redoc" if app_settings.DEBUG else None
    )
    app.state.settings = app_settings
    app.state.db = database
    app.state.limiter = RateLimiter(app_settings.RATE_LIMIT, app_settings.RATE_LIMIT_WINDOW_SECONDS)
    app.state.gate = AuthGate(app_settings.API_KEY, app_settings.JWT_SECRET)
    app.state.lifecycle = TraceLifecycle(database)
    app.state.sweeper = None

    # Exception handlers
    @app.exception_handler(InsightError)
    async def insight_exception_handler(request: Request, exc: InsightError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.warning(f"{request.method} {request.url.path} rejected: {exc.message}")
        return insight_error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle request body/schema errors."""
        logger.warning(f"{request.method} {request.url.path} invalid request body")
        return error_response(request, 422, "Validation error", "Invalid request data", details=jsonable_errors(exc))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle HTTP exceptions with consistent format."""
        return error_response(request, exc.status_code, "HTTP error", str(exc.detail))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler for better error reporting."""
        request_id = getattr(request.state, "request_id", str(uuid.uuid4()))
        logger.error(f"Unhandled exception in {request.url.path}: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "message": "An unexpected error occurred",
                "request_id": request_id,
                "timestamp": _now(),
            }
        )

    # Last added runs first: access log -> rate limit -> auth -> routes
    app.add_middleware(AuthMiddleware, gate=app.state.gate)
    app.add_middleware(RateLimitMiddleware, limiter=app.state.limiter)
    app.add_middleware(AccessLogMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup_event():
        """Connect to the store and start the rate limit sweeper."""
        logger.info("Starting insight service initialization...")
        try:
            await database.initialize(
                app_settings.DATABASE_URL,
                retries=app_settings.DB_CONNECT_RETRIES,
                retry_delay=app_settings.DB_RETRY_DELAY,
                pool_size=app_settings.DB_POOL_SIZE,
                max_overflow=app_settings.DB_MAX_OVERFLOW,
            )
        except InsightError as e:
            logger.error(f"Database initialization failed: {e.message}")

        app.state.sweeper = asyncio.create_task(
            sweep_rate_limits(app.state.limiter, app_settings.RATE_LIMIT_SWEEP_INTERVAL)
        )
        env = "kubernetes" if os.environ.get("KUBERNETES_SERVICE_HOST") else "standalone"
        logger.info(
            f"insight started in {env} environment "
            f"(database connected: {database.is_connected}, auth enabled: {app.state.gate.enabled})"
        )

    @app.on_event("shutdown")
    async def shutdown_event():
        """Cleanup on shutdown."""
        logger.info("Shutting down insight service...")
        if app.state.sweeper is not None:
            app.state.sweeper.cancel()
            try:
                await app.state.sweeper
            except asyncio.CancelledError:
                pass
        await database.close()

    app.include_router(router)
    return app


def jsonable_errors(exc: RequestValidationError):
    return jsonable_encoder(exc.errors())


app = create_app()


# Application entry point
if __name__ == "__main__":
    import uvicorn

    logger.info("=" * 60)
    logger.info("Starting insight telemetry service")
    logger.info(f"Host: {settings.HOST}")
    logger.info(f"Port: {settings.PORT}")
    logger.info(f"Debug mode: {settings.DEBUG}")
    logger.info(f"Rate limit: {settings.RATE_LIMIT} req/{settings.RATE_LIMIT_WINDOW_SECONDS:g}s")
    logger.info(f"Authentication: {'enabled' if settings.auth_enabled else 'disabled'}")
    logger.info("=" * 60)

    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level="debug" if settings.DEBUG else "info",
        access_log=False,
        server_header=False,
        reload=settings.DEBUG,
    )
