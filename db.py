"""Relational storage for insight on SQLAlchemy's asyncio engine."""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
    insert,
    select,
    text,
    update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from config import settings
from exceptions import StorageError
from models import (
    EndpointMetric,
    LogEntry,
    LogFilter,
    MetricFilter,
    MetricSource,
    Span,
    Trace,
    TraceFilter,
    ensure_utc,
)

logger = logging.getLogger("insight.db")

metadata = MetaData()

logs = Table(
    "logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("service_name", String(255), nullable=False),
    Column("log_level", String(16)),
    Column("message", Text, nullable=False),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    Column("trace_id", String(128)),
    Column("span_id", String(128)),
    Column("metadata", JSON, nullable=False),
    Index("idx_logs_service_timestamp", "service_name", "timestamp"),
    Index("idx_logs_trace_id", "trace_id"),
)

metrics = Table(
    "metrics",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("service_name", String(255), nullable=False),
    Column("path", String(2048), nullable=False),
    Column("method", String(16), nullable=False),
    Column("status_code", Integer, nullable=False),
    Column("duration_ms", Float, nullable=False),
    Column("language", String(64), nullable=False),
    Column("framework", String(64)),
    Column("version", String(64)),
    Column("environment", String(64)),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    Column("request_id", String(128)),
    Index("idx_metrics_service_timestamp", "service_name", "timestamp"),
)

traces = Table(
    "traces",
    metadata,
    Column("id", String(128), primary_key=True),
    Column("service_name", String(255), nullable=False),
    Column("start_time", DateTime(timezone=True), nullable=False),
    Column("end_time", DateTime(timezone=True)),
    Column("duration_ms", Float),
    Index("idx_traces_service_start", "service_name", "start_time"),
)

spans = Table(
    "spans",
    metadata,
    Column("id", String(128), primary_key=True),
    Column("trace_id", String(128), nullable=False),
    Column("parent_id", String(128)),
    Column("service", String(255), nullable=False),
    Column("operation", String(255), nullable=False),
    Column("start_time", DateTime(timezone=True), nullable=False),
    Column("end_time", DateTime(timezone=True)),
    Column("duration_ms", Float),
    Index("idx_spans_trace_start", "trace_id", "start_time"),
)


def normalize_url(url: str) -> str:
    """Route plain postgres URLs through the asyncpg dialect."""
    for prefix in ("postgresql://", "postgres://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


def _row_to_log(row) -> LogEntry:
    return LogEntry(
        id=row.id,
        service_name=row.service_name,
        log_level=row.log_level,
        message=row.message,
        timestamp=ensure_utc(row.timestamp),
        trace_id=row.trace_id,
        span_id=row.span_id,
        metadata=row._mapping["metadata"] or {},
    )


def _row_to_metric(row) -> EndpointMetric:
    return EndpointMetric(
        id=row.id,
        service_name=row.service_name,
        path=row.path,
        method=row.method,
        status_code=row.status_code,
        duration_ms=row.duration_ms,
        source=MetricSource(language=row.language, framework=row.framework, version=row.version),
        environment=row.environment,
        timestamp=ensure_utc(row.timestamp),
        request_id=row.request_id,
    )


def _row_to_trace(row) -> Trace:
    return Trace(
        id=row.id,
        service_name=row.service_name,
        start_time=ensure_utc(row.start_time),
        end_time=ensure_utc(row.end_time),
        duration_ms=row.duration_ms,
    )


def _row_to_span(row) -> Span:
    return Span(
        id=row.id,
        trace_id=row.trace_id,
        parent_id=row.parent_id,
        service=row.service,
        operation=row.operation,
        start_time=ensure_utc(row.start_time),
        end_time=ensure_utc(row.end_time),
        duration_ms=row.duration_ms,
    )


class Database:
    """Storage collaborator: every public call either succeeds or raises StorageError."""

    def __init__(self):
        self._engine: Optional[AsyncEngine] = None
        self._url: Optional[str] = None
        self._connection_attempts = 0
        self._is_connected = False

    @property
    def is_connected(self) -> bool:
        return self._is_connected and self._engine is not None

    @property
    def engine(self) -> Optional[AsyncEngine]:
        return self._engine

    def _engine_options(self, url: str, pool_size: int, max_overflow: int) -> Dict[str, Any]:
        if url.startswith("sqlite"):
            if ":memory:" in url or url.rstrip("/").endswith("sqlite+aiosqlite:"):
                # one shared connection, otherwise every checkout sees an empty database
                return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
            return {}
        return {
            "pool_size": pool_size,
            "max_overflow": max_overflow,
            "pool_pre_ping": True,
        }

    async def initialize(self, url: Optional[str] = None, retries: Optional[int] = None,
                         retry_delay: Optional[float] = None,
                         pool_size: Optional[int] = None, max_overflow: Optional[int] = None):
        """Connect, create the schema, and retry a few times before giving up."""
        url = normalize_url(url or settings.DATABASE_URL)
        retries = retries if retries is not None else settings.DB_CONNECT_RETRIES
        retry_delay = retry_delay if retry_delay is not None else settings.DB_RETRY_DELAY
        pool_size = pool_size if pool_size is not None else settings.DB_POOL_SIZE
        max_overflow = max_overflow if max_overflow is not None else settings.DB_MAX_OVERFLOW
        last_error: Optional[Exception] = None

        for attempt in range(1, max(1, retries) + 1):
            self._connection_attempts = attempt
            engine = create_async_engine(url, future=True, **self._engine_options(url, pool_size, max_overflow))
            try:
                async with engine.begin() as conn:
                    await conn.run_sync(metadata.create_all)
            except (SQLAlchemyError, OSError) as e:
                last_error = e
                await engine.dispose()
                logger.warning(f"Database connection attempt {attempt}/{retries} failed: {e}")
                if attempt < retries:
                    await asyncio.sleep(retry_delay)
                continue

            self._engine = engine
            self._url = url
            self._is_connected = True
            logger.info(f"Connected to {engine.url.render_as_string(hide_password=True)}")
            return

        self._is_connected = False
        raise StorageError(f"Database connection failed after {retries} attempts: {last_error}")

    async def close(self):
        if self._engine is not None:
            await self._engine.dispose()
            logger.info("Database engine disposed")
        self._engine = None
        self._is_connected = False

    @asynccontextmanager
    async def _transaction(self, action: str):
        if self._engine is None:
            raise StorageError("Database is not initialized")
        try:
            async with self._engine.begin() as conn:
                yield conn
        except SQLAlchemyError as e:
            logger.error(f"Database error during {action}: {e}")
            raise StorageError(f"Failed to {action}") from e

    # Logs

    @staticmethod
    def _log_values(entry: LogEntry) -> Dict[str, Any]:
        return {
            "service_name": entry.service_name,
            "log_level": entry.log_level,
            "message": entry.message,
            "timestamp": ensure_utc(entry.timestamp),
            "trace_id": entry.trace_id,
            "span_id": entry.span_id,
            "metadata": entry.metadata if entry.metadata is not None else {},
        }

    async def _insert_log_row(self, conn: AsyncConnection, entry: LogEntry) -> LogEntry:
        result = await conn.execute(insert(logs).values(**self._log_values(entry)))
        return entry.model_copy(update={"id": result.inserted_primary_key[0]})

    async def insert_log(self, entry: LogEntry) -> LogEntry:
        async with self._transaction("insert log") as conn:
            return await self._insert_log_row(conn, entry)

    async def insert_logs_atomically(self, entries: List[LogEntry]) -> List[LogEntry]:
        """Insert every entry in one transaction; a failure on any row rolls back all of them."""
        stored: List[LogEntry] = []
        async with self._transaction("insert log batch") as conn:
            for entry in entries:
                stored.append(await self._insert_log_row(conn, entry))
        return stored

    async def fetch_logs(self, filters: LogFilter) -> List[LogEntry]:
        query = select(logs)
        if filters.service:
            query = query.where(logs.c.service_name == filters.service)
        if filters.level:
            query = query.where(logs.c.log_level == filters.level)
        if filters.message:
            query = query.where(logs.c.message.ilike(f"%{filters.message}%"))
        if filters.start_time:
            query = query.where(logs.c.timestamp >= ensure_utc(filters.start_time))
        if filters.end_time:
            query = query.where(logs.c.timestamp <= ensure_utc(filters.end_time))
        query = query.order_by(logs.c.timestamp.desc(), logs.c.id.desc())
        query = query.limit(filters.limit).offset(filters.offset)

        async with self._transaction("fetch logs") as conn:
            rows = (await conn.execute(query)).all()
        return [_row_to_log(row) for row in rows]

    async def count_logs(self) -> int:
        async with self._transaction("count logs") as conn:
            return (await conn.execute(select(func.count()).select_from(logs))).scalar_one()

    # Metrics

    async def insert_metric(self, metric: EndpointMetric) -> EndpointMetric:
        values = {
            "service_name": metric.service_name,
            "path": metric.path,
            "method": metric.method,
            "status_code": metric.status_code,
            "duration_ms": metric.duration_ms,
            "language": metric.source.language,
            "framework": metric.source.framework,
            "version": metric.source.version,
            "environment": metric.environment,
            "timestamp": ensure_utc(metric.timestamp),
            "request_id": metric.request_id,
        }
        async with self._transaction("insert metric") as conn:
            result = await conn.execute(insert(metrics).values(**values))
            metric_id = result.inserted_primary_key[0]
        return metric.model_copy(update={"id": metric_id})

    async def fetch_metrics(self, filters: MetricFilter) -> List[EndpointMetric]:
        query = select(metrics)
        if filters.service:
            query = query.where(metrics.c.service_name == filters.service)
        if filters.path:
            query = query.where(metrics.c.path.like(f"%{filters.path}%"))
        if filters.method:
            query = query.where(metrics.c.method == filters.method.upper())
        if filters.min_status:
            query = query.where(metrics.c.status_code >= filters.min_status)
        if filters.max_status:
            query = query.where(metrics.c.status_code <= filters.max_status)
        query = query.order_by(metrics.c.timestamp.desc(), metrics.c.id.desc())
        query = query.limit(filters.limit).offset(filters.offset)

        async with self._transaction("fetch metrics") as conn:
            rows = (await conn.execute(query)).all()
        return [_row_to_metric(row) for row in rows]

    # Traces

    async def insert_trace(self, trace: Trace) -> Trace:
        values = {
            "id": trace.id,
            "service_name": trace.service_name,
            "start_time": ensure_utc(trace.start_time),
            "end_time": ensure_utc(trace.end_time),
            "duration_ms": trace.duration_ms,
        }
        async with self._transaction("store trace") as conn:
            await conn.execute(insert(traces).values(**values))
        return trace

    async def update_trace(self, trace: Trace) -> bool:
        """Close an open trace. Returns False when it was already closed (or missing)."""
        query = (
            update(traces)
            .where(traces.c.id == trace.id, traces.c.end_time.is_(None))
            .values(end_time=ensure_utc(trace.end_time), duration_ms=trace.duration_ms)
        )
        async with self._transaction("update trace") as conn:
            result = await conn.execute(query)
            return result.rowcount == 1

    async def fetch_trace_by_id(self, trace_id: str) -> Optional[Trace]:
        async with self._transaction("fetch trace") as conn:
            row = (await conn.execute(select(traces).where(traces.c.id == trace_id))).first()
        return _row_to_trace(row) if row is not None else None

    async def fetch_traces(self, filters: TraceFilter) -> List[Trace]:
        query = select(traces)
        if filters.service:
            query = query.where(traces.c.service_name == filters.service)
        if filters.start_time:
            query = query.where(traces.c.start_time >= ensure_utc(filters.start_time))
        if filters.end_time:
            query = query.where(traces.c.start_time <= ensure_utc(filters.end_time))
        query = query.order_by(traces.c.start_time.desc())
        query = query.limit(filters.limit).offset(filters.offset)

        async with self._transaction("fetch traces") as conn:
            rows = (await conn.execute(query)).all()
        return [_row_to_trace(row) for row in rows]

    # Spans

    async def insert_span(self, span: Span) -> Span:
        values = {
            "id": span.id,
            "trace_id": span.trace_id,
            "parent_id": span.parent_id,
            "service": span.service,
            "operation": span.operation,
            "start_time": ensure_utc(span.start_time),
            "end_time": ensure_utc(span.end_time),
            "duration_ms": span.duration_ms,
        }
        async with self._transaction("store span") as conn:
            await conn.execute(insert(spans).values(**values))
        return span

    async def update_span(self, span: Span) -> bool:
        """Close an open span. Returns False when it was already closed (or missing)."""
        query = (
            update(spans)
            .where(spans.c.id == span.id, spans.c.end_time.is_(None))
            .values(end_time=ensure_utc(span.end_time), duration_ms=span.duration_ms)
        )
        async with self._transaction("update span") as conn:
            result = await conn.execute(query)
            return result.rowcount == 1

    async def fetch_span_by_id(self, span_id: str) -> Optional[Span]:
        async with self._transaction("fetch span") as conn:
            row = (await conn.execute(select(spans).where(spans.c.id == span_id))).first()
        return _row_to_span(row) if row is not None else None

    async def fetch_spans_by_trace(self, trace_id: str) -> List[Span]:
        query = select(spans).where(spans.c.trace_id == trace_id).order_by(spans.c.start_time)
        async with self._transaction("fetch spans") as conn:
            rows = (await conn.execute(query)).all()
        return [_row_to_span(row) for row in rows]

    async def health_check(self) -> Dict[str, Any]:
        """Ping the store and report its responsiveness."""
        health: Dict[str, Any] = {
            "database_connected": self.is_connected,
            "connection_attempts": self._connection_attempts,
        }

        if not self.is_connected:
            health["status"] = "unavailable"
            return health

        try:
            start_time = time.time()
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            health["db_response_time_ms"] = (time.time() - start_time) * 1000
            health["status"] = "healthy"
        except SQLAlchemyError as e:
            health["status"] = "degraded"
            health["error"] = str(e)

        return health


# Global database instance
db = Database()
