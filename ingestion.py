"""Log and metric ingestion: validate, default, then hand off to the store."""
import html
import logging
from typing import List, Sequence

from exceptions import ValidationError
from models import EndpointMetric, LogEntry, LogLevel, ensure_utc, utcnow

logger = logging.getLogger("insight.ingestion")

VALID_LOG_LEVELS = frozenset(level.value for level in LogLevel)
VALID_METHODS = frozenset({"GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS", "HEAD"})


def validate_log_entry(entry: LogEntry):
    if not entry.service_name or not entry.service_name.strip():
        raise ValidationError("service name is required")

    if not entry.message:
        raise ValidationError("message is required")

    if entry.log_level and entry.log_level not in VALID_LOG_LEVELS:
        raise ValidationError(f"invalid log level: {entry.log_level}")


def prepare_log_entry(entry: LogEntry) -> LogEntry:
    """Fill defaults: timestamp now, empty metadata, null correlation IDs, escaped message."""
    return entry.model_copy(update={
        "message": html.escape(entry.message),
        "log_level": entry.log_level or None,
        "timestamp": ensure_utc(entry.timestamp) if entry.timestamp else utcnow(),
        "trace_id": entry.trace_id or None,
        "span_id": entry.span_id or None,
        "metadata": entry.metadata if entry.metadata else {},
    })


async def ingest_log(store, entry: LogEntry) -> LogEntry:
    validate_log_entry(entry)
    return await store.insert_log(prepare_log_entry(entry))


async def ingest_bulk(store, entries: Sequence[LogEntry]) -> List[LogEntry]:
    """
    Apply a batch of log entries as one all-or-nothing unit.

    Every entry is validated before the store is touched, so one bad entry
    rejects the whole batch. The returned entries carry store-assigned IDs in
    submission order.

    Raises:
        ValidationError: empty batch or any invalid entry
        StorageError: the atomic insert failed; nothing was written
    """
    if not entries:
        raise ValidationError("at least one log entry is required")

    for index, entry in enumerate(entries):
        try:
            validate_log_entry(entry)
        except ValidationError as e:
            raise ValidationError(f"entry {index}: {e.message}")

    prepared = [prepare_log_entry(entry) for entry in entries]
    stored = await store.insert_logs_atomically(prepared)
    logger.info(f"Ingested bulk batch of {len(stored)} log entries")
    return stored


def validate_metric(metric: EndpointMetric):
    if not metric.service_name:
        raise ValidationError("service name is required")

    if not metric.path:
        raise ValidationError("path is required")

    if not metric.method:
        raise ValidationError("method is required")

    if metric.method.upper() not in VALID_METHODS:
        raise ValidationError("invalid HTTP method")

    if metric.status_code < 100 or metric.status_code > 599:
        raise ValidationError("status code must be between 100 and 599")

    if metric.duration_ms < 0:
        raise ValidationError("duration cannot be negative")

    if not metric.source.language:
        raise ValidationError("source language is required")


async def record_metric(store, metric: EndpointMetric) -> EndpointMetric:
    validate_metric(metric)
    metric = metric.model_copy(update={
        "method": metric.method.upper(),
        "timestamp": ensure_utc(metric.timestamp) if metric.timestamp else utcnow(),
    })
    return await store.insert_metric(metric)
