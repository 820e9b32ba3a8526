"""Trace and span lifecycle: OPEN on start, CLOSED (terminal) on end."""
import uuid
import logging
from datetime import datetime
from typing import List, Optional

from exceptions import NotFoundError, ValidationError
from models import Span, Trace, TraceFilter, ensure_utc, utcnow

logger = logging.getLogger("insight.tracing")


def generate_id() -> str:
    return str(uuid.uuid4())


def duration_ms(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() * 1000


def _close_time(start: datetime) -> datetime:
    # a caller-supplied start may lie in the future; never close before it
    return max(utcnow(), start)


def _resolve_times(start_time: Optional[datetime], end_time: Optional[datetime]):
    start = ensure_utc(start_time) if start_time else utcnow()
    end = ensure_utc(end_time)
    if end is not None and end < start:
        raise ValidationError("end time cannot be before start time")
    return start, end, (duration_ms(start, end) if end is not None else None)


class TraceLifecycle:
    """
    Computes trace/span state transitions and writes them through ``store``.

    The store is the system of record; this class holds no state of its own.
    Ending an already closed trace or span is a no-op that returns the stored
    entity. The store closes rows with a conditional update, so concurrent
    end calls produce exactly one write.
    """

    def __init__(self, store):
        self.store = store

    async def start_trace(self, service_name: str, trace_id: Optional[str] = None,
                          start_time: Optional[datetime] = None,
                          end_time: Optional[datetime] = None) -> Trace:
        if not service_name or not service_name.strip():
            raise ValidationError("service name is required")

        start, end, duration = _resolve_times(start_time, end_time)
        trace = Trace(
            id=trace_id or generate_id(),
            service_name=service_name,
            start_time=start,
            end_time=end,
            duration_ms=duration,
        )
        await self.store.insert_trace(trace)
        logger.debug(f"Started trace {trace.id} for {service_name}")
        return trace

    async def get_trace(self, trace_id: str) -> Trace:
        trace = await self.store.fetch_trace_by_id(trace_id)
        if trace is None:
            raise NotFoundError(f"Trace {trace_id} not found")
        return trace

    async def list_traces(self, filters: TraceFilter) -> List[Trace]:
        return await self.store.fetch_traces(filters)

    async def end_trace(self, trace_id: str) -> Trace:
        trace = await self.get_trace(trace_id)
        if trace.closed:
            logger.info(f"Trace {trace_id} already ended, returning stored result")
            return trace

        end = _close_time(trace.start_time)
        closed = trace.model_copy(update={
            "end_time": end,
            "duration_ms": duration_ms(trace.start_time, end),
        })
        if not await self.store.update_trace(closed):
            # lost a race with a concurrent end call
            return await self.get_trace(trace_id)

        logger.debug(f"Ended trace {trace_id} after {closed.duration_ms:.2f}ms")
        return closed

    async def start_span(self, trace_id: str, service: str, operation: str,
                         parent_id: Optional[str] = None, span_id: Optional[str] = None,
                         start_time: Optional[datetime] = None,
                         end_time: Optional[datetime] = None) -> Span:
        if not service or not service.strip():
            raise ValidationError("service name is required")
        if not trace_id:
            raise ValidationError("trace ID is required")
        if not operation:
            raise ValidationError("operation is required")

        start, end, duration = _resolve_times(start_time, end_time)
        span = Span(
            id=span_id or generate_id(),
            trace_id=trace_id,
            parent_id=parent_id or None,
            service=service,
            operation=operation,
            start_time=start,
            end_time=end,
            duration_ms=duration,
        )
        await self.store.insert_span(span)
        logger.debug(f"Started span {span.id} ({operation}) in trace {trace_id}")
        return span

    async def get_span(self, span_id: str) -> Span:
        span = await self.store.fetch_span_by_id(span_id)
        if span is None:
            raise NotFoundError(f"Span {span_id} not found")
        return span

    async def list_spans(self, trace_id: str) -> List[Span]:
        return await self.store.fetch_spans_by_trace(trace_id)

    async def end_span(self, span_id: str) -> Span:
        span = await self.get_span(span_id)
        if span.closed:
            logger.info(f"Span {span_id} already ended, returning stored result")
            return span

        end = _close_time(span.start_time)
        closed = span.model_copy(update={
            "end_time": end,
            "duration_ms": duration_ms(span.start_time, end),
        })
        if not await self.store.update_span(closed):
            return await self.get_span(span_id)

        logger.debug(f"Ended span {span_id} after {closed.duration_ms:.2f}ms")
        return closed
