import asyncio
from datetime import timedelta

import pytest

from exceptions import NotFoundError, StorageError, ValidationError
from models import TraceFilter, utcnow
from tracing import TraceLifecycle, duration_ms


@pytest.fixture
def lifecycle(store):
    return TraceLifecycle(store)


async def test_start_then_end_trace(lifecycle):
    trace = await lifecycle.start_trace("checkout")
    assert not trace.closed
    assert trace.duration_ms is None

    ended = await lifecycle.end_trace(trace.id)
    assert ended.end_time >= ended.start_time
    assert ended.duration_ms == pytest.approx(duration_ms(ended.start_time, ended.end_time))

    stored = await lifecycle.get_trace(trace.id)
    assert stored.end_time == ended.end_time
    assert stored.duration_ms == pytest.approx(ended.duration_ms)


async def test_end_unknown_trace(lifecycle):
    with pytest.raises(NotFoundError):
        await lifecycle.end_trace("does-not-exist")


async def test_second_end_returns_stored_result(lifecycle):
    trace = await lifecycle.start_trace("checkout")
    first = await lifecycle.end_trace(trace.id)
    await asyncio.sleep(0.01)
    second = await lifecycle.end_trace(trace.id)

    assert second.end_time == first.end_time
    assert second.duration_ms == pytest.approx(first.duration_ms)


async def test_concurrent_end_closes_once(lifecycle):
    trace = await lifecycle.start_trace("checkout")
    results = await asyncio.gather(*(lifecycle.end_trace(trace.id) for _ in range(5)))

    stored = await lifecycle.get_trace(trace.id)
    assert all(result.end_time == stored.end_time for result in results)


async def test_trace_requires_service_name(lifecycle):
    with pytest.raises(ValidationError):
        await lifecycle.start_trace("  ")


async def test_supplied_end_before_start_rejected(lifecycle):
    start = utcnow()
    with pytest.raises(ValidationError):
        await lifecycle.start_trace("checkout", start_time=start, end_time=start - timedelta(seconds=1))


async def test_trace_created_closed(lifecycle):
    start = utcnow() - timedelta(seconds=2)
    trace = await lifecycle.start_trace("checkout", trace_id="t-1", start_time=start, end_time=start + timedelta(seconds=1))
    assert trace.id == "t-1"
    assert trace.closed
    assert trace.duration_ms == pytest.approx(1000.0)


async def test_future_start_never_negative(lifecycle):
    trace = await lifecycle.start_trace("checkout", start_time=utcnow() + timedelta(hours=1))
    ended = await lifecycle.end_trace(trace.id)
    assert ended.end_time == ended.start_time
    assert ended.duration_ms == 0


async def test_list_traces_by_service(lifecycle):
    await lifecycle.start_trace("checkout")
    await lifecycle.start_trace("checkout")
    await lifecycle.start_trace("billing")

    traces = await lifecycle.list_traces(TraceFilter(service="checkout"))
    assert len(traces) == 2
    assert {trace.service_name for trace in traces} == {"checkout"}


async def test_span_lifecycle(lifecycle):
    trace = await lifecycle.start_trace("checkout")
    started = utcnow()
    root = await lifecycle.start_span(trace.id, "checkout", "handle-request", start_time=started)
    child = await lifecycle.start_span(
        trace.id, "payments", "charge-card", parent_id=root.id, start_time=started + timedelta(milliseconds=5)
    )

    ended = await lifecycle.end_span(child.id)
    assert ended.end_time >= ended.start_time
    assert ended.duration_ms >= 0

    again = await lifecycle.end_span(child.id)
    assert again.end_time == ended.end_time

    spans = await lifecycle.list_spans(trace.id)
    assert [span.id for span in spans] == [root.id, child.id]
    assert spans[1].parent_id == root.id


async def test_span_validation(lifecycle):
    with pytest.raises(ValidationError):
        await lifecycle.start_span("", "checkout", "op")
    with pytest.raises(ValidationError):
        await lifecycle.start_span("t-1", "", "op")
    with pytest.raises(ValidationError):
        await lifecycle.start_span("t-1", "checkout", "")


async def test_span_under_unknown_trace_is_accepted(lifecycle):
    span = await lifecycle.start_span("never-started", "checkout", "op")
    assert (await lifecycle.get_span(span.id)).trace_id == "never-started"


async def test_end_unknown_span(lifecycle):
    with pytest.raises(NotFoundError):
        await lifecycle.end_span("missing")


class FailingStore:
    async def insert_trace(self, trace):
        raise StorageError("Failed to insert trace")


async def test_storage_failure_surfaces():
    with pytest.raises(StorageError):
        await TraceLifecycle(FailingStore()).start_trace("checkout")
