"""Data models for the insight service."""
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, Any, List, Optional
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to an aware UTC datetime; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    FATAL = "FATAL"


class LogEntry(BaseModel):
    """A single log record; ``id`` is assigned by the store."""
    model_config = ConfigDict(extra="forbid")

    id: Optional[int] = None
    service_name: str = ""
    log_level: Optional[str] = None
    message: str = ""
    timestamp: Optional[datetime] = None
    trace_id: Optional[str] = None
    span_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class MetricSource(BaseModel):
    language: str = ""
    framework: Optional[str] = None
    version: Optional[str] = None


class EndpointMetric(BaseModel):
    """Timing record for one HTTP call observed by an instrumented service."""
    model_config = ConfigDict(extra="forbid")

    id: Optional[int] = None
    service_name: str = ""
    path: str = ""
    method: str = ""
    status_code: int = 0
    duration_ms: float = 0.0
    source: MetricSource = Field(default_factory=MetricSource)
    environment: Optional[str] = None
    timestamp: Optional[datetime] = None
    request_id: Optional[str] = None


class Trace(BaseModel):
    id: str
    service_name: str
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_ms: Optional[float] = None

    @property
    def closed(self) -> bool:
        return self.end_time is not None


class Span(BaseModel):
    id: str
    trace_id: str
    parent_id: Optional[str] = None
    service: str
    operation: str
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_ms: Optional[float] = None

    @property
    def closed(self) -> bool:
        return self.end_time is not None


class TraceCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: Optional[str] = None
    service_name: str = ""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class SpanCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: Optional[str] = None
    trace_id: str = ""
    parent_id: Optional[str] = None
    service: str = ""
    operation: str = ""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class TokenClaims(BaseModel):
    """Claims carried by a signed access token."""
    role: str
    exp: Optional[float] = None


class TokenRequest(BaseModel):
    role: str
    expires_in: Optional[int] = Field(default=None, gt=0)


class TokenResponse(BaseModel):
    token: str
    role: str
    expires_at: Optional[datetime] = None


class LogFilter(BaseModel):
    service: Optional[str] = None
    level: Optional[str] = None
    message: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    limit: int = 100
    offset: int = 0


class MetricFilter(BaseModel):
    service: Optional[str] = None
    path: Optional[str] = None
    method: Optional[str] = None
    min_status: Optional[int] = None
    max_status: Optional[int] = None
    limit: int = 100
    offset: int = 0


class TraceFilter(BaseModel):
    service: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    limit: int = 100
    offset: int = 0


class BulkLogResponse(BaseModel):
    count: int
    ids: List[int]
    entries: List[LogEntry]
