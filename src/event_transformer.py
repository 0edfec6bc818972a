"""
Segment Event Transformer
Maps a completed request's log record onto a Segment track event.
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from errors import IncompleteRecord

_NUMERIC_SEGMENT = re.compile(r"[^/]*[0-9][^/]*")


class RequestInfo(BaseModel):
    method: str
    uri: str
    request_uri: str
    querystring: Dict[str, Any] = Field(default_factory=dict)
    headers: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("headers", mode="before")
    @classmethod
    def lowercase_header_names(cls, value: Any) -> Any:
        if isinstance(value, Mapping):
            return {str(name).lower(): item for name, item in value.items()}
        return value


class ResponseInfo(BaseModel):
    status: int


class Latencies(BaseModel):
    """Milliseconds spent upstream, inside the gateway, and in total."""

    proxy: Optional[int] = None
    kong: Optional[int] = None
    request: Optional[int] = None


class LogRecord(BaseModel):
    """Serialized view of one proxied request."""

    model_config = ConfigDict(frozen=True)

    request: RequestInfo
    response: ResponseInfo
    latencies: Latencies = Field(default_factory=Latencies)
    client_ip: Optional[str] = None
    started_at: float

    @classmethod
    def coerce(cls, record: Union["LogRecord", Mapping[str, Any]]) -> "LogRecord":
        """Accept an existing record or validate a raw mapping."""
        if isinstance(record, cls):
            return record
        try:
            return cls.model_validate(record)
        except ValidationError as e:
            fields = sorted({".".join(str(part) for part in err["loc"]) for err in e.errors()})
            raise IncompleteRecord(
                "log record is missing required fields",
                fields=fields,
            ) from e

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup; repeated headers yield the first value."""
        value = self.request.headers.get(name.lower())
        if isinstance(value, (list, tuple)):
            value = value[0] if value else None
        return value


class EventProperties(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    method: str
    path: str
    uri: str
    querystring: str
    time_of_proxy: Optional[int] = Field(default=None, alias="timeOfProxy")
    time_of_kong: Optional[int] = Field(default=None, alias="timeOfKong")
    time_of_request: Optional[int] = Field(default=None, alias="timeOfRequest")
    status_code: int = Field(alias="statusCode")


class EventContext(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    ip: Optional[str] = None
    user_agent: Optional[str] = Field(default=None, alias="userAgent")


class AnalyticsEvent(BaseModel):
    """Segment track call payload."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    user_id: Any = Field(alias="userId")
    event: str
    properties: EventProperties
    context: EventContext
    timestamp: str

    def to_body(self) -> bytes:
        """Serialize with wire field names, omitting absent values."""
        return orjson.dumps(self.model_dump(by_alias=True, exclude_none=True))


def glob_path(path: str) -> str:
    """Replace every path segment containing a digit with ``*``."""
    return _NUMERIC_SEGMENT.sub("*", path)


def format_timestamp(started_at_ms: float) -> str:
    """Epoch milliseconds to ISO-8601 UTC with second precision."""
    moment = datetime.fromtimestamp(started_at_ms / 1000, tz=timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


def build_event(
    record: Union[LogRecord, Mapping[str, Any]],
    user_id: Any,
    glob_numeric_path_segments: bool = False,
) -> AnalyticsEvent:
    """
    Build the track event for a request.

    Args:
        record: LogRecord or raw serializer mapping
        user_id: Identity extracted from the caller's credential
        glob_numeric_path_segments: Collapse numeric path segments in the event name

    Raises:
        IncompleteRecord: required record fields are absent
    """
    record = LogRecord.coerce(record)
    request = record.request

    event_path = glob_path(request.uri) if glob_numeric_path_segments else request.uri

    return AnalyticsEvent(
        user_id=user_id,
        event=f"{request.method} {event_path}",
        properties=EventProperties(
            method=request.method,
            path=request.uri,
            uri=request.request_uri,
            querystring=orjson.dumps(request.querystring).decode("utf-8"),
            time_of_proxy=record.latencies.proxy,
            time_of_kong=record.latencies.kong,
            time_of_request=record.latencies.request,
            status_code=record.response.status,
        ),
        context=EventContext(ip=record.client_ip, user_agent=record.header("user-agent")),
        timestamp=format_timestamp(record.started_at),
    )
