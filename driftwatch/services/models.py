from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar
from uuid import uuid4

DEFAULT_MONITOR_INTERVAL_MINUTES = 60


class UnknownStatusError(ValueError):
    """Raised when stored text does not map onto a closed status or reason enum."""


class RecordKind(str, Enum):
    MONITOR = "monitor"
    CHANGE = "change"
    REVIEW = "review"
    ALERT = "alert"
    FAILURE = "failure"


class MonitorStatus(str, Enum):
    NEW = "NEW"
    PENDING = "PENDING"
    CHANGE = "CHANGE"
    ALERT = "ALERT"
    FAILURE = "FAILURE"
    COMPLETED = "COMPLETED"


class ReviewStatus(str, Enum):
    NEW = "NEW"
    IN_PROGRESS = "IN_PROGRESS"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"


class AlertStatus(str, Enum):
    NEW = "NEW"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"


class FailureStatus(str, Enum):
    NEW = "NEW"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"


class ReviewReason(str, Enum):
    CHANGE = "CHANGE"


class AlertReason(str, Enum):
    CHANGE = "CHANGE"
    THRESHOLD = "THRESHOLD"


class FailureReason(str, Enum):
    FETCH = "FETCH"
    PARSE = "PARSE"
    UNDEFINED = "UNDEFINED"


class EventType(str, Enum):
    CHANGE = "CHANGE"
    ALERT = "ALERT"
    FAILURE = "FAILURE"


E = TypeVar("E", bound=Enum)


def parse_enum(enum_cls: type[E], value: Any) -> E:
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(value)
        except ValueError:
            pass
    raise UnknownStatusError(f"unknown {enum_cls.__name__} value: {value!r}")


def parse_optional_enum(enum_cls: type[E], value: Any) -> E | None:
    if value is None or value == "":
        return None
    return parse_enum(enum_cls, value)


def new_record_id() -> str:
    return str(uuid4())


@dataclass(slots=True)
class ContentMonitor:
    id: str
    code: str
    content_type: str
    name: str
    status: MonitorStatus = MonitorStatus.NEW
    active: bool = True
    alerts: bool = True
    snapshot: str = ""
    url: str = ""
    interval: int = DEFAULT_MONITOR_INTERVAL_MINUTES
    executed_at: datetime | None = None
    success_at: datetime | None = None
    execution_time: int = -1
    error_message: str = ""
    retry: int = 0
    change_id: str | None = None
    event_type: EventType | None = None
    event_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def guid(self) -> str:
        return monitor_guid(self.content_type, self.code, self.name)

    def set_event(self, event_type: EventType, event_id: str) -> None:
        self.event_type = event_type
        self.event_id = event_id

    def clear_event(self) -> None:
        self.event_type = None
        self.event_id = None


def monitor_guid(content_type: str, code: str, name: str) -> str:
    return f"{content_type}-{code}-{name}"


@dataclass(slots=True)
class ContentChange:
    id: str
    code: str
    monitor_id: str
    snapshot_before: str
    snapshot_after: str
    difference: int
    execution_time: int = -1
    session_id: int = 0
    created_by: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class ContentReview:
    id: str
    code: str
    monitor_id: str
    reason: ReviewReason
    status: ReviewStatus = ReviewStatus.NEW
    notes: str = ""
    substantive: bool = False
    attributes: dict[str, Any] = field(default_factory=dict)
    session_id: int = 0
    created_by: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status is ReviewStatus.NEW


@dataclass(slots=True)
class ContentAlert:
    id: str
    code: str
    monitor_id: str
    reason: AlertReason
    status: AlertStatus = AlertStatus.NEW
    attributes: dict[str, Any] = field(default_factory=dict)
    start_at: datetime | None = None
    session_id: int = 0
    created_by: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status is AlertStatus.NEW


@dataclass(slots=True)
class ContentFailure:
    id: str
    code: str
    monitor_id: str
    reason: FailureReason
    status: FailureStatus = FailureStatus.NEW
    notes: str = ""
    attributes: dict[str, Any] = field(default_factory=dict)
    reviewed_at: datetime | None = None
    session_id: int = 0
    created_by: str = ""
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status is FailureStatus.NEW


WorkflowRecord = ContentReview | ContentAlert | ContentFailure
Record = ContentMonitor | ContentChange | ContentReview | ContentAlert | ContentFailure

RECORD_TYPES: dict[RecordKind, type] = {
    RecordKind.MONITOR: ContentMonitor,
    RecordKind.CHANGE: ContentChange,
    RecordKind.REVIEW: ContentReview,
    RecordKind.ALERT: ContentAlert,
    RecordKind.FAILURE: ContentFailure,
}

STATUS_TYPES: dict[RecordKind, type[Enum]] = {
    RecordKind.MONITOR: MonitorStatus,
    RecordKind.REVIEW: ReviewStatus,
    RecordKind.ALERT: AlertStatus,
    RecordKind.FAILURE: FailureStatus,
}

REASON_TYPES: dict[RecordKind, type[Enum]] = {
    RecordKind.REVIEW: ReviewReason,
    RecordKind.ALERT: AlertReason,
    RecordKind.FAILURE: FailureReason,
}


def kind_of(record: Record) -> RecordKind:
    for kind, record_type in RECORD_TYPES.items():
        if isinstance(record, record_type):
            return kind
    raise TypeError(f"unsupported record type: {type(record).__name__}")


def target_attributes(monitor: ContentMonitor, *, entity_id: str | None = None) -> dict[str, Any]:
    """Attributes every workflow record carries so the deduplicator can match its target."""
    return {
        "guid": monitor.guid,
        "content_type": monitor.content_type,
        "entity_id": entity_id or monitor.guid,
    }
