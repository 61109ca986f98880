"""Data models shared by the queue worker and the report refresh jobs."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

CONTROL_ROW_ID = "main"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes (as returned by datetime2 columns) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Aggregation(str, Enum):
    DAILY = "daily"
    HOURLY = "hourly"

    @property
    def period(self) -> timedelta:
        return timedelta(days=1) if self is Aggregation.DAILY else timedelta(hours=1)


class EntityType(str, Enum):
    TARGET = "target"
    PRODUCT = "product"


class DatasetStatus(str, Enum):
    MISSING = "missing"
    FETCHING = "fetching"
    PARSING = "parsing"
    COMPLETED = "completed"
    FAILED = "failed"


class LiveReportStatus(str, Enum):
    SUCCESS = "SUCCESS"
    IN_PROGRESS = "IN_PROGRESS"
    FAILURE = "FAILURE"


class NextAction(str, Enum):
    NONE = "none"
    PROCESS = "process"
    CREATE = "create"


class WorkerState(str, Enum):
    POLLING = "Polling"
    THROTTLED = "Throttled"
    DRAINING = "Draining"
    STOPPED = "Stopped"


@dataclass
class ControlRecord:
    """The singleton worker control row."""

    enabled: bool = True
    messages_per_second: int = 0
    updated_at: datetime | None = None
    id: str = CONTROL_ROW_ID

    @property
    def rate_limited(self) -> bool:
        return self.messages_per_second > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "messages_per_second": self.messages_per_second,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True)
class QueueMessage:
    """A message received from the queue. Never persisted."""

    body: str
    receipt_handle: str
    message_id: str
    attributes: dict[str, str] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class ReportKey:
    """Unique key of a report dataset row."""

    account_id: str
    country_code: str
    timestamp: datetime
    aggregation: Aggregation
    entity_type: EntityType

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", as_utc(self.timestamp))
        object.__setattr__(self, "aggregation", Aggregation(self.aggregation))
        object.__setattr__(self, "entity_type", EntityType(self.entity_type))

    @property
    def bucket_end(self) -> datetime:
        return self.timestamp + self.aggregation.period

    @property
    def label(self) -> str:
        return (
            f"{self.account_id}/{self.country_code}/{self.aggregation.value}/"
            f"{self.entity_type.value}@{self.timestamp.isoformat()}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "country_code": self.country_code,
            "timestamp": self.timestamp.isoformat(),
            "aggregation": self.aggregation.value,
            "entity_type": self.entity_type.value,
        }


@dataclass
class ReportDatasetMetadata:
    """One tracked report bucket."""

    account_id: str
    country_code: str
    timestamp: datetime
    aggregation: Aggregation
    entity_type: EntityType
    status: DatasetStatus = DatasetStatus.MISSING
    report_id: str | None = None
    last_report_created_at: datetime | None = None
    refreshing: bool = False
    refresh_started_at: datetime | None = None
    error: str | None = None
    last_refreshed: datetime | None = None
    next_refresh_at: datetime | None = None
    total_records: int | None = None
    success_records: int | None = None
    error_records: int | None = None

    def __post_init__(self) -> None:
        self.timestamp = as_utc(self.timestamp)
        self.aggregation = Aggregation(self.aggregation)
        self.entity_type = EntityType(self.entity_type)
        self.status = DatasetStatus(self.status)
        self.last_report_created_at = as_utc(self.last_report_created_at)
        self.refresh_started_at = as_utc(self.refresh_started_at)
        self.last_refreshed = as_utc(self.last_refreshed)
        self.next_refresh_at = as_utc(self.next_refresh_at)
        self.refreshing = bool(self.refreshing)

    @property
    def key(self) -> ReportKey:
        return ReportKey(
            account_id=self.account_id,
            country_code=self.country_code,
            timestamp=self.timestamp,
            aggregation=self.aggregation,
            entity_type=self.entity_type,
        )

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ReportDatasetMetadata":
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in row.items() if k in known})

    def to_dict(self) -> dict[str, Any]:
        def _iso(v: datetime | None) -> str | None:
            return v.isoformat() if v else None

        return {
            **self.key.to_dict(),
            "status": self.status.value,
            "report_id": self.report_id,
            "last_report_created_at": _iso(self.last_report_created_at),
            "refreshing": self.refreshing,
            "refresh_started_at": _iso(self.refresh_started_at),
            "error": self.error,
            "last_refreshed": _iso(self.last_refreshed),
            "next_refresh_at": _iso(self.next_refresh_at),
            "total_records": self.total_records,
            "success_records": self.success_records,
            "error_records": self.error_records,
        }


@dataclass(frozen=True)
class ReportProbe:
    """Live status of a report as reported by the reporting API."""

    status: LiveReportStatus
    download_url: str | None = None
    raw_status: str | None = None
    failure_reason: str | None = None


@dataclass
class RefreshResult:
    """Outcome of a single refresh call."""

    key: ReportKey
    action: NextAction | None = None
    status: DatasetStatus | None = None
    report_id: str | None = None
    rows_parsed: int | None = None
    error: str | None = None
    found: bool = True

    @property
    def success(self) -> bool:
        return self.found and self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.key.to_dict(),
            "found": self.found,
            "action": self.action.value if self.action else None,
            "status": self.status.value if self.status else None,
            "report_id": self.report_id,
            "rows_parsed": self.rows_parsed,
            "error": self.error,
            "success": self.success,
        }


@dataclass
class WorkerMetrics:
    """Counters collected while the worker runs."""

    start_time: datetime = field(default_factory=utc_now)
    iterations: int = 0
    batches: int = 0
    messages_received: int = 0
    messages_processed: int = 0
    messages_failed: int = 0
    delete_failures: int = 0
    poll_errors: int = 0
    disabled_polls: int = 0
    unknown_datasets: Counter = field(default_factory=Counter)

    @property
    def unknown_dropped(self) -> int:
        return sum(self.unknown_datasets.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_time": self.start_time.isoformat(),
            "iterations": self.iterations,
            "batches": self.batches,
            "messages_received": self.messages_received,
            "messages_processed": self.messages_processed,
            "messages_failed": self.messages_failed,
            "delete_failures": self.delete_failures,
            "poll_errors": self.poll_errors,
            "disabled_polls": self.disabled_polls,
            "unknown_dropped": self.unknown_dropped,
            "unknown_datasets": dict(self.unknown_datasets),
        }
