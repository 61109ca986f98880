"""Pure decision logic for a report dataset row: none, process or create."""

from __future__ import annotations

import math
from datetime import datetime, timedelta

from ingestor.models import (
    Aggregation,
    LiveReportStatus,
    NextAction,
    ReportDatasetMetadata,
    ReportProbe,
    as_utc,
)

# Ages (hours since bucket start) at which a finished bucket is re-reported.
ELIGIBLE_OFFSETS: dict[Aggregation, tuple[int, ...]] = {
    Aggregation.DAILY: tuple(days * 24 for days in (1, 3, 5, 7, 14, 30, 60)),
    Aggregation.HOURLY: (24, 72, 312),
}


def _hours_between(start: datetime, end: datetime) -> int:
    return math.floor((end - start).total_seconds() / 3600)


def bucket_closed(timestamp: datetime, aggregation: Aggregation, now: datetime) -> bool:
    """True once the whole aggregation period starting at ``timestamp`` has elapsed."""
    return as_utc(timestamp) + Aggregation(aggregation).period <= as_utc(now)


def is_eligible_for_report(row: ReportDatasetMetadata, now: datetime) -> bool:
    """
    A row with a previous report is due again when its age has reached a
    refresh offset that the previous report's creation time had not.
    """
    age_hours = _hours_between(row.timestamp, as_utc(now))
    reached = [offset for offset in ELIGIBLE_OFFSETS[row.aggregation] if age_hours >= offset]
    if not reached:
        return False
    if row.last_report_created_at is None:
        return True
    created_age_hours = _hours_between(row.timestamp, row.last_report_created_at)
    return created_age_hours < max(reached)


def decide(row: ReportDatasetMetadata, probe: ReportProbe | None, now: datetime) -> NextAction:
    """
    Decide what a refresh should do for ``row``.

    ``probe`` is the live report status and must be supplied whenever
    ``row.report_id`` is set. No side effects.
    """
    if not bucket_closed(row.timestamp, row.aggregation, now):
        return NextAction.NONE

    if row.report_id:
        if probe is None:
            raise ValueError("A live status probe is required when report_id is set")
        if probe.status is LiveReportStatus.FAILURE:
            return NextAction.CREATE
        if probe.status is LiveReportStatus.SUCCESS and probe.download_url:
            return NextAction.PROCESS
        return NextAction.NONE

    if row.last_report_created_at is None:
        return NextAction.CREATE

    return NextAction.CREATE if is_eligible_for_report(row, now) else NextAction.NONE


def next_refresh_at(
    row: ReportDatasetMetadata,
    now: datetime,
    poll_minutes: int = 5,
) -> datetime | None:
    """When the row should next be looked at, or None once every offset is served."""
    now = as_utc(now)
    if row.report_id:
        return now + timedelta(minutes=poll_minutes)
    if row.last_report_created_at is None and not bucket_closed(row.timestamp, row.aggregation, now):
        return row.timestamp + row.aggregation.period
    upcoming = [
        row.timestamp + timedelta(hours=offset)
        for offset in ELIGIBLE_OFFSETS[row.aggregation]
        if row.timestamp + timedelta(hours=offset) > now
    ]
    return min(upcoming) if upcoming else None
