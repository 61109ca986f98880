"""Report dataset refresh: lease the row, decide, act, record, release."""

from __future__ import annotations

import dataclasses
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Protocol

from ingestor.config import IngestorConfig
from ingestor.exceptions import ExternalApiError, InvariantViolation
from ingestor.logging_utils import bind_correlation_id, get_logger
from ingestor.models import (
    DatasetStatus,
    NextAction,
    RefreshResult,
    ReportDatasetMetadata,
    ReportKey,
    ReportProbe,
    utc_now,
)
from ingestor.notifications import MetadataNotifier
from ingestor.state_machine import bucket_closed, decide, next_refresh_at

logger = get_logger(__name__)


class ReportProvider(Protocol):
    def create_report(self, key: ReportKey) -> str | None: ...

    def get_report_status(self, report_id: str) -> ReportProbe: ...

    def download_and_parse(self, download_url: str, key: ReportKey) -> int: ...


class MetadataStore(Protocol):
    def get(self, key: ReportKey) -> ReportDatasetMetadata | None: ...

    def update(self, key: ReportKey, **fields: Any) -> ReportDatasetMetadata | None: ...


class _RecordedFailure(Exception):
    """A branch failure that has already been written to the row."""


class ReportRefreshOrchestrator:
    """
    Drive one report dataset row through create, poll and parse.

    ``refreshing`` is an advisory lease: it is set before any side effect and
    cleared in a ``finally`` on every path. A lease found already held is
    logged as a stale-lease warning and taken over. ``refresh`` never raises;
    failures end up on the row as ``status=failed`` with ``error`` set.
    """

    def __init__(
        self,
        store: MetadataStore,
        provider: ReportProvider,
        notifier: MetadataNotifier | None = None,
        config: IngestorConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.provider = provider
        self.notifier = notifier
        self.poll_minutes = config.report_poll_minutes if config else 5
        self.max_workers = config.refresh_max_workers if config else 4
        self.clock = clock

    def _update(self, key: ReportKey, **fields: Any) -> ReportDatasetMetadata | None:
        row = self.store.update(key, **fields)
        if self.notifier is not None:
            try:
                self.notifier.publish(row)
            except Exception as e:
                logger.warning("Failed to publish metadata update", extra={"error": str(e)})
        return row

    def _acquire(self, key: ReportKey, now: datetime) -> ReportDatasetMetadata | None:
        current = self.store.get(key)
        if current is None:
            return None
        if current.refreshing:
            stale = InvariantViolation(
                "Refreshing lease already held; taking it over",
                details={
                    "key": key.label,
                    "refresh_started_at": current.refresh_started_at.isoformat()
                    if current.refresh_started_at
                    else None,
                },
            )
            logger.warning(str(stale))
        # Re-read through the update so we act on the latest row.
        return self._update(key, refreshing=True, refresh_started_at=now)

    def _release(self, key: ReportKey) -> None:
        try:
            self._update(key, refreshing=False, refresh_started_at=None)
        except Exception as e:
            logger.error(
                "Failed to clear refreshing lease",
                extra={"key": key.label, "error": str(e)},
                exc_info=True,
            )

    def refresh(self, key: ReportKey, now: datetime | None = None) -> RefreshResult:
        """Run one decide-and-act cycle for ``key``."""
        now = now or self.clock()
        result = RefreshResult(key=key)

        with bind_correlation_id(f"refresh:{key.label}"):
            try:
                row = self._acquire(key, now)
            except Exception as e:
                logger.error("Failed to acquire refresh lease", extra={"key": key.label, "error": str(e)})
                result.error = str(e)
                return result

            if row is None:
                logger.info("Report dataset row not found; nothing to refresh", extra={"key": key.label})
                result.found = False
                return result

            try:
                self._run(row, now, result)
            except _RecordedFailure:
                pass
            except Exception as e:
                logger.error(
                    "Refresh failed",
                    extra={"key": key.label, "action": result.action, "error": str(e)},
                    exc_info=True,
                )
                result.status = DatasetStatus.FAILED
                result.error = str(e)
                try:
                    self._update(key, status=DatasetStatus.FAILED, error=str(e))
                except Exception as update_error:
                    logger.error("Failed to record refresh failure", extra={"error": str(update_error)})
            finally:
                self._release(key)

        logger.info("Refresh finished", extra=result.to_dict())
        return result

    def _run(self, row: ReportDatasetMetadata, now: datetime, result: RefreshResult) -> None:
        probe = None
        if row.report_id and bucket_closed(row.timestamp, row.aggregation, now):
            probe = self.provider.get_report_status(row.report_id)
        action = decide(row, probe, now)
        result.action = action
        result.report_id = row.report_id
        logger.info("Refresh action decided", extra={"key": row.key.label, "action": action.value})

        if action is NextAction.PROCESS:
            self._process(row, probe, now, result)
        elif action is NextAction.CREATE:
            self._create(row, now, result)
        else:
            result.status = row.status

    def _process(self, row: ReportDatasetMetadata, probe: ReportProbe, now: datetime, result: RefreshResult) -> None:
        key = row.key
        self._update(key, status=DatasetStatus.PARSING, error=None)
        try:
            rows = self.provider.download_and_parse(probe.download_url, key)
        except Exception as e:
            logger.error("Report parsing failed", extra={"key": key.label, "error": str(e)}, exc_info=True)
            result.status = DatasetStatus.FAILED
            result.error = str(e)
            self._update(key, status=DatasetStatus.FAILED, error=str(e))
            raise _RecordedFailure() from e

        done = dataclasses.replace(row, report_id=None, last_refreshed=now)
        self._update(
            key,
            status=DatasetStatus.COMPLETED,
            error=None,
            report_id=None,
            last_refreshed=now,
            next_refresh_at=next_refresh_at(done, now, self.poll_minutes),
        )
        result.status = DatasetStatus.COMPLETED
        result.rows_parsed = rows

    def _create(self, row: ReportDatasetMetadata, now: datetime, result: RefreshResult) -> None:
        key = row.key
        try:
            report_id = self.provider.create_report(key)
            if not report_id:
                raise ExternalApiError("Failed to create report: no report id returned", details={"key": key.label})
        except Exception as e:
            logger.error("Report creation failed", extra={"key": key.label, "error": str(e)})
            result.status = DatasetStatus.FAILED
            result.error = str(e)
            self._update(key, status=DatasetStatus.FAILED, error=str(e))
            return

        self._update(
            key,
            report_id=report_id,
            last_report_created_at=now,
            status=DatasetStatus.FETCHING,
            error=None,
            next_refresh_at=now + timedelta(minutes=self.poll_minutes),
        )
        result.status = DatasetStatus.FETCHING
        result.report_id = report_id

    def refresh_many(self, keys: Iterable[ReportKey], now: datetime | None = None) -> list[RefreshResult]:
        """Refresh distinct keys concurrently. Duplicate keys are refreshed once."""
        unique = list(dict.fromkeys(keys))
        if not unique:
            return []
        workers = min(self.max_workers, len(unique))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="report-refresh") as pool:
            return list(pool.map(lambda k: self.refresh(k, now), unique))
