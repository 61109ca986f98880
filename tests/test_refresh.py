"""Tests for ingestor.refresh — the refresh orchestrator and its refreshing lease."""

from datetime import datetime, timedelta, timezone

import pytest

from ingestor.exceptions import APIResponseError, APITimeoutError
from ingestor.models import DatasetStatus, LiveReportStatus, NextAction, ReportKey, ReportProbe
from ingestor.notifications import MetadataNotifier
from ingestor.refresh import ReportRefreshOrchestrator
from tests.fakes import FakeMetadataStore, FakeProvider

BUCKET = datetime(2024, 1, 8, tzinfo=timezone.utc)
NOW = BUCKET + timedelta(hours=25)


def _orchestrator(store, provider, **kwargs):
    return ReportRefreshOrchestrator(store, provider, clock=lambda: NOW, **kwargs)


def _lease_cleared(store, key):
    row = store.rows[key]
    return row.refreshing is False and row.refresh_started_at is None


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

class TestCreate:
    def test_creates_report_for_closed_bucket(self, make_row, daily_key):
        store = FakeMetadataStore([make_row()])
        provider = FakeProvider(report_id="R1")
        result = _orchestrator(store, provider).refresh(daily_key)

        assert result.success
        assert result.action is NextAction.CREATE
        assert result.status is DatasetStatus.FETCHING
        row = store.rows[daily_key]
        assert row.report_id == "R1"
        assert row.last_report_created_at == NOW
        assert row.status is DatasetStatus.FETCHING
        assert row.next_refresh_at == NOW + timedelta(minutes=5)
        assert _lease_cleared(store, daily_key)

    def test_lease_set_before_side_effects(self, make_row, daily_key):
        store = FakeMetadataStore([make_row()])
        _orchestrator(store, FakeProvider()).refresh(daily_key)
        assert store.updates[0] == {"refreshing": True, "refresh_started_at": NOW}
        assert store.updates[-1] == {"refreshing": False, "refresh_started_at": None}

    def test_create_failure_recorded(self, make_row, daily_key):
        store = FakeMetadataStore([make_row()])
        provider = FakeProvider()
        provider.create_error = APITimeoutError("API request timed out after 30s")
        result = _orchestrator(store, provider).refresh(daily_key)

        assert not result.success
        row = store.rows[daily_key]
        assert row.status is DatasetStatus.FAILED
        assert "timed out" in row.error
        assert row.report_id is None
        assert _lease_cleared(store, daily_key)

    def test_missing_report_id_is_failure(self, make_row, daily_key):
        store = FakeMetadataStore([make_row()])
        result = _orchestrator(store, FakeProvider(report_id=None)).refresh(daily_key)
        assert result.status is DatasetStatus.FAILED
        assert store.rows[daily_key].error.startswith("Failed to create report")

    def test_failed_report_recreated(self, make_row, daily_key):
        store = FakeMetadataStore([make_row(report_id="OLD", last_report_created_at=BUCKET + timedelta(hours=24))])
        provider = FakeProvider(report_id="NEW", probe=ReportProbe(status=LiveReportStatus.FAILURE))
        result = _orchestrator(store, provider).refresh(daily_key)
        assert result.action is NextAction.CREATE
        assert store.rows[daily_key].report_id == "NEW"


# ---------------------------------------------------------------------------
# Poll and process
# ---------------------------------------------------------------------------

class TestProcess:
    def test_in_progress_changes_nothing(self, make_row, daily_key):
        row = make_row(report_id="R1", last_report_created_at=NOW, status="fetching")
        store = FakeMetadataStore([row])
        provider = FakeProvider(probe=ReportProbe(status=LiveReportStatus.IN_PROGRESS))
        result = _orchestrator(store, provider).refresh(daily_key)

        assert result.success
        assert result.action is NextAction.NONE
        assert result.status is DatasetStatus.FETCHING
        assert provider.created == []
        assert store.rows[daily_key].report_id == "R1"
        assert provider.probed == ["R1"]

    def test_open_bucket_skips_status_call(self, make_row, daily_key):
        row = make_row(report_id="R1", last_report_created_at=BUCKET, status="fetching")
        store = FakeMetadataStore([row])
        provider = FakeProvider(probe=ReportProbe(status=LiveReportStatus.IN_PROGRESS))
        result = _orchestrator(store, provider).refresh(daily_key, now=BUCKET + timedelta(hours=2))

        assert result.success
        assert result.action is NextAction.NONE
        assert provider.probed == []
        assert store.rows[daily_key].report_id == "R1"

    def test_success_parses_and_completes(self, make_row, daily_key, success_probe):
        row = make_row(report_id="R1", last_report_created_at=NOW, status="fetching")
        store = FakeMetadataStore([row])
        provider = FakeProvider(probe=success_probe, rows=17)
        result = _orchestrator(store, provider).refresh(daily_key)

        assert result.action is NextAction.PROCESS
        assert result.rows_parsed == 17
        assert provider.parsed == [(success_probe.download_url, daily_key)]
        stored = store.rows[daily_key]
        assert stored.status is DatasetStatus.COMPLETED
        assert stored.report_id is None
        assert stored.last_refreshed == NOW
        assert stored.next_refresh_at == BUCKET + timedelta(hours=72)
        assert {"status": DatasetStatus.PARSING, "error": None} in store.updates

    def test_parse_failure_recorded(self, make_row, daily_key, success_probe):
        row = make_row(report_id="R1", last_report_created_at=NOW, status="fetching")
        store = FakeMetadataStore([row])
        provider = FakeProvider(probe=success_probe)
        provider.parse_error = APIResponseError("Report file is not valid (gzip) JSON")
        result = _orchestrator(store, provider).refresh(daily_key)

        assert result.status is DatasetStatus.FAILED
        stored = store.rows[daily_key]
        assert stored.status is DatasetStatus.FAILED
        assert "not valid" in stored.error
        assert _lease_cleared(store, daily_key)

    def test_status_probe_failure_recorded(self, make_row, daily_key):
        row = make_row(report_id="R1", last_report_created_at=NOW, status="fetching")
        store = FakeMetadataStore([row])
        provider = FakeProvider()
        provider.status_error = APITimeoutError("API request timed out after 30s")
        result = _orchestrator(store, provider).refresh(daily_key)

        assert not result.success
        assert store.rows[daily_key].status is DatasetStatus.FAILED
        assert _lease_cleared(store, daily_key)


# ---------------------------------------------------------------------------
# Lease and edge cases
# ---------------------------------------------------------------------------

class TestLease:
    def test_unknown_key_is_not_found(self, daily_key):
        store = FakeMetadataStore()
        result = _orchestrator(store, FakeProvider()).refresh(daily_key)
        assert result.found is False
        assert result.success is False
        assert store.updates == []

    def test_stale_lease_taken_over(self, make_row, daily_key, caplog):
        row = make_row(refreshing=True, refresh_started_at=BUCKET)
        store = FakeMetadataStore([row])
        result = _orchestrator(store, FakeProvider()).refresh(daily_key)
        assert result.success
        assert "already held" in caplog.text
        assert _lease_cleared(store, daily_key)

    def test_lease_cleared_when_recording_failure_fails(self, make_row, daily_key):
        store = FakeMetadataStore([make_row()])
        store.fail_on = {"last_report_created_at"}
        result = _orchestrator(store, FakeProvider()).refresh(daily_key)
        assert not result.success
        assert _lease_cleared(store, daily_key)

    def test_acquire_failure_reported(self, make_row, daily_key):
        store = FakeMetadataStore([make_row()])
        store.fail_on = {"refreshing"}
        provider = FakeProvider()
        result = _orchestrator(store, provider).refresh(daily_key)
        assert result.error
        assert provider.created == []

    def test_open_bucket_untouched(self, make_row, daily_key):
        store = FakeMetadataStore([make_row()])
        provider = FakeProvider()
        orchestrator = _orchestrator(store, provider)
        result = orchestrator.refresh(daily_key, now=BUCKET + timedelta(hours=3))
        assert result.action is NextAction.NONE
        assert provider.created == []
        assert _lease_cleared(store, daily_key)


class TestNotifications:
    def test_updates_published(self, make_row, daily_key):
        seen = []
        notifier = MetadataNotifier()
        notifier.subscribe(seen.append)
        store = FakeMetadataStore([make_row()])
        _orchestrator(store, FakeProvider(), notifier=notifier).refresh(daily_key)
        notifier.flush()
        notifier.close()

        assert seen[0].refreshing is True
        assert seen[-1].refreshing is False
        assert any(r.status is DatasetStatus.FETCHING for r in seen)


class TestRefreshMany:
    def test_refreshes_distinct_keys(self, make_row, daily_key):
        other = ReportKey(**{**daily_key.to_dict(), "country_code": "GB", "timestamp": BUCKET})
        store = FakeMetadataStore([make_row(), make_row(key=other)])
        provider = FakeProvider()
        results = _orchestrator(store, provider).refresh_many([daily_key, other, daily_key])

        assert len(results) == 2
        assert all(r.success for r in results)
        assert sorted(k.country_code for k in provider.created) == ["GB", "US"]

    def test_empty_input(self):
        assert _orchestrator(FakeMetadataStore(), FakeProvider()).refresh_many([]) == []


@pytest.mark.parametrize("fail_on", ["status", "report_id", "error"])
def test_lease_always_released(make_row, daily_key, success_probe, fail_on):
    row = make_row(report_id="R1", last_report_created_at=NOW, status="fetching")
    store = FakeMetadataStore([row])
    store.fail_on = {fail_on}
    _orchestrator(store, FakeProvider(probe=success_probe)).refresh(daily_key)
    assert _lease_cleared(store, daily_key)
