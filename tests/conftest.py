"""Shared test fixtures for the ingestion worker and report refresh."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from ingestor.config import IngestorConfig
from ingestor.models import (
    DatasetStatus,
    LiveReportStatus,
    ReportDatasetMetadata,
    ReportKey,
    ReportProbe,
)

QUEUE_URL = "https://sqs.us-east-1.amazonaws.com/123456789012/ams-stream"


@pytest.fixture
def sample_config():
    """Minimal IngestorConfig for testing (no real AWS/Azure/API)."""
    return IngestorConfig(
        _env_file=None,
        ams_queue_url=QUEUE_URL,
        disabled_poll_interval_seconds=0.01,
        error_backoff_seconds=0.0,
        idle_backoff_seconds=0.0,
        azure_sql_server="test.database.windows.net",
        azure_sql_database="TestDB",
        ads_api_base_url="https://ads-api.example.com",
        ads_api_client_id="client-123",
        ads_api_access_token="token-abc",
        ads_api_requests_per_second=0,
    )


@pytest.fixture
def mock_connection():
    """Create a mock pyodbc connection with cursor."""
    conn = MagicMock()
    cursor = MagicMock()
    conn.cursor.return_value = cursor
    conn.__enter__ = MagicMock(return_value=conn)
    conn.__exit__ = MagicMock(return_value=False)
    return conn, cursor


# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------

@pytest.fixture
def now():
    return datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def daily_key():
    return ReportKey(
        account_id="amzn1.ads-account.A1",
        country_code="US",
        timestamp=datetime(2024, 1, 8, tzinfo=timezone.utc),
        aggregation="daily",
        entity_type="target",
    )


@pytest.fixture
def make_row(daily_key):
    def _make(key=None, **fields):
        key = key or daily_key
        return ReportDatasetMetadata(
            account_id=key.account_id,
            country_code=key.country_code,
            timestamp=key.timestamp,
            aggregation=key.aggregation,
            entity_type=key.entity_type,
            **{"status": DatasetStatus.MISSING, **fields},
        )

    return _make


@pytest.fixture
def success_probe():
    return ReportProbe(status=LiveReportStatus.SUCCESS, download_url="https://reports.example.com/r1.json.gz")


@pytest.fixture
def sp_traffic_payload():
    return {
        "dataset_id": "sp-traffic",
        "idempotency_id": "idem-001",
        "marketplace_id": "ATVPDKIKX0DER",
        "currency": "USD",
        "advertiser_id": "ADV1",
        "campaign_id": "C1",
        "ad_group_id": "AG1",
        "ad_id": "AD1",
        "keyword_id": "K1",
        "keyword_text": "running shoes",
        "match_type": "EXACT",
        "placement": "Top of Search",
        "time_window_start": "2024-01-08T10:00:00Z",
        "clicks": 3,
        "impressions": 120,
        "cost": 1.75,
    }


@pytest.fixture
def campaign_payload():
    return {
        "datasetId": "ads-campaign-management-campaigns",
        "campaignId": "C1",
        "advertiserId": "ADV1",
        "marketplaceId": "ATVPDKIKX0DER",
        "accountId": "A1",
        "adProduct": "SPONSORED_PRODUCTS",
        "version": 3,
        "name": "Brand - Exact",
        "state": "ENABLED",
        "budgets": [{"budgetType": "MONETARY", "budgetValue": {"amount": 50}}],
    }
