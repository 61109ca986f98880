"""Tests for ingestor.reporting_api — report create/retrieve/download against a mocked API."""

from __future__ import annotations

import gzip
import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests
import responses
from tenacity import stop_after_attempt, wait_none

from ingestor.exceptions import APIConnectionError, APIResponseError, APITimeoutError, ConfigurationError
from ingestor.models import LiveReportStatus, ReportKey
from ingestor.reporting_api import AdsReportingClient, report_period, send_request
from tests.fakes import FakeEntityStore

BASE_URL = "https://ads-api.example.com"
CREATE_URL = f"{BASE_URL}/adsApi/v1/create/reports"
RETRIEVE_URL = f"{BASE_URL}/adsApi/v1/retrieve/reports"
DOWNLOAD_URL = "https://reports.example.com/r1.json.gz"


@pytest.fixture
def api(sample_config):
    store = FakeEntityStore()
    counts = MagicMock()
    client = AdsReportingClient(sample_config, token_provider=lambda: "token-abc", store=store, counts_store=counts)
    yield client, store, counts
    client.close()


class TestClientSetup:
    def test_client_id_required(self, sample_config):
        config = sample_config.model_copy(update={"ads_api_client_id": None})
        with pytest.raises(ConfigurationError, match="ADS_API_CLIENT_ID"):
            AdsReportingClient(config, token_provider=lambda: "t", store=FakeEntityStore())


class TestReportPeriod:
    def test_daily(self, daily_key):
        assert report_period(daily_key) == {"startDate": "2024-01-08", "endDate": "2024-01-08"}

    def test_hourly_straddles_midnight(self):
        key = ReportKey("A1", "US", datetime(2024, 1, 8, 23, tzinfo=timezone.utc), "hourly", "product")
        assert report_period(key) == {"startDate": "2024-01-08", "endDate": "2024-01-09"}


class TestCreateReport:
    @responses.activate
    def test_returns_report_id(self, api, daily_key):
        client, _, _ = api
        responses.add(responses.POST, CREATE_URL, json={"success": [{"report": {"reportId": "R1"}}]}, status=200)

        assert client.create_report(daily_key) == "R1"

        request = responses.calls[0].request
        assert request.headers["Authorization"] == "Bearer token-abc"
        assert request.headers["Amazon-Advertising-API-ClientId"] == "client-123"
        body = json.loads(request.body)
        assert body["accessRequestedAccounts"] == [{"advertiserAccountId": daily_key.account_id}]
        report = body["reports"][0]
        assert report["format"] == "GZIP_JSON"
        assert report["periods"] == [{"datePeriod": {"startDate": "2024-01-08", "endDate": "2024-01-08"}}]
        assert "metric.totalCost" in report["query"]["fields"]

    @responses.activate
    def test_no_report_id(self, api, daily_key):
        client, _, _ = api
        responses.add(responses.POST, CREATE_URL, json={"success": [], "error": [{"code": "400"}]}, status=207)
        assert client.create_report(daily_key) is None

    @responses.activate
    def test_client_error_status(self, api, daily_key):
        client, _, _ = api
        responses.add(responses.POST, CREATE_URL, json={"message": "bad"}, status=400)
        with pytest.raises(APIResponseError, match="400"):
            client.create_report(daily_key)

    @responses.activate
    def test_timeout(self, api, daily_key):
        client, _, _ = api
        responses.add(responses.POST, CREATE_URL, body=requests.exceptions.ReadTimeout("slow"))
        with pytest.raises(APITimeoutError):
            client.create_report(daily_key)


class TestReportStatus:
    @responses.activate
    def test_completed_with_parts(self, api):
        client, _, _ = api
        responses.add(
            responses.POST,
            RETRIEVE_URL,
            json={"success": [{"report": {"status": "COMPLETED", "completedReportParts": [{"url": DOWNLOAD_URL}]}}]},
            status=200,
        )
        probe = client.get_report_status("R1")
        assert probe.status is LiveReportStatus.SUCCESS
        assert probe.download_url == DOWNLOAD_URL
        assert json.loads(responses.calls[0].request.body) == {"reportIds": ["R1"]}

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("PENDING", LiveReportStatus.IN_PROGRESS),
            ("processing", LiveReportStatus.IN_PROGRESS),
            ("FAILED", LiveReportStatus.FAILURE),
            ("SOMETHING_NEW", LiveReportStatus.IN_PROGRESS),
        ],
    )
    @responses.activate
    def test_status_mapping(self, api, raw, expected):
        client, _, _ = api
        responses.add(
            responses.POST,
            RETRIEVE_URL,
            json={"success": [{"report": {"status": raw, "failureReason": "x" if raw == "FAILED" else None}}]},
            status=200,
        )
        probe = client.get_report_status("R1")
        assert probe.status is expected
        assert probe.download_url is None

    @responses.activate
    def test_unknown_report(self, api):
        client, _, _ = api
        responses.add(responses.POST, RETRIEVE_URL, json={"success": []}, status=200)
        with pytest.raises(APIResponseError, match="not found"):
            client.get_report_status("R404")


class TestDownloadAndParse:
    @responses.activate
    def test_download_is_unauthenticated_and_parsed(self, api, daily_key):
        client, store, counts = api
        rows = [
            {
                "date.value": "2024-01-08",
                "budgetCurrency.value": "USD",
                "campaign.id": "C1",
                "adGroup.id": "AG1",
                "ad.id": "AD1",
                "target.value": "shoes",
                "target.matchType": "EXACT",
                "metric.impressions": 100,
                "metric.clicks": 4,
                "metric.purchases": 1,
                "metric.sales": 25.0,
                "metric.totalCost": 3.2,
            }
        ]
        responses.add(responses.GET, DOWNLOAD_URL, body=gzip.compress(json.dumps(rows).encode()), status=200)

        assert client.download_and_parse(DOWNLOAD_URL, daily_key) == 1
        assert "Authorization" not in responses.calls[0].request.headers
        assert len(store.table("performance_daily")) == 1
        counts.update.assert_called_once_with(daily_key, total_records=1, success_records=1, error_records=0)


class TestSendRequest:
    def test_connection_error_retried(self):
        session = MagicMock()
        session.request.side_effect = requests.exceptions.ConnectionError("refused")
        fast = send_request.retry_with(stop=stop_after_attempt(2), wait=wait_none())
        with pytest.raises(APIConnectionError):
            fast(session, "GET", "https://ads-api.example.com/x", 5)
        assert session.request.call_count == 2
