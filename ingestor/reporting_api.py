"""Amazon Ads reporting API client: create, retrieve and download reports."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Callable

import requests
from requests.adapters import HTTPAdapter
from tenacity import before_sleep_log, retry, retry_if_exception_type, stop_after_attempt, wait_exponential
from urllib3.util.retry import Retry

from ingestor.config import IngestorConfig
from ingestor.exceptions import APIConnectionError, APIResponseError, APITimeoutError, ConfigurationError
from ingestor.logging_utils import get_logger, log_operation
from ingestor.models import Aggregation, LiveReportStatus, ReportKey, ReportProbe
from ingestor.rate_limiter import RateLimiter
from ingestor.report_parser import REPORT_FIELDS, PerformanceStore, ReportCountsStore, parse_report

logger = get_logger(__name__)

REPORT_FORMAT = "GZIP_JSON"

PROVIDER_STATUS = {
    "COMPLETED": LiveReportStatus.SUCCESS,
    "PENDING": LiveReportStatus.IN_PROGRESS,
    "PROCESSING": LiveReportStatus.IN_PROGRESS,
    "IN_PROGRESS": LiveReportStatus.IN_PROGRESS,
    "FAILED": LiveReportStatus.FAILURE,
    "FAILURE": LiveReportStatus.FAILURE,
    "CANCELLED": LiveReportStatus.FAILURE,
    "EXPIRED": LiveReportStatus.FAILURE,
}


def create_http_session(config: IngestorConfig) -> requests.Session:
    """Create a requests session with retry configuration."""
    session = requests.Session()

    retry_strategy = Retry(
        total=config.ads_api_max_retries,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET", "POST"],
        backoff_factor=1,
        respect_retry_after_header=True,
    )

    adapter = HTTPAdapter(max_retries=retry_strategy, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)

    return session


@retry(
    retry=retry_if_exception_type((APIConnectionError,)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=30),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
def send_request(
    session: requests.Session,
    method: str,
    url: str,
    timeout: int,
    headers: dict | None = None,
    json_body: dict | None = None,
) -> requests.Response:
    """Send one request with retry on connection errors; raise on non-2xx."""
    try:
        response = session.request(method, url, headers=headers, json=json_body, timeout=timeout)
    except requests.exceptions.Timeout as e:
        raise APITimeoutError(f"API request timed out after {timeout}s", details={"url": url}) from e
    except requests.exceptions.ConnectionError as e:
        raise APIConnectionError(f"Failed to connect to API: {e}", details={"url": url}) from e
    except requests.exceptions.RequestException as e:
        # Includes RetryError once the adapter's 429/5xx retries are exhausted
        raise APIResponseError(f"API request failed: {e}", details={"url": url}) from e

    try:
        response.raise_for_status()
    except requests.exceptions.HTTPError as e:
        raise APIResponseError(
            f"API returned error status {response.status_code}",
            details={"url": url, "status_code": response.status_code, "response": response.text[:500]},
        ) from e

    return response


def _json(response: requests.Response) -> dict:
    try:
        data = response.json()
    except ValueError as e:
        raise APIResponseError("API returned invalid JSON", details={"url": response.url}) from e
    if not isinstance(data, dict):
        raise APIResponseError(f"Unexpected response type: {type(data).__name__}")
    return data


def _first_report(data: dict) -> dict | None:
    success = data.get("success") or []
    if not success:
        return None
    return (success[0] or {}).get("report")


def report_period(key: ReportKey) -> dict[str, str]:
    """Date period covering the bucket (hourly buckets may straddle midnight)."""
    start = key.timestamp
    end = start + timedelta(hours=1) if key.aggregation is Aggregation.HOURLY else start
    return {"startDate": start.date().isoformat(), "endDate": end.date().isoformat()}


class AdsReportingClient:
    """
    Report provider backed by the Amazon Ads reporting API.

    Every HTTP call is admitted through a shared RateLimiter and bounded by a
    timeout. Access tokens come from ``token_provider``; how they are obtained
    is not this client's concern.
    """

    def __init__(
        self,
        config: IngestorConfig,
        token_provider: Callable[[], str],
        store: PerformanceStore,
        counts_store: ReportCountsStore | None = None,
        session: requests.Session | None = None,
        limiter: RateLimiter | None = None,
    ):
        if not config.ads_api_client_id:
            raise ConfigurationError("ADS_API_CLIENT_ID must be set to call the reporting API")
        self.config = config
        self.token_provider = token_provider
        self.store = store
        self.counts_store = counts_store
        self.session = session or create_http_session(config)
        self.limiter = limiter or RateLimiter(config.ads_api_requests_per_second, name="ads-api")

    def _headers(self) -> dict[str, str]:
        return {
            "Amazon-Advertising-API-ClientId": self.config.ads_api_client_id,
            "Authorization": f"Bearer {self.token_provider()}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _call(self, method: str, path: str, body: dict, timeout: int | None = None) -> dict:
        url = f"{self.config.ads_api_base_url}{path}"
        future = self.limiter.schedule(
            send_request,
            self.session,
            method,
            url,
            timeout or self.config.ads_api_timeout_seconds,
            headers=self._headers(),
            json_body=body,
        )
        return _json(future.result())

    def create_report(self, key: ReportKey) -> str | None:
        """Request a report for the bucket. Returns the report id, or None if none came back."""
        body = {
            "accessRequestedAccounts": [{"advertiserAccountId": key.account_id}],
            "reports": [
                {
                    "format": REPORT_FORMAT,
                    "periods": [{"datePeriod": report_period(key)}],
                    "query": {"fields": REPORT_FIELDS[(key.aggregation, key.entity_type)]},
                }
            ],
        }
        with log_operation(logger, "create_report", key=key.label):
            data = self._call("POST", "/adsApi/v1/create/reports", body)
        report = _first_report(data)
        report_id = (report or {}).get("reportId") or None
        if report_id is None:
            logger.warning("Create report response carried no report id", extra={"key": key.label, "error": data.get("error")})
        return report_id

    def get_report_status(self, report_id: str) -> ReportProbe:
        data = self._call("POST", "/adsApi/v1/retrieve/reports", {"reportIds": [report_id]})
        report = _first_report(data)
        if report is None:
            raise APIResponseError("Report not found in retrieve response", details={"report_id": report_id})

        raw_status = str(report.get("status", "")).upper()
        status = PROVIDER_STATUS.get(raw_status)
        if status is None:
            logger.warning("Unrecognised report status; treating as in progress", extra={"status": raw_status})
            status = LiveReportStatus.IN_PROGRESS

        parts = report.get("completedReportParts") or []
        url = parts[0].get("url") if parts else report.get("url")
        return ReportProbe(
            status=status,
            download_url=url or None,
            raw_status=raw_status,
            failure_reason=report.get("failureReason"),
        )

    def download(self, url: str) -> bytes:
        """Fetch the report file. Download URLs are pre-signed, so no auth headers are sent."""
        future = self.limiter.schedule(
            send_request, self.session, "GET", url, self.config.ads_api_download_timeout_seconds
        )
        return future.result().content

    def download_and_parse(self, download_url: str, key: ReportKey) -> int:
        content = self.download(download_url)
        return parse_report(content, key, self.store, self.counts_store)

    def close(self) -> None:
        self.limiter.close()
        self.session.close()
