"""Report row validation, normalization and loading into the performance tables."""

from __future__ import annotations

import gzip
import json
import re
from datetime import datetime, timezone
from typing import Any, Protocol, Sequence

import pandas as pd
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from ingestor.exceptions import APIResponseError
from ingestor.logging_utils import get_logger, log_operation
from ingestor.models import Aggregation, EntityType, ReportKey

logger = get_logger(__name__)

COUNTRY_TIMEZONES = {
    "US": "America/Los_Angeles",
    "CA": "America/Los_Angeles",
    "MX": "America/Los_Angeles",
    "GB": "Europe/London",
    "DE": "Europe/London",
    "ES": "Europe/London",
    "FR": "Europe/London",
    "IT": "Europe/London",
    "JP": "Asia/Tokyo",
}

PERFORMANCE_TABLES = {
    Aggregation.DAILY: "performance_daily",
    Aggregation.HOURLY: "performance_hourly",
}

PERFORMANCE_KEY = ("account_id", "bucket_start", "ad_id", "entity_type", "entity_id")

OUTPUT_COLUMNS = [
    "account_id", "bucket_start", "bucket_date", "bucket_hour", "campaign_id", "campaign_name",
    "ad_group_id", "ad_id", "entity_type", "entity_id", "currency",
    "impressions", "clicks", "spend", "sales", "orders",
]

_COMMON_FIELDS = [
    "budgetCurrency.value",
    "campaign.id",
    "campaign.name",
    "adGroup.id",
    "ad.id",
]
_METRIC_FIELDS = [
    "metric.impressions",
    "metric.clicks",
    "metric.purchases",
    "metric.sales",
    "metric.totalCost",
]

# Requested report columns per (aggregation, entity type).
REPORT_FIELDS: dict[tuple[Aggregation, EntityType], list[str]] = {
    (Aggregation.DAILY, EntityType.TARGET): [
        "date.value", *_COMMON_FIELDS, "adGroup.name",
        "target.value", "target.matchType", "searchTerm.value", *_METRIC_FIELDS,
    ],
    (Aggregation.DAILY, EntityType.PRODUCT): [
        "date.value", *_COMMON_FIELDS, "advertisedProduct.id", "advertisedProduct.marketplace",
        "target.value", "target.matchType", *_METRIC_FIELDS,
    ],
    (Aggregation.HOURLY, EntityType.TARGET): [
        "hour.value", *_COMMON_FIELDS, "adGroup.name",
        "target.value", "target.matchType", "searchTerm.value", "matchedTarget.value", *_METRIC_FIELDS,
    ],
    (Aggregation.HOURLY, EntityType.PRODUCT): [
        "hour.value", *_COMMON_FIELDS, "advertisedProduct.id", "advertisedProduct.marketplace",
        "target.value", "target.matchType", "matchedTarget.value", *_METRIC_FIELDS,
    ],
}

_HOUR_VALUE = re.compile(r"^(\d{4}-\d{2}-\d{2})T(\d{2}):")


def timezone_for_country(country_code: str) -> str:
    return COUNTRY_TIMEZONES.get(country_code.upper(), "UTC")


class PerformanceStore(Protocol):
    def upsert_many(self, table: str, key_columns: Sequence[str], records: list[dict[str, Any]]) -> int: ...


class ReportCountsStore(Protocol):
    def update(self, key: ReportKey, **fields: Any) -> Any: ...


class ReportRow(BaseModel):
    """One row of a GZIP_JSON report. Keys are the dotted report column names."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)

    currency: str = Field(alias="budgetCurrency.value")
    campaign_id: str = Field(alias="campaign.id")
    campaign_name: str | None = Field(default=None, alias="campaign.name")
    ad_group_id: str = Field(alias="adGroup.id")
    ad_id: str = Field(alias="ad.id")
    advertised_product_id: str | None = Field(default=None, alias="advertisedProduct.id")
    target_value: str | None = Field(default=None, alias="target.value")
    target_match_type: str | None = Field(default=None, alias="target.matchType")
    search_term: str | None = Field(default=None, alias="searchTerm.value")
    impressions: int = Field(alias="metric.impressions", ge=0)
    clicks: int = Field(alias="metric.clicks", ge=0)
    purchases: int = Field(alias="metric.purchases", ge=0)
    sales: float = Field(alias="metric.sales", ge=0)
    total_cost: float = Field(alias="metric.totalCost", ge=0)

    def entity_id(self, entity_type: EntityType) -> str | None:
        if entity_type is EntityType.PRODUCT:
            return self.advertised_product_id or None
        if self.target_value and self.target_match_type:
            return f"{self.target_match_type}:{self.target_value}"
        if self.search_term:
            return f"EXACT:{self.search_term}"
        return None


class DailyReportRow(ReportRow):
    date_value: str = Field(alias="date.value", pattern=r"^\d{4}-\d{2}-\d{2}$")

    @property
    def local_bucket(self) -> str:
        return f"{self.date_value}T00:00:00"


class HourlyReportRow(ReportRow):
    hour_value: str = Field(alias="hour.value")
    date_value: str | None = Field(default=None, alias="date.value")

    @model_validator(mode="after")
    def normalize_hour_value(self) -> "HourlyReportRow":
        # Some reports send the bare hour number alongside date.value
        if "T" not in self.hour_value:
            if not self.date_value:
                raise ValueError(f"hour.value {self.hour_value!r} needs date.value")
            try:
                hour = int(float(self.hour_value))
            except ValueError as e:
                raise ValueError(f"Invalid hour.value: {self.hour_value!r}") from e
            self.hour_value = f"{self.date_value}T{hour:02d}:00:00"
        if not _HOUR_VALUE.match(self.hour_value):
            raise ValueError(f"Invalid hour.value: {self.hour_value!r}")
        return self

    @property
    def local_bucket(self) -> str:
        match = _HOUR_VALUE.match(self.hour_value)
        return f"{match.group(1)}T{match.group(2)}:00:00"


ROW_MODELS: dict[Aggregation, type[ReportRow]] = {
    Aggregation.DAILY: DailyReportRow,
    Aggregation.HOURLY: HourlyReportRow,
}


def decode_report(content: bytes) -> list[dict]:
    """Decompress (if gzipped) and decode a JSON report body into a list of rows."""
    try:
        if content[:2] == b"\x1f\x8b":
            content = gzip.decompress(content)
        data = json.loads(content.decode("utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise APIResponseError("Report file is not valid (gzip) JSON", details={"error": str(e)}) from e
    if not isinstance(data, list):
        raise APIResponseError(f"Report file must hold a JSON array (got {type(data).__name__})")
    return data


def validate_rows(rows: list[dict], key: ReportKey) -> tuple[list[dict], list[dict]]:
    """
    Validate report rows against the row model for the key's aggregation.
    Returns: (valid_rows, rejected_rows)
    """
    model = ROW_MODELS[key.aggregation]
    valid_rows: list[dict] = []
    rejected_rows: list[dict] = []

    for idx, raw in enumerate(rows):
        try:
            row = model.model_validate(raw)
        except PydanticValidationError as e:
            rejected_rows.append({"row_index": idx, "errors": e.errors(include_url=False), "raw_row": raw})
            continue

        entity_id = row.entity_id(key.entity_type)
        if not entity_id:
            rejected_rows.append({"row_index": idx, "errors": ["no entity id"], "raw_row": raw})
            continue

        valid_rows.append({
            "local_bucket": row.local_bucket,
            "campaign_id": row.campaign_id,
            "campaign_name": row.campaign_name,
            "ad_group_id": row.ad_group_id,
            "ad_id": row.ad_id,
            "entity_id": entity_id,
            "currency": row.currency,
            "impressions": row.impressions,
            "clicks": row.clicks,
            "spend": row.total_cost,
            "sales": row.sales,
            "orders": row.purchases,
        })

    logger.info(
        "Report row validation complete",
        extra={"key": key.label, "total_rows": len(rows), "valid_rows": len(valid_rows), "rejected_rows": len(rejected_rows)},
    )
    for rejected in rejected_rows[:5]:
        logger.warning("Report row reject sample", extra={"row_index": rejected["row_index"]})

    return valid_rows, rejected_rows


def normalize_rows(rows: list[dict], key: ReportKey) -> pd.DataFrame:
    """
    Turn validated rows into performance records.

    Report time values are local to the marketplace; ``bucket_start`` is that
    local bucket converted to UTC. Rows falling in an ambiguous DST hour are dropped.
    """
    with log_operation(logger, "normalize_report_rows", record_count=len(rows)):
        if not rows:
            return pd.DataFrame(columns=OUTPUT_COLUMNS)

        df = pd.DataFrame(rows)
        local = pd.to_datetime(df["local_bucket"], format="%Y-%m-%dT%H:%M:%S")
        df["bucket_date"] = local.dt.strftime("%Y-%m-%d")
        df["bucket_hour"] = local.dt.hour if key.aggregation is Aggregation.HOURLY else None
        df["bucket_start"] = (
            local.dt.tz_localize(timezone_for_country(key.country_code), ambiguous="NaT", nonexistent="shift_forward")
            .dt.tz_convert("UTC")
        )

        dropped = int(df["bucket_start"].isna().sum())
        if dropped:
            logger.warning("Dropping rows in ambiguous local hours", extra={"count": dropped})
            df = df[df["bucket_start"].notna()]

        df["account_id"] = key.account_id
        df["entity_type"] = key.entity_type.value
        for col in ("impressions", "clicks", "orders"):
            df[col] = pd.to_numeric(df[col], errors="coerce").fillna(0).astype("int64")
        for col in ("spend", "sales"):
            df[col] = pd.to_numeric(df[col], errors="coerce").fillna(0.0)

        # Several rows can share a key (e.g. search terms of one target); sum them.
        group_cols = [c for c in OUTPUT_COLUMNS if c not in ("impressions", "clicks", "spend", "sales", "orders")]
        df = (
            df[OUTPUT_COLUMNS]
            .groupby(list(PERFORMANCE_KEY), as_index=False, dropna=False)
            .agg({
                **{c: "first" for c in group_cols if c not in PERFORMANCE_KEY},
                "impressions": "sum",
                "clicks": "sum",
                "spend": "sum",
                "sales": "sum",
                "orders": "sum",
            })
        )
        return df[OUTPUT_COLUMNS]


def to_records(df: pd.DataFrame, aggregation: Aggregation) -> list[dict[str, Any]]:
    """DataFrame rows as plain Python values ready for pyodbc."""
    columns = [c for c in OUTPUT_COLUMNS if aggregation is Aggregation.HOURLY or c != "bucket_hour"]
    frame = df[columns].astype(object).where(df[columns].notna(), None)
    records = frame.to_dict(orient="records")
    for record in records:
        record["bucket_start"] = record["bucket_start"].to_pydatetime()
    return records


def parse_report(
    content: bytes,
    key: ReportKey,
    store: PerformanceStore,
    counts_store: ReportCountsStore | None = None,
) -> int:
    """Decode, validate, normalize and upsert a report. Returns the number of rows written."""
    with log_operation(logger, "parse_report", key=key.label):
        rows = decode_report(content)
        valid_rows, rejected_rows = validate_rows(rows, key)
        df = normalize_rows(valid_rows, key)
        records = to_records(df, key.aggregation)
        written = store.upsert_many(PERFORMANCE_TABLES[key.aggregation], PERFORMANCE_KEY, records)

        if counts_store is not None:
            counts_store.update(
                key,
                total_records=len(rows),
                success_records=len(valid_rows),
                error_records=len(rejected_rows),
            )

        logger.info(
            "Report loaded",
            extra={
                "key": key.label,
                "rows_in_file": len(rows),
                "rows_written": written,
                "parsed_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            },
        )
        return written
