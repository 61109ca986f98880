"""Persistence for report dataset metadata rows."""

from __future__ import annotations

from typing import Any

import pyodbc

from ingestor.azure_sql import SqlConnection, check_connection, to_sql_value
from ingestor.config import IngestorConfig
from ingestor.exceptions import StorageError
from ingestor.logging_utils import get_logger
from ingestor.models import ReportDatasetMetadata, ReportKey

logger = get_logger(__name__)

TABLE = "dbo.report_dataset_metadata"

COLUMNS = (
    "account_id",
    "country_code",
    "timestamp",
    "aggregation",
    "entity_type",
    "status",
    "report_id",
    "last_report_created_at",
    "refreshing",
    "refresh_started_at",
    "error",
    "last_refreshed",
    "next_refresh_at",
    "total_records",
    "success_records",
    "error_records",
)

KEY_COLUMNS = ("account_id", "country_code", "timestamp", "aggregation", "entity_type")

UPDATABLE_COLUMNS = frozenset(COLUMNS) - frozenset(KEY_COLUMNS)

_SELECT_LIST = ", ".join(f"[{c}]" for c in COLUMNS)
_OUTPUT_LIST = ", ".join(f"INSERTED.[{c}]" for c in COLUMNS)
_WHERE_KEY = " AND ".join(f"[{c}] = ?" for c in KEY_COLUMNS)


def _key_params(key: ReportKey) -> list[Any]:
    return [
        key.account_id,
        key.country_code,
        to_sql_value(key.timestamp),
        key.aggregation.value,
        key.entity_type.value,
    ]


def _to_metadata(row) -> ReportDatasetMetadata | None:
    if row is None:
        return None
    return ReportDatasetMetadata.from_row(dict(zip(COLUMNS, row)))


class ReportDatasetStore:
    """Reads and mutates ``dbo.report_dataset_metadata`` one row at a time."""

    def __init__(self, config: IngestorConfig):
        self.config = config
        self.db = SqlConnection(config)

    def get(self, key: ReportKey) -> ReportDatasetMetadata | None:
        try:
            with self.db.transaction() as cur:
                cur.execute(f"SELECT {_SELECT_LIST} FROM {TABLE} WHERE {_WHERE_KEY}", *_key_params(key))
                row = cur.fetchone()
        except pyodbc.Error as e:
            raise StorageError("Failed to read report dataset row", details={"key": key.label, "error": str(e)}) from e
        return _to_metadata(row)

    def update(self, key: ReportKey, **fields: Any) -> ReportDatasetMetadata | None:
        """
        Set ``fields`` on the row for ``key`` and return the updated row.

        Returns None when the row does not exist. Last write wins.
        """
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update columns {sorted(unknown)} on report dataset metadata")
        if not fields:
            return self.get(key)

        columns = list(fields)
        set_clause = ", ".join(f"[{c}] = ?" for c in columns)
        try:
            with self.db.transaction() as cur:
                cur.execute(
                    f"UPDATE {TABLE} SET {set_clause} OUTPUT {_OUTPUT_LIST} WHERE {_WHERE_KEY}",
                    *[to_sql_value(fields[c]) for c in columns],
                    *_key_params(key),
                )
                row = cur.fetchone()
        except pyodbc.Error as e:
            raise StorageError(
                "Failed to update report dataset row",
                details={"key": key.label, "columns": columns, "error": str(e)},
            ) from e
        return _to_metadata(row)

    def ensure(self, key: ReportKey) -> ReportDatasetMetadata:
        """Insert a ``missing`` row for ``key`` if none exists, then return the row."""
        try:
            with self.db.transaction() as cur:
                cur.execute(
                    f"""
                    MERGE {TABLE} WITH (HOLDLOCK) AS target
                    USING (SELECT ? AS account_id, ? AS country_code, ? AS [timestamp],
                                  ? AS aggregation, ? AS entity_type) AS source
                    ON target.account_id = source.account_id
                       AND target.country_code = source.country_code
                       AND target.[timestamp] = source.[timestamp]
                       AND target.aggregation = source.aggregation
                       AND target.entity_type = source.entity_type
                    WHEN NOT MATCHED THEN
                      INSERT (account_id, country_code, [timestamp], aggregation, entity_type, status, refreshing)
                      VALUES (source.account_id, source.country_code, source.[timestamp],
                              source.aggregation, source.entity_type, 'missing', 0);
                    """,
                    *_key_params(key),
                )
                cur.execute(f"SELECT {_SELECT_LIST} FROM {TABLE} WHERE {_WHERE_KEY}", *_key_params(key))
                row = cur.fetchone()
        except pyodbc.Error as e:
            raise StorageError("Failed to ensure report dataset row", details={"key": key.label, "error": str(e)}) from e
        logger.debug("Ensured report dataset row", extra={"key": key.label})
        return _to_metadata(row)

    def test_connection(self) -> None:
        check_connection(self.config)

    def close(self) -> None:
        self.db.close()
