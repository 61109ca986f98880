"""Durable worker control row: enabled flag and messages-per-second."""

from __future__ import annotations

import pyodbc

from ingestor.azure_sql import SqlConnection, check_connection
from ingestor.config import IngestorConfig
from ingestor.exceptions import InvalidControlValueError, StorageError
from ingestor.logging_utils import get_logger
from ingestor.models import CONTROL_ROW_ID, ControlRecord, as_utc

logger = get_logger(__name__)

MAX_MESSAGES_PER_SECOND = 2**32 - 1


class ControlStore:
    """
    Reads and writes the singleton ``dbo.worker_control`` row.

    The row is created lazily by the first reader with enabled=1 and an
    unlimited rate, so exactly one row ever exists.
    """

    def __init__(self, config: IngestorConfig):
        self.config = config
        self.db = SqlConnection(config)

    def _ensure_row(self, cur) -> None:
        cur.execute(
            """
            MERGE dbo.worker_control WITH (HOLDLOCK) AS target
            USING (SELECT ? AS id) AS source
            ON target.id = source.id
            WHEN NOT MATCHED THEN
              INSERT (id, enabled, messages_per_second, updated_at)
              VALUES (source.id, 1, 0, SYSUTCDATETIME());
            """,
            CONTROL_ROW_ID,
        )

    def get_status(self) -> ControlRecord:
        """Return the control row, creating it on first read."""
        try:
            with self.db.transaction() as cur:
                self._ensure_row(cur)
                cur.execute(
                    """
                    SELECT enabled, messages_per_second, updated_at
                    FROM dbo.worker_control
                    WHERE id = ?
                    """,
                    CONTROL_ROW_ID,
                )
                row = cur.fetchone()
        except pyodbc.Error as e:
            raise StorageError("Failed to read worker control row", details={"error": str(e)}) from e

        return ControlRecord(
            enabled=bool(row[0]),
            messages_per_second=int(row[1]),
            updated_at=as_utc(row[2]),
        )

    def _update(self, column: str, value) -> ControlRecord:
        try:
            with self.db.transaction() as cur:
                self._ensure_row(cur)
                cur.execute(
                    f"""
                    UPDATE dbo.worker_control
                    SET {column} = ?, updated_at = SYSUTCDATETIME()
                    OUTPUT INSERTED.enabled, INSERTED.messages_per_second, INSERTED.updated_at
                    WHERE id = ?
                    """,
                    value,
                    CONTROL_ROW_ID,
                )
                row = cur.fetchone()
        except pyodbc.Error as e:
            raise StorageError(f"Failed to update worker control {column}", details={"error": str(e)}) from e

        record = ControlRecord(enabled=bool(row[0]), messages_per_second=int(row[1]), updated_at=as_utc(row[2]))
        logger.info("Worker control updated", extra=record.to_dict())
        return record

    def set_enabled(self, enabled: bool) -> ControlRecord:
        return self._update("enabled", 1 if enabled else 0)

    def set_rate(self, messages_per_second: int) -> ControlRecord:
        """Set the worker rate; 0 means unlimited."""
        if isinstance(messages_per_second, bool) or not isinstance(messages_per_second, int):
            raise InvalidControlValueError(
                "messages_per_second must be an integer",
                details={"value": messages_per_second},
            )
        if not 0 <= messages_per_second <= MAX_MESSAGES_PER_SECOND:
            raise InvalidControlValueError(
                "messages_per_second must be between 0 and 2^32-1",
                details={"value": messages_per_second},
            )
        return self._update("messages_per_second", messages_per_second)

    def test_connection(self) -> None:
        check_connection(self.config)

    def close(self) -> None:
        self.db.close()
