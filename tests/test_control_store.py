"""Tests for ingestor.control_store — the singleton worker control row."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import patch

import pyodbc
import pytest

from ingestor.control_store import ControlStore
from ingestor.exceptions import InvalidControlValueError, StorageError

UPDATED = datetime(2024, 1, 8, 12, 0)


@pytest.fixture
def store(sample_config, mock_connection):
    conn, cursor = mock_connection
    with patch("ingestor.azure_sql.get_sql_connection", return_value=conn):
        yield ControlStore(sample_config), conn, cursor


class TestGetStatus:
    def test_reads_row(self, store):
        control, conn, cursor = store
        cursor.fetchone.return_value = (1, 5, UPDATED)
        record = control.get_status()
        assert record.enabled is True
        assert record.messages_per_second == 5
        assert record.updated_at == UPDATED.replace(tzinfo=timezone.utc)

    def test_row_created_lazily(self, store):
        control, conn, cursor = store
        cursor.fetchone.return_value = (1, 0, UPDATED)
        control.get_status()
        first_sql = cursor.execute.call_args_list[0][0][0]
        assert "MERGE dbo.worker_control WITH (HOLDLOCK)" in first_sql
        assert cursor.execute.call_args_list[0][0][1] == "main"
        conn.commit.assert_called_once()

    def test_db_error_wrapped(self, store):
        control, conn, cursor = store
        cursor.execute.side_effect = pyodbc.Error("08S01", "Communication link failure")
        with pytest.raises(StorageError, match="worker control"):
            control.get_status()


class TestUpdates:
    def test_stop(self, store):
        control, conn, cursor = store
        cursor.fetchone.return_value = (0, 0, UPDATED)
        record = control.set_enabled(False)
        sql, value, row_id = cursor.execute.call_args[0]
        assert "SET enabled = ?" in sql
        assert "OUTPUT INSERTED.enabled" in sql
        assert (value, row_id) == (0, "main")
        assert record.enabled is False

    def test_start(self, store):
        control, conn, cursor = store
        cursor.fetchone.return_value = (1, 0, UPDATED)
        control.set_enabled(True)
        assert cursor.execute.call_args[0][1] == 1

    def test_set_rate(self, store):
        control, conn, cursor = store
        cursor.fetchone.return_value = (1, 5, UPDATED)
        record = control.set_rate(5)
        assert "SET messages_per_second = ?" in cursor.execute.call_args[0][0]
        assert record.messages_per_second == 5
        assert record.rate_limited is True

    def test_rate_zero_is_unlimited(self, store):
        control, conn, cursor = store
        cursor.fetchone.return_value = (1, 0, UPDATED)
        assert control.set_rate(0).rate_limited is False

    @pytest.mark.parametrize("value", [-1, 2**32, 1.5, "5", True])
    def test_invalid_rate_rejected(self, store, value):
        control, conn, cursor = store
        with pytest.raises(InvalidControlValueError):
            control.set_rate(value)
        cursor.execute.assert_not_called()

    def test_max_rate_accepted(self, store):
        control, conn, cursor = store
        cursor.fetchone.return_value = (1, 2**32 - 1, UPDATED)
        assert control.set_rate(2**32 - 1).messages_per_second == 2**32 - 1


class TestConnectionReuse:
    def test_polls_share_one_connection(self, sample_config, mock_connection):
        conn, cursor = mock_connection
        cursor.fetchone.return_value = (1, 0, UPDATED)
        with patch("ingestor.azure_sql.get_sql_connection", return_value=conn) as mock_get:
            control = ControlStore(sample_config)
            for _ in range(3):
                control.get_status()
            control.close()
        mock_get.assert_called_once()
        assert conn.commit.call_count == 3
        conn.close.assert_called_once()
