"""Azure SQL access: AAD token auth and idempotent MERGE upserts."""

from __future__ import annotations

import json
import threading
import time
from contextlib import closing, contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator, Sequence

import pyodbc
from azure.identity import DefaultAzureCredential

from ingestor.config import IngestorConfig
from ingestor.exceptions import ConfigurationError, CredentialError, StorageError
from ingestor.logging_utils import get_logger

logger = get_logger(__name__)

SQL_COPT_SS_ACCESS_TOKEN = 1256  # ODBC attribute for AAD access token
SQL_TOKEN_SCOPE = "https://database.windows.net/.default"

# Tokens are refreshed this long before they expire
TOKEN_REFRESH_MARGIN_SECONDS = 300

# SQLSTATE classes raised by the ODBC driver when the login itself is refused
LOGIN_FAILED_SQLSTATES = {"28000", "FA004"}


class _AccessTokenCache:
    """One DefaultAzureCredential per process, tokens reused until close to expiry."""

    def __init__(self):
        self._lock = threading.Lock()
        self._credential: DefaultAzureCredential | None = None
        self._token = None

    def get(self) -> str:
        with self._lock:
            if self._token is not None and self._token.expires_on - TOKEN_REFRESH_MARGIN_SECONDS > time.time():
                return self._token.token
            if self._credential is None:
                self._credential = DefaultAzureCredential()
            self._token = self._credential.get_token(SQL_TOKEN_SCOPE)
            logger.debug("Fetched Azure SQL access token", extra={"expires_on": self._token.expires_on})
            return self._token.token

    def invalidate(self) -> None:
        """Drop the cached token so the next connection fetches a new one."""
        with self._lock:
            self._token = None

    def clear(self) -> None:
        with self._lock:
            self._credential = None
            self._token = None


_token_cache = _AccessTokenCache()


def _get_sql_access_token_bytes() -> bytes:
    """
    Returns the AAD access token bytes in the format required by ODBC:
    4-byte little-endian length prefix + UTF-16LE token bytes.
    """
    try:
        token = _token_cache.get()
    except Exception as e:
        raise CredentialError(
            "Failed to get Azure SQL access token. Ensure 'az login' is configured "
            "or service principal credentials are set.",
            details={"error": str(e)},
        ) from e
    token_bytes = token.encode("utf-16-le")
    return (len(token_bytes)).to_bytes(4, "little") + token_bytes


def get_sql_connection(config: IngestorConfig) -> pyodbc.Connection:
    """DSN-less connection to Azure SQL using AAD token auth."""
    if not config.sql_enabled:
        raise ConfigurationError(
            "AZURE_SQL_SERVER and AZURE_SQL_DATABASE must be set",
            details={"server": config.azure_sql_server, "database": config.azure_sql_database},
        )

    conn_str = (
        "DRIVER={ODBC Driver 18 for SQL Server};"
        f"SERVER={config.azure_sql_server},1433;"
        f"DATABASE={config.azure_sql_database};"
        "Encrypt=yes;"
        "TrustServerCertificate=no;"
        "Connection Timeout=30;"
    )

    token_bytes = _get_sql_access_token_bytes()
    try:
        return pyodbc.connect(conn_str, attrs_before={SQL_COPT_SS_ACCESS_TOKEN: token_bytes})
    except pyodbc.Error as e:
        sqlstate = e.args[0] if e.args else None
        if sqlstate in LOGIN_FAILED_SQLSTATES:
            _token_cache.invalidate()
            raise CredentialError(
                "Azure SQL rejected the access token",
                details={"server": config.azure_sql_server, "sqlstate": sqlstate, "error": str(e)},
            ) from e
        raise StorageError(
            "Failed to connect to Azure SQL",
            details={"server": config.azure_sql_server, "error": str(e)},
        ) from e


def check_connection(config: IngestorConfig) -> None:
    """Run SELECT 1 to confirm the database is reachable with the current credentials."""
    try:
        with closing(get_sql_connection(config)) as cn:
            cur = cn.cursor()
            cur.execute("SELECT 1")
            cur.fetchone()
    except pyodbc.Error as e:
        raise StorageError("Azure SQL connectivity check failed", details={"error": str(e)}) from e
    logger.info("Azure SQL connection verified", extra={"database": config.azure_sql_database})


def to_sql_value(value: Any) -> Any:
    """Convert a Python value into something pyodbc can bind."""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, datetime) and value.tzinfo is not None:
        # datetime2 columns hold naive UTC
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    if isinstance(value, Enum):
        return value.value
    return value


def build_merge_sql(table: str, key_columns: Sequence[str], columns: Sequence[str]) -> str:
    """
    Build a single-row MERGE keyed by ``key_columns``.

    Parameters are bound in ``columns`` order once (for the USING clause).
    """
    missing = [k for k in key_columns if k not in columns]
    if missing:
        raise ValueError(f"Key columns {missing} missing from record for {table}")

    source_cols = ", ".join(f"? AS [{c}]" for c in columns)
    on_clause = " AND ".join(f"target.[{k}] = source.[{k}]" for k in key_columns)
    update_cols = [c for c in columns if c not in key_columns]
    insert_cols = ", ".join(f"[{c}]" for c in columns)
    insert_vals = ", ".join(f"source.[{c}]" for c in columns)

    sql = (
        f"MERGE dbo.{table} AS target\n"
        f"USING (SELECT {source_cols}) AS source\n"
        f"ON {on_clause}\n"
    )
    if update_cols:
        set_clause = ",\n    ".join(f"[{c}] = source.[{c}]" for c in update_cols)
        sql += f"WHEN MATCHED THEN\n  UPDATE SET\n    {set_clause},\n    [updated_at] = SYSUTCDATETIME()\n"
    sql += f"WHEN NOT MATCHED THEN\n  INSERT ({insert_cols})\n  VALUES ({insert_vals});"
    return sql


class SqlConnection:
    """
    Azure SQL connection opened on first use and reused on the same thread.

    pyodbc connections are not shared between threads, so each thread gets its
    own. A pyodbc error discards the failing connection; the next transaction
    reconnects.
    """

    def __init__(self, config: IngestorConfig):
        self.config = config
        self._local = threading.local()
        self._lock = threading.Lock()
        self._open: list[pyodbc.Connection] = []

    def _connection(self) -> pyodbc.Connection:
        cn = getattr(self._local, "connection", None)
        if cn is None:
            cn = get_sql_connection(self.config)
            self._local.connection = cn
            with self._lock:
                self._open.append(cn)
        return cn

    def _discard(self, cn: pyodbc.Connection) -> None:
        self._local.connection = None
        with self._lock:
            if cn in self._open:
                self._open.remove(cn)
        try:
            cn.close()
        except pyodbc.Error as e:
            logger.debug("Ignoring error while closing a failed connection", extra={"error": str(e)})

    @contextmanager
    def transaction(self) -> Iterator[pyodbc.Cursor]:
        """Yield a cursor; commit when the block succeeds, roll back when it fails."""
        cn = self._connection()
        try:
            yield cn.cursor()
            cn.commit()
        except pyodbc.Error:
            self._discard(cn)
            raise
        except BaseException:
            cn.rollback()
            raise

    def close(self) -> None:
        """Close every connection opened through this object."""
        with self._lock:
            connections, self._open = self._open, []
        for cn in connections:
            try:
                cn.close()
            except pyodbc.Error as e:
                logger.warning("Failed to close Azure SQL connection", extra={"error": str(e)})
        self._local = threading.local()


class SqlEntityStore:
    """Upsert target for the payload handlers and the report parser."""

    def __init__(self, config: IngestorConfig):
        self.config = config
        self.db = SqlConnection(config)

    def upsert(self, table: str, key_columns: Sequence[str], record: dict[str, Any]) -> None:
        """Insert or update one row keyed by its natural key."""
        self.upsert_many(table, key_columns, [record])

    def upsert_many(self, table: str, key_columns: Sequence[str], records: list[dict[str, Any]]) -> int:
        """Upsert rows in a single transaction. Returns the number of rows written."""
        if not records:
            return 0
        columns = list(records[0].keys())
        sql = build_merge_sql(table, key_columns, columns)
        try:
            with self.db.transaction() as cur:
                for record in records:
                    cur.execute(sql, *[to_sql_value(record.get(c)) for c in columns])
        except pyodbc.Error as e:
            logger.error("DB upsert failed", extra={"table": table, "rows": len(records), "error": str(e)})
            raise StorageError(f"Failed to upsert into {table}", details={"error": str(e)}) from e
        logger.debug("Upserted rows", extra={"table": table, "rows": len(records)})
        return len(records)

    def test_connection(self) -> None:
        check_connection(self.config)

    def close(self) -> None:
        self.db.close()
