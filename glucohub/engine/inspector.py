"""
Embedded Database Inspector

Read-only inspection of an uploaded single-file SQLite database (for
example an xDrip export). The file's structure is discovered at runtime;
nothing here assumes a fixed schema.

Each module-level operation opens a fresh in-memory copy of the buffer,
so calls are self-contained and safe to run concurrently from worker
threads. Callers that issue many calls against the same upload can hold
an EmbeddedDatabase session instead and close it when the upload is
replaced.
"""

import io
import logging
import sqlite3
from typing import Any, Dict, List, Optional

import pandas as pd

from .errors import EmbeddedDatabaseError
from .models import CanonicalRecord, ColumnInfo, TablePage, TableRow, TableSchema, TimeGap
from .normalizer import bg_reading_to_sgv_entry, normalize_embedded_row

logger = logging.getLogger(__name__)

SQLITE_HEADER = b"SQLite format 3\x00"

DEFAULT_PAGE_SIZE = 50
DEFAULT_SAMPLE_SIZE = 5
DEFAULT_TIME_COLUMN = "timestamp"
DEFAULT_VALUE_COLUMN = "calculated_value"
DEFAULT_MIN_GAP_MINUTES = 60
DEFAULT_READINGS_TABLE = "BgReadings"
DEFAULT_DEVICE_COLUMN = "device"

# A user column with one of these names hides that alias for the real rowid
ROWID_ALIASES = ("rowid", "_rowid_", "oid")


class EmbeddedDatabase:
    """
    A read-only session over one uploaded database buffer.

    Usage:
        with EmbeddedDatabase(buffer) as db:
            tables = db.list_tables()
    """

    def __init__(self, buffer: bytes):
        data = bytes(buffer)
        if len(data) < 100 or not data.startswith(SQLITE_HEADER):
            raise EmbeddedDatabaseError("Uploaded file is not a valid SQLite database")

        self._conn = sqlite3.connect(":memory:", check_same_thread=False)
        try:
            self._conn.deserialize(data)
            # Force a read of the schema so a corrupt file fails here
            self._conn.execute("SELECT count(*) FROM sqlite_master").fetchone()
        except sqlite3.Error as e:
            self._conn.close()
            raise EmbeddedDatabaseError(f"Uploaded file is not a valid SQLite database: {e}") from e

    def __enter__(self) -> "EmbeddedDatabase":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._conn.close()

    # --- DISCOVERY ----------------------------------------------------------

    def table_names(self) -> List[str]:
        """User tables, excluding SQLite's internal sqlite_* tables."""
        rows = self._query(
            "SELECT name FROM sqlite_master "
            "WHERE type = 'table' AND name NOT LIKE 'sqlite\\_%' ESCAPE '\\' "
            "ORDER BY name"
        )
        return [r[0] for r in rows]

    def columns(self, table: str) -> List[ColumnInfo]:
        self._require_table(table)
        rows = self._query(f"PRAGMA table_info({_quote(table)})")
        return [
            ColumnInfo(
                name=r[1],
                declared_type=r[2] or "",
                is_not_null=r[3] == 1,
                is_primary_key=r[5] > 0,
            )
            for r in rows
        ]

    def row_count(self, table: str) -> int:
        self._require_table(table)
        return self._query(f"SELECT COUNT(*) FROM {_quote(table)}")[0][0]

    def list_tables(self) -> List[TableSchema]:
        """Schema and exact row count of every user table, empty ones included."""
        return [
            TableSchema(name=name, columns=self.columns(name), row_count=self.row_count(name))
            for name in self.table_names()
        ]

    # --- ROW RETRIEVAL ------------------------------------------------------

    def read_page(self, table: str, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> TablePage:
        """
        One 1-indexed page of rows in storage (rowid) order.

        The total row count is recomputed on every call.
        """
        if page < 1 or page_size < 1:
            raise ValueError(f"page and page_size must be >= 1 (got page={page}, page_size={page_size})")

        total = self.row_count(table)
        offset = (page - 1) * page_size
        rows = self._select_rows(
            f"SELECT * FROM {_quote(table)} ORDER BY {self._storage_order(table)} LIMIT ? OFFSET ?",
            (page_size, offset),
        )
        return TablePage(rows=rows, total_row_count=total)

    def read_all_rows(self, table: str) -> List[TableRow]:
        self._require_table(table)
        return self._select_rows(f"SELECT * FROM {_quote(table)} ORDER BY {self._storage_order(table)}")

    def sample_rows(self, table: str, limit: int = DEFAULT_SAMPLE_SIZE) -> List[TableRow]:
        """First rows in storage order."""
        return self.read_page(table, 1, limit).rows

    def tail_rows(self, table: str, limit: int = DEFAULT_SAMPLE_SIZE) -> List[TableRow]:
        """Last rows in storage order, newest first."""
        self._require_table(table)
        return self._select_rows(
            f"SELECT * FROM {_quote(table)} ORDER BY {self._storage_order(table, descending=True)} LIMIT ?",
            (limit,),
        )

    # --- GAP SCAN -----------------------------------------------------------

    def scan_time_gaps(
        self,
        table: str,
        time_column: str = DEFAULT_TIME_COLUMN,
        value_column: Optional[str] = DEFAULT_VALUE_COLUMN,
        min_gap_minutes: float = DEFAULT_MIN_GAP_MINUTES,
    ) -> List[TimeGap]:
        """
        Scan a time-ordered column for gaps of at least min_gap_minutes.

        The time column is read as epoch milliseconds. Rows with a NULL
        time are skipped. Pass value_column=None to scan tables with no
        value column.

        Raises:
            EmbeddedDatabaseError: If the table or a named column does not exist,
                or the time column holds non-numeric values
        """
        column_names = {c.name for c in self.columns(table)}
        for column in (time_column, value_column):
            if column is not None and column not in column_names:
                raise EmbeddedDatabaseError(f"Column '{column}' not found in table '{table}'")

        value_expr = _quote(value_column) if value_column is not None else "NULL"
        rows = self._query(
            f"SELECT {_quote(time_column)}, {value_expr} FROM {_quote(table)} "
            f"WHERE {_quote(time_column)} IS NOT NULL ORDER BY {_quote(time_column)}"
        )

        gaps = []
        for (prev_time, prev_value), (next_time, next_value) in zip(rows, rows[1:]):
            try:
                gap_minutes = (float(next_time) - float(prev_time)) / 60000.0
            except (TypeError, ValueError) as e:
                raise EmbeddedDatabaseError(
                    f"Column '{time_column}' in table '{table}' is not numeric epoch milliseconds"
                ) from e

            if gap_minutes >= min_gap_minutes:
                gaps.append(TimeGap(
                    start_time=prev_time,
                    end_time=next_time,
                    duration_minutes=gap_minutes,
                    start_value=prev_value,
                    end_value=next_value,
                ))

        logger.debug("scan_time_gaps %s.%s: %d rows, %d gaps", table, time_column, len(rows), len(gaps))
        return gaps

    # --- GLUCOSE READINGS ---------------------------------------------------

    def read_readings(
        self,
        table: str = DEFAULT_READINGS_TABLE,
        time_column: str = DEFAULT_TIME_COLUMN,
        value_column: str = DEFAULT_VALUE_COLUMN,
        device_column: str = DEFAULT_DEVICE_COLUMN,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
    ) -> List[CanonicalRecord]:
        """
        Glucose rows as sensor CanonicalRecords, ascending by time.

        Rows with a NULL time or value are skipped. start_ms/end_ms bound
        the time column inclusively when given.

        Raises:
            EmbeddedDatabaseError: If the table or a named column does not exist,
                or a row holds a non-numeric time or value
        """
        rows = self._reading_rows(table, time_column, value_column, start_ms, end_ms)
        try:
            return [normalize_embedded_row(r, time_column, value_column, device_column) for r in rows]
        except ValueError as e:
            raise EmbeddedDatabaseError(f"Table '{table}' holds an unreadable glucose row: {e}") from e

    def backfill_entries(
        self,
        table: str = DEFAULT_READINGS_TABLE,
        time_column: str = DEFAULT_TIME_COLUMN,
        value_column: str = DEFAULT_VALUE_COLUMN,
        device_column: str = DEFAULT_DEVICE_COLUMN,
        start_ms: Optional[int] = None,
        end_ms: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Remote sensor (sgv) entries built from the same rows read_readings returns."""
        rows = self._reading_rows(table, time_column, value_column, start_ms, end_ms)
        try:
            return [bg_reading_to_sgv_entry(r, time_column, value_column, device_column) for r in rows]
        except ValueError as e:
            raise EmbeddedDatabaseError(f"Table '{table}' holds an unreadable glucose row: {e}") from e

    # --- INTERNALS ----------------------------------------------------------

    def _query(self, sql: str, params: tuple = ()) -> List[tuple]:
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise EmbeddedDatabaseError(f"Database query failed: {e}") from e

    def _select_rows(self, sql: str, params: tuple = ()) -> List[TableRow]:
        try:
            cursor = self._conn.execute(sql, params)
            names = [d[0] for d in cursor.description]
            return [dict(zip(names, row)) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise EmbeddedDatabaseError(f"Database query failed: {e}") from e

    def _require_table(self, table: str) -> None:
        if table not in self.table_names():
            raise EmbeddedDatabaseError(f"Table '{table}' not found in database")

    def _reading_rows(
        self,
        table: str,
        time_column: str,
        value_column: str,
        start_ms: Optional[int],
        end_ms: Optional[int],
    ) -> List[TableRow]:
        column_names = {c.name for c in self.columns(table)}
        for column in (time_column, value_column):
            if column not in column_names:
                raise EmbeddedDatabaseError(f"Column '{column}' not found in table '{table}'")

        time_expr = _quote(time_column)
        sql = f"SELECT * FROM {_quote(table)} WHERE {time_expr} IS NOT NULL AND {_quote(value_column)} IS NOT NULL"
        params: List[int] = []
        if start_ms is not None:
            sql += f" AND {time_expr} >= ?"
            params.append(start_ms)
        if end_ms is not None:
            sql += f" AND {time_expr} <= ?"
            params.append(end_ms)

        rows = self._select_rows(f"{sql} ORDER BY {time_expr}", tuple(params))
        logger.debug("read %d glucose rows from %s", len(rows), table)
        return rows

    def _storage_order(self, table: str, descending: bool = False) -> str:
        direction = " DESC" if descending else ""
        columns = self.columns(table)
        taken = {c.name.lower() for c in columns}

        alias = next((a for a in ROWID_ALIASES if a not in taken), None)
        if alias is not None:
            try:
                self._conn.execute(f"SELECT {alias} FROM {_quote(table)} LIMIT 0")
                return alias + direction
            except sqlite3.OperationalError:
                pass

        # WITHOUT ROWID tables are stored in primary-key order
        keys = [c.name for c in columns if c.is_primary_key] or [c.name for c in columns]
        return ", ".join(_quote(k) + direction for k in keys)


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


# --- ONE-SHOT OPERATIONS (FRESH LOAD PER CALL) ------------------------------

def list_tables(buffer: bytes) -> List[TableSchema]:
    with EmbeddedDatabase(buffer) as db:
        return db.list_tables()


def read_page(buffer: bytes, table: str, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE) -> TablePage:
    with EmbeddedDatabase(buffer) as db:
        return db.read_page(table, page, page_size)


def read_all_rows(buffer: bytes, table: str) -> List[TableRow]:
    with EmbeddedDatabase(buffer) as db:
        return db.read_all_rows(table)


def sample_rows(buffer: bytes, table: str, limit: int = DEFAULT_SAMPLE_SIZE) -> List[TableRow]:
    with EmbeddedDatabase(buffer) as db:
        return db.sample_rows(table, limit)


def tail_rows(buffer: bytes, table: str, limit: int = DEFAULT_SAMPLE_SIZE) -> List[TableRow]:
    with EmbeddedDatabase(buffer) as db:
        return db.tail_rows(table, limit)


def scan_time_gaps(
    buffer: bytes,
    table: str,
    time_column: str = DEFAULT_TIME_COLUMN,
    value_column: Optional[str] = DEFAULT_VALUE_COLUMN,
    min_gap_minutes: float = DEFAULT_MIN_GAP_MINUTES,
) -> List[TimeGap]:
    with EmbeddedDatabase(buffer) as db:
        return db.scan_time_gaps(table, time_column, value_column, min_gap_minutes)


def read_readings(
    buffer: bytes,
    table: str = DEFAULT_READINGS_TABLE,
    time_column: str = DEFAULT_TIME_COLUMN,
    value_column: str = DEFAULT_VALUE_COLUMN,
    device_column: str = DEFAULT_DEVICE_COLUMN,
    start_ms: Optional[int] = None,
    end_ms: Optional[int] = None,
) -> List[CanonicalRecord]:
    with EmbeddedDatabase(buffer) as db:
        return db.read_readings(table, time_column, value_column, device_column, start_ms, end_ms)


def backfill_entries(
    buffer: bytes,
    table: str = DEFAULT_READINGS_TABLE,
    time_column: str = DEFAULT_TIME_COLUMN,
    value_column: str = DEFAULT_VALUE_COLUMN,
    device_column: str = DEFAULT_DEVICE_COLUMN,
    start_ms: Optional[int] = None,
    end_ms: Optional[int] = None,
) -> List[Dict[str, Any]]:
    with EmbeddedDatabase(buffer) as db:
        return db.backfill_entries(table, time_column, value_column, device_column, start_ms, end_ms)


def rows_to_frame(rows: List[Dict[str, Any]], columns: Optional[List[str]] = None) -> pd.DataFrame:
    """Build a DataFrame from table rows, keeping the table's column order."""
    if columns is None:
        columns = list(rows[0].keys()) if rows else []
    return pd.DataFrame.from_records(rows, columns=columns)


def export_table_csv(buffer: bytes, table: str) -> str:
    """Full table as CSV text (header row included even when the table is empty)."""
    with EmbeddedDatabase(buffer) as db:
        columns = [c.name for c in db.columns(table)]
        rows = db.read_all_rows(table)

    out = io.StringIO()
    rows_to_frame(rows, columns).to_csv(out, index=False)
    return out.getvalue()
