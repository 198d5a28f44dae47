import sqlite3
import time
from pathlib import Path
from typing import Iterable, Sequence

import pytest


@pytest.fixture
def host_tz(monkeypatch):
    """Pin the host's local zone for the duration of a test."""
    def _pin(name: str) -> None:
        monkeypatch.setenv("TZ", name)
        time.tzset()

    yield _pin
    monkeypatch.undo()
    time.tzset()


@pytest.fixture
def utc_host(host_tz):
    host_tz("UTC")


def build_sqlite(tmp_path: Path, statements: Sequence[str], inserts: Iterable = ()) -> bytes:
    """Create a real database file and return its bytes, as an upload would deliver them."""
    db_path = tmp_path / "upload.sqlite"
    conn = sqlite3.connect(db_path)
    for sql in statements:
        conn.execute(sql)
    for sql, rows in inserts:
        conn.executemany(sql, rows)
    conn.commit()
    conn.close()
    return db_path.read_bytes()


BG_READINGS_DDL = (
    "CREATE TABLE BgReadings ("
    "_id INTEGER PRIMARY KEY AUTOINCREMENT, "
    "timestamp INTEGER NOT NULL, "
    "calculated_value REAL, "
    "device TEXT, "
    "direction TEXT)"
)
TREATMENTS_DDL = "CREATE TABLE Treatments (uuid TEXT PRIMARY KEY, carbs REAL)"
BG_INSERT = "INSERT INTO BgReadings (timestamp, calculated_value, device, direction) VALUES (?, ?, ?, ?)"


@pytest.fixture
def xdrip_export(tmp_path):
    """BgReadings with three rows (0, 30 and 150 minutes) and an empty Treatments table."""
    rows = [
        (0, 100.0, "xDrip-DexcomG6", "Flat"),
        (30 * 60000, 110.0, "xDrip-DexcomG6", "FortyFiveUp"),
        (150 * 60000, 90.0, None, "SingleDown"),
    ]
    return build_sqlite(tmp_path, [BG_READINGS_DDL, TREATMENTS_DDL], [(BG_INSERT, rows)])
