"""
Record Normalizer

Maps raw records from either source onto the canonical reading shape:

- Remote manual readings (mbg entries) and sensor readings (sgv entries)
- Remote meal treatments (placed by their ISO creation time)
- Rows from an uploaded embedded database (xDrip BgReadings style)

No value is dropped or clamped here; range checks belong to the quality
analyzer.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from dateutil import parser as dtparser

from .models import CanonicalRecord, MealEvent, RecordKind

logger = logging.getLogger(__name__)

# Conventional column names in device exports
EMBEDDED_TIMESTAMP_COLUMN = "timestamp"
EMBEDDED_VALUE_COLUMN = "calculated_value"
EMBEDDED_DEVICE_COLUMN = "device"
DEFAULT_EMBEDDED_DEVICE = "xDrip"

_VALUE_FIELDS = {
    RecordKind.MANUAL: "mbg",
    RecordKind.SENSOR: "sgv",
}


def host_local_hour(timestamp_ms: int) -> float:
    """
    Hour of day (hours + minutes/60) of an instant in the host's local zone.

    All remote readings are placed on the viewer's own wall clock, so two
    viewers in different zones see different placements for the same
    instant. This is the only place that assumption lives.
    """
    local = datetime.fromtimestamp(timestamp_ms / 1000.0)
    return local.hour + local.minute / 60.0


def normalize(raw: Dict[str, Any], source_kind: Union[RecordKind, str]) -> CanonicalRecord:
    """
    Normalize one remote glucose entry.

    Args:
        raw: Remote JSON record; must carry a numeric "date" (epoch ms)
        source_kind: RecordKind or its value ("manual"/"sensor")

    Returns:
        CanonicalRecord with hour_of_local_day from host_local_hour

    Raises:
        ValueError: If the timestamp or value is missing or not numeric
    """
    kind = RecordKind(source_kind)
    timestamp_ms = epoch_ms(raw.get("date"))
    if timestamp_ms is None:
        raise ValueError(f"{kind.value} record has no numeric 'date': {raw!r}")

    value = raw.get(_VALUE_FIELDS[kind])
    if value is None:
        value = raw.get("value")
    if value is None:
        raise ValueError(f"{kind.value} record has no reading value: {raw!r}")

    return CanonicalRecord(
        timestamp_ms=timestamp_ms,
        value=_as_float(value, "reading value"),
        kind=kind,
        hour_of_local_day=host_local_hour(timestamp_ms),
        device=raw.get("device"),
    )


def normalize_many(raws: Iterable[Dict[str, Any]], source_kind: Union[RecordKind, str]) -> List[CanonicalRecord]:
    """Normalize a batch of remote entries, sorted ascending by timestamp."""
    records = [normalize(raw, source_kind) for raw in raws]
    records.sort(key=lambda r: r.timestamp_ms)
    return records


def normalize_meal(raw: Dict[str, Any]) -> MealEvent:
    """
    Normalize one remote meal treatment.

    The placement time comes from the ISO-8601 "created_at" field, not the
    numeric timestamp. Without it the meal is returned with
    timestamp_ms/hour_of_local_day left as None.
    """
    notes = raw.get("notes") or ""
    if not isinstance(notes, str):
        raise ValueError(f"meal notes are not text: {notes!r}")
    name = notes.split("\n")[0] if notes else ""

    timestamp_ms = None
    hour = None
    created_at = raw.get("created_at")
    if created_at:
        timestamp_ms = _iso_to_epoch_ms(created_at)
        hour = host_local_hour(timestamp_ms)
    else:
        logger.debug("meal %s has no created_at; leaving it unplaced", raw.get("_id"))

    return MealEvent(
        id=raw.get("_id"),
        name=name or "Meal",
        carbs=_as_float(raw.get("carbs") or 0, "carbs"),
        protein=_as_float(raw.get("protein") or 0, "protein"),
        fat=_as_float(raw.get("fat") or 0, "fat"),
        notes=notes,
        timestamp_ms=timestamp_ms,
        hour_of_local_day=hour,
    )


def normalize_embedded_row(
    row: Dict[str, Any],
    timestamp_column: str = EMBEDDED_TIMESTAMP_COLUMN,
    value_column: str = EMBEDDED_VALUE_COLUMN,
    device_column: str = EMBEDDED_DEVICE_COLUMN,
) -> CanonicalRecord:
    """
    Map a glucose row from an uploaded database to a sensor CanonicalRecord.

    Raises:
        ValueError: If the row lacks the timestamp or value column
    """
    timestamp_ms = epoch_ms(row.get(timestamp_column))
    if timestamp_ms is None:
        raise ValueError(f"Row has no numeric '{timestamp_column}' column: {row!r}")

    value = row.get(value_column)
    if value is None:
        raise ValueError(f"Row has no '{value_column}' column: {row!r}")

    return CanonicalRecord(
        timestamp_ms=timestamp_ms,
        value=_as_float(value, value_column),
        kind=RecordKind.SENSOR,
        hour_of_local_day=host_local_hour(timestamp_ms),
        device=row.get(device_column) or DEFAULT_EMBEDDED_DEVICE,
    )


def bg_reading_to_sgv_entry(
    row: Dict[str, Any],
    timestamp_column: str = EMBEDDED_TIMESTAMP_COLUMN,
    value_column: str = EMBEDDED_VALUE_COLUMN,
    device_column: str = EMBEDDED_DEVICE_COLUMN,
) -> Dict[str, Any]:
    """
    Build a remote sensor entry (sgv) from an embedded BgReadings row.

    Used to back-fill the remote store with readings recovered from a
    device export.
    """
    record = normalize_embedded_row(row, timestamp_column, value_column, device_column)
    when = datetime.fromtimestamp(record.timestamp_ms / 1000.0, tz=timezone.utc)
    iso = when.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    utc_offset = datetime.fromtimestamp(record.timestamp_ms / 1000.0).astimezone().utcoffset()

    return {
        "type": "sgv",
        "sgv": record.value,
        "date": record.timestamp_ms,
        "dateString": iso,
        "sysTime": iso,
        "device": record.device,
        "direction": row.get("direction") or None,
        "utcOffset": int(utc_offset.total_seconds() // 60) if utc_offset else 0,
        "source": "glucohub",
        "device_source": record.device,
        "test": False,
    }


def epoch_ms(value: Any) -> Optional[int]:
    """
    Read an epoch-milliseconds field.

    Accepts ints, floats and numeric strings; returns None for anything
    that cannot be placed on the time axis (missing, bool, non-finite,
    unparsable).
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            return None
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return None
    return int(value)


def _as_float(value: Any, field: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"'{field}' is not numeric: {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"'{field}' is not numeric: {value!r}") from e


def _iso_to_epoch_ms(value: Any) -> int:
    if not isinstance(value, str):
        raise ValueError(f"created_at is not an ISO-8601 string: {value!r}")
    parsed = dtparser.isoparse(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(round(parsed.timestamp() * 1000))
