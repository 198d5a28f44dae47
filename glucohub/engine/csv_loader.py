"""
CSV Loader for Manual Blood Glucose Exports

Parses meter exports (OneTouch-style "Item Type / Date and Time / Value"
CSVs) into remote-shaped manual reading records:

    {"date": epoch_ms, "dateString": ISO8601, "mbg": int, "device": str, "notes": str?}

These feed normalizer.normalize(record, "manual") exactly like entries
fetched from the remote store.
"""

import io
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pandas as pd
from dateutil import parser as dtparser

logger = logging.getLogger(__name__)

BLOOD_GLUCOSE_ITEM_TYPE = "Blood Glucose Reading"
DEFAULT_DEVICE = "OneTouch"

# UTF-8 narrow no-break space decoded as cp1252, seen in exported times
_MOJIBAKE_SPACE = "\u00e2\u20ac\u00af"


def load_blood_glucose_upload(file_bytes: bytes) -> List[Dict[str, Any]]:
    """
    Load manual readings from uploaded file bytes.

    Args:
        file_bytes: Raw bytes from file upload

    Returns:
        List of manual reading records, newest first

    Raises:
        ValueError: If the bytes cannot be read as CSV
    """
    try:
        raw_text = file_bytes.decode("utf-8")
    except UnicodeDecodeError:
        raw_text = file_bytes.decode("utf-8", errors="replace")

    return load_blood_glucose_csv(raw_text)


def load_blood_glucose_csv(content: str) -> List[Dict[str, Any]]:
    """
    Parse CSV text into manual reading records.

    Only rows whose Item Type is "Blood Glucose Reading" are kept; rows
    with an unparsable time or value are dropped.

    Raises:
        ValueError: If the text is not parseable CSV or lacks the required columns
    """
    # Strip BOM (either decoded or mis-decoded)
    content = re.sub("^(\ufeff|\u00ef\u00bb\u00bf)", "", content)

    try:
        df = pd.read_csv(io.StringIO(content), dtype=str, keep_default_na=False, skip_blank_lines=True)
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise ValueError(f"Error reading CSV file: {e}") from e

    df.columns = [str(c).strip() for c in df.columns]
    missing = [c for c in ("Item Type", "Date and Time", "Value") if c not in df.columns]
    if missing:
        raise ValueError(f"CSV file is missing required column(s): {', '.join(missing)}")

    readings = []
    skipped = 0
    for row in df.to_dict("records"):
        if row["Item Type"].strip() != BLOOD_GLUCOSE_ITEM_TYPE:
            continue

        reading = _parse_row(row)
        if reading is None:
            skipped += 1
            continue
        readings.append(reading)

    readings.sort(key=lambda r: r["date"], reverse=True)

    logger.debug("load_blood_glucose_csv: %d readings, %d unparsable rows skipped", len(readings), skipped)
    return readings


def _parse_row(row: Dict[str, str]) -> Optional[Dict[str, Any]]:
    timestamp_ms = _parse_time(row.get("Date and Time", ""))
    mbg = _parse_value(row.get("Value", ""))
    if timestamp_ms is None or mbg is None:
        return None

    notes = " ".join(
        part.strip() for part in (row.get("Notes", ""), row.get("Additional Value", "")) if part and part.strip()
    )
    when = datetime.fromtimestamp(timestamp_ms / 1000.0, tz=timezone.utc)

    reading = {
        "date": timestamp_ms,
        "dateString": when.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        "mbg": mbg,
        "device": (row.get("Device") or "").strip() or DEFAULT_DEVICE,
    }
    if notes:
        reading["notes"] = notes
    return reading


def _parse_time(text: str) -> Optional[int]:
    """Parse an exported time; naive times are the host's local wall clock."""
    cleaned = text.replace(_MOJIBAKE_SPACE, " ").replace("\u202f", " ").replace("\xa0", " ").replace('"', "").strip()
    if not cleaned:
        return None
    try:
        parsed = dtparser.parse(cleaned)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return int(round(parsed.timestamp() * 1000))


def _parse_value(text: str) -> Optional[int]:
    match = re.match(r"\s*(-?\d+)", text or "")
    if not match:
        return None
    return int(match.group(1))
