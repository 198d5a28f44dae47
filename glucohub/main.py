"""
FastAPI Application for Glucohub

JSON endpoints over the reconciliation engine:
- Day view: resolve, fetch, normalize and quality-check one calendar day
- Embedded database inspection (tables, pages, gap scan, CSV export,
  glucose readings, back-fill entries)
- Manual meter CSV import
"""

import logging
from dataclasses import asdict, replace
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response

from glucohub.config import Settings, load_settings
from glucohub.engine import inspector
from glucohub.engine.aggregator import DayDataAggregator, filter_to_bounds
from glucohub.engine.csv_loader import load_blood_glucose_upload
from glucohub.engine.errors import EmbeddedDatabaseError, TimezoneConfigError, TransportError
from glucohub.engine.models import DateRange, LoadStatus, TimezoneConfig, record_to_dict
from glucohub.engine.nightscout_client import NightscoutClient
from glucohub.engine.normalizer import normalize_many
from glucohub.engine.quality import analyze
from glucohub.engine.range_resolver import resolve_range

SETTINGS = load_settings()

logging.basicConfig(
    level=SETTINGS.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Glucohub", version="1.0.0")


def get_settings() -> Settings:
    return SETTINGS


def create_client(settings: Settings) -> NightscoutClient:
    return NightscoutClient(
        settings.nightscout_url,
        api_secret=settings.nightscout_api_secret,
        timeout=settings.nightscout_timeout_seconds,
    )


def request_timezone_config(
    settings: Settings,
    timezone: Optional[str] = None,
    offset: Optional[int] = None,
) -> TimezoneConfig:
    """Configured timezone assumptions with any per-request overrides applied."""
    tz_config = settings.timezone_config()
    if timezone:
        tz_config = replace(tz_config, name=timezone)
    if offset is not None:
        tz_config = replace(tz_config, manual_offset_minutes=offset)
    return tz_config


@app.exception_handler(TimezoneConfigError)
@app.exception_handler(EmbeddedDatabaseError)
async def bad_input_handler(request, exc):
    logger.warning("%s %s rejected: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(TransportError)
async def transport_error_handler(request, exc):
    logger.warning("%s %s upstream failure: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=502, content={"error": str(exc)})


# --- DAY VIEW ---------------------------------------------------------------

@app.get("/api/day/{day}")
async def day_data(
    day: str,
    timezone: Optional[str] = None,
    offset: Optional[int] = None,
    settings: Settings = Depends(get_settings),
):
    """
    Load one calendar day from the remote store.

    A failed load is still returned as a day snapshot with status "failed";
    the HTTP status is 400 for a bad date/timezone and 502 for a remote failure.
    """
    if not settings.remote_enabled:
        raise HTTPException(status_code=503, detail="NIGHTSCOUT_URL is not configured")

    tz_config = request_timezone_config(settings, timezone, offset)

    async with create_client(settings) as client:
        aggregator = DayDataAggregator(
            client,
            tz_config=tz_config,
            gap_threshold_minutes=settings.gap_threshold_minutes,
            selected_date=day,
        )
        snapshot = await aggregator.load()

    content = snapshot.to_dict()
    content["sensor_average"] = aggregator.average_sensor_value
    content["bounds"] = {"low": aggregator.bound_low, "high": aggregator.bound_high}

    status_code = 200
    if snapshot.status == LoadStatus.FAILED:
        status_code = 400 if snapshot.range is None else 502
    return JSONResponse(status_code=status_code, content=content)


# --- EMBEDDED DATABASE INSPECTION -------------------------------------------

@app.post("/api/embedded/tables")
async def embedded_tables(file: UploadFile = File(...)):
    buffer = await file.read()
    tables = await run_in_threadpool(inspector.list_tables, buffer)
    return {"filename": file.filename, "tables": [t.to_dict() for t in tables]}


@app.post("/api/embedded/page")
async def embedded_page(
    file: UploadFile = File(...),
    table: str = Form(...),
    page: int = Form(1),
    page_size: int = Form(inspector.DEFAULT_PAGE_SIZE),
):
    if page < 1 or page_size < 1:
        raise HTTPException(status_code=400, detail="page and page_size must be >= 1")

    buffer = await file.read()
    result = await run_in_threadpool(inspector.read_page, buffer, table, page, page_size)
    return JSONResponse(content={
        "table": table,
        "page": page,
        "page_size": page_size,
        "total_row_count": result.total_row_count,
        "rows": _json_rows(result.rows),
    })


@app.post("/api/embedded/gaps")
async def embedded_gaps(
    file: UploadFile = File(...),
    table: str = Form(...),
    time_column: str = Form(inspector.DEFAULT_TIME_COLUMN),
    value_column: Optional[str] = Form(inspector.DEFAULT_VALUE_COLUMN),
    min_gap_minutes: float = Form(inspector.DEFAULT_MIN_GAP_MINUTES),
):
    buffer = await file.read()
    gaps = await run_in_threadpool(
        inspector.scan_time_gaps, buffer, table, time_column, value_column or None, min_gap_minutes
    )
    return JSONResponse(content={
        "table": table,
        "gap_count": len(gaps),
        "gaps": _json_rows([asdict(g) for g in gaps]),
    })


@app.post("/api/embedded/export")
async def embedded_export(file: UploadFile = File(...), table: str = Form(...)):
    buffer = await file.read()
    csv_text = await run_in_threadpool(inspector.export_table_csv, buffer, table)
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{table}.csv"'},
    )


@app.post("/api/embedded/readings")
async def embedded_readings(
    file: UploadFile = File(...),
    table: str = Form(inspector.DEFAULT_READINGS_TABLE),
    time_column: str = Form(inspector.DEFAULT_TIME_COLUMN),
    value_column: str = Form(inspector.DEFAULT_VALUE_COLUMN),
    day: Optional[str] = Form(None),
    timezone: Optional[str] = Form(None),
    settings: Settings = Depends(get_settings),
):
    """
    Glucose rows from an uploaded export as sensor readings.

    With a day, readings are limited to that local day and a quality
    report is attached.
    """
    buffer = await file.read()
    date_range = _upload_range(day, timezone, settings)
    start_ms, end_ms = _bounds(date_range)
    records = await run_in_threadpool(
        inspector.read_readings, buffer, table, time_column, value_column,
        inspector.DEFAULT_DEVICE_COLUMN, start_ms, end_ms,
    )

    content: Dict[str, Any] = {"filename": file.filename, "table": table}
    if date_range is not None:
        quality = analyze([], records, date_range, gap_threshold_minutes=settings.gap_threshold_minutes)
        content["range"] = date_range.to_dict()
        content["quality"] = quality.to_dict()

    content["count"] = len(records)
    content["readings"] = [record_to_dict(r) for r in records]
    return JSONResponse(content=content)


@app.post("/api/embedded/backfill")
async def embedded_backfill(
    file: UploadFile = File(...),
    table: str = Form(inspector.DEFAULT_READINGS_TABLE),
    time_column: str = Form(inspector.DEFAULT_TIME_COLUMN),
    value_column: str = Form(inspector.DEFAULT_VALUE_COLUMN),
    day: Optional[str] = Form(None),
    timezone: Optional[str] = Form(None),
    settings: Settings = Depends(get_settings),
):
    """Sensor (sgv) entries, ready to post to a Nightscout site, for an export's glucose rows."""
    buffer = await file.read()
    date_range = _upload_range(day, timezone, settings)
    start_ms, end_ms = _bounds(date_range)
    entries = await run_in_threadpool(
        inspector.backfill_entries, buffer, table, time_column, value_column,
        inspector.DEFAULT_DEVICE_COLUMN, start_ms, end_ms,
    )
    return JSONResponse(content={"table": table, "count": len(entries), "entries": entries})


# --- MANUAL METER IMPORT ----------------------------------------------------

@app.post("/api/manual/csv")
async def manual_csv(
    file: UploadFile = File(...),
    day: Optional[str] = Form(None),
    timezone: Optional[str] = Form(None),
    settings: Settings = Depends(get_settings),
):
    """
    Parse a meter CSV export into manual readings.

    With a day, readings are limited to that local day and a quality
    report is attached.
    """
    contents = await file.read()
    try:
        readings = load_blood_glucose_upload(contents)
    except ValueError as e:
        return JSONResponse(status_code=400, content={"error": str(e)})

    content: Dict[str, Any] = {"filename": file.filename}

    if day:
        date_range = resolve_range(day, request_timezone_config(settings, timezone))
        readings = filter_to_bounds(readings, date_range.local_start_ms, date_range.local_end_ms)
        records = normalize_many(readings, "manual")
        quality = analyze(records, [], date_range, gap_threshold_minutes=settings.gap_threshold_minutes)
        content["range"] = date_range.to_dict()
        content["quality"] = quality.to_dict()
    else:
        records = normalize_many(readings, "manual")

    content["count"] = len(records)
    content["readings"] = [record_to_dict(r) for r in records]
    return JSONResponse(content=content)


def _upload_range(day: Optional[str], timezone: Optional[str], settings: Settings) -> Optional[DateRange]:
    if not day:
        return None
    return resolve_range(day, request_timezone_config(settings, timezone))


def _bounds(date_range: Optional[DateRange]):
    if date_range is None:
        return None, None
    return date_range.local_start_ms, date_range.local_end_ms


def _json_rows(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # BLOB columns come back as bytes
    return [
        {k: v.hex() if isinstance(v, bytes) else v for k, v in row.items()}
        for row in rows
    ]


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
