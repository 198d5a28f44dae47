"""
Range Resolver

Converts a human-selected calendar day plus timezone assumptions into the
UTC window that must be fetched from the remote store:

- Local midnight and end-of-day are converted with full IANA DST rules,
  not a fixed offset, so 23- and 25-hour days resolve correctly
- The fetch window is widened to whole UTC days so a local day that
  straddles a UTC midnight is never truncated
- Metadata (DST flag, day count, expected sample count) feeds the
  quality analyzer

Invalid timezone names and implausible manual offsets raise
TimezoneConfigError instead of falling back to UTC.
"""

import logging
import os
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import tz

from .errors import TimezoneConfigError
from .models import DateRange, TimezoneConfig

logger = logging.getLogger(__name__)

# Offsets are minutes east of UTC
MIN_TIMEZONE_OFFSET = -12 * 60
MAX_TIMEZONE_OFFSET = 14 * 60

# Density yardstick only, not a sampling requirement
BASELINE_SAMPLES_PER_DAY = 24

MAX_FETCH_DAYS = 3

_ONE_MS = timedelta(milliseconds=1)


def is_valid_timezone_offset(offset) -> bool:
    """Return True for an integer offset inside the real-world UTC offset band."""
    if isinstance(offset, bool) or not isinstance(offset, int):
        return False
    return MIN_TIMEZONE_OFFSET <= offset <= MAX_TIMEZONE_OFFSET


def local_date_key(day: date) -> str:
    """YYYY-MM-DD key used by the remote store's string-prefix date filter."""
    return day.strftime("%Y-%m-%d")


def resolve_range(
    selected_date: str,
    tz_config: Optional[TimezoneConfig] = None,
    samples_per_day: int = BASELINE_SAMPLES_PER_DAY,
) -> DateRange:
    """
    Resolve a calendar day into a DST-correct, UTC-day-aligned fetch window.

    Args:
        selected_date: Calendar day as "YYYY-MM-DD"
        tz_config: Timezone assumptions; None or an empty name means the
            host's local zone, resolved at call time
        samples_per_day: Baseline samples per day for expected_sample_count

    Returns:
        A new DateRange. fetch_start_utc <= local_day_start <=
        local_day_end <= fetch_end_utc always holds.

    Raises:
        TimezoneConfigError: If the day string, zone name or manual offset is invalid
    """
    tz_config = tz_config or TimezoneConfig()
    day = _parse_day(selected_date)
    zone, zone_name = _resolve_zone(tz_config)

    manual_offset = tz_config.manual_offset_minutes
    if manual_offset is not None and not is_valid_timezone_offset(manual_offset):
        raise TimezoneConfigError(
            f"Invalid manual timezone offset: {manual_offset!r} "
            f"(expected an integer between {MIN_TIMEZONE_OFFSET} and {MAX_TIMEZONE_OFFSET} minutes)"
        )

    # A manual offset pins the local-day boundaries; DST detection below
    # still uses the named zone.
    day_zone = timezone(timedelta(minutes=manual_offset)) if manual_offset is not None else zone

    local_day_start = _local_midnight(day, day_zone)
    next_day_start = _local_midnight(day + timedelta(days=1), day_zone)
    local_day_end = (next_day_start.astimezone(timezone.utc) - _ONE_MS).astimezone(day_zone)

    start_utc = local_day_start.astimezone(timezone.utc)
    end_utc = local_day_end.astimezone(timezone.utc)
    fetch_start_utc = start_utc.replace(hour=0, minute=0, second=0, microsecond=0)
    fetch_end_utc = end_utc.replace(hour=23, minute=59, second=59, microsecond=999000)

    days_to_fetch = max(1, (fetch_end_utc.date() - fetch_start_utc.date()).days)

    if manual_offset is not None:
        offset_minutes = manual_offset
    else:
        offset_minutes = _offset_minutes(local_day_start)

    is_dst_transition = _has_dst_transition(fetch_start_utc, fetch_end_utc, zone)

    date_range = DateRange(
        local_day_start=local_day_start,
        local_day_end=local_day_end,
        fetch_start_utc=fetch_start_utc,
        fetch_end_utc=fetch_end_utc,
        timezone_offset_minutes=offset_minutes,
        is_dst_transition=is_dst_transition,
        days_to_fetch=days_to_fetch,
        expected_sample_count=samples_per_day * days_to_fetch,
        timezone_name=zone_name,
        local_day_key=local_date_key(day),
    )

    logger.debug(
        "resolve_range %s [%s]: local %s..%s, fetch %s..%s, dst=%s, days=%d",
        selected_date, zone_name,
        local_day_start.isoformat(), local_day_end.isoformat(),
        fetch_start_utc.isoformat(), fetch_end_utc.isoformat(),
        is_dst_transition, days_to_fetch,
    )
    return date_range


def validate_date_range(date_range: DateRange) -> Tuple[bool, List[str]]:
    """
    Check a resolved range for conditions the caller may want to surface.

    Returns:
        Tuple of (is_valid, issues)
    """
    issues = []

    if date_range.fetch_start_utc > date_range.fetch_end_utc:
        issues.append("Invalid date range: fetch window ends before it starts")

    if not is_valid_timezone_offset(date_range.timezone_offset_minutes):
        issues.append(f"Invalid timezone offset: {date_range.timezone_offset_minutes}")

    fetch_days = fetch_span_days(date_range)
    if fetch_days > MAX_FETCH_DAYS:
        issues.append(f"Fetch range too large: {fetch_days} days")

    if date_range.is_dst_transition:
        issues.append("Date range includes DST transition")

    return len(issues) == 0, issues


def fetch_span_days(date_range: DateRange) -> int:
    """Inclusive number of UTC calendar dates touched by the fetch window."""
    return (date_range.fetch_end_utc.date() - date_range.fetch_start_utc.date()).days + 1


def _parse_day(selected_date: str) -> date:
    try:
        return datetime.strptime(selected_date.strip(), "%Y-%m-%d").date()
    except (AttributeError, ValueError) as e:
        raise TimezoneConfigError(f"Invalid date string: {selected_date!r}") from e


def _resolve_zone(tz_config: TimezoneConfig) -> Tuple[tzinfo, str]:
    """Return (tzinfo, display name) for the configured or host zone."""
    if tz_config.use_host_timezone:
        return tz.tzlocal(), _host_timezone_name()

    name = tz_config.name.strip()
    try:
        return ZoneInfo(name), name
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise TimezoneConfigError(f"Unknown or unsupported timezone: {name!r}") from e


def _host_timezone_name() -> str:
    env_tz = os.environ.get("TZ", "").lstrip(":")
    if env_tz:
        return env_tz
    return datetime.now().astimezone().tzname() or "local"


def _local_midnight(day: date, zone: tzinfo) -> datetime:
    # Round-trip through UTC so a midnight skipped by DST lands on a real instant
    naive = datetime.combine(day, time.min)
    return naive.replace(tzinfo=zone).astimezone(timezone.utc).astimezone(zone)


def _offset_minutes(dt: datetime) -> int:
    offset = dt.utcoffset() or timedelta(0)
    return int(offset.total_seconds() // 60)


def _has_dst_transition(start_utc: datetime, end_utc: datetime, zone: tzinfo) -> bool:
    """True iff the zone's UTC offset differs between the two instants."""
    return start_utc.astimezone(zone).utcoffset() != end_utc.astimezone(zone).utcoffset()
