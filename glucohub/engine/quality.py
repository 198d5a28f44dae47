"""
Quality Analyzer

Produces a data-quality report for one day's manual and sensor readings:

- Missing-data gaps between adjacent samples (both kinds merged)
- Values outside the physiologically plausible band
- Timezone advisories (DST inside the window, implausible offset,
  oversized fetch window)
- Sample density against the range's expected sample count

Findings are advisory output. Nothing in this module raises on bad data.
"""

from datetime import datetime, timezone
from typing import Iterable, List

from .models import (
    Anomaly,
    CanonicalRecord,
    DateRange,
    Density,
    Gap,
    QualityReport,
    TimezoneIssue,
)
from .range_resolver import MAX_FETCH_DAYS, fetch_span_days, is_valid_timezone_offset


# Default thresholds
DEFAULT_GAP_THRESHOLD_MINUTES = 30
PLAUSIBLE_LOW = 40.0
PLAUSIBLE_HIGH = 400.0


def analyze(
    manual: List[CanonicalRecord],
    sensor: List[CanonicalRecord],
    date_range: DateRange,
    gap_threshold_minutes: float = DEFAULT_GAP_THRESHOLD_MINUTES,
    plausible_low: float = PLAUSIBLE_LOW,
    plausible_high: float = PLAUSIBLE_HIGH,
) -> QualityReport:
    """
    Analyze data quality for one day's readings.

    Args:
        manual: Normalized manual readings
        sensor: Normalized sensor readings
        date_range: Resolved range the readings were fetched for
        gap_threshold_minutes: Gaps strictly longer than this are reported
        plausible_low: Lower bound of the plausible value band
        plausible_high: Upper bound of the plausible value band

    Returns:
        QualityReport
    """
    gaps = detect_gaps(list(manual) + list(sensor), gap_threshold_minutes)
    anomalies = detect_anomalies(manual, plausible_low, plausible_high)
    anomalies.extend(detect_anomalies(sensor, plausible_low, plausible_high))

    return QualityReport(
        has_gaps=bool(gaps),
        gap_list=gaps,
        anomaly_list=anomalies,
        timezone_issues=_timezone_issues(date_range),
        density=compute_density(len(manual) + len(sensor), date_range.expected_sample_count),
    )


def detect_gaps(
    records: Iterable[CanonicalRecord],
    gap_threshold_minutes: float = DEFAULT_GAP_THRESHOLD_MINUTES,
) -> List[Gap]:
    """
    Find inter-sample gaps longer than the threshold.

    Records are sorted by timestamp first, so input order does not affect
    the result.
    """
    ordered = sorted(records, key=lambda r: r.timestamp_ms)
    gaps = []

    for prev, current in zip(ordered, ordered[1:]):
        gap_minutes = (current.timestamp_ms - prev.timestamp_ms) / 60000.0
        if gap_minutes > gap_threshold_minutes:
            gaps.append(Gap(
                start=_utc(prev.timestamp_ms),
                end=_utc(current.timestamp_ms),
                duration_minutes=gap_minutes,
            ))

    return gaps


def detect_anomalies(
    records: Iterable[CanonicalRecord],
    plausible_low: float = PLAUSIBLE_LOW,
    plausible_high: float = PLAUSIBLE_HIGH,
) -> List[Anomaly]:
    """Flag every record whose value lies outside [plausible_low, plausible_high]."""
    reason = f"Value outside normal range ({plausible_low:g}-{plausible_high:g})"
    return [
        Anomaly(timestamp_ms=r.timestamp_ms, value=r.value, kind=r.kind, reason=reason)
        for r in records
        if r.value < plausible_low or r.value > plausible_high
    ]


def compute_density(actual: int, expected: int) -> Density:
    """
    Coverage as 100 * actual / expected.

    Manual and sensor samples count equally even though they arrive at
    very different rates.
    """
    coverage = 100.0 * actual / expected if expected > 0 else 0.0
    return Density(expected=expected, actual=actual, coverage_percent=coverage)


def _timezone_issues(date_range: DateRange) -> List[TimezoneIssue]:
    issues = []

    if date_range.is_dst_transition:
        issues.append(TimezoneIssue(type="DST", description="Data range includes DST transition"))

    if not is_valid_timezone_offset(date_range.timezone_offset_minutes):
        issues.append(TimezoneIssue(
            type="Offset",
            description=f"Invalid timezone offset: {date_range.timezone_offset_minutes}",
        ))

    fetch_days = fetch_span_days(date_range)
    if fetch_days > MAX_FETCH_DAYS:
        issues.append(TimezoneIssue(type="Range", description=f"Fetch range too large: {fetch_days} days"))

    return issues


def _utc(timestamp_ms: int) -> datetime:
    return datetime.fromtimestamp(timestamp_ms / 1000.0, tz=timezone.utc)
