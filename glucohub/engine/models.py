"""
Data models for glucose, meal and embedded-database records.

Defines the canonical reading shape shared by the remote store and the
uploaded database, the resolved fetch window for a selected day, the
quality report derived from a day's readings, and the structures the
embedded-database inspector reports back.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class RecordKind(str, Enum):
    """Origin of a glucose sample."""
    MANUAL = "manual"
    SENSOR = "sensor"


class LoadStatus(str, Enum):
    """States of the day-data aggregator."""
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class CanonicalRecord:
    """
    A normalized glucose sample.

    Attributes:
        timestamp_ms: UTC epoch milliseconds
        value: Reading on the source's native unit scale (mg/dL)
        kind: Manual fingerstick or sensor reading
        hour_of_local_day: Local wall-clock hour in [0, 24), derived from timestamp_ms
        device: Device identifier when the source carries one
    """
    timestamp_ms: int
    value: float
    kind: RecordKind
    hour_of_local_day: float
    device: Optional[str] = None


@dataclass(frozen=True)
class MealEvent:
    """
    A meal treatment from the remote store.

    hour_of_local_day is None when the record has no creation time; such
    meals cannot be placed on the day axis.
    """
    id: Optional[str]
    name: str
    carbs: float = 0.0
    protein: float = 0.0
    fat: float = 0.0
    notes: str = ""
    timestamp_ms: Optional[int] = None
    hour_of_local_day: Optional[float] = None


@dataclass(frozen=True)
class TimezoneConfig:
    """
    Timezone assumptions for resolving a calendar day.

    Attributes:
        name: IANA zone name; None means the host's local zone
        manual_offset_minutes: Optional fixed offset (minutes east of UTC)
            overriding the zone's own offset for the local-day boundaries
    """
    name: Optional[str] = None
    manual_offset_minutes: Optional[int] = None

    @property
    def use_host_timezone(self) -> bool:
        return not self.name


@dataclass(frozen=True)
class DateRange:
    """
    Resolved fetch window for one selected calendar day.

    local_day_start/local_day_end are timezone-aware datetimes in the
    resolved zone; fetch_start_utc/fetch_end_utc are aware UTC datetimes
    aligned to whole UTC days.
    """
    local_day_start: datetime
    local_day_end: datetime
    fetch_start_utc: datetime
    fetch_end_utc: datetime
    timezone_offset_minutes: int
    is_dst_transition: bool
    days_to_fetch: int
    expected_sample_count: int
    timezone_name: str
    local_day_key: str

    @property
    def fetch_start_ms(self) -> int:
        return _to_epoch_ms(self.fetch_start_utc)

    @property
    def fetch_end_ms(self) -> int:
        return _to_epoch_ms(self.fetch_end_utc)

    @property
    def local_start_ms(self) -> int:
        return _to_epoch_ms(self.local_day_start)

    @property
    def local_end_ms(self) -> int:
        return _to_epoch_ms(self.local_day_end)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "local_day_start": self.local_day_start.isoformat(),
            "local_day_end": self.local_day_end.isoformat(),
            "fetch_start_utc": self.fetch_start_utc.isoformat(),
            "fetch_end_utc": self.fetch_end_utc.isoformat(),
            "timezone_offset_minutes": self.timezone_offset_minutes,
            "is_dst_transition": self.is_dst_transition,
            "days_to_fetch": self.days_to_fetch,
            "expected_sample_count": self.expected_sample_count,
            "timezone_name": self.timezone_name,
            "local_day_key": self.local_day_key,
        }


@dataclass(frozen=True)
class Gap:
    """Missing-data interval between two adjacent samples."""
    start: datetime
    end: datetime
    duration_minutes: float


@dataclass(frozen=True)
class Anomaly:
    """A sample whose value falls outside the plausible band."""
    timestamp_ms: int
    value: float
    kind: RecordKind
    reason: str


@dataclass(frozen=True)
class TimezoneIssue:
    """Advisory about the timezone assumptions of a range (DST, Offset or Range)."""
    type: str
    description: str


@dataclass(frozen=True)
class Density:
    expected: int
    actual: int
    coverage_percent: float


@dataclass
class QualityReport:
    """
    Data-quality findings for one day's readings.

    Recomputed on every load; never persisted.
    """
    has_gaps: bool = False
    gap_list: List[Gap] = field(default_factory=list)
    anomaly_list: List[Anomaly] = field(default_factory=list)
    timezone_issues: List[TimezoneIssue] = field(default_factory=list)
    density: Density = field(default_factory=lambda: Density(0, 0, 0.0))

    @property
    def gap_count(self) -> int:
        return len(self.gap_list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "has_gaps": self.has_gaps,
            "gap_count": self.gap_count,
            "gap_list": [
                {
                    "start": g.start.isoformat(),
                    "end": g.end.isoformat(),
                    "duration_minutes": round(g.duration_minutes, 2),
                }
                for g in self.gap_list
            ],
            "anomaly_list": [
                {
                    "timestamp_ms": a.timestamp_ms,
                    "value": a.value,
                    "kind": a.kind.value,
                    "reason": a.reason,
                }
                for a in self.anomaly_list
            ],
            "timezone_issues": [
                {"type": i.type, "description": i.description}
                for i in self.timezone_issues
            ],
            "density": {
                "expected": self.density.expected,
                "actual": self.density.actual,
                "coverage_percent": round(self.density.coverage_percent, 2),
            },
        }


@dataclass(frozen=True)
class ColumnInfo:
    name: str
    declared_type: str
    is_primary_key: bool
    is_not_null: bool


@dataclass(frozen=True)
class TableSchema:
    """Structure of one user table discovered in an uploaded database."""
    name: str
    columns: List[ColumnInfo]
    row_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "row_count": self.row_count,
            "columns": [
                {
                    "name": c.name,
                    "declared_type": c.declared_type,
                    "is_primary_key": c.is_primary_key,
                    "is_not_null": c.is_not_null,
                }
                for c in self.columns
            ],
        }


# Rows from an uploaded database: column name -> value as stored
TableRow = Dict[str, Any]


@dataclass(frozen=True)
class TablePage:
    rows: List[TableRow]
    total_row_count: int


@dataclass(frozen=True)
class TimeGap:
    """
    Gap found by scanning a time-ordered column of an uploaded database.

    start_time/end_time are the raw column values (epoch milliseconds).
    """
    start_time: int
    end_time: int
    duration_minutes: float
    start_value: Optional[Any] = None
    end_value: Optional[Any] = None


@dataclass(frozen=True)
class DayData:
    """
    Snapshot exposed to presentation code for the selected day.

    A new snapshot replaces the previous one as a whole; partially
    loaded data is never exposed.
    """
    status: LoadStatus = LoadStatus.IDLE
    manual: List[CanonicalRecord] = field(default_factory=list)
    sensor: List[CanonicalRecord] = field(default_factory=list)
    meals: List[MealEvent] = field(default_factory=list)
    range: Optional[DateRange] = None
    quality: Optional[QualityReport] = None
    error: Optional[str] = None

    @property
    def is_loading(self) -> bool:
        return self.status == LoadStatus.LOADING

    @property
    def records(self) -> List[CanonicalRecord]:
        return self.manual + self.sensor

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "is_loading": self.is_loading,
            "error": self.error,
            "range": self.range.to_dict() if self.range else None,
            "quality": self.quality.to_dict() if self.quality else None,
            "records": {
                "manual": [record_to_dict(r) for r in self.manual],
                "sensor": [record_to_dict(r) for r in self.sensor],
                "meals": [
                    {
                        "id": m.id,
                        "name": m.name,
                        "carbs": m.carbs,
                        "protein": m.protein,
                        "fat": m.fat,
                        "notes": m.notes,
                        "timestamp_ms": m.timestamp_ms,
                        "hour_of_local_day": m.hour_of_local_day,
                    }
                    for m in self.meals
                ],
            },
        }


def record_to_dict(record: CanonicalRecord) -> Dict[str, Any]:
    return {
        "timestamp_ms": record.timestamp_ms,
        "value": record.value,
        "kind": record.kind.value,
        "hour_of_local_day": round(record.hour_of_local_day, 4),
        "device": record.device,
    }


def _to_epoch_ms(dt: datetime) -> int:
    return int(round(dt.timestamp() * 1000))
