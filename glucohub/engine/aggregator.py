"""
Day-Data Aggregator

Orchestrates one selected day end to end:

1. Resolve the day into a fetch window (range resolver)
2. Fetch manual readings, sensor readings and meal events concurrently
3. Apply an exact-bounds filter to what the remote store returned
4. Normalize every record onto the local-time axis
5. Run the quality analyzer
6. Publish one consistent DayData snapshot

State moves Idle -> Loading -> Ready | Failed and re-enters Loading on
every new day selection. Only the most recently initiated load may
publish; a superseded load's result is discarded whenever it arrives.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import date
from typing import Any, Dict, List, Optional, Protocol

from .errors import TimezoneConfigError, TransportError
from .models import DateRange, DayData, LoadStatus, MealEvent, TimezoneConfig
from .normalizer import epoch_ms, normalize_many, normalize_meal
from .quality import DEFAULT_GAP_THRESHOLD_MINUTES, analyze
from .range_resolver import resolve_range

logger = logging.getLogger(__name__)

DEFAULT_BOUND_LOW = 70.0
DEFAULT_BOUND_HIGH = 140.0


class RemoteTimeSeriesClient(Protocol):
    async def fetch_manual_readings(self, start_utc_ms: int, end_utc_ms: int, local_day_key: str) -> List[Dict[str, Any]]: ...

    async def fetch_sensor_readings(self, start_utc_ms: int, end_utc_ms: int, local_day_key: str) -> List[Dict[str, Any]]: ...

    async def fetch_meal_events(self, start_utc_ms: int, end_utc_ms: int, local_day_key: str) -> List[Dict[str, Any]]: ...


def filter_to_bounds(raws: List[Dict[str, Any]], start_ms: int, end_ms: int) -> List[Dict[str, Any]]:
    """
    Keep remote entries whose "date" (epoch ms) lies in [start_ms, end_ms].

    Numeric strings are accepted, as the normalizer accepts them.

    Raises:
        ValueError: If an entry has no date that can be placed on the time
            axis
    """
    kept = []
    for raw in raws:
        timestamp_ms = epoch_ms(raw.get("date"))
        if timestamp_ms is None:
            raise ValueError(f"entry has no numeric 'date': {raw!r}")
        if start_ms <= timestamp_ms <= end_ms:
            kept.append(raw)
    return kept


class DayDataAggregator:
    """
    Loads and holds the data for the selected day.

    The presentation controls (visibility toggles, target bounds) are
    carried here unmodified; only selected_date and the timezone
    configuration affect what is fetched.

    Args:
        client: Remote time-series client
        tz_config: Timezone assumptions (None means host local zone)
        gap_threshold_minutes: Passed through to the quality analyzer
        selected_date: Initial day (YYYY-MM-DD); defaults to today
    """

    def __init__(
        self,
        client: RemoteTimeSeriesClient,
        tz_config: Optional[TimezoneConfig] = None,
        gap_threshold_minutes: float = DEFAULT_GAP_THRESHOLD_MINUTES,
        selected_date: Optional[str] = None,
    ):
        self.client = client
        self.tz_config = tz_config or TimezoneConfig()
        self.gap_threshold_minutes = gap_threshold_minutes
        self.selected_date = selected_date or date.today().isoformat()

        self.show_manual = True
        self.show_sensor = True
        self.show_average = True
        self.bound_low = DEFAULT_BOUND_LOW
        self.bound_high = DEFAULT_BOUND_HIGH

        self._snapshot = DayData()
        self._issued = 0

    @property
    def snapshot(self) -> DayData:
        return self._snapshot

    @property
    def average_sensor_value(self) -> float:
        sensor = self._snapshot.sensor
        if not sensor:
            return 0.0
        return sum(r.value for r in sensor) / len(sensor)

    async def select_date(self, selected_date: str) -> DayData:
        self.selected_date = selected_date
        return await self.load()

    async def set_timezone(self, tz_config: TimezoneConfig) -> DayData:
        self.tz_config = tz_config
        return await self.load()

    async def load(self) -> DayData:
        """
        Load the selected day.

        Returns:
            The snapshot current after this load settles. For a superseded
            load this is whatever the newer load published (or the
            in-flight Loading snapshot), never this load's own data.
        """
        self._issued += 1
        seq = self._issued
        self._snapshot = replace(self._snapshot, status=LoadStatus.LOADING, error=None)

        try:
            date_range = resolve_range(self.selected_date, self.tz_config)
        except TimezoneConfigError as e:
            logger.warning("load #%d for %s failed: %s", seq, self.selected_date, e)
            return self._publish(seq, DayData(status=LoadStatus.FAILED, error=str(e)))

        try:
            result = await self._fetch_day(date_range)
        except (TransportError, ValueError) as e:
            logger.warning("load #%d for %s failed: %s", seq, self.selected_date, e)
            return self._publish(seq, DayData(status=LoadStatus.FAILED, range=date_range, error=str(e)))

        return self._publish(seq, result)

    async def _fetch_day(self, date_range: DateRange) -> DayData:
        start_ms = date_range.fetch_start_ms
        end_ms = date_range.fetch_end_ms
        key = date_range.local_day_key

        # All three or nothing
        manual_raw, sensor_raw, meal_raw = await asyncio.gather(
            self.client.fetch_manual_readings(start_ms, end_ms, key),
            self.client.fetch_sensor_readings(start_ms, end_ms, key),
            self.client.fetch_meal_events(start_ms, end_ms, key),
        )

        _check_entries(manual_raw, "manual readings")
        _check_entries(sensor_raw, "sensor readings")
        _check_entries(meal_raw, "meal events")

        local_start = date_range.local_start_ms
        local_end = date_range.local_end_ms

        manual = normalize_many(filter_to_bounds(manual_raw, local_start, local_end), "manual")
        sensor = normalize_many(filter_to_bounds(sensor_raw, local_start, local_end), "sensor")
        meals = _meals_in_bounds([normalize_meal(m) for m in meal_raw], local_start, local_end)

        logger.debug(
            "day %s: manual %d/%d, sensor %d/%d, meals %d/%d kept after bounds filter",
            key, len(manual), len(manual_raw), len(sensor), len(sensor_raw), len(meals), len(meal_raw),
        )

        quality = analyze(manual, sensor, date_range, gap_threshold_minutes=self.gap_threshold_minutes)

        return DayData(
            status=LoadStatus.READY,
            manual=manual,
            sensor=sensor,
            meals=meals,
            range=date_range,
            quality=quality,
        )

    def _publish(self, seq: int, data: DayData) -> DayData:
        if seq != self._issued:
            logger.info("discarding superseded load #%d (latest is #%d)", seq, self._issued)
            return self._snapshot
        self._snapshot = data
        return data


def _check_entries(payload: Any, what: str) -> None:
    if not isinstance(payload, list):
        raise TransportError(f"{what}: expected a list, got {type(payload).__name__}")
    for entry in payload:
        if not isinstance(entry, dict):
            raise TransportError(f"{what}: expected objects, got a {type(entry).__name__} entry")


def _meals_in_bounds(meals: List[MealEvent], start_ms: int, end_ms: int) -> List[MealEvent]:
    # Unplaced meals (no creation time) pass through for the caller to flag
    kept = [m for m in meals if m.timestamp_ms is None or start_ms <= m.timestamp_ms <= end_ms]
    kept.sort(key=lambda m: (m.timestamp_ms is None, m.timestamp_ms or 0))
    return kept
