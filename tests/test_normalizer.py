import random

import pytest

from glucohub.engine.models import RecordKind
from glucohub.engine.normalizer import (
    DEFAULT_EMBEDDED_DEVICE,
    bg_reading_to_sgv_entry,
    epoch_ms,
    host_local_hour,
    normalize,
    normalize_embedded_row,
    normalize_many,
    normalize_meal,
)

# 2024-03-09T16:00:00Z
T0 = 1710000000000
MINUTE_MS = 60000


class TestNormalizeRemote:
    def test_manual_reads_mbg(self, utc_host):
        rec = normalize({"date": T0, "mbg": 120, "device": "OneTouch"}, "manual")
        assert rec.kind == RecordKind.MANUAL
        assert rec.value == 120.0
        assert rec.timestamp_ms == T0
        assert rec.hour_of_local_day == 16.0
        assert rec.device == "OneTouch"

    def test_sensor_reads_sgv(self, utc_host):
        rec = normalize({"date": T0 + 30 * MINUTE_MS, "sgv": 98}, RecordKind.SENSOR)
        assert rec.kind == RecordKind.SENSOR
        assert rec.value == 98.0
        assert rec.hour_of_local_day == 16.5

    def test_generic_value_field_fallback(self, utc_host):
        rec = normalize({"date": T0, "value": 101}, "sensor")
        assert rec.value == 101.0

    def test_values_are_not_clamped(self, utc_host):
        assert normalize({"date": T0, "sgv": 450}, "sensor").value == 450.0
        assert normalize({"date": T0, "sgv": 12}, "sensor").value == 12.0

    def test_missing_date_raises(self):
        with pytest.raises(ValueError, match="date"):
            normalize({"dateString": "2024-03-09T16:00:00Z", "sgv": 100}, "sensor")

    def test_missing_value_raises(self):
        with pytest.raises(ValueError, match="reading value"):
            normalize({"date": T0}, "manual")

    def test_unknown_kind_raises(self):
        with pytest.raises(ValueError):
            normalize({"date": T0, "sgv": 100}, "meal")

    @pytest.mark.parametrize("value", [[120], {"mg/dl": 120}, "high", True])
    def test_non_numeric_value_raises_value_error(self, value):
        with pytest.raises(ValueError, match="reading value"):
            normalize({"date": T0, "sgv": value}, "sensor")

    def test_numeric_string_date(self, utc_host):
        assert normalize({"date": str(T0), "sgv": 100}, "sensor").timestamp_ms == T0

    def test_normalize_many_sorts_ascending(self, utc_host):
        raws = [{"date": T0 + i * 5 * MINUTE_MS, "sgv": 100 + i} for i in range(12)]
        random.Random(7).shuffle(raws)
        records = normalize_many(raws, "sensor")
        assert [r.timestamp_ms for r in records] == sorted(r.timestamp_ms for r in records)


class TestEpochMs:
    @pytest.mark.parametrize("value,expected", [
        (T0, T0),
        (float(T0) + 0.7, T0),
        (str(T0), T0),
        ("1710000000000.0", T0),
    ])
    def test_placeable(self, value, expected):
        assert epoch_ms(value) == expected

    @pytest.mark.parametrize("value", [None, True, "", "soon", "nan", float("inf"), [T0], {"$date": T0}])
    def test_unplaceable(self, value):
        assert epoch_ms(value) is None


class TestHostLocalHour:
    def test_hour_follows_host_zone(self, host_tz):
        host_tz("America/New_York")
        assert normalize({"date": T0, "sgv": 100}, "sensor").hour_of_local_day == 11.0

        host_tz("Asia/Kolkata")
        assert normalize({"date": T0, "sgv": 100}, "sensor").hour_of_local_day == 21.5

    def test_rederiving_hour_is_stable(self, host_tz):
        host_tz("Europe/Berlin")
        rec = normalize({"date": T0 + 17 * MINUTE_MS, "mbg": 140}, "manual")
        assert host_local_hour(rec.timestamp_ms) == rec.hour_of_local_day
        again = normalize({"date": rec.timestamp_ms, "mbg": rec.value}, "manual")
        assert again == rec


class TestNormalizeMeal:
    def test_meal_placed_by_created_at(self, utc_host):
        meal = normalize_meal({
            "_id": "m1",
            "eventType": "Meal",
            "created_at": "2024-03-09T12:15:00.000Z",
            "date": T0,
            "carbs": 45,
            "notes": "Pasta\nwith tomato sauce",
        })
        assert meal.id == "m1"
        assert meal.name == "Pasta"
        assert meal.carbs == 45.0
        assert meal.protein == 0.0
        assert meal.fat == 0.0
        assert meal.hour_of_local_day == 12.25
        assert meal.timestamp_ms == T0 - 3 * 3600000 - 45 * MINUTE_MS

    def test_meal_without_created_at_is_unplaced(self):
        meal = normalize_meal({"_id": "m2", "eventType": "Meal", "date": T0, "carbs": 30})
        assert meal.timestamp_ms is None
        assert meal.hour_of_local_day is None
        assert meal.name == "Meal"

    @pytest.mark.parametrize("raw", [
        {"_id": "m4", "created_at": "2024-03-09T12:00:00Z", "carbs": [45]},
        {"_id": "m5", "created_at": "2024-03-09T12:00:00Z", "fat": {"g": 3}},
        {"_id": "m6", "created_at": T0},
        {"_id": "m7", "created_at": "not a time"},
        {"_id": "m8", "notes": ["Pasta"]},
    ])
    def test_malformed_meal_raises_value_error(self, raw):
        with pytest.raises(ValueError):
            normalize_meal(raw)

    def test_created_at_with_offset(self, utc_host):
        meal = normalize_meal({"_id": "m3", "created_at": "2024-03-09T07:15:00-05:00"})
        assert meal.hour_of_local_day == 12.25


class TestEmbeddedRows:
    def test_row_maps_to_sensor_record(self, utc_host):
        rec = normalize_embedded_row({"_id": 1, "timestamp": T0, "calculated_value": 132.4, "device": "G6"})
        assert rec.kind == RecordKind.SENSOR
        assert rec.value == 132.4
        assert rec.device == "G6"
        assert rec.hour_of_local_day == 16.0

    def test_device_defaults_to_placeholder(self):
        rec = normalize_embedded_row({"timestamp": T0, "calculated_value": 100})
        assert rec.device == DEFAULT_EMBEDDED_DEVICE

    def test_custom_columns(self):
        rec = normalize_embedded_row({"t": T0, "v": 88}, timestamp_column="t", value_column="v")
        assert rec.value == 88.0

    def test_missing_value_column_raises(self):
        with pytest.raises(ValueError, match="calculated_value"):
            normalize_embedded_row({"timestamp": T0})

    def test_non_numeric_value_column_raises(self):
        with pytest.raises(ValueError, match="calculated_value"):
            normalize_embedded_row({"timestamp": T0, "calculated_value": b"\x01"})

    def test_bg_reading_to_sgv_entry(self, utc_host):
        entry = bg_reading_to_sgv_entry({
            "timestamp": T0,
            "calculated_value": 120.0,
            "device": "xDrip-DexcomG6",
            "direction": "Flat",
        })
        assert entry["type"] == "sgv"
        assert entry["sgv"] == 120.0
        assert entry["date"] == T0
        assert entry["dateString"] == "2024-03-09T16:00:00.000Z"
        assert entry["sysTime"] == entry["dateString"]
        assert entry["direction"] == "Flat"
        assert entry["utcOffset"] == 0
        assert entry["source"] == "glucohub"
        assert entry["device"] == "xDrip-DexcomG6"

    def test_sgv_entry_utc_offset_follows_host(self, host_tz):
        host_tz("America/New_York")
        entry = bg_reading_to_sgv_entry({"timestamp": T0, "calculated_value": 120.0})
        assert entry["utcOffset"] == -300
        assert entry["device"] == DEFAULT_EMBEDDED_DEVICE
