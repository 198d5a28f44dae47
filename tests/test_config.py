import pytest

from glucohub.config import Settings, load_settings


class TestLoadSettings:
    def test_defaults(self):
        settings = load_settings({})
        assert settings == Settings()
        assert settings.gap_threshold_minutes == 30
        assert settings.nightscout_timeout_seconds == 15.0
        assert settings.remote_enabled is False

    def test_values_from_environment(self):
        settings = load_settings({
            "NIGHTSCOUT_URL": " https://ns.example ",
            "NIGHTSCOUT_API_SECRET": "s3cret",
            "NIGHTSCOUT_TIMEOUT_SECONDS": "5",
            "GLUCOHUB_TIMEZONE": "Europe/Berlin",
            "GLUCOHUB_MANUAL_OFFSET_MINUTES": "-300",
            "GLUCOHUB_GAP_THRESHOLD_MINUTES": "45",
            "GLUCOHUB_LOG_LEVEL": "debug",
        })
        assert settings.nightscout_url == "https://ns.example"
        assert settings.remote_enabled is True
        assert settings.nightscout_timeout_seconds == 5.0
        assert settings.manual_offset_minutes == -300
        assert settings.gap_threshold_minutes == 45.0
        assert settings.log_level == "DEBUG"

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("GLUCOHUB_TIMEZONE", "Asia/Tokyo")
        assert load_settings().timezone == "Asia/Tokyo"

    def test_timezone_config(self):
        tz_config = load_settings({"GLUCOHUB_TIMEZONE": "Asia/Tokyo"}).timezone_config()
        assert tz_config.name == "Asia/Tokyo"
        assert tz_config.manual_offset_minutes is None
        assert load_settings({}).timezone_config().use_host_timezone is True

    @pytest.mark.parametrize("name,value", [
        ("NIGHTSCOUT_TIMEOUT_SECONDS", "soon"),
        ("GLUCOHUB_MANUAL_OFFSET_MINUTES", "5.5"),
        ("GLUCOHUB_GAP_THRESHOLD_MINUTES", "thirty"),
    ])
    def test_invalid_numbers_raise(self, name, value):
        with pytest.raises(ValueError, match=name):
            load_settings({name: value})
