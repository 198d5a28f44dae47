"""
Runtime settings for the HTTP surface, read from the environment.

Engine modules keep their own DEFAULT_* constants; this only assembles
the values the web app passes into them.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from glucohub.engine.models import TimezoneConfig
from glucohub.engine.nightscout_client import DEFAULT_TIMEOUT_SECONDS
from glucohub.engine.quality import DEFAULT_GAP_THRESHOLD_MINUTES


@dataclass(frozen=True)
class Settings:
    nightscout_url: str = ""
    nightscout_api_secret: str = ""
    nightscout_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    timezone: str = ""
    manual_offset_minutes: Optional[int] = None
    gap_threshold_minutes: float = DEFAULT_GAP_THRESHOLD_MINUTES
    log_level: str = "INFO"

    @property
    def remote_enabled(self) -> bool:
        return bool(self.nightscout_url)

    def timezone_config(self) -> TimezoneConfig:
        return TimezoneConfig(name=self.timezone or None, manual_offset_minutes=self.manual_offset_minutes)


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from environment variables.

    Args:
        environ: Mapping to read instead of os.environ

    Raises:
        ValueError: If a numeric variable cannot be parsed
    """
    env = os.environ if environ is None else environ

    return Settings(
        nightscout_url=env.get("NIGHTSCOUT_URL", "").strip(),
        nightscout_api_secret=env.get("NIGHTSCOUT_API_SECRET", ""),
        nightscout_timeout_seconds=_parse_number(
            env, "NIGHTSCOUT_TIMEOUT_SECONDS", float, DEFAULT_TIMEOUT_SECONDS
        ),
        timezone=env.get("GLUCOHUB_TIMEZONE", "").strip(),
        manual_offset_minutes=_parse_number(env, "GLUCOHUB_MANUAL_OFFSET_MINUTES", int, None),
        gap_threshold_minutes=_parse_number(
            env, "GLUCOHUB_GAP_THRESHOLD_MINUTES", float, DEFAULT_GAP_THRESHOLD_MINUTES
        ),
        log_level=env.get("GLUCOHUB_LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


def _parse_number(env: Mapping[str, str], name: str, cast, default):
    text = env.get(name, "").strip()
    if not text:
        return default
    try:
        return cast(text)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {text!r}") from e
