"""
Nightscout client for the three day-scoped reads the aggregator needs.

Every read sends both the numeric epoch bounds and a string-prefix filter
on the local day key, since the store's numeric filtering is unreliable
across midnight. Callers must still treat the returned rows as advisory
and apply their own exact-bounds filter.

Timeouts belong to this client; it does not retry.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from .errors import TransportError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_COUNT = 1000


class NightscoutClient:
    """
    Async client for a Nightscout-compatible time-series store.

    Args:
        base_url: Site URL, e.g. "https://example.herokuapp.com"
        api_secret: API secret or access token
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests pass httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: str,
        api_secret: str = "",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_secret = api_secret
        headers = {"Accept": "application/json"}
        if api_secret:
            headers["api-secret"] = api_secret
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "NightscoutClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch_manual_readings(self, start_utc_ms: int, end_utc_ms: int, local_day_key: str) -> List[Dict[str, Any]]:
        """Manual (mbg) entries inside the window."""
        return await self._get_entries("mbg", start_utc_ms, end_utc_ms, local_day_key)

    async def fetch_sensor_readings(self, start_utc_ms: int, end_utc_ms: int, local_day_key: str) -> List[Dict[str, Any]]:
        """Sensor (sgv) entries inside the window."""
        return await self._get_entries("sgv", start_utc_ms, end_utc_ms, local_day_key)

    async def fetch_meal_events(self, start_utc_ms: int, end_utc_ms: int, local_day_key: str) -> List[Dict[str, Any]]:
        """Meal treatments inside the window, bounded on created_at."""
        params = {
            "count": DEFAULT_COUNT,
            "find[created_at][$gte]": _iso(start_utc_ms),
            "find[created_at][$lte]": _iso(end_utc_ms),
            "find[created_at][$regex]": f"^{local_day_key}",
        }
        treatments = await self._get_json("/api/v1/treatments.json", params)
        return [t for t in treatments if t.get("eventType") == "Meal"]

    async def _get_entries(self, entry_type: str, start_utc_ms: int, end_utc_ms: int, local_day_key: str) -> List[Dict[str, Any]]:
        params = {
            "count": DEFAULT_COUNT,
            "find[date][$gte]": start_utc_ms,
            "find[date][$lte]": end_utc_ms,
            "find[dateString][$regex]": f"^{local_day_key}",
        }
        return await self._get_json(f"/api/v1/entries/{entry_type}.json", params)

    async def _get_json(self, path: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        if self.api_secret:
            params = {**params, "token": self.api_secret}

        try:
            response = await self._client.get(path, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"Nightscout API error: {e.response.status_code} {e.response.reason_phrase} for {path}"
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(f"Nightscout request failed for {path}: {e}") from e

        try:
            payload = response.json()
        except ValueError as e:
            raise TransportError(f"Nightscout returned a non-JSON payload for {path}") from e

        if not isinstance(payload, list):
            raise TransportError(f"Nightscout returned {type(payload).__name__}, expected a list, for {path}")

        for entry in payload:
            if not isinstance(entry, dict):
                raise TransportError(
                    f"Nightscout returned a {type(entry).__name__} entry, expected an object, for {path}"
                )

        logger.debug("GET %s -> %d records", path, len(payload))
        return payload


def _iso(timestamp_ms: int) -> str:
    dt = datetime.fromtimestamp(timestamp_ms / 1000.0, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")
