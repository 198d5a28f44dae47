import asyncio

import httpx
import pytest

from glucohub.engine.errors import TransportError
from glucohub.engine.nightscout_client import NightscoutClient

# 2024-03-10T00:00:00Z and 2024-03-11T23:59:59.999Z
START_MS = 1710028800000
END_MS = 1710201599999


def fetch(handler, method: str, api_secret: str = "s3cret"):
    async def go():
        transport = httpx.MockTransport(handler)
        async with NightscoutClient("https://ns.example/", api_secret=api_secret, transport=transport) as client:
            return await getattr(client, method)(START_MS, END_MS, "2024-03-10")
    return asyncio.run(go())


class RecordingHandler:
    def __init__(self, payload=None, status_code=200):
        self.payload = payload if payload is not None else []
        self.status_code = status_code
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.payload)


class TestScopedReads:
    def test_sensor_read_sends_numeric_and_prefix_filters(self):
        handler = RecordingHandler([{"date": START_MS, "sgv": 104}])
        result = fetch(handler, "fetch_sensor_readings")
        assert result == [{"date": START_MS, "sgv": 104}]

        request = handler.requests[0]
        assert request.url.host == "ns.example"
        assert request.url.path == "/api/v1/entries/sgv.json"
        params = request.url.params
        assert params["find[date][$gte]"] == str(START_MS)
        assert params["find[date][$lte]"] == str(END_MS)
        assert params["find[dateString][$regex]"] == "^2024-03-10"
        assert params["count"] == "1000"

    def test_manual_read_uses_mbg_entries(self):
        handler = RecordingHandler()
        fetch(handler, "fetch_manual_readings")
        assert handler.requests[0].url.path == "/api/v1/entries/mbg.json"

    def test_meal_read_filters_on_created_at_and_event_type(self):
        handler = RecordingHandler([
            {"_id": "a", "eventType": "Meal", "created_at": "2024-03-10T12:00:00.000Z", "carbs": 40},
            {"_id": "b", "eventType": "Correction Bolus", "created_at": "2024-03-10T12:05:00.000Z"},
            {"_id": "c", "created_at": "2024-03-10T13:00:00.000Z"},
        ])
        meals = fetch(handler, "fetch_meal_events")
        assert [m["_id"] for m in meals] == ["a"]

        request = handler.requests[0]
        assert request.url.path == "/api/v1/treatments.json"
        params = request.url.params
        assert params["find[created_at][$gte]"] == "2024-03-10T00:00:00.000Z"
        assert params["find[created_at][$lte]"] == "2024-03-11T23:59:59.999Z"
        assert params["find[created_at][$regex]"] == "^2024-03-10"

    def test_secret_sent_as_header_and_token(self):
        handler = RecordingHandler()
        fetch(handler, "fetch_sensor_readings")
        request = handler.requests[0]
        assert request.headers["api-secret"] == "s3cret"
        assert request.url.params["token"] == "s3cret"

    def test_no_secret_no_credentials(self):
        handler = RecordingHandler()
        fetch(handler, "fetch_sensor_readings", api_secret="")
        request = handler.requests[0]
        assert "api-secret" not in request.headers
        assert "token" not in request.url.params


class TestTransportFailures:
    def test_http_error_status(self):
        with pytest.raises(TransportError, match="500"):
            fetch(RecordingHandler({"message": "boom"}, status_code=500), "fetch_sensor_readings")

    def test_unauthorized(self):
        with pytest.raises(TransportError, match="401"):
            fetch(RecordingHandler([], status_code=401), "fetch_manual_readings")

    def test_payload_must_be_a_list(self):
        with pytest.raises(TransportError, match="expected a list"):
            fetch(RecordingHandler({"status": "ok"}), "fetch_sensor_readings")

    @pytest.mark.parametrize("payload", [["oops"], [42], [{"date": START_MS, "sgv": 100}, None]])
    def test_entries_must_be_objects(self, payload):
        with pytest.raises(TransportError, match="expected an object"):
            fetch(RecordingHandler(payload), "fetch_sensor_readings")

    def test_non_object_treatment_is_rejected_before_meal_filter(self):
        with pytest.raises(TransportError, match="treatments"):
            fetch(RecordingHandler([{"_id": "a", "eventType": "Meal"}, "Meal"]), "fetch_meal_events")

    def test_non_json_payload(self):
        def handler(request):
            return httpx.Response(200, text="<html>maintenance</html>")

        with pytest.raises(TransportError, match="non-JSON"):
            fetch(handler, "fetch_manual_readings")

    def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransportError, match="request failed") as excinfo:
            fetch(handler, "fetch_meal_events")
        assert isinstance(excinfo.value.__cause__, httpx.ConnectError)
