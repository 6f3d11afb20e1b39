"""
Tests for the Google Calendar availability service.
"""
import aiohttp
import pytest

from voice_agent import calendar
from voice_agent.calendar import GoogleCalendarAvailability, to_rfc3339


class FakeResponse:
    def __init__(self, payload=None, error=None):
        self.payload = payload
        self.error = error

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.error is not None:
            raise self.error

    async def json(self):
        return self.payload


def fake_session_factory(response=None, get_error=None, requests=None):
    class FakeClientSession:
        def __init__(self, timeout=None):
            self.timeout = timeout

        async def __aenter__(self):
            return self

        async def __aexit__(self, *exc):
            return False

        def get(self, url, params=None, headers=None):
            if requests is not None:
                requests.append((url, params, headers))
            if get_error is not None:
                raise get_error
            return response

    return FakeClientSession


class TestToRfc3339:
    def test_plain_date_is_midnight_utc(self):
        assert to_rfc3339("2024-07-01") == "2024-07-01T00:00:00+00:00"

    def test_zulu_datetime(self):
        assert to_rfc3339("2024-07-01T09:30:00Z") == "2024-07-01T09:30:00+00:00"

    def test_offset_is_kept(self):
        assert to_rfc3339("2024-07-01T09:30:00+01:00") == "2024-07-01T09:30:00+01:00"


class TestAvailability:
    @pytest.mark.asyncio
    async def test_without_token_everything_is_available(self, monkeypatch):
        requests = []
        monkeypatch.setattr(calendar.aiohttp, "ClientSession", fake_session_factory(requests=requests))

        assert await GoogleCalendarAvailability().is_available("cal-1", "2024-07-01", "2024-07-05") is True
        assert requests == []

    @pytest.mark.asyncio
    async def test_empty_calendar_is_available(self, monkeypatch):
        requests = []
        monkeypatch.setattr(
            calendar.aiohttp, "ClientSession",
            fake_session_factory(FakeResponse({"items": []}), requests=requests),
        )

        service = GoogleCalendarAvailability("token-123")

        assert await service.is_available("fleet@group.calendar", "2024-07-01", "2024-07-05") is True
        url, params, headers = requests[0]
        assert url.endswith("/calendars/fleet%40group.calendar/events")
        assert params["timeMin"] == "2024-07-01T00:00:00+00:00"
        assert params["singleEvents"] == "true"
        assert headers["Authorization"] == "Bearer token-123"

    @pytest.mark.asyncio
    async def test_booked_calendar_is_unavailable(self, monkeypatch):
        monkeypatch.setattr(
            calendar.aiohttp, "ClientSession",
            fake_session_factory(FakeResponse({"items": [{"summary": "Booked"}]})),
        )

        assert await GoogleCalendarAvailability("t").is_available("cal", "2024-07-01", "2024-07-05") is False

    @pytest.mark.asyncio
    async def test_connection_failure_is_unavailable(self, monkeypatch):
        monkeypatch.setattr(
            calendar.aiohttp, "ClientSession",
            fake_session_factory(get_error=aiohttp.ClientConnectionError("refused")),
        )

        assert await GoogleCalendarAvailability("t").is_available("cal", "2024-07-01", "2024-07-05") is False

    @pytest.mark.asyncio
    async def test_bad_date_is_unavailable(self, monkeypatch):
        monkeypatch.setattr(calendar.aiohttp, "ClientSession", fake_session_factory(FakeResponse({})))

        assert await GoogleCalendarAvailability("t").is_available("cal", "next week", "2024-07-05") is False
