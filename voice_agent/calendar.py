"""
Vehicle availability via the Google Calendar events list (aiohttp).

Each fleet unit may carry a calendar id; a unit is free for a period when
its calendar has no events in that window.
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime, time, timezone
from typing import Optional
from urllib.parse import quote

import aiohttp

from logging_setup import Component, get_logger

logger = get_logger(Component.COLLABORATORS)

CALENDAR_API = "https://www.googleapis.com/calendar/v3/calendars/{calendar_id}/events"


def to_rfc3339(value: str) -> str:
    """Accept `YYYY-MM-DD` or an ISO datetime; naive values are taken as UTC."""
    if "T" in value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        parsed = datetime.combine(date.fromisoformat(value), time.min)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.isoformat()


class GoogleCalendarAvailability:
    """
    Availability service backed by Google Calendar.

    Without an access token every unit is reported available; a failed
    lookup reports the unit unavailable.
    """

    def __init__(self, access_token: Optional[str] = None, timeout_s: float = 10.0):
        self._access_token = access_token
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    @property
    def authenticated(self) -> bool:
        return bool(self._access_token)

    async def is_available(self, unit_id: str, start_iso: str, end_iso: str) -> bool:
        if not self.authenticated:
            return True

        try:
            params = {
                "timeMin": to_rfc3339(start_iso),
                "timeMax": to_rfc3339(end_iso),
                "singleEvents": "true",
            }
            headers = {"Authorization": f"Bearer {self._access_token}"}
            url = CALENDAR_API.format(calendar_id=quote(unit_id, safe=""))
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.get(url, params=params, headers=headers) as response:
                    response.raise_for_status()
                    payload = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning("Availability check failed", calendar_id=unit_id, error=str(e))
            return False

        return len(payload.get("items") or []) == 0
