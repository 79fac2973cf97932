"""
plugins/google_calendar/source.py

Google Calendar event source.

Reads events from the Google Calendar API v3 with an API key, so the
calendar must be public or shared with the key's project. Read-only.
"""

import os
from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import parse_qs, quote, unquote, urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

try:
    from .errors import CalendarError
    from .models import CalEvent
except ImportError:
    from errors import CalendarError
    from models import CalEvent


class EventSource(ABC):
    """Abstract source of calendar events."""

    @abstractmethod
    async def fetch_events(self, calendar_id: str, reference: datetime) -> Sequence[CalEvent]:
        """
        List the events of a calendar around a reference instant.

        Must be safe to call repeatedly.

        Args:
            calendar_id: Calendar identifier.
            reference: Instant the fetch window is built around.

        Returns:
            Events overlapping the fetch window, in any order.

        Raises:
            CalendarError: If the calendar could not be read.
        """
        pass


def normalize_calendar_id(value: str) -> str:
    """
    Turn a calendar link into a bare calendar id.

    Accepts plain ids (``team@group.calendar.google.com``), embed links
    (``https://calendar.google.com/calendar/embed?src=<id>``), public iCal
    links (``.../calendar/ical/<id>/public/basic.ics``) and API URLs
    (``.../calendars/<id>/events``).
    """
    value = value.strip()
    if "://" not in value:
        return value

    parsed = urlparse(value)
    query = parse_qs(parsed.query)
    for param in ("src", "cid"):
        if query.get(param):
            return query[param][0]

    parts = [unquote(p) for p in parsed.path.split("/") if p]
    for marker in ("ical", "calendars"):
        if marker in parts:
            idx = parts.index(marker)
            if idx + 1 < len(parts):
                return parts[idx + 1]

    return value


def parse_event_time(value: Dict[str, Any], default_tz: tzinfo = timezone.utc) -> datetime:
    """
    Parse a Calendar API start/end object into an aware datetime.

    Timed events carry ``dateTime`` with an offset. All-day events carry a
    bare ``date``, which is taken as midnight in ``default_tz``.

    Raises:
        ValueError: If neither field is present or parseable.
    """
    if value.get("dateTime"):
        raw = value["dateTime"]
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            tz_name = value.get("timeZone")
            parsed = parsed.replace(tzinfo=ZoneInfo(tz_name) if tz_name else default_tz)
        return parsed

    if value.get("date"):
        day = date.fromisoformat(value["date"])
        return datetime.combine(day, time.min, tzinfo=default_tz)

    raise ValueError(f"event time has neither dateTime nor date: {value!r}")


def parse_event(item: Dict[str, Any], default_tz: tzinfo = timezone.utc) -> Optional[CalEvent]:
    """
    Convert one Calendar API event resource into a CalEvent.

    Returns:
        The event, or None for cancelled events.
    """
    if item.get("status") == "cancelled":
        return None

    return CalEvent(
        name=item.get("summary", ""),
        description=item.get("description", "") or "",
        start=parse_event_time(item.get("start", {}), default_tz),
        end=parse_event_time(item.get("end", {}), default_tz),
    )


class GoogleCalendarSource(EventSource):
    """
    Event source backed by the Google Calendar API v3.

    Configuration:
        api_key: API key (default: $GOOGLE_CALENDAR_API_KEY)
        base_url: API base URL (default: "https://www.googleapis.com/calendar/v3")
        request_timeout: Request timeout in seconds (default: 30.0)
        lookahead_hours: Hours after the reference to include (default: 24)
        lookbehind_hours: Hours before the reference to include (default: 0)
        max_results: Events per page (default: 250)
        max_pages: Pages fetched per call (default: 4)
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize the source.

        Args:
            config: Source configuration dictionary.
        """
        config = config or {}
        self.api_key = config.get("api_key") or os.environ.get("GOOGLE_CALENDAR_API_KEY", "")
        self.base_url = config.get("base_url", "https://www.googleapis.com/calendar/v3").rstrip("/")
        self.timeout = config.get("request_timeout", 30.0)
        self.lookahead = timedelta(hours=config.get("lookahead_hours", 24))
        self.lookbehind = timedelta(hours=config.get("lookbehind_hours", 0))
        self.max_results = config.get("max_results", 250)
        self.max_pages = config.get("max_pages", 4)

    def _events_url(self, calendar_id: str) -> str:
        return f"{self.base_url}/calendars/{quote(calendar_id, safe='')}/events"

    def _params(self, reference: datetime, page_token: Optional[str] = None) -> Dict[str, Any]:
        reference = reference.astimezone(timezone.utc)
        params = {
            "singleEvents": "true",
            "orderBy": "startTime",
            "timeMin": (reference - self.lookbehind).isoformat(),
            "timeMax": (reference + self.lookahead).isoformat(),
            "maxResults": self.max_results,
        }
        if self.api_key:
            params["key"] = self.api_key
        if page_token:
            params["pageToken"] = page_token
        return params

    async def fetch_events(self, calendar_id: str, reference: datetime) -> List[CalEvent]:
        """
        Fetch events overlapping [reference - lookbehind, reference + lookahead].

        Raises:
            CalendarError: On connection errors, non-200 responses or
                malformed payloads.
        """
        calendar_id = normalize_calendar_id(calendar_id)
        if not calendar_id:
            raise CalendarError("no calendar-id configured")

        url = self._events_url(calendar_id)
        events: List[CalEvent] = []
        page_token = None

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                for _ in range(self.max_pages):
                    response = await client.get(url, params=self._params(reference, page_token))

                    if response.status_code != 200:
                        raise CalendarError(
                            f"Google Calendar API error: {self._error_message(response)}",
                            status_code=response.status_code
                        )

                    data = response.json()
                    default_tz = self._calendar_tz(data.get("timeZone"))
                    for item in data.get("items", []):
                        event = parse_event(item, default_tz)
                        if event is not None:
                            events.append(event)

                    page_token = data.get("nextPageToken")
                    if not page_token:
                        break

        except httpx.RequestError as e:
            raise CalendarError(f"Google Calendar connection error: {e}")
        except (KeyError, TypeError, ValueError) as e:
            raise CalendarError(f"Unexpected Google Calendar response format: {e}")

        return events

    @staticmethod
    def _calendar_tz(name: Optional[str]) -> tzinfo:
        if not name:
            return timezone.utc
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            return timezone.utc

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
            error = body.get("error") if isinstance(body, dict) else None
            if isinstance(error, dict) and error.get("message"):
                return f"{error['message']} ({response.status_code})"
        except ValueError:
            pass
        return f"HTTP {response.status_code}"
