"""
tests/conftest.py

Shared fixtures for google_calendar plugin tests.
"""

import asyncio
import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from models import CalEvent
from source import EventSource
from errors import CalendarError


NOW = datetime(2025, 11, 24, 18, 0, tzinfo=timezone.utc)


class FakeSource(EventSource):
    """Event source returning canned events and counting calls."""

    def __init__(self, events=None):
        self.events = list(events or [])
        self.calls = []
        self.error = None
        self.delay = 0.0

    async def fetch_events(self, calendar_id, reference):
        self.calls.append((calendar_id, reference))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise CalendarError(self.error)
        return list(self.events)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    """Mutable clock; set clock.now to move time."""
    c = MagicMock()
    c.now = NOW
    c.side_effect = lambda: c.now
    return c


@pytest.fixture
def make_event():
    """Factory for events relative to NOW."""
    def _make(name="Standup", start=-30, end=30, description=""):
        return CalEvent(
            name=name,
            description=description,
            start=NOW + timedelta(minutes=start),
            end=NOW + timedelta(minutes=end),
        )
    return _make


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def kv_store():
    """Backing dict for the mock KV store: (plugin_name, key) -> value."""
    return {}


@pytest.fixture
def mock_nats(kv_store):
    """Create a mock NATS client with an in-memory KV store."""
    nats = AsyncMock()
    nats.publish = AsyncMock()

    # Track subscriptions
    nats._subscriptions = []

    async def mock_subscribe(subject, cb=None):
        sub = MagicMock()
        sub.subject = subject
        sub.callback = cb
        sub.unsubscribe = AsyncMock()
        nats._subscriptions.append(sub)
        return sub

    nats.subscribe = mock_subscribe

    # Keys listed here answer with success=false
    nats.failing_keys = set()
    nats.kv_requests = []

    async def mock_request(subject, data, timeout=2.0):
        request = json.loads(data.decode())
        nats.kv_requests.append((subject, request))
        response = MagicMock()
        key = (request.get("plugin_name"), request.get("key"))

        if request.get("key", "").rsplit(":", 1)[-1] in nats.failing_keys:
            response.data = json.dumps({
                "success": False,
                "error": {"code": "INTERNAL_ERROR", "message": "Database operation failed"}
            }).encode()
        elif subject == "rosey.db.kv.get":
            if key in kv_store:
                data = {"exists": True, "value": kv_store[key]}
            else:
                data = {"exists": False}
            response.data = json.dumps({"success": True, "data": data}).encode()
        elif subject == "rosey.db.kv.set":
            kv_store[key] = request.get("value")
            response.data = json.dumps({"success": True, "data": {}}).encode()
        else:
            response.data = json.dumps({}).encode()

        return response

    nats.request = mock_request

    return nats


@pytest.fixture
def set_pref(kv_store):
    """Store a room preference directly in the mock KV store."""
    def _set(room, key, value):
        kv_store[("google_calendar", f"room:{room}:{key}")] = value
    return _set


@pytest.fixture
def mock_message():
    """Factory for creating mock NATS messages."""
    def _make_message(data: dict, reply_to: str = None):
        msg = MagicMock()
        msg.data = json.dumps(data).encode()
        msg.reply = reply_to
        return msg
    return _make_message


@pytest.fixture
def published(mock_nats):
    """Decoded payloads published to subjects starting with a prefix."""
    def _published(prefix):
        out = []
        for call in mock_nats.publish.call_args_list:
            subject, payload = call[0][0], call[0][1]
            if subject.startswith(prefix):
                out.append((subject, json.loads(payload.decode())))
        return out
    return _published
