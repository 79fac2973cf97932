"""
plugins/google_calendar/__init__.py

Google Calendar notifier plugin for Rosey.

Provides calendar-aware chat replies with:
- Per-channel calendar, timezone and feature flags (NATS KV preferences)
- Time-bucketed event cache with per-channel locking
- Autoreply while an event is in progress, with a per-channel cooldown
"""

from .cache import EventCache
from .errors import CalendarError, ConfigurationError, GoogleCalendarError, PreferenceError
from .models import CalEvent
from .plugin import GoogleCalendarPlugin
from .preferences import PreferenceLoader, PreferenceStore
from .rooms import ConfigRegistry, RoomConfig
from .source import EventSource, GoogleCalendarSource, normalize_calendar_id

__all__ = [
    "CalEvent",
    "CalendarError",
    "ConfigRegistry",
    "ConfigurationError",
    "EventCache",
    "EventSource",
    "GoogleCalendarError",
    "GoogleCalendarPlugin",
    "GoogleCalendarSource",
    "PreferenceError",
    "PreferenceLoader",
    "PreferenceStore",
    "RoomConfig",
    "normalize_calendar_id",
]
