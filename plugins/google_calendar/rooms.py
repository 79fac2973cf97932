"""
plugins/google_calendar/rooms.py

Per-room calendar state and the registry that owns it.

Locking is two-level:
- ConfigRegistry._lock protects only the room map (lookup and insertion).
- RoomConfig.lock protects everything inside one room. It is held across
  preference and calendar refreshes, including the network call, so a room
  never runs two fetches at once and readers never see a half-updated cache.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

try:
    from .models import CalEvent
except ImportError:
    from models import CalEvent


DEFAULT_TIMEZONE = "America/Los_Angeles"

logger = logging.getLogger(__name__)


def is_stale(fetched_at: Optional[datetime], now: datetime, ttl: timedelta) -> bool:
    """
    Check whether a cached value has outlived its staleness window.

    A value exactly ``ttl`` old is still fresh. A value that was never
    fetched is always stale.

    Args:
        fetched_at: When the value was last fetched, or None.
        now: Reference instant.
        ttl: Staleness window.

    Returns:
        True if a refresh should be attempted.
    """
    if fetched_at is None:
        return True
    return now - fetched_at > ttl


@dataclass
class RoomConfig:
    """
    Calendar settings and cached events for one chat room.

    All fields except ``room_id`` and ``lock`` must only be read or written
    while holding ``lock``.
    """
    room_id: str
    calendar_id: str = ""
    timezone: ZoneInfo = field(default_factory=lambda: ZoneInfo(DEFAULT_TIMEZONE))
    autoreply: bool = False
    announce_start: bool = False
    announce_end: bool = False
    events: Tuple[CalEvent, ...] = ()
    last_reply_at: Optional[datetime] = None
    config_fetched_at: Optional[datetime] = None
    events_fetched_at: Optional[datetime] = None
    preferences_dirty: bool = False
    events_dirty: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def mark_config_fetched(self, now: datetime) -> None:
        """Record a successful preference load without moving time backwards."""
        self.preferences_dirty = False
        if self.config_fetched_at is None or now > self.config_fetched_at:
            self.config_fetched_at = now

    def mark_events_fetched(self, now: datetime) -> None:
        """Record a successful calendar fetch without moving time backwards."""
        self.events_dirty = False
        if self.events_fetched_at is None or now > self.events_fetched_at:
            self.events_fetched_at = now

    def invalidate(self, preferences: bool = True, events: bool = False) -> None:
        """
        Force the next access to reload.

        Used after a preference is changed from chat. Only the dirty flags
        are set; fetch timestamps and cached values stay as they are until
        the reload succeeds.
        """
        if preferences:
            self.preferences_dirty = True
        if events:
            self.events_dirty = True

    def to_dict(self) -> dict:
        """Summarize settings for display."""
        return {
            "room": self.room_id,
            "calendar_id": self.calendar_id,
            "timezone": self.timezone.key,
            "autoreply": self.autoreply,
            "announce_start": self.announce_start,
            "announce_end": self.announce_end,
            "cached_events": len(self.events),
            "events_fetched_at": (
                self.events_fetched_at.isoformat() if self.events_fetched_at else None
            ),
        }


WarmUp = Callable[[RoomConfig], Awaitable[None]]


class ConfigRegistry:
    """
    Process-wide map from room id to RoomConfig.

    Rooms are created on first reference and never evicted. Creating a room
    runs an optional warm-up coroutine (normally a preference load and an
    initial calendar fetch) while holding the new room's lock, so concurrent
    handlers for that room wait for the warm cache instead of fetching again.
    The warm-up blocks the first caller for a room; this is a one-time cost
    per room, not a steady-state one.

    Args:
        warm_up: Async callable run once per newly created room. Exceptions
            it raises are logged and swallowed.
    """

    def __init__(self, warm_up: Optional[WarmUp] = None):
        self._rooms: Dict[str, RoomConfig] = {}
        self._lock = asyncio.Lock()
        self.warm_up = warm_up

    async def get_or_create(self, room_id: str) -> RoomConfig:
        """
        Get the config for a room, creating and warming it on first access.

        Args:
            room_id: Chat room identifier.

        Returns:
            The single RoomConfig instance for this room.
        """
        async with self._lock:
            config = self._rooms.get(room_id)
            if config is not None:
                return config

            config = RoomConfig(room_id=room_id)
            self._rooms[room_id] = config
            # Uncontended: nobody else can see this config yet.
            await config.lock.acquire()

        try:
            if self.warm_up:
                try:
                    await self.warm_up(config)
                except Exception as e:
                    logger.warning(f"Warm-up failed for room {room_id!r}: {e}")
        finally:
            config.lock.release()

        logger.info(f"Created calendar config for room {room_id!r}")
        return config

    async def get(self, room_id: str) -> Optional[RoomConfig]:
        """Return the config for a room if it exists, without creating it."""
        async with self._lock:
            return self._rooms.get(room_id)

    async def rooms(self) -> List[RoomConfig]:
        """Return a snapshot of all known room configs."""
        async with self._lock:
            return list(self._rooms.values())

    def __len__(self) -> int:
        return len(self._rooms)
