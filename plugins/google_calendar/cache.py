"""
plugins/google_calendar/cache.py

Time-bucketed cache of calendar events per room.

There is no retry scheduler. A failed fetch leaves the snapshot and its
timestamp untouched, so the room stays stale and the next access tries
again. Staleness expiry is the retry mechanism.
"""

import logging
from datetime import datetime, timedelta
from typing import Tuple

try:
    from .errors import CalendarError
    from .models import CalEvent
    from .rooms import RoomConfig, is_stale
    from .source import EventSource
except ImportError:
    from errors import CalendarError
    from models import CalEvent
    from rooms import RoomConfig, is_stale
    from source import EventSource


DEFAULT_EVENTS_TTL = timedelta(minutes=90)


class EventCache:
    """
    Refreshes a room's cached events from an event source when stale.

    Callers must hold ``config.lock`` for the whole call. That includes the
    network fetch, which keeps fetches for one room serialized and means
    readers only ever see the old snapshot or the new one.

    Args:
        source: Event source to fetch from.
        ttl: Maximum snapshot age before a refresh is attempted.
    """

    def __init__(self, source: EventSource, ttl: timedelta = DEFAULT_EVENTS_TTL):
        self.source = source
        self.ttl = ttl
        self.logger = logging.getLogger(__name__)

    async def refresh_if_stale(self, config: RoomConfig, now: datetime) -> Tuple[CalEvent, ...]:
        """
        Return the room's events, fetching first if the snapshot is stale or dirty.

        Args:
            config: Room config, with its lock held by the caller.
            now: Reference instant.

        Returns:
            The current snapshot.

        Raises:
            CalendarError: If a fetch was needed and failed.
        """
        if not config.events_dirty and not is_stale(config.events_fetched_at, now, self.ttl):
            return config.events
        return await self.refresh(config, now)

    async def refresh(self, config: RoomConfig, now: datetime) -> Tuple[CalEvent, ...]:
        """
        Fetch the room's events unconditionally.

        A room without a calendar id is unconfigured: nothing is fetched and
        the snapshot stays as it is.

        Raises:
            CalendarError: If the fetch failed. The previous snapshot and
                fetch time are kept.
        """
        if not config.calendar_id:
            self.logger.debug(f"Room {config.room_id!r} has no calendar-id, skipping fetch")
            return config.events

        try:
            fetched = await self.source.fetch_events(config.calendar_id, now)
        except CalendarError as e:
            self.logger.error(
                f"Failed to fetch calendar {config.calendar_id!r} "
                f"for room {config.room_id!r}: {e}"
            )
            raise

        config.events = tuple(fetched)
        config.mark_events_fetched(now)
        self.logger.info(
            f"Cached {len(config.events)} events for room {config.room_id!r}"
        )
        return config.events
