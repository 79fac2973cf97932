"""
tests/test_cache.py

Tests for the per-room event cache.
"""

import asyncio
from datetime import timedelta

import pytest

from cache import EventCache
from errors import CalendarError
from rooms import RoomConfig


@pytest.fixture
def room():
    return RoomConfig(room_id="lobby", calendar_id="team@group.calendar.google.com")


@pytest.fixture
def cache(source):
    return EventCache(source)


class TestRefreshIfStale:
    """Tests for staleness-driven refresh."""

    @pytest.mark.asyncio
    async def test_first_access_fetches(self, cache, source, room, make_event, now):
        source.events = [make_event()]

        events = await cache.refresh_if_stale(room, now)

        assert len(events) == 1
        assert source.calls == [("team@group.calendar.google.com", now)]
        assert room.events_fetched_at == now

    @pytest.mark.asyncio
    async def test_fresh_snapshot_skips_fetch(self, cache, source, room, make_event, now):
        source.events = [make_event()]
        await cache.refresh_if_stale(room, now)

        await cache.refresh_if_stale(room, now + timedelta(minutes=30))

        assert len(source.calls) == 1

    @pytest.mark.asyncio
    async def test_boundary_at_90_minutes(self, cache, source, room, now):
        await cache.refresh_if_stale(room, now)

        await cache.refresh_if_stale(room, now + timedelta(hours=1.49))
        assert len(source.calls) == 1

        await cache.refresh_if_stale(room, now + timedelta(minutes=90))
        assert len(source.calls) == 1

        await cache.refresh_if_stale(room, now + timedelta(hours=1.51))
        assert len(source.calls) == 2
        assert room.events_fetched_at == now + timedelta(hours=1.51)

    @pytest.mark.asyncio
    async def test_snapshot_replaced_wholesale(self, cache, source, room, make_event, now):
        source.events = [make_event("A"), make_event("B")]
        first = await cache.refresh_if_stale(room, now)

        source.events = [make_event("C")]
        second = await cache.refresh(room, now + timedelta(minutes=1))

        assert [e.name for e in first] == ["A", "B"]
        assert [e.name for e in second] == ["C"]
        assert room.events is second
        assert isinstance(room.events, tuple)

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_snapshot(self, cache, source, room, make_event, now):
        source.events = [make_event("A")]
        await cache.refresh_if_stale(room, now)

        source.error = "rate limited"
        later = now + timedelta(hours=2)
        with pytest.raises(CalendarError, match="rate limited"):
            await cache.refresh_if_stale(room, later)

        assert [e.name for e in room.events] == ["A"]
        assert room.events_fetched_at == now

    @pytest.mark.asyncio
    async def test_failure_leaves_room_stale_for_next_access(self, cache, source, room, now):
        source.error = "boom"
        with pytest.raises(CalendarError):
            await cache.refresh_if_stale(room, now)

        source.error = None
        await cache.refresh_if_stale(room, now + timedelta(seconds=1))

        assert len(source.calls) == 2

    @pytest.mark.asyncio
    async def test_unconfigured_room_is_not_fetched(self, cache, source, now):
        room = RoomConfig(room_id="empty")

        events = await cache.refresh_if_stale(room, now)

        assert events == ()
        assert source.calls == []
        assert room.events_fetched_at is None

    @pytest.mark.asyncio
    async def test_dirty_snapshot_refetched_inside_ttl(self, cache, source, room, now):
        await cache.refresh_if_stale(room, now)
        room.invalidate(preferences=False, events=True)

        await cache.refresh_if_stale(room, now + timedelta(minutes=1))

        assert len(source.calls) == 2
        assert room.events_dirty is False
        assert room.events_fetched_at == now + timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_dirty_flag_kept_when_refetch_fails(self, cache, source, room, now):
        await cache.refresh_if_stale(room, now)
        room.invalidate(preferences=False, events=True)

        source.error = "unavailable"
        with pytest.raises(CalendarError):
            await cache.refresh_if_stale(room, now + timedelta(minutes=1))

        assert room.events_dirty is True
        assert room.events_fetched_at == now

    @pytest.mark.asyncio
    async def test_custom_ttl(self, source, room, now):
        cache = EventCache(source, ttl=timedelta(minutes=5))
        await cache.refresh_if_stale(room, now)
        await cache.refresh_if_stale(room, now + timedelta(minutes=6))
        assert len(source.calls) == 2


class TestConcurrency:
    """Tests for refresh under the per-room lock."""

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_fetch_once(self, cache, source, room, make_event, now):
        source.events = [make_event()]
        source.delay = 0.01

        async def handler():
            async with room.lock:
                return await cache.refresh_if_stale(room, now)

        results = await asyncio.gather(*(handler() for _ in range(5)))

        assert len(source.calls) == 1
        assert all(r == results[0] for r in results)

    @pytest.mark.asyncio
    async def test_readers_never_see_partial_snapshot(self, cache, source, room, make_event, now):
        """Readers under the lock see either the old or the new list, whole."""
        old = [make_event(f"old{i}") for i in range(3)]
        new = [make_event(f"new{i}") for i in range(7)]
        source.events = old
        await cache.refresh_if_stale(room, now)

        source.events = new
        source.delay = 0.01
        observed = []

        async def refresher():
            async with room.lock:
                await cache.refresh(room, now + timedelta(hours=2))

        async def reader():
            for _ in range(10):
                async with room.lock:
                    observed.append(tuple(e.name for e in room.events))
                await asyncio.sleep(0.002)

        await asyncio.gather(reader(), refresher(), reader())

        old_names = tuple(e.name for e in old)
        new_names = tuple(e.name for e in new)
        assert observed
        assert all(snapshot in (old_names, new_names) for snapshot in observed)
        assert room.events_fetched_at == now + timedelta(hours=2)

    @pytest.mark.asyncio
    async def test_rooms_refresh_in_parallel(self, cache, source, now):
        source.delay = 0.05
        rooms = [RoomConfig(room_id=f"r{i}", calendar_id=f"cal{i}") for i in range(4)]

        async def handler(room):
            async with room.lock:
                await cache.refresh_if_stale(room, now)

        loop = asyncio.get_running_loop()
        start = loop.time()
        await asyncio.gather(*(handler(r) for r in rooms))
        elapsed = loop.time() - start

        assert len(source.calls) == 4
        assert elapsed < 0.05 * 4
