"""
plugins/google_calendar/preferences.py

Room-scoped preferences for the google_calendar plugin.

Preferences live in Rosey's plugin key/value store, reached over NATS:
    rosey.db.kv.get - Read a preference (request/reply)
    rosey.db.kv.set - Write a preference (request/reply)

Keys are scoped per room as ``room:<room_id>:<key>`` under the
``google_calendar`` plugin name.
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from nats.aio.client import Client as NATS
from nats.errors import Error as NatsError

try:
    from .errors import ConfigurationError, PreferenceError
    from .rooms import DEFAULT_TIMEZONE, RoomConfig, is_stale
except ImportError:
    from errors import ConfigurationError, PreferenceError
    from rooms import DEFAULT_TIMEZONE, RoomConfig, is_stale


PLUGIN_NAME = "google_calendar"

KEY_CALENDAR_ID = "calendar-id"
KEY_AUTOREPLY = "autoreply"
KEY_ANNOUNCE_START = "announce-start"
KEY_ANNOUNCE_END = "announce-end"
KEY_TIMEZONE = "timezone"

BOOL_KEYS = (KEY_AUTOREPLY, KEY_ANNOUNCE_START, KEY_ANNOUNCE_END)
ALL_KEYS = (KEY_CALENDAR_ID,) + BOOL_KEYS + (KEY_TIMEZONE,)

DEFAULT_CONFIG_TTL = timedelta(minutes=10)

_TRUE_VALUES = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_VALUES = {"0", "f", "F", "FALSE", "false", "False"}


def parse_bool(value: Any) -> bool:
    """
    Parse a boolean preference.

    Accepts JSON booleans and the literals ``1 t T TRUE true True`` /
    ``0 f F FALSE false False``.

    Raises:
        ValueError: For anything else.
    """
    if isinstance(value, bool):
        return value
    text = str(value)
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ValueError(f"invalid boolean value {text!r}")


def load_timezone(name: str) -> ZoneInfo:
    """
    Resolve a timezone name.

    Raises:
        ValueError: If the name is malformed or unknown.
    """
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"unknown timezone {name!r}: {e}") from e


class PreferenceStore:
    """
    Client for room-scoped preferences in the NATS KV store.

    Args:
        nats_client: Connected NATS client.
        timeout: Request timeout in seconds.
        plugin_name: KV namespace.
    """

    SUBJECT_GET = "rosey.db.kv.get"
    SUBJECT_SET = "rosey.db.kv.set"

    def __init__(self, nats_client: NATS, timeout: float = 2.0, plugin_name: str = PLUGIN_NAME):
        self.nats = nats_client
        self.timeout = timeout
        self.plugin_name = plugin_name

    @staticmethod
    def scoped_key(room_id: str, key: str) -> str:
        return f"room:{room_id}:{key}"

    async def _request(self, subject: str, payload: dict) -> dict:
        try:
            response = await self.nats.request(
                subject,
                json.dumps(payload).encode(),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            raise PreferenceError(f"timeout on {subject} for {payload['key']!r}")
        except NatsError as e:
            raise PreferenceError(f"{subject} request failed: {e}")

        try:
            result = json.loads(response.data.decode())
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise PreferenceError(f"invalid response on {subject}: {e}")

        if not result.get("success"):
            error = result.get("error") or {}
            if isinstance(error, dict):
                error = error.get("message") or error.get("code") or "unknown error"
            raise PreferenceError(f"{subject} failed for {payload['key']!r}: {error}")

        return result.get("data") or {}

    async def get_preference(self, room_id: str, key: str, default: str = "") -> Any:
        """
        Read a preference for a room.

        Args:
            room_id: Room scope.
            key: Preference key.
            default: Value returned when the key is not set.

        Returns:
            The stored value, or ``default``.

        Raises:
            PreferenceError: If the store could not be read.
        """
        data = await self._request(self.SUBJECT_GET, {
            "plugin_name": self.plugin_name,
            "key": self.scoped_key(room_id, key),
        })
        if not data.get("exists"):
            return default
        value = data.get("value")
        return default if value is None else value

    async def set_preference(self, room_id: str, key: str, value: str) -> None:
        """
        Write a preference for a room.

        Raises:
            PreferenceError: If the store rejected the write.
        """
        await self._request(self.SUBJECT_SET, {
            "plugin_name": self.plugin_name,
            "key": self.scoped_key(room_id, key),
            "value": value,
        })


class PreferenceLoader:
    """
    Refreshes a room's settings from the preference store when stale.

    Callers must hold ``config.lock``. Changes are committed only when the
    whole load succeeds: calendar-id and timezone failures abort the load,
    flag failures fall back to False.

    Args:
        store: Preference store client.
        ttl: Maximum settings age before a reload is attempted.
    """

    def __init__(self, store: PreferenceStore, ttl: timedelta = DEFAULT_CONFIG_TTL):
        self.store = store
        self.ttl = ttl
        self.logger = logging.getLogger(__name__)

    async def refresh_if_stale(self, config: RoomConfig, now: datetime) -> bool:
        """
        Reload the room's settings if they are older than the TTL or dirty.

        Returns:
            True if a reload ran, False if the settings were fresh.

        Raises:
            ConfigurationError: If the reload failed. Prior settings are kept.
        """
        if not config.preferences_dirty and not is_stale(config.config_fetched_at, now, self.ttl):
            return False
        await self.load(config, now)
        return True

    async def load(self, config: RoomConfig, now: datetime) -> None:
        """
        Reload the room's settings unconditionally.

        Raises:
            ConfigurationError: If calendar-id could not be read or the
                timezone is invalid.
        """
        room_id = config.room_id

        try:
            calendar_id = await self.store.get_preference(room_id, KEY_CALENDAR_ID, "")
        except PreferenceError as e:
            raise ConfigurationError(
                f"Failed to load calendar-id preference for room {room_id!r}: {e}"
            ) from e

        flags = {}
        for key in BOOL_KEYS:
            flags[key] = await self._load_bool(room_id, key)

        try:
            tz_name = await self.store.get_preference(room_id, KEY_TIMEZONE, DEFAULT_TIMEZONE)
        except PreferenceError as e:
            raise ConfigurationError(
                f"Failed to load timezone preference for room {room_id!r}: {e}"
            ) from e
        try:
            tz = load_timezone(str(tz_name))
        except ValueError as e:
            raise ConfigurationError(f"Could not load timezone info for {tz_name!r}: {e}") from e

        config.calendar_id = str(calendar_id)
        config.autoreply = flags[KEY_AUTOREPLY]
        config.announce_start = flags[KEY_ANNOUNCE_START]
        config.announce_end = flags[KEY_ANNOUNCE_END]
        config.timezone = tz
        config.mark_config_fetched(now)

        self.logger.debug(
            f"Loaded preferences for room {room_id!r}: "
            f"calendar={config.calendar_id!r} autoreply={config.autoreply} tz={tz.key}"
        )

    async def _load_bool(self, room_id: str, key: str) -> bool:
        try:
            value = await self.store.get_preference(room_id, key, "false")
            return parse_bool(value)
        except (PreferenceError, ValueError) as e:
            self.logger.warning(f"Unable to load boolean pref {key!r} for room {room_id!r}: {e}")
            return False
