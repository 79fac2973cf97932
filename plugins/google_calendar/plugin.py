"""
plugins/google_calendar/plugin.py

Google Calendar notifier plugin using NATS-based architecture.

Watches a Google Calendar per channel and, while an event is in progress,
answers chat activity with the event's description (or a default message).
Replies are rate-limited per channel.

NATS Subjects:
    Activity (Subscribed):
        rosey.events.message - Normalized chat messages

    Command Handlers:
        rosey.command.gcal.set - Set a channel preference
        rosey.command.gcal.show - Show channel settings
        rosey.command.gcal.events - List current and upcoming events

    Events (Published):
        rosey.event.gcal.autoreply - An autoreply was sent

    Chat (Published):
        rosey.chat.<channel>.send - Replies to the channel

    Preferences (via NATS):
        rosey.db.kv.get / rosey.db.kv.set
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Sequence, Set, Tuple

from nats.aio.client import Client as NATS

try:
    from .cache import EventCache
    from .errors import CalendarError, ConfigurationError, GoogleCalendarError, PreferenceError
    from .models import CalEvent
    from .preferences import (
        ALL_KEYS,
        BOOL_KEYS,
        KEY_CALENDAR_ID,
        KEY_TIMEZONE,
        PreferenceLoader,
        PreferenceStore,
        load_timezone,
        parse_bool,
    )
    from .rooms import ConfigRegistry, RoomConfig
    from .source import EventSource, GoogleCalendarSource
except ImportError:
    from cache import EventCache
    from errors import CalendarError, ConfigurationError, GoogleCalendarError, PreferenceError
    from models import CalEvent
    from preferences import (
        ALL_KEYS,
        BOOL_KEYS,
        KEY_CALENDAR_ID,
        KEY_TIMEZONE,
        PreferenceLoader,
        PreferenceStore,
        load_timezone,
        parse_bool,
    )
    from rooms import ConfigRegistry, RoomConfig
    from source import EventSource, GoogleCalendarSource


ERROR_MESSAGE = "Error while getting calendar data: {}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_activity(data: Dict[str, Any]) -> Tuple[Optional[str], str]:
    """
    Extract channel and author from a chat activity payload.

    Accepts a serialized EventBus ``Event`` (payload under ``data``) or a
    flat message dict.

    Returns:
        (channel, username); channel is None if it cannot be found.
    """
    payload = data.get("data") if isinstance(data.get("data"), dict) else data
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}

    channel = payload.get("channel") or metadata.get("channel") or data.get("channel")
    user = payload.get("username") or payload.get("user") or ""
    return (str(channel) if channel else None), str(user)


class GoogleCalendarPlugin:
    """
    Google Calendar notifier plugin.

    Nothing happens in a channel until it has a calendar-id. With
    ``autoreply`` on, any chat activity during an event gets one reply with
    the event description, at most once per cooldown period.

    Commands:
        !gcal set <key> <value> - Set calendar-id, autoreply, announce-start,
                                  announce-end or timezone for this channel
        !gcal show - Show this channel's settings
        !gcal events - List current and upcoming events

    Configuration:
        config_ttl_minutes: Preference reload interval (default: 10)
        events_ttl_minutes: Calendar refresh interval (default: 90)
        cooldown_minutes: Minimum time between autoreplies (default: 60)
        kv_timeout: Preference request timeout in seconds (default: 2.0)
        bot_username: Messages from this user are ignored (default: "")
        activity_subject: Subject carrying chat messages
        emit_events: Whether to emit autoreply events (default: true)
        max_listed_events: Events shown by !gcal events (default: 5)
        (plus GoogleCalendarSource settings: api_key, request_timeout, ...)
    """

    # Plugin metadata
    NAMESPACE = "google_calendar"
    VERSION = "1.0.0"
    DESCRIPTION = "Reply with calendar events in progress"

    # NATS subjects
    SUBJECT_ACTIVITY = "rosey.events.message"
    SUBJECT_SET = "rosey.command.gcal.set"
    SUBJECT_SHOW = "rosey.command.gcal.show"
    SUBJECT_EVENTS = "rosey.command.gcal.events"
    EVENT_AUTOREPLY = "rosey.event.gcal.autoreply"

    def __init__(
        self,
        nats_client: NATS,
        config: Optional[Dict[str, Any]] = None,
        source: Optional[EventSource] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the plugin.

        Args:
            nats_client: Connected NATS client for messaging.
            config: Optional configuration dictionary.
            source: Event source; defaults to the Google Calendar API.
            clock: Returns the current aware time; defaults to UTC now.
        """
        self.nats = nats_client
        self.config = config or {}
        self.logger = logging.getLogger(f"plugin.{self.NAMESPACE}")

        # Configuration with defaults
        self.config_ttl = timedelta(minutes=self.config.get("config_ttl_minutes", 10))
        self.events_ttl = timedelta(minutes=self.config.get("events_ttl_minutes", 90))
        self.cooldown = timedelta(minutes=self.config.get("cooldown_minutes", 60))
        self.kv_timeout = self.config.get("kv_timeout", 2.0)
        self.bot_username = self.config.get("bot_username", "")
        self.activity_subject = self.config.get("activity_subject", self.SUBJECT_ACTIVITY)
        self.emit_events = self.config.get("emit_events", True)
        self.max_listed_events = self.config.get("max_listed_events", 5)

        self.clock = clock or utcnow
        self.source = source or GoogleCalendarSource(self.config)
        self.store = PreferenceStore(self.nats, timeout=self.kv_timeout, plugin_name=self.NAMESPACE)
        self.loader = PreferenceLoader(self.store, ttl=self.config_ttl)
        self.cache = EventCache(self.source, ttl=self.events_ttl)
        self.registry = ConfigRegistry(warm_up=self._warm_up)

        # Subscription tracking
        self._subscriptions = []
        self._tasks: Set[asyncio.Task] = set()

    async def initialize(self) -> None:
        """
        Initialize the plugin and subscribe to NATS subjects.
        """
        sub = await self.nats.subscribe(self.activity_subject, cb=self._handle_message)
        self._subscriptions.append(sub)

        sub = await self.nats.subscribe(self.SUBJECT_SET, cb=self._handle_set)
        self._subscriptions.append(sub)

        sub = await self.nats.subscribe(self.SUBJECT_SHOW, cb=self._handle_show)
        self._subscriptions.append(sub)

        sub = await self.nats.subscribe(self.SUBJECT_EVENTS, cb=self._handle_events)
        self._subscriptions.append(sub)

        self.logger.info(f"{self.NAMESPACE} plugin v{self.VERSION} loaded")

    async def shutdown(self) -> None:
        """
        Shutdown the plugin.

        Unsubscribes from all subjects and cancels in-flight activity handling.
        """
        for sub in self._subscriptions:
            await sub.unsubscribe()
        self._subscriptions.clear()

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        self.logger.info(f"{self.NAMESPACE} plugin unloaded")

    # =========================================================================
    # Activity Handling
    # =========================================================================

    async def _handle_message(self, msg) -> None:
        """
        Handle a chat message from the activity subject.

        Refresh work can block on the network for a cold or stale room, so
        it runs in its own task and the subscription keeps draining.
        """
        try:
            data = json.loads(msg.data.decode())
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            self.logger.error(f"Invalid JSON in activity message: {e}")
            return

        if not isinstance(data, dict):
            return

        channel, user = parse_activity(data)
        if not channel:
            return
        if self.bot_username and user.lower() == self.bot_username.lower():
            return

        task = asyncio.create_task(self._run_activity(channel))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_activity(self, channel: str) -> None:
        try:
            await self.on_activity(channel)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.exception(f"Error handling activity in {channel}: {e}")

    async def on_activity(self, room_id: str, now: Optional[datetime] = None) -> Optional[str]:
        """
        React to chat activity in a room.

        Refreshes the room's preferences and events if stale, then sends at
        most one autoreply for an in-progress event. A calendar failure, or a
        preference failure that leaves the room with no calendar id, is
        reported to the room; nothing retries it until the next activity.

        Args:
            room_id: Room where activity happened.
            now: Reference instant; defaults to the plugin clock.

        Returns:
            The autoreply text that was sent, if any.
        """
        now = now or self.clock()
        config = await self.registry.get_or_create(room_id)

        error: Optional[GoogleCalendarError] = None
        reply: Optional[str] = None

        async with config.lock:
            try:
                await self.loader.refresh_if_stale(config, now)
            except ConfigurationError as e:
                self.logger.warning(str(e))
                # Without a calendar id there is nothing to look up
                if not config.calendar_id:
                    error = e

            if error is None:
                try:
                    events = await self.cache.refresh_if_stale(config, now)
                except CalendarError as e:
                    error = e
                else:
                    reply = self._select_reply(config, events, now)

        if error is not None:
            await self._send_to_channel(room_id, ERROR_MESSAGE.format(error), "gcal_error")
            return None

        if reply is not None:
            await self._send_to_channel(room_id, reply, "gcal_autoreply")
            if self.emit_events:
                await self._emit_event(self.EVENT_AUTOREPLY, {
                    "channel": room_id,
                    "message": reply,
                })
        return reply

    def _select_reply(
        self, config: RoomConfig, events: Sequence[CalEvent], now: datetime
    ) -> Optional[str]:
        """
        Pick the autoreply for this cycle and record it.

        One reply per room per cycle: the first in-progress event wins,
        overlapping events do not each get a message. Must be called with
        ``config.lock`` held.
        """
        if not config.autoreply:
            return None

        current = [e for e in events if e.in_progress(now)]
        if not current:
            return None

        if config.last_reply_at is not None and now - config.last_reply_at < self.cooldown:
            self.logger.debug(
                f"Not autoresponding in {config.room_id}: "
                f"a message was sent at {config.last_reply_at.isoformat()}"
            )
            return None

        if len(current) > 1:
            self.logger.debug(
                f"{len(current)} overlapping events in {config.room_id}, replying for {current[0].name!r}"
            )

        config.last_reply_at = now
        return current[0].reply_text()

    async def _warm_up(self, config: RoomConfig) -> None:
        """
        Prime a newly created room: load preferences, then fetch events.

        Runs with the room lock held by the registry.
        """
        now = self.clock()
        try:
            await self.loader.load(config, now)
        except ConfigurationError as e:
            self.logger.warning(str(e))
        await self.cache.refresh(config, now)

    # =========================================================================
    # Command Handlers
    # =========================================================================

    async def _handle_set(self, msg) -> None:
        """
        Handle !gcal set <key> <value>.

        Message format:
        {
            "channel": "string",
            "user": "string",
            "args": "autoreply true",
            "reply_to": "rosey.reply.xyz"
        }
        """
        reply_to = None
        try:
            data = json.loads(msg.data.decode())
            reply_to = data.get("reply_to")
            channel = await self._require_channel(data, reply_to)
            if channel is None:
                return
            user = data.get("user", "anonymous")
            args = data.get("args", "").strip()

            parts = args.split(None, 1)
            if len(parts) < 2 or parts[0].lower() not in ALL_KEYS:
                await self._send_reply(reply_to, {
                    "success": False,
                    "error": (
                        "📅 Usage: !gcal set <key> <value>\n"
                        f"Keys: {', '.join(ALL_KEYS)}"
                    )
                })
                return

            key = parts[0].lower()
            value = parts[1].strip()

            try:
                value = self._validate_preference(key, value)
            except ValueError as e:
                await self._send_reply(reply_to, {"success": False, "error": f"📅 {e}"})
                return

            await self.store.set_preference(channel, key, value)

            config = await self.registry.get(channel)
            if config is not None:
                async with config.lock:
                    config.invalidate(preferences=True, events=(key == KEY_CALENDAR_ID))

            await self._send_reply(reply_to, {
                "success": True,
                "result": {
                    "channel": channel,
                    "key": key,
                    "value": value,
                    "message": f"📅 {key} set to {value}"
                }
            })
            self.logger.info(f"{user} set {key}={value!r} in {channel}")

        except json.JSONDecodeError as e:
            self.logger.error(f"Invalid JSON in set request: {e}")
        except PreferenceError as e:
            self.logger.error(f"Could not store preference: {e}")
            await self._send_reply(reply_to, {
                "success": False,
                "error": "📅 Could not save that setting, try again later."
            })
        except Exception as e:
            self.logger.exception(f"Error handling set: {e}")
            await self._send_reply(reply_to, {
                "success": False,
                "error": "📅 An error occurred saving the setting."
            })

    @staticmethod
    def _validate_preference(key: str, value: str) -> str:
        """
        Validate and canonicalize a preference value.

        Raises:
            ValueError: With a user-facing message.
        """
        if key in BOOL_KEYS:
            try:
                return "true" if parse_bool(value) else "false"
            except ValueError:
                raise ValueError(f"{key} must be true or false")
        if key == KEY_TIMEZONE:
            try:
                return load_timezone(value).key
            except ValueError:
                raise ValueError(f"Unknown timezone '{value}'")
        return value

    async def _handle_show(self, msg) -> None:
        """Handle !gcal show."""
        reply_to = None
        try:
            data = json.loads(msg.data.decode())
            reply_to = data.get("reply_to")
            channel = await self._require_channel(data, reply_to)
            if channel is None:
                return

            config = await self.registry.get_or_create(channel)
            warning = None
            async with config.lock:
                try:
                    await self.loader.refresh_if_stale(config, self.clock())
                except ConfigurationError as e:
                    warning = str(e)
                result = config.to_dict()

            if warning:
                result["warning"] = warning

            calendar = result["calendar_id"] or "(not set)"
            result["message"] = (
                f"📅 Calendar: {calendar} | autoreply: {result['autoreply']} | "
                f"timezone: {result['timezone']}"
            )
            await self._send_reply(reply_to, {"success": True, "result": result})

        except json.JSONDecodeError as e:
            self.logger.error(f"Invalid JSON in show request: {e}")
        except Exception as e:
            self.logger.exception(f"Error handling show: {e}")
            await self._send_reply(reply_to, {
                "success": False,
                "error": "📅 An error occurred reading the settings."
            })

    async def _handle_events(self, msg) -> None:
        """Handle !gcal events."""
        reply_to = None
        try:
            data = json.loads(msg.data.decode())
            reply_to = data.get("reply_to")
            channel = await self._require_channel(data, reply_to)
            if channel is None:
                return

            now = self.clock()
            config = await self.registry.get_or_create(channel)
            async with config.lock:
                try:
                    await self.loader.refresh_if_stale(config, now)
                except ConfigurationError as e:
                    self.logger.warning(str(e))

                if not config.calendar_id:
                    await self._send_reply(reply_to, {
                        "success": False,
                        "error": "📅 No calendar configured. Use !gcal set calendar-id <id>"
                    })
                    return

                try:
                    events = await self.cache.refresh_if_stale(config, now)
                except CalendarError as e:
                    await self._send_reply(reply_to, {
                        "success": False,
                        "error": f"📅 {ERROR_MESSAGE.format(e)}"
                    })
                    return
                tz = config.timezone

            current = [e for e in events if e.in_progress(now)]
            upcoming = sorted((e for e in events if e.start > now), key=lambda e: e.start)
            upcoming = upcoming[:self.max_listed_events]

            lines = []
            for event in current:
                lines.append(f"▶ {event.name} ({event.format_span(tz)})")
            for event in upcoming:
                lines.append(f"• {event.name} ({event.format_span(tz)})")
            if not lines:
                lines.append("📅 No current or upcoming events.")

            await self._send_reply(reply_to, {
                "success": True,
                "result": {
                    "channel": channel,
                    "current": [e.to_dict() for e in current],
                    "upcoming": [e.to_dict() for e in upcoming],
                    "message": "\n".join(lines)
                }
            })

        except json.JSONDecodeError as e:
            self.logger.error(f"Invalid JSON in events request: {e}")
        except Exception as e:
            self.logger.exception(f"Error handling events: {e}")
            await self._send_reply(reply_to, {
                "success": False,
                "error": "📅 An error occurred listing events."
            })

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _require_channel(self, data: dict, reply_to: Optional[str]) -> Optional[str]:
        """
        Return the command's channel, or reply with an error if it has none.
        """
        channel = data.get("channel")
        if channel and isinstance(channel, str):
            return channel
        self.logger.warning(f"Command without a channel: {data!r}")
        await self._send_reply(reply_to, {
            "success": False,
            "error": "📅 This command must be used in a channel."
        })
        return None

    async def _send_to_channel(self, channel: str, message: str, message_type: str) -> None:
        """
        Send a message to a channel via NATS. Fire-and-forget.
        """
        try:
            await self.nats.publish(
                f"rosey.chat.{channel}.send",
                json.dumps({
                    "channel": channel,
                    "message": message,
                    "type": message_type,
                }).encode()
            )
        except Exception as e:
            self.logger.error(f"Error sending to channel {channel}: {e}")

    async def _send_reply(self, reply_to: Optional[str], response: dict) -> None:
        """
        Send a reply to a command.

        Args:
            reply_to: NATS subject to reply to.
            response: Response dictionary.
        """
        if reply_to:
            await self.nats.publish(reply_to, json.dumps(response).encode())

    async def _emit_event(self, event_type: str, data: dict) -> None:
        """Emit a NATS event."""
        event = {
            "event": event_type,
            "timestamp": utcnow().isoformat(),
            **data
        }
        try:
            await self.nats.publish(event_type, json.dumps(event).encode())
        except Exception as e:
            self.logger.debug(f"Could not publish event {event_type}: {e}")
