"""
plugins/google_calendar/models.py

Calendar event model.
"""

import json
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Any, Dict, Optional


DEFAULT_MESSAGE = "Calendar event: {}"


def quote(text: str) -> str:
    """Double-quote a string, escaping quotes, backslashes and control characters."""
    return json.dumps(text, ensure_ascii=False)


@dataclass(frozen=True)
class CalEvent:
    """
    A single calendar event.

    ``start`` and ``end`` are timezone-aware instants. An empty
    ``description`` means the reply text is generated from the name.
    """
    name: str
    start: datetime
    end: datetime
    description: str = ""

    def in_progress(self, at: datetime) -> bool:
        """
        Check if the event is running at an instant.

        Both bounds are exclusive: an event is not in progress at exactly
        its start or end time.
        """
        return self.start < at < self.end

    def reply_text(self) -> str:
        """Text sent to a room when this event triggers an autoreply."""
        if self.description:
            return self.description
        return DEFAULT_MESSAGE.format(quote(self.name))

    def format_span(self, tz: Optional[tzinfo] = None) -> str:
        """Render start and end in a display timezone."""
        start = self.start.astimezone(tz) if tz else self.start
        end = self.end.astimezone(tz) if tz else self.end
        if start.date() == end.date():
            return f"{start:%a %b %d %H:%M}-{end:%H:%M %Z}"
        return f"{start:%a %b %d %H:%M} - {end:%a %b %d %H:%M %Z}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON responses."""
        return {
            "name": self.name,
            "description": self.description,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
        }
