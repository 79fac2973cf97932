"""
plugins/google_calendar/errors.py

Google Calendar plugin exceptions.
"""

from typing import Optional


class GoogleCalendarError(Exception):
    """Base exception for google_calendar plugin errors."""
    pass


class PreferenceError(GoogleCalendarError):
    """A preference store request failed."""
    pass


class ConfigurationError(GoogleCalendarError):
    """Room configuration could not be loaded or is invalid."""
    pass


class CalendarError(GoogleCalendarError):
    """The calendar event source failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        """
        Initialize calendar error.

        Args:
            message: Error message.
            status_code: HTTP status code if applicable.
        """
        super().__init__(message)
        self.status_code = status_code
