"""
tests/test_models.py

Tests for the CalEvent model.
"""

from datetime import timedelta
from zoneinfo import ZoneInfo

import pytest

from models import CalEvent, quote


class TestInProgress:
    """Tests for the strict in-progress check."""

    def test_event_spanning_now_is_in_progress(self, now):
        event = CalEvent(
            name="Standup",
            start=now - timedelta(seconds=1),
            end=now + timedelta(seconds=1),
        )
        assert event.in_progress(now) is True

    def test_not_in_progress_at_exact_start(self, now):
        event = CalEvent(name="Standup", start=now, end=now + timedelta(seconds=2))
        assert event.in_progress(now) is False

    def test_not_in_progress_at_exact_end(self, now):
        event = CalEvent(name="Standup", start=now - timedelta(seconds=2), end=now)
        assert event.in_progress(now) is False

    def test_future_and_past_events(self, make_event, now):
        assert make_event(start=10, end=20).in_progress(now) is False
        assert make_event(start=-20, end=-10).in_progress(now) is False

    def test_comparison_uses_absolute_instants(self, now):
        """Start given in another timezone still compares by instant."""
        la = ZoneInfo("America/Los_Angeles")
        event = CalEvent(
            name="Standup",
            start=(now - timedelta(minutes=5)).astimezone(la),
            end=(now + timedelta(minutes=5)).astimezone(la),
        )
        assert event.in_progress(now) is True


class TestReplyText:
    """Tests for autoreply text."""

    def test_default_message_when_no_description(self, make_event):
        assert make_event(name="Standup").reply_text() == 'Calendar event: "Standup"'

    def test_description_used_verbatim(self, make_event):
        event = make_event(description="On-call handoff, ping @ops")
        assert event.reply_text() == "On-call handoff, ping @ops"

    def test_name_with_quotes_is_escaped(self, make_event):
        event = make_event(name='The "Big" Sync')
        assert event.reply_text() == 'Calendar event: "The \\"Big\\" Sync"'

    def test_quote_keeps_unicode(self):
        assert quote("Café") == '"Café"'


class TestFormatting:
    """Tests for display helpers."""

    def test_format_span_same_day(self, make_event):
        event = make_event(start=0, end=60)
        text = event.format_span(ZoneInfo("UTC"))
        assert text == "Mon Nov 24 18:00-19:00 UTC"

    def test_format_span_converts_timezone(self, make_event):
        event = make_event(start=0, end=60)
        text = event.format_span(ZoneInfo("America/Los_Angeles"))
        assert text == "Mon Nov 24 10:00-11:00 PST"

    def test_to_dict(self, make_event, now):
        data = make_event(name="Standup", start=0, end=30).to_dict()
        assert data["name"] == "Standup"
        assert data["start"] == now.isoformat()

    def test_events_are_immutable(self, make_event):
        event = make_event()
        with pytest.raises(Exception):
            event.name = "changed"
