"""
Clock Tests.
"""

from datetime import datetime, timedelta, timezone

from settlement_engine import MockClock, SystemClock
from settlement_engine.clock import ensure_utc


START = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


class TestMockClock:
    """Tests for the frozen test clock."""

    def test_frozen_until_advanced(self):
        clock = MockClock(START)

        assert clock.now() == START
        assert clock.now() == START

    def test_advance_seconds_and_keywords(self):
        clock = MockClock(START)

        clock.advance(30)
        clock.advance(hours=1, minutes=2)

        assert clock.now() == START + timedelta(hours=1, minutes=2, seconds=30)
        assert clock.timestamp() == (START + timedelta(hours=1, minutes=2, seconds=30)).timestamp()

    def test_naive_times_are_utc(self):
        clock = MockClock(datetime(2026, 3, 2, 12, 0, 0))
        assert clock.now() == START

        clock.set_time(datetime(2026, 3, 3, 0, 0, 0))
        assert clock.now().tzinfo is timezone.utc


class TestSystemClock:
    """Tests for the wall clock."""

    def test_returns_aware_utc(self):
        assert SystemClock().now().tzinfo is timezone.utc


def test_ensure_utc_keeps_aware_values():
    aware = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone(timedelta(hours=2)))

    assert ensure_utc(aware) is aware
