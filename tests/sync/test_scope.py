"""Tests for date scopes."""

from datetime import date, datetime, timedelta, timezone

import pytest

from workshop_sync.sync import DateScope


class TestDateScope:
    """Tests for DateScope."""

    def test_naive_bounds_are_utc(self) -> None:
        scope = DateScope(datetime(2026, 3, 1), datetime(2026, 3, 2))

        assert scope.start.tzinfo is timezone.utc
        assert scope.end.tzinfo is timezone.utc

    def test_end_before_start_rejected(self) -> None:
        with pytest.raises(ValueError):
            DateScope(datetime(2026, 3, 2), datetime(2026, 3, 1))

    def test_contains_is_inclusive(self) -> None:
        start = datetime(2026, 3, 1, tzinfo=timezone.utc)
        end = start + timedelta(hours=1)
        scope = DateScope(start, end)

        assert scope.contains(start)
        assert scope.contains(end)
        assert not scope.contains(end + timedelta(microseconds=1))
        assert not scope.contains(None)

    def test_for_day_covers_whole_local_day(self) -> None:
        scope = DateScope.for_day(date(2026, 3, 1), tz="Asia/Riyadh")

        assert scope.start == datetime(2026, 2, 28, 21, 0, tzinfo=timezone.utc)
        assert scope.contains(datetime(2026, 3, 1, 20, 59, tzinfo=timezone.utc))
        assert not scope.contains(datetime(2026, 3, 1, 21, 0, tzinfo=timezone.utc))

    def test_today_uses_local_date(self) -> None:
        # 22:30 UTC is already the next day in Riyadh
        now = datetime(2026, 3, 1, 22, 30, tzinfo=timezone.utc)

        scope = DateScope.today(now=now, tz="Asia/Riyadh")

        assert scope.contains(now)
        assert scope.start == datetime(2026, 3, 1, 21, 0, tzinfo=timezone.utc)
