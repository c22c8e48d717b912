"""Date windows bounding feeds and date-range overlays."""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from workshop_sync.core.config import settings


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class DateScope:
    """Inclusive creation-time window.

    Attributes:
        start: First instant inside the window.
        end: Last instant inside the window.
    """

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", _aware(self.start))
        object.__setattr__(self, "end", _aware(self.end))
        if self.end < self.start:
            raise ValueError("date scope ends before it starts")

    def contains(self, moment: datetime | None) -> bool:
        if moment is None:
            return False
        return self.start <= _aware(moment) <= self.end

    @classmethod
    def for_day(cls, day: date, tz: str | None = None) -> "DateScope":
        """Whole calendar day in the workshop timezone."""
        zone = ZoneInfo(tz or settings.workshop_timezone)
        start = datetime.combine(day, time.min, tzinfo=zone)
        end = start + timedelta(days=1) - timedelta(microseconds=1)
        return cls(start, end)

    @classmethod
    def today(cls, now: datetime | None = None, tz: str | None = None) -> "DateScope":
        zone = ZoneInfo(tz or settings.workshop_timezone)
        current = _aware(now).astimezone(zone) if now else datetime.now(zone)
        return cls.for_day(current.date(), tz)
