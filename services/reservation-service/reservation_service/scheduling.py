import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from dateutil import tz

from .errors import ValidationError

DAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

MINUTES_PER_DAY = 24 * 60

FIELDS = ("day", "start_date", "start_time", "end_date", "end_time")


def parse_date(value: str, field: str = "date") -> date:
    if not isinstance(value, str) or not DATE_RE.match(value):
        raise ValidationError(f"{field} must be YYYY-MM-DD")
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"{field} is not a calendar date")


def parse_time(value: str, field: str = "time", allow_midnight_end: bool = False) -> int:
    """Minutes since midnight. "24:00" only when allow_midnight_end."""
    if allow_midnight_end and value == "24:00":
        return MINUTES_PER_DAY
    if not isinstance(value, str) or not TIME_RE.match(value):
        raise ValidationError(f"{field} must be HH:MM (00:00-23:59)")
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def weekday(d: date) -> str:
    return DAYS[d.weekday()]


def local_now(time_zone: str | None) -> datetime:
    """Naive wall-clock 'now' in the given IANA zone (UTC when unknown)."""
    zone = tz.gettz(time_zone or "UTC") or tz.UTC
    return datetime.now(zone).replace(tzinfo=None)


@dataclass(frozen=True)
class Schedule:
    """A booking's realized interval in the space's local wall-clock time."""

    day: str
    start_date: str
    start_time: str
    end_date: str
    end_time: str

    @classmethod
    def of(cls, obj, prefix: str = "") -> "Schedule":
        return cls(**{f: getattr(obj, prefix + f) for f in FIELDS})

    def as_dict(self, prefix: str = "") -> dict:
        return {prefix + f: getattr(self, f) for f in FIELDS}

    @property
    def start(self) -> datetime:
        return datetime.combine(date.fromisoformat(self.start_date), datetime.min.time()) + timedelta(
            minutes=parse_time(self.start_time)
        )

    @property
    def end(self) -> datetime:
        return datetime.combine(date.fromisoformat(self.end_date), datetime.min.time()) + timedelta(
            minutes=parse_time(self.end_time)
        )

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def dates(self) -> list[date]:
        """Calendar dates the interval touches (an end at exactly 00:00 does not touch that date)."""
        return [d for d, _, _ in self.segments()]

    def segments(self) -> list[tuple[date, int, int]]:
        """Split into (date, start_minute, end_minute) pieces, one per calendar date."""
        out = []
        start, end = self.start, self.end
        current = start.date()
        while True:
            day_start = datetime.combine(current, datetime.min.time())
            day_end = day_start + timedelta(days=1)
            seg_start = max(start, day_start)
            seg_end = min(end, day_end)
            if seg_start >= end:
                break
            if seg_start < seg_end:
                out.append((
                    current,
                    int((seg_start - day_start).total_seconds() // 60),
                    int((seg_end - day_start).total_seconds() // 60),
                ))
            current = current + timedelta(days=1)
        return out


def validate_schedule(data) -> Schedule:
    """
    Shape checks only (no database): formats, weekday agreement, end after start.
    Accepts a Schedule or any object / dict exposing the five fields.
    """
    if isinstance(data, dict):
        missing = [f for f in FIELDS if not data.get(f)]
        if missing:
            raise ValidationError(f"missing interval fields: {', '.join(missing)}")
        schedule = Schedule(**{f: data[f] for f in FIELDS})
    else:
        schedule = Schedule.of(data)

    if schedule.day not in DAYS:
        raise ValidationError(f"day must be one of {', '.join(DAYS)}")

    start_date = parse_date(schedule.start_date, "start_date")
    parse_date(schedule.end_date, "end_date")
    parse_time(schedule.start_time, "start_time")
    parse_time(schedule.end_time, "end_time")

    if weekday(start_date) != schedule.day:
        raise ValidationError(f"day {schedule.day} does not match start_date {schedule.start_date}")

    if schedule.end <= schedule.start:
        raise ValidationError("end must be after start")

    return schedule
