from datetime import date, timedelta

import pytest

from reservation_service.errors import ValidationError
from reservation_service.scheduling import Schedule, parse_time, validate_schedule

from conftest import next_weekday, schedule_on


def test_parse_time_accepts_midnight_end_only_when_allowed():
    assert parse_time("09:30") == 570
    assert parse_time("24:00", allow_midnight_end=True) == 1440
    with pytest.raises(ValidationError):
        parse_time("24:00")
    with pytest.raises(ValidationError):
        parse_time("9:30")


def test_validate_schedule_rejects_day_that_does_not_match_date():
    monday = next_weekday("Mon")
    sched = schedule_on(monday, "10:00", "11:00")
    sched["day"] = "Tue"
    with pytest.raises(ValidationError, match="does not match"):
        validate_schedule(sched)


def test_validate_schedule_rejects_end_before_start():
    monday = next_weekday("Mon")
    with pytest.raises(ValidationError, match="end must be after start"):
        validate_schedule(schedule_on(monday, "11:00", "10:00"))


def test_validate_schedule_reports_missing_fields():
    with pytest.raises(ValidationError, match="start_time"):
        validate_schedule({"day": "Mon", "start_date": "2030-01-07", "end_date": "2030-01-07", "end_time": "10:00"})


def test_validate_schedule_rejects_impossible_dates():
    with pytest.raises(ValidationError):
        validate_schedule({
            "day": "Mon", "start_date": "2030-02-30", "start_time": "10:00",
            "end_date": "2030-02-30", "end_time": "11:00",
        })


def test_segments_split_an_overnight_interval_per_date():
    monday = next_weekday("Mon")
    tuesday = monday + timedelta(days=1)
    schedule = validate_schedule(schedule_on(monday, "22:00", "02:00", end_date=tuesday))

    assert schedule.segments() == [(monday, 1320, 1440), (tuesday, 0, 120)]
    assert schedule.duration == timedelta(hours=4)


def test_interval_ending_at_midnight_touches_one_date():
    monday = next_weekday("Mon")
    schedule = Schedule(**schedule_on(monday, "20:00", "00:00", end_date=monday + timedelta(days=1)))
    assert schedule.dates() == [monday]


def test_schedule_prefix_round_trip_with_snapshot_fields():
    sched = schedule_on(date(2030, 1, 7), "10:00", "11:00")
    schedule = Schedule(**sched)
    assert schedule.as_dict("old_")["old_start_time"] == "10:00"
