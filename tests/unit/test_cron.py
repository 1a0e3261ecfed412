"""Tests for the cron expression evaluator."""

from datetime import datetime, timezone

import pytest

from lattice_agent.utils.cron import CronExpression, validate_schedule
from lattice_agent.utils.exceptions import InvalidScheduleError


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_every_fifteen_minutes():
    """Test a stepped minute field fires strictly after the reference time."""
    cron = CronExpression.parse("*/15 * * * *")
    assert cron.next_fire_time(utc(2024, 1, 1, 0, 0, 0)) == utc(2024, 1, 1, 0, 15, 0)
    assert cron.next_fire_time(utc(2024, 1, 1, 0, 14, 59)) == utc(2024, 1, 1, 0, 15, 0)


def test_weekday_range_with_names():
    """Test mon-fri skips the weekend."""
    cron = CronExpression.parse("0 9 * * mon-fri")
    # 2024-01-06 is a Saturday
    assert cron.next_fire_time(utc(2024, 1, 6, 10, 0)) == utc(2024, 1, 8, 9, 0)


def test_leap_day():
    """Test Feb 29 schedules wait for the next leap year."""
    cron = CronExpression.parse("0 0 29 2 *")
    assert cron.next_fire_time(utc(2023, 3, 1)) == utc(2024, 2, 29)


def test_daily_macro():
    """Test @daily resolves to midnight."""
    cron = CronExpression.parse("@daily")
    assert cron.next_fire_time(utc(2024, 2, 28, 12, 0)) == utc(2024, 2, 29, 0, 0)
    assert cron.expression == "@daily"


def test_day_fields_use_or_semantics():
    """Test that restricting both day fields matches either one."""
    cron = CronExpression.parse("0 0 13 * 5")
    # 2024-01-05 is a Friday, well before the 13th
    assert cron.next_fire_time(utc(2024, 1, 1)) == utc(2024, 1, 5)


def test_stepped_day_of_month_skips_days():
    """Test */2 in the day-of-month field fires on odd days only."""
    cron = CronExpression.parse("0 0 */2 * *")
    assert cron.fire_times(utc(2026, 1, 1, 12, 0), 3) == (
        utc(2026, 1, 3),
        utc(2026, 1, 5),
        utc(2026, 1, 7),
    )
    # Jan 31 is odd, Feb 1 restarts the sequence
    assert cron.next_fire_time(utc(2026, 1, 31, 12, 0)) == utc(2026, 2, 1)


def test_stepped_day_of_week_skips_days():
    """Test */3 in the day-of-week field means Sunday, Wednesday and Saturday."""
    cron = CronExpression.parse("0 0 * * */3")
    # 2026-01-05 is a Monday
    assert cron.fire_times(utc(2026, 1, 5), 3) == (
        utc(2026, 1, 7),
        utc(2026, 1, 10),
        utc(2026, 1, 11),
    )


def test_stepped_day_with_weekday_requires_both():
    """Test a star-led day field combines with a weekday as AND."""
    cron = CronExpression.parse("0 0 */2 * mon")
    # Mondays in January 2026: 5, 12, 19, 26; only the odd ones match
    assert cron.fire_times(utc(2026, 1, 1), 2) == (utc(2026, 1, 5), utc(2026, 1, 19))


def test_seven_is_sunday():
    """Test day-of-week 7 means Sunday."""
    cron = CronExpression.parse("0 0 * * 7")
    assert 0 in cron.weekdays
    assert cron.next_fire_time(utc(2024, 1, 1)) == utc(2024, 1, 7)


def test_six_field_form_has_seconds():
    """Test a leading seconds field."""
    cron = CronExpression.parse("*/10 * * * * *")
    assert cron.next_fire_time(utc(2024, 1, 1, 0, 0, 5)) == utc(2024, 1, 1, 0, 0, 10)


def test_month_names():
    """Test month name lists."""
    cron = CronExpression.parse("0 0 1 jan,jul *")
    assert cron.next_fire_time(utc(2024, 2, 1)) == utc(2024, 7, 1)


def test_start_with_step_runs_to_end_of_field():
    """Test that 5/15 means 5, 20, 35, 50."""
    cron = CronExpression.parse("5/15 * * * *")
    assert cron.minutes == frozenset({5, 20, 35, 50})


def test_naive_reference_is_utc():
    """Test naive datetimes are treated as UTC and results are aware."""
    cron = CronExpression.parse("0 * * * *")
    result = cron.next_fire_time(datetime(2024, 1, 1, 0, 30))
    assert result == utc(2024, 1, 1, 1, 0)
    assert result.tzinfo is not None


def test_fire_times():
    """Test consecutive fire times."""
    cron = CronExpression.parse("0 * * * *")
    assert cron.fire_times(utc(2024, 1, 1, 0, 30), 3) == (
        utc(2024, 1, 1, 1, 0),
        utc(2024, 1, 1, 2, 0),
        utc(2024, 1, 1, 3, 0),
    )


@pytest.mark.parametrize(
    "expression",
    [
        "",
        "* * *",
        "60 * * * *",
        "*/0 * * * *",
        "5-1 * * * *",
        "@reboot",
        "foo * * * *",
        "0 0 31 2 *",
        "1,,2 * * * *",
    ],
)
def test_invalid_expressions(expression):
    """Test that malformed or impossible schedules are rejected up front."""
    with pytest.raises(InvalidScheduleError) as exc_info:
        validate_schedule(expression)

    assert exc_info.value.expression == expression
