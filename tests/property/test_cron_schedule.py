"""Property-based tests for cron next-fire computation."""

from datetime import datetime, timedelta, timezone

import pytest
from hypothesis import given, settings, strategies as st

from lattice_agent.utils.cron import CronExpression

instants = st.datetimes(
    min_value=datetime(2000, 1, 1),
    max_value=datetime(2090, 12, 31),
).map(lambda dt: dt.replace(tzinfo=timezone.utc))


@pytest.mark.property
@settings(deadline=None)
@given(
    instants,
    st.sets(st.integers(min_value=0, max_value=59), min_size=1, max_size=4),
    st.sets(st.integers(min_value=0, max_value=23), min_size=1, max_size=3),
)
def test_next_fire_is_the_earliest_match(after, minutes, hours):
    """Property: next fire is after the reference, matches, and no earlier minute matches."""
    expression = f"{','.join(map(str, sorted(minutes)))} {','.join(map(str, sorted(hours)))} * * *"
    cron = CronExpression.parse(expression)

    fire = cron.next_fire_time(after)

    assert fire > after
    assert fire.second == 0
    assert fire.minute in minutes
    assert fire.hour in hours
    assert fire - after <= timedelta(days=1)

    candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
    while candidate < fire:
        assert not (candidate.minute in minutes and candidate.hour in hours)
        candidate += timedelta(minutes=1)


@pytest.mark.property
@given(instants, st.integers(min_value=1, max_value=30))
def test_step_fires_are_spaced(after, step):
    """Property: consecutive fires of a minute step are strictly increasing and aligned."""
    cron = CronExpression.parse(f"*/{step} * * * *")

    fires = cron.fire_times(after, 5)

    assert list(fires) == sorted(set(fires))
    assert all(f.minute % step == 0 for f in fires)


@pytest.mark.property
@given(instants, st.integers(min_value=0, max_value=6))
def test_weekday_schedule_lands_on_weekday(after, weekday):
    """Property: a day-of-week schedule fires on that weekday within a week."""
    cron = CronExpression.parse(f"30 12 * * {weekday}")

    fire = cron.next_fire_time(after)

    assert (fire.weekday() + 1) % 7 == weekday
    assert (fire.hour, fire.minute) == (12, 30)
    assert fire - after <= timedelta(days=7)
