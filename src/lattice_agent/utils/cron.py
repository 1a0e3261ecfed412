"""Cron expression parsing and next-fire-time evaluation.

Supports the classic five-field form (minute hour day-of-month month
day-of-week) and a six-field form with a leading seconds field. Fields accept
``*``, single values, ``a-b`` ranges, ``/step`` suffixes, comma lists and
English month/day abbreviations. ``7`` is accepted as Sunday. When both
day-of-month and day-of-week are restricted a day matches if either does,
as in Vixie cron; a field starting with ``*`` (including ``*/n``) does not
count as restricted there, so the two fields are combined with AND. All
evaluation happens in UTC.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import FrozenSet, Tuple

from lattice_agent.utils.exceptions import InvalidScheduleError

MACROS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

MONTH_NAMES = {
    name: index
    for index, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"],
        start=1,
    )
}

DAY_NAMES = {
    name: index
    for index, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])
}

# Longest month length for each month; February allows the leap day.
MAX_MONTH_DAYS = {1: 31, 2: 29, 3: 31, 4: 30, 5: 31, 6: 30, 7: 31, 8: 31, 9: 30, 10: 31, 11: 30, 12: 31}

# A valid expression always fires within this many years (leap days can
# skip up to eight years around century boundaries).
SEARCH_HORIZON_YEARS = 10


def _parse_value(token: str, names: dict, field: str, expression: str) -> int:
    lowered = token.lower()
    if lowered in names:
        return names[lowered]
    if not token.isdigit():
        raise InvalidScheduleError(expression, f"bad value '{token}' in {field} field")
    return int(token)


def _parse_field(
    text: str, low: int, high: int, field: str, expression: str, names: dict | None = None
) -> FrozenSet[int]:
    names = names or {}
    values = set()

    for part in text.split(","):
        if not part:
            raise InvalidScheduleError(expression, f"empty list item in {field} field")

        step = 1
        stepped = "/" in part
        if stepped:
            part, step_text = part.split("/", 1)
            if not step_text.isdigit() or int(step_text) == 0:
                raise InvalidScheduleError(expression, f"bad step '{step_text}' in {field} field")
            step = int(step_text)

        if part == "*":
            start, end = low, high
        elif "-" in part:
            start_text, end_text = part.split("-", 1)
            start = _parse_value(start_text, names, field, expression)
            end = _parse_value(end_text, names, field, expression)
        else:
            start = _parse_value(part, names, field, expression)
            # "5/15" means "from 5 to the end of the field, every 15"
            end = high if stepped else start

        if start < low or end > high:
            raise InvalidScheduleError(
                expression, f"{field} value out of range {low}-{high} in '{text}'"
            )
        if start > end:
            raise InvalidScheduleError(expression, f"descending range '{part}' in {field} field")

        values.update(range(start, end + 1, step))

    return frozenset(values)


@dataclass(frozen=True)
class CronExpression:
    """A parsed cron expression."""

    expression: str
    seconds: FrozenSet[int]
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days: FrozenSet[int]
    months: FrozenSet[int]
    weekdays: FrozenSet[int]
    day_restricted: bool
    weekday_restricted: bool

    @classmethod
    def parse(cls, expression: str) -> "CronExpression":
        """
        Parse and validate a cron expression.

        Args:
            expression: Cron expression or macro such as ``@hourly``

        Returns:
            Parsed expression

        Raises:
            InvalidScheduleError: If the expression is malformed or can never fire
        """
        if not isinstance(expression, str) or not expression.strip():
            raise InvalidScheduleError(str(expression), "expression is empty")

        source = expression.strip()
        text = MACROS.get(source.lower(), source)
        if text.startswith("@"):
            raise InvalidScheduleError(expression, f"unsupported macro '{text}'")

        fields = text.split()
        if len(fields) == 5:
            fields = ["0"] + fields
        elif len(fields) != 6:
            raise InvalidScheduleError(
                expression, f"expected 5 or 6 fields, got {len(fields)}"
            )

        second_f, minute_f, hour_f, day_f, month_f, weekday_f = fields

        weekdays = _parse_field(weekday_f, 0, 7, "day-of-week", expression, DAY_NAMES)
        if 7 in weekdays:
            weekdays = (weekdays - {7}) | {0}

        parsed = cls(
            expression=source,
            seconds=_parse_field(second_f, 0, 59, "second", expression),
            minutes=_parse_field(minute_f, 0, 59, "minute", expression),
            hours=_parse_field(hour_f, 0, 23, "hour", expression),
            days=_parse_field(day_f, 1, 31, "day-of-month", expression),
            months=_parse_field(month_f, 1, 12, "month", expression, MONTH_NAMES),
            weekdays=frozenset(weekdays),
            day_restricted=not day_f.startswith("*"),
            weekday_restricted=not weekday_f.startswith("*"),
        )

        if parsed.day_restricted and not parsed.weekday_restricted:
            if not any(min(parsed.days) <= MAX_MONTH_DAYS[m] for m in parsed.months):
                raise InvalidScheduleError(expression, "day-of-month never occurs in the given months")

        return parsed

    def _day_matches(self, moment: datetime) -> bool:
        # Python weekday(): Monday=0; cron: Sunday=0
        cron_weekday = (moment.weekday() + 1) % 7
        day_ok = moment.day in self.days
        weekday_ok = cron_weekday in self.weekdays

        if self.day_restricted and self.weekday_restricted:
            return day_ok or weekday_ok
        # A "*"-led field such as "*/2" still narrows the day set
        return day_ok and weekday_ok

    def next_fire_time(self, after: datetime) -> datetime:
        """
        Compute the first fire time strictly after ``after``.

        Args:
            after: Reference instant; naive values are treated as UTC

        Returns:
            Timezone-aware UTC datetime of the next fire
        """
        if after.tzinfo is None:
            after = after.replace(tzinfo=timezone.utc)
        else:
            after = after.astimezone(timezone.utc)

        moment = after.replace(microsecond=0) + timedelta(seconds=1)
        limit_year = moment.year + SEARCH_HORIZON_YEARS

        while moment.year <= limit_year:
            if moment.month not in self.months:
                if moment.month == 12:
                    moment = moment.replace(year=moment.year + 1, month=1, day=1, hour=0, minute=0, second=0)
                else:
                    moment = moment.replace(month=moment.month + 1, day=1, hour=0, minute=0, second=0)
                continue

            if not self._day_matches(moment):
                moment = moment.replace(hour=0, minute=0, second=0) + timedelta(days=1)
                continue

            if moment.hour not in self.hours:
                moment = moment.replace(minute=0, second=0) + timedelta(hours=1)
                continue

            if moment.minute not in self.minutes:
                moment = moment.replace(second=0) + timedelta(minutes=1)
                continue

            if moment.second not in self.seconds:
                moment = moment + timedelta(seconds=1)
                continue

            return moment

        raise InvalidScheduleError(self.expression, "no fire time found within search horizon")

    def fire_times(self, after: datetime, count: int) -> Tuple[datetime, ...]:
        """Return the next ``count`` fire times after ``after``."""
        times = []
        current = after
        for _ in range(count):
            current = self.next_fire_time(current)
            times.append(current)
        return tuple(times)


def validate_schedule(expression: str) -> CronExpression:
    """Parse ``expression``, raising InvalidScheduleError when it is unusable."""
    return CronExpression.parse(expression)
