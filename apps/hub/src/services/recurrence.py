"""Five-field cron expressions: parsing and next-occurrence lookup.

Supported: ``*``, numbers, ranges (``1-5``), lists (``7,19``), steps
(``*/15``, ``0-30/10``, ``5/20``), month and weekday names, Sunday as 0 or 7,
and the ``@hourly``/``@daily``/``@weekly``/``@monthly``/``@yearly`` macros.
When both day-of-month and day-of-week are restricted a day matches if
either does, as in Vixie cron. Quartz extensions (``L``, ``W``, ``#``, ``?``)
and a leading seconds field are rejected rather than approximated.

Times are wall-clock: pass naive local time or a ``ZoneInfo``-aware value so
the result carries the offset in force on the matching day. A fixed-offset
``timezone`` is kept as given.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import FrozenSet, Optional

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
    name: index + 1
    for index, name in enumerate(("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"))
}
WEEKDAY_NAMES = {name: index for index, name in enumerate(("sun", "mon", "tue", "wed", "thu", "fri", "sat"))}
UNSUPPORTED_FIELD_CHARS = re.compile(r"[#?]")
UNSUPPORTED_VALUE_CHARS = re.compile(r"[LW]", re.IGNORECASE)
# Leap-day schedules can be up to eight years apart (e.g. 2096 -> 2104).
SEARCH_HORIZON_DAYS = 366 * 8 + 2


class RecurrenceError(ValueError):
    """Raised for malformed recurrence expressions."""


class UnsupportedRecurrenceError(RecurrenceError):
    """Raised for cron features this evaluator deliberately does not implement."""


@dataclass(frozen=True, slots=True)
class _FieldSpec:
    name: str
    low: int
    high: int
    names: Optional[dict[str, int]] = None


MINUTE = _FieldSpec("minute", 0, 59)
HOUR = _FieldSpec("hour", 0, 23)
DAY_OF_MONTH = _FieldSpec("day-of-month", 1, 31)
MONTH = _FieldSpec("month", 1, 12, MONTH_NAMES)
DAY_OF_WEEK = _FieldSpec("day-of-week", 0, 7, WEEKDAY_NAMES)


def _parse_value(token: str, spec: _FieldSpec) -> int:
    lowered = token.lower()
    if spec.names and lowered in spec.names:
        return spec.names[lowered]
    if not token.isdigit():
        if UNSUPPORTED_VALUE_CHARS.search(token):
            raise UnsupportedRecurrenceError(f"{spec.name} value {token!r} uses an unsupported cron extension")
        raise RecurrenceError(f"invalid {spec.name} value {token!r}")
    value = int(token)
    if value < spec.low or value > spec.high:
        raise RecurrenceError(f"{spec.name} value {value} outside {spec.low}-{spec.high}")
    return value


def _parse_field(text: str, spec: _FieldSpec) -> FrozenSet[int]:
    if UNSUPPORTED_FIELD_CHARS.search(text):
        raise UnsupportedRecurrenceError(f"{spec.name} field {text!r} uses an unsupported cron extension")
    values: set[int] = set()
    for item in text.split(","):
        if not item:
            raise RecurrenceError(f"empty entry in {spec.name} field {text!r}")
        base, _, step_text = item.partition("/")
        step = 1
        if step_text:
            if not step_text.isdigit() or int(step_text) == 0:
                raise RecurrenceError(f"invalid step {step_text!r} in {spec.name} field")
            step = int(step_text)
        if base == "*":
            start, end = spec.low, spec.high
        elif "-" in base:
            start_text, _, end_text = base.partition("-")
            start, end = _parse_value(start_text, spec), _parse_value(end_text, spec)
            if start > end:
                raise RecurrenceError(f"descending range {base!r} in {spec.name} field")
        else:
            start = _parse_value(base, spec)
            end = spec.high if step_text else start
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True, slots=True)
class CronSchedule:
    expression: str
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days_of_month: FrozenSet[int]
    months: FrozenSet[int]
    days_of_week: FrozenSet[int]
    day_of_month_restricted: bool
    day_of_week_restricted: bool

    def matches_day(self, day: date) -> bool:
        if day.month not in self.months:
            return False
        dom_match = day.day in self.days_of_month
        dow_match = (day.weekday() + 1) % 7 in self.days_of_week
        if self.day_of_month_restricted and self.day_of_week_restricted:
            return dom_match or dow_match
        if self.day_of_month_restricted:
            return dom_match
        if self.day_of_week_restricted:
            return dow_match
        return True

    def matches(self, moment: datetime) -> bool:
        return moment.minute in self.minutes and moment.hour in self.hours and self.matches_day(moment.date())

    def next_after(self, after: datetime) -> Optional[datetime]:
        """First matching minute strictly after ``after``, or ``None`` if none exists within the horizon."""
        start = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
        hours = sorted(self.hours)
        minutes = sorted(self.minutes)
        day = start.date()
        for offset in range(SEARCH_HORIZON_DAYS):
            if offset:
                day = start.date() + timedelta(days=offset)
            if not self.matches_day(day):
                continue
            same_day = offset == 0
            for hour in hours:
                if same_day and hour < start.hour:
                    continue
                for minute in minutes:
                    if same_day and hour == start.hour and minute < start.minute:
                        continue
                    return datetime.combine(day, time(hour, minute), tzinfo=after.tzinfo)
        return None


def parse_recurrence(expression: str) -> CronSchedule:
    if not isinstance(expression, str) or not expression.strip():
        raise RecurrenceError("recurrence expression is empty")
    normalized = " ".join(expression.split())
    lowered = normalized.lower()
    if lowered.startswith("@"):
        if lowered not in MACROS:
            raise UnsupportedRecurrenceError(f"unsupported macro {normalized!r}")
        fields = MACROS[lowered].split()
    else:
        fields = normalized.split()
    if len(fields) == 6:
        raise UnsupportedRecurrenceError("a seconds field is not supported; use five fields")
    if len(fields) != 5:
        raise RecurrenceError(f"expected 5 fields, got {len(fields)}")
    minute_text, hour_text, dom_text, month_text, dow_text = fields
    days_of_week = _parse_field(dow_text, DAY_OF_WEEK)
    if 7 in days_of_week:
        days_of_week = (days_of_week - {7}) | {0}
    return CronSchedule(
        expression=normalized,
        minutes=_parse_field(minute_text, MINUTE),
        hours=_parse_field(hour_text, HOUR),
        days_of_month=_parse_field(dom_text, DAY_OF_MONTH),
        months=_parse_field(month_text, MONTH),
        days_of_week=days_of_week,
        day_of_month_restricted=not dom_text.startswith("*"),
        day_of_week_restricted=not dow_text.startswith("*"),
    )


def validate_recurrence(expression: str) -> str:
    """Return the normalised expression or raise ``RecurrenceError``."""
    return parse_recurrence(expression).expression


def next_fire_time(expression: str, after: Optional[datetime] = None) -> Optional[datetime]:
    """Next occurrence after ``after`` (default: now), or ``None`` when it cannot be determined."""
    try:
        schedule = parse_recurrence(expression)
    except RecurrenceError:
        return None
    return schedule.next_after(after if after is not None else datetime.now())


__all__ = [
    "CronSchedule",
    "RecurrenceError",
    "UnsupportedRecurrenceError",
    "next_fire_time",
    "parse_recurrence",
    "validate_recurrence",
]
