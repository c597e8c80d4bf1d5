from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from misc.errors import InvalidSchedule


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
    name: i + 1
    for i, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"]
    )
}
WEEKDAY_NAMES = {name: i for i, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])}

# (name, low, high, names)
_FIELDS = (
    ("minute", 0, 59, None),
    ("hour", 0, 23, None),
    ("day-of-month", 1, 31, None),
    ("month", 1, 12, MONTH_NAMES),
    ("day-of-week", 0, 7, WEEKDAY_NAMES),
)
_SECONDS_FIELD = ("second", 0, 59, None)

# Leap days can be eight years apart; nothing found within this many days never fires.
SEARCH_HORIZON_DAYS = 366 * 8


@dataclass(frozen=True)
class CronSchedule:
    """Parsed minute-granularity cron expression."""

    expression: str
    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]  # 0 = Sunday
    day_restricted: bool
    weekday_restricted: bool

    def _day_matches(self, dt: datetime) -> bool:
        dom_ok = dt.day in self.days
        dow_ok = cron_weekday(dt) in self.weekdays
        if self.day_restricted and self.weekday_restricted:
            return dom_ok or dow_ok
        return dom_ok and dow_ok

    def matches(self, dt: datetime) -> bool:
        """True when the wall-clock minute of `dt` is a firing time."""
        return (
            dt.minute in self.minutes
            and dt.hour in self.hours
            and dt.month in self.months
            and self._day_matches(dt)
        )

    def next_fire_after(self, dt: datetime) -> datetime | None:
        """First firing minute strictly after `dt`, in `dt`'s own wall-clock terms."""
        start = dt.replace(second=0, microsecond=0) + timedelta(minutes=1)
        hours = sorted(self.hours)
        minutes = sorted(self.minutes)

        day = start.replace(hour=0, minute=0)
        for _ in range(SEARCH_HORIZON_DAYS):
            if day.month in self.months and self._day_matches(day):
                for hour in hours:
                    for minute in minutes:
                        candidate = day.replace(hour=hour, minute=minute)
                        if candidate >= start:
                            return candidate
            day = day + timedelta(days=1)
        return None


def cron_weekday(dt: datetime) -> int:
    return (dt.weekday() + 1) % 7


def _parse_value(token: str, name: str, low: int, high: int, names: dict[str, int] | None) -> int:
    text = token.strip().lower()
    if names and text in names:
        return names[text]
    try:
        value = int(text)
    except ValueError:
        raise InvalidSchedule(f"Invalid {name} value {token!r}.") from None
    if value < low or value > high:
        raise InvalidSchedule(f"{name} value {value} is out of range {low}-{high}.")
    return value


def _parse_field(raw: str, name: str, low: int, high: int, names: dict[str, int] | None) -> tuple[set[int], bool]:
    values: set[int] = set()
    restricted = True
    for part in raw.split(","):
        part = part.strip()
        if not part:
            raise InvalidSchedule(f"Empty entry in {name} field {raw!r}.")

        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            try:
                step = int(step_text)
            except ValueError:
                raise InvalidSchedule(f"Invalid step {step_text!r} in {name} field.") from None
            if step < 1:
                raise InvalidSchedule(f"Step in {name} field must be at least 1.")

        if part in ("*", "?"):
            start, end = low, high
            if step == 1:
                restricted = False
        elif "-" in part:
            a, b = part.split("-", 1)
            start = _parse_value(a, name, low, high, names)
            end = _parse_value(b, name, low, high, names)
            if start > end:
                raise InvalidSchedule(f"Range {part!r} in {name} field runs backwards.")
        else:
            start = _parse_value(part, name, low, high, names)
            # "5/15" means from 5 to the end of the field in steps of 15
            end = high if step > 1 else start

        values.update(range(start, end + 1, step))
    return values, restricted


def parse_cron(expression: str) -> CronSchedule:
    """Parse a cron expression once into match sets.

    Accepts five fields (minute hour day-of-month month day-of-week), the
    `@hourly`-style macros, and a six-field form whose leading seconds field
    is validated and then ignored.
    """
    text = " ".join(str(expression or "").split())
    if not text:
        raise InvalidSchedule("Cron expression is empty.")

    body = MACROS.get(text.lower(), text)
    if body.startswith("@"):
        raise InvalidSchedule(f"Unknown cron macro {text!r}.")
    fields = body.split(" ")
    if len(fields) == 6:
        _parse_field(fields[0], *_SECONDS_FIELD)
        fields = fields[1:]
    if len(fields) != 5:
        raise InvalidSchedule(
            f"Cron expression {text!r} must have 5 fields (minute hour day month weekday), got {len(fields)}."
        )

    parsed = [_parse_field(raw, *spec) for raw, spec in zip(fields, _FIELDS)]
    (minutes, _), (hours, _), (days, day_restricted), (months, _), (weekdays, weekday_restricted) = parsed
    if 7 in weekdays:
        weekdays.discard(7)
        weekdays.add(0)

    schedule = CronSchedule(
        expression=text,
        minutes=frozenset(minutes),
        hours=frozenset(hours),
        days=frozenset(days),
        months=frozenset(months),
        weekdays=frozenset(weekdays),
        day_restricted=day_restricted,
        weekday_restricted=weekday_restricted,
    )
    if schedule.next_fire_after(datetime(2000, 1, 1)) is None:
        raise InvalidSchedule(f"Cron expression {text!r} never fires.")
    return schedule
