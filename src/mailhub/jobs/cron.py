"""Five-field cron expressions for recurring jobs."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

# (minimum, maximum) for minute, hour, day-of-month, month, day-of-week.
_FIELD_BOUNDS: tuple[tuple[int, int], ...] = (
    (0, 59),
    (0, 23),
    (1, 31),
    (1, 12),
    (0, 7),
)

# Four years of minutes covers every satisfiable day/month combination.
_SEARCH_LIMIT = timedelta(days=366 * 4)


class CronError(ValueError):
    """Raised when a cron expression cannot be parsed."""


def _parse_field(raw: str, minimum: int, maximum: int) -> frozenset[int]:
    values: set[int] = set()
    for part in raw.split(","):
        step = 1
        if "/" in part:
            part, _, step_raw = part.partition("/")
            if not step_raw.isdigit() or int(step_raw) == 0:
                raise CronError(f"Invalid step in cron field '{raw}'")
            step = int(step_raw)
        if part == "*":
            start, end = minimum, maximum
        elif "-" in part:
            start_raw, _, end_raw = part.partition("-")
            if not (start_raw.isdigit() and end_raw.isdigit()):
                raise CronError(f"Invalid range in cron field '{raw}'")
            start, end = int(start_raw), int(end_raw)
        elif part.isdigit():
            start = int(part)
            end = maximum if step > 1 else start
        else:
            raise CronError(f"Invalid cron field '{raw}'")
        if start < minimum or end > maximum or start > end:
            raise CronError(f"Cron field '{raw}' out of range {minimum}-{maximum}")
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True, slots=True)
class CronExpression:
    """Parsed ``minute hour day-of-month month day-of-week`` expression."""

    source: str
    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]
    day_restricted: bool
    weekday_restricted: bool

    @classmethod
    def parse(cls, expression: str) -> CronExpression:
        fields = expression.split()
        if len(fields) != 5:
            raise CronError(
                f"Cron expression '{expression}' must have exactly five fields"
            )
        parsed = [
            _parse_field(raw, minimum, maximum)
            for raw, (minimum, maximum) in zip(fields, _FIELD_BOUNDS, strict=True)
        ]
        # Sunday may be written as 0 or 7.
        weekdays = frozenset(0 if day == 7 else day for day in parsed[4])
        return cls(
            source=expression,
            minutes=parsed[0],
            hours=parsed[1],
            days=parsed[2],
            months=parsed[3],
            weekdays=weekdays,
            day_restricted=fields[2] != "*",
            weekday_restricted=fields[4] != "*",
        )

    def matches(self, moment: datetime) -> bool:
        """Return ``True`` when ``moment`` falls on a scheduled minute."""
        if moment.minute not in self.minutes or moment.hour not in self.hours:
            return False
        return moment.month in self.months and self._day_matches(moment)

    def next_after(self, moment: datetime) -> datetime:
        """Return the first scheduled minute strictly after ``moment``."""
        candidate = moment.replace(second=0, microsecond=0) + timedelta(minutes=1)
        deadline = candidate + _SEARCH_LIMIT
        while candidate <= deadline:
            if candidate.month not in self.months:
                candidate = _first_of_next_month(candidate)
                continue
            if not self._day_matches(candidate):
                candidate = (candidate + timedelta(days=1)).replace(hour=0, minute=0)
                continue
            if candidate.hour not in self.hours:
                candidate = (candidate + timedelta(hours=1)).replace(minute=0)
                continue
            if candidate.minute not in self.minutes:
                candidate += timedelta(minutes=1)
                continue
            return candidate
        raise CronError(f"Cron expression '{self.source}' never fires")

    def _day_matches(self, moment: datetime) -> bool:
        day_ok = moment.day in self.days
        weekday_ok = (moment.weekday() + 1) % 7 in self.weekdays
        # Standard cron: when both day fields are restricted either may match.
        if self.day_restricted and self.weekday_restricted:
            return day_ok or weekday_ok
        return day_ok and weekday_ok


def _first_of_next_month(moment: datetime) -> datetime:
    if moment.month == 12:
        return moment.replace(year=moment.year + 1, month=1, day=1, hour=0, minute=0)
    return moment.replace(month=moment.month + 1, day=1, hour=0, minute=0)


__all__ = ["CronError", "CronExpression"]
