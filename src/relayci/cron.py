# cron.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import FrozenSet, List, Tuple

from .errors import CronError

# (name, low, high, aliases)
_FIELDS: List[Tuple[str, int, int, dict]] = [
    ("minute", 0, 59, {}),
    ("hour", 0, 23, {}),
    ("day-of-month", 1, 31, {}),
    ("month", 1, 12, {
        "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
        "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
    }),
    ("day-of-week", 0, 7, {
        "sun": 0, "mon": 1, "tue": 2, "wed": 3, "thu": 4, "fri": 5, "sat": 6,
    }),
]


def _value(expr: str, token: str, low: int, high: int, aliases: dict) -> int:
    key = token.lower()
    if key in aliases:
        return aliases[key]
    try:
        v = int(token)
    except ValueError:
        raise CronError(expr, f"not a number: {token!r}") from None
    if not low <= v <= high:
        raise CronError(expr, f"{v} out of range {low}-{high}")
    return v


def _parse_field(expr: str, text: str, low: int, high: int, aliases: dict) -> Tuple[FrozenSet[int], bool]:
    """Returns (allowed values, is_wildcard)."""
    values = set()
    wildcard = False
    for part in text.split(","):
        if not part:
            raise CronError(expr, "empty list element")
        step = 1
        if "/" in part:
            part, step_s = part.split("/", 1)
            try:
                step = int(step_s)
            except ValueError:
                raise CronError(expr, f"bad step {step_s!r}") from None
            if step <= 0:
                raise CronError(expr, "step must be positive")

        if part == "*":
            start, end = low, high
            wildcard = wildcard or step == 1
        elif "-" in part:
            a, b = part.split("-", 1)
            start = _value(expr, a, low, high, aliases)
            end = _value(expr, b, low, high, aliases)
            if start > end:
                raise CronError(expr, f"range {part!r} is reversed")
        else:
            start = _value(expr, part, low, high, aliases)
            # "5/15" means starting at 5, every 15
            end = high if step != 1 else start

        values.update(range(start, end + 1, step))
    return frozenset(values), wildcard


@dataclass(frozen=True)
class CronExpression:
    """
    Standard five-field cron schedule: minute hour day-of-month month day-of-week.

    When both day fields are restricted a time matches if EITHER matches
    (classic cron semantics). Day-of-week 7 is Sunday, like 0.
    """
    source: str
    minutes: FrozenSet[int]
    hours: FrozenSet[int]
    days: FrozenSet[int]
    months: FrozenSet[int]
    weekdays: FrozenSet[int]
    days_any: bool
    weekdays_any: bool

    @classmethod
    def parse(cls, expr: str) -> "CronExpression":
        parts = expr.split()
        if len(parts) != 5:
            raise CronError(expr, f"expected 5 fields, got {len(parts)}")

        parsed = [
            _parse_field(expr, text, low, high, aliases)
            for text, (_name, low, high, aliases) in zip(parts, _FIELDS)
        ]
        weekdays = frozenset(0 if d == 7 else d for d in parsed[4][0])
        return cls(
            source=expr,
            minutes=parsed[0][0],
            hours=parsed[1][0],
            days=parsed[2][0],
            months=parsed[3][0],
            weekdays=weekdays,
            days_any=parsed[2][1],
            weekdays_any=parsed[4][1],
        )

    def matches(self, when: datetime) -> bool:
        if when.minute not in self.minutes or when.hour not in self.hours:
            return False
        if when.month not in self.months:
            return False

        dom = when.day in self.days
        # Python: Monday=0 ... Sunday=6 ; cron: Sunday=0 ... Saturday=6
        dow = (when.weekday() + 1) % 7 in self.weekdays

        if self.days_any and self.weekdays_any:
            return True
        if self.days_any:
            return dow
        if self.weekdays_any:
            return dom
        return dom or dow
