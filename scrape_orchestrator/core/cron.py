"""Cron helpers for recurring scrape definitions.

Definitions store a standard five-field cron expression
(``minute hour day month day_of_week``). Structured frequencies accepted
from users are translated into that syntax here:

    daily@09:00           -> "0 9 * * *"
    weekly@1,3,5@08:30    -> "30 8 * * 1,3,5"
    every 6 hours         -> "0 */6 * * *"

Evaluation is delegated to APScheduler's CronTrigger. Standard cron numbers
days of week from Sunday (0 or 7); APScheduler numbers them from Monday, so
day-of-week fields are rewritten with day names before building a trigger.
"""

import re
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from apscheduler.triggers.cron import CronTrigger

from scrape_orchestrator.core.datetime_utils import (
    DEFAULT_TIMEZONE,
    aware_utc_now,
    is_valid_timezone,
    to_aware_utc,
)

CRON_DAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]
_DISPLAY_DAY_NAMES = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]

_FIELD_RE = re.compile(r"^[\w*,\-/?]+$")
_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")
_DAILY_RE = re.compile(r"^daily@(?P<time>\S+)$", re.IGNORECASE)
_WEEKLY_RE = re.compile(r"^weekly@(?P<days>[^@]+)@(?P<time>\S+)$", re.IGNORECASE)
_INTERVAL_RE = re.compile(r"^every\s+(?P<hours>\d+)\s+hours?$", re.IGNORECASE)

# One full day-of-week cycle plus a day of slack
INTERVAL_WINDOW = timedelta(days=8)


class CronValidationError(ValueError):
    """Raised for malformed cron expressions or frequency shapes."""


def _parse_time(value: str) -> tuple[int, int]:
    match = _TIME_RE.match(value.strip())
    if not match:
        raise CronValidationError(f"Invalid time '{value}', expected HH:MM")
    return int(match.group(1)), int(match.group(2))


def _parse_day(token: str) -> int:
    token = token.strip().lower()
    if token.isdigit():
        day = int(token)
        if day > 7:
            raise CronValidationError(f"Invalid day of week '{token}'")
        return day % 7
    if token[:3] in CRON_DAY_NAMES:
        return CRON_DAY_NAMES.index(token[:3])
    raise CronValidationError(f"Invalid day of week '{token}'")


def _translate_day_of_week(field: str) -> str:
    """Rewrite a cron day-of-week field (0/7 = Sunday) as APScheduler day names."""
    if field in ("*", "?"):
        return "*"

    days: list[int] = []
    for token in field.split(","):
        step = 1
        if "/" in token:
            token, step_text = token.split("/", 1)
            if not step_text.isdigit() or int(step_text) == 0:
                raise CronValidationError(f"Invalid day-of-week step in '{field}'")
            step = int(step_text)

        if token in ("*", "?"):
            start, end = 0, 6
        elif "-" in token:
            first, last = token.split("-", 1)
            start = _parse_day(first)
            end = 7 if last.strip() in ("7",) else _parse_day(last)
            if end < start:
                raise CronValidationError(f"Invalid day-of-week range '{token}'")
        else:
            start = end = _parse_day(token)

        for day in range(start, end + 1, step):
            if day % 7 not in days:
                days.append(day % 7)

    return ",".join(CRON_DAY_NAMES[d] for d in days)


def split_cron(expression: str) -> list[str]:
    fields = expression.strip().split()
    if len(fields) != 5:
        raise CronValidationError(
            f"Cron expression must have 5 fields (minute hour day month weekday), "
            f"got {len(fields)}"
        )
    for value in fields:
        if not _FIELD_RE.match(value):
            raise CronValidationError(f"Invalid characters in cron field '{value}'")
    return fields


def build_trigger(
    expression: str,
    timezone: str = DEFAULT_TIMEZONE,
    start_time: datetime | None = None,
) -> CronTrigger:
    """Build an APScheduler CronTrigger from a five-field cron expression.

    Raises:
        CronValidationError: expression or timezone is invalid
    """
    if not is_valid_timezone(timezone):
        raise CronValidationError(f"Unsupported timezone '{timezone}'")

    minute, hour, day, month, day_of_week = split_cron(expression)
    start = to_aware_utc(start_time) if start_time else aware_utc_now()
    try:
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=_translate_day_of_week(day_of_week),
            timezone=timezone,
            # Fields are matched against start_time as wall-clock time in its own zone
            start_time=start.astimezone(ZoneInfo(timezone)),
        )
    except CronValidationError:
        raise
    except (ValueError, TypeError) as e:
        raise CronValidationError(f"Invalid cron expression '{expression}': {e}") from e


def validate_cron_expression(expression: str) -> tuple[bool, str | None]:
    """Check field count and syntax.

    Returns:
        (True, None) if valid, else (False, reason)
    """
    try:
        build_trigger(expression, "UTC")
    except CronValidationError as e:
        return False, str(e)
    return True, None


def get_next_run_time(
    expression: str,
    timezone: str = DEFAULT_TIMEZONE,
    now: datetime | None = None,
) -> datetime | None:
    """Next fire time strictly after ``now``, as an aware UTC datetime."""
    now = to_aware_utc(now) if now else aware_utc_now()
    trigger = build_trigger(expression, timezone, start_time=now)
    fire_time = trigger.next()
    while fire_time is not None and fire_time <= now:
        fire_time = trigger.next()
    return to_aware_utc(fire_time) if fire_time else None


def get_next_run_times(
    expression: str,
    timezone: str = DEFAULT_TIMEZONE,
    count: int = 5,
    now: datetime | None = None,
) -> list[datetime]:
    """The next ``count`` fire times strictly after ``now`` (aware UTC)."""
    now = to_aware_utc(now) if now else aware_utc_now()
    trigger = build_trigger(expression, timezone, start_time=now)
    times: list[datetime] = []
    while len(times) < count:
        fire_time = trigger.next()
        if fire_time is None:
            break
        if fire_time > now:
            times.append(to_aware_utc(fire_time))
    return times


def min_interval_minutes(
    expression: str,
    timezone: str = DEFAULT_TIMEZONE,
    now: datetime | None = None,
    window: timedelta = INTERVAL_WINDOW,
) -> float | None:
    """Smallest gap in minutes between consecutive fires over ``window``.

    The window covers a full weekly cycle, so irregular expressions such as
    "0 9,10 * * *" report their shortest gap whatever the time of the check.
    Fires past the window are only read until two have been seen.
    None if the expression fires fewer than two times.
    """
    now = to_aware_utc(now) if now else aware_utc_now()
    horizon = now + window
    trigger = build_trigger(expression, timezone, start_time=now)
    previous: datetime | None = None
    smallest: float | None = None
    while True:
        fire_time = trigger.next()
        if fire_time is None:
            break
        fire_time = to_aware_utc(fire_time)
        if fire_time <= now:
            continue
        if previous is not None:
            gap = (fire_time - previous).total_seconds() / 60
            smallest = gap if smallest is None else min(smallest, gap)
            if smallest <= 1 or fire_time > horizon:
                break
        previous = fire_time
    return smallest


def frequency_to_cron(frequency: str) -> str:
    """Translate a structured frequency, or pass a raw cron expression through.

    Raises:
        CronValidationError: the frequency is neither a known shape nor valid cron
    """
    frequency = frequency.strip()

    if match := _DAILY_RE.match(frequency):
        hour, minute = _parse_time(match.group("time"))
        return f"{minute} {hour} * * *"

    if match := _WEEKLY_RE.match(frequency):
        hour, minute = _parse_time(match.group("time"))
        tokens = [t for t in match.group("days").strip("{}").split(",") if t.strip()]
        if not tokens:
            raise CronValidationError("Weekly frequency needs at least one day")
        days = sorted({_parse_day(t) for t in tokens})
        return f"{minute} {hour} * * {','.join(str(d) for d in days)}"

    if match := _INTERVAL_RE.match(frequency):
        hours = int(match.group("hours"))
        if not 1 <= hours <= 24:
            raise CronValidationError("Interval must be between 1 and 24 hours")
        return f"0 */{hours} * * *"

    valid, error = validate_cron_expression(frequency)
    if not valid:
        raise CronValidationError(error or f"Invalid frequency '{frequency}'")
    return " ".join(frequency.split())


def cron_to_frequency(expression: str) -> str:
    """Best-effort reverse of frequency_to_cron; custom expressions are returned as-is."""
    fields = expression.split()
    if len(fields) != 5:
        return expression
    minute, hour, day, month, day_of_week = fields

    if day == "*" and month == "*" and minute.isdigit():
        if hour.isdigit():
            time_text = f"{int(hour):02d}:{int(minute):02d}"
            if day_of_week == "*":
                return f"daily@{time_text}"
            if all(t.isdigit() for t in day_of_week.split(",")):
                return f"weekly@{day_of_week}@{time_text}"
        if minute == "0" and day_of_week == "*" and hour.startswith("*/"):
            step = hour[2:]
            if step.isdigit():
                return f"every {int(step)} hours"

    return expression


def describe_cron(expression: str) -> str:
    """Short human description of a cron expression."""
    frequency = cron_to_frequency(expression)
    if frequency.startswith("daily@"):
        return f"Daily at {frequency.split('@')[1]}"
    if frequency.startswith("weekly@"):
        _, days, time_text = frequency.split("@")
        names = ", ".join(_DISPLAY_DAY_NAMES[int(d) % 7] for d in days.split(","))
        return f"Weekly on {names} at {time_text}"
    if frequency.startswith("every "):
        hours = int(frequency.split()[1])
        return "Every hour" if hours == 1 else f"Every {hours} hours"
    return f"Custom: {expression}"
