"""Recurrence engine: pure date arithmetic for recurring task templates.

Rules are evaluated on local calendar dates in the rule's timezone. Weekdays
use 0=Sunday .. 6=Saturday.
"""

import calendar
import json
from datetime import UTC, date, datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.core.config import settings
from src.domain.task import GeneratedOccurrence, RecurrenceFrequency, RecurrenceRule, Task


DAYS_IN_WEEK = 7
WEEKDAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


def day_of_week(value: date) -> int:
    """Return the weekday with Sunday as 0."""
    return (value.weekday() + 1) % DAYS_IN_WEEK


def _add_months(value: date, months: int, day: int) -> date:
    """Move ``months`` ahead and place the result on ``day``, clamped to the month end."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last_day))


def next_occurrence(last_date: date, rule: RecurrenceRule) -> date | None:
    """Compute the occurrence following ``last_date``.

    Args:
        last_date: Date of the previous occurrence
        rule: Recurrence rule

    Returns:
        The next occurrence date, or None once the rule's end date is passed
    """
    match rule.frequency:
        case RecurrenceFrequency.DAILY:
            following = last_date + timedelta(days=rule.interval)

        case RecurrenceFrequency.WEEKLY if rule.days_of_week:
            current = day_of_week(last_date)
            days = sorted(set(rule.days_of_week))
            later_this_week = [d for d in days if d > current]
            if later_this_week:
                following = last_date + timedelta(days=later_this_week[0] - current)
            else:
                offset = DAYS_IN_WEEK - current + days[0] + (rule.interval - 1) * DAYS_IN_WEEK
                following = last_date + timedelta(days=offset)

        case RecurrenceFrequency.WEEKLY:
            following = last_date + timedelta(days=DAYS_IN_WEEK * rule.interval)

        case RecurrenceFrequency.MONTHLY:
            # Without an explicit day the same day-of-month is kept; both paths clamp to month end
            target_day = rule.day_of_month or last_date.day
            following = _add_months(last_date, rule.interval, target_day)

        case _:
            msg = f"Unsupported recurrence frequency: {rule.frequency}"
            raise ValueError(msg)

    if rule.end_date is not None and following > rule.end_date:
        return None
    return following


def resolve_timezone(name: str | None) -> ZoneInfo:
    """Return the ZoneInfo for ``name``, falling back to the configured default."""
    zone_name = name or settings.default_timezone
    try:
        return ZoneInfo(zone_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        msg = f"Unknown timezone: {zone_name}"
        raise ValueError(msg) from e


def _parse_time_of_day(value: str | None) -> time:
    if not value:
        return time(0, 0)
    hours, _, rest = value.partition(":")
    minutes = rest.partition(":")[0] or "0"
    return time(int(hours), int(minutes))


def generate_occurrences(
    template: Task,
    rule: RecurrenceRule,
    from_date: datetime,
    window_days: int,
    existing_count: int = 0,
) -> list[GeneratedOccurrence]:
    """Expand a template into the occurrences falling inside a window.

    Occurrences are numbered from the template's due date (index 0), so an
    occurrence keeps its index across runs with moving windows. Occurrences
    dated before ``from_date`` consume an index without being emitted, and
    indices below ``existing_count`` are not emitted again.

    Args:
        template: Recurring task template
        rule: The template's recurrence rule
        from_date: Start of the window
        window_days: Window length in days
        existing_count: Number of occurrences already materialized

    Returns:
        Occurrences ordered by index
    """
    zone = resolve_timezone(rule.timezone)
    if from_date.tzinfo is None:
        from_date = from_date.replace(tzinfo=UTC)
    window_start = from_date.astimezone(zone).date()
    window_end = window_start + timedelta(days=window_days)

    if template.due_date is not None:
        due_local = (
            template.due_date.replace(tzinfo=UTC) if template.due_date.tzinfo is None else template.due_date
        ).astimezone(zone)
        cursor: date | None = due_local.date()
        time_of_day = due_local.time().replace(tzinfo=None)
    else:
        cursor = window_start
        time_of_day = _parse_time_of_day(template.scheduled_time)

    if rule.end_date is not None and cursor > rule.end_date:
        return []

    occurrences: list[GeneratedOccurrence] = []
    index = 0
    while cursor is not None and cursor <= window_end:
        if rule.max_occurrences is not None and index >= rule.max_occurrences:
            break

        if cursor >= window_start and index >= existing_count:
            due = datetime.combine(cursor, time_of_day, tzinfo=zone).astimezone(UTC)
            occurrences.append(
                GeneratedOccurrence(
                    tenant_id=template.tenant_id,
                    source_task_id=template.id,
                    recurrence_index=index,
                    due_date=due,
                    title=template.title,
                    description=template.description,
                    type=template.type,
                    priority=template.priority,
                    area_id=template.area_id,
                    assigned_to_id=template.assigned_to_id,
                    created_by_id=template.created_by_id,
                    scheduled_time=template.scheduled_time,
                    has_checklist=template.has_checklist,
                )
            )

        index += 1
        cursor = next_occurrence(cursor, rule)

    return occurrences


def _positive_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        return None
    return value


def _pick(raw: dict[str, Any], camel: str, snake: str) -> Any:
    return raw[camel] if camel in raw else raw.get(snake)


def parse_recurrence_rule(raw: Any) -> RecurrenceRule | None:
    """Leniently parse a stored recurrence setting.

    Accepts a RecurrenceRule, a mapping with camelCase or snake_case keys, or a
    JSON string. Returns None when there is no usable frequency.
    """
    if raw is None:
        return None
    if isinstance(raw, RecurrenceRule):
        return raw
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return None
    if not isinstance(raw, dict):
        return None

    frequency = raw.get("frequency")
    if frequency not in {f.value for f in RecurrenceFrequency}:
        return None

    days = _pick(raw, "daysOfWeek", "days_of_week")
    days_of_week = None
    if isinstance(days, list):
        days_of_week = [d for d in days if isinstance(d, int) and not isinstance(d, bool) and 0 <= d < DAYS_IN_WEEK]

    day_of_month = _positive_int(_pick(raw, "dayOfMonth", "day_of_month"))
    if day_of_month is not None and day_of_month > 31:
        day_of_month = None

    end_date = None
    raw_end = _pick(raw, "endDate", "end_date")
    if isinstance(raw_end, str):
        try:
            end_date = date.fromisoformat(raw_end[:10])
        except ValueError:
            end_date = None

    timezone = raw.get("timezone")

    return RecurrenceRule(
        frequency=RecurrenceFrequency(frequency),
        interval=_positive_int(raw.get("interval")) or 1,
        days_of_week=days_of_week,
        day_of_month=day_of_month,
        end_date=end_date,
        max_occurrences=_positive_int(_pick(raw, "maxOccurrences", "max_occurrences")),
        timezone=timezone if isinstance(timezone, str) and timezone else settings.default_timezone,
    )


def describe_recurrence(rule: RecurrenceRule) -> str:
    """Convert a recurrence rule to human-readable text.

    Args:
        rule: Recurrence rule

    Returns:
        Description such as "every 2 weeks on Monday, Friday"
    """
    match rule.frequency:
        case RecurrenceFrequency.DAILY:
            text = "daily" if rule.interval == 1 else f"every {rule.interval} days"
        case RecurrenceFrequency.WEEKLY:
            text = "weekly" if rule.interval == 1 else f"every {rule.interval} weeks"
            if rule.days_of_week:
                days = ", ".join(WEEKDAY_NAMES[d] for d in sorted(set(rule.days_of_week)))
                text = f"{text} on {days}"
        case RecurrenceFrequency.MONTHLY:
            text = "monthly" if rule.interval == 1 else f"every {rule.interval} months"
            if rule.day_of_month:
                text = f"{text} on day {rule.day_of_month}"
        case _:
            return "recurring"

    if rule.end_date is not None:
        text = f"{text} until {rule.end_date.isoformat()}"
    if rule.max_occurrences is not None:
        text = f"{text}, {rule.max_occurrences} times"
    return text
