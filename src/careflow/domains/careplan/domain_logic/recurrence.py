"""Recurrence engine: which tasks fall on a day, and when the next one is due.

Pure functions over a frequency rule, the plan start date and the
patient's UTC offset (minutes east of UTC). Nothing here touches storage.

Weekdays are numbered 0 = Sunday through 6 = Saturday, and a "week" runs
Sunday to Saturday. The week index of a day counts such week boundaries
crossed since the anchor (start) date.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone

from careflow.domains.careplan.domain_logic.plan_models import (
    CarePlan,
    CustomDailyFrequency,
    CustomWeeklyFrequency,
    FrequencyRule,
    PresetFrequency,
)


def tz_for_offset(offset_minutes: int) -> timezone:
    """Fixed-offset timezone for a patient offset in minutes east of UTC."""
    return timezone(timedelta(minutes=offset_minutes))


def weekday_index(day: date) -> int:
    """Sunday-based weekday: 0 = Sunday ... 6 = Saturday."""
    return day.isoweekday() % 7


def week_index(anchor: date, day: date) -> int:
    """Number of Sunday-started weeks between ``anchor`` and ``day``."""
    days = (day - anchor).days
    if weekday_index(anchor) <= weekday_index(day):
        return days // 7
    return days // 7 + 1


def local_datetime(day: date, tod: time, offset_minutes: int) -> datetime:
    """The absolute instant of ``tod`` on ``day`` in the patient's offset."""
    return datetime.combine(day, tod, tzinfo=tz_for_offset(offset_minutes))


def to_local(instant: datetime, offset_minutes: int) -> datetime:
    """Convert an instant to the patient's offset (naive instants are UTC)."""
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(tz_for_offset(offset_minutes))


# ---------------------------------------------------------------------------
# Occurrences on a calendar day
# ---------------------------------------------------------------------------

def occurrences_on_day(
    rule: FrequencyRule | None,
    plan_start: date,
    offset_minutes: int,
    calendar_date: date,
) -> list[time]:
    """Local times-of-day at which ``rule`` is due on ``calendar_date``.

    ``offset_minutes`` is accepted for symmetry with :func:`next_occurrence`;
    the calendar date is already local so no conversion is needed.
    """
    if isinstance(rule, PresetFrequency):
        return list(rule.times)

    if isinstance(rule, CustomDailyFrequency):
        if rule.start_date is None or rule.every_n_days < 1 or not rule.times:
            return []
        if calendar_date < rule.start_date:
            return []
        days = (calendar_date - rule.start_date).days
        if days == 0 or days % rule.every_n_days == 0:
            return list(rule.times)
        return []

    if isinstance(rule, CustomWeeklyFrequency):
        if rule.every_n_weeks < 1 or not rule.weekdays or not rule.times:
            return []
        if calendar_date < plan_start:
            return []
        if week_index(plan_start, calendar_date) % rule.every_n_weeks != 0:
            return []
        if weekday_index(calendar_date) in rule.weekdays:
            return list(rule.times)
        return []

    return []


# ---------------------------------------------------------------------------
# Next occurrence after an instant
# ---------------------------------------------------------------------------

def next_occurrence(
    rule: FrequencyRule | None,
    plan_start: date,
    offset_minutes: int,
    reference: datetime,
) -> datetime | None:
    """First instant strictly after ``reference`` at which ``rule`` is due.

    ``reference`` is clamped forward to local midnight of the plan start.
    Returns ``None`` when the rule has nothing configured, meaning no
    further scheduling.
    """
    local_ref = to_local(reference, offset_minutes)
    start_instant = local_datetime(plan_start, time(0, 0), offset_minutes)
    if local_ref < start_instant:
        local_ref = start_instant

    if isinstance(rule, PresetFrequency):
        return _next_preset(rule, local_ref, offset_minutes)
    if isinstance(rule, CustomDailyFrequency):
        return _next_daily(rule, local_ref, offset_minutes)
    if isinstance(rule, CustomWeeklyFrequency):
        return _next_weekly(rule, plan_start, local_ref, offset_minutes)
    return None


def _first_after(
    day: date, times: list[time], reference: datetime, offset_minutes: int
) -> datetime | None:
    for tod in times:
        candidate = local_datetime(day, tod, offset_minutes)
        if candidate > reference:
            return candidate
    return None


def _next_preset(
    rule: PresetFrequency, reference: datetime, offset_minutes: int
) -> datetime | None:
    times = sorted(rule.times)
    if not times:
        return None
    today = reference.date()
    found = _first_after(today, times, reference, offset_minutes)
    if found is not None:
        return found
    return local_datetime(today + timedelta(days=1), times[0], offset_minutes)


def _next_daily(
    rule: CustomDailyFrequency, reference: datetime, offset_minutes: int
) -> datetime | None:
    times = sorted(rule.times)
    if not times or rule.start_date is None or rule.every_n_days < 1:
        return None
    step = rule.every_n_days
    start_instant = local_datetime(rule.start_date, time(0, 0), offset_minutes)
    # Midnight of the schedule start still counts as "before" it, so the
    # first day's times are reachable after clamping to the plan start.
    if reference <= start_instant:
        return local_datetime(rule.start_date, times[0], offset_minutes)

    day = reference.date()
    diff = (day - rule.start_date).days
    if diff == 0 or diff % step != 0:
        day = day + timedelta(days=step - diff % step)
        return local_datetime(day, times[0], offset_minutes)

    found = _first_after(day, times, reference, offset_minutes)
    if found is not None:
        return found
    return local_datetime(day + timedelta(days=step), times[0], offset_minutes)


def _next_weekly(
    rule: CustomWeeklyFrequency,
    plan_start: date,
    reference: datetime,
    offset_minutes: int,
) -> datetime | None:
    times = sorted(rule.times)
    weekdays = sorted(rule.weekdays)
    if not times or not weekdays or rule.every_n_weeks < 1:
        return None

    day = reference.date()
    weekday = weekday_index(day)
    cycle = week_index(plan_start, day) % rule.every_n_weeks

    if cycle == 0:
        if weekday in weekdays:
            found = _first_after(day, times, reference, offset_minutes)
            if found is not None:
                return found
        later = [d for d in weekdays if d > weekday]
        if later:
            return local_datetime(day + timedelta(days=later[0] - weekday), times[0], offset_minutes)

    ahead = 7 * (rule.every_n_weeks - cycle) - weekday + weekdays[0]
    return local_datetime(day + timedelta(days=ahead), times[0], offset_minutes)


# ---------------------------------------------------------------------------
# Plan window
# ---------------------------------------------------------------------------

def is_within_plan(plan: CarePlan, instant: datetime, offset_minutes: int) -> int:
    """Where ``instant`` falls relative to a plan's active window.

    Returns -1 before local midnight of the start date, 0 once the
    duration (plus one hour of grace) has elapsed, 1 otherwise. A
    duration of 0 means open-ended.
    """
    local = to_local(instant, offset_minutes)
    start_instant = local_datetime(plan.start_date, time(0, 0), offset_minutes)
    if local < start_instant:
        return -1
    if plan.duration_days > 0 and local > start_instant + timedelta(days=plan.duration_days, hours=1):
        return 0
    return 1
