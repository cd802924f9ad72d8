"""Care plan content: measure categories, frequency rules, thresholds, alert policies.

Plan content arrives as an opaque mapping (the shape the provider UI
produces). It is parsed once per plan version into the frozen dataclasses
below; a signed plan never changes, so the parsed value can be shared.

Frequency rules with missing fields are not rejected. They parse into
rules that simply never produce an occurrence.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, Literal, Union

from careflow.core.storage.models import StoredPlan

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------

MeasureType = Literal["activity", "medication", "vital", "diet", "wellness"]

# Category order used when materializing a day's slots
MEASURE_TYPES: tuple[MeasureType, ...] = ("medication", "vital", "activity", "diet", "wellness")

# Categories whose slots and progress counters are keyed by subtype
SUBTYPED_MEASURES = frozenset({"vital", "diet", "wellness"})

VITAL_TYPES = (
    "heartRate",
    "bloodPressure",
    "weight",
    "glucose",
    "respiratory",
    "bloodOxygen",
    "temperature",
)

TriggerType = Literal["consecutive", "total"]

_TIME_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::(\d{2}))?\s*([AaPp][Mm])?\s*$")


class PlanContentError(Exception):
    """Raised when plan content is structurally invalid."""


def parse_time_of_day(raw: Any) -> time | None:
    """Parse ``"08:00"``, ``"8:00 PM"`` or ``"20:00:00"`` into a local time-of-day."""
    if isinstance(raw, time):
        return raw
    if not isinstance(raw, str):
        return None
    match = _TIME_RE.match(raw)
    if match is None:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    second = int(match.group(3) or 0)
    meridiem = (match.group(4) or "").lower()
    if meridiem:
        if not 1 <= hour <= 12:
            return None
        hour = hour % 12 + (12 if meridiem == "pm" else 0)
    if hour > 23 or minute > 59 or second > 59:
        return None
    return time(hour, minute, second)


def parse_date(raw: Any) -> date | None:
    """Parse an ISO date or datetime string (or date object) into a calendar date."""
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return None
    text = raw.strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def _parse_times(raw: Any) -> tuple[time, ...]:
    if not isinstance(raw, (list, tuple)):
        return ()
    times = []
    for item in raw:
        parsed = parse_time_of_day(item)
        if parsed is None:
            logger.warning("Ignoring unparseable time of day: %r", item)
            continue
        times.append(parsed)
    return tuple(times)


def _as_int(raw: Any, default: int = 0) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _as_float(raw: Any) -> float | None:
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Frequency rules (tagged variant)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PresetFrequency:
    """Fires every day at the listed local times."""

    times: tuple[time, ...] = ()
    kind: Literal["preset"] = "preset"


@dataclass(frozen=True)
class CustomDailyFrequency:
    """Fires every ``every_n_days`` days counted from ``start_date``."""

    start_date: date | None = None
    every_n_days: int = 0
    times: tuple[time, ...] = ()
    kind: Literal["daily"] = "daily"


@dataclass(frozen=True)
class CustomWeeklyFrequency:
    """Fires on ``weekdays`` (0 = Sunday) of every ``every_n_weeks``-th week.

    Weeks are always counted from the plan start date; a ``startDate`` in
    the raw rule is ignored.
    """

    every_n_weeks: int = 0
    weekdays: tuple[int, ...] = ()
    times: tuple[time, ...] = ()
    kind: Literal["weekly"] = "weekly"


FrequencyRule = Union[PresetFrequency, CustomDailyFrequency, CustomWeeklyFrequency]


def parse_frequency(raw: Any) -> FrequencyRule | None:
    """Parse the plan's frequency mapping.

    Accepted shapes::

        {"type": "preset", "value": {"hours": ["08:00 AM"]}}
        {"type": "custom", "value": {"frequency": "Daily", "startDate": "2024-01-01",
                                     "everyDays": 3, "dailyTimes": ["08:00"]}}
        {"type": "custom", "value": {"frequency": "Weekly", "everyWeeks": 2,
                                     "weekDays": [1, 3], "weeklyTimes": ["08:00"]}}

    Returns ``None`` for anything that is not a frequency at all.
    """
    if not isinstance(raw, dict):
        return None
    kind = str(raw.get("type", "")).lower()
    value = raw.get("value") or {}
    if not isinstance(value, dict):
        value = {}

    if kind == "preset":
        return PresetFrequency(times=_parse_times(value.get("hours")))
    if kind != "custom":
        return None

    if str(value.get("frequency", "")).lower() == "weekly":
        weekdays = sorted(
            {d for d in (_as_int(w, -1) for w in value.get("weekDays") or []) if 0 <= d <= 6}
        )
        return CustomWeeklyFrequency(
            every_n_weeks=_as_int(value.get("everyWeeks")),
            weekdays=tuple(weekdays),
            times=_parse_times(value.get("weeklyTimes")),
        )
    return CustomDailyFrequency(
        start_date=parse_date(value.get("startDate")),
        every_n_days=_as_int(value.get("everyDays")),
        times=_parse_times(value.get("dailyTimes")),
    )


# ---------------------------------------------------------------------------
# Thresholds and alert policies
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Thresholds:
    """Clinical bounds for a vital subtype.

    Which bounds apply depends on the subtype: heart rate uses ``max`` and
    ``min``; blood pressure uses all four (``max``/``min`` for systolic,
    ``max2``/``min2`` for diastolic); glucose and temperature use ``max``;
    respiratory uses ``min`` and ``max``; blood oxygen uses ``min``.
    """

    max: float | None = None
    min: float | None = None
    max2: float | None = None
    min2: float | None = None

    @classmethod
    def from_dict(cls, raw: Any) -> Thresholds | None:
        if not isinstance(raw, dict) or not raw:
            return None
        return cls(
            max=_as_float(raw.get("max")),
            min=_as_float(raw.get("min")),
            max2=_as_float(raw.get("max2")),
            min2=_as_float(raw.get("min2")),
        )


@dataclass(frozen=True)
class AlertPolicy:
    """History-scan policy: alert once ``trigger_value`` negatives accrue."""

    trigger_type: TriggerType = "consecutive"
    trigger_value: int = 3

    def snapshot(self) -> dict[str, Any]:
        return {"triggerType": self.trigger_type, "triggerValue": self.trigger_value}


@dataclass(frozen=True)
class WeightTrendPolicy:
    """Weight gain policy: alert on ``gain_threshold`` over the reference weight."""

    period_days: int
    base_weight: float
    gain_threshold: float

    def snapshot(self) -> dict[str, Any]:
        return {
            "periodValue": self.period_days,
            "baseWeight": self.base_weight,
            "gainThreshold": self.gain_threshold,
        }


Policy = Union[AlertPolicy, WeightTrendPolicy]


def parse_policy(subtype: str | None, raw: Any) -> Policy | None:
    """Parse an ``alerts`` mapping. Returns ``None`` when absent or incomplete."""
    if not isinstance(raw, dict) or not raw:
        return None
    if subtype == "weight":
        base = _as_float(raw.get("baseWeight"))
        gain = _as_float(raw.get("gainThreshold"))
        if base is None or gain is None:
            return None
        return WeightTrendPolicy(
            period_days=_as_int(raw.get("periodValue"), 7),
            base_weight=base,
            gain_threshold=gain,
        )
    trigger_value = _as_int(raw.get("triggerValue"))
    if trigger_value < 1:
        return None
    trigger_type = str(raw.get("triggerType", "consecutive")).lower()
    if trigger_type not in ("consecutive", "total"):
        trigger_type = "consecutive"
    return AlertPolicy(trigger_type=trigger_type, trigger_value=trigger_value)


# ---------------------------------------------------------------------------
# Measure configuration and full plan content
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MeasureConfig:
    """One configured item: a medication, a vital subtype, a question, the activity."""

    measure: MeasureType
    subtype: str
    frequency: FrequencyRule | None = None
    alerts: Policy | None = None
    thresholds: Thresholds | None = None


@dataclass(frozen=True)
class PlanContent:
    """Immutable, parsed plan content keyed by measure category then subtype."""

    measures: dict[str, tuple[MeasureConfig, ...]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Any) -> PlanContent:
        """Parse plan content.

        Raises:
            PlanContentError: If the content or a category is not a mapping,
                or names an unknown category.
        """
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise PlanContentError("Plan content must be a mapping")

        measures: dict[str, tuple[MeasureConfig, ...]] = {}
        for key, item in raw.items():
            if key in ("careTeam", "appointment"):
                continue
            if key not in MEASURE_TYPES:
                raise PlanContentError(f"Unknown measure category: {key!r}")
            if item is None:
                continue
            if not isinstance(item, dict):
                raise PlanContentError(f"Measure category {key!r} must be a mapping")

            # A single config (the usual shape for activity) has its
            # frequency at the top level instead of a subtype map.
            if "frequency" in item:
                entries = {key: item}
            else:
                entries = item

            configs = []
            for subtype, sub in entries.items():
                if not isinstance(sub, dict):
                    raise PlanContentError(f"{key}.{subtype} must be a mapping")
                raw_frequency = sub.get("frequency")
                modification = sub.get("modification")
                if isinstance(modification, dict) and modification.get("frequency"):
                    raw_frequency = modification["frequency"]
                configs.append(
                    MeasureConfig(
                        measure=key,
                        subtype=subtype,
                        frequency=parse_frequency(raw_frequency),
                        alerts=parse_policy(subtype if key == "vital" else None, sub.get("alerts")),
                        thresholds=Thresholds.from_dict(sub.get("thresholds")),
                    )
                )
            measures[key] = tuple(configs)
        return cls(measures=measures)

    def configs(self, measure: str) -> tuple[MeasureConfig, ...]:
        return self.measures.get(measure, ())

    def config(self, measure: str, subtype: str | None) -> MeasureConfig | None:
        for cfg in self.configs(measure):
            if subtype is None or cfg.subtype == subtype:
                return cfg
        return None

    def alert_policy(self, measure: str, subtype: str | None) -> Policy | None:
        """Policy for a subtype, or the first configured policy of an unsubtyped measure."""
        if subtype is not None:
            cfg = self.config(measure, subtype)
            return cfg.alerts if cfg else None
        for cfg in self.configs(measure):
            if cfg.alerts is not None:
                return cfg.alerts
        return None

    def all_configs(self) -> list[MeasureConfig]:
        return [cfg for measure in MEASURE_TYPES for cfg in self.configs(measure)]


@dataclass(frozen=True)
class CarePlan:
    """A signed plan version together with its parsed content."""

    stored: StoredPlan
    content: PlanContent

    @classmethod
    def from_stored(cls, stored: StoredPlan) -> CarePlan:
        return cls(stored=stored, content=PlanContent.from_dict(stored.content))

    @property
    def id(self) -> str:
        return self.stored.id

    @property
    def patient_id(self) -> str:
        return self.stored.patient_id

    @property
    def start_date(self) -> date:
        return self.stored.start_date

    @property
    def duration_days(self) -> int:
        return self.stored.duration_days

    @property
    def care_team(self) -> list[str]:
        return list(self.stored.care_team)

    @property
    def is_active(self) -> bool:
        return self.stored.is_active
