"""Patient submissions: one tagged answer shape per measure category.

* ``activity`` / ``medication`` — :class:`CompletionAnswer` (did the patient do it)
* ``vital`` — :class:`VitalAnswer`, one reading per vital subtype; blood
  pressure and heart rate carry a second value
* ``diet`` / ``wellness`` — :class:`ScaleAnswer`, an ordinal score per question
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

from careflow.domains.careplan.domain_logic.plan_models import MEASURE_TYPES


class SubmissionError(ValueError):
    """Raised when a submission cannot be interpreted at all."""


@dataclass(frozen=True)
class CompletionAnswer:
    did_complete: bool


@dataclass(frozen=True)
class VitalReading:
    value: float
    value2: float | None = None


@dataclass(frozen=True)
class VitalAnswer:
    readings: dict[str, VitalReading] = field(default_factory=dict)


@dataclass(frozen=True)
class ScaleAnswer:
    scores: dict[str, float] = field(default_factory=dict)


Answer = Union[CompletionAnswer, VitalAnswer, ScaleAnswer]


@dataclass(frozen=True)
class Submission:
    """One answer for the task(s) due at ``time``."""

    measure: str
    time: datetime
    answer: Answer
    subtype: str | None = None

    def subtypes(self) -> set[str]:
        """Subtypes this submission answers; empty for unsubtyped measures."""
        if isinstance(self.answer, VitalAnswer):
            keys = set(self.answer.readings)
        elif isinstance(self.answer, ScaleAnswer):
            keys = set(self.answer.scores)
        else:
            return set()
        if self.subtype is not None:
            keys &= {self.subtype}
        return keys

    @classmethod
    def from_dict(
        cls,
        measure: str,
        time: str | datetime,
        response: dict[str, Any],
        subtype: str | None = None,
    ) -> Submission:
        """Build a submission from the transport shape.

        ``response`` examples::

            {"didTake": true}                                   # medication / activity
            {"bloodPressure": 150, "bloodPressure2": 90}        # vital, value2 via "<subtype>2"
            {"heartRate": {"value": 95, "value2": 60}}          # vital, nested form
            {"mood": 4, "sleep": 2}                             # wellness / diet

        Raises:
            SubmissionError: Unknown measure, unparseable time or payload.
        """
        if measure not in MEASURE_TYPES:
            raise SubmissionError(f"Unknown measure: {measure!r}")
        if not isinstance(response, dict):
            raise SubmissionError("Response payload must be a mapping")
        instant = _parse_instant(time)

        if measure in ("activity", "medication"):
            flag = response.get("didTake", response.get("didComplete"))
            if flag is None:
                raise SubmissionError(f"{measure} response needs 'didTake'")
            return cls(measure, instant, CompletionAnswer(bool(flag)), subtype)

        if measure == "vital":
            readings: dict[str, VitalReading] = {}
            for key, raw in response.items():
                if key.endswith("2") and key[:-1] in response:
                    continue
                if isinstance(raw, dict):
                    value, value2 = raw.get("value"), raw.get("value2")
                else:
                    value, value2 = raw, response.get(f"{key}2")
                if value is None:
                    continue
                readings[key] = VitalReading(_number(value), _number(value2) if value2 is not None else None)
            return cls(measure, instant, VitalAnswer(readings), subtype)

        scores = {key: _number(raw) for key, raw in response.items() if raw is not None}
        return cls(measure, instant, ScaleAnswer(scores), subtype)


def _number(raw: Any) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise SubmissionError(f"Not a number: {raw!r}") from exc


def _parse_instant(raw: str | datetime) -> datetime:
    if isinstance(raw, datetime):
        value = raw
    else:
        try:
            value = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        except ValueError as exc:
            raise SubmissionError(f"Invalid time: {raw!r}") from exc
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value
