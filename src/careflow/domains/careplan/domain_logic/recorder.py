"""Response recorder — applies a submission to the matching slots of a day.

For each slot the submission answers, the recorder stores the answer,
evaluates whether it is *positive* (within the plan's clinical bounds, or
"task done") and reports how the patient's progress counters move:

=====================  ===================================
transition              delta (count, value)
=====================  ===================================
first answer            (1, 1) if positive else (1, 0)
unchanged               (0, 0)
positive -> negative    (0, -1)
negative -> positive    (0, +1)
not evaluable           (0, 0), positivity left as it was
=====================  ===================================
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from careflow.core.jobs.queue import Clock, utc_now
from careflow.core.storage.models import DailyResponseDocument, ResponseSlot
from careflow.core.storage.repository import CarePlanRepository
from careflow.domains.careplan.domain_logic.answers import (
    CompletionAnswer,
    ScaleAnswer,
    Submission,
    VitalAnswer,
    VitalReading,
)
from careflow.domains.careplan.domain_logic.plan_models import (
    SUBTYPED_MEASURES,
    CarePlan,
    Thresholds,
    WeightTrendPolicy,
)

logger = logging.getLogger(__name__)

# Ordinal diet and wellness answers above this score count as positive
SCALE_POSITIVE_ABOVE = 2


@dataclass(frozen=True)
class ProgressDelta:
    count: int = 0
    value: int = 0

    def __add__(self, other: ProgressDelta) -> ProgressDelta:
        return ProgressDelta(self.count + other.count, self.value + other.value)


# Keyed by subtype; ``None`` for activity and medication
DeltaMap = dict[str | None, ProgressDelta]


@dataclass
class RecordedResponse:
    deltas: DeltaMap = field(default_factory=dict)
    updated_slots: list[ResponseSlot] = field(default_factory=list)


def progress_delta(previous: bool | None, current: bool | None) -> ProgressDelta:
    """Counter movement for a slot going from ``previous`` to ``current`` positivity."""
    if current is None:
        return ProgressDelta()
    if previous is None:
        return ProgressDelta(1, 1 if current else 0)
    if previous == current:
        return ProgressDelta()
    return ProgressDelta(0, 1 if current else -1)


# ---------------------------------------------------------------------------
# Positivity rules
# ---------------------------------------------------------------------------

def normalize_vital(subtype: str, reading: VitalReading) -> tuple[float, float | None]:
    """Order paired readings high-to-low and clamp blood oxygen to 100."""
    value, value2 = reading.value, reading.value2
    if subtype in ("heartRate", "bloodPressure") and value2 is not None and value < value2:
        value, value2 = value2, value
    if subtype == "bloodOxygen" and value > 100:
        value = 100.0
    return value, value2


def vital_is_positive(
    subtype: str, value: float, value2: float | None, thresholds: Thresholds | None
) -> bool | None:
    """Evaluate a (normalized) vital reading; ``None`` when bounds are missing."""
    t = thresholds
    if t is None:
        return None
    if subtype == "heartRate":
        if t.max is None or t.min is None:
            return None
        low = value2 if value2 is not None else value
        return value <= t.max and low >= t.min
    if subtype == "bloodPressure":
        if None in (t.max, t.min, t.max2, t.min2) or value2 is None:
            return None
        return value <= t.max and value2 <= t.max2 and value >= t.min and value2 >= t.min2
    if subtype in ("glucose", "temperature"):
        return None if t.max is None else value <= t.max
    if subtype == "respiratory":
        if t.max is None or t.min is None:
            return None
        return t.min <= value <= t.max
    if subtype == "bloodOxygen":
        return None if t.min is None else value >= t.min
    return None


def weight_is_positive(
    weight: float, policy: WeightTrendPolicy, prior: list[ResponseSlot]
) -> bool:
    """Compare ``weight`` against the reference weight of the trend window.

    ``prior`` holds the answered weight slots of the window, newest first.
    The reference is the newest of them while every one is positive and
    untriggered, otherwise the plan's base weight.
    """
    reference = policy.base_weight
    if prior and all(s.is_positive is True and not s.alerts_triggered for s in prior):
        latest = (prior[0].response or {}).get("value")
        if latest is not None:
            reference = float(latest)
    return weight < reference + policy.gain_threshold


class ResponseRecorder:
    """Writes answers into a daily document's slots and computes progress deltas.

    The recorder only mutates the in-memory document; the caller persists
    ``updated_slots`` inside its unit of work.
    """

    def __init__(self, repository: CarePlanRepository, clock: Clock = utc_now) -> None:
        self._repo = repository
        self._clock = clock

    def record_response(
        self, document: DailyResponseDocument, submission: Submission, plan: CarePlan
    ) -> RecordedResponse:
        result = RecordedResponse()
        subtypes = submission.subtypes()
        now = self._clock()

        for slot in document.slots:
            if slot.measure != submission.measure or slot.time != submission.time:
                continue
            if submission.measure in SUBTYPED_MEASURES and slot.subtype not in subtypes:
                continue

            previous = slot.is_positive
            response, positive = self._evaluate(document, slot, submission, plan)
            slot.response = response
            slot.answered_at = now
            if positive is not None:
                slot.is_positive = positive
            delta = progress_delta(previous, positive)

            key = slot.subtype if submission.measure in SUBTYPED_MEASURES else None
            result.deltas[key] = result.deltas.get(key, ProgressDelta()) + delta
            result.updated_slots.append(slot)

        if not result.updated_slots:
            logger.info(
                "Submission for %s at %s matched no slot on %s",
                submission.measure, submission.time.isoformat(), document.calendar_date,
            )
        return result

    def _evaluate(
        self,
        document: DailyResponseDocument,
        slot: ResponseSlot,
        submission: Submission,
        plan: CarePlan,
    ) -> tuple[dict[str, Any], bool | None]:
        answer = submission.answer

        if isinstance(answer, CompletionAnswer):
            return {"didTake": answer.did_complete}, answer.did_complete

        if isinstance(answer, ScaleAnswer):
            score = answer.scores[slot.subtype]
            return {"value": score}, score > SCALE_POSITIVE_ABOVE

        if isinstance(answer, VitalAnswer):
            subtype = slot.subtype
            value, value2 = normalize_vital(subtype, answer.readings[subtype])
            response: dict[str, Any] = {"value": value}
            if value2 is not None:
                response["value2"] = value2
            cfg = plan.content.config("vital", subtype)
            if subtype == "weight":
                policy = cfg.alerts if cfg else None
                if not isinstance(policy, WeightTrendPolicy):
                    return response, None
                prior = self._repo.slot_history(
                    document.patient_id,
                    document.plan_id,
                    "vital",
                    "weight",
                    before=slot.time,
                    since=slot.time - timedelta(days=policy.period_days),
                    answered_only=True,
                    newest_first=True,
                )
                return response, weight_is_positive(value, policy, prior)
            return response, vital_is_positive(subtype, value, value2, cfg.thresholds if cfg else None)

        return {}, None
