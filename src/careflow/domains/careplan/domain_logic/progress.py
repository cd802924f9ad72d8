"""Progress aggregation — rolling answered/positive counters per measure.

Counters live on the patient's enrollment record in this shape::

    {
        "medication": {"totalCount": 12, "positiveCount": 11},
        "vital": {"heartRate": {"totalCount": 6, "positiveCount": 4}},
    }

Activity and medication hold a single pair; vital, diet and wellness
hold one pair per subtype.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from careflow.domains.careplan.domain_logic.plan_models import SUBTYPED_MEASURES
from careflow.domains.careplan.domain_logic.recorder import DeltaMap, ProgressDelta


@dataclass
class CounterPair:
    total_count: int = 0
    positive_count: int = 0

    @classmethod
    def from_dict(cls, raw: Any) -> CounterPair:
        if not isinstance(raw, dict):
            return cls()
        return cls(int(raw.get("totalCount", 0)), int(raw.get("positiveCount", 0)))

    def to_dict(self) -> dict[str, int]:
        return {"totalCount": self.total_count, "positiveCount": self.positive_count}

    def apply(self, delta: ProgressDelta) -> None:
        self.total_count += delta.count
        self.positive_count += delta.value


class ProgressAggregator:
    """Folds recorder deltas into a patient's progress mapping."""

    @staticmethod
    def counter(progress: dict[str, Any], measure: str, subtype: str | None = None) -> CounterPair:
        """Read one counter pair (zeros when absent)."""
        node = progress.get(measure) or {}
        if measure in SUBTYPED_MEASURES:
            node = node.get(subtype) if subtype is not None else None
        return CounterPair.from_dict(node)

    @staticmethod
    def apply(progress: dict[str, Any], deltas: DeltaMap, measure: str) -> dict[str, Any]:
        """Apply ``deltas`` for ``measure`` to ``progress`` in place and return it.

        ``totalCount`` moves by the delta's count and ``positiveCount`` by
        its value, so flipping an answer adjusts only the positive count.
        """
        if not deltas:
            return progress
        if measure in SUBTYPED_MEASURES:
            node = progress.setdefault(measure, {})
            for subtype, delta in deltas.items():
                if subtype is None:
                    continue
                pair = CounterPair.from_dict(node.get(subtype))
                pair.apply(delta)
                node[subtype] = pair.to_dict()
        else:
            pair = CounterPair.from_dict(progress.get(measure))
            for delta in deltas.values():
                pair.apply(delta)
            progress[measure] = pair.to_dict()
        return progress
