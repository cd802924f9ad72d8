"""Daily response ledger — one document of expected task slots per patient day.

The slot set of a day is computed once, from the plan version active when
the document is first touched, and never recomputed afterwards.
"""

from __future__ import annotations

import logging
from datetime import date

from careflow.core.storage.models import DailyResponseDocument, PatientRecord, ResponseSlot
from careflow.core.storage.repository import CarePlanRepository
from careflow.domains.careplan.domain_logic.plan_models import (
    MEASURE_TYPES,
    SUBTYPED_MEASURES,
    CarePlan,
)
from careflow.domains.careplan.domain_logic.recurrence import local_datetime, occurrences_on_day

logger = logging.getLogger(__name__)


def build_day_slots(plan: CarePlan, offset_minutes: int, calendar_date: date) -> list[ResponseSlot]:
    """Materialize the expected slots of ``calendar_date``.

    Subtyped measures (vital, diet, wellness) get one slot per subtype and
    time. Activity and medication get one slot per distinct time, however
    many configs share it.
    """
    slots: list[ResponseSlot] = []
    for measure in MEASURE_TYPES:
        entries: list[tuple] = []
        seen_times = set()
        for cfg in plan.content.configs(measure):
            for tod in occurrences_on_day(cfg.frequency, plan.start_date, offset_minutes, calendar_date):
                if measure in SUBTYPED_MEASURES:
                    entries.append((tod, cfg.subtype))
                elif tod not in seen_times:
                    seen_times.add(tod)
                    entries.append((tod, None))
        # stable: configs keep their order within the same time
        entries.sort(key=lambda entry: entry[0])
        for tod, subtype in entries:
            slots.append(
                ResponseSlot(
                    measure=measure,
                    subtype=subtype,
                    time=local_datetime(calendar_date, tod, offset_minutes),
                )
            )
    return slots


class DailyResponseLedger:
    """Find-or-create access to daily response documents."""

    def __init__(self, repository: CarePlanRepository, default_offset: int = -300) -> None:
        self._repo = repository
        self._default_offset = default_offset

    def offset_for(self, patient: PatientRecord) -> int:
        if patient.timezone_offset is None:
            return self._default_offset
        return patient.timezone_offset

    def get_or_create(
        self, patient: PatientRecord, calendar_date: date, plan: CarePlan
    ) -> DailyResponseDocument:
        """Return the day's document, creating it from ``plan`` on first touch.

        Concurrent first touches resolve to a single document: the
        repository insert is conditional on the (patient, plan, date) key.
        """
        existing = self._repo.find_daily_document(patient.id, plan.id, calendar_date)
        if existing is not None:
            return existing
        slots = build_day_slots(plan, self.offset_for(patient), calendar_date)
        if not slots:
            logger.debug("No tasks due for patient %s on %s", patient.id, calendar_date)
        return self._repo.insert_daily_document_if_absent(patient.id, plan.id, calendar_date, slots)
