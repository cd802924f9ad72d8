"""Tests for daily slot materialization and the response ledger."""

from __future__ import annotations

from datetime import date, datetime, timezone

import pytest
from conftest import make_plan_content

from careflow.core.storage.models import StoredPlan
from careflow.domains.careplan.domain_logic.ledger import DailyResponseLedger, build_day_slots
from careflow.domains.careplan.domain_logic.plan_models import CarePlan

DAY = date(2024, 3, 4)


def _plan(content=None, plan_id: str = "plan-1") -> CarePlan:
    return CarePlan.from_stored(
        StoredPlan(
            id=plan_id,
            patient_id="p1",
            content=make_plan_content() if content is None else content,
            start_date=DAY,
            is_active=True,
        )
    )


class TestBuildDaySlots:
    def test_category_then_time_order(self):
        slots = build_day_slots(_plan(), 0, DAY)
        assert [(s.measure, s.subtype, s.time.hour) for s in slots] == [
            ("medication", None, 8),
            ("medication", None, 20),
            ("vital", "weight", 7),
            ("vital", "heartRate", 8),
            ("vital", "bloodPressure", 8),
            ("vital", "bloodOxygen", 8),
            ("vital", "glucose", 8),
            ("activity", None, 17),
            ("wellness", "mood", 20),
        ]

    def test_slot_times_use_patient_offset(self):
        slots = build_day_slots(_plan(), -300, DAY)
        assert slots[0].time.astimezone(timezone.utc) == datetime(2024, 3, 4, 13, tzinfo=timezone.utc)

    def test_slots_start_unanswered(self):
        slot = build_day_slots(_plan(), 0, DAY)[0]
        assert slot.response is None
        assert slot.is_positive is None
        assert not slot.alerts_triggered

    def test_custom_frequency_skips_days(self):
        content = {
            "diet": {
                "sodium": {
                    "frequency": {
                        "type": "custom",
                        "value": {"frequency": "Daily", "startDate": "2024-03-04",
                                  "everyDays": 2, "dailyTimes": ["19:00"]},
                    }
                }
            }
        }
        assert len(build_day_slots(_plan(content), 0, DAY)) == 1
        assert build_day_slots(_plan(content), 0, date(2024, 3, 5)) == []

    def test_empty_plan(self):
        assert build_day_slots(_plan({}), 0, DAY) == []


@pytest.fixture
def ledger(repository):
    return DailyResponseLedger(repository, default_offset=-300)


@pytest.fixture
def plan(repository):
    repository.ensure_patient("p1")
    care_plan = _plan()
    repository.save_plan(care_plan.stored)
    return care_plan


class TestDailyResponseLedger:
    def test_offset_falls_back_to_default(self, ledger, repository):
        assert ledger.offset_for(repository.ensure_patient("p1")) == -300
        assert ledger.offset_for(repository.ensure_patient("p1", timezone_offset=60)) == 60

    def test_get_or_create_is_stable(self, ledger, repository, plan):
        patient = repository.ensure_patient("p1", timezone_offset=0)
        first = ledger.get_or_create(patient, DAY, plan)
        second = ledger.get_or_create(patient, DAY, plan)
        assert first.id == second.id
        assert len(second.slots) == 9

    def test_slot_set_is_frozen_at_first_touch(self, ledger, repository, plan):
        patient = repository.ensure_patient("p1", timezone_offset=0)
        ledger.get_or_create(patient, DAY, plan)

        changed = _plan({"activity": make_plan_content()["activity"]}, plan_id=plan.id)
        doc = ledger.get_or_create(patient, DAY, changed)
        assert len(doc.slots) == 9

    def test_empty_day_still_gets_a_document(self, ledger, repository):
        repository.ensure_patient("p1")
        empty = _plan({}, plan_id="plan-empty")
        repository.save_plan(empty.stored)
        doc = ledger.get_or_create(repository.get_patient("p1"), DAY, empty)
        assert doc.slots == []
        assert repository.find_daily_document("p1", "plan-empty", DAY) is not None
