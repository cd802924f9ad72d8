"""Tests for alert policies and seen tracking."""

from __future__ import annotations

from datetime import date, datetime, timezone

import pytest
from conftest import make_plan_content

from careflow.core.notify.notifier import ALERTS_UPDATE
from careflow.domains.careplan.domain_logic.alerts import weight_transitioned_negative
from careflow.domains.careplan.domain_logic.answers import Submission
from careflow.domains.careplan.domain_logic.recorder import ProgressDelta

PATIENT = "patient-1"


def _submit(service, day: int, measure: str, hour: int, response: dict, patient: str = PATIENT):
    when = datetime(2024, 3, day, hour, tzinfo=timezone.utc)
    return service.submit_response(
        patient, date(2024, 3, day), Submission.from_dict(measure, when, response)
    )


def _heart_rate(service, day: int, bpm: int):
    return _submit(service, day, "vital", 8, {"heartRate": bpm})


class TestWeightTransition:
    @pytest.mark.parametrize(
        "delta, expected",
        [
            (ProgressDelta(1, 0), True),
            (ProgressDelta(0, -1), True),
            (ProgressDelta(1, 1), False),
            (ProgressDelta(0, 1), False),
            (ProgressDelta(0, 0), False),
        ],
    )
    def test_transition(self, delta, expected):
        assert weight_transitioned_negative(delta) is expected


class TestConsecutivePolicy:
    def test_third_negative_in_a_row_alerts(self, service, signed_plan):
        assert _heart_rate(service, 4, 120).alerts == []
        assert _heart_rate(service, 5, 120).alerts == []
        [alert] = _heart_rate(service, 6, 120).alerts
        assert alert.subtype == "heartRate"
        assert alert.trigger_time == datetime(2024, 3, 6, 8, tzinfo=timezone.utc)
        assert alert.policy == {"triggerType": "consecutive", "triggerValue": 3}

    def test_count_restarts_after_alert(self, service, signed_plan):
        for day in (4, 5, 6):
            _heart_rate(service, day, 120)
        assert _heart_rate(service, 7, 120).alerts == []

    def test_positive_answer_resets_count(self, service, signed_plan):
        _heart_rate(service, 4, 120)
        _heart_rate(service, 5, 120)
        _heart_rate(service, 6, 80)
        assert _heart_rate(service, 7, 120).alerts == []
        assert _heart_rate(service, 8, 120).alerts == []
        assert len(_heart_rate(service, 9, 120).alerts) == 1

    def test_triggering_slot_is_flagged(self, service, signed_plan, repository):
        for day in (4, 5, 6):
            _heart_rate(service, day, 120)
        doc = repository.find_daily_document(PATIENT, signed_plan.id, date(2024, 3, 6))
        flagged = [s for s in doc.slots if s.alerts_triggered]
        assert [(s.measure, s.subtype) for s in flagged] == [("vital", "heartRate")]


class TestTotalPolicy:
    def test_positive_does_not_reset_total(self, service, signed_plan):
        assert _submit(service, 4, "medication", 8, {"didTake": False}).alerts == []
        assert _submit(service, 4, "medication", 20, {"didTake": True}).alerts == []
        [alert] = _submit(service, 5, "medication", 8, {"didTake": False}).alerts
        assert alert.measure == "medication"
        assert alert.subtype is None
        assert alert.policy == {"triggerType": "total", "triggerValue": 2}


class TestWeightPolicy:
    def test_gain_over_base_alerts_immediately(self, service, signed_plan):
        [alert] = _submit(service, 4, "vital", 7, {"weight": 156}).alerts
        assert alert.subtype == "weight"
        assert alert.policy == {"periodValue": 7, "baseWeight": 150.0, "gainThreshold": 5.0}

    def test_within_gain_no_alert(self, service, signed_plan):
        assert _submit(service, 4, "vital", 7, {"weight": 154}).alerts == []

    def test_revision_to_negative_alerts(self, service, signed_plan):
        assert _submit(service, 4, "vital", 7, {"weight": 154}).alerts == []
        assert len(_submit(service, 4, "vital", 7, {"weight": 156}).alerts) == 1

    def test_unchanged_negative_does_not_realert(self, service, signed_plan):
        _submit(service, 4, "vital", 7, {"weight": 156})
        assert _submit(service, 4, "vital", 7, {"weight": 157}).alerts == []

    def test_gradual_gain_stays_quiet(self, service, signed_plan):
        assert _submit(service, 4, "vital", 7, {"weight": 152}).alerts == []
        assert _submit(service, 5, "vital", 7, {"weight": 156}).alerts == []
        assert _submit(service, 6, "vital", 7, {"weight": 158}).alerts == []


class TestNotifications:
    def test_care_team_and_patient_notified(self, service, signed_plan, notifier):
        [alert] = _submit(service, 4, "vital", 7, {"weight": 160}).alerts
        assert notifier.recipients(ALERTS_UPDATE) == ["dr-a", "dr-b", PATIENT]
        payload = [p for _, event, p in notifier.sent if event == ALERTS_UPDATE][0]
        assert payload["alert_id"] == alert.id
        assert payload["subtype"] == "weight"

    def test_alert_without_care_team(self, service, notifier):
        service.sign_plan("patient-2", make_plan_content(), "2024-03-04")
        [alert] = _submit(service, 4, "vital", 7, {"weight": 160}, patient="patient-2").alerts
        assert alert.care_team_ids == []
        assert notifier.recipients(ALERTS_UPDATE) == ["patient-2"]

    def test_no_policy_no_alert(self, service, signed_plan, notifier):
        for day in (4, 5, 6, 7):
            assert _submit(service, day, "vital", 8, {"bloodOxygen": 80}).alerts == []
        assert notifier.recipients(ALERTS_UPDATE) == []


class TestMarkSeen:
    @pytest.fixture
    def weight_alert(self, service, signed_plan):
        return _submit(service, 4, "vital", 7, {"weight": 160}).alerts[0]

    def test_care_team_member_marks(self, service, weight_alert, repository):
        assert service.alert_engine.mark_seen(weight_alert.id, "dr-a") == 1
        assert repository.get_alert(weight_alert.id).seen_by == {"dr-a"}

    def test_patient_marks_own_alert(self, service, weight_alert):
        assert service.alert_engine.mark_seen(weight_alert.id, PATIENT, PATIENT) == 1

    def test_earlier_alerts_of_same_measure_are_marked(self, service, weight_alert):
        later = _submit(service, 5, "vital", 7, {"weight": 165}).alerts[0]
        assert service.alert_engine.mark_seen(later.id, "dr-b") == 2

    @pytest.mark.parametrize(
        "alert_id, viewer, patient_id",
        [
            ("missing", "dr-a", None),
            (None, "dr-z", None),
            (None, "dr-a", "patient-9"),
        ],
    )
    def test_refused(self, service, weight_alert, alert_id, viewer, patient_id):
        assert service.alert_engine.mark_seen(alert_id or weight_alert.id, viewer, patient_id) is None
