"""Tests for the AuditLogger and related utilities."""

from __future__ import annotations

import json

import pytest

from careflow.core.audit.logger import AuditEvent, AuditLogger, _hash_input
from careflow.core.storage.database import CarePlanDatabase


# ---------------------------------------------------------------------------
# _hash_input tests
# ---------------------------------------------------------------------------

class TestHashInput:
    def test_hashes_dict(self):
        h = _hash_input({"patient_id": "p1"})
        assert isinstance(h, str)
        assert len(h) == 64  # SHA-256 hex

    def test_deterministic(self):
        data = {"a": 1, "b": 2}
        assert _hash_input(data) == _hash_input(data)

    def test_order_independent(self):
        assert _hash_input({"z": 1, "a": 2}) == _hash_input({"a": 2, "z": 1})

    def test_different_inputs_differ(self):
        assert _hash_input({"value": 120}) != _hash_input({"value": 121})


# ---------------------------------------------------------------------------
# AuditLogger.log_event / log_tool_call / log_domain_event
# ---------------------------------------------------------------------------

class TestLogEvent:
    def test_log_event_returns_uuid(self, audit_logger):
        eid = audit_logger.log_event(AuditEvent(action="tool_invocation", tool_name="get_progress"))
        assert len(eid) == 36

    def test_tool_input_is_hashed_not_stored(self, audit_logger):
        audit_logger.log_tool_call(
            "submit_response",
            {"patient_id": "p1", "response": {"value": 187}},
            plan_id="plan-1",
            duration_ms=4.2,
        )
        event = audit_logger.get_events(tool_name="submit_response")[0]
        assert event["tool_input_hash"] == _hash_input(
            {"patient_id": "p1", "response": {"value": 187}}
        )
        assert "187" not in json.dumps(event)
        assert event["plan_id"] == "plan-1"
        assert event["status"] == "success"

    def test_failure_recorded(self, audit_logger):
        audit_logger.log_tool_call("sign_care_plan", {}, status="failure", error_type="PlanContentError")
        event = audit_logger.get_events(action="tool_invocation")[0]
        assert event["status"] == "failure"
        assert event["error_type"] == "PlanContentError"
        assert event["tool_input_hash"] is None

    def test_domain_event_metadata(self, audit_logger):
        audit_logger.log_domain_event(
            "alert_created", plan_id="plan-1", metadata={"measure": "vital", "subtype": "heartRate"}
        )
        event = audit_logger.get_events(action="alert_created")[0]
        assert json.loads(event["metadata_json"]) == {"measure": "vital", "subtype": "heartRate"}
        assert event["tool_name"] is None


class TestQueries:
    def test_filters_and_counts(self, audit_logger):
        audit_logger.log_domain_event("plan_signed", plan_id="plan-1")
        audit_logger.log_domain_event("plan_signed", plan_id="plan-2")
        audit_logger.log_tool_call("get_progress", {"patient_id": "p1"})

        assert audit_logger.count_events() == 3
        assert audit_logger.count_events(action="plan_signed") == 2
        assert len(audit_logger.get_events(plan_id="plan-2")) == 1

    def test_limit(self, audit_logger):
        for _ in range(5):
            audit_logger.log_domain_event("response_recorded")
        assert len(audit_logger.get_events(limit=3)) == 3


class TestBestEffort:
    def test_closed_database_drops_event(self):
        db = CarePlanDatabase(":memory:")
        db.initialize()
        audit = AuditLogger(db)
        db.close()
        assert audit.log_domain_event("plan_signed") == ""

    def test_write_failure_does_not_raise(self, audit_logger, careplan_db, monkeypatch):
        def _broken():
            raise RuntimeError("disk gone")

        monkeypatch.setattr(careplan_db, "transaction", _broken)
        assert audit_logger.log_tool_call("list_alerts", {"viewer": "dr-a"}) == ""


@pytest.mark.parametrize(
    "action",
    ["plan_signed", "response_recorded", "alert_created", "alert_seen"],
)
def test_domain_actions_round_trip(audit_logger, action):
    audit_logger.log_domain_event(action, plan_id="plan-1")
    assert audit_logger.get_events(action=action)[0]["action"] == action
