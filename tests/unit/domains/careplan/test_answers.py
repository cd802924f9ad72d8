"""Tests for submission parsing."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from careflow.domains.careplan.domain_logic.answers import (
    CompletionAnswer,
    ScaleAnswer,
    Submission,
    SubmissionError,
    VitalAnswer,
    VitalReading,
)

WHEN = "2024-03-04T08:00:00Z"


class TestFromDict:
    def test_medication(self):
        sub = Submission.from_dict("medication", WHEN, {"didTake": True})
        assert sub.answer == CompletionAnswer(True)
        assert sub.time == datetime(2024, 3, 4, 8, tzinfo=timezone.utc)
        assert sub.subtypes() == set()

    def test_activity_accepts_did_complete(self):
        sub = Submission.from_dict("activity", WHEN, {"didComplete": 0})
        assert sub.answer == CompletionAnswer(False)

    def test_completion_needs_flag(self):
        with pytest.raises(SubmissionError, match="didTake"):
            Submission.from_dict("medication", WHEN, {"taken": True})

    def test_vital_suffix_form(self):
        sub = Submission.from_dict("vital", WHEN, {"bloodPressure": 150, "bloodPressure2": "95"})
        assert sub.answer == VitalAnswer({"bloodPressure": VitalReading(150.0, 95.0)})

    def test_vital_nested_form(self):
        sub = Submission.from_dict("vital", WHEN, {"heartRate": {"value": 95, "value2": 60}, "weight": 180})
        assert sub.answer.readings["heartRate"] == VitalReading(95.0, 60.0)
        assert sub.answer.readings["weight"] == VitalReading(180.0)
        assert sub.subtypes() == {"heartRate", "weight"}

    def test_vital_skips_missing_values(self):
        sub = Submission.from_dict("vital", WHEN, {"glucose": None, "weight": {"value2": 3}})
        assert sub.answer.readings == {}

    def test_scale(self):
        sub = Submission.from_dict("wellness", WHEN, {"mood": 4, "sleep": "2"}, subtype="mood")
        assert sub.answer == ScaleAnswer({"mood": 4.0, "sleep": 2.0})
        assert sub.subtypes() == {"mood"}

    def test_naive_time_is_utc(self):
        sub = Submission.from_dict("diet", "2024-03-04T08:00:00", {"salt": 3})
        assert sub.time.tzinfo is not None
        assert sub.time.utcoffset().total_seconds() == 0

    def test_offset_time_kept(self):
        sub = Submission.from_dict("diet", "2024-03-04T08:00:00-05:00", {"salt": 3})
        assert sub.time == datetime(2024, 3, 4, 13, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "measure, time, response, message",
        [
            ("exercise", WHEN, {}, "Unknown measure"),
            ("vital", "yesterday", {"weight": 1}, "Invalid time"),
            ("vital", WHEN, {"weight": "heavy"}, "Not a number"),
            ("vital", WHEN, ["weight"], "must be a mapping"),
        ],
    )
    def test_rejected(self, measure, time, response, message):
        with pytest.raises(SubmissionError, match=message):
            Submission.from_dict(measure, time, response)

    def test_submission_error_is_value_error(self):
        assert issubclass(SubmissionError, ValueError)
