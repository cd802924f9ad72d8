"""Tests for the YAML plan template loader."""

from __future__ import annotations

from datetime import date

import pytest

from careflow.domains.careplan.domain_logic.plan_models import PlanContent, PlanContentError
from careflow.domains.careplan.templates.loader import (
    list_plan_templates,
    load_plan_template,
    load_template_directory,
    load_template_file,
)

_VALID = """\
id: demo
display_name: Demo plan
duration_days: 14
content:
  activity:
    frequency:
      type: preset
      value:
        hours: ["09:00"]
"""


class TestBundledTemplates:
    def test_bundled_ids(self):
        assert set(load_template_directory()) >= {"heart_failure", "hypertension"}

    def test_summaries(self):
        summaries = {s["id"]: s for s in list_plan_templates()}
        assert summaries["hypertension"]["duration_days"] == 28
        assert summaries["hypertension"]["measures"] == ["activity", "diet", "medication", "vital"]

    def test_bundled_content_parses(self):
        template = load_plan_template("heart_failure")
        content = PlanContent.from_dict(template.content)
        assert content.config("vital", "weight").alerts.gain_threshold == 3

    def test_unknown_template(self):
        assert load_plan_template("nonexistent") is None


class TestInstantiate:
    def test_custom_frequency_anchored_at_start(self):
        content = load_plan_template("hypertension").instantiate(date(2024, 3, 4))
        assert content["diet"]["sodium"]["frequency"]["value"]["startDate"] == "2024-03-04"

    def test_preset_untouched(self):
        content = load_plan_template("hypertension").instantiate(date(2024, 3, 4))
        assert "startDate" not in content["activity"]["frequency"]["value"]

    def test_template_not_mutated(self):
        template = load_plan_template("hypertension")
        template.instantiate(date(2024, 3, 4))
        assert "startDate" not in template.content["diet"]["sodium"]["frequency"]["value"]

    def test_weekly_rule_left_unanchored(self):
        content = load_plan_template("heart_failure").instantiate(date(2024, 3, 4))
        assert "startDate" not in content["wellness"]["breathing"]["frequency"]["value"]


class TestLoadFromDirectory:
    def test_valid_file(self, tmp_path):
        path = tmp_path / "demo.yaml"
        path.write_text(_VALID)
        template = load_template_file(path)
        assert template.id == "demo"
        assert template.version == "1.0.0"
        assert template.duration_days == 14

    def test_invalid_content_raises(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("id: bad\ncontent:\n  exercise: {}\n")
        with pytest.raises(PlanContentError):
            load_template_file(path)

    def test_directory_skips_underscore_and_broken(self, tmp_path):
        (tmp_path / "demo.yaml").write_text(_VALID)
        (tmp_path / "_draft.yaml").write_text(_VALID.replace("demo", "draft"))
        (tmp_path / "broken.yaml").write_text("id: broken\ncontent:\n  exercise: {}\n")
        assert list(load_template_directory(tmp_path)) == ["demo"]

    def test_missing_directory(self, tmp_path):
        assert load_template_directory(tmp_path / "nowhere") == {}
