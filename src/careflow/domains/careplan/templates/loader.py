"""Plan template loader — reads reusable plan content from YAML files."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any

import yaml

from careflow.domains.careplan.domain_logic.plan_models import PlanContent

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent


@dataclass(frozen=True)
class PlanTemplate:
    id: str
    version: str
    display_name: str
    description: str = ""
    duration_days: int = 0
    content: dict[str, Any] = field(default_factory=dict)

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "display_name": self.display_name,
            "description": self.description,
            "duration_days": self.duration_days,
            "measures": sorted(self.content),
        }

    def instantiate(self, start_date: date) -> dict[str, Any]:
        """Plan content for a plan starting on ``start_date``.

        Custom daily frequencies without a ``startDate`` are anchored at it;
        weekly rules always count weeks from the plan start.
        """
        content = copy.deepcopy(self.content)
        for item in content.values():
            if not isinstance(item, dict):
                continue
            configs = [item] if "frequency" in item else item.values()
            for cfg in configs:
                frequency = cfg.get("frequency") if isinstance(cfg, dict) else None
                if not isinstance(frequency, dict) or frequency.get("type") != "custom":
                    continue
                value = frequency.setdefault("value", {})
                if str(value.get("frequency", "")).lower() == "weekly":
                    continue
                value.setdefault("startDate", start_date.isoformat())
        return content


def load_template_file(path: Path) -> PlanTemplate:
    """Parse one YAML file into a PlanTemplate.

    Raises:
        PlanContentError: If the template's content does not parse.
    """
    with open(path) as f:
        data: dict[str, Any] = yaml.safe_load(f)

    content = data.get("content") or {}
    PlanContent.from_dict(content)
    return PlanTemplate(
        id=data["id"],
        version=str(data.get("version", "1.0.0")),
        display_name=data.get("display_name", data["id"]),
        description=(data.get("description") or "").strip(),
        duration_days=int(data.get("duration_days", 0)),
        content=content,
    )


def load_template_directory(directory: str | Path = TEMPLATE_DIR) -> dict[str, PlanTemplate]:
    """Load every ``*.yaml`` template in ``directory`` keyed by id.

    Files starting with an underscore are skipped; a file that fails to
    parse is logged and skipped.
    """
    directory = Path(directory)
    if not directory.is_dir():
        logger.warning("Template directory does not exist: %s", directory)
        return {}

    templates: dict[str, PlanTemplate] = {}
    for path in sorted(directory.glob("*.yaml")):
        if path.name.startswith("_"):
            continue
        try:
            template = load_template_file(path)
        except Exception:
            logger.exception("Failed to load plan template from %s", path)
            continue
        templates[template.id] = template
        logger.debug("Loaded plan template: %s (v%s)", template.id, template.version)
    return templates


def list_plan_templates(directory: str | Path = TEMPLATE_DIR) -> list[dict[str, Any]]:
    return [t.summary() for t in load_template_directory(directory).values()]


def load_plan_template(name: str, directory: str | Path = TEMPLATE_DIR) -> PlanTemplate | None:
    return load_template_directory(directory).get(name)
