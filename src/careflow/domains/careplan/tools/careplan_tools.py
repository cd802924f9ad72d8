"""MCP tools for signing care plans and recording patient answers.

Every tool returns a JSON string with a ``status`` field and is recorded
in the audit trail by name and input hash only.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import date
from typing import TYPE_CHECKING, Any

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from careflow.core.audit.logger import AuditLogger
    from careflow.domains.careplan.domain_logic.service import CarePlanService

from careflow.domains.careplan.domain_logic.answers import Submission, SubmissionError
from careflow.domains.careplan.domain_logic.plan_models import PlanContentError, parse_date
from careflow.domains.careplan.templates.loader import list_plan_templates

logger = logging.getLogger(__name__)


def _plan_summary(plan: Any) -> dict[str, Any]:
    return {
        "plan_id": plan.id,
        "patient_id": plan.patient_id,
        "start_date": plan.start_date.isoformat(),
        "duration_days": plan.duration_days,
        "care_team": plan.care_team,
        "measures": {m: [cfg.subtype for cfg in cfgs] for m, cfgs in plan.content.measures.items()},
    }


def register_careplan_tools(
    mcp: FastMCP,
    service: CarePlanService,
    audit_logger: AuditLogger | None = None,
) -> None:
    """Register care plan and response tools on the MCP server."""

    def _audit(
        tool_name: str,
        tool_input: dict[str, Any],
        start_time: float,
        *,
        plan_id: str | None = None,
        error: Exception | None = None,
    ) -> None:
        if audit_logger is None:
            return
        audit_logger.log_tool_call(
            tool_name,
            tool_input,
            plan_id=plan_id,
            duration_ms=(time.monotonic() - start_time) * 1000,
            status="failure" if error is not None else "success",
            error_type=type(error).__name__ if error is not None else None,
        )

    def _day(patient_id: str, raw: str) -> date | None:
        if not raw:
            return service.local_date(patient_id)
        return parse_date(raw)

    @mcp.tool
    async def sign_care_plan(
        ctx: Context,
        patient_id: str,
        content: dict,
        start_date: str,
        duration_days: int = 0,
        care_team: list[str] | None = None,
        creator_id: str = "",
        timezone_offset: int | None = None,
    ) -> str:
        """Sign a new care plan for a patient, replacing their active plan.

        Args:
            patient_id: The patient the plan is for.
            content: Plan content keyed by category (medication, vital, activity, diet, wellness).
            start_date: First day of the plan (ISO 8601, e.g. '2024-03-04').
            duration_days: Length of the plan in days (0 = open-ended).
            care_team: User IDs of the providers who receive alerts.
            creator_id: The signing provider.
            timezone_offset: Patient's UTC offset in minutes east of UTC (e.g. -300).
        """
        start_time = time.monotonic()
        tool_input = {"patient_id": patient_id, "start_date": start_date}
        if timezone_offset is not None:
            service.register_patient(patient_id, timezone_offset)
        try:
            plan = service.sign_plan(
                patient_id,
                content,
                start_date,
                duration_days=duration_days,
                care_team=care_team or [],
                creator_id=creator_id or None,
            )
        except PlanContentError as exc:
            _audit("sign_care_plan", tool_input, start_time, error=exc)
            return json.dumps({"status": "error", "message": str(exc)})
        _audit("sign_care_plan", tool_input, start_time, plan_id=plan.id)
        return json.dumps({"status": "saved", **_plan_summary(plan)})

    @mcp.tool
    async def sign_care_plan_from_template(
        ctx: Context,
        patient_id: str,
        template: str,
        start_date: str,
        care_team: list[str] | None = None,
        duration_days: int | None = None,
        creator_id: str = "",
    ) -> str:
        """Sign a care plan built from a named template.

        Args:
            patient_id: The patient the plan is for.
            template: Template ID (see list_care_plan_templates).
            start_date: First day of the plan (ISO 8601).
            care_team: User IDs of the providers who receive alerts.
            duration_days: Override the template's duration.
            creator_id: The signing provider.
        """
        start_time = time.monotonic()
        tool_input = {"patient_id": patient_id, "template": template, "start_date": start_date}
        try:
            plan = service.sign_plan_from_template(
                patient_id,
                template,
                start_date,
                duration_days=duration_days,
                care_team=care_team or [],
                creator_id=creator_id or None,
            )
        except PlanContentError as exc:
            _audit("sign_care_plan_from_template", tool_input, start_time, error=exc)
            return json.dumps({"status": "error", "message": str(exc)})
        if plan is None:
            _audit("sign_care_plan_from_template", tool_input, start_time)
            return json.dumps({"status": "not_found", "message": f"Unknown template: {template}"})
        _audit("sign_care_plan_from_template", tool_input, start_time, plan_id=plan.id)
        return json.dumps({"status": "saved", "template": template, **_plan_summary(plan)})

    @mcp.tool
    async def list_care_plan_templates(ctx: Context) -> str:
        """List the plan templates a provider can sign."""
        templates = list_plan_templates()
        return json.dumps({"status": "ok", "count": len(templates), "templates": templates}, indent=2)

    @mcp.tool
    async def get_active_care_plan(ctx: Context, patient_id: str) -> str:
        """Show the patient's currently active care plan.

        Args:
            patient_id: The patient to look up.
        """
        plan = service.get_active_plan(patient_id)
        if plan is None:
            return json.dumps({"status": "no_active_plan", "patient_id": patient_id})
        return json.dumps({"status": "ok", **_plan_summary(plan), "content": plan.stored.content})

    @mcp.tool
    async def get_daily_responses(ctx: Context, patient_id: str, day: str = "") -> str:
        """Show the tasks expected on a day and the answers recorded so far.

        Args:
            patient_id: The patient to look up.
            day: Calendar date (ISO 8601). Defaults to today in the patient's timezone.
        """
        start_time = time.monotonic()
        calendar_date = _day(patient_id, day)
        if calendar_date is None:
            return json.dumps({"status": "error", "message": f"Invalid date: {day}"})
        document = service.get_daily_responses(patient_id, calendar_date)
        _audit("get_daily_responses", {"patient_id": patient_id, "day": day}, start_time,
               plan_id=document.plan_id if document else None)
        if document is None:
            return json.dumps({"status": "no_active_plan", "patient_id": patient_id})
        return json.dumps({"status": "ok", **document.to_dict()})

    @mcp.tool
    async def submit_response(
        ctx: Context,
        patient_id: str,
        measure: str,
        slot_time: str,
        response: dict,
        subtype: str = "",
        day: str = "",
    ) -> str:
        """Record a patient's answer for a scheduled task.

        Args:
            patient_id: The answering patient.
            measure: Category: medication, vital, activity, diet or wellness.
            slot_time: The slot's scheduled instant (ISO 8601 with offset).
            response: The answer, e.g. {"didTake": true}, {"heartRate": 72},
                {"bloodPressure": 130, "bloodPressure2": 85} or {"mood": 4}.
            subtype: Restrict the answer to one subtype.
            day: Calendar date of the slot. Defaults to the date of slot_time in the
                patient's timezone.
        """
        start_time = time.monotonic()
        tool_input = {"patient_id": patient_id, "measure": measure, "slot_time": slot_time}
        try:
            submission = Submission.from_dict(measure, slot_time, response, subtype or None)
        except SubmissionError as exc:
            _audit("submit_response", tool_input, start_time, error=exc)
            return json.dumps({"status": "error", "message": str(exc)})
        calendar_date = parse_date(day) if day else service.local_date(patient_id, submission.time)
        if calendar_date is None:
            return json.dumps({"status": "error", "message": f"Invalid date: {day}"})

        outcome = service.submit_response(patient_id, calendar_date, submission)
        if outcome is None:
            _audit("submit_response", tool_input, start_time)
            return json.dumps({"status": "no_active_plan", "patient_id": patient_id})
        _audit("submit_response", tool_input, start_time, plan_id=outcome.document.plan_id)
        return json.dumps({
            "status": "saved",
            "document_id": outcome.document.id,
            "document": outcome.document.to_dict(),
            "updated": [
                {"subtype": key, "count": d.count, "value": d.value}
                for key, d in outcome.deltas.items()
            ],
            "alerts_created": [alert.id for alert in outcome.alerts],
        })

    @mcp.tool
    async def get_progress(ctx: Context, patient_id: str) -> str:
        """Show the patient's answered and positive counts per measure.

        Args:
            patient_id: The patient to look up.
        """
        progress = service.get_progress(patient_id)
        if progress is None:
            return json.dumps({"status": "not_found", "patient_id": patient_id})
        return json.dumps({"status": "ok", "patient_id": patient_id, "progress": progress}, indent=2)