"""MCP tools for reading and acknowledging care plan alerts."""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from fastmcp import Context, FastMCP

if TYPE_CHECKING:
    from careflow.core.audit.logger import AuditLogger
    from careflow.domains.careplan.domain_logic.service import CarePlanService

logger = logging.getLogger(__name__)


def _parse_since(raw: str) -> datetime | None:
    if not raw:
        return None
    value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def register_alert_tools(
    mcp: FastMCP,
    service: CarePlanService,
    audit_logger: AuditLogger | None = None,
) -> None:
    """Register alert listing and acknowledgement tools on the MCP server."""

    @mcp.tool
    async def list_alerts(
        ctx: Context,
        viewer: str,
        patient_id: str = "",
        since: str = "",
    ) -> str:
        """List alerts visible to a user, newest first.

        Patients see their own alerts; providers see alerts for plans whose
        care team they are on.

        Args:
            viewer: The requesting user.
            patient_id: Restrict to one patient.
            since: Only alerts triggered after this instant (ISO 8601).
        """
        start_time = time.monotonic()
        try:
            since_dt = _parse_since(since)
        except ValueError:
            return json.dumps({"status": "error", "message": f"Invalid timestamp: {since}"})
        alerts = service.list_alerts(viewer, patient_id or None, since_dt)

        if audit_logger is not None:
            audit_logger.log_tool_call(
                "list_alerts",
                {"viewer": viewer, "patient_id": patient_id, "since": since},
                duration_ms=(time.monotonic() - start_time) * 1000,
                metadata={"count": len(alerts)},
            )
        return json.dumps({"status": "ok", "count": len(alerts), "alerts": alerts}, indent=2)

    @mcp.tool
    async def provider_alert_summary(ctx: Context, viewer: str) -> str:
        """Per-patient alert counts (total and unseen) for a provider.

        Args:
            viewer: The provider.
        """
        patients = service.provider_alert_summary(viewer)
        return json.dumps({
            "status": "ok",
            "viewer": viewer,
            "unseen_total": sum(p["unseen_count"] for p in patients),
            "patients": patients,
        }, indent=2)

    @mcp.tool
    async def mark_alert_seen(
        ctx: Context,
        alert_id: str,
        viewer: str,
        patient_id: str = "",
    ) -> str:
        """Acknowledge an alert and every earlier alert of the same measure.

        Args:
            alert_id: The alert to acknowledge.
            viewer: The acknowledging user (the patient or a care team member).
            patient_id: The alert's patient, checked when given.
        """
        start_time = time.monotonic()
        marked = service.mark_alert_seen(alert_id, viewer, patient_id or None)

        if audit_logger is not None:
            audit_logger.log_tool_call(
                "mark_alert_seen",
                {"alert_id": alert_id, "viewer": viewer},
                duration_ms=(time.monotonic() - start_time) * 1000,
                status="success" if marked is not None else "failure",
            )
        if marked is None:
            return json.dumps({"status": "not_found", "alert_id": alert_id})
        return json.dumps({"status": "ok", "alert_id": alert_id, "marked": marked})
