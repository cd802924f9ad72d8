"""Data models for the care plan persistence layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any


def _iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class PatientRecord:
    """A patient's enrollment record: timezone and rolling progress counters."""

    id: str
    timezone_offset: int | None = None  # minutes east of UTC
    progress: dict[str, Any] = field(default_factory=dict)
    updated_at: str | None = None


@dataclass
class StoredPlan:
    """A signed care plan version.

    ``content`` is kept exactly as signed; the domain layer parses it once
    into an immutable ``PlanContent``.
    """

    id: str
    patient_id: str
    content: dict[str, Any]
    start_date: date
    duration_days: int = 0
    care_team: list[str] = field(default_factory=list)
    is_active: bool = False
    sign_date: datetime | None = None
    creator_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "creator_id": self.creator_id,
            "content": self.content,
            "care_team": list(self.care_team),
            "start_date": self.start_date.isoformat(),
            "duration_days": self.duration_days,
            "is_active": self.is_active,
            "sign_date": _iso(self.sign_date),
        }


@dataclass
class ResponseSlot:
    """One expected task instance on a patient's day.

    ``is_positive`` is tri-state: ``None`` until an answer could be
    evaluated, then ``True``/``False``.
    """

    measure: str
    time: datetime  # absolute instant, timezone-aware
    subtype: str | None = None
    response: dict[str, Any] | None = None  # encrypted at rest
    is_positive: bool | None = None
    alerts_triggered: bool = False
    answered_at: datetime | None = None
    id: str = ""
    document_id: str = ""

    @property
    def is_answered(self) -> bool:
        return self.answered_at is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "measure": self.measure,
            "subtype": self.subtype,
            "time": _iso(self.time),
            "response": self.response,
            "is_positive": self.is_positive,
            "alerts_triggered": self.alerts_triggered,
            "answered_at": _iso(self.answered_at),
        }


@dataclass
class DailyResponseDocument:
    """The fixed set of slots for one (patient, plan, calendar day)."""

    id: str
    patient_id: str
    plan_id: str
    calendar_date: date
    slots: list[ResponseSlot] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "plan_id": self.plan_id,
            "date": self.calendar_date.isoformat(),
            "slots": [slot.to_dict() for slot in self.slots],
        }


@dataclass
class Alert:
    """A raised threshold crossing. Only ``seen_by`` ever changes."""

    id: str
    patient_id: str
    plan_id: str
    measure: str
    trigger_time: datetime
    policy: dict[str, Any]
    care_team_ids: list[str] = field(default_factory=list)
    subtype: str | None = None
    seen_by: set[str] = field(default_factory=set)
    created_at: str = ""

    def to_dict(self, viewer: str | None = None) -> dict[str, Any]:
        data = {
            "id": self.id,
            "patient_id": self.patient_id,
            "plan_id": self.plan_id,
            "measure": self.measure,
            "subtype": self.subtype,
            "trigger_time": _iso(self.trigger_time),
            "policy": self.policy,
            "care_team_ids": list(self.care_team_ids),
            "created_at": self.created_at,
        }
        if viewer is not None:
            data["is_seen"] = viewer in self.seen_by
        return data
