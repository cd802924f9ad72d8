"""Care plan service — wires the engine components into units of work.

Every patient-facing operation runs here:

1. **Sign** — persist a plan version, supersede the previous active plan,
   restart the reminder chain.
2. **Submit** — find-or-create the day's ledger document, record the
   answer, fold the delta into progress (one transaction), then evaluate
   alert policies and notify (after commit).
3. **Read** — active plan, daily documents, progress, alerts.
4. **Remind** — the ``careplan_task_reminder`` job handler.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from careflow.core.audit.logger import AuditLogger
from careflow.core.jobs.queue import Clock, InMemoryJobQueue, JobQueue, utc_now
from careflow.core.notify.notifier import (
    PLAN_SIGNED,
    TASK_DUE,
    LoggingNotifier,
    Notifier,
    notify_all,
)
from careflow.core.storage.models import Alert, DailyResponseDocument, PatientRecord, StoredPlan
from careflow.core.storage.repository import CarePlanRepository
from careflow.domains.careplan.domain_logic.alerts import AlertEngine
from careflow.domains.careplan.domain_logic.answers import Submission
from careflow.domains.careplan.domain_logic.ledger import DailyResponseLedger
from careflow.domains.careplan.domain_logic.plan_models import (
    MEASURE_TYPES,
    CarePlan,
    PlanContent,
    PlanContentError,
    parse_date,
)
from careflow.domains.careplan.domain_logic.progress import ProgressAggregator
from careflow.domains.careplan.domain_logic.recorder import DeltaMap, ResponseRecorder
from careflow.domains.careplan.domain_logic.recurrence import to_local
from careflow.domains.careplan.domain_logic.reminders import TASK_REMINDER, ReminderScheduler
from careflow.domains.careplan.templates.loader import load_plan_template

logger = logging.getLogger(__name__)


@dataclass
class SubmissionOutcome:
    document: DailyResponseDocument
    deltas: DeltaMap = field(default_factory=dict)
    alerts: list[Alert] = field(default_factory=list)


def _due_detail(tasks: list[dict[str, Any]]) -> str:
    """``"Medication, Vital"`` style summary of the categories due."""
    due = {task.get("measure") for task in tasks}
    return ", ".join(m.capitalize() for m in MEASURE_TYPES if m in due)


class CarePlanService:
    """Entry point for every care plan operation.

    Usage::

        service = CarePlanService(repository, notifier=notifier, job_queue=queue)
        plan = service.sign_plan("patient-1", content, "2024-03-04", care_team=["dr-a"])
        outcome = service.submit_response("patient-1", date(2024, 3, 4), submission)
    """

    def __init__(
        self,
        repository: CarePlanRepository,
        *,
        notifier: Notifier | None = None,
        job_queue: JobQueue | None = None,
        audit_logger: AuditLogger | None = None,
        clock: Clock = utc_now,
        default_offset: int = -300,
        reminder_grace_seconds: int = 300,
    ) -> None:
        self._repo = repository
        self._notifier = notifier or LoggingNotifier()
        self._queue = job_queue if job_queue is not None else InMemoryJobQueue(clock)
        self._audit = audit_logger
        self._clock = clock
        self._grace = timedelta(seconds=reminder_grace_seconds)
        self._plans: dict[str, CarePlan] = {}

        self.ledger = DailyResponseLedger(repository, default_offset)
        self.recorder = ResponseRecorder(repository, clock)
        self.alert_engine = AlertEngine(repository, self._notifier, clock)
        self.reminders = ReminderScheduler(self._queue, clock)

        register = getattr(self._queue, "register", None)
        if callable(register):
            register(TASK_REMINDER, self.run_task_reminder)

    @property
    def repository(self) -> CarePlanRepository:
        return self._repo

    # ------------------------------------------------------------------
    # Patients and plans
    # ------------------------------------------------------------------

    def register_patient(self, patient_id: str, timezone_offset: int | None = None) -> PatientRecord:
        return self._repo.ensure_patient(patient_id, timezone_offset)

    def sign_plan(
        self,
        patient_id: str,
        content: dict[str, Any],
        start_date: str | date,
        *,
        duration_days: int = 0,
        care_team: Iterable[str] = (),
        creator_id: str | None = None,
    ) -> CarePlan:
        """Sign a new active plan version for ``patient_id``.

        Raises:
            PlanContentError: If the content does not parse or the start
                date is missing.
        """
        parsed = PlanContent.from_dict(content)
        start = parse_date(start_date)
        if start is None:
            raise PlanContentError(f"Invalid plan start date: {start_date!r}")

        stored = StoredPlan(
            id="",
            patient_id=patient_id,
            content=content,
            start_date=start,
            duration_days=max(int(duration_days), 0),
            care_team=list(dict.fromkeys(care_team)),
            is_active=True,
            sign_date=self._clock(),
            creator_id=creator_id,
        )
        with self._repo.database.transaction():
            patient = self._repo.ensure_patient(patient_id)
            superseded = self._repo.save_plan(stored)

        plan = CarePlan(stored=stored, content=parsed)
        self._plans[plan.id] = plan
        for old_id in superseded:
            self._plans.pop(old_id, None)
            self.reminders.cancel(old_id)

        self.reminders.schedule_next(plan, self.ledger.offset_for(patient))
        notify_all(
            self._notifier,
            [patient_id, *plan.care_team],
            PLAN_SIGNED,
            {"plan_id": plan.id, "patient_id": patient_id, "start_date": start.isoformat()},
        )
        if self._audit is not None:
            self._audit.log_domain_event(
                "plan_signed",
                plan_id=plan.id,
                metadata={"measures": sorted(parsed.measures), "superseded": len(superseded)},
            )
        logger.info("Signed plan %s for patient %s", plan.id, patient_id)
        return plan

    def sign_plan_from_template(
        self,
        patient_id: str,
        template_name: str,
        start_date: str | date,
        *,
        duration_days: int | None = None,
        care_team: Iterable[str] = (),
        creator_id: str | None = None,
    ) -> CarePlan | None:
        """Sign a plan built from a YAML template. ``None`` if the template is unknown."""
        template = load_plan_template(template_name)
        if template is None:
            return None
        start = parse_date(start_date)
        if start is None:
            raise PlanContentError(f"Invalid plan start date: {start_date!r}")
        return self.sign_plan(
            patient_id,
            template.instantiate(start),
            start,
            duration_days=template.duration_days if duration_days is None else duration_days,
            care_team=care_team,
            creator_id=creator_id,
        )

    def get_active_plan(self, patient_id: str) -> CarePlan | None:
        stored = self._repo.get_active_plan(patient_id)
        return self._plan(stored) if stored is not None else None

    def resume_reminders(self) -> int:
        """Start a reminder chain for every active plan. Returns how many were scheduled."""
        count = 0
        for stored in self._repo.list_active_plans():
            plan = self._plan(stored)
            if self.reminders.schedule_next(plan, self.ledger.offset_for(self._patient(plan.patient_id))):
                count += 1
        return count

    # ------------------------------------------------------------------
    # Daily responses
    # ------------------------------------------------------------------

    def get_daily_responses(self, patient_id: str, calendar_date: date) -> DailyResponseDocument | None:
        """The day's ledger document (created on first touch), or ``None`` without an active plan."""
        plan = self.get_active_plan(patient_id)
        if plan is None:
            return None
        return self.ledger.get_or_create(self._patient(patient_id), calendar_date, plan)

    def list_daily_responses(
        self, patient_id: str, since: date | None = None, until: date | None = None
    ) -> list[DailyResponseDocument]:
        return self._repo.list_daily_documents(patient_id, since=since, until=until)

    def submit_response(
        self, patient_id: str, calendar_date: date, submission: Submission
    ) -> SubmissionOutcome | None:
        """Record one answer against the patient's active plan.

        Returns ``None`` when the patient has no active plan. A submission
        for a measure, subtype or time with no slot that day changes nothing.
        """
        with self._repo.database.transaction():
            # active plan is re-read under the write lock
            plan = self.get_active_plan(patient_id)
            if plan is None:
                return None
            patient = self._patient(patient_id)
            document = self.ledger.get_or_create(patient, calendar_date, plan)
            recorded = self.recorder.record_response(document, submission, plan)
            for slot in recorded.updated_slots:
                self._repo.update_slot(slot)
            if recorded.deltas:
                progress = self._patient(patient_id).progress
                ProgressAggregator.apply(progress, recorded.deltas, submission.measure)
                self._repo.save_progress(patient_id, progress)

        alerts = self.alert_engine.check_alerts(plan, submission, recorded.deltas)
        if alerts:
            # pick up the alertsTriggered flags just written
            document = self._repo.find_daily_document(patient_id, plan.id, calendar_date) or document

        if self._audit is not None:
            self._audit.log_domain_event(
                "response_recorded",
                plan_id=plan.id,
                metadata={"measure": submission.measure, "slots": len(recorded.updated_slots)},
            )
            for alert in alerts:
                self._audit.log_domain_event(
                    "alert_created",
                    plan_id=plan.id,
                    metadata={"measure": alert.measure, "subtype": alert.subtype},
                )
        return SubmissionOutcome(document=document, deltas=recorded.deltas, alerts=alerts)

    def local_date(self, patient_id: str, instant: datetime | None = None) -> date:
        """Calendar date of ``instant`` (default now) in the patient's timezone."""
        offset = self.ledger.offset_for(self._patient(patient_id))
        return to_local(instant or self._clock(), offset).date()

    def get_progress(self, patient_id: str) -> dict[str, Any] | None:
        record = self._repo.get_patient(patient_id)
        return record.progress if record is not None else None

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def list_alerts(
        self, viewer: str, patient_id: str | None = None, since: datetime | None = None
    ) -> list[dict[str, Any]]:
        """Alerts visible to ``viewer``, newest first, with an ``is_seen`` flag.

        A patient sees their own alerts; anyone else sees the alerts whose
        care team they are on.
        """
        if patient_id is not None and viewer == patient_id:
            alerts = self._repo.list_alerts(patient_id=patient_id, since=since)
        else:
            alerts = self._repo.list_alerts(
                patient_id=patient_id, care_team_member=viewer, since=since
            )
        return [alert.to_dict(viewer) for alert in alerts]

    def provider_alert_summary(self, viewer: str) -> list[dict[str, Any]]:
        """Per-patient alert counts for a provider, most recent trigger first."""
        summary: dict[str, dict[str, Any]] = {}
        for alert in self._repo.list_alerts(care_team_member=viewer, limit=1000):
            entry = summary.setdefault(alert.patient_id, {
                "patient_id": alert.patient_id,
                "total_count": 0,
                "unseen_count": 0,
                "latest_trigger_time": alert.trigger_time.isoformat(),
            })
            entry["total_count"] += 1
            if viewer not in alert.seen_by:
                entry["unseen_count"] += 1
        return sorted(summary.values(), key=lambda e: e["latest_trigger_time"], reverse=True)

    def mark_alert_seen(
        self, alert_id: str, viewer: str, patient_id: str | None = None
    ) -> int | None:
        """Mark an alert (and earlier ones of the same measure) seen. ``None`` if not allowed."""
        count = self.alert_engine.mark_seen(alert_id, viewer, patient_id)
        if count is not None and self._audit is not None:
            alert = self._repo.get_alert(alert_id)
            self._audit.log_domain_event(
                "alert_seen",
                plan_id=alert.plan_id if alert else None,
                metadata={"marked": count},
            )
        return count

    # ------------------------------------------------------------------
    # Reminder job
    # ------------------------------------------------------------------

    def run_task_reminder(self, payload: dict[str, Any]) -> None:
        """Handler for ``careplan_task_reminder``: notify, then enqueue the next link."""
        plan_id = payload.get("plan_id", "")
        if self.reminders.is_cancelled(plan_id):
            logger.info("Reminder chain for plan %s was cancelled", plan_id)
            return
        stored = self._repo.get_plan(plan_id)
        if stored is None or not stored.is_active:
            logger.info("Plan %s is no longer active; ending reminder chain", plan_id)
            return

        plan = self._plan(stored)
        now = self._clock()
        task_time = datetime.fromisoformat(payload["time"])
        tasks = payload.get("tasks") or []
        if now - task_time <= self._grace:
            notify_all(
                self._notifier,
                [plan.patient_id],
                TASK_DUE,
                {
                    "plan_id": plan.id,
                    "time": task_time.isoformat(),
                    "tasks": tasks,
                    "detail": _due_detail(tasks),
                },
            )
        else:
            logger.warning(
                "Reminder for plan %s fired %.0fs late; not delivered",
                plan.id, (now - task_time).total_seconds(),
            )

        offset = self.ledger.offset_for(self._patient(plan.patient_id))
        self.reminders.schedule_next(plan, offset, reference=max(now, task_time))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _plan(self, stored: StoredPlan) -> CarePlan:
        cached = self._plans.get(stored.id)
        if cached is None or cached.is_active != stored.is_active:
            cached = CarePlan.from_stored(stored)
            self._plans[stored.id] = cached
        return cached

    def _patient(self, patient_id: str) -> PatientRecord:
        record = self._repo.get_patient(patient_id)
        if record is None:
            record = self._repo.ensure_patient(patient_id)
        return record
