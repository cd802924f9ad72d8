"""Task reminders — a self-perpetuating chain of deferred jobs per plan.

Each link computes the next instant any of the plan's tasks is due,
enqueues ``careplan_task_reminder`` for it and, when it fires, notifies
the patient and enqueues its successor. The chain ends when the plan is
superseded (its cancellation token is cancelled), deactivated, or runs
past its duration.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from careflow.core.jobs.queue import CancellationToken, Clock, JobQueue, utc_now
from careflow.domains.careplan.domain_logic.plan_models import SUBTYPED_MEASURES, CarePlan
from careflow.domains.careplan.domain_logic.recurrence import is_within_plan, next_occurrence

logger = logging.getLogger(__name__)

TASK_REMINDER = "careplan_task_reminder"


@dataclass(frozen=True)
class DueTasks:
    """Everything due at one instant."""

    time: datetime
    tasks: list[dict[str, Any]] = field(default_factory=list)

    def to_payload(self, plan: CarePlan) -> dict[str, Any]:
        return {
            "plan_id": plan.id,
            "patient_id": plan.patient_id,
            "time": self.time.isoformat(),
            "tasks": list(self.tasks),
        }


def next_due_tasks(plan: CarePlan, offset_minutes: int, reference: datetime) -> DueTasks | None:
    """The soonest instant after ``reference`` with something due, and what is due then.

    Returns ``None`` when no config has a further occurrence or the next
    one falls after the plan's end.
    """
    soonest: datetime | None = None
    tasks: list[dict[str, Any]] = []
    for cfg in plan.content.all_configs():
        when = next_occurrence(cfg.frequency, plan.start_date, offset_minutes, reference)
        if when is None:
            continue
        task = {
            "measure": cfg.measure,
            "subtype": cfg.subtype if cfg.measure in SUBTYPED_MEASURES else None,
        }
        if soonest is None or when < soonest:
            soonest, tasks = when, [task]
        elif when == soonest and task not in tasks:
            tasks.append(task)
    if soonest is None:
        return None
    if is_within_plan(plan, soonest, offset_minutes) == 0:
        return None
    return DueTasks(time=soonest, tasks=tasks)


class ReminderScheduler:
    """Owns one cancellation token per plan and enqueues the chain's next link."""

    def __init__(self, queue: JobQueue, clock: Clock = utc_now) -> None:
        self._queue = queue
        self._clock = clock
        self._tokens: dict[str, CancellationToken] = {}

    def token(self, plan_id: str) -> CancellationToken:
        return self._tokens.setdefault(plan_id, CancellationToken(key=plan_id))

    def is_cancelled(self, plan_id: str) -> bool:
        token = self._tokens.get(plan_id)
        return token is not None and token.cancelled

    def schedule_next(
        self, plan: CarePlan, offset_minutes: int, reference: datetime | None = None
    ) -> DueTasks | None:
        """Enqueue the next reminder for ``plan``.

        Enqueue failures are logged; the plan itself is unaffected and no
        further link is scheduled.
        """
        token = self.token(plan.id)
        if token.cancelled:
            return None
        now = self._clock()
        due = next_due_tasks(plan, offset_minutes, reference or now)
        if due is None:
            logger.info("No further reminders for plan %s", plan.id)
            return None
        delay_ms = max(int((due.time - now).total_seconds() * 1000), 0)
        try:
            job_id = self._queue.enqueue(TASK_REMINDER, due.to_payload(plan), delay_ms)
        except Exception:
            logger.exception("Failed to enqueue reminder for plan %s", plan.id)
            return None
        token.job_ids = [job_id]
        return due

    def cancel(self, plan_id: str) -> bool:
        """Cancel the chain of ``plan_id``. Returns False if it had no chain."""
        existed = plan_id in self._tokens
        # a cancelled token also stops links enqueued before a restart
        self.token(plan_id).cancel(self._queue)
        if existed:
            logger.info("Cancelled reminder chain for plan %s", plan_id)
        return existed
