"""Deferred job queue — the collaborator that runs a named task after a delay.

The contract is deliberately small: ``enqueue(task_name, payload,
delay_ms)`` with at-least-once delivery, plus ``cancel(job_id)``. There
is no recurring registration; a task that wants to run again enqueues its
own successor.

``InMemoryJobQueue`` is the in-process implementation used by tests and
the local server. ``AsyncioJobQueue`` additionally arms an event loop
timer for each job so jobs fire on their own while a server is running.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
JobHandler = Callable[[dict[str, Any]], None]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@runtime_checkable
class JobQueue(Protocol):
    """Abstract interface for the deferred task substrate."""

    def enqueue(self, task_name: str, payload: dict[str, Any], delay_ms: int) -> str:
        """Schedule ``task_name`` to run with ``payload`` after ``delay_ms``. Returns a job id."""
        ...

    def cancel(self, job_id: str) -> bool:
        """Drop a pending job. Returns False if it already ran or is unknown."""
        ...


@dataclass
class CancellationToken:
    """Owned handle for a self-perpetuating task chain.

    Each link of the chain records its job id here; cancelling the token
    cancels the pending link and tells any link already in flight not to
    enqueue a successor.
    """

    key: str
    job_ids: list[str] = field(default_factory=list)
    cancelled: bool = False

    def cancel(self, queue: JobQueue | None = None) -> None:
        self.cancelled = True
        if queue is not None:
            for job_id in self.job_ids:
                queue.cancel(job_id)


@dataclass
class QueuedJob:
    id: str
    task_name: str
    payload: dict[str, Any]
    due_at: datetime


class InMemoryJobQueue:
    """Process-local job queue; jobs run when :meth:`run_due` is called."""

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._handlers: dict[str, JobHandler] = {}
        self._jobs: dict[str, QueuedJob] = {}

    def register(self, task_name: str, handler: JobHandler) -> None:
        self._handlers[task_name] = handler

    def enqueue(self, task_name: str, payload: dict[str, Any], delay_ms: int) -> str:
        job = QueuedJob(
            id=str(uuid.uuid4()),
            task_name=task_name,
            payload=dict(payload),
            due_at=self._clock() + timedelta(milliseconds=max(delay_ms, 0)),
        )
        self._jobs[job.id] = job
        logger.info("Enqueued %s job %s due %s", task_name, job.id, job.due_at.isoformat())
        return job.id

    def cancel(self, job_id: str) -> bool:
        return self._jobs.pop(job_id, None) is not None

    def pending(self, task_name: str | None = None) -> list[QueuedJob]:
        """Pending jobs, soonest first."""
        jobs = [j for j in self._jobs.values() if task_name is None or j.task_name == task_name]
        return sorted(jobs, key=lambda j: j.due_at)

    def run_due(self, now: datetime | None = None) -> int:
        """Run every job due at ``now``. Returns the number of jobs run.

        A job that raises is logged and dropped.
        """
        now = now or self._clock()
        due = [job for job in self.pending() if job.due_at <= now]
        for job in due:
            self._run(job.id)
        return len(due)

    def _run(self, job_id: str) -> None:
        job = self._jobs.pop(job_id, None)
        if job is None:
            return
        handler = self._handlers.get(job.task_name)
        if handler is None:
            logger.warning("No handler registered for %s; dropping job %s", job.task_name, job.id)
            return
        try:
            handler(job.payload)
        except Exception:
            logger.exception("Job %s (%s) failed", job.id, job.task_name)


class AsyncioJobQueue(InMemoryJobQueue):
    """In-memory queue that also arms an event loop timer per job.

    Jobs enqueued while no loop is running (for example chains resumed
    while the server is still being built) are armed by :meth:`arm_pending`
    once a loop exists. The server lifespan calls it on startup and every
    later :meth:`enqueue` made inside a loop does the same.
    """

    def __init__(self, clock: Clock = utc_now) -> None:
        super().__init__(clock)
        self._timers: dict[str, tuple[asyncio.AbstractEventLoop, asyncio.TimerHandle]] = {}

    def enqueue(self, task_name: str, payload: dict[str, Any], delay_ms: int) -> str:
        job_id = super().enqueue(task_name, payload, delay_ms)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return job_id
        self.arm_pending(loop)
        return job_id

    def arm_pending(self, loop: asyncio.AbstractEventLoop | None = None) -> int:
        """Arm a timer on ``loop`` for every pending job not armed on it.

        Returns the number of timers armed. Jobs already overdue fire on the
        next loop iteration.
        """
        loop = loop or asyncio.get_running_loop()
        now = self._clock()
        armed = 0
        for job in self.pending():
            existing = self._timers.get(job.id)
            if existing is not None and existing[0] is loop and not existing[0].is_closed():
                continue
            delay = max((job.due_at - now).total_seconds(), 0.0)
            self._timers[job.id] = (loop, loop.call_later(delay, self._fire, job.id))
            armed += 1
        if armed:
            logger.info("Armed %d pending job timer(s)", armed)
        return armed

    def cancel(self, job_id: str) -> bool:
        entry = self._timers.pop(job_id, None)
        if entry is not None:
            entry[1].cancel()
        return super().cancel(job_id)

    def _fire(self, job_id: str) -> None:
        self._timers.pop(job_id, None)
        self._run(job_id)
