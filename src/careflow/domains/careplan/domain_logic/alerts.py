"""Alert engine — turns recorded answers into deduplicated care team alerts.

Two policy families:

* **History scan** (``consecutive`` / ``total``): walk the measure's
  answered slots after the last anchor slot and raise an alert when the
  negative count reaches ``triggerValue``. The slot that reaches it is
  flagged ``alerts_triggered`` so the next scan starts after it; for
  ``consecutive`` policies a positive answer is an anchor as well.
* **Weight trend**: raise an alert as soon as the weight slot turns
  negative (a gain of ``gainThreshold`` over the reference weight).

Marking the slot and inserting the alert happen in one unit of work.
Notifications go out only after it commits.
"""

from __future__ import annotations

import logging

from careflow.core.jobs.queue import Clock, utc_now
from careflow.core.notify.notifier import ALERTS_UPDATE, Notifier, notify_all
from careflow.core.storage.models import Alert, ResponseSlot
from careflow.core.storage.repository import CarePlanRepository
from careflow.domains.careplan.domain_logic.answers import Submission
from careflow.domains.careplan.domain_logic.plan_models import (
    AlertPolicy,
    CarePlan,
    WeightTrendPolicy,
)
from careflow.domains.careplan.domain_logic.recorder import DeltaMap, ProgressDelta

logger = logging.getLogger(__name__)


def weight_transitioned_negative(delta: ProgressDelta) -> bool:
    """True when the delta moves a weight slot into the negative state.

    Either a positive answer was revised to negative, or the slot was
    answered for the first time and evaluated negative.
    """
    return delta.value < 0 or (delta.count == 1 and delta.value == 0)


class AlertEngine:
    def __init__(
        self,
        repository: CarePlanRepository,
        notifier: Notifier,
        clock: Clock = utc_now,
    ) -> None:
        self._repo = repository
        self._notifier = notifier
        self._clock = clock

    def check_alerts(
        self, plan: CarePlan, submission: Submission, deltas: DeltaMap
    ) -> list[Alert]:
        """Evaluate the policies touched by one recorded submission.

        Returns:
            Alerts created by this call (usually zero or one per subtype).
        """
        created: list[Alert] = []
        for subtype, delta in deltas.items():
            policy = plan.content.alert_policy(submission.measure, subtype)
            if policy is None:
                continue
            if isinstance(policy, WeightTrendPolicy):
                alert = self._check_weight(plan, submission, delta, policy)
            else:
                alert = self._scan_history(plan, submission.measure, subtype, policy)
            if alert is not None:
                created.append(alert)

        for alert in created:
            notify_all(
                self._notifier,
                [*alert.care_team_ids, alert.patient_id],
                ALERTS_UPDATE,
                {
                    "alert_id": alert.id,
                    "patient_id": alert.patient_id,
                    "measure": alert.measure,
                    "subtype": alert.subtype,
                    "trigger_time": alert.trigger_time.isoformat(),
                },
            )
        return created

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    def _check_weight(
        self,
        plan: CarePlan,
        submission: Submission,
        delta: ProgressDelta,
        policy: WeightTrendPolicy,
    ) -> Alert | None:
        if not weight_transitioned_negative(delta):
            return None
        with self._repo.database.transaction():
            candidates = self._repo.slot_history(
                plan.patient_id, plan.id, "vital", "weight", since=submission.time, answered_only=True
            )
            slot = next((s for s in candidates if s.time == submission.time), None)
            if slot is None or slot.is_positive is not False:
                return None
            return self._raise(plan, slot, policy.snapshot())

    def _scan_history(
        self, plan: CarePlan, measure: str, subtype: str | None, policy: AlertPolicy
    ) -> Alert | None:
        with self._repo.database.transaction():
            anchor = self._repo.last_anchor_slot(
                plan.patient_id, plan.id, measure, subtype, trigger_type=policy.trigger_type
            )
            slots = self._repo.slot_history(
                plan.patient_id,
                plan.id,
                measure,
                subtype,
                after=anchor.time if anchor else None,
                answered_only=True,
            )
            negatives = 0
            for slot in slots:
                if slot.is_positive is False:
                    negatives += 1
                elif slot.is_positive and policy.trigger_type == "consecutive":
                    negatives = 0
                if negatives >= policy.trigger_value:
                    return self._raise(plan, slot, policy.snapshot())
        return None

    def _raise(self, plan: CarePlan, slot: ResponseSlot, policy: dict) -> Alert:
        slot.alerts_triggered = True
        self._repo.update_slot(slot)
        alert = Alert(
            id="",
            patient_id=plan.patient_id,
            plan_id=plan.id,
            measure=slot.measure,
            subtype=slot.subtype,
            trigger_time=slot.time,
            policy=policy,
            care_team_ids=plan.care_team,
        )
        self._repo.create_alert(alert)
        logger.info(
            "Alert %s raised for patient %s on %s/%s",
            alert.id, plan.patient_id, slot.measure, slot.subtype,
        )
        return alert

    # ------------------------------------------------------------------
    # Seen tracking
    # ------------------------------------------------------------------

    def mark_seen(self, alert_id: str, viewer: str, patient_id: str | None = None) -> int | None:
        """Mark an alert, and every earlier one of the same measure, seen by ``viewer``.

        Returns:
            Number of alerts newly marked, or ``None`` when the alert does
            not exist, belongs to another patient, or ``viewer`` is neither
            the patient nor on the alert's care team.
        """
        alert = self._repo.get_alert(alert_id)
        if alert is None:
            return None
        if patient_id is not None and alert.patient_id != patient_id:
            return None
        if viewer != alert.patient_id and viewer not in alert.care_team_ids:
            logger.warning("User %s is not on the care team of alert %s", viewer, alert_id)
            return None
        return self._repo.mark_alerts_seen(
            alert.patient_id, alert.measure, alert.subtype, alert.trigger_time, viewer
        )
