"""Care plan repository — persistence for plans, daily ledgers, progress and alerts.

The repository mediates between the persisted dataclasses and the SQLite
database, using FieldEncryptor to encrypt/decrypt patient answers. Every
write joins the caller's unit of work when one is open (see
``CarePlanDatabase.transaction``) and otherwise runs in its own.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import date, datetime, timezone
from typing import Any

from careflow.core.storage.database import CarePlanDatabase
from careflow.core.storage.encryption import FieldEncryptor
from careflow.core.storage.models import (
    Alert,
    DailyResponseDocument,
    PatientRecord,
    ResponseSlot,
    StoredPlan,
)

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Raised when repository operations fail."""


def _ts(value: datetime) -> str:
    """Canonical UTC text form; lexicographic order equals time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _bool_or_none(value: Any) -> bool | None:
    return None if value is None else bool(value)


class CarePlanRepository:
    """CRUD repository for the care plan ledger.

    Usage::

        db = CarePlanDatabase(":memory:")
        db.initialize()
        repo = CarePlanRepository(db, FieldEncryptor(key="..."))

        repo.ensure_patient("patient-1", timezone_offset=-300)
        doc = repo.insert_daily_document_if_absent("patient-1", plan_id, day, slots)
    """

    def __init__(self, database: CarePlanDatabase, encryptor: FieldEncryptor) -> None:
        self._db = database
        self._enc = encryptor

    @property
    def database(self) -> CarePlanDatabase:
        return self._db

    @staticmethod
    def _new_id() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()

    # ------------------------------------------------------------------
    # Patients (enrollment records)
    # ------------------------------------------------------------------

    def ensure_patient(self, patient_id: str, timezone_offset: int | None = None) -> PatientRecord:
        """Create the enrollment record if missing; update the offset when given."""
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT INTO patients (id, timezone_offset) VALUES (?, ?) "
                "ON CONFLICT(id) DO NOTHING",
                (patient_id, timezone_offset),
            )
            if timezone_offset is not None:
                conn.execute(
                    "UPDATE patients SET timezone_offset = ?, updated_at = ? WHERE id = ?",
                    (timezone_offset, self._now_iso(), patient_id),
                )
        record = self.get_patient(patient_id)
        if record is None:
            raise RepositoryError(f"Patient {patient_id} missing after enrollment")
        return record

    def get_patient(self, patient_id: str) -> PatientRecord | None:
        row = self._db.connection.execute(
            "SELECT * FROM patients WHERE id = ?", (patient_id,)
        ).fetchone()
        if row is None:
            return None
        return PatientRecord(
            id=row["id"],
            timezone_offset=row["timezone_offset"],
            progress=json.loads(row["progress_json"] or "{}"),
            updated_at=row["updated_at"],
        )

    def save_progress(self, patient_id: str, progress: dict[str, Any]) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE patients SET progress_json = ?, updated_at = ? WHERE id = ?",
                (json.dumps(progress, separators=(",", ":")), self._now_iso(), patient_id),
            )

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    def save_plan(self, plan: StoredPlan) -> list[str]:
        """Persist a signed plan.

        When the plan is active, every other active plan of the same
        patient is deactivated in the same unit of work.

        Returns:
            IDs of the superseded plans.
        """
        plan.id = plan.id or self._new_id()
        sign_date = plan.sign_date or datetime.now(timezone.utc)
        with self._db.transaction() as conn:
            conn.execute(
                """INSERT INTO plans (
                    id, patient_id, creator_id, content_json, care_team_json,
                    start_date, duration_days, is_active, sign_date
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    plan.id,
                    plan.patient_id,
                    plan.creator_id,
                    json.dumps(plan.content, separators=(",", ":")),
                    json.dumps(plan.care_team),
                    plan.start_date.isoformat(),
                    plan.duration_days,
                    int(plan.is_active),
                    _ts(sign_date),
                ),
            )
            superseded: list[str] = []
            if plan.is_active:
                rows = conn.execute(
                    "SELECT id FROM plans WHERE patient_id = ? AND is_active = 1 AND id != ?",
                    (plan.patient_id, plan.id),
                ).fetchall()
                superseded = [row["id"] for row in rows]
                conn.execute(
                    "UPDATE plans SET is_active = 0 WHERE patient_id = ? AND id != ?",
                    (plan.patient_id, plan.id),
                )
        logger.info(
            "Saved plan %s for patient %s (superseded %d)",
            plan.id, plan.patient_id, len(superseded),
        )
        return superseded

    def get_plan(self, plan_id: str) -> StoredPlan | None:
        row = self._db.connection.execute(
            "SELECT * FROM plans WHERE id = ?", (plan_id,)
        ).fetchone()
        return self._row_to_plan(row) if row is not None else None

    def get_active_plan(self, patient_id: str) -> StoredPlan | None:
        row = self._db.connection.execute(
            "SELECT * FROM plans WHERE patient_id = ? AND is_active = 1 "
            "ORDER BY sign_date DESC LIMIT 1",
            (patient_id,),
        ).fetchone()
        return self._row_to_plan(row) if row is not None else None

    def list_active_plans(self) -> list[StoredPlan]:
        rows = self._db.connection.execute(
            "SELECT * FROM plans WHERE is_active = 1 ORDER BY sign_date"
        ).fetchall()
        return [self._row_to_plan(row) for row in rows]

    # ------------------------------------------------------------------
    # Daily response documents
    # ------------------------------------------------------------------

    def find_daily_document(
        self, patient_id: str, plan_id: str, calendar_date: date
    ) -> DailyResponseDocument | None:
        row = self._db.connection.execute(
            "SELECT * FROM daily_responses "
            "WHERE patient_id = ? AND plan_id = ? AND calendar_date = ?",
            (patient_id, plan_id, calendar_date.isoformat()),
        ).fetchone()
        return self._load_document(row) if row is not None else None

    def insert_daily_document_if_absent(
        self,
        patient_id: str,
        plan_id: str,
        calendar_date: date,
        slots: list[ResponseSlot],
    ) -> DailyResponseDocument:
        """Atomic find-or-insert of a day's document.

        The unique key on (patient, plan, date) decides the race: the first
        writer's slots are stored, later callers get that document back and
        their ``slots`` are discarded.
        """
        with self._db.transaction() as conn:
            doc_id = self._new_id()
            cursor = conn.execute(
                "INSERT INTO daily_responses (id, patient_id, plan_id, calendar_date) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT(patient_id, plan_id, calendar_date) DO NOTHING",
                (doc_id, patient_id, plan_id, calendar_date.isoformat()),
            )
            if cursor.rowcount == 1:
                for position, slot in enumerate(slots):
                    slot.id = slot.id or self._new_id()
                    slot.document_id = doc_id
                    conn.execute(
                        """INSERT INTO response_slots (
                            id, document_id, position, measure, subtype, time,
                            response_enc, is_positive, alerts_triggered, answered_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                        (
                            slot.id,
                            doc_id,
                            position,
                            slot.measure,
                            slot.subtype,
                            _ts(slot.time),
                            self._enc.encrypt(slot.response),
                            None if slot.is_positive is None else int(slot.is_positive),
                            int(slot.alerts_triggered),
                            _ts(slot.answered_at) if slot.answered_at else None,
                        ),
                    )
                logger.info(
                    "Created daily document %s for patient %s on %s (%d slots)",
                    doc_id, patient_id, calendar_date, len(slots),
                )
            document = self.find_daily_document(patient_id, plan_id, calendar_date)
            if document is None:
                raise RepositoryError(
                    f"Daily document for {patient_id} on {calendar_date} missing after insert"
                )
        return document

    def list_daily_documents(
        self,
        patient_id: str,
        *,
        since: date | None = None,
        until: date | None = None,
        limit: int = 366,
    ) -> list[DailyResponseDocument]:
        """Documents for a patient across plans, newest day first."""
        conditions = ["patient_id = ?"]
        params: list[Any] = [patient_id]
        if since:
            conditions.append("calendar_date >= ?")
            params.append(since.isoformat())
        if until:
            conditions.append("calendar_date <= ?")
            params.append(until.isoformat())
        if limit < 1:
            raise RepositoryError(f"limit must be positive, got {limit}")

        query = (
            "SELECT * FROM daily_responses WHERE "
            + " AND ".join(conditions)
            + " ORDER BY calendar_date DESC LIMIT ?"
        )
        params.append(limit)
        rows = self._db.connection.execute(query, params).fetchall()
        return [self._load_document(row) for row in rows]

    def update_slot(self, slot: ResponseSlot) -> None:
        """Write back the mutable fields of one slot."""
        if not slot.id:
            raise RepositoryError("Cannot update a slot that was never stored")
        with self._db.transaction() as conn:
            conn.execute(
                """UPDATE response_slots
                   SET response_enc = ?, is_positive = ?, alerts_triggered = ?, answered_at = ?
                   WHERE id = ?""",
                (
                    self._enc.encrypt(slot.response),
                    None if slot.is_positive is None else int(slot.is_positive),
                    int(slot.alerts_triggered),
                    _ts(slot.answered_at) if slot.answered_at else None,
                    slot.id,
                ),
            )

    # ------------------------------------------------------------------
    # Slot history (alert scans, weight trend)
    # ------------------------------------------------------------------

    def slot_history(
        self,
        patient_id: str,
        plan_id: str,
        measure: str,
        subtype: str | None = None,
        *,
        after: datetime | None = None,
        before: datetime | None = None,
        since: datetime | None = None,
        answered_only: bool = False,
        newest_first: bool = False,
    ) -> list[ResponseSlot]:
        """Slots of one measure (and subtype) of a plan, in time order.

        Args:
            after: Exclusive lower bound on slot time.
            before: Exclusive upper bound on slot time.
            since: Inclusive lower bound on slot time.
        """
        conditions = ["d.patient_id = ?", "d.plan_id = ?", "s.measure = ?"]
        params: list[Any] = [patient_id, plan_id, measure]
        if subtype is not None:
            conditions.append("s.subtype = ?")
            params.append(subtype)
        if after is not None:
            conditions.append("s.time > ?")
            params.append(_ts(after))
        if before is not None:
            conditions.append("s.time < ?")
            params.append(_ts(before))
        if since is not None:
            conditions.append("s.time >= ?")
            params.append(_ts(since))
        if answered_only:
            conditions.append("s.answered_at IS NOT NULL")

        order = "DESC" if newest_first else "ASC"
        query = (
            "SELECT s.* FROM response_slots s "
            "JOIN daily_responses d ON d.id = s.document_id WHERE "
            + " AND ".join(conditions)
            + f" ORDER BY s.time {order}, s.position {order}"
        )
        rows = self._db.connection.execute(query, params).fetchall()
        return [self._row_to_slot(row) for row in rows]

    def last_anchor_slot(
        self,
        patient_id: str,
        plan_id: str,
        measure: str,
        subtype: str | None,
        *,
        trigger_type: str,
    ) -> ResponseSlot | None:
        """Most recent slot that resets an alert scan.

        For ``total`` policies that is the last slot that raised an alert;
        for ``consecutive`` policies also the last positive answer.
        """
        if trigger_type == "total":
            anchor = "s.alerts_triggered = 1"
        elif trigger_type == "consecutive":
            anchor = "(s.is_positive = 1 OR s.alerts_triggered = 1)"
        else:
            raise RepositoryError(f"Invalid trigger type: {trigger_type!r}")

        conditions = ["d.patient_id = ?", "d.plan_id = ?", "s.measure = ?", anchor]
        params: list[Any] = [patient_id, plan_id, measure]
        if subtype is not None:
            conditions.append("s.subtype = ?")
            params.append(subtype)
        row = self._db.connection.execute(
            "SELECT s.* FROM response_slots s "
            "JOIN daily_responses d ON d.id = s.document_id WHERE "
            + " AND ".join(conditions)
            + " ORDER BY s.time DESC LIMIT 1",
            params,
        ).fetchone()
        return self._row_to_slot(row) if row is not None else None

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def create_alert(self, alert: Alert) -> str:
        alert.id = alert.id or self._new_id()
        alert.created_at = alert.created_at or self._now_iso()
        with self._db.transaction() as conn:
            conn.execute(
                """INSERT INTO alerts (
                    id, patient_id, plan_id, care_team_json, measure, subtype,
                    policy_json, trigger_time, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    alert.id,
                    alert.patient_id,
                    alert.plan_id,
                    json.dumps(alert.care_team_ids),
                    alert.measure,
                    alert.subtype,
                    json.dumps(alert.policy, separators=(",", ":")),
                    _ts(alert.trigger_time),
                    alert.created_at,
                ),
            )
        logger.info(
            "Created alert %s for patient %s (%s/%s)",
            alert.id, alert.patient_id, alert.measure, alert.subtype,
        )
        return alert.id

    def get_alert(self, alert_id: str) -> Alert | None:
        row = self._db.connection.execute(
            "SELECT * FROM alerts WHERE id = ?", (alert_id,)
        ).fetchone()
        return self._row_to_alert(row) if row is not None else None

    def list_alerts(
        self,
        *,
        patient_id: str | None = None,
        care_team_member: str | None = None,
        since: datetime | None = None,
        limit: int = 200,
    ) -> list[Alert]:
        """Alerts newest trigger first, filtered by patient and/or care team member."""
        conditions: list[str] = []
        params: list[Any] = []
        if patient_id:
            conditions.append("patient_id = ?")
            params.append(patient_id)
        if care_team_member:
            conditions.append(
                "EXISTS (SELECT 1 FROM json_each(alerts.care_team_json) WHERE value = ?)"
            )
            params.append(care_team_member)
        if since:
            conditions.append("trigger_time > ?")
            params.append(_ts(since))

        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        query = f"SELECT * FROM alerts{where} ORDER BY trigger_time DESC LIMIT ?"
        params.append(limit)
        rows = self._db.connection.execute(query, params).fetchall()
        return [self._row_to_alert(row) for row in rows]

    def mark_alerts_seen(
        self,
        patient_id: str,
        measure: str,
        subtype: str | None,
        up_to: datetime,
        user_id: str,
    ) -> int:
        """Mark every alert of a measure/subtype up to ``up_to`` as seen by ``user_id``.

        Returns:
            Number of alerts newly marked.
        """
        with self._db.transaction() as conn:
            cursor = conn.execute(
                """INSERT OR IGNORE INTO alert_seen (alert_id, user_id)
                   SELECT id, ? FROM alerts
                   WHERE patient_id = ? AND measure = ? AND subtype IS ? AND trigger_time <= ?""",
                (user_id, patient_id, measure, subtype, _ts(up_to)),
            )
            count = cursor.rowcount
        logger.info("User %s marked %d alert(s) seen for patient %s", user_id, count, patient_id)
        return count

    def count_alerts(self, patient_id: str | None = None) -> int:
        if patient_id:
            row = self._db.connection.execute(
                "SELECT COUNT(*) FROM alerts WHERE patient_id = ?", (patient_id,)
            ).fetchone()
        else:
            row = self._db.connection.execute("SELECT COUNT(*) FROM alerts").fetchone()
        return row[0]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _load_document(self, row: Any) -> DailyResponseDocument:
        slot_rows = self._db.connection.execute(
            "SELECT * FROM response_slots WHERE document_id = ? ORDER BY position",
            (row["id"],),
        ).fetchall()
        return DailyResponseDocument(
            id=row["id"],
            patient_id=row["patient_id"],
            plan_id=row["plan_id"],
            calendar_date=date.fromisoformat(row["calendar_date"]),
            slots=[self._row_to_slot(slot_row) for slot_row in slot_rows],
        )

    def _row_to_slot(self, row: Any) -> ResponseSlot:
        return ResponseSlot(
            id=row["id"],
            document_id=row["document_id"],
            measure=row["measure"],
            subtype=row["subtype"],
            time=_parse_ts(row["time"]),
            response=self._enc.decrypt(row["response_enc"]),
            is_positive=_bool_or_none(row["is_positive"]),
            alerts_triggered=bool(row["alerts_triggered"]),
            answered_at=_parse_ts(row["answered_at"]),
        )

    @staticmethod
    def _row_to_plan(row: Any) -> StoredPlan:
        return StoredPlan(
            id=row["id"],
            patient_id=row["patient_id"],
            creator_id=row["creator_id"],
            content=json.loads(row["content_json"]),
            care_team=json.loads(row["care_team_json"] or "[]"),
            start_date=date.fromisoformat(row["start_date"]),
            duration_days=row["duration_days"],
            is_active=bool(row["is_active"]),
            sign_date=_parse_ts(row["sign_date"]),
        )

    def _row_to_alert(self, row: Any) -> Alert:
        seen_rows = self._db.connection.execute(
            "SELECT user_id FROM alert_seen WHERE alert_id = ?", (row["id"],)
        ).fetchall()
        return Alert(
            id=row["id"],
            patient_id=row["patient_id"],
            plan_id=row["plan_id"],
            care_team_ids=json.loads(row["care_team_json"] or "[]"),
            measure=row["measure"],
            subtype=row["subtype"],
            policy=json.loads(row["policy_json"]),
            trigger_time=_parse_ts(row["trigger_time"]),
            seen_by={r["user_id"] for r in seen_rows},
            created_at=row["created_at"],
        )
