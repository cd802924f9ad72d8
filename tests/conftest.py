"""Shared test fixtures for Careflow tests."""

from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

# ---------------------------------------------------------------------------
# Test hermeticity
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _force_hermetic_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENCRYPTION_KEY", "")
    monkeypatch.setenv("DB_PATH", ":memory:")
    monkeypatch.setenv("DEFAULT_TIMEZONE_OFFSET", "-300")
    monkeypatch.setenv("REMINDER_GRACE_SECONDS", "300")

# Allow running tests without `pip install -e .` by making `src/` importable.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_SRC_DIR = _PROJECT_ROOT / "src"
if str(_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(_SRC_DIR))

from careflow.core.jobs.queue import InMemoryJobQueue  # noqa: E402

# Monday 4 March 2024, noon UTC
T0 = datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Settable clock; call it to read the current instant."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Notifier that keeps every call for assertions."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, Any]]] = []

    def notify(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        self.sent.append((user_id, event_type, payload))

    def recipients(self, event_type: str) -> list[str]:
        return [user for user, event, _ in self.sent if event == event_type]


def make_plan_content() -> dict[str, Any]:
    """A plan touching every measure category."""
    return {
        "medication": {
            "aspirin": {
                "frequency": {"type": "preset", "value": {"hours": ["08:00", "20:00"]}},
                "alerts": {"triggerType": "total", "triggerValue": 2},
            },
            "metformin": {
                "frequency": {"type": "preset", "value": {"hours": ["08:00"]}},
            },
        },
        "vital": {
            "heartRate": {
                "frequency": {"type": "preset", "value": {"hours": ["08:00"]}},
                "thresholds": {"max": 100, "min": 50},
                "alerts": {"triggerType": "consecutive", "triggerValue": 3},
            },
            "weight": {
                "frequency": {"type": "preset", "value": {"hours": ["07:00"]}},
                "alerts": {"periodValue": 7, "baseWeight": 150, "gainThreshold": 5},
            },
            "bloodPressure": {
                "frequency": {"type": "preset", "value": {"hours": ["08:00"]}},
                "thresholds": {"max": 140, "min": 90, "max2": 90, "min2": 60},
            },
            "bloodOxygen": {
                "frequency": {"type": "preset", "value": {"hours": ["08:00"]}},
                "thresholds": {"min": 92},
            },
            "glucose": {
                "frequency": {"type": "preset", "value": {"hours": ["08:00"]}},
            },
        },
        "activity": {
            "frequency": {"type": "preset", "value": {"hours": ["05:00 PM"]}},
        },
        "wellness": {
            "mood": {
                "frequency": {"type": "preset", "value": {"hours": ["20:00"]}},
            },
        },
    }


# ---------------------------------------------------------------------------
# In-memory storage fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def careplan_db():
    """Create an in-memory CarePlanDatabase for testing."""
    from careflow.core.storage.database import CarePlanDatabase

    db = CarePlanDatabase(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def field_encryptor():
    """Create a FieldEncryptor with a test key."""
    from cryptography.fernet import Fernet

    from careflow.core.storage.encryption import FieldEncryptor

    return FieldEncryptor(Fernet.generate_key().decode())


@pytest.fixture
def repository(careplan_db, field_encryptor):
    """Create a CarePlanRepository backed by in-memory SQLite."""
    from careflow.core.storage.repository import CarePlanRepository

    return CarePlanRepository(careplan_db, field_encryptor)


@pytest.fixture
def audit_logger(careplan_db):
    """Create an AuditLogger backed by in-memory SQLite."""
    from careflow.core.audit.logger import AuditLogger

    return AuditLogger(careplan_db)


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def job_queue(clock) -> InMemoryJobQueue:
    return InMemoryJobQueue(clock)


@pytest.fixture
def service(repository, notifier, job_queue, audit_logger, clock):
    """A CarePlanService whose patients default to UTC."""
    from careflow.domains.careplan.domain_logic.service import CarePlanService

    return CarePlanService(
        repository,
        notifier=notifier,
        job_queue=job_queue,
        audit_logger=audit_logger,
        clock=clock,
        default_offset=0,
    )


@pytest.fixture
def signed_plan(service):
    """The standard plan signed for ``patient-1`` starting on T0's date."""
    return service.sign_plan(
        "patient-1",
        make_plan_content(),
        "2024-03-04",
        care_team=["dr-a", "dr-b"],
        creator_id="dr-a",
    )
