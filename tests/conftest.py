"""
Shared fixtures for the eligibility engine.
Points the app at a throwaway SQLite file before anything under ``app`` is
imported, and rebuilds the schema for every test.
"""
import os
import tempfile
from datetime import datetime

import pytest

_DB_DIR = tempfile.mkdtemp(prefix="eligibility-tests-")
os.environ["ELIGIBILITY_DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ.setdefault("ELIGIBILITY_LOG_LEVEL", "WARNING")
os.environ.setdefault("ELIGIBILITY_SQLITE_TIMEOUT", "10")

from app.disputes import DisputeResolver  # noqa: E402
from app.models import VERIFIED, UNVERIFIED, Base, Grade, Major, SessionLocal, Student, engine  # noqa: E402
from app.recalc import MajorLockRegistry, RecalcOrchestrator  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_schema():
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield


class RecordingSink:
    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)

    def actions(self):
        return [e.action for e in self.events]


class Factory:
    """Seeds rows in short-lived sessions so no transaction stays open."""

    def major(self, name="RPL", quota_percentage=50.0, min_average=None, quota_count_override=None):
        with SessionLocal() as db:
            major = Major(
                name=name,
                quota_percentage=quota_percentage,
                min_average=min_average,
                quota_count_override=quota_count_override,
            )
            db.add(major)
            db.commit()
            return major.id

    def student(self, major_id, nisn, grades=None, verified=True, enrolled_at=None, name=None):
        with SessionLocal() as db:
            student = Student(
                nisn=nisn,
                name=name or f"Student {nisn}",
                major_id=major_id,
                data_status=VERIFIED if verified else UNVERIFIED,
                enrolled_at=enrolled_at or datetime(2024, 7, 1),
                score_stale=True,
            )
            db.add(student)
            db.flush()
            for (semester, subject), value in (grades or {}).items():
                db.add(Grade(student_id=student.id, semester=semester, subject=subject, value=value))
            db.commit()
            return student.id

    def get(self, model, entity_id):
        with SessionLocal() as db:
            obj = db.get(model, entity_id)
            if obj is not None:
                db.expunge(obj)
            return obj

    def update(self, model, entity_id, **values):
        with SessionLocal() as db:
            obj = db.get(model, entity_id)
            for key, value in values.items():
                setattr(obj, key, value)
            db.commit()


@pytest.fixture
def factory():
    return Factory()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def locks():
    return MajorLockRegistry()


@pytest.fixture
def orchestrator(sink, locks):
    return RecalcOrchestrator(SessionLocal, audit_sink=sink, locks=locks, max_workers=2)


@pytest.fixture
def resolver(orchestrator, sink, locks):
    return DisputeResolver(SessionLocal, orchestrator, audit_sink=sink, locks=locks)


@pytest.fixture
def rpl(factory):
    """Four verified students averaging 90/80/70/60 in a 50% major with a 75 floor."""
    major_id = factory.major("RPL", quota_percentage=50.0, min_average=75.0)
    ids = {
        "A": factory.student(major_id, "0001", {(1, "MATH"): 90.0}),
        "B": factory.student(major_id, "0002", {(1, "MATH"): 80.0}),
        "C": factory.student(major_id, "0003", {(1, "MATH"): 70.0}),
        "D": factory.student(major_id, "0004", {(1, "MATH"): 60.0}),
    }
    return major_id, ids


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from app.main import app

    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_token(client):
    resp = client.post("/auth/login", json={"username": "admin", "password": "admin"})
    assert resp.status_code == 200
    return resp.json()["session_token"]
