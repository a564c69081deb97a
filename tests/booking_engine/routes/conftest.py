from datetime import datetime, time, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from booking_engine.core import config
from booking_engine.core.outbox import FailedTaskQueue
from booking_engine.core.slot_cache import SlotCache
from booking_engine.database import get_db
from booking_engine.main import app
from booking_engine.routes import appointment_routes, job_routes, slot_routes, waitlist_routes

JOB_SECRET = 'job-secret'


@pytest.fixture
def next_monday():
    today = datetime.now(timezone.utc).date()
    return today + timedelta(days=14 - today.weekday())


@pytest.fixture
def client(session_factory, monkeypatch: pytest.MonkeyPatch):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    for module in (slot_routes, appointment_routes, waitlist_routes, job_routes):
        monkeypatch.setattr(module, 'ensure_database_ready', lambda: None)
    monkeypatch.setattr(config, 'JOB_TRIGGER_SECRET', JOB_SECRET)
    monkeypatch.setattr(config, 'SMTP_USER', '')
    monkeypatch.setattr(app.state, 'slot_cache', SlotCache(ttl_seconds=300))
    monkeypatch.setattr(app.state, 'failed_tasks', FailedTaskQueue(max_attempts=3))
    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def shanghai_teacher(make_teacher):
    return make_teacher(
        name='Teacher Li',
        timezone='Asia/Shanghai',
        buffer_minutes=0,
        windows=((0, time(9, 0), time(10, 0)),),
    )


@pytest.fixture
def student_factory(make_student):
    def _student(name: str = 'Student', **extra):
        extra.setdefault('last_quota_reset', datetime.now(timezone.utc).date().replace(day=1))
        return make_student(name=name, **extra)

    return _student
