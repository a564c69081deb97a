import os
from datetime import date, time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from booking_engine.database import Base  # noqa: E402
from booking_engine.models.appointment import Appointment  # noqa: E402,F401
from booking_engine.models.availability import AvailabilityWindow, BlockedInterval  # noqa: E402,F401
from booking_engine.models.student import Student  # noqa: E402
from booking_engine.models.teacher import Teacher  # noqa: E402
from booking_engine.models.waitlist import WaitlistEntry  # noqa: E402,F401


@pytest.fixture
def session_factory():
    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    try:
        yield testing_session_local
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_teacher(db):
    def _make_teacher(
        name: str = 'Teacher',
        timezone: str = 'UTC',
        buffer_minutes: int = 15,
        max_daily_meetings: int = 8,
        windows=((0, time(9, 0), time(12, 0)),),
        **extra,
    ) -> Teacher:
        teacher = Teacher(
            name=name,
            email=extra.pop('email', f'{name.lower().replace(" ", ".")}.{len(db.query(Teacher).all())}@example.edu'),
            timezone=timezone,
            buffer_minutes=buffer_minutes,
            max_daily_meetings=max_daily_meetings,
            **extra,
        )
        db.add(teacher)
        db.flush()
        for day_of_week, start_time, end_time in windows:
            db.add(AvailabilityWindow(
                teacher_id=teacher.id,
                day_of_week=day_of_week,
                start_time=start_time,
                end_time=end_time,
                is_active=True,
            ))
        db.commit()
        db.refresh(teacher)
        return teacher

    return _make_teacher


@pytest.fixture
def make_student(db):
    def _make_student(
        name: str = 'Student',
        service_level: str = 'level1',
        monthly_meetings_used: int = 0,
        last_quota_reset: date = date(2026, 1, 1),
        **extra,
    ) -> Student:
        student = Student(
            name=name,
            email=extra.pop('email', f'{name.lower().replace(" ", ".")}.{len(db.query(Student).all())}@example.edu'),
            service_level=service_level,
            monthly_meetings_used=monthly_meetings_used,
            last_quota_reset=last_quota_reset,
            **extra,
        )
        db.add(student)
        db.commit()
        db.refresh(student)
        return student

    return _make_student
