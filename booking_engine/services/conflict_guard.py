"""
Conflict checks for a single candidate slot.

The teacher's buffer pads the candidate on both sides: the padded candidate
must not touch any pending/approved appointment of that teacher. Blocked
intervals are compared without padding. All intervals are half-open.
"""

from datetime import datetime, timedelta
from typing import Iterable

from sqlalchemy.orm import Session

from booking_engine.core.errors import TeacherNotFoundError
from booking_engine.core.timeutil import to_utc_naive
from booking_engine.models.appointment import OCCUPYING_STATUSES, Appointment
from booking_engine.models.availability import BlockedInterval
from booking_engine.models.teacher import Teacher

APPOINTMENT_LOOKBACK = timedelta(days=1)


def intervals_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    return start_a < end_b and start_b < end_a


def padded_interval(start: datetime, duration_minutes: int, buffer_minutes: int) -> tuple[datetime, datetime]:
    padding = timedelta(minutes=buffer_minutes)
    return start - padding, start + timedelta(minutes=duration_minutes) + padding


def slot_is_free(
    start: datetime,
    duration_minutes: int,
    buffer_minutes: int,
    appointments: Iterable[tuple[datetime, int]],
    blocked: Iterable[tuple[datetime, datetime]],
) -> bool:
    end = start + timedelta(minutes=duration_minutes)
    for blocked_start, blocked_end in blocked:
        if intervals_overlap(start, end, blocked_start, blocked_end):
            return False

    padded_start, padded_end = padded_interval(start, duration_minutes, buffer_minutes)
    for appointment_start, appointment_duration in appointments:
        appointment_end = appointment_start + timedelta(minutes=appointment_duration)
        if intervals_overlap(padded_start, padded_end, appointment_start, appointment_end):
            return False

    return True


def load_occupying_appointments(
    db: Session,
    teacher_id: int,
    range_start: datetime,
    range_end: datetime,
    exclude_appointment_id: int | None = None,
) -> list[tuple[datetime, int]]:
    query = db.query(Appointment.scheduled_time, Appointment.duration_minutes).filter(
        Appointment.teacher_id == teacher_id,
        Appointment.status.in_(OCCUPYING_STATUSES),
        Appointment.scheduled_time < range_end,
        Appointment.scheduled_time >= range_start - APPOINTMENT_LOOKBACK,
    )
    if exclude_appointment_id is not None:
        query = query.filter(Appointment.id != exclude_appointment_id)

    return [(scheduled_time, duration) for scheduled_time, duration in query.all()]


def load_blocked_intervals(
    db: Session,
    teacher_id: int,
    range_start: datetime,
    range_end: datetime,
) -> list[tuple[datetime, datetime]]:
    rows = db.query(BlockedInterval.start_time, BlockedInterval.end_time).filter(
        BlockedInterval.teacher_id == teacher_id,
        BlockedInterval.start_time < range_end,
        BlockedInterval.end_time > range_start,
    ).all()
    return [(start, end) for start, end in rows]


def is_available(
    db: Session,
    teacher_id: int,
    start: datetime,
    duration_minutes: int,
    buffer_minutes: int | None = None,
    exclude_appointment_id: int | None = None,
) -> bool:
    """Check a candidate against the current state of the store."""
    if buffer_minutes is None:
        teacher = db.get(Teacher, teacher_id)
        if teacher is None:
            raise TeacherNotFoundError()
        buffer_minutes = teacher.buffer_minutes or 0

    start = to_utc_naive(start)
    padded_start, padded_end = padded_interval(start, duration_minutes, buffer_minutes)

    appointments = load_occupying_appointments(
        db,
        teacher_id,
        padded_start,
        padded_end,
        exclude_appointment_id=exclude_appointment_id,
    )
    blocked = load_blocked_intervals(db, teacher_id, start, start + timedelta(minutes=duration_minutes))

    return slot_is_free(start, duration_minutes, buffer_minutes, appointments, blocked)
