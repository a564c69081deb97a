"""
Booking Transaction

Creates appointments so that at most one pending/approved booking exists per
(teacher, start instant), however many processes race for it, and so that a
retried request with the same idempotency key never books twice.

Every booking locks its teacher and student rows before the checks run, so
buffer conflicts, daily limits and quota decisions are made one booking at a
time per teacher and per student. The partial unique index on
(teacher_id, scheduled_time) settles any race that still reaches the insert.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from booking_engine.core import config
from booking_engine.core.batch import BatchResult, clamp_batch_limit
from booking_engine.core.errors import (
    BadRequestError,
    BookingError,
    DatabaseUnavailableError,
    IdempotentConflictError,
    MaxDailyReachedError,
    NotFoundError,
    QuotaExceededError,
    SlotTakenError,
    StateConflictError,
    StudentNotFoundError,
    TeacherNotFoundError,
)
from booking_engine.core.outbox import PostCommitTasks
from booking_engine.core.slot_cache import SlotCache
from booking_engine.core.timeutil import to_utc_naive, utcnow
from booking_engine.models import appointment as appointment_status
from booking_engine.models.appointment import Appointment
from booking_engine.models.student import Student
from booking_engine.models.teacher import Teacher
from booking_engine.services import notifications, quota_tracker
from booking_engine.services.availability_resolver import (
    count_daily_appointments,
    local_date_of,
    local_day_bounds,
    teacher_zone,
)
from booking_engine.services.conflict_guard import is_available

logger = logging.getLogger(__name__)

MAX_IDEMPOTENCY_KEY_LENGTH = 200

# Keys under this prefix are issued by waitlist promotion only.
RESERVED_KEY_PREFIX = 'waitlist:'

# action -> (statuses it may start from, resulting status)
TRANSITIONS = {
    'approve': ((appointment_status.PENDING,), appointment_status.APPROVED),
    'reject': ((appointment_status.PENDING,), appointment_status.REJECTED),
    'cancel': ((appointment_status.PENDING, appointment_status.APPROVED), appointment_status.CANCELLED),
    'complete': ((appointment_status.APPROVED,), appointment_status.COMPLETED),
    'no_show': ((appointment_status.APPROVED,), appointment_status.NO_SHOW),
}


@dataclass
class BookingResult:
    appointment: Appointment
    created: bool


def normalize_start(scheduled_time: datetime) -> datetime:
    return to_utc_naive(scheduled_time).replace(second=0, microsecond=0)


def validate_booking_request(subject: str, duration_minutes: int, idempotency_key: str) -> None:
    if not subject or not subject.strip():
        raise BadRequestError('Subject is required.')
    if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int):
        raise BadRequestError('durationMinutes must be an integer.')
    if not config.MIN_DURATION_MINUTES <= duration_minutes <= config.MAX_DURATION_MINUTES:
        raise BadRequestError(
            f'durationMinutes must be between {config.MIN_DURATION_MINUTES} and {config.MAX_DURATION_MINUTES}.'
        )
    if not idempotency_key or not idempotency_key.strip():
        raise BadRequestError('idempotencyKey is required.')
    if len(idempotency_key) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise BadRequestError(f'idempotencyKey must be {MAX_IDEMPOTENCY_KEY_LENGTH} characters or fewer.')


def find_by_idempotency_key(db: Session, idempotency_key: str) -> Appointment | None:
    return db.query(Appointment).filter(Appointment.idempotency_key == idempotency_key).first()


def matches_request(
    appointment: Appointment,
    student_id: int,
    teacher_id: int,
    subject: str,
    scheduled_time: datetime,
    duration_minutes: int,
) -> bool:
    return (
        appointment.student_id == student_id
        and appointment.teacher_id == teacher_id
        and appointment.subject == subject
        and appointment.scheduled_time == scheduled_time
        and appointment.duration_minutes == duration_minutes
    )


def _replay(existing: Appointment, **request) -> BookingResult:
    if not matches_request(existing, **request):
        raise IdempotentConflictError()
    logger.info('Idempotent replay of appointment %s (key=%s)', existing.id, existing.idempotency_key)
    return BookingResult(appointment=existing, created=False)


def lock_booking_parties(db: Session, teacher_id: int, student_id: int) -> tuple[Teacher | None, Student | None]:
    """Lock the teacher row, then the student row, for the rest of the transaction.

    SQLite ignores FOR UPDATE, so there a no-op update is issued first: it
    takes the database write lock, which is held until commit or rollback.
    """
    if db.get_bind().dialect.name == 'sqlite':
        db.execute(
            update(Teacher)
            .where(Teacher.id == teacher_id)
            .values(id=Teacher.id)
            .execution_options(synchronize_session=False)
        )

    teacher = db.query(Teacher).filter(Teacher.id == teacher_id).with_for_update().populate_existing().first()
    student = db.query(Student).filter(Student.id == student_id).with_for_update().populate_existing().first()
    return teacher, student


def affected_local_dates(teacher: Teacher, scheduled_time: datetime, duration_minutes: int = 0) -> list:
    """Local dates whose listings change when the buffered interval is taken or freed."""
    zone = teacher_zone(teacher)
    padding = timedelta(minutes=teacher.buffer_minutes or 0)
    first = local_date_of(scheduled_time - padding, zone)
    last = local_date_of(scheduled_time + timedelta(minutes=duration_minutes) + padding, zone)

    dates = [first]
    while dates[-1] < last:
        dates.append(dates[-1] + timedelta(days=1))
    return dates


def invalidate_slot_cache(
    slot_cache: SlotCache | None,
    teacher: Teacher,
    scheduled_time: datetime,
    duration_minutes: int = 0,
) -> None:
    if slot_cache is None:
        return
    for slot_date in affected_local_dates(teacher, scheduled_time, duration_minutes):
        slot_cache.invalidate(teacher.id, slot_date)


def create_appointment(
    db: Session,
    *,
    student_id: int,
    teacher_id: int,
    subject: str,
    scheduled_time: datetime,
    duration_minutes: int,
    idempotency_key: str,
    now: datetime | None = None,
    slot_cache: SlotCache | None = None,
    tasks: PostCommitTasks | None = None,
) -> BookingResult:
    validate_booking_request(subject, duration_minutes, idempotency_key)
    subject = subject.strip()
    idempotency_key = idempotency_key.strip()
    scheduled_time = normalize_start(scheduled_time)
    now = to_utc_naive(now) if now is not None else utcnow()
    request = {
        'student_id': student_id,
        'teacher_id': teacher_id,
        'subject': subject,
        'scheduled_time': scheduled_time,
        'duration_minutes': duration_minutes,
    }

    try:
        existing = find_by_idempotency_key(db, idempotency_key)
        if existing is not None:
            return _replay(existing, **request)

        teacher, student = lock_booking_parties(db, teacher_id, student_id)
        if teacher is None or not teacher.is_active:
            raise TeacherNotFoundError()

        if student is None or not student.is_active:
            raise StudentNotFoundError()

        if scheduled_time <= now:
            raise BadRequestError('Appointments must be scheduled in the future.')

        if not is_available(db, teacher.id, scheduled_time, duration_minutes, buffer_minutes=teacher.buffer_minutes or 0):
            raise SlotTakenError()

        day_start, day_end = local_day_bounds(local_date_of(scheduled_time, teacher_zone(teacher)), teacher_zone(teacher))
        if count_daily_appointments(db, teacher.id, day_start, day_end) >= teacher.max_daily_meetings:
            raise MaxDailyReachedError()

        decision = quota_tracker.consume(db, student, today=now.date())
        if not decision.allowed:
            raise QuotaExceededError()

        status = appointment_status.APPROVED if decision.auto_approved else appointment_status.PENDING
        appointment = Appointment(
            teacher_id=teacher.id,
            student_id=student.id,
            subject=subject,
            scheduled_time=scheduled_time,
            duration_minutes=duration_minutes,
            status=status,
            approval_required=not decision.auto_approved,
            approved_at=now if decision.auto_approved else None,
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now,
        )
        db.add(appointment)
        db.flush()

        if status == appointment_status.APPROVED:
            quota_tracker.record_approval(db, student.id)

        db.commit()
        db.refresh(appointment)
    except BookingError:
        db.rollback()
        raise
    except IntegrityError:
        db.rollback()
        return _resolve_insert_conflict(db, idempotency_key, request)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Appointment insert failed for teacher %s at %s', teacher_id, scheduled_time)
        raise DatabaseUnavailableError() from exc

    logger.info(
        'Appointment %s created for student %s with teacher %s at %s (%s)',
        appointment.id, student.id, teacher.id, scheduled_time.isoformat(), status,
    )
    invalidate_slot_cache(slot_cache, teacher, scheduled_time, duration_minutes)
    if tasks is not None:
        tasks.add(
            'appointment.created',
            notifications.notify_appointment_created,
            notifications.build_meeting_payload(appointment, teacher, student),
        )
    return BookingResult(appointment=appointment, created=True)


def _resolve_insert_conflict(db: Session, idempotency_key: str, request: dict) -> BookingResult:
    """A unique index rejected the insert: either a concurrent retry with the
    same key got there first, or another booking took the slot."""
    try:
        existing = find_by_idempotency_key(db, idempotency_key)
    except SQLAlchemyError as exc:
        db.rollback()
        raise DatabaseUnavailableError() from exc

    if existing is not None:
        return _replay(existing, **request)

    logger.info('Slot taken for teacher %s at %s', request['teacher_id'], request['scheduled_time'])
    raise SlotTakenError()


def transition_appointment(
    db: Session,
    appointment_id: int,
    action: str,
    now: datetime | None = None,
    slot_cache: SlotCache | None = None,
    tasks: PostCommitTasks | None = None,
) -> Appointment:
    if action not in TRANSITIONS:
        raise BadRequestError(f'Unknown action: {action}.')

    allowed_from, target_status = TRANSITIONS[action]
    now = to_utc_naive(now) if now is not None else utcnow()

    try:
        appointment = db.query(Appointment).filter(Appointment.id == appointment_id).with_for_update().first()
        if appointment is None:
            raise NotFoundError('Appointment not found.')

        if appointment.status not in allowed_from:
            raise StateConflictError()

        if action == 'approve' and appointment.scheduled_time <= now:
            raise StateConflictError('Cannot approve an appointment whose start time has passed.')

        previous_status = appointment.status
        appointment.status = target_status
        appointment.updated_at = now
        if target_status == appointment_status.APPROVED:
            appointment.approved_at = now
            quota_tracker.record_approval(db, appointment.student_id)

        db.commit()
        db.refresh(appointment)
    except BookingError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Transition %s failed for appointment %s', action, appointment_id)
        raise DatabaseUnavailableError() from exc

    logger.info('Appointment %s moved from %s to %s', appointment.id, previous_status, target_status)

    teacher = db.get(Teacher, appointment.teacher_id)
    student = db.get(Student, appointment.student_id)
    if target_status == appointment_status.CANCELLED:
        invalidate_slot_cache(slot_cache, teacher, appointment.scheduled_time, appointment.duration_minutes)
    if tasks is not None:
        tasks.add(
            f'appointment.{target_status}',
            notifications.notify_appointment_status_changed,
            notifications.build_meeting_payload(appointment, teacher, student),
        )
    return appointment


def expire_stale_appointments(
    db: Session,
    now: datetime | None = None,
    limit: int | None = None,
    slot_cache: SlotCache | None = None,
    tasks: PostCommitTasks | None = None,
) -> BatchResult:
    """Expire pending appointments whose start passed or whose approval wait ran out.

    Approved appointments are never expired here; once started they are
    settled by the complete or no_show actions.
    """
    now = to_utc_naive(now) if now is not None else utcnow()
    approval_deadline = now - timedelta(hours=config.PENDING_EXPIRE_HOURS)
    result = BatchResult()

    try:
        candidates = db.query(Appointment.id).filter(
            Appointment.status == appointment_status.PENDING,
            (Appointment.scheduled_time <= now) | (Appointment.created_at < approval_deadline),
        ).order_by(Appointment.created_at.asc(), Appointment.id.asc()).limit(clamp_batch_limit(limit)).all()
    except SQLAlchemyError as exc:
        db.rollback()
        raise DatabaseUnavailableError() from exc

    for (appointment_id,) in candidates:
        try:
            updated = db.execute(
                update(Appointment)
                .where(Appointment.id == appointment_id, Appointment.status == appointment_status.PENDING)
                .values(status=appointment_status.EXPIRED, updated_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception('Failed to expire appointment %s', appointment_id)
            result.record_failure(appointment_id, exc)
            continue

        if not updated:
            continue

        result.record_success(appointment_id, status=appointment_status.EXPIRED)
        try:
            appointment = db.get(Appointment, appointment_id)
            db.refresh(appointment)
            teacher = db.get(Teacher, appointment.teacher_id)
            invalidate_slot_cache(slot_cache, teacher, appointment.scheduled_time, appointment.duration_minutes)
            if tasks is not None:
                tasks.add(
                    'appointment.expired',
                    notifications.notify_appointment_status_changed,
                    notifications.build_meeting_payload(appointment, teacher, db.get(Student, appointment.student_id)),
                )
        except SQLAlchemyError:
            logger.exception('Expired appointment %s but could not schedule its follow-ups', appointment_id)

    logger.info('Pending expiry sweep: %s expired, %s failed', result.succeeded, result.failed)
    return result
