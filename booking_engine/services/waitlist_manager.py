"""
Waitlist Manager

FIFO queue of students per (teacher, slot). Entries are ordered by creation
time, ties broken by id. When a slot frees up the head of the queue is booked
through ``create_appointment`` on the student's behalf.
"""

import logging
from datetime import datetime

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from booking_engine.core import config
from booking_engine.core.batch import BatchResult, clamp_batch_limit
from booking_engine.core.errors import (
    BadRequestError,
    BookingError,
    DatabaseUnavailableError,
    ErrorCode,
    NotFoundError,
    StateConflictError,
    StudentNotFoundError,
    TeacherNotFoundError,
    WaitlistDuplicateError,
)
from booking_engine.core.outbox import PostCommitTasks
from booking_engine.core.slot_cache import SlotCache
from booking_engine.core.timeutil import to_utc_naive, utcnow
from booking_engine.models import waitlist as waitlist_status
from booking_engine.models.appointment import OCCUPYING_STATUSES, Appointment
from booking_engine.models.student import Student
from booking_engine.models.teacher import Teacher
from booking_engine.models.waitlist import WaitlistEntry
from booking_engine.services import booking_transaction, notifications

logger = logging.getLogger(__name__)

# Failures tied to the candidate rather than the slot: the next entry may still succeed.
CANDIDATE_SPECIFIC_ERRORS = frozenset({
    ErrorCode.QUOTA_EXCEEDED,
    ErrorCode.IDEMPOTENT_CONFLICT,
    ErrorCode.STUDENT_NOT_FOUND,
})


def promotion_key(entry_id: int) -> str:
    return f'{booking_transaction.RESERVED_KEY_PREFIX}{entry_id}'


def _queue_order():
    return (WaitlistEntry.created_at.asc(), WaitlistEntry.id.asc())


def find_active_entry(db: Session, teacher_id: int, slot: datetime, student_id: int) -> WaitlistEntry | None:
    return db.query(WaitlistEntry).filter(
        WaitlistEntry.teacher_id == teacher_id,
        WaitlistEntry.student_id == student_id,
        WaitlistEntry.slot == slot,
        WaitlistEntry.status == waitlist_status.ACTIVE,
    ).first()


def join(
    db: Session,
    teacher_id: int,
    slot: datetime,
    student_id: int,
    subject: str = 'general',
    duration_minutes: int | None = None,
    now: datetime | None = None,
) -> WaitlistEntry:
    slot = booking_transaction.normalize_start(slot)
    now = to_utc_naive(now) if now is not None else utcnow()
    duration_minutes = duration_minutes or config.DEFAULT_DURATION_MINUTES
    if not subject or not subject.strip():
        raise BadRequestError('Subject is required.')

    try:
        teacher = db.get(Teacher, teacher_id)
        if teacher is None or not teacher.is_active:
            raise TeacherNotFoundError()

        student = db.get(Student, student_id)
        if student is None or not student.is_active:
            raise StudentNotFoundError()

        if slot <= now:
            raise BadRequestError('Cannot join the waitlist for a slot in the past.')

        if find_active_entry(db, teacher_id, slot, student_id) is not None:
            raise WaitlistDuplicateError()

        entry = WaitlistEntry(
            teacher_id=teacher_id,
            student_id=student_id,
            slot=slot,
            subject=subject.strip(),
            duration_minutes=duration_minutes,
            status=waitlist_status.ACTIVE,
            created_at=now,
            expires_at=slot,
        )
        db.add(entry)
        db.commit()
        db.refresh(entry)
    except BookingError:
        db.rollback()
        raise
    except IntegrityError as exc:
        db.rollback()
        raise WaitlistDuplicateError() from exc
    except SQLAlchemyError as exc:
        db.rollback()
        raise DatabaseUnavailableError() from exc

    logger.info('Student %s joined waitlist for teacher %s at %s', student_id, teacher_id, slot.isoformat())
    return entry


def position(db: Session, teacher_id: int, slot: datetime, student_id: int) -> int | None:
    slot = booking_transaction.normalize_start(slot)
    entry = find_active_entry(db, teacher_id, slot, student_id)
    if entry is None:
        return None

    ahead = db.query(WaitlistEntry).filter(
        WaitlistEntry.teacher_id == teacher_id,
        WaitlistEntry.slot == slot,
        WaitlistEntry.status == waitlist_status.ACTIVE,
        or_(
            WaitlistEntry.created_at < entry.created_at,
            and_(WaitlistEntry.created_at == entry.created_at, WaitlistEntry.id < entry.id),
        ),
    ).count()
    return ahead + 1


def queue_length(db: Session, teacher_id: int, slot: datetime) -> int:
    return db.query(WaitlistEntry).filter(
        WaitlistEntry.teacher_id == teacher_id,
        WaitlistEntry.slot == booking_transaction.normalize_start(slot),
        WaitlistEntry.status == waitlist_status.ACTIVE,
    ).count()


def leave(db: Session, entry_id: int, student_id: int) -> None:
    try:
        entry = db.get(WaitlistEntry, entry_id)
        if entry is None or entry.student_id != student_id:
            raise NotFoundError('Waitlist entry not found.')
        if entry.status != waitlist_status.ACTIVE:
            raise StateConflictError('Only active waitlist entries can be removed.')

        db.delete(entry)
        db.commit()
    except BookingError:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        raise DatabaseUnavailableError() from exc

    logger.info('Student %s left waitlist entry %s', student_id, entry_id)


def slot_is_occupied(db: Session, teacher_id: int, slot: datetime) -> bool:
    return db.query(Appointment.id).filter(
        Appointment.teacher_id == teacher_id,
        Appointment.scheduled_time == slot,
        Appointment.status.in_(OCCUPYING_STATUSES),
    ).first() is not None


def promote(
    db: Session,
    teacher_id: int,
    slot: datetime,
    now: datetime | None = None,
    slot_cache: SlotCache | None = None,
    tasks: PostCommitTasks | None = None,
) -> WaitlistEntry | None:
    """Book the slot for the earliest active entry.

    Returns the promoted entry, or None when nobody could take the slot. A
    candidate whose booking fails stays active.
    """
    slot = booking_transaction.normalize_start(slot)

    try:
        if slot_is_occupied(db, teacher_id, slot):
            return None

        candidates = db.query(
            WaitlistEntry.id,
            WaitlistEntry.student_id,
            WaitlistEntry.subject,
            WaitlistEntry.duration_minutes,
        ).filter(
            WaitlistEntry.teacher_id == teacher_id,
            WaitlistEntry.slot == slot,
            WaitlistEntry.status == waitlist_status.ACTIVE,
        ).order_by(*_queue_order()).limit(config.PROMOTION_MAX_CANDIDATES).all()
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise DatabaseUnavailableError() from exc

    for entry_id, student_id, subject, duration_minutes in candidates:
        try:
            booking = booking_transaction.create_appointment(
                db,
                student_id=student_id,
                teacher_id=teacher_id,
                subject=subject,
                scheduled_time=slot,
                duration_minutes=duration_minutes,
                idempotency_key=promotion_key(entry_id),
                now=now,
                slot_cache=slot_cache,
            )
        except BookingError as exc:
            logger.info('Waitlist entry %s not promoted: %s', entry_id, exc.code.value)
            if exc.code in CANDIDATE_SPECIFIC_ERRORS:
                continue
            return None

        try:
            db.execute(
                update(WaitlistEntry)
                .where(WaitlistEntry.id == entry_id, WaitlistEntry.status == waitlist_status.ACTIVE)
                .values(status=waitlist_status.PROMOTED, appointment_id=booking.appointment.id)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception('Appointment %s booked but waitlist entry %s not marked promoted',
                             booking.appointment.id, entry_id)
            raise DatabaseUnavailableError() from exc

        entry = db.get(WaitlistEntry, entry_id)
        db.refresh(entry)
        logger.info('Waitlist entry %s promoted to appointment %s', entry_id, booking.appointment.id)

        if tasks is not None:
            appointment = booking.appointment
            tasks.add(
                'waitlist.promoted',
                notifications.notify_waitlist_promoted,
                notifications.build_meeting_payload(
                    appointment,
                    db.get(Teacher, appointment.teacher_id),
                    db.get(Student, appointment.student_id),
                ),
            )
        return entry

    return None


def promote_after_cancellation(
    db: Session,
    appointment: Appointment,
    now: datetime | None = None,
    slot_cache: SlotCache | None = None,
    tasks: PostCommitTasks | None = None,
) -> WaitlistEntry | None:
    """Hand a just-cancelled slot to the waitlist; the cancellation itself stands regardless."""
    try:
        return promote(
            db,
            appointment.teacher_id,
            appointment.scheduled_time,
            now=now,
            slot_cache=slot_cache,
            tasks=tasks,
        )
    except BookingError:
        logger.exception('Waitlist promotion after cancelling appointment %s failed', appointment.id)
        return None


def promote_open_slots(
    db: Session,
    now: datetime | None = None,
    limit: int | None = None,
    slot_cache: SlotCache | None = None,
    tasks: PostCommitTasks | None = None,
) -> BatchResult:
    """Try a promotion for every future slot that still has an active queue."""
    now = to_utc_naive(now) if now is not None else utcnow()
    result = BatchResult()

    try:
        pairs = db.query(WaitlistEntry.teacher_id, WaitlistEntry.slot).filter(
            WaitlistEntry.status == waitlist_status.ACTIVE,
            WaitlistEntry.slot > now,
        ).distinct().order_by(WaitlistEntry.slot.asc()).limit(clamp_batch_limit(limit)).all()
    except SQLAlchemyError as exc:
        db.rollback()
        raise DatabaseUnavailableError() from exc

    for teacher_id, slot in pairs:
        item_id = f'{teacher_id}:{slot.isoformat()}'
        try:
            entry = promote(db, teacher_id, slot, now=now, slot_cache=slot_cache, tasks=tasks)
        except BookingError as exc:
            logger.exception('Waitlist promotion failed for %s', item_id)
            result.record_failure(item_id, exc)
            continue

        if entry is not None:
            result.record_success(item_id, entry_id=entry.id, appointment_id=entry.appointment_id)

    logger.info('Waitlist promotion sweep: %s promoted, %s failed', result.succeeded, result.failed)
    return result


def expire(
    db: Session,
    now: datetime | None = None,
    limit: int | None = None,
    tasks: PostCommitTasks | None = None,
) -> BatchResult:
    """Mark active entries whose slot has passed as expired, one at a time."""
    now = to_utc_naive(now) if now is not None else utcnow()
    result = BatchResult()

    try:
        stale = db.query(WaitlistEntry.id).filter(
            WaitlistEntry.status == waitlist_status.ACTIVE,
            WaitlistEntry.slot < now,
        ).order_by(WaitlistEntry.slot.asc(), WaitlistEntry.id.asc()).limit(clamp_batch_limit(limit)).all()
    except SQLAlchemyError as exc:
        db.rollback()
        raise DatabaseUnavailableError() from exc

    for (entry_id,) in stale:
        try:
            updated = db.execute(
                update(WaitlistEntry)
                .where(WaitlistEntry.id == entry_id, WaitlistEntry.status == waitlist_status.ACTIVE)
                .values(status=waitlist_status.EXPIRED, expires_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception('Failed to expire waitlist entry %s', entry_id)
            result.record_failure(entry_id, exc)
            continue

        if not updated:
            continue

        result.record_success(entry_id, status=waitlist_status.EXPIRED)
        if tasks is None:
            continue
        try:
            entry = db.get(WaitlistEntry, entry_id)
            student = db.get(Student, entry.student_id)
            teacher = db.get(Teacher, entry.teacher_id)
            tasks.add(
                'waitlist.expired',
                notifications.notify_waitlist_expired,
                {
                    'entry_id': entry_id,
                    'slot': entry.slot,
                    'student_name': student.name,
                    'student_email': student.email,
                    'teacher_name': teacher.name,
                },
            )
        except SQLAlchemyError:
            logger.exception('Expired waitlist entry %s but could not schedule its notification', entry_id)

    logger.info('Waitlist expiry sweep: %s expired, %s failed', result.succeeded, result.failed)
    return result
