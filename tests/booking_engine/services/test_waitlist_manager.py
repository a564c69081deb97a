from datetime import datetime, timedelta

import pytest

from booking_engine.core.errors import (
    BadRequestError,
    NotFoundError,
    StateConflictError,
    TeacherNotFoundError,
    WaitlistDuplicateError,
)
from booking_engine.core.outbox import PostCommitTasks
from booking_engine.models.appointment import Appointment
from booking_engine.models.waitlist import WaitlistEntry
from booking_engine.services import waitlist_manager
from booking_engine.services.booking_transaction import create_appointment, transition_appointment

NOW = datetime(2026, 1, 1, 0, 0)
NINE = datetime(2026, 1, 5, 9, 0)


def _occupy(db, teacher, student, scheduled_time=NINE):
    return create_appointment(
        db,
        student_id=student.id,
        teacher_id=teacher.id,
        subject='math',
        scheduled_time=scheduled_time,
        duration_minutes=30,
        idempotency_key=f'occupy-{student.id}-{scheduled_time.isoformat()}',
        now=NOW,
    ).appointment


def _join(db, teacher, student, slot=NINE, minutes_after=0):
    return waitlist_manager.join(
        db, teacher.id, slot, student.id, subject='math', now=NOW + timedelta(minutes=minutes_after)
    )


def test_join_creates_active_entry_expiring_at_slot(db, make_teacher, make_student) -> None:
    teacher = make_teacher()

    entry = _join(db, teacher, make_student())

    assert entry.status == 'active'
    assert entry.slot == NINE
    assert entry.expires_at == NINE
    assert entry.duration_minutes == 30


def test_join_twice_for_same_slot_is_duplicate(db, make_teacher, make_student) -> None:
    teacher = make_teacher()
    student = make_student()
    _join(db, teacher, student)

    with pytest.raises(WaitlistDuplicateError):
        _join(db, teacher, student, minutes_after=5)


def test_join_rejects_past_slot_and_unknown_teacher(db, make_teacher, make_student) -> None:
    teacher = make_teacher()
    student = make_student()

    with pytest.raises(BadRequestError):
        _join(db, teacher, student, slot=datetime(2025, 12, 31, 9, 0))

    with pytest.raises(TeacherNotFoundError):
        waitlist_manager.join(db, 404, NINE, student.id, now=NOW)


def test_position_follows_join_order(db, make_teacher, make_student) -> None:
    teacher = make_teacher()
    first, second, third = make_student(name='A'), make_student(name='B'), make_student(name='C')
    _join(db, teacher, second, minutes_after=0)
    _join(db, teacher, first, minutes_after=1)
    _join(db, teacher, third, minutes_after=2)

    assert waitlist_manager.position(db, teacher.id, NINE, second.id) == 1
    assert waitlist_manager.position(db, teacher.id, NINE, first.id) == 2
    assert waitlist_manager.position(db, teacher.id, NINE, third.id) == 3
    assert waitlist_manager.position(db, teacher.id, NINE, 999) is None
    assert waitlist_manager.queue_length(db, teacher.id, NINE) == 3


def test_position_breaks_ties_by_entry_id(db, make_teacher, make_student) -> None:
    teacher = make_teacher()
    earlier, later = make_student(name='A'), make_student(name='B')
    _join(db, teacher, earlier)
    _join(db, teacher, later)

    assert waitlist_manager.position(db, teacher.id, NINE, earlier.id) == 1
    assert waitlist_manager.position(db, teacher.id, NINE, later.id) == 2


def test_promote_does_nothing_while_slot_is_occupied(db, make_teacher, make_student) -> None:
    teacher = make_teacher()
    _occupy(db, teacher, make_student(name='Holder'))
    entry = _join(db, teacher, make_student(name='Waiting'))

    assert waitlist_manager.promote(db, teacher.id, NINE, now=NOW) is None
    assert db.get(WaitlistEntry, entry.id).status == 'active'


def test_promote_books_head_of_queue_after_cancellation(db, make_teacher, make_student) -> None:
    teacher = make_teacher()
    holder = _occupy(db, teacher, make_student(name='Holder'))
    head = make_student(name='Head')
    behind = make_student(name='Behind')
    head_entry = _join(db, teacher, head)
    behind_entry = _join(db, teacher, behind, minutes_after=1)
    transition_appointment(db, holder.id, 'cancel', now=NOW)
    tasks = PostCommitTasks()

    promoted = waitlist_manager.promote(db, teacher.id, NINE, now=NOW, tasks=tasks)

    assert promoted.id == head_entry.id
    assert promoted.status == 'promoted'
    appointment = db.get(Appointment, promoted.appointment_id)
    assert appointment.student_id == head.id
    assert appointment.status == 'approved'
    assert appointment.idempotency_key == f'waitlist:{head_entry.id}'
    assert db.get(WaitlistEntry, behind_entry.id).status == 'active'
    assert waitlist_manager.position(db, teacher.id, NINE, behind.id) == 1
    assert len(tasks) == 1


def test_promote_skips_candidate_over_quota(db, make_teacher, make_student) -> None:
    teacher = make_teacher()
    capped = make_student(name='Capped', monthly_meetings_used=8)
    eligible = make_student(name='Eligible')
    capped_entry = _join(db, teacher, capped)
    eligible_entry = _join(db, teacher, eligible, minutes_after=1)

    promoted = waitlist_manager.promote(db, teacher.id, NINE, now=NOW)

    assert promoted.id == eligible_entry.id
    assert db.get(WaitlistEntry, capped_entry.id).status == 'active'


def test_promote_skips_candidate_who_is_no_longer_active(db, make_teacher, make_student) -> None:
    teacher = make_teacher()
    departed = make_student(name='Departed')
    eligible = make_student(name='Eligible')
    departed_entry = _join(db, teacher, departed)
    eligible_entry = _join(db, teacher, eligible, minutes_after=1)
    departed.is_active = False
    db.commit()

    promoted = waitlist_manager.promote(db, teacher.id, NINE, now=NOW)

    assert promoted.id == eligible_entry.id
    assert promoted.status == 'promoted'
    assert db.get(WaitlistEntry, departed_entry.id).status == 'active'


def test_promote_stops_on_slot_level_failure(db, make_teacher, make_student) -> None:
    teacher = make_teacher(max_daily_meetings=1)
    _occupy(db, teacher, make_student(name='Other'), scheduled_time=datetime(2026, 1, 5, 11, 0))
    first = _join(db, teacher, make_student(name='A'))
    second = _join(db, teacher, make_student(name='B'), minutes_after=1)

    assert waitlist_manager.promote(db, teacher.id, NINE, now=NOW) is None
    assert db.get(WaitlistEntry, first.id).status == 'active'
    assert db.get(WaitlistEntry, second.id).status == 'active'


def test_promote_after_cancellation_hands_slot_to_queue(db, make_teacher, make_student) -> None:
    teacher = make_teacher()
    holder = _occupy(db, teacher, make_student(name='Holder'))
    entry = _join(db, teacher, make_student(name='Waiting'))
    cancelled = transition_appointment(db, holder.id, 'cancel', now=NOW)

    promoted = waitlist_manager.promote_after_cancellation(db, cancelled, now=NOW)

    assert promoted.id == entry.id
    assert db.get(Appointment, holder.id).status == 'cancelled'


def test_promote_open_slots_sweeps_every_free_slot(db, make_teacher, make_student) -> None:
    teacher = make_teacher(buffer_minutes=0)
    _join(db, teacher, make_student(name='A'), slot=NINE)
    _join(db, teacher, make_student(name='B'), slot=datetime(2026, 1, 5, 10, 0))
    _occupy(db, teacher, make_student(name='Holder'), scheduled_time=datetime(2026, 1, 5, 11, 0))
    _join(db, teacher, make_student(name='C'), slot=datetime(2026, 1, 5, 11, 0))

    result = waitlist_manager.promote_open_slots(db, now=NOW)

    assert result.succeeded == 2
    assert result.failed == 0
    assert db.query(WaitlistEntry).filter(WaitlistEntry.status == 'promoted').count() == 2
    assert db.query(WaitlistEntry).filter(WaitlistEntry.status == 'active').count() == 1


def test_expire_marks_past_entries_once(db, make_teacher, make_student) -> None:
    teacher = make_teacher()
    past_entry = _join(db, teacher, make_student(name='A'))
    future_entry = _join(db, teacher, make_student(name='B'), slot=datetime(2026, 1, 12, 9, 0))
    tasks = PostCommitTasks()
    sweep_time = datetime(2026, 1, 5, 9, 30)

    result = waitlist_manager.expire(db, now=sweep_time, tasks=tasks)
    repeat = waitlist_manager.expire(db, now=sweep_time, tasks=tasks)

    assert result.succeeded == 1
    assert result.items == [{'id': past_entry.id, 'status': 'expired'}]
    assert repeat.succeeded == 0
    assert db.get(WaitlistEntry, past_entry.id).status == 'expired'
    assert db.get(WaitlistEntry, future_entry.id).status == 'active'
    assert len(tasks) == 1


def test_expired_entry_does_not_block_rejoining(db, make_teacher, make_student) -> None:
    teacher = make_teacher()
    student = make_student()
    entry = _join(db, teacher, student)
    db.query(WaitlistEntry).filter(WaitlistEntry.id == entry.id).update({'status': 'expired'})
    db.commit()

    rejoined = _join(db, teacher, student, minutes_after=5)

    assert rejoined.id != entry.id
    assert rejoined.status == 'active'


def test_leave_removes_own_active_entry(db, make_teacher, make_student) -> None:
    teacher = make_teacher()
    owner = make_student(name='Owner')
    entry = _join(db, teacher, owner)

    with pytest.raises(NotFoundError):
        waitlist_manager.leave(db, entry.id, owner.id + 100)

    waitlist_manager.leave(db, entry.id, owner.id)

    assert db.get(WaitlistEntry, entry.id) is None


def test_leave_rejects_entry_that_is_no_longer_active(db, make_teacher, make_student) -> None:
    teacher = make_teacher()
    owner = make_student()
    entry = _join(db, teacher, owner)
    db.query(WaitlistEntry).filter(WaitlistEntry.id == entry.id).update({'status': 'promoted'})
    db.commit()

    with pytest.raises(StateConflictError):
        waitlist_manager.leave(db, entry.id, owner.id)
