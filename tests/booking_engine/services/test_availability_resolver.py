from datetime import date, datetime, time
from zoneinfo import ZoneInfo

import pytest

from booking_engine.core.errors import BadRequestError
from booking_engine.models.appointment import Appointment
from booking_engine.models.availability import BlockedInterval
from booking_engine.services.availability_resolver import compute_slots, local_to_utc, slot_step_minutes

MONDAY = date(2026, 1, 5)
NOW = datetime(2026, 1, 1, 0, 0)


def _book(db, teacher, student, scheduled_time: datetime, duration_minutes: int = 30, status: str = 'approved'):
    appointment = Appointment(
        teacher_id=teacher.id,
        student_id=student.id,
        subject='math',
        scheduled_time=scheduled_time,
        duration_minutes=duration_minutes,
        status=status,
        approval_required=status != 'approved',
        idempotency_key=f'seed-{teacher.id}-{scheduled_time.isoformat()}-{status}',
        created_at=NOW,
        updated_at=NOW,
    )
    db.add(appointment)
    db.commit()
    return appointment


def test_shanghai_morning_window_starts_at_one_utc(db, make_teacher) -> None:
    teacher = make_teacher(timezone='Asia/Shanghai', buffer_minutes=15)

    slots = compute_slots(db, teacher, MONDAY, 30, now=NOW)

    assert slots[0] == datetime(2026, 1, 5, 1, 0)
    assert slots[-1] == datetime(2026, 1, 5, 3, 30)
    assert len(slots) == 11


def test_buffer_pushes_next_start_past_booked_meeting(db, make_teacher, make_student) -> None:
    teacher = make_teacher(timezone='Asia/Shanghai', buffer_minutes=15)
    _book(db, teacher, make_student(), datetime(2026, 1, 5, 1, 0))

    slots = compute_slots(db, teacher, MONDAY, 30, now=NOW)

    # 09:45 local: 30 minutes of meeting plus 15 minutes of buffer after 09:00.
    assert slots[0] == datetime(2026, 1, 5, 1, 45)
    assert datetime(2026, 1, 5, 1, 15) not in slots
    assert datetime(2026, 1, 5, 1, 30) not in slots


@pytest.mark.parametrize(
    ('slot_date', 'expected_start'),
    [
        (date(2026, 3, 2), datetime(2026, 3, 2, 14, 0)),
        (date(2026, 3, 9), datetime(2026, 3, 9, 13, 0)),
    ],
)
def test_new_york_window_follows_daylight_saving(db, make_teacher, slot_date: date, expected_start: datetime) -> None:
    teacher = make_teacher(timezone='America/New_York', buffer_minutes=0, windows=((0, time(9, 0), time(10, 0)),))

    slots = compute_slots(db, teacher, slot_date, 60, now=NOW)

    assert slots == [expected_start]


def test_blocked_interval_removes_overlapping_slots(db, make_teacher) -> None:
    teacher = make_teacher(buffer_minutes=0)
    db.add(BlockedInterval(
        teacher_id=teacher.id,
        start_time=datetime(2026, 1, 5, 10, 0),
        end_time=datetime(2026, 1, 5, 11, 0),
        reason='staff meeting',
    ))
    db.commit()

    slots = compute_slots(db, teacher, MONDAY, 30, now=NOW)

    assert slots == [
        datetime(2026, 1, 5, 9, 0),
        datetime(2026, 1, 5, 9, 30),
        datetime(2026, 1, 5, 11, 0),
        datetime(2026, 1, 5, 11, 30),
    ]


def test_final_partial_slot_is_dropped(db, make_teacher) -> None:
    teacher = make_teacher(buffer_minutes=0, windows=((0, time(9, 0), time(10, 45)),))

    slots = compute_slots(db, teacher, MONDAY, 30, now=NOW)

    assert slots == [
        datetime(2026, 1, 5, 9, 0),
        datetime(2026, 1, 5, 9, 30),
        datetime(2026, 1, 5, 10, 0),
    ]


def test_slots_before_now_are_dropped(db, make_teacher) -> None:
    teacher = make_teacher(buffer_minutes=0)

    slots = compute_slots(db, teacher, MONDAY, 30, now=datetime(2026, 1, 5, 10, 10))

    assert slots == [
        datetime(2026, 1, 5, 10, 30),
        datetime(2026, 1, 5, 11, 0),
        datetime(2026, 1, 5, 11, 30),
    ]


def test_day_is_empty_once_daily_limit_is_reached(db, make_teacher, make_student) -> None:
    teacher = make_teacher(buffer_minutes=0, max_daily_meetings=1)
    _book(db, teacher, make_student(), datetime(2026, 1, 5, 9, 0), status='pending')

    assert compute_slots(db, teacher, MONDAY, 30, now=NOW) == []


def test_cancelled_appointment_does_not_occupy_its_slot(db, make_teacher, make_student) -> None:
    teacher = make_teacher(buffer_minutes=0, max_daily_meetings=1)
    _book(db, teacher, make_student(), datetime(2026, 1, 5, 9, 0), status='cancelled')

    slots = compute_slots(db, teacher, MONDAY, 30, now=NOW)

    assert datetime(2026, 1, 5, 9, 0) in slots


def test_weekday_without_windows_has_no_slots(db, make_teacher) -> None:
    teacher = make_teacher()

    assert compute_slots(db, teacher, date(2026, 1, 6), 30, now=NOW) == []


def test_multiple_windows_are_merged_in_order(db, make_teacher) -> None:
    teacher = make_teacher(
        buffer_minutes=0,
        windows=((0, time(14, 0), time(15, 0)), (0, time(9, 0), time(10, 0))),
    )

    slots = compute_slots(db, teacher, MONDAY, 60, now=NOW)

    assert slots == [datetime(2026, 1, 5, 9, 0), datetime(2026, 1, 5, 14, 0)]


def test_window_ending_at_midnight_runs_to_end_of_day(db, make_teacher) -> None:
    teacher = make_teacher(buffer_minutes=0, windows=((0, time(23, 0), time(0, 0)),))

    slots = compute_slots(db, teacher, MONDAY, 30, now=NOW)

    assert slots == [datetime(2026, 1, 5, 23, 0), datetime(2026, 1, 5, 23, 30)]


@pytest.mark.parametrize('duration', [0, -15, True, 10, 121, 10 ** 10])
def test_compute_slots_rejects_invalid_duration(db, make_teacher, duration) -> None:
    teacher = make_teacher()

    with pytest.raises(BadRequestError):
        compute_slots(db, teacher, MONDAY, duration, now=NOW)


@pytest.mark.parametrize(
    ('duration', 'buffer', 'expected'),
    [
        (30, 15, 15),
        (30, 0, 30),
        (60, 25, 5),
    ],
)
def test_slot_step_minutes(duration: int, buffer: int, expected: int) -> None:
    assert slot_step_minutes(duration, buffer) == expected


def test_ambiguous_local_time_resolves_to_first_occurrence() -> None:
    resolved = local_to_utc(date(2026, 11, 1), time(1, 30), ZoneInfo('America/New_York'))

    assert resolved == datetime(2026, 11, 1, 5, 30)
