"""
Availability Resolver

Turns a teacher's weekly wall-clock availability into bookable UTC start
instants for one calendar date:
- windows are converted to UTC for that specific date (DST aware)
- each window is tiled from its local start
- slots in the past, over blocked time, or conflicting with existing
  bookings (buffer included) are dropped
- a teacher who already reached the daily limit has no slots that day
"""

from datetime import date, datetime, time, timedelta
from math import gcd
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from booking_engine.core import config
from booking_engine.core.errors import BadRequestError
from booking_engine.core.timeutil import to_utc_naive, utcnow
from booking_engine.models.appointment import OCCUPYING_STATUSES, Appointment
from booking_engine.models.availability import AvailabilityWindow
from booking_engine.models.teacher import Teacher
from booking_engine.services.conflict_guard import (
    load_blocked_intervals,
    load_occupying_appointments,
    slot_is_free,
)


def teacher_zone(teacher: Teacher) -> ZoneInfo:
    try:
        return ZoneInfo(teacher.timezone or 'UTC')
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise BadRequestError(f'Teacher has an unknown timezone: {teacher.timezone!r}.') from exc


def local_to_utc(slot_date: date, wall_time: time, zone: ZoneInfo) -> datetime:
    """Resolve a local wall-clock time on ``slot_date`` to a naive UTC instant.

    Ambiguous times (clocks going back) resolve to the first occurrence;
    times skipped by a forward jump keep the offset in effect before the jump.
    """
    return to_utc_naive(datetime.combine(slot_date, wall_time, tzinfo=zone))


def local_day_bounds(slot_date: date, zone: ZoneInfo) -> tuple[datetime, datetime]:
    day_start = local_to_utc(slot_date, time(0, 0), zone)
    day_end = local_to_utc(slot_date + timedelta(days=1), time(0, 0), zone)
    return day_start, day_end


def local_date_of(instant: datetime, zone: ZoneInfo) -> date:
    return instant.replace(tzinfo=ZoneInfo('UTC')).astimezone(zone).date()


def window_bounds(slot_date: date, window: AvailabilityWindow, zone: ZoneInfo) -> tuple[datetime, datetime] | None:
    start = local_to_utc(slot_date, window.start_time, zone)
    if window.end_time == time(0, 0):
        end = local_to_utc(slot_date + timedelta(days=1), time(0, 0), zone)
    else:
        end = local_to_utc(slot_date, window.end_time, zone)

    if end <= start:
        return None
    return start, end


def slot_step_minutes(duration_minutes: int, buffer_minutes: int) -> int:
    # A buffer that does not divide the duration shifts the next free start
    # off the plain grid (09:00 + 30 + 15 = 09:45), so step on the common divisor.
    if buffer_minutes <= 0:
        return duration_minutes
    return max(1, gcd(duration_minutes, buffer_minutes))


def tile_window(start: datetime, end: datetime, duration_minutes: int, step_minutes: int):
    duration = timedelta(minutes=duration_minutes)
    step = timedelta(minutes=step_minutes)
    current = start

    while current + duration <= end:
        yield current
        current += step


def count_daily_appointments(db: Session, teacher_id: int, day_start: datetime, day_end: datetime) -> int:
    return db.query(Appointment).filter(
        Appointment.teacher_id == teacher_id,
        Appointment.status.in_(OCCUPYING_STATUSES),
        Appointment.scheduled_time >= day_start,
        Appointment.scheduled_time < day_end,
    ).count()


def active_windows_for(db: Session, teacher_id: int, weekday: int) -> list[AvailabilityWindow]:
    return db.query(AvailabilityWindow).filter(
        AvailabilityWindow.teacher_id == teacher_id,
        AvailabilityWindow.day_of_week == weekday,
        AvailabilityWindow.is_active.is_(True),
    ).order_by(AvailabilityWindow.start_time.asc()).all()


def validate_duration(duration_minutes) -> int:
    if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int):
        raise BadRequestError('duration must be an integer.')
    if not config.MIN_DURATION_MINUTES <= duration_minutes <= config.MAX_DURATION_MINUTES:
        raise BadRequestError(
            f'duration must be between {config.MIN_DURATION_MINUTES} and {config.MAX_DURATION_MINUTES}.'
        )
    return duration_minutes


def compute_slots(
    db: Session,
    teacher: Teacher,
    slot_date: date,
    duration_minutes: int,
    now: datetime | None = None,
) -> list[datetime]:
    """
    Bookable UTC start instants for ``teacher`` on the local ``slot_date``.

    Args:
        db: open session, only read from
        teacher: the teacher whose calendar is resolved
        slot_date: calendar date in the teacher's timezone
        duration_minutes: meeting length; also the tile size
        now: reference instant, defaults to the current UTC time

    Returns:
        list[datetime]: naive UTC instants, ascending and unique
    """
    duration_minutes = validate_duration(duration_minutes)
    now = to_utc_naive(now) if now is not None else utcnow()
    zone = teacher_zone(teacher)

    windows = active_windows_for(db, teacher.id, slot_date.weekday())
    if not windows:
        return []

    day_start, day_end = local_day_bounds(slot_date, zone)
    if count_daily_appointments(db, teacher.id, day_start, day_end) >= teacher.max_daily_meetings:
        return []

    buffer_minutes = teacher.buffer_minutes or 0
    step_minutes = slot_step_minutes(duration_minutes, buffer_minutes)
    padding = timedelta(minutes=buffer_minutes)

    appointments = load_occupying_appointments(db, teacher.id, day_start - padding, day_end + padding)
    blocked = load_blocked_intervals(db, teacher.id, day_start, day_end)

    slots: set[datetime] = set()
    for window in windows:
        bounds = window_bounds(slot_date, window, zone)
        if bounds is None:
            continue

        for candidate in tile_window(bounds[0], bounds[1], duration_minutes, step_minutes):
            if candidate < now:
                continue
            if not slot_is_free(candidate, duration_minutes, buffer_minutes, appointments, blocked):
                continue
            slots.add(candidate)

    return sorted(slots)
