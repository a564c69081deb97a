"""Appointment model definitions."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, text

from booking_engine.core.timeutil import utcnow
from booking_engine.database import Base

PENDING = 'pending'
APPROVED = 'approved'
REJECTED = 'rejected'
COMPLETED = 'completed'
CANCELLED = 'cancelled'
NO_SHOW = 'no_show'
EXPIRED = 'expired'

OCCUPYING_STATUSES = (PENDING, APPROVED)
TERMINAL_STATUSES = (REJECTED, COMPLETED, CANCELLED, NO_SHOW, EXPIRED)

_OCCUPYING_PREDICATE = text("status IN ('pending', 'approved')")


class Appointment(Base):
    """A booked meeting between a student and a teacher.

    At most one pending/approved row may exist per (teacher_id, scheduled_time);
    the partial unique index below is what enforces it across processes.
    """
    __tablename__ = "appointments"
    __table_args__ = (
        Index(
            'uq_appointments_active_slot',
            'teacher_id',
            'scheduled_time',
            unique=True,
            postgresql_where=_OCCUPYING_PREDICATE,
            sqlite_where=_OCCUPYING_PREDICATE,
        ),
        Index('idx_appointments_teacher_start', 'teacher_id', 'scheduled_time'),
        Index('idx_appointments_status_created', 'status', 'created_at'),
    )

    id = Column(Integer, primary_key=True)
    teacher_id = Column(Integer, ForeignKey("teachers.id"), nullable=False)
    student_id = Column(Integer, ForeignKey("students.id"), nullable=False, index=True)
    subject = Column(String, nullable=False)
    scheduled_time = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=PENDING)
    approval_required = Column(Boolean, nullable=False, default=True)
    approved_at = Column(DateTime)
    idempotency_key = Column(String, unique=True, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
