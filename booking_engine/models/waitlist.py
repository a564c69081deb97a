"""Waitlist model definitions."""

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, text

from booking_engine.core.timeutil import utcnow
from booking_engine.database import Base

ACTIVE = 'active'
EXPIRED = 'expired'
PROMOTED = 'promoted'

_ACTIVE_PREDICATE = text("status = 'active'")


class WaitlistEntry(Base):
    """A student queued for a slot that is currently taken."""
    __tablename__ = "waitlist_entries"
    __table_args__ = (
        Index(
            'uq_waitlist_active_entry',
            'teacher_id',
            'student_id',
            'slot',
            unique=True,
            postgresql_where=_ACTIVE_PREDICATE,
            sqlite_where=_ACTIVE_PREDICATE,
        ),
        Index('idx_waitlist_slot_order', 'teacher_id', 'slot', 'status', 'created_at'),
    )

    id = Column(Integer, primary_key=True)
    teacher_id = Column(Integer, ForeignKey("teachers.id"), nullable=False)
    student_id = Column(Integer, ForeignKey("students.id"), nullable=False)
    slot = Column(DateTime, nullable=False)
    subject = Column(String, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=ACTIVE)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    appointment_id = Column(Integer, ForeignKey("appointments.id"))
