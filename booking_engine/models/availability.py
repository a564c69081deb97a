"""Availability model definitions."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Time
from sqlalchemy.orm import relationship

from booking_engine.database import Base


class AvailabilityWindow(Base):
    """Recurring weekly availability, stored as local wall-clock time.

    ``day_of_week`` follows ``date.weekday()`` (0 is Monday). The timezone is
    the owning teacher's.
    """
    __tablename__ = "availability_windows"

    id = Column(Integer, primary_key=True)
    teacher_id = Column(Integer, ForeignKey("teachers.id"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    teacher = relationship("Teacher", back_populates="availability_windows")


class BlockedInterval(Base):
    """A UTC interval carved out of a teacher's availability."""
    __tablename__ = "blocked_intervals"
    __table_args__ = (
        Index('idx_blocked_intervals_teacher_range', 'teacher_id', 'start_time', 'end_time'),
    )

    id = Column(Integer, primary_key=True)
    teacher_id = Column(Integer, ForeignKey("teachers.id"), nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    reason = Column(String)

    teacher = relationship("Teacher", back_populates="blocked_intervals")
