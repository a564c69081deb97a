"""Teacher model definitions."""

from sqlalchemy import Boolean, Column, Integer, String
from sqlalchemy.orm import relationship

from booking_engine.core import config
from booking_engine.database import Base


class Teacher(Base):
    """A teacher together with the booking policy applied to their calendar."""
    __tablename__ = "teachers"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True)
    timezone = Column(String, nullable=False, default="UTC")
    buffer_minutes = Column(Integer, nullable=False, default=config.DEFAULT_BUFFER_MINUTES)
    max_daily_meetings = Column(Integer, nullable=False, default=config.DEFAULT_MAX_DAILY_MEETINGS)
    is_active = Column(Boolean, nullable=False, default=True)

    availability_windows = relationship("AvailabilityWindow", back_populates="teacher")
    blocked_intervals = relationship("BlockedInterval", back_populates="teacher")
