"""Student and service policy model definitions."""

from sqlalchemy import Boolean, Column, Date, Integer, String

from booking_engine.database import Base

SERVICE_LEVELS = ('level1', 'level2', 'premium')


class Student(Base):
    """A student and their monthly quota state."""
    __tablename__ = "students"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True)
    service_level = Column(String, nullable=False, default='level1')
    monthly_meetings_used = Column(Integer, nullable=False, default=0)
    last_quota_reset = Column(Date, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class ServicePolicy(Base):
    """Overrides of the configured level1 quota defaults.

    level2 never auto-approves and premium always does, whatever is stored.
    """
    __tablename__ = "service_policies"

    id = Column(Integer, primary_key=True)
    level = Column(String, unique=True, nullable=False)
    monthly_auto_approve = Column(Integer, nullable=False)
    monthly_cap = Column(Integer, nullable=True)  # None: uncapped
