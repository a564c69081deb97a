"""
Quota Tracker

Monthly meeting consumption per student:
- level1 auto-approves while under its auto-approve limit and is capped
- level2 always waits for manual approval, uncapped
- premium always auto-approves, uncapped

The monthly counter is reset lazily the first time a booking observes a
reset date before the current month; ``reset_monthly_quotas`` performs the
same reset eagerly for every student.
"""

import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from booking_engine.core import config
from booking_engine.core.batch import BatchResult
from booking_engine.core.timeutil import first_of_month, utcnow
from booking_engine.models.student import ServicePolicy, Student

logger = logging.getLogger(__name__)

RESET_CHUNK_SIZE = 500


@dataclass(frozen=True)
class QuotaPolicy:
    auto_approve_limit: int | None  # None: always auto-approve
    monthly_cap: int | None  # None: uncapped


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    auto_approved: bool


def policy_for(db: Session, service_level: str) -> QuotaPolicy:
    if service_level == 'premium':
        return QuotaPolicy(auto_approve_limit=None, monthly_cap=None)
    if service_level == 'level2':
        return QuotaPolicy(auto_approve_limit=0, monthly_cap=None)

    stored = db.query(ServicePolicy).filter(ServicePolicy.level == 'level1').first()
    if stored is not None:
        return QuotaPolicy(auto_approve_limit=stored.monthly_auto_approve, monthly_cap=stored.monthly_cap)
    return QuotaPolicy(auto_approve_limit=config.LEVEL1_AUTO_APPROVE, monthly_cap=config.LEVEL1_MONTHLY_CAP)


def apply_lazy_reset(db: Session, student: Student, today: date) -> bool:
    month_start = first_of_month(today)
    if student.last_quota_reset >= month_start:
        return False

    # Conditional so that concurrent observers reset the counter only once.
    result = db.execute(
        update(Student)
        .where(Student.id == student.id, Student.last_quota_reset < month_start)
        .values(monthly_meetings_used=0, last_quota_reset=month_start)
        .execution_options(synchronize_session=False)
    )
    db.refresh(student)

    if result.rowcount:
        logger.info('Monthly quota reset for student %s', student.id)
    return bool(result.rowcount)


def consume(db: Session, student: Student, today: date | None = None) -> QuotaDecision:
    today = today or utcnow().date()
    apply_lazy_reset(db, student, today)

    policy = policy_for(db, student.service_level)
    used = student.monthly_meetings_used or 0

    if policy.monthly_cap is not None and used >= policy.monthly_cap:
        return QuotaDecision(allowed=False, auto_approved=False)

    if policy.auto_approve_limit is None:
        return QuotaDecision(allowed=True, auto_approved=True)

    return QuotaDecision(allowed=True, auto_approved=used < policy.auto_approve_limit)


def record_approval(db: Session, student_id: int) -> None:
    db.execute(
        update(Student)
        .where(Student.id == student_id)
        .values(monthly_meetings_used=Student.monthly_meetings_used + 1)
        .execution_options(synchronize_session=False)
    )


def reset_monthly_quotas(db: Session, today: date | None = None, force: bool = False) -> BatchResult:
    """Reset every student whose counter belongs to an earlier month.

    With ``force`` every student is reset, even one already reset this month.
    """
    today = today or utcnow().date()
    month_start = first_of_month(today)
    result = BatchResult()
    last_id = 0

    while True:
        query = db.query(Student.id).filter(Student.id > last_id)
        if not force:
            query = query.filter(Student.last_quota_reset < month_start)
        student_ids = [row[0] for row in query.order_by(Student.id.asc()).limit(RESET_CHUNK_SIZE).all()]
        if not student_ids:
            break

        for student_id in student_ids:
            statement = update(Student).where(Student.id == student_id)
            if not force:
                statement = statement.where(Student.last_quota_reset < month_start)
            try:
                updated = db.execute(
                    statement
                    .values(monthly_meetings_used=0, last_quota_reset=month_start)
                    .execution_options(synchronize_session=False)
                ).rowcount
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                logger.exception('Quota reset failed for student %s', student_id)
                result.record_failure(student_id, exc)
                continue

            if updated:
                result.record_success(student_id)

        last_id = student_ids[-1]

    logger.info('Quota reset finished: %s reset, %s failed', result.succeeded, result.failed)
    return result
