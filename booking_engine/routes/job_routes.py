from fastapi import APIRouter, Depends, Query
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from booking_engine.auth.dependencies import require_job_trigger
from booking_engine.core.errors import BookingError, to_http_exception
from booking_engine.core.outbox import FailedTaskQueue, PostCommitTasks
from booking_engine.core.slot_cache import SlotCache
from booking_engine.database import get_db
from booking_engine.routes.dependencies import (
    database_unavailable,
    ensure_database_ready,
    get_failed_task_queue,
    get_post_commit_tasks,
    get_slot_cache,
)
from booking_engine.services import booking_transaction, quota_tracker

router = APIRouter(prefix='/jobs', tags=['jobs'], dependencies=[Depends(require_job_trigger)])


@router.post('/quota/reset')
def reset_quota(force: bool = Query(default=False), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        result = quota_tracker.reset_monthly_quotas(db, force=force)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return result.to_dict()


@router.post('/appointments/expire')
def expire_pending_appointments(
    limit: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    slot_cache: SlotCache = Depends(get_slot_cache),
    tasks: PostCommitTasks = Depends(get_post_commit_tasks),
):
    ensure_database_ready()

    try:
        result = booking_transaction.expire_stale_appointments(db, limit=limit, slot_cache=slot_cache, tasks=tasks)
    except BookingError as exc:
        raise to_http_exception(exc) from exc

    return result.to_dict()


@router.post('/outbox/retry')
def retry_failed_side_effects(failed_tasks: FailedTaskQueue = Depends(get_failed_task_queue)):
    return failed_tasks.retry().to_dict()
