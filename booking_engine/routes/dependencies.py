from fastapi import BackgroundTasks, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError

from booking_engine.core.errors import ErrorCode
from booking_engine.database import ensure_engine_schema
from booking_engine.core.outbox import FailedTaskQueue, PostCommitTasks
from booking_engine.core.slot_cache import SlotCache

DB_UNAVAILABLE_DETAIL = {
    'error': ErrorCode.DB_UNAVAILABLE.value,
    'message': 'Database unavailable. Verify DATABASE_URL and database credentials.',
}


def database_unavailable() -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=DB_UNAVAILABLE_DETAIL)


def ensure_database_ready() -> None:
    try:
        ensure_engine_schema()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


def get_slot_cache(request: Request) -> SlotCache:
    slot_cache = getattr(request.app.state, 'slot_cache', None)
    if slot_cache is None:
        slot_cache = SlotCache()
        request.app.state.slot_cache = slot_cache
    return slot_cache


def get_failed_task_queue(request: Request) -> FailedTaskQueue:
    failed_tasks = getattr(request.app.state, 'failed_tasks', None)
    if failed_tasks is None:
        failed_tasks = FailedTaskQueue()
        request.app.state.failed_tasks = failed_tasks
    return failed_tasks


def get_post_commit_tasks(request: Request, background_tasks: BackgroundTasks) -> PostCommitTasks:
    # Tasks queued while the handler runs are flushed after the response is sent;
    # failures land in the shared queue for the retry job.
    tasks = PostCommitTasks(failed_queue=get_failed_task_queue(request))
    background_tasks.add_task(tasks.run)
    return tasks
