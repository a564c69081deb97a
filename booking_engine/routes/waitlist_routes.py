from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, field_validator
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from booking_engine.auth.dependencies import require_job_trigger
from booking_engine.core import config
from booking_engine.core.errors import BadRequestError, BookingError, to_http_exception
from booking_engine.core.outbox import PostCommitTasks
from booking_engine.core.slot_cache import SlotCache
from booking_engine.core.timeutil import isoformat_utc
from booking_engine.database import get_db
from booking_engine.models.waitlist import WaitlistEntry
from booking_engine.routes.dependencies import (
    database_unavailable,
    ensure_database_ready,
    get_post_commit_tasks,
    get_slot_cache,
)
from booking_engine.services import waitlist_manager

router = APIRouter(prefix='/waitlist', tags=['waitlist'])


class JoinWaitlistRequest(BaseModel):
    teacher_id: int
    student_id: int
    slot: datetime
    subject: str = 'general'
    duration_minutes: int = config.DEFAULT_DURATION_MINUTES

    class Config:
        alias_generator = to_camel
        populate_by_name = True

    @field_validator('subject')
    @classmethod
    def validate_subject(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Subject is required.')
        return normalized

    @field_validator('duration_minutes')
    @classmethod
    def validate_duration(cls, value: int) -> int:
        if not config.MIN_DURATION_MINUTES <= value <= config.MAX_DURATION_MINUTES:
            raise ValueError(
                f'durationMinutes must be between {config.MIN_DURATION_MINUTES} and {config.MAX_DURATION_MINUTES}.'
            )
        return value


class PromoteRequest(BaseModel):
    teacher_id: int | None = None
    slot: datetime | None = None
    limit: int | None = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class WaitlistEntryResponse(BaseModel):
    id: int
    teacher_id: int
    student_id: int
    slot: str
    subject: str
    duration_minutes: int
    status: str
    created_at: str
    appointment_id: int | None = None
    position: int | None = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class WaitlistPositionResponse(BaseModel):
    teacher_id: int
    student_id: int
    slot: str
    total: int
    position: int | None = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True


def build_entry_response(entry: WaitlistEntry, position: int | None = None) -> WaitlistEntryResponse:
    return WaitlistEntryResponse(
        id=entry.id,
        teacher_id=entry.teacher_id,
        student_id=entry.student_id,
        slot=isoformat_utc(entry.slot),
        subject=entry.subject,
        duration_minutes=entry.duration_minutes,
        status=entry.status,
        created_at=isoformat_utc(entry.created_at),
        appointment_id=entry.appointment_id,
        position=position,
    )


@router.post('/join', response_model=WaitlistEntryResponse, status_code=status.HTTP_201_CREATED)
def join_waitlist(data: JoinWaitlistRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        entry = waitlist_manager.join(
            db,
            data.teacher_id,
            data.slot,
            data.student_id,
            subject=data.subject,
            duration_minutes=data.duration_minutes,
        )
        position = waitlist_manager.position(db, entry.teacher_id, entry.slot, entry.student_id)
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    return build_entry_response(entry, position)


@router.get('/position', response_model=WaitlistPositionResponse)
def get_waitlist_position(
    teacher_id: int = Query(..., alias='teacherId'),
    slot: datetime = Query(...),
    student_id: int = Query(..., alias='studentId'),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        position = waitlist_manager.position(db, teacher_id, slot, student_id)
        total = waitlist_manager.queue_length(db, teacher_id, slot)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    return WaitlistPositionResponse(
        teacher_id=teacher_id,
        student_id=student_id,
        slot=isoformat_utc(slot),
        total=total,
        position=position,
    )


@router.delete('/{entry_id}', status_code=status.HTTP_204_NO_CONTENT)
def leave_waitlist(
    entry_id: int,
    student_id: int = Query(..., alias='studentId'),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        waitlist_manager.leave(db, entry_id, student_id)
    except BookingError as exc:
        raise to_http_exception(exc) from exc


@router.post('/promote')
def promote_waitlist(
    data: PromoteRequest | None = None,
    db: Session = Depends(get_db),
    slot_cache: SlotCache = Depends(get_slot_cache),
    tasks: PostCommitTasks = Depends(get_post_commit_tasks),
    _caller: str = Depends(require_job_trigger),
):
    ensure_database_ready()
    data = data or PromoteRequest()

    try:
        if data.teacher_id is not None and data.slot is not None:
            entry = waitlist_manager.promote(db, data.teacher_id, data.slot, slot_cache=slot_cache, tasks=tasks)
            if entry is None:
                return {'promoted': 0}
            return {'promoted': 1, 'entry': build_entry_response(entry).model_dump(by_alias=True)}

        if data.teacher_id is not None or data.slot is not None:
            raise BadRequestError('teacherId and slot must be given together.')

        result = waitlist_manager.promote_open_slots(db, limit=data.limit, slot_cache=slot_cache, tasks=tasks)
    except BookingError as exc:
        raise to_http_exception(exc) from exc

    return result.to_dict()


@router.post('/expire')
def expire_waitlist(
    limit: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    tasks: PostCommitTasks = Depends(get_post_commit_tasks),
    _caller: str = Depends(require_job_trigger),
):
    ensure_database_ready()

    try:
        result = waitlist_manager.expire(db, limit=limit, tasks=tasks)
    except BookingError as exc:
        raise to_http_exception(exc) from exc

    return result.to_dict()
