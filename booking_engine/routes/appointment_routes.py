from datetime import datetime

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, field_validator
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from booking_engine.core import config
from booking_engine.core.errors import BookingError, to_http_exception
from booking_engine.core.outbox import PostCommitTasks
from booking_engine.core.slot_cache import SlotCache
from booking_engine.core.timeutil import isoformat_utc
from booking_engine.database import get_db
from booking_engine.models import appointment as appointment_status
from booking_engine.models.appointment import Appointment
from booking_engine.routes.dependencies import ensure_database_ready, get_post_commit_tasks, get_slot_cache
from booking_engine.services import booking_transaction, waitlist_manager

router = APIRouter(tags=['appointments'])

MAX_SUBJECT_LENGTH = 200


class CreateAppointmentRequest(BaseModel):
    student_id: int
    teacher_id: int
    subject: str
    scheduled_time: datetime
    duration_minutes: int = config.DEFAULT_DURATION_MINUTES
    idempotency_key: str

    class Config:
        alias_generator = to_camel
        populate_by_name = True

    @field_validator('subject')
    @classmethod
    def validate_subject(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Subject is required.')
        if len(normalized) > MAX_SUBJECT_LENGTH:
            raise ValueError(f'Subject must be {MAX_SUBJECT_LENGTH} characters or fewer.')
        return normalized

    @field_validator('idempotency_key')
    @classmethod
    def validate_idempotency_key(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('idempotencyKey is required.')
        if normalized.startswith(booking_transaction.RESERVED_KEY_PREFIX):
            raise ValueError(f"idempotencyKey cannot start with '{booking_transaction.RESERVED_KEY_PREFIX}'.")
        return normalized


class UpdateAppointmentRequest(BaseModel):
    action: str

    @field_validator('action')
    @classmethod
    def validate_action(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in booking_transaction.TRANSITIONS:
            raise ValueError(f"action must be one of: {', '.join(booking_transaction.TRANSITIONS)}.")
        return normalized


class AppointmentResponse(BaseModel):
    id: int
    teacher_id: int
    student_id: int
    subject: str
    scheduled_time: str
    duration_minutes: int
    status: str
    approval_required: bool
    approved_at: str | None = None
    idempotency_key: str
    created_at: str
    promoted_waitlist_entry_id: int | None = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True


def build_appointment_response(appointment: Appointment, promoted_entry_id: int | None = None) -> AppointmentResponse:
    return AppointmentResponse(
        id=appointment.id,
        teacher_id=appointment.teacher_id,
        student_id=appointment.student_id,
        subject=appointment.subject,
        scheduled_time=isoformat_utc(appointment.scheduled_time),
        duration_minutes=appointment.duration_minutes,
        status=appointment.status,
        approval_required=bool(appointment.approval_required),
        approved_at=isoformat_utc(appointment.approved_at) if appointment.approved_at else None,
        idempotency_key=appointment.idempotency_key,
        created_at=isoformat_utc(appointment.created_at),
        promoted_waitlist_entry_id=promoted_entry_id,
    )


@router.post('/appointments', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    data: CreateAppointmentRequest,
    response: Response,
    db: Session = Depends(get_db),
    slot_cache: SlotCache = Depends(get_slot_cache),
    tasks: PostCommitTasks = Depends(get_post_commit_tasks),
):
    ensure_database_ready()

    try:
        result = booking_transaction.create_appointment(
            db,
            student_id=data.student_id,
            teacher_id=data.teacher_id,
            subject=data.subject,
            scheduled_time=data.scheduled_time,
            duration_minutes=data.duration_minutes,
            idempotency_key=data.idempotency_key,
            slot_cache=slot_cache,
            tasks=tasks,
        )
    except BookingError as exc:
        raise to_http_exception(exc) from exc

    if not result.created:
        response.status_code = status.HTTP_200_OK
    return build_appointment_response(result.appointment)


@router.patch('/appointments/{appointment_id}', response_model=AppointmentResponse)
def update_appointment(
    appointment_id: int,
    data: UpdateAppointmentRequest,
    db: Session = Depends(get_db),
    slot_cache: SlotCache = Depends(get_slot_cache),
    tasks: PostCommitTasks = Depends(get_post_commit_tasks),
):
    ensure_database_ready()

    try:
        appointment = booking_transaction.transition_appointment(
            db,
            appointment_id,
            data.action,
            slot_cache=slot_cache,
            tasks=tasks,
        )
    except BookingError as exc:
        raise to_http_exception(exc) from exc

    promoted_entry_id = None
    if appointment.status == appointment_status.CANCELLED:
        promoted = waitlist_manager.promote_after_cancellation(db, appointment, slot_cache=slot_cache, tasks=tasks)
        if promoted is not None:
            promoted_entry_id = promoted.id

    return build_appointment_response(appointment, promoted_entry_id)
