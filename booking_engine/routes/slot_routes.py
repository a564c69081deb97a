from datetime import date

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from booking_engine.core import config
from booking_engine.core.errors import BookingError, TeacherNotFoundError, to_http_exception
from booking_engine.core.slot_cache import SlotCache
from booking_engine.core.timeutil import isoformat_utc
from booking_engine.database import get_db
from booking_engine.models.teacher import Teacher
from booking_engine.routes.dependencies import database_unavailable, ensure_database_ready, get_slot_cache
from booking_engine.services.availability_resolver import compute_slots

router = APIRouter(tags=['slots'])


class SlotsResponse(BaseModel):
    teacher_id: int
    date: date
    duration: int
    slots: list[str]

    class Config:
        alias_generator = to_camel
        populate_by_name = True


def list_teacher_slots(db: Session, slot_cache: SlotCache, teacher_id: int, slot_date: date, duration: int) -> list[str]:
    teacher = db.get(Teacher, teacher_id)
    if teacher is None or not teacher.is_active:
        raise TeacherNotFoundError()

    cached = slot_cache.get(teacher.id, slot_date, duration)
    if cached is not None:
        return cached

    slots = [isoformat_utc(slot) for slot in compute_slots(db, teacher, slot_date, duration)]
    slot_cache.set(teacher.id, slot_date, duration, slots)
    return slots


@router.get('/slots', response_model=SlotsResponse)
def get_slots(
    teacher_id: int = Query(..., alias='teacherId'),
    slot_date: date = Query(..., alias='date'),
    duration: int = Query(default=config.DEFAULT_DURATION_MINUTES),
    db: Session = Depends(get_db),
    slot_cache: SlotCache = Depends(get_slot_cache),
):
    ensure_database_ready()

    try:
        slots = list_teacher_slots(db, slot_cache, teacher_id, slot_date, duration)
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    return SlotsResponse(teacher_id=teacher_id, date=slot_date, duration=duration, slots=slots)
