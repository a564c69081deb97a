import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from booking_engine.core import config
from booking_engine.core.errors import ErrorCode
from booking_engine.core.outbox import FailedTaskQueue
from booking_engine.core.slot_cache import SlotCache
from booking_engine.database import Base, engine, ensure_engine_schema
from booking_engine.models import appointment, availability, student, teacher, waitlist  # noqa: F401
from booking_engine.routes import appointment_routes, job_routes, slot_routes, waitlist_routes

logging.basicConfig(
    level=config.LOG_LEVEL.upper(),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)

app = FastAPI(title='Booking Engine')

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

app.state.slot_cache = SlotCache()
app.state.failed_tasks = FailedTaskQueue()

logger = logging.getLogger(__name__)


@app.on_event('startup')
def initialize_database() -> None:
    config.validate_runtime_config()
    try:
        Base.metadata.create_all(bind=engine)
        ensure_engine_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    messages = []
    for error in exc.errors():
        location = '.'.join(str(part) for part in error.get('loc', ()) if part != 'body')
        messages.append(f"{location}: {error.get('msg')}" if location else error.get('msg'))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={'detail': {'error': ErrorCode.BAD_REQUEST.value, 'message': '; '.join(messages)}},
    )


@app.get('/')
def root():
    return {'status': 'Booking Engine API Running'}


app.include_router(slot_routes.router)
app.include_router(appointment_routes.router)
app.include_router(waitlist_routes.router)
app.include_router(job_routes.router)
