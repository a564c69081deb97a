"""Error taxonomy shared by the scheduling services and the HTTP layer."""

from enum import Enum

from fastapi import HTTPException, status


class ErrorCode(str, Enum):
    BAD_REQUEST = 'BAD_REQUEST'
    UNAUTHORIZED = 'UNAUTHORIZED'
    NOT_FOUND = 'NOT_FOUND'
    TEACHER_NOT_FOUND = 'TEACHER_NOT_FOUND'
    STUDENT_NOT_FOUND = 'STUDENT_NOT_FOUND'
    SLOT_TAKEN = 'SLOT_TAKEN'
    QUOTA_EXCEEDED = 'QUOTA_EXCEEDED'
    MAX_DAILY_REACHED = 'MAX_DAILY_REACHED'
    STATE_CONFLICT = 'STATE_CONFLICT'
    IDEMPOTENT_CONFLICT = 'IDEMPOTENT_CONFLICT'
    WAITLIST_DUPLICATE = 'WAITLIST_DUPLICATE'
    DB_UNAVAILABLE = 'DB_UNAVAILABLE'


HTTP_STATUS_BY_CODE = {
    ErrorCode.BAD_REQUEST: status.HTTP_400_BAD_REQUEST,
    ErrorCode.UNAUTHORIZED: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.TEACHER_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.STUDENT_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.SLOT_TAKEN: status.HTTP_409_CONFLICT,
    ErrorCode.QUOTA_EXCEEDED: status.HTTP_409_CONFLICT,
    ErrorCode.MAX_DAILY_REACHED: status.HTTP_409_CONFLICT,
    ErrorCode.STATE_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.IDEMPOTENT_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.WAITLIST_DUPLICATE: status.HTTP_409_CONFLICT,
    ErrorCode.DB_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}

RETRYABLE_CODES = frozenset({ErrorCode.DB_UNAVAILABLE})


class BookingError(Exception):
    code = ErrorCode.BAD_REQUEST
    default_message = 'Invalid request.'

    def __init__(self, message: str | None = None, code: ErrorCode | None = None):
        if code is not None:
            self.code = code
        self.message = message or self.default_message
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return self.code in RETRYABLE_CODES

    def to_dict(self) -> dict:
        return {'error': self.code.value, 'message': self.message}


class BadRequestError(BookingError):
    code = ErrorCode.BAD_REQUEST


class NotFoundError(BookingError):
    code = ErrorCode.NOT_FOUND
    default_message = 'Resource not found.'


class TeacherNotFoundError(BookingError):
    code = ErrorCode.TEACHER_NOT_FOUND
    default_message = 'Teacher not found.'


class StudentNotFoundError(BookingError):
    code = ErrorCode.STUDENT_NOT_FOUND
    default_message = 'Student not found or inactive.'


class SlotTakenError(BookingError):
    code = ErrorCode.SLOT_TAKEN
    default_message = 'This time has already been booked. Please choose another slot.'


class QuotaExceededError(BookingError):
    code = ErrorCode.QUOTA_EXCEEDED
    default_message = 'Monthly appointment quota exceeded.'


class MaxDailyReachedError(BookingError):
    code = ErrorCode.MAX_DAILY_REACHED
    default_message = 'Teacher has reached maximum daily appointments.'


class StateConflictError(BookingError):
    code = ErrorCode.STATE_CONFLICT
    default_message = 'Cannot perform this action on current appointment status.'


class IdempotentConflictError(BookingError):
    code = ErrorCode.IDEMPOTENT_CONFLICT
    default_message = 'Idempotency key was already used with different request parameters.'


class WaitlistDuplicateError(BookingError):
    code = ErrorCode.WAITLIST_DUPLICATE
    default_message = 'Student already in waitlist for this slot.'


class DatabaseUnavailableError(BookingError):
    code = ErrorCode.DB_UNAVAILABLE
    default_message = 'Database unavailable. Retry the request.'


def to_http_exception(error: BookingError) -> HTTPException:
    return HTTPException(
        status_code=HTTP_STATUS_BY_CODE[error.code],
        detail=error.to_dict(),
    )
