import hmac
import logging

import jwt
from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from booking_engine.auth import jwt_handler
from booking_engine.core import config
from booking_engine.core.errors import ErrorCode

security = HTTPBearer(auto_error=False)

logger = logging.getLogger(__name__)


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(status_code=401, detail={"error": ErrorCode.UNAUTHORIZED.value, "message": message})


def _matches_secret(candidate: str | None) -> bool:
    if not candidate:
        return False
    return hmac.compare_digest(candidate.encode(), config.JOB_TRIGGER_SECRET.encode())


def require_job_trigger(
    x_job_secret: str | None = Header(default=None),
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> str:
    """Guard for maintenance routes. Returns a label for the caller."""
    if not config.JOB_TRIGGER_SECRET:
        if config.is_production():
            raise _unauthorized("Job triggers are disabled: JOB_TRIGGER_SECRET is not configured.")
        return "unconfigured"

    if _matches_secret(x_job_secret):
        return "secret"

    if credentials is None:
        raise _unauthorized("Missing job trigger credentials")

    token = credentials.credentials
    if _matches_secret(token):
        return "secret"

    try:
        payload = jwt_handler.decode_job_token(token)
    except jwt.InvalidTokenError as exc:
        logger.info("Rejected job trigger token: %s", exc)
        raise _unauthorized("Invalid job trigger token") from exc

    return f"token:{payload.get('job', '*')}"
