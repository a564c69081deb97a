from datetime import datetime, timedelta, timezone

import jwt

from booking_engine.core import config

JOB_TOKEN_SUBJECT = "job-trigger"


def create_job_token(job_name: str = "*", expires_minutes: int | None = None) -> str:
    if not config.JOB_TRIGGER_SECRET:
        raise RuntimeError("JOB_TRIGGER_SECRET is not configured.")
    expire_minutes = expires_minutes or config.JOB_TOKEN_EXPIRES_MINUTES
    now = datetime.now(timezone.utc)
    payload = {"sub": JOB_TOKEN_SUBJECT, "job": job_name, "exp": now + timedelta(minutes=expire_minutes), "iat": now}
    return jwt.encode(payload, config.JOB_TRIGGER_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_job_token(token: str) -> dict:
    payload = jwt.decode(token, config.JOB_TRIGGER_SECRET, algorithms=[config.JWT_ALGORITHM])
    if payload.get("sub") != JOB_TOKEN_SUBJECT:
        raise jwt.InvalidTokenError("Token was not issued for job triggers")
    return payload
