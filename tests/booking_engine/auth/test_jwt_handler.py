import jwt
import pytest

from booking_engine.auth import jwt_handler
from booking_engine.core import config


def test_job_token_round_trip(monkeypatch) -> None:
    monkeypatch.setattr(config, 'JOB_TRIGGER_SECRET', 'job-secret')

    payload = jwt_handler.decode_job_token(jwt_handler.create_job_token('waitlist-expire'))

    assert payload['sub'] == jwt_handler.JOB_TOKEN_SUBJECT
    assert payload['job'] == 'waitlist-expire'


def test_token_for_other_subject_is_rejected(monkeypatch) -> None:
    monkeypatch.setattr(config, 'JOB_TRIGGER_SECRET', 'job-secret')
    token = jwt.encode({'sub': 'student@example.edu'}, 'job-secret', algorithm=config.JWT_ALGORITHM)

    with pytest.raises(jwt.InvalidTokenError):
        jwt_handler.decode_job_token(token)


def test_expired_token_is_rejected(monkeypatch) -> None:
    monkeypatch.setattr(config, 'JOB_TRIGGER_SECRET', 'job-secret')
    token = jwt_handler.create_job_token(expires_minutes=-1)

    with pytest.raises(jwt.ExpiredSignatureError):
        jwt_handler.decode_job_token(token)


def test_token_cannot_be_issued_without_secret(monkeypatch) -> None:
    monkeypatch.setattr(config, 'JOB_TRIGGER_SECRET', '')

    with pytest.raises(RuntimeError):
        jwt_handler.create_job_token()
