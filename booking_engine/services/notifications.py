"""
Email notifications for booking and waitlist events, sent over SMTP.

These run from the post-commit task list, never inside a transaction. A send
that is skipped (no SMTP credentials, no recipient) returns False; a send that
fails raises so the task list can record it for a retry.
"""
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from zoneinfo import ZoneInfo

from booking_engine.core import config
from booking_engine.core.timeutil import isoformat_utc

logger = logging.getLogger(__name__)


def _from_address() -> str:
    if config.NOTIFY_FROM.strip():
        return config.NOTIFY_FROM.strip()
    user = config.SMTP_USER.strip()
    if user:
        return f"Meeting Scheduler <{user}>"
    return "Meeting Scheduler <noreply@localhost>"


def send_email(to_email: str | None, subject: str, body: str) -> bool:
    to_email = (to_email or "").strip()
    if not to_email:
        return False
    user = config.SMTP_USER.strip()
    password = config.SMTP_PASSWORD.strip()
    if not user or not password:
        logger.debug("SMTP_USER or SMTP_PASSWORD not set; skipping email to %s", to_email)
        return False

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = _from_address()
    msg["To"] = to_email
    msg.attach(MIMEText(body, "plain"))

    with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=config.SMTP_TIMEOUT_SECONDS) as server:
        if config.SMTP_STARTTLS:
            server.starttls()
        server.login(user, password)
        server.sendmail(user, [to_email], msg.as_string())
    logger.info("Email '%s' sent to %s", subject, to_email)
    return True


def build_meeting_payload(appointment, teacher, student) -> dict:
    """Snapshot the fields a notification needs, detached from the ORM session."""
    return {
        'appointment_id': appointment.id,
        'status': appointment.status,
        'subject': appointment.subject,
        'scheduled_time': appointment.scheduled_time,
        'duration_minutes': appointment.duration_minutes,
        'teacher_name': teacher.name,
        'teacher_email': teacher.email,
        'teacher_timezone': teacher.timezone or 'UTC',
        'student_name': student.name,
        'student_email': student.email,
    }


def format_local_time(payload: dict) -> str:
    scheduled = payload['scheduled_time'].replace(tzinfo=ZoneInfo('UTC'))
    local = scheduled.astimezone(ZoneInfo(payload.get('teacher_timezone') or 'UTC'))
    return f"{local:%Y-%m-%d %H:%M} ({local.tzname()}, {isoformat_utc(scheduled)})"


def _meeting_lines(payload: dict) -> list[str]:
    return [
        f"Teacher: {payload['teacher_name']}",
        f"Student: {payload['student_name']}",
        f"Subject: {payload['subject']}",
        f"Time: {format_local_time(payload)}",
        f"Duration: {payload['duration_minutes']} minutes",
    ]


def notify_appointment_created(payload: dict) -> None:
    details = "\n".join(_meeting_lines(payload))
    if payload['status'] == 'approved':
        send_email(payload['student_email'], "Appointment confirmed", f"Your appointment is confirmed.\n\n{details}")
        send_email(payload['teacher_email'], "New appointment booked", f"A new appointment was booked.\n\n{details}")
        return

    send_email(
        payload['student_email'],
        "Appointment request submitted",
        f"Your request was sent to the teacher for approval.\n\n{details}",
    )
    send_email(
        payload['teacher_email'],
        "New appointment request",
        f"A student requested an appointment that needs your approval.\n\n{details}",
    )


def notify_appointment_status_changed(payload: dict) -> None:
    details = "\n".join(_meeting_lines(payload))
    status = payload['status']
    subject = f"Appointment {status.replace('_', ' ')}"
    send_email(payload['student_email'], subject, f"Your appointment is now {status}.\n\n{details}")
    if status in ('cancelled', 'expired'):
        send_email(payload['teacher_email'], subject, f"An appointment is now {status}.\n\n{details}")


def notify_waitlist_promoted(payload: dict) -> None:
    details = "\n".join(_meeting_lines(payload))
    send_email(
        payload['student_email'],
        "You got the slot from the waitlist",
        f"A slot you were waiting for opened up and was booked for you.\n\n{details}",
    )


def notify_waitlist_expired(payload: dict) -> None:
    send_email(
        payload['student_email'],
        "Waitlist entry expired",
        (
            f"Dear {payload['student_name'] or 'student'},\n\n"
            f"Your waitlist entry with {payload['teacher_name']} for {isoformat_utc(payload['slot'])} "
            "has expired. You can book another time or another teacher."
        ),
    )
