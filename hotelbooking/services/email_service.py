import logging
from datetime import datetime, timezone
import smtplib
from email.message import EmailMessage
from sqlalchemy.orm import Session
import requests

from hotelbooking.core.config import settings
from hotelbooking.models.email_log import EmailLog

logger = logging.getLogger(__name__)


def queue_email(db: Session, to_email: str, subject: str, body: str, related_booking_code: str = "") -> int:
    """Queue and attempt immediate send. Body is stored so the worker can retry on failure."""
    log = EmailLog(
        to_email=to_email,
        subject=subject,
        body=body,
        status="queued",
        related_booking_code=related_booking_code,
    )
    db.add(log)
    db.commit()
    eid = log.id

    try:
        send_email(to_email, subject, body)
        log = db.get(EmailLog, eid)
        if log:
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            db.commit()
    except Exception:
        logger.warning("email %s to %s failed; left for retry", eid, to_email, exc_info=True)
        log = db.get(EmailLog, eid)
        if log:
            log.status = "failed"
            db.commit()
        # Worker will retry via process_email_queue

    return eid


def send_email(to_email: str, subject: str, body: str):
    """Send email via SendGrid if configured, otherwise SMTP (MailHog recommended for local)."""

    if settings.SENDGRID_API_KEY:
        _send_via_sendgrid(to_email, subject, body)
        return

    msg = EmailMessage()
    msg["From"] = settings.SMTP_FROM
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body)

    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=10) as smtp:
        if settings.SMTP_USERNAME:
            smtp.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
        smtp.send_message(msg)


def _send_via_sendgrid(to_email: str, subject: str, body: str):
    from_email = settings.SENDGRID_FROM_EMAIL or settings.SMTP_FROM
    payload = {
        "personalizations": [{"to": [{"email": to_email}]}],
        "from": {"email": from_email},
        "subject": subject,
        "content": [{"type": "text/plain", "value": body}],
    }
    r = requests.post(
        "https://api.sendgrid.com/v3/mail/send",
        json=payload,
        headers={"Authorization": f"Bearer {settings.SENDGRID_API_KEY}"},
        timeout=20,
    )
    if r.status_code >= 400:
        raise RuntimeError(f"SendGrid error {r.status_code}: {r.text}")


def render_booking_summary(summary: dict) -> str:
    lines = [
        f"Booking code: {summary.get('booking_code', '')}",
        f"Hotel: {summary.get('hotel_name', '')}",
        f"Room type: {summary.get('room_type_name', '')}",
        f"Check-in: {summary.get('check_in_date', '')}",
        f"Check-out: {summary.get('check_out_date', '')}",
        f"Nights: {summary.get('nights', '')}",
        f"Total: {summary.get('final_price', '')} VND",
        f"Payment: {summary.get('payment_method', '')} ({summary.get('payment_status', '')})",
    ]
    return "\n".join(lines)


def send_booking_confirmation(db: Session, email: str, summary: dict) -> bool:
    """Best-effort: returns False if the immediate send failed (the queue retries it)."""
    code = summary.get("booking_code", "")
    body = (
        f"Dear {summary.get('guest_name') or 'guest'},\n\n"
        "Your booking is confirmed.\n\n"
        f"{render_booking_summary(summary)}\n"
    )
    eid = queue_email(db, email, f"Booking confirmed: {code}", body, related_booking_code=code)
    log = db.get(EmailLog, eid)
    return bool(log and log.status == "sent")


def send_manager_notification(db: Session, email: str, summary: dict) -> bool:
    code = summary.get("booking_code", "")
    body = (
        "A new booking has been confirmed at your hotel.\n\n"
        f"Guest: {summary.get('guest_name', '')} <{summary.get('guest_email', '')}>\n"
        f"{render_booking_summary(summary)}\n"
    )
    eid = queue_email(db, email, f"New confirmed booking {code}", body, related_booking_code=code)
    log = db.get(EmailLog, eid)
    return bool(log and log.status == "sent")


def process_pending_emails(db: Session, limit: int = 50) -> dict:
    """Process up to `limit` queued or failed emails; retry send and update status. Returns counts."""
    pending = (
        db.query(EmailLog)
        .filter(EmailLog.status.in_(["queued", "failed"]), EmailLog.body.isnot(None), EmailLog.body != "")
        .order_by(EmailLog.created_at.asc())
        .limit(limit)
        .all()
    )
    sent, failed = 0, 0
    for log in pending:
        try:
            send_email(log.to_email, log.subject, log.body)
            log.status = "sent"
            log.sent_at = datetime.now(timezone.utc)
            sent += 1
        except Exception:
            logger.warning("retry of email %s failed", log.id, exc_info=True)
            log.status = "failed"
            failed += 1
    if pending:
        db.commit()
    return {"processed": len(pending), "sent": sent, "failed": failed}
