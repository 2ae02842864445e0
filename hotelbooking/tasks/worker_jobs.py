import logging

from sqlalchemy.orm import Session
from sqlalchemy.exc import ProgrammingError
from hotelbooking.db.session import SessionLocal
from hotelbooking.services import outbox_service, lifecycle_service
from hotelbooking.services.email_service import process_pending_emails

logger = logging.getLogger(__name__)


def _run(fn, **kwargs) -> dict:
    db: Session = SessionLocal()
    try:
        try:
            return fn(db, **kwargs)
        except ProgrammingError:
            # DB not migrated yet; don't crash the worker.
            db.rollback()
            logger.warning("%s skipped: tables missing", fn.__name__)
            return {"skipped": True, "reason": "missing_tables"}
    finally:
        db.close()


def process_outbox(limit: int = 100) -> dict:
    """Retry pending/failed side-effect events (loyalty, confirmation e-mail, room status, refunds)."""
    return _run(outbox_service.process_outbox, limit=limit)


def process_email_queue(limit: int = 50) -> dict:
    """Process queued/failed emails (retry send). Run periodically via Celery beat."""
    return _run(process_pending_emails, limit=limit)


def advance_booking_lifecycle() -> dict:
    return _run(lifecycle_service.advance_booking_lifecycle)


def expire_pending_bookings() -> dict:
    return _run(lifecycle_service.expire_pending_bookings)
