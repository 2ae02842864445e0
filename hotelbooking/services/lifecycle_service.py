import logging
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import update
from sqlalchemy.orm import Session

from hotelbooking.core.config import settings
from hotelbooking.models.booking import Booking
from hotelbooking.services.audit_service import log_audit

logger = logging.getLogger(__name__)

CHECK_IN_HOUR = 14
CHECK_OUT_HOUR = 12


def _past(column, today, hour: int, now_hour: int):
    # Date column whose hotel-time instant (date + hour) is not in the future
    if now_hour >= hour:
        return column <= today
    return column < today


def advance_booking_lifecycle(db: Session, now: datetime | None = None) -> dict:
    """confirmed -> in_progress after check-in time; confirmed|in_progress -> completed after check-out time."""
    local = (now or datetime.now(timezone.utc)).astimezone(ZoneInfo(settings.TIMEZONE))
    today = local.date()

    completed = db.execute(
        update(Booking)
        .where(Booking.booking_status.in_(("confirmed", "in_progress")),
               _past(Booking.check_out_date, today, CHECK_OUT_HOUR, local.hour))
        .values(booking_status="completed")
        .execution_options(synchronize_session=False)
    ).rowcount
    started = db.execute(
        update(Booking)
        .where(Booking.booking_status == "confirmed",
               _past(Booking.check_in_date, today, CHECK_IN_HOUR, local.hour))
        .values(booking_status="in_progress")
        .execution_options(synchronize_session=False)
    ).rowcount
    db.commit()
    if completed or started:
        logger.info("lifecycle: %s booking(s) in progress, %s completed", started, completed)
    return {"in_progress": started, "completed": completed}


def expire_pending_bookings(db: Session, now: datetime | None = None) -> dict:
    """Cancel unpaid pending holds older than PENDING_HOLD_HOURS (disabled when 0)."""
    if settings.PENDING_HOLD_HOURS <= 0:
        return {"expired": 0, "enabled": False}
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(hours=settings.PENDING_HOLD_HOURS)
    stale = (
        db.query(Booking)
        .filter(Booking.booking_status == "pending", Booking.payment_status == "pending",
                Booking.created_at < cutoff)
        .with_for_update()
        .all()
    )
    for b in stale:
        b.booking_status = "cancelled"
        b.cancelled_at = now
        b.refund_reason = "payment hold expired"
        log_audit(db, actor="system", action="booking.expired", entity_type="booking", entity_id=b.booking_code,
                  details={"hold_hours": settings.PENDING_HOLD_HOURS})
    db.commit()
    if stale:
        logger.info("expired %s unpaid pending booking(s)", len(stale))
    return {"expired": len(stale), "enabled": True}
