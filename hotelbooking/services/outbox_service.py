"""Transactional outbox for post-commit side effects.

Events are added in the same transaction as the booking change that causes them. After that
commit they are dispatched inline; whatever fails is retried by the ``process_outbox`` task.
An event is claimed with a conditional update before it is applied, and its effect plus the
``done`` mark commit together, so a retried ``loyalty.grant`` never credits twice.
"""
import json
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import update, or_, and_
from sqlalchemy.orm import Session

from hotelbooking.core.config import settings
from hotelbooking.models.outbox_event import OutboxEvent

logger = logging.getLogger(__name__)

LOYALTY_GRANT = "loyalty.grant"
EMAIL_BOOKING_CONFIRMATION = "email.booking_confirmation"
ROOM_MARK_OCCUPIED = "room.mark_occupied"
BOOKING_CANCELLED = "booking.cancelled"
PAYMENT_ORPHANED = "payment.orphaned"

STALE_CLAIM_MINUTES = 10


def enqueue(db: Session, event_type: str, booking_id: int | None, payload: dict | None = None) -> OutboxEvent:
    ev = OutboxEvent(
        event_type=event_type,
        booking_id=booking_id,
        payload_json=json.dumps(payload or {}, ensure_ascii=False, default=str),
        status="pending",
        attempts=0,
    )
    db.add(ev)
    return ev


def pending_ids_for_booking(db: Session, booking_id: int) -> list[int]:
    db.flush()
    return [
        e.id for e in db.query(OutboxEvent)
        .filter(OutboxEvent.booking_id == booking_id, OutboxEvent.status == "pending")
        .order_by(OutboxEvent.id.asc())
        .all()
    ]


def _grant_loyalty(db: Session, booking_id: int, payload: dict):
    from hotelbooking.services.loyalty_service import LoyaltyService, UserLoyaltyService
    service: LoyaltyService = UserLoyaltyService(db)
    service.grant_points(int(payload["user_id"]), float(payload.get("final_price") or 0))


def _send_confirmation(db: Session, booking_id: int, payload: dict):
    from hotelbooking.services.email_service import send_booking_confirmation, send_manager_notification
    summary = payload.get("summary") or {}
    # queue_email commits; the done mark set before this call goes with it.
    if payload.get("email"):
        send_booking_confirmation(db, payload["email"], summary)
    if payload.get("manager_email"):
        send_manager_notification(db, payload["manager_email"], summary)


def _mark_room_occupied(db: Session, booking_id: int, payload: dict):
    from hotelbooking.services.catalog_service import HotelRoomCatalog
    HotelRoomCatalog(db).set_room_display_status(int(payload["room_id"]), "occupied")


def _refund_cancelled(db: Session, booking_id: int, payload: dict):
    from hotelbooking.services.refund_service import process_refund
    process_refund(db, booking_id)


def _refund_orphaned(db: Session, booking_id: int | None, payload: dict):
    from hotelbooking.services.refund_service import refund_orphaned_payment
    refund_orphaned_payment(db, payload["order_id"])


_HANDLERS = {
    LOYALTY_GRANT: _grant_loyalty,
    EMAIL_BOOKING_CONFIRMATION: _send_confirmation,
    ROOM_MARK_OCCUPIED: _mark_room_occupied,
    BOOKING_CANCELLED: _refund_cancelled,
    PAYMENT_ORPHANED: _refund_orphaned,
}


def _claim(db: Session, event_id: int) -> bool:
    now = datetime.now(timezone.utc)
    stale = now - timedelta(minutes=STALE_CLAIM_MINUTES)
    res = db.execute(
        update(OutboxEvent)
        .where(
            OutboxEvent.id == event_id,
            or_(
                OutboxEvent.status.in_(("pending", "failed")),
                and_(OutboxEvent.status == "processing", OutboxEvent.claimed_at < stale),
            ),
        )
        .values(status="processing", attempts=OutboxEvent.attempts + 1, claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return res.rowcount == 1


def process_event(db: Session, event_id: int) -> bool:
    """Apply one event. Returns True when it is done (now or already)."""
    if not _claim(db, event_id):
        return False
    ev = db.get(OutboxEvent, event_id)
    db.refresh(ev)
    handler = _HANDLERS.get(ev.event_type)
    attempts = ev.attempts
    try:
        if handler is None:
            raise ValueError(f"no handler for {ev.event_type}")
        payload = json.loads(ev.payload_json or "{}")
        ev.status = "done"
        ev.processed_at = datetime.now(timezone.utc)
        ev.last_error = ""
        handler(db, ev.booking_id, payload)
        db.commit()
        logger.info("outbox event %s (%s) booking=%s done", ev.id, ev.event_type, ev.booking_id)
        return True
    except Exception as e:
        db.rollback()
        logger.exception("outbox event %s failed (attempt %s)", event_id, attempts)
        ev = db.get(OutboxEvent, event_id)
        if ev:
            ev.status = "dead" if attempts >= settings.OUTBOX_MAX_ATTEMPTS else "failed"
            ev.last_error = str(e)[:2000]
            db.commit()
        return False


def dispatch(db: Session, event_ids: list[int]) -> int:
    """Inline, best-effort dispatch after the causing transaction committed."""
    done = 0
    for eid in event_ids:
        try:
            if process_event(db, eid):
                done += 1
        except Exception:
            # Left pending/failed for the periodic worker
            logger.exception("inline dispatch of outbox event %s failed", eid)
            db.rollback()
    return done


def process_outbox(db: Session, limit: int = 100) -> dict:
    now = datetime.now(timezone.utc)
    stale = now - timedelta(minutes=STALE_CLAIM_MINUTES)
    ids = [
        e.id for e in db.query(OutboxEvent)
        .filter(
            or_(
                OutboxEvent.status.in_(("pending", "failed")),
                and_(OutboxEvent.status == "processing", OutboxEvent.claimed_at < stale),
            ),
            OutboxEvent.attempts < settings.OUTBOX_MAX_ATTEMPTS,
        )
        .order_by(OutboxEvent.id.asc())
        .limit(limit)
        .all()
    ]
    done = dispatch(db, ids)
    return {"processed": len(ids), "done": done, "failed": len(ids) - done}
