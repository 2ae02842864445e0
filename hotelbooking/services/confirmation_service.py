"""Turns "enough money has arrived" into "the reservation is real".

Safe to call from return handlers, IPN handlers and delayed retries: finding the booking is
serialised on the order family's ledger rows, and the side-effect claim is a conditional update
on ``bookings.vip_points_added``.
"""
import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from hotelbooking.core.config import settings
from hotelbooking.core.errors import NotFound, PolicyViolation
from hotelbooking.models.audit_log import AuditLog
from hotelbooking.models.booking import Booking
from hotelbooking.models.hotel import Hotel
from hotelbooking.models.user import User
from hotelbooking.services import outbox_service
from hotelbooking.services import payment_ledger as ledger
from hotelbooking.services.audit_service import log_audit
from hotelbooking.services.booking_service import create_booking, summary_of

logger = logging.getLogger(__name__)

_PAYMENT_RANK = {"failed": 0, "pending": 0, "partial": 1, "paid": 2, "refunded": 3}


def _result(confirmed: bool, booking: Booking | None, fraction: float, orphaned: bool = False) -> dict:
    return {"confirmed": confirmed, "booking": booking, "paid_fraction": fraction, "orphaned": orphaned}


def _claim_side_effects(db: Session, booking_id: int) -> bool:
    res = db.execute(
        update(Booking)
        .where(Booking.id == booking_id, Booking.vip_points_added.is_(False))
        .values(vip_points_added=True)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def _manager_email(db: Session, hotel_id: int) -> str | None:
    hotel = db.get(Hotel, hotel_id)
    if not hotel or not hotel.manager_user_id:
        return None
    manager = db.get(User, hotel.manager_user_id)
    return manager.email if manager else None


def _booking_data_from_snapshot(extra: dict, gateway: str, payment_status: str, txn: str | None) -> dict:
    data = {k: v for k, v in extra.items() if k != "booking_id"}
    data.update(
        payment_method=gateway,
        payment_status=payment_status,
        booking_status="confirmed",
        payment_transaction_id=txn,
    )
    return data


def _orphan_family(db: Session, booking_ref: str, gateway: str, err: PolicyViolation) -> list[str]:
    """Money arrived but no room can be assigned: audit each settled attempt once and queue its refund."""
    rows = ledger.family(db, booking_ref, lock=True)
    already = set(db.execute(select(AuditLog.entity_id).where(
        AuditLog.action == "payment.orphaned", AuditLog.entity_type == "payment_attempt",
        AuditLog.entity_id.in_([a.order_id for a in rows]),
    )).scalars())
    queued = []
    for a in rows:
        if a.status != "completed" or a.booking_id is not None or a.order_id in already:
            continue
        log_audit(db, actor=gateway, action="payment.orphaned", entity_type="payment_attempt", entity_id=a.order_id,
                  details={"booking_ref": booking_ref, "amount": float(a.amount), "reason": err.extra.get("reason")})
        outbox_service.enqueue(db, outbox_service.PAYMENT_ORPHANED, None, {"order_id": a.order_id})
        queued.append(a.order_id)
    db.commit()
    if queued:
        logger.error("confirm: no room for payment family %s (%s); refund queued for %s",
                     booking_ref, err.message, ", ".join(queued))
    return queued


def confirm_if_eligible(db: Session, order_id: str, amount: float | None = None, gateway: str | None = None,
                        gateway_txn_id: str | None = None) -> dict:
    try:
        attempt = ledger.get_attempt(db, order_id)
    except NotFound:
        logger.warning("confirm: no payment attempt %s", order_id)
        return _result(False, None, 0.0)
    extra = ledger.extra_data_of(attempt)
    if not extra:
        return _result(False, None, 0.0)

    total_price = float(extra.get("final_price") or extra.get("total_price") or 0)
    total_paid = ledger.sum_completed(db, order_id)
    fraction = total_paid / total_price if total_price > 0 else 0.0
    if fraction < settings.DEPOSIT_THRESHOLD:
        logger.warning("confirm: %s paid %.0f of %.0f (%.2f), deposit not met", order_id, total_paid, total_price, fraction)
        return _result(False, None, fraction)

    payment_status = "paid" if fraction >= 1.0 else "partial"
    gateway = gateway or attempt.gateway
    txn = gateway_txn_id or attempt.gateway_txn_id or order_id

    ref = attempt.booking_ref
    # Lock the family so concurrent confirmations link to a single booking
    rows = ledger.family(db, ref, lock=True)
    booking_id = extra.get("booking_id") or next((a.booking_id for a in rows if a.booking_id), None)
    booking = db.get(Booking, int(booking_id)) if booking_id else None

    if booking is None:
        user = db.get(User, int(extra["user_id"])) if extra.get("user_id") else None
        try:
            booking = create_booking(
                db, _booking_data_from_snapshot(extra, gateway, payment_status, txn),
                user=user, accrue_points=False, commit=False,
            )
        except PolicyViolation as e:
            db.rollback()
            _orphan_family(db, ref, gateway, e)
            return _result(False, None, fraction, orphaned=True)
        logger.info("confirm: created booking %s from payment %s", booking.booking_code, order_id)
    elif booking.booking_status == "cancelled":
        logger.warning("confirm: payment %s arrived for cancelled booking %s", order_id, booking.booking_code)
        db.commit()
        return _result(False, booking, fraction)
    else:
        if booking.booking_status == "pending":
            booking.booking_status = "confirmed"
        if _PAYMENT_RANK.get(payment_status, 0) > _PAYMENT_RANK.get(booking.payment_status, 0):
            booking.payment_status = payment_status
        booking.payment_transaction_id = txn
        if booking.payment_method == "cash":
            booking.payment_method = gateway

    ledger.link_booking(db, ref, booking.id)
    db.flush()

    event_ids = []
    if _claim_side_effects(db, booking.id):
        final_price = float(booking.final_price or 0)
        if booking.user_id and final_price > 0:
            event_ids.append(outbox_service.enqueue(db, outbox_service.LOYALTY_GRANT, booking.id,
                                                    {"user_id": booking.user_id, "final_price": final_price}))
        manager_email = _manager_email(db, booking.hotel_id)
        if booking.user_email or manager_email:
            event_ids.append(outbox_service.enqueue(db, outbox_service.EMAIL_BOOKING_CONFIRMATION, booking.id, {
                "email": booking.user_email,
                "manager_email": manager_email,
                "summary": summary_of(db, booking),
            }))
        if booking.room_id:
            event_ids.append(outbox_service.enqueue(db, outbox_service.ROOM_MARK_OCCUPIED, booking.id,
                                                    {"room_id": booking.room_id}))
    else:
        logger.info("confirm: side effects for booking %s already emitted", booking.booking_code)

    log_audit(db, actor=gateway, action="booking.payment_confirmed", entity_type="booking",
              entity_id=booking.booking_code,
              details={"order_id": order_id, "amount": amount, "paid_fraction": round(fraction, 4),
                       "payment_status": payment_status})
    db.flush()
    ids = [e.id for e in event_ids]
    db.commit()
    logger.info("confirm: booking %s confirmed (%s, %.2f paid)", booking.booking_code, payment_status, fraction)
    outbox_service.dispatch(db, ids)
    db.refresh(booking)
    return _result(True, booking, fraction)
