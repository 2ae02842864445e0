import logging

from sqlalchemy.orm import Session

from hotelbooking.core.errors import BookingError, NotFound
from hotelbooking.models.booking import Booking
from hotelbooking.models.payment_attempt import PaymentAttempt
from hotelbooking.services import payment_ledger as ledger
from hotelbooking.services.audit_service import log_audit
from hotelbooking.services.booking_service import update_refund_status
from hotelbooking.services.vnpay_client import VnpayClient, VnpayError, vnpay_client

logger = logging.getLogger(__name__)


def _completed_attempts(db: Session, booking: Booking) -> list[PaymentAttempt]:
    return (
        db.query(PaymentAttempt)
        .filter(PaymentAttempt.booking_id == booking.id, PaymentAttempt.status == "completed")
        .order_by(PaymentAttempt.id.asc())
        .all()
    )


def _vnpay_refund(client: VnpayClient, a: PaymentAttempt, order_info: str, create_by: str) -> dict:
    return client.refund(
        txn_ref=a.order_id,
        amount=float(a.amount),
        transaction_date=a.settled_at or a.created_at,
        order_info=order_info,
        create_by=create_by,
        transaction_no=a.gateway_txn_id or "0",
    )


def _refund_failed(db: Session, b: Booking, refunded: float, txn_ids: list[str], outstanding: list[str],
                   reason: str) -> None:
    logger.error("refund of booking %s stopped (%s); still owed on %s", b.booking_code, reason, ", ".join(outstanding))
    update_refund_status(db, b.id, "failed", amount=refunded, transaction_id=",".join(txn_ids) or None, commit=False)
    log_audit(db, actor="system", action="refund.outstanding", entity_type="booking", entity_id=b.booking_code,
              details={"reason": reason, "refunded_amount": refunded, "outstanding_order_ids": outstanding})


def process_refund(db: Session, booking_id: int) -> dict:
    """Refund a cancelled booking's online payments.

    VNPay attempts are refunded through the VNPay API. Anything else (MoMo, bank transfer)
    stays ``requested`` for a manual refund. Nothing paid means nothing to refund.
    When a VNPay refund fails midway the attempts still owed are logged and audited.
    Does not commit; the outbox processor does.
    """
    b = db.get(Booking, booking_id)
    if not b:
        raise NotFound(f"booking {booking_id} not found")
    if b.refund_status != "requested":
        return {"status": b.refund_status, "skipped": True}

    paid = _completed_attempts(db, b)
    if not paid:
        update_refund_status(db, b.id, "none", amount=0, commit=False)
        return {"status": "none", "amount": 0}

    vnpay = [a for a in paid if a.gateway == "vnpay"]
    manual = [a for a in paid if a.gateway != "vnpay"]
    refunded, txn_ids = 0.0, []
    if vnpay:
        client = vnpay_client()
        for i, a in enumerate(vnpay):
            outstanding = [x.order_id for x in vnpay[i:] + manual]
            try:
                resp = _vnpay_refund(client, a, f"Refund for booking {b.booking_code}", b.user_email or "system")
            except BookingError as e:
                logger.exception("vnpay refund of %s failed", a.order_id)
                _refund_failed(db, b, refunded, txn_ids, outstanding, e.message)
                return {"status": "failed", "amount": refunded, "outstanding": outstanding}
            if resp.get("vnp_ResponseCode") != "00":
                code = resp.get("vnp_ResponseCode")
                logger.error("vnpay refund of %s rejected: %s", a.order_id, code)
                _refund_failed(db, b, refunded, txn_ids, outstanding, f"vnpay response {code}")
                return {"status": "failed", "amount": refunded, "response_code": code, "outstanding": outstanding}
            refunded += float(a.amount)
            txn_ids.append(str(resp.get("vnp_TransactionNo") or resp.get("vnp_RequestId")))

    if manual:
        logger.warning("booking %s has %s non-VNPay payment(s) to refund manually", b.booking_code, len(manual))
        if refunded:
            b.refund_amount = refunded
            b.refund_transaction_id = ",".join(txn_ids)
        return {"status": "requested", "amount": refunded, "manual": [a.order_id for a in manual]}

    update_refund_status(db, b.id, "completed", amount=refunded, transaction_id=",".join(txn_ids), commit=False)
    b.payment_status = "refunded"
    logger.info("booking %s refunded %.0f via vnpay", b.booking_code, refunded)
    return {"status": "completed", "amount": refunded}


def refund_orphaned_payment(db: Session, order_id: str) -> dict:
    """Give back a settled payment whose booking could not be created.

    VNPay is refunded through its API; a rejected refund raises so the outbox retries it.
    Other gateways are audited for a manual refund. Does not commit.
    """
    a = ledger.get_attempt(db, order_id)
    if a.status != "completed" or a.booking_id is not None:
        return {"status": "skipped", "order_id": order_id}
    if a.gateway != "vnpay":
        logger.warning("orphaned %s payment %s (%.0f) needs a manual refund", a.gateway, order_id, float(a.amount))
        log_audit(db, actor="system", action="refund.manual_required", entity_type="payment_attempt",
                  entity_id=order_id, details={"gateway": a.gateway, "amount": float(a.amount)})
        return {"status": "requested", "order_id": order_id}

    resp = _vnpay_refund(vnpay_client(), a, f"Refund for unfulfilled payment {a.booking_ref}", "system")
    if resp.get("vnp_ResponseCode") != "00":
        raise VnpayError(f"VNPay refund of {order_id} rejected: {resp.get('vnp_ResponseCode')}")
    txn = str(resp.get("vnp_TransactionNo") or resp.get("vnp_RequestId"))
    log_audit(db, actor="system", action="refund.completed", entity_type="payment_attempt", entity_id=order_id,
              details={"amount": float(a.amount), "transaction_id": txn})
    logger.info("orphaned payment %s refunded %.0f via vnpay", order_id, float(a.amount))
    return {"status": "completed", "order_id": order_id, "transaction_id": txn}
