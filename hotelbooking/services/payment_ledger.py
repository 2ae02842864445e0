import json
import logging
from datetime import datetime, timezone

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hotelbooking.core.errors import ConflictError, NotFound, ValidationError
from hotelbooking.models.payment_attempt import PaymentAttempt, GATEWAYS
from hotelbooking.services.order_ids import parse_booking_ref

logger = logging.getLogger(__name__)

OUTCOMES = ("completed", "failed")


def record_attempt(db: Session, order_id: str, booking_ref: str | None, amount: float, gateway: str,
                   extra_data: dict | None = None, booking_id: int | None = None) -> PaymentAttempt:
    """Insert a pending attempt. Does not commit."""
    if gateway not in GATEWAYS:
        raise ValidationError(f"unknown gateway {gateway!r}")
    if amount is None or float(amount) <= 0:
        raise ValidationError("amount must be positive")
    ref = booking_ref or parse_booking_ref(order_id)
    if ref != parse_booking_ref(order_id):
        raise ValidationError("order id does not embed the given booking_ref")
    attempt = PaymentAttempt(
        order_id=order_id,
        booking_ref=ref,
        booking_id=booking_id,
        gateway=gateway,
        amount=amount,
        status="pending",
        extra_data=json.dumps(extra_data, ensure_ascii=False, default=str) if extra_data is not None else None,
    )
    db.add(attempt)
    try:
        db.flush()
    except IntegrityError as e:
        db.rollback()
        raise ConflictError(f"order id {order_id} already recorded") from e
    return attempt


def get_attempt(db: Session, order_id: str) -> PaymentAttempt:
    attempt = db.execute(select(PaymentAttempt).where(PaymentAttempt.order_id == order_id)).scalar_one_or_none()
    if not attempt:
        raise NotFound(f"payment {order_id} not found")
    return attempt


def extra_data_of(attempt: PaymentAttempt) -> dict | None:
    if not attempt.extra_data:
        return None
    try:
        data = json.loads(attempt.extra_data)
    except ValueError:
        logger.warning("payment %s has unreadable extra_data", attempt.order_id)
        return None
    return data if isinstance(data, dict) else None


def settle(db: Session, order_id: str, outcome: str, gateway_txn_id: str | None = None) -> bool:
    """pending -> completed|failed, once.

    Returns True if this call performed the transition, False if the attempt was already settled
    with the same outcome. A different outcome raises ConflictError; the first settlement stands.
    Does not commit.
    """
    if outcome not in OUTCOMES:
        raise ValidationError(f"invalid settlement outcome {outcome!r}")
    res = db.execute(
        update(PaymentAttempt)
        .where(PaymentAttempt.order_id == order_id, PaymentAttempt.status == "pending")
        .values(status=outcome, gateway_txn_id=gateway_txn_id, settled_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 1:
        logger.info("payment %s settled %s (txn=%s)", order_id, outcome, gateway_txn_id)
        return True

    attempt = db.execute(select(PaymentAttempt).where(PaymentAttempt.order_id == order_id)).scalar_one_or_none()
    if not attempt:
        raise NotFound(f"payment {order_id} not found")
    db.refresh(attempt)
    if attempt.status == outcome:
        logger.warning("duplicate settlement of %s (%s) ignored", order_id, outcome)
        return False
    logger.warning("conflicting settlement of %s: stored=%s incoming=%s", order_id, attempt.status, outcome)
    raise ConflictError(
        f"payment {order_id} already settled as {attempt.status}",
        order_id=order_id, settled_status=attempt.status,
    )


def family(db: Session, booking_ref: str, lock: bool = False) -> list[PaymentAttempt]:
    q = select(PaymentAttempt).where(PaymentAttempt.booking_ref == booking_ref).order_by(PaymentAttempt.id.asc())
    if lock:
        q = q.with_for_update()
    return list(db.execute(q).scalars())


def sum_completed(db: Session, order_id: str) -> float:
    """Total of completed attempts in the order family of ``order_id``."""
    ref = parse_booking_ref(order_id)
    total = db.execute(
        select(func.coalesce(func.sum(PaymentAttempt.amount), 0))
        .where(PaymentAttempt.booking_ref == ref, PaymentAttempt.status == "completed")
    ).scalar_one()
    return float(total or 0)


def link_booking(db: Session, booking_ref: str, booking_id: int) -> int:
    res = db.execute(
        update(PaymentAttempt)
        .where(PaymentAttempt.booking_ref == booking_ref, PaymentAttempt.booking_id.is_(None))
        .values(booking_id=booking_id)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount
