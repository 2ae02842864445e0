import logging
import random
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import select, func, case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from hotelbooking.core.config import settings
from hotelbooking.core.errors import (
    ValidationError, PolicyViolation, InvalidState, Forbidden, NotFound, ConflictError,
)
from hotelbooking.models.booking import (
    Booking, BOOKING_STATUSES, PAYMENT_STATUSES, REFUND_STATUSES, CANCELLABLE_STATUSES,
)
from hotelbooking.models.hotel import RoomType
from hotelbooking.models.user import User
from hotelbooking.services import outbox_service
from hotelbooking.services.admission_service import validate, local_today
from hotelbooking.services.audit_service import log_audit
from hotelbooking.services.availability_service import held_room_ids, pick_free_room
from hotelbooking.services.catalog_service import HotelRoomCatalog

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("vnpay", "momo", "bank_transfer", "cash")


def make_booking_code(today: date | None = None) -> str:
    d = today or local_today()
    return f"BOOK-{d.strftime('%Y%m%d')}-{random.randint(0, 9999):04d}"


def parse_date(v, name: str) -> date:
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    try:
        return date.fromisoformat(str(v)[:10])
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{name} must be a date (YYYY-MM-DD)") from e


def _money(data: dict, key: str, default=0.0) -> float:
    v = data.get(key)
    if v is None or v == "":
        return float(default)
    try:
        v = float(v)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{key} must be a number") from e
    if v < 0:
        raise ValidationError(f"{key} must be non-negative")
    return v


def check_in_instant(check_in_date: date) -> datetime:
    return datetime.combine(check_in_date, time(0, 0), tzinfo=ZoneInfo(settings.TIMEZONE))


def summary_of(db: Session, b: Booking) -> dict:
    rt = db.get(RoomType, b.room_type_id)
    return {
        "booking_code": b.booking_code,
        "guest_name": b.user_name,
        "guest_email": b.user_email,
        "hotel_name": HotelRoomCatalog(db).hotel_name(b.hotel_id),
        "room_type_name": rt.name if rt else "",
        "check_in_date": b.check_in_date.isoformat(),
        "check_out_date": b.check_out_date.isoformat(),
        "nights": b.nights,
        "final_price": float(b.final_price or 0),
        "payment_method": b.payment_method,
        "payment_status": b.payment_status,
    }


def create_booking(db: Session, data: dict, user: User | None = None, accrue_points: bool = True,
                   commit: bool = True, today: date | None = None) -> Booking:
    """Insert a reservation after re-checking room availability under a room-type lock.

    ``data`` keys: hotel_id, room_type_id and/or room_id, check_in_date, check_out_date,
    guest_count, room_count, room_price, total_price, discount_amount, payment_method,
    payment_status, special_requests, user_* contact fields.
    """
    catalog = HotelRoomCatalog(db)
    hotel_id = data.get("hotel_id")
    room_type_id = data.get("room_type_id")
    room_id = data.get("room_id")
    if room_id is not None:
        rt = catalog.get_room_type(int(room_id))
        if hotel_id is not None and int(hotel_id) != rt["hotel_id"]:
            raise ValidationError("room does not belong to hotel")
        if room_type_id is not None and int(room_type_id) != rt["room_type_id"]:
            raise ValidationError("room is not of the requested room type")
        hotel_id, room_type_id = rt["hotel_id"], rt["room_type_id"]
    if hotel_id is None or room_type_id is None:
        raise ValidationError("hotel_id and room_type_id (or room_id) are required")
    hotel_id, room_type_id = int(hotel_id), int(room_type_id)

    if not data.get("check_in_date") or not data.get("check_out_date"):
        raise ValidationError("check_in_date and check_out_date are required")
    check_in = parse_date(data["check_in_date"], "check_in_date")
    check_out = parse_date(data["check_out_date"], "check_out_date")
    if check_out <= check_in:
        raise ValidationError("check_out_date must be after check_in_date")
    nights = (check_out - check_in).days

    guest_count = int(data.get("guest_count") or 1)
    room_count = int(data.get("room_count") or 1)
    if guest_count < 1 or room_count < 1:
        raise ValidationError("guest_count and room_count must be >= 1")

    room_price = _money(data, "room_price")
    subtotal = _money(data, "total_price", default=room_price * nights * room_count)
    discount = _money(data, "discount_amount")
    final_price = max(0.0, subtotal - discount)

    payment_method = data.get("payment_method") or "cash"
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"unknown payment_method {payment_method!r}")
    payment_status = data.get("payment_status") or "pending"
    if payment_status not in PAYMENT_STATUSES:
        raise ValidationError(f"invalid payment_status {payment_status!r}")
    booking_status = data.get("booking_status") or ("confirmed" if payment_status in ("paid", "partial") else "pending")
    if booking_status not in BOOKING_STATUSES:
        raise ValidationError(f"invalid booking_status {booking_status!r}")
    cancellation_allowed = data.get("cancellation_allowed")
    if cancellation_allowed is None:
        cancellation_allowed = payment_method != "cash"

    user_id = data.get("user_id") if user is None else user.id
    if user_id is None:
        raise ValidationError("user_id is required")

    # Serialises creators of the same room type until commit
    catalog.get_room_type_row(hotel_id, room_type_id, lock=True)
    if room_id is not None:
        if int(room_id) in held_room_ids(db, hotel_id, room_type_id, check_in, check_out):
            raise PolicyViolation("The selected room is not available for these dates.", reason="room_unavailable")
        room_id = int(room_id)
    else:
        room_id = pick_free_room(db, hotel_id, room_type_id, check_in, check_out)
        if room_id is None:
            raise PolicyViolation("No rooms of this type are available for these dates.", reason="room_unavailable")

    # booking_code must be unique
    for _ in range(10):
        code = make_booking_code(today)
        exists = db.query(Booking.id).filter(Booking.booking_code == code).first()
        if not exists:
            break
    else:
        raise ConflictError("could not allocate booking code")

    paid = payment_status == "paid"
    b = Booking(
        booking_code=code,
        user_id=int(user_id),
        user_email=(user.email if user else data.get("user_email")) or "",
        user_name=(user.full_name if user else data.get("user_name")) or "",
        user_phone=(user.phone if user else data.get("user_phone")) or "",
        hotel_id=hotel_id,
        room_type_id=room_type_id,
        room_id=room_id,
        check_in_date=check_in,
        check_out_date=check_out,
        guest_count=guest_count,
        room_count=room_count,
        nights=nights,
        room_price=room_price,
        total_price=subtotal,
        discount_amount=discount,
        final_price=final_price,
        payment_method=payment_method,
        payment_status=payment_status,
        payment_transaction_id=data.get("payment_transaction_id"),
        booking_status=booking_status,
        cancellation_allowed=bool(cancellation_allowed),
        special_requests=data.get("special_requests"),
        # A booking born paid has its points queued right here
        vip_points_added=paid and accrue_points,
    )
    db.add(b)
    try:
        db.flush()
    except IntegrityError as e:
        db.rollback()
        if "booking_code" in str(e.orig):
            raise ConflictError("booking code collision, please retry") from e
        logger.warning("overlap constraint rejected booking for room %s %s..%s", room_id, check_in, check_out)
        raise PolicyViolation("The selected room is not available for these dates.", reason="room_unavailable") from e

    if paid and accrue_points and b.user_id and final_price > 0:
        outbox_service.enqueue(db, outbox_service.LOYALTY_GRANT, b.id,
                               {"user_id": b.user_id, "final_price": final_price})
    logger.info("booking %s created (%s/%s) room=%s", b.booking_code, booking_status, payment_status, room_id)

    if commit:
        event_ids = outbox_service.pending_ids_for_booking(db, b.id)
        db.commit()
        db.refresh(b)
        outbox_service.dispatch(db, event_ids)
    return b


def book(db: Session, user: User, data: dict, today: date | None = None) -> Booking:
    """Admission guard, then availability-checked insert."""
    today = today or local_today()
    hotel_id = data.get("hotel_id")
    if hotel_id is None and data.get("room_id") is not None:
        hotel_id = HotelRoomCatalog(db).get_room_type(int(data["room_id"]))["hotel_id"]
    if hotel_id is None:
        raise ValidationError("hotel_id is required")
    check_in = parse_date(data.get("check_in_date"), "check_in_date")
    check_out = parse_date(data.get("check_out_date"), "check_out_date")
    if check_in < today:
        raise ValidationError("check_in_date cannot be in the past")
    # The deposit is measured against what the guest owes after discount
    nights = max(0, (check_out - check_in).days)
    subtotal = _money(data, "total_price", default=_money(data, "room_price") * nights * int(data.get("room_count") or 1))
    final_price = max(0.0, subtotal - _money(data, "discount_amount"))
    decision = validate(
        db, user.id, int(hotel_id), check_in, check_out,
        payment_method=data.get("payment_method") or "cash",
        payment_amount=float(data.get("payment_amount") or 0),
        total_price=final_price,
        today=today,
    )
    decision.raise_if_denied()
    return create_booking(db, data, user=user, today=today)


def get_booking(db: Session, booking_id: int, user_id: int | None = None) -> Booking:
    b = db.get(Booking, booking_id)
    if not b:
        raise NotFound("Booking not found")
    if user_id is not None and b.user_id != user_id:
        raise Forbidden("You do not have access to this booking")
    return b


def list_bookings(db: Session, user_id: int, status: str | None = None, limit: int = 50, offset: int = 0) -> list[Booking]:
    q = db.query(Booking).filter(Booking.user_id == user_id)
    if status:
        q = q.filter(Booking.booking_status == status)
    return q.order_by(Booking.created_at.desc(), Booking.id.desc()).offset(offset).limit(limit).all()


def booking_stats(db: Session, user_id: int) -> dict:
    row = db.execute(
        select(
            func.count(Booking.id),
            func.sum(case((Booking.booking_status == "confirmed", 1), else_=0)),
            func.sum(case((Booking.booking_status == "cancelled", 1), else_=0)),
            func.sum(case((Booking.booking_status == "completed", 1), else_=0)),
            func.sum(Booking.final_price),
            func.sum(case((Booking.booking_status == "cancelled", Booking.refund_amount), else_=0)),
        ).where(Booking.user_id == user_id)
    ).one()
    return {
        "total_bookings": int(row[0] or 0),
        "confirmed_bookings": int(row[1] or 0),
        "cancelled_bookings": int(row[2] or 0),
        "completed_bookings": int(row[3] or 0),
        "total_spent": float(row[4] or 0),
        "total_refunded": float(row[5] or 0),
    }


def cancel_booking(db: Session, booking_id: int, user_id: int, reason: str = "",
                   now: datetime | None = None) -> Booking:
    b = db.execute(select(Booking).where(Booking.id == booking_id).with_for_update()).scalar_one_or_none()
    if not b:
        raise NotFound("Booking not found")
    if b.user_id != user_id:
        raise Forbidden("You can only cancel your own bookings")
    if not b.cancellation_allowed:
        raise PolicyViolation("This booking is non-refundable and cannot be cancelled.",
                              reason="cancellation_not_allowed")
    now = now or datetime.now(timezone.utc)
    hours_left = (check_in_instant(b.check_in_date) - now).total_seconds() / 3600
    if hours_left < settings.CANCELLATION_MIN_HOURS:
        raise PolicyViolation(
            f"Bookings can only be cancelled at least {settings.CANCELLATION_MIN_HOURS} hours before check-in.",
            reason="cancellation_window_passed", hours_until_check_in=round(hours_left, 2),
        )
    if b.booking_status not in CANCELLABLE_STATUSES:
        raise InvalidState(f"Cannot cancel a booking in status {b.booking_status}",
                           booking_status=b.booking_status)

    b.booking_status = "cancelled"
    b.cancelled_at = now
    b.refund_status = "requested"
    b.refund_reason = reason or ""
    log_audit(db, actor=user_id, action="booking.cancelled", entity_type="booking", entity_id=b.booking_code,
              details={"reason": reason, "hours_until_check_in": round(hours_left, 2)})
    # Refund is left to the outbox worker
    outbox_service.enqueue(db, outbox_service.BOOKING_CANCELLED, b.id, {"reason": reason})
    db.commit()
    db.refresh(b)
    logger.info("booking %s cancelled by user %s", b.booking_code, user_id)
    return b


def update_refund_status(db: Session, booking_id: int, status: str, amount: float | None = None,
                         transaction_id: str | None = None, commit: bool = True) -> Booking:
    """Trusted mutation used by the refund workflow."""
    if status not in REFUND_STATUSES:
        raise ValidationError(f"invalid refund status {status!r}")
    b = db.get(Booking, booking_id)
    if not b:
        raise NotFound("Booking not found")
    b.refund_status = status
    if amount is not None:
        b.refund_amount = amount
    b.refund_transaction_id = transaction_id
    b.refund_date = datetime.now(timezone.utc)
    log_audit(db, actor="system", action=f"refund.{status}", entity_type="booking", entity_id=b.booking_code,
              details={"amount": amount, "transaction_id": transaction_id})
    if commit:
        db.commit()
        db.refresh(b)
    return b


def override_status(db: Session, booking_id: int, actor: User, booking_status: str | None = None,
                    payment_status: str | None = None, note: str = "") -> Booking:
    """Operator override; no transition guards."""
    b = db.get(Booking, booking_id)
    if not b:
        raise NotFound("Booking not found")
    if actor.role == "hotel_manager" and HotelRoomCatalog(db).get_hotel(b.hotel_id).manager_user_id != actor.id:
        raise Forbidden("You do not manage this hotel")
    if booking_status is None and payment_status is None:
        raise ValidationError("booking_status or payment_status is required")
    if booking_status is not None and booking_status not in BOOKING_STATUSES:
        raise ValidationError(f"invalid booking_status {booking_status!r}")
    if payment_status is not None and payment_status not in PAYMENT_STATUSES:
        raise ValidationError(f"invalid payment_status {payment_status!r}")
    before = {"booking_status": b.booking_status, "payment_status": b.payment_status}
    if booking_status is not None:
        b.booking_status = booking_status
        if booking_status == "cancelled" and not b.cancelled_at:
            b.cancelled_at = datetime.now(timezone.utc)
    if payment_status is not None:
        b.payment_status = payment_status
    log_audit(db, actor=actor.id, action="booking.status_override", entity_type="booking", entity_id=b.booking_code,
              details={"before": before, "booking_status": booking_status, "payment_status": payment_status, "note": note})
    db.commit()
    db.refresh(b)
    logger.info("booking %s status forced by %s: %s", b.booking_code, actor.id, before)
    return b
