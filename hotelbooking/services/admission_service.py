import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from hotelbooking.core.config import settings
from hotelbooking.core.errors import PolicyViolation
from hotelbooking.models.booking import Booking, BLOCKING_STATUSES
from hotelbooking.services.catalog_service import HotelRoomCatalog

logger = logging.getLogger(__name__)


@dataclass
class Decision:
    allow: bool
    reason: str = ""
    message: str = ""
    requires_payment: bool = False
    min_payment_percentage: int = 0
    details: dict = field(default_factory=dict)

    def raise_if_denied(self):
        if not self.allow:
            raise PolicyViolation(
                self.message,
                reason=self.reason,
                requires_payment=self.requires_payment,
                min_payment_percentage=self.min_payment_percentage,
                **self.details,
            )


def local_today() -> date:
    return datetime.now(ZoneInfo(settings.TIMEZONE)).date()


def conflicting_bookings(db: Session, user_id: int, today: date) -> list[Booking]:
    # Anchored on today, not on the requested stay: any live reservation counts.
    return list(db.execute(
        select(Booking).where(
            Booking.user_id == user_id,
            Booking.booking_status.in_(BLOCKING_STATUSES),
            Booking.check_out_date >= today,
        ).order_by(Booking.check_out_date.asc())
    ).scalars())


def validate(db: Session, user_id: int, hotel_id: int, check_in: date, check_out: date,
             payment_method: str, payment_amount: float, total_price: float,
             today: date | None = None) -> Decision:
    """One active hotel stay per user; a second stay at the same hotel needs a non-cash deposit."""
    today = today or local_today()
    conflicts = conflicting_bookings(db, user_id, today)
    if not conflicts:
        return Decision(allow=True)

    min_pct = int(round(settings.DEPOSIT_THRESHOLD * 100))
    same = [b for b in conflicts if b.hotel_id == hotel_id]
    if same:
        pct = (float(payment_amount or 0) / float(total_price)) if total_price and float(total_price) > 0 else 0.0
        if payment_method != "cash" and pct >= settings.DEPOSIT_THRESHOLD:
            return Decision(allow=True, details={"existing_booking_code": same[0].booking_code})
        logger.warning("admission denied user=%s hotel=%s: deposit %.2f below threshold", user_id, hotel_id, pct)
        return Decision(
            allow=False,
            reason="same_hotel_requires_deposit",
            message=(f"You already have an active booking at this hotel. Pay at least {min_pct}% "
                     f"online (not cash) to book another room here."),
            requires_payment=True,
            min_payment_percentage=min_pct,
            details={"existing_booking_code": same[0].booking_code},
        )

    other = conflicts[0]
    name = HotelRoomCatalog(db).hotel_name(other.hotel_id)
    checkout = other.check_out_date.isoformat()
    logger.warning("admission denied user=%s hotel=%s: active stay at hotel %s", user_id, hotel_id, other.hotel_id)
    return Decision(
        allow=False,
        reason="active_booking_other_hotel",
        message=(f"You have an active booking at {name} until {checkout}. "
                 f"Complete or cancel it before booking another hotel."),
        details={"conflict_hotel_id": other.hotel_id, "conflict_hotel_name": name, "conflict_check_out": checkout},
    )
