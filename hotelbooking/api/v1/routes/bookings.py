from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from hotelbooking.db.session import get_db
from hotelbooking.api.deps import get_current_user
from hotelbooking.models.booking import Booking
from hotelbooking.models.user import User
from hotelbooking.schemas.booking import BookingCreate, BookingOut, CancelRequest
from hotelbooking.services import booking_service

router = APIRouter(tags=["bookings"])


def booking_out(b: Booking) -> BookingOut:
    return BookingOut(
        id=b.id,
        booking_code=b.booking_code,
        user_id=b.user_id,
        hotel_id=b.hotel_id,
        room_type_id=b.room_type_id,
        room_id=b.room_id,
        check_in_date=b.check_in_date,
        check_out_date=b.check_out_date,
        guest_count=b.guest_count,
        room_count=b.room_count,
        nights=b.nights,
        room_price=float(b.room_price or 0),
        total_price=float(b.total_price or 0),
        discount_amount=float(b.discount_amount or 0),
        final_price=float(b.final_price or 0),
        payment_method=b.payment_method,
        payment_status=b.payment_status,
        booking_status=b.booking_status,
        cancellation_allowed=b.cancellation_allowed,
        refund_status=b.refund_status,
        refund_amount=float(b.refund_amount or 0),
        refund_reason=b.refund_reason or "",
        cancelled_at=b.cancelled_at.isoformat() if b.cancelled_at else None,
        special_requests=b.special_requests,
        created_at=b.created_at.isoformat() if b.created_at else None,
    )


@router.post("/bookings", response_model=BookingOut)
def create_booking(body: BookingCreate, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    # Online payment_method here only books; the money moves through /payments/{gateway}/create-url
    b = booking_service.book(db, me, body.model_dump())
    return booking_out(b)


@router.get("/bookings")
def list_my_bookings(status: str | None = None, limit: int = 50, offset: int = 0,
                     db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    items = booking_service.list_bookings(db, me.id, status=status, limit=min(limit, 200), offset=max(offset, 0))
    return {"items": [booking_out(b) for b in items]}


@router.get("/bookings/stats")
def my_booking_stats(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    return booking_service.booking_stats(db, me.id)


@router.get("/bookings/{booking_id}", response_model=BookingOut)
def get_booking(booking_id: int, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    return booking_out(booking_service.get_booking(db, booking_id, user_id=me.id))


@router.post("/bookings/{booking_id}/cancel", response_model=BookingOut)
def cancel_booking(booking_id: int, body: CancelRequest | None = None,
                   db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    b = booking_service.cancel_booking(db, booking_id, me.id, reason=(body.reason if body else ""))
    return booking_out(b)
