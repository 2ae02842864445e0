from sqlalchemy import String, Integer, DateTime, Date, Boolean, Numeric, Text, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, date, timezone
from hotelbooking.db.session import Base

BOOKING_STATUSES = ("pending", "confirmed", "in_progress", "checked_in", "checked_out", "completed", "cancelled")
PAYMENT_STATUSES = ("pending", "partial", "paid", "refunded", "failed")
REFUND_STATUSES = ("none", "requested", "completed", "failed")

# Statuses that hold a room against availability
BLOCKING_STATUSES = ("pending", "confirmed", "in_progress", "checked_in")
CANCELLABLE_STATUSES = ("pending", "confirmed")

class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_code: Mapped[str] = mapped_column(String(50), unique=True, index=True)  # BOOK-YYYYMMDD-####

    user_id: Mapped[int] = mapped_column(Integer, index=True)
    user_email: Mapped[str] = mapped_column(String(320), default="")
    user_name: Mapped[str] = mapped_column(String(255), default="")
    user_phone: Mapped[str] = mapped_column(String(50), default="")

    hotel_id: Mapped[int] = mapped_column(ForeignKey("hotels.id"), index=True)
    room_type_id: Mapped[int] = mapped_column(ForeignKey("room_types.id"), index=True)
    room_id: Mapped[int] = mapped_column(ForeignKey("rooms.id"), index=True)

    check_in_date: Mapped[date] = mapped_column(Date, index=True)
    check_out_date: Mapped[date] = mapped_column(Date, index=True)
    guest_count: Mapped[int] = mapped_column(Integer, default=1)
    room_count: Mapped[int] = mapped_column(Integer, default=1)
    nights: Mapped[int] = mapped_column(Integer, default=1)

    room_price: Mapped[float] = mapped_column(Numeric(18, 2), default=0)
    total_price: Mapped[float] = mapped_column(Numeric(18, 2), default=0)  # subtotal
    discount_amount: Mapped[float] = mapped_column(Numeric(18, 2), default=0)
    final_price: Mapped[float] = mapped_column(Numeric(18, 2), default=0)  # fixed at creation

    payment_method: Mapped[str] = mapped_column(String(30), default="cash")  # vnpay, momo, bank_transfer, cash
    payment_status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    payment_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    booking_status: Mapped[str] = mapped_column(String(20), default="pending", index=True)

    cancellation_allowed: Mapped[bool] = mapped_column(Boolean, default=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_status: Mapped[str] = mapped_column(String(20), default="none")
    refund_amount: Mapped[float] = mapped_column(Numeric(18, 2), default=0)
    refund_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    refund_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_reason: Mapped[str] = mapped_column(String(500), default="")

    # Flipped false -> true once, by a conditional UPDATE, when confirmation side effects are emitted
    vip_points_added: Mapped[bool] = mapped_column(Boolean, default=False)

    special_requests: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                                                 onupdate=lambda: datetime.now(timezone.utc))
