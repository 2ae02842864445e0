from sqlalchemy import String, Integer, DateTime, Numeric, Text
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime, timezone
from hotelbooking.db.session import Base

GATEWAYS = ("vnpay", "momo", "bank_transfer", "cash")

class PaymentAttempt(Base):
    __tablename__ = "payment_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    # Parsed out of order_id; attempts sharing it form one order family
    booking_ref: Mapped[str] = mapped_column(String(64), index=True)
    # Set once the reservation row exists (may be after settlement)
    booking_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)

    gateway: Mapped[str] = mapped_column(String(20))
    amount: Mapped[float] = mapped_column(Numeric(18, 2))
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)  # pending, completed, failed
    gateway_txn_id: Mapped[str | None] = mapped_column(String(120), nullable=True)

    # JSON snapshot of the intended booking, captured when the payment URL was requested
    extra_data: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
