from datetime import date
from pydantic import BaseModel, Field
from typing import Optional


class PaymentCreateRequest(BaseModel):
    # Pay an existing booking...
    booking_id: Optional[int] = None
    # ...or describe the intended booking; it is created once the payment settles.
    booking_ref: Optional[str] = None  # reuse to add a balance payment to an earlier deposit
    hotel_id: Optional[int] = None
    room_type_id: Optional[int] = None
    room_id: Optional[int] = None
    check_in_date: Optional[date] = None
    check_out_date: Optional[date] = None
    guest_count: int = Field(default=1, ge=1)
    room_count: int = Field(default=1, ge=1)
    room_price: float = Field(default=0, ge=0)
    total_price: Optional[float] = Field(default=None, ge=0)
    discount_amount: float = Field(default=0, ge=0)
    special_requests: Optional[str] = None

    amount: Optional[float] = Field(default=None, gt=0)  # defaults to the full final price
    order_info: Optional[str] = None
    bank_code: Optional[str] = None  # VNPay only


class PaymentCreateOut(BaseModel):
    order_id: str
    booking_ref: str
    gateway: str
    amount: float
    payment_url: Optional[str] = None
    qr_url: Optional[str] = None
    deeplink: Optional[str] = None


class PaymentAttemptOut(BaseModel):
    order_id: str
    booking_ref: str
    booking_id: Optional[int] = None
    gateway: str
    amount: float
    status: str
    gateway_txn_id: Optional[str] = None
    created_at: Optional[str] = None
    settled_at: Optional[str] = None
