from datetime import date
from pydantic import BaseModel, Field
from typing import Optional, Literal

PaymentMethod = Literal["vnpay", "momo", "bank_transfer", "cash"]

class BookingCreate(BaseModel):
    hotel_id: int
    room_type_id: Optional[int] = None
    room_id: Optional[int] = None  # if omitted, a free room of the type is assigned
    check_in_date: date
    check_out_date: date
    guest_count: int = Field(default=1, ge=1)
    room_count: int = Field(default=1, ge=1)
    room_price: float = Field(default=0, ge=0)
    total_price: float = Field(ge=0)
    discount_amount: float = Field(default=0, ge=0)
    payment_method: PaymentMethod = "cash"
    # What the guest intends to pay online now; checked by the same-hotel deposit rule
    payment_amount: float = Field(default=0, ge=0)
    special_requests: Optional[str] = None

class CancelRequest(BaseModel):
    reason: str = ""

class StatusOverride(BaseModel):
    booking_status: Optional[str] = None
    payment_status: Optional[str] = None
    note: str = ""

class BookingOut(BaseModel):
    id: int
    booking_code: str
    user_id: int
    hotel_id: int
    room_type_id: int
    room_id: int
    check_in_date: date
    check_out_date: date
    guest_count: int
    room_count: int
    nights: int
    room_price: float
    total_price: float
    discount_amount: float
    final_price: float
    payment_method: str
    payment_status: str
    booking_status: str
    cancellation_allowed: bool
    refund_status: str
    refund_amount: float = 0
    refund_reason: str = ""
    cancelled_at: Optional[str] = None
    special_requests: Optional[str] = None
    created_at: Optional[str] = None
