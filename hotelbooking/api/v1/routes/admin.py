from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from hotelbooking.db.session import get_db
from hotelbooking.api.deps import require_roles, require_staff
from hotelbooking.api.v1.routes.bookings import booking_out
from hotelbooking.models.user import User
from hotelbooking.schemas.booking import BookingOut, StatusOverride
from hotelbooking.services.booking_service import override_status
from hotelbooking.services.reconciliation_service import query_gateway

router = APIRouter(tags=["admin"])


@router.patch("/admin/bookings/{booking_id}/status", response_model=BookingOut)
def force_booking_status(booking_id: int, body: StatusOverride, db: Session = Depends(get_db),
                         me: User = Depends(require_staff)):
    """Operator override: sets any status, no transition guards. Audited."""
    b = override_status(db, booking_id, me, booking_status=body.booking_status,
                        payment_status=body.payment_status, note=body.note)
    return booking_out(b)


@router.post("/admin/payments/{order_id}/query")
def query_payment_at_gateway(order_id: str, db: Session = Depends(get_db), me: User = Depends(require_roles("admin"))):
    """Ask VNPay/MoMo for a payment's outcome and reconcile it."""
    return query_gateway(db, order_id, actor=me.id)
