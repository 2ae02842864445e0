"""Gateway callbacks -> ledger settlement -> auto-confirmation.

Every handler verifies the signature before touching state, then normalises the payload to
``{order_id, amount, succeeded, gateway_txn_id}``. Settlement is a compare-and-swap and
confirmation is idempotent, so duplicate and out-of-order deliveries are harmless.
"""
import logging
import secrets
import time

from sqlalchemy.orm import Session

from hotelbooking.core.errors import (
    BookingError, ConflictError, ExternalGatewayError, InvalidState, NotFound, PolicyViolation, ValidationError,
)
from hotelbooking.models.user import User
from hotelbooking.services import payment_ledger as ledger
from hotelbooking.services.admission_service import validate
from hotelbooking.services.audit_service import log_audit
from hotelbooking.services.availability_service import held_room_ids, pick_free_room
from hotelbooking.services.bank_transfer_client import bank_transfer_client
from hotelbooking.services.booking_service import get_booking, parse_date
from hotelbooking.services.catalog_service import HotelRoomCatalog
from hotelbooking.services.confirmation_service import confirm_if_eligible
from hotelbooking.services.momo_client import momo_client
from hotelbooking.services.order_ids import make_order_id
from hotelbooking.services.vnpay_client import vnpay_client

logger = logging.getLogger(__name__)

ONLINE_GATEWAYS = ("vnpay", "momo", "bank_transfer")

SNAPSHOT_FIELDS = ("hotel_id", "room_type_id", "room_id", "check_in_date", "check_out_date", "guest_count",
                   "room_count", "room_price", "total_price", "discount_amount", "final_price", "special_requests")


class AmountMismatch(ValidationError):
    code = "amount_mismatch"


def gateway_client(gateway: str):
    if gateway == "vnpay":
        return vnpay_client()
    if gateway == "momo":
        return momo_client()
    if gateway == "bank_transfer":
        return bank_transfer_client()
    raise NotFound(f"unknown payment gateway {gateway!r}")


def _snapshot_from_request(user: User, req: dict) -> dict:
    missing = [k for k in ("hotel_id", "check_in_date", "check_out_date") if req.get(k) in (None, "")]
    if req.get("room_type_id") is None and req.get("room_id") is None:
        missing.append("room_type_id")
    if missing:
        raise ValidationError(f"missing booking fields: {', '.join(missing)}", fields=missing)
    snap = {k: req.get(k) for k in SNAPSHOT_FIELDS if req.get(k) is not None}
    for k in ("check_in_date", "check_out_date"):
        snap[k] = parse_date(snap[k], k).isoformat()
    subtotal = float(snap.get("total_price") or 0)
    discount = float(snap.get("discount_amount") or 0)
    snap.setdefault("final_price", max(0.0, subtotal - discount))
    if float(snap["final_price"]) <= 0:
        raise ValidationError("final_price must be positive for online payment")
    snap.update(user_id=user.id, user_email=user.email, user_name=user.full_name, user_phone=user.phone)
    return snap


def _ensure_room_free(db: Session, extra: dict) -> None:
    """Refuse to take money for a stay that has no room left."""
    check_in = parse_date(extra["check_in_date"], "check_in_date")
    check_out = parse_date(extra["check_out_date"], "check_out_date")
    if check_out <= check_in:
        raise ValidationError("check_out_date must be after check_in_date")
    catalog = HotelRoomCatalog(db)
    if extra.get("room_id") is not None:
        rt = catalog.get_room_type(int(extra["room_id"]))
        if int(extra["hotel_id"]) != rt["hotel_id"]:
            raise ValidationError("room does not belong to hotel")
        free = int(extra["room_id"]) not in held_room_ids(db, rt["hotel_id"], rt["room_type_id"], check_in, check_out)
    else:
        catalog.get_room_type_row(int(extra["hotel_id"]), int(extra["room_type_id"]))
        free = pick_free_room(db, int(extra["hotel_id"]), int(extra["room_type_id"]), check_in, check_out) is not None
    if not free:
        raise PolicyViolation("No rooms of this type are available for these dates.", reason="room_unavailable")


def _snapshot_from_booking(b) -> dict:
    return {
        "booking_id": b.id,
        "user_id": b.user_id,
        "hotel_id": b.hotel_id,
        "room_type_id": b.room_type_id,
        "room_id": b.room_id,
        "check_in_date": b.check_in_date.isoformat(),
        "check_out_date": b.check_out_date.isoformat(),
        "total_price": float(b.total_price or 0),
        "discount_amount": float(b.discount_amount or 0),
        "final_price": float(b.final_price or 0),
    }


def start_payment(db: Session, user: User, gateway: str, req: dict, ip_addr: str = "127.0.0.1") -> dict:
    """Record a pending attempt and ask the gateway for a payment URL.

    With ``booking_id`` the attempt pays an existing booking (its code is the booking_ref).
    Without it the request carries the intended booking, which is created on settlement.
    """
    if gateway not in ONLINE_GATEWAYS:
        raise ValidationError(f"gateway must be one of {', '.join(ONLINE_GATEWAYS)}")
    booking = None
    if req.get("booking_id") is not None:
        booking = get_booking(db, int(req["booking_id"]), user_id=user.id)
        if booking.booking_status not in ("pending", "confirmed"):
            raise InvalidState(f"Cannot pay for a booking in status {booking.booking_status}")
        if booking.payment_status == "paid":
            raise InvalidState("Booking is already paid")
        booking_ref = booking.booking_code
        extra = _snapshot_from_booking(booking)
    else:
        extra = _snapshot_from_request(user, req)
        booking_ref = req.get("booking_ref") or f"U{user.id}-{int(time.time())}-{secrets.token_hex(2)}"

    amount = float(req.get("amount") or extra["final_price"])
    if amount <= 0:
        raise ValidationError("amount must be positive")

    family = ledger.family(db, booking_ref) if booking is None else []
    if booking is None and not family:
        # Gateway-first: the booking does not exist yet, so admission runs here
        validate(db, user.id, int(extra["hotel_id"]), parse_date(extra["check_in_date"], "check_in_date"),
                 parse_date(extra["check_out_date"], "check_out_date"), payment_method=gateway,
                 payment_amount=amount, total_price=float(extra["final_price"])).raise_if_denied()
    if booking is None and not any(a.booking_id for a in family):
        _ensure_room_free(db, extra)

    client = gateway_client(gateway)
    order_id = make_order_id(gateway, booking_ref)
    order_info = req.get("order_info") or f"Payment for booking {booking_ref}"
    ledger.record_attempt(db, order_id, booking_ref, amount, gateway, extra_data=extra,
                          booking_id=booking.id if booking else None)
    try:
        if gateway == "vnpay":
            urls = client.create_payment_request(order_id=order_id, amount=amount, order_info=order_info,
                                                 ip_addr=ip_addr, bank_code=req.get("bank_code"))
        else:
            urls = client.create_payment_request(order_id=order_id, amount=amount, order_info=order_info)
    except BookingError:
        db.rollback()
        raise
    db.commit()
    logger.info("payment %s started via %s for %.0f", order_id, gateway, amount)
    return {
        "order_id": order_id,
        "booking_ref": booking_ref,
        "gateway": gateway,
        "amount": amount,
        "payment_url": urls.get("payment_url"),
        "qr_url": urls.get("qr_url"),
        "deeplink": urls.get("deeplink"),
    }


def reconcile(db: Session, gateway: str, norm: dict) -> dict:
    """Settle a verified, normalised callback and run auto-confirmation on success."""
    order_id = norm["order_id"]
    attempt = ledger.get_attempt(db, order_id)
    if attempt.gateway != gateway:
        raise ValidationError(f"payment {order_id} belongs to {attempt.gateway}")
    if abs(float(attempt.amount) - float(norm["amount"])) >= 1:
        logger.warning("amount mismatch on %s: recorded=%s callback=%s", order_id, attempt.amount, norm["amount"])
        raise AmountMismatch("callback amount does not match the payment", order_id=order_id)

    outcome = "completed" if norm["succeeded"] else "failed"
    changed = ledger.settle(db, order_id, outcome, norm.get("gateway_txn_id"))
    if changed:
        log_audit(db, actor=gateway, action="payment.settled", entity_type="payment_attempt", entity_id=order_id,
                  details={"outcome": outcome, "amount": norm["amount"], "response_code": norm.get("response_code"),
                           "gateway_txn_id": norm.get("gateway_txn_id")})
    db.commit()

    result = {
        "order_id": order_id,
        "succeeded": norm["succeeded"],
        "settled": changed,
        "message": norm.get("message", ""),
        "confirmed": False,
        "orphaned": False,
        "booking_id": None,
        "booking_code": None,
        "paid_fraction": 0.0,
    }
    if norm["succeeded"]:
        conf = confirm_if_eligible(db, order_id, amount=norm["amount"], gateway=gateway,
                                   gateway_txn_id=norm.get("gateway_txn_id"))
        booking = conf["booking"]
        result.update(
            confirmed=conf["confirmed"],
            orphaned=conf["orphaned"],
            paid_fraction=round(conf["paid_fraction"], 4),
            booking_id=booking.id if booking else None,
            booking_code=booking.booking_code if booking else None,
        )
    return result


def handle_return(db: Session, gateway: str, payload: dict) -> dict:
    """Browser redirect. Untrusted payloads come back with ``trusted=False`` and change nothing."""
    client = gateway_client(gateway)
    if not client.verify_callback_signature(payload):
        logger.warning("%s return rejected: bad signature (order=%s)", gateway, payload.get("orderId") or payload.get("vnp_TxnRef"))
        return {"trusted": False, "succeeded": False, "order_id": None}
    norm = client.normalize(payload)
    return {"trusted": True, **reconcile(db, gateway, norm)}


def handle_vnpay_ipn(db: Session, payload: dict) -> dict:
    """VNPay IPN; always answered with HTTP 200 and an RspCode."""
    client = gateway_client("vnpay")
    if not client.verify_callback_signature(payload):
        logger.warning("vnpay ipn rejected: bad signature (order=%s)", payload.get("vnp_TxnRef"))
        return {"RspCode": "97", "Message": "Invalid signature"}
    norm = client.normalize(payload)
    try:
        result = reconcile(db, "vnpay", norm)
    except NotFound:
        return {"RspCode": "01", "Message": "Order not found"}
    except AmountMismatch:
        return {"RspCode": "04", "Message": "Invalid amount"}
    except ConflictError:
        return {"RspCode": "02", "Message": "Order already confirmed"}
    except Exception:
        db.rollback()
        logger.exception("vnpay ipn internal error for %s; needs manual reconciliation", norm["order_id"])
        return {"RspCode": "99", "Message": "Unknown error"}
    if not result["settled"]:
        return {"RspCode": "02", "Message": "Order already confirmed"}
    return {"RspCode": "00", "Message": "Confirm Success"}


def handle_momo_ipn(db: Session, payload: dict) -> dict:
    """MoMo IPN. Raises only on a bad signature; anything after that is logged and acknowledged."""
    client = gateway_client("momo")
    if not client.verify_callback_signature(payload):
        logger.warning("momo ipn rejected: bad signature (order=%s)", payload.get("orderId"))
        raise ExternalGatewayError("invalid signature", reason="invalid_signature")
    norm = client.normalize(payload)
    try:
        result = reconcile(db, "momo", norm)
    except Exception:
        db.rollback()
        logger.exception("momo ipn internal error for %s; needs manual reconciliation", norm["order_id"])
        return {"resultCode": 0, "message": "received"}
    return {"resultCode": 0, "message": "ok", "confirmed": result["confirmed"]}


def query_gateway(db: Session, order_id: str, actor: str | int) -> dict:
    """Recover a payment whose redirect and IPN were both lost.

    The gateway is asked for the outcome over its signed API; a final answer goes through the
    same settlement and confirmation as a callback, a pending one changes nothing.
    """
    attempt = ledger.get_attempt(db, order_id)
    gateway = attempt.gateway
    if gateway == "vnpay":
        norm = vnpay_client().query_transaction(txn_ref=order_id, transaction_date=attempt.created_at)
    elif gateway == "momo":
        norm = momo_client().query_transaction(order_id=order_id)
    else:
        raise ValidationError(f"{gateway} payments cannot be queried at the gateway")
    log_audit(db, actor=actor, action="payment.queried", entity_type="payment_attempt", entity_id=order_id,
              details={"response_code": norm.get("response_code"), "pending": norm["pending"],
                       "ledger_status": attempt.status})
    db.commit()
    logger.info("queried %s for %s: %s", gateway, order_id, norm.get("response_code"))
    if norm["pending"]:
        return {"order_id": order_id, "gateway": gateway, "gateway_status": "pending", "settled": False,
                "confirmed": False, "message": norm.get("message", "")}
    result = reconcile(db, gateway, norm)
    return {"gateway": gateway, "gateway_status": "completed" if norm["succeeded"] else "failed", **result}
