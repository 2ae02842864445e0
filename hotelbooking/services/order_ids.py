import re
import time

from hotelbooking.core.errors import ValidationError

# Formats registered with the gateway merchant accounts; keep them stable.
#   BOOKING_{booking_ref}_{unixMillis}   (vnpay, momo)
#   BANK_{unixMillis}_{booking_ref}      (bank_transfer)
_BOOKING_RE = re.compile(r"^BOOKING_(?P<ref>.+)_(?P<ms>\d+)$")
_BANK_RE = re.compile(r"^BANK_(?P<ms>\d+)_(?P<ref>.+)$")
_REF_RE = re.compile(r"^[A-Za-z0-9-]+$")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _check_ref(booking_ref: str) -> str:
    ref = str(booking_ref or "").strip()
    if not ref or not _REF_RE.match(ref):
        raise ValidationError("booking_ref must be non-empty and contain only letters, digits and '-'")
    return ref


def make_order_id(gateway: str, booking_ref: str, now_ms: int | None = None) -> str:
    ref = _check_ref(booking_ref)
    ms = now_ms if now_ms is not None else _now_ms()
    if gateway == "bank_transfer":
        return f"BANK_{ms}_{ref}"
    return f"BOOKING_{ref}_{ms}"


def parse_booking_ref(order_id: str) -> str:
    """Recover the booking reference embedded in an order id (any gateway)."""
    oid = str(order_id or "")
    m = _BOOKING_RE.match(oid) or _BANK_RE.match(oid)
    if not m:
        raise ValidationError(f"unrecognised order id: {oid!r}")
    return m.group("ref")
