import pytest

from hotelbooking.core.errors import ValidationError
from hotelbooking.services.order_ids import make_order_id, parse_booking_ref


@pytest.mark.parametrize("gateway", ["vnpay", "momo", "bank_transfer"])
@pytest.mark.parametrize("ref", ["BOOK-20261019-0042", "U7-1760000000-ab12", "12345"])
def test_booking_ref_survives_every_gateway_format(gateway, ref):
    order_id = make_order_id(gateway, ref, now_ms=1760000000123)
    assert parse_booking_ref(order_id) == ref


def test_wire_formats():
    assert make_order_id("vnpay", "BOOK-20261019-0042", now_ms=1) == "BOOKING_BOOK-20261019-0042_1"
    assert make_order_id("momo", "77", now_ms=5) == "BOOKING_77_5"
    assert make_order_id("bank_transfer", "77", now_ms=5) == "BANK_5_77"


def test_parse_rejects_foreign_ids():
    with pytest.raises(ValidationError):
        parse_booking_ref("ORDER-123")
    with pytest.raises(ValidationError):
        parse_booking_ref("BOOKING_abc")


def test_ref_with_underscore_is_refused():
    with pytest.raises(ValidationError):
        make_order_id("vnpay", "bad_ref")
