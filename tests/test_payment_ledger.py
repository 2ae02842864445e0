import pytest

from hotelbooking.core.errors import ConflictError, NotFound, ValidationError
from hotelbooking.services import payment_ledger as ledger


def test_record_and_settle_once(db):
    ledger.record_attempt(db, "BOOKING_R1_1", "R1", 500_000, "vnpay", extra_data={"final_price": 1_000_000})
    db.commit()

    assert ledger.settle(db, "BOOKING_R1_1", "completed", "TXN1") is True
    db.commit()
    a = ledger.get_attempt(db, "BOOKING_R1_1")
    assert a.status == "completed"
    assert a.gateway_txn_id == "TXN1"
    assert a.settled_at is not None

    # replay of the same outcome is a no-op
    assert ledger.settle(db, "BOOKING_R1_1", "completed", "TXN1") is False


def test_conflicting_outcome_keeps_first(db):
    ledger.record_attempt(db, "BOOKING_R2_1", "R2", 100, "momo")
    db.commit()
    ledger.settle(db, "BOOKING_R2_1", "failed")
    db.commit()

    with pytest.raises(ConflictError) as exc:
        ledger.settle(db, "BOOKING_R2_1", "completed", "late")
    assert exc.value.extra["settled_status"] == "failed"
    db.rollback()
    assert ledger.get_attempt(db, "BOOKING_R2_1").status == "failed"


def test_duplicate_order_id(db):
    ledger.record_attempt(db, "BANK_1_R3", "R3", 100, "bank_transfer")
    db.commit()
    with pytest.raises(ConflictError):
        ledger.record_attempt(db, "BANK_1_R3", "R3", 100, "bank_transfer")


def test_record_validates_input(db):
    with pytest.raises(ValidationError):
        ledger.record_attempt(db, "BOOKING_R4_1", "R4", 0, "vnpay")
    with pytest.raises(ValidationError):
        ledger.record_attempt(db, "BOOKING_R4_1", "R4", 10, "paypal")
    with pytest.raises(ValidationError):
        ledger.record_attempt(db, "BOOKING_R4_1", "OTHER", 10, "vnpay")


def test_unknown_order(db):
    with pytest.raises(NotFound):
        ledger.settle(db, "BOOKING_NOPE_1", "completed")
    with pytest.raises(NotFound):
        ledger.get_attempt(db, "BOOKING_NOPE_1")


def test_family_sum_counts_completed_only(db):
    ledger.record_attempt(db, "BOOKING_R5_1", None, 300_000, "vnpay")
    ledger.record_attempt(db, "BOOKING_R5_2", None, 200_000, "momo")
    ledger.record_attempt(db, "BANK_3_R5", None, 500_000, "bank_transfer")
    ledger.record_attempt(db, "BOOKING_OTHER_4", None, 900_000, "vnpay")
    db.commit()
    ledger.settle(db, "BOOKING_R5_1", "completed")
    ledger.settle(db, "BOOKING_R5_2", "failed")
    ledger.settle(db, "BANK_3_R5", "completed")
    ledger.settle(db, "BOOKING_OTHER_4", "completed")
    db.commit()

    assert ledger.sum_completed(db, "BOOKING_R5_2") == 800_000
    assert [a.order_id for a in ledger.family(db, "R5")] == ["BOOKING_R5_1", "BOOKING_R5_2", "BANK_3_R5"]


def test_link_booking_only_fills_unlinked(db):
    ledger.record_attempt(db, "BOOKING_R6_1", None, 10, "vnpay", booking_id=7)
    ledger.record_attempt(db, "BOOKING_R6_2", None, 10, "vnpay")
    db.commit()
    assert ledger.link_booking(db, "R6", 9) == 1
    db.commit()
    assert {a.order_id: a.booking_id for a in ledger.family(db, "R6")} == {"BOOKING_R6_1": 7, "BOOKING_R6_2": 9}
