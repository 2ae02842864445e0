from datetime import date, timedelta

import pytest
from sqlalchemy import text

from hotelbooking.core.errors import Forbidden, InvalidState, NotFound, PolicyViolation, ValidationError
from hotelbooking.models.audit_log import AuditLog
from hotelbooking.models.booking import Booking
from hotelbooking.models.outbox_event import OutboxEvent
from hotelbooking.services import availability_service, booking_service
from hotelbooking.services.booking_service import (
    book, cancel_booking, check_in_instant, create_booking, get_booking, override_status,
)


def _request(hotel, rt, check_in, nights=2, **kw):
    data = {
        "hotel_id": hotel.id,
        "room_type_id": rt.id,
        "check_in_date": check_in,
        "check_out_date": check_in + timedelta(days=nights),
        "room_price": 500_000,
        "total_price": 500_000 * nights,
        "payment_method": "cash",
    }
    data.update(kw)
    return data


def test_book_assigns_free_room_and_code(db, make_user, make_hotel, today):
    user = make_user()
    hotel, rt, rooms = make_hotel(rooms=2)
    b = book(db, user, _request(hotel, rt, today + timedelta(days=5)), today=today)

    assert b.booking_code.startswith(f"BOOK-{today:%Y%m%d}-")
    assert b.room_id == rooms[0]
    assert b.booking_status == "pending"
    assert b.payment_status == "pending"
    assert b.nights == 2
    assert float(b.final_price) == 1_000_000
    # cash bookings are not cancellable
    assert b.cancellation_allowed is False


def test_book_rejects_past_check_in(db, make_user, make_hotel, today):
    user = make_user()
    hotel, rt, _ = make_hotel()
    with pytest.raises(ValidationError):
        book(db, user, _request(hotel, rt, today - timedelta(days=1)), today=today)


def test_book_runs_admission(db, make_user, make_hotel, today):
    user = make_user()
    a, rt_a, _ = make_hotel(name="Hotel A")
    b, rt_b, _ = make_hotel(name="Hotel B")
    book(db, user, _request(a, rt_a, today + timedelta(days=3)), today=today)

    with pytest.raises(PolicyViolation) as exc:
        book(db, user, _request(b, rt_b, today + timedelta(days=30)), today=today)
    assert exc.value.reason == "active_booking_other_hotel"
    assert db.query(Booking).count() == 1


def test_sold_out_room_type(db, make_user, make_hotel, today):
    hotel, rt, _ = make_hotel(rooms=1)
    book(db, make_user(), _request(hotel, rt, today + timedelta(days=3)), today=today)
    with pytest.raises(PolicyViolation) as exc:
        book(db, make_user(), _request(hotel, rt, today + timedelta(days=4)), today=today)
    assert exc.value.reason == "room_unavailable"


def test_explicit_room_must_be_free(db, make_user, make_hotel, today):
    hotel, rt, rooms = make_hotel(rooms=2)
    book(db, make_user(), _request(hotel, rt, today + timedelta(days=3), room_id=rooms[1]), today=today)
    with pytest.raises(PolicyViolation):
        book(db, make_user(), _request(hotel, rt, today + timedelta(days=3), room_id=rooms[1]), today=today)
    other = book(db, make_user(), _request(hotel, rt, today + timedelta(days=3), room_id=rooms[0]), today=today)
    assert other.room_id == rooms[0]


def test_paid_booking_grants_points_once(db, make_user, make_hotel, today):
    user = make_user()
    hotel, rt, _ = make_hotel()
    b = create_booking(db, _request(hotel, rt, today + timedelta(days=3), payment_status="paid",
                                    payment_method="vnpay"), user=user, today=today)
    assert b.booking_status == "confirmed"
    assert b.vip_points_added is True
    db.refresh(user)
    assert user.vip_points == 100 + 1_000_000 // 100
    assert db.query(OutboxEvent).filter_by(status="done").count() == 1


def test_code_collision_retries(db, make_user, make_hotel, today, monkeypatch):
    user = make_user()
    hotel, rt, rooms = make_hotel(rooms=2)
    codes = iter(["BOOK-20300101-0001", "BOOK-20300101-0001", "BOOK-20300101-0002"])
    monkeypatch.setattr(booking_service, "make_booking_code", lambda today=None: next(codes))
    first = book(db, user, _request(hotel, rt, today + timedelta(days=3)), today=today)
    second = create_booking(db, _request(hotel, rt, today + timedelta(days=3)), user=user, today=today)
    assert first.booking_code == "BOOK-20300101-0001"
    assert second.booking_code == "BOOK-20300101-0002"


def test_same_hotel_deposit_measured_after_discount(db, make_user, make_hotel, today):
    user = make_user()
    hotel, rt, _ = make_hotel(rooms=2)
    book(db, user, _request(hotel, rt, today + timedelta(days=3)), today=today)

    req = _request(hotel, rt, today + timedelta(days=20), total_price=1_000_000, discount_amount=200_000,
                   payment_method="vnpay", payment_amount=400_000)
    second = book(db, user, req, today=today)
    assert float(second.final_price) == 800_000

    with pytest.raises(PolicyViolation) as exc:
        book(db, user, {**req, "payment_amount": 399_000}, today=today)
    assert exc.value.reason == "same_hotel_requires_deposit"


def test_insert_guard_rejects_overlapping_room(db, make_user, make_hotel, add_booking, today, monkeypatch):
    # Same guarantee as the overlap exclusion constraint: one live booking per room
    db.execute(text("CREATE UNIQUE INDEX ux_bookings_live_room ON bookings (room_id) "
                    "WHERE booking_status IN ('pending', 'confirmed')"))
    db.commit()
    hotel, rt, rooms = make_hotel(rooms=1)
    add_booking(make_user(), hotel, rt, rooms[0], today + timedelta(days=3), today + timedelta(days=5),
                status="confirmed")
    late = make_user()
    # Both creators counted the room as free before either inserted
    monkeypatch.setattr(booking_service, "held_room_ids", lambda *a: set())
    monkeypatch.setattr(availability_service, "held_room_ids", lambda *a: set())

    with pytest.raises(PolicyViolation) as exc:
        create_booking(db, _request(hotel, rt, today + timedelta(days=4)), user=late, today=today)
    assert exc.value.reason == "room_unavailable"
    assert db.query(Booking).count() == 1
    assert db.query(Booking).filter_by(user_id=late.id).count() == 0


def test_get_booking_checks_owner(db, make_user, make_hotel, add_booking):
    owner, other = make_user(), make_user()
    hotel, rt, rooms = make_hotel()
    b = add_booking(owner, hotel, rt, rooms[0], date(2030, 1, 10), date(2030, 1, 12))
    assert get_booking(db, b.id, owner.id).id == b.id
    with pytest.raises(Forbidden):
        get_booking(db, b.id, other.id)
    with pytest.raises(NotFound):
        get_booking(db, b.id + 100, owner.id)


class TestCancel:
    CHECK_IN = date(2030, 3, 10)

    def _booking(self, make_user, make_hotel, add_booking, **kw):
        user = make_user()
        hotel, rt, rooms = make_hotel()
        b = add_booking(user, hotel, rt, rooms[0], self.CHECK_IN, self.CHECK_IN + timedelta(days=2),
                        status=kw.pop("status", "confirmed"), **kw)
        return user, b

    def test_cancel_24h_before_check_in(self, db, make_user, make_hotel, add_booking):
        user, b = self._booking(make_user, make_hotel, add_booking)
        now = check_in_instant(self.CHECK_IN) - timedelta(hours=24)

        out = cancel_booking(db, b.id, user.id, reason="plans changed", now=now)

        assert out.booking_status == "cancelled"
        assert out.refund_status == "requested"
        assert out.refund_reason == "plans changed"
        assert out.cancelled_at is not None
        ev = db.query(OutboxEvent).one()
        assert ev.event_type == "booking.cancelled"
        assert ev.status == "pending"
        assert db.query(AuditLog).filter_by(action="booking.cancelled").count() == 1

    def test_cancel_inside_window_rejected(self, db, make_user, make_hotel, add_booking):
        user, b = self._booking(make_user, make_hotel, add_booking)
        now = check_in_instant(self.CHECK_IN) - timedelta(hours=23)
        with pytest.raises(PolicyViolation) as exc:
            cancel_booking(db, b.id, user.id, now=now)
        assert exc.value.reason == "cancellation_window_passed"
        db.refresh(b)
        assert b.booking_status == "confirmed"

    def test_non_refundable(self, db, make_user, make_hotel, add_booking):
        user, b = self._booking(make_user, make_hotel, add_booking, cancellation_allowed=False)
        with pytest.raises(PolicyViolation) as exc:
            cancel_booking(db, b.id, user.id, now=check_in_instant(self.CHECK_IN) - timedelta(days=10))
        assert exc.value.reason == "cancellation_not_allowed"

    def test_not_owner(self, db, make_user, make_hotel, add_booking):
        _, b = self._booking(make_user, make_hotel, add_booking)
        stranger = make_user()
        with pytest.raises(Forbidden):
            cancel_booking(db, b.id, stranger.id, now=check_in_instant(self.CHECK_IN) - timedelta(days=10))

    @pytest.mark.parametrize("status", ["cancelled", "checked_in", "completed"])
    def test_wrong_status(self, db, make_user, make_hotel, add_booking, status):
        user, b = self._booking(make_user, make_hotel, add_booking, status=status)
        with pytest.raises(InvalidState):
            cancel_booking(db, b.id, user.id, now=check_in_instant(self.CHECK_IN) - timedelta(days=10))


def test_override_by_unrelated_manager_forbidden(db, make_user, make_hotel, add_booking):
    guest = make_user()
    manager, other_manager = make_user(role="hotel_manager"), make_user(role="hotel_manager")
    hotel, rt, rooms = make_hotel(manager=manager)
    b = add_booking(guest, hotel, rt, rooms[0], date(2030, 1, 10), date(2030, 1, 12))

    with pytest.raises(Forbidden):
        override_status(db, b.id, other_manager, booking_status="confirmed")

    out = override_status(db, b.id, manager, booking_status="checked_in", payment_status="paid", note="walk-in")
    assert out.booking_status == "checked_in"
    assert out.payment_status == "paid"
    assert db.query(AuditLog).filter_by(action="booking.status_override").count() == 1


def test_override_rejects_unknown_status(db, make_user, make_hotel, add_booking):
    admin = make_user(role="admin")
    hotel, rt, rooms = make_hotel()
    b = add_booking(make_user(), hotel, rt, rooms[0], date(2030, 1, 10), date(2030, 1, 12))
    with pytest.raises(ValidationError):
        override_status(db, b.id, admin, booking_status="lost")
