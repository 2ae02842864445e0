import json
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest
from sqlalchemy.orm import sessionmaker

from hotelbooking.core.config import settings
from hotelbooking.core.errors import ExternalGatewayError
from hotelbooking.models.audit_log import AuditLog
from hotelbooking.models.email_log import EmailLog
from hotelbooking.models.outbox_event import OutboxEvent
from hotelbooking.services import outbox_service
from hotelbooking.services import payment_ledger as ledger
from hotelbooking.services.booking_service import cancel_booking, check_in_instant
from hotelbooking.services.lifecycle_service import advance_booking_lifecycle, expire_pending_bookings
from hotelbooking.services.loyalty_service import UserLoyaltyService, calculate_points, level_for
from hotelbooking.services.vnpay_client import VnpayClient
from hotelbooking.tasks import worker_jobs


def test_points_and_levels():
    assert calculate_points(0) == 0
    assert calculate_points(-5) == 0
    assert calculate_points(99) == 100
    assert calculate_points(1_000_000) == 10_100
    assert level_for(999) == "Bronze"
    assert level_for(1_000) == "Silver"
    assert level_for(5_000) == "Gold"
    assert level_for(10_000) == "Diamond"


def test_grant_points_reports_level_up(db, make_user):
    user = make_user()
    out = UserLoyaltyService(db).grant_points(user.id, 100_000)
    assert out == {"points_added": 1_100, "new_total": 1_100, "new_level": "Silver", "leveled_up": True}


class TestOutbox:
    @pytest.fixture()
    def event(self, db, make_user):
        user = make_user()
        ev = outbox_service.enqueue(db, outbox_service.LOYALTY_GRANT, 1, {"user_id": user.id, "final_price": 50_000})
        db.commit()
        return user, ev.id

    def test_failed_event_retried_until_dead(self, db, event, monkeypatch):
        _, eid = event
        monkeypatch.setattr(settings, "OUTBOX_MAX_ATTEMPTS", 2)

        def boom(db, booking_id, payload):
            raise RuntimeError("loyalty store down")

        monkeypatch.setitem(outbox_service._HANDLERS, outbox_service.LOYALTY_GRANT, boom)

        assert outbox_service.process_outbox(db) == {"processed": 1, "done": 0, "failed": 1}
        ev = db.get(OutboxEvent, eid)
        assert (ev.status, ev.attempts) == ("failed", 1)
        assert "loyalty store down" in ev.last_error

        outbox_service.process_outbox(db)
        db.refresh(ev)
        assert (ev.status, ev.attempts) == ("dead", 2)

        assert outbox_service.process_outbox(db)["processed"] == 0

    def test_retry_applies_once(self, db, event, monkeypatch):
        user, eid = event
        calls = []

        def flaky(db, booking_id, payload):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("transient")
            UserLoyaltyService(db).grant_points(payload["user_id"], payload["final_price"])

        monkeypatch.setitem(outbox_service._HANDLERS, outbox_service.LOYALTY_GRANT, flaky)
        outbox_service.process_outbox(db)
        outbox_service.process_outbox(db)
        outbox_service.process_outbox(db)

        assert len(calls) == 2
        assert db.get(OutboxEvent, eid).status == "done"
        db.refresh(user)
        assert user.vip_points == 100 + 500

    def test_done_event_is_not_reclaimed(self, db, event):
        _, eid = event
        assert outbox_service.process_event(db, eid) is True
        assert outbox_service.process_event(db, eid) is False

    def test_stale_claim_is_recovered(self, db, event):
        user, eid = event
        ev = db.get(OutboxEvent, eid)
        ev.status = "processing"
        ev.attempts = 1
        ev.claimed_at = datetime.now(timezone.utc) - timedelta(minutes=outbox_service.STALE_CLAIM_MINUTES + 1)
        db.commit()

        assert outbox_service.process_outbox(db)["done"] == 1
        db.refresh(user)
        assert user.vip_points == 600

    def test_fresh_claim_is_left_alone(self, db, event):
        _, eid = event
        ev = db.get(OutboxEvent, eid)
        ev.status = "processing"
        ev.claimed_at = datetime.now(timezone.utc)
        db.commit()
        assert outbox_service.process_outbox(db)["processed"] == 0


class TestRefundOnCancel:
    CHECK_IN = date(2030, 5, 1)

    def _cancelled(self, db, make_user, make_hotel, add_booking, payments=()):
        user = make_user()
        hotel, rt, rooms = make_hotel()
        b = add_booking(user, hotel, rt, rooms[0], self.CHECK_IN, self.CHECK_IN + timedelta(days=1),
                        status="confirmed", payment_status="paid", booking_code="BOOK-R-1")
        for n, (gateway, amount) in enumerate(payments):
            order_id = f"BANK_{n}_BOOK-R-1" if gateway == "bank_transfer" else f"BOOKING_BOOK-R-1_{n}"
            ledger.record_attempt(db, order_id, "BOOK-R-1", amount, gateway, booking_id=b.id)
            db.commit()
            ledger.settle(db, order_id, "completed", f"T{n}")
            db.commit()
        cancel_booking(db, b.id, user.id, reason="trip cancelled", now=check_in_instant(self.CHECK_IN) - timedelta(days=7))
        return b

    def test_vnpay_refund_completed(self, db, make_user, make_hotel, add_booking, monkeypatch):
        refunds = []

        def fake_refund(self, **kw):
            refunds.append(kw)
            return {"vnp_ResponseCode": "00", "vnp_TransactionNo": f"RF{len(refunds)}"}

        monkeypatch.setattr(VnpayClient, "refund", fake_refund)
        b = self._cancelled(db, make_user, make_hotel, add_booking, payments=[("vnpay", 400_000), ("vnpay", 600_000)])
        # nothing refunded before the worker runs
        assert b.refund_status == "requested"

        outbox_service.process_outbox(db)
        db.refresh(b)
        assert b.refund_status == "completed"
        assert float(b.refund_amount) == 1_000_000
        assert b.payment_status == "refunded"
        assert b.refund_transaction_id == "RF1,RF2"
        assert [r["txn_ref"] for r in refunds] == ["BOOKING_BOOK-R-1_0", "BOOKING_BOOK-R-1_1"]

    def test_vnpay_refund_failure(self, db, make_user, make_hotel, add_booking, monkeypatch):
        def fail(self, **kw):
            raise ExternalGatewayError("VNPay refund timed out", timeout=True)

        monkeypatch.setattr(VnpayClient, "refund", fail)
        b = self._cancelled(db, make_user, make_hotel, add_booking, payments=[("vnpay", 1_000_000)])
        outbox_service.process_outbox(db)
        db.refresh(b)
        assert b.refund_status == "failed"
        assert b.booking_status == "cancelled"

    def test_other_gateways_wait_for_manual_refund(self, db, make_user, make_hotel, add_booking):
        b = self._cancelled(db, make_user, make_hotel, add_booking, payments=[("bank_transfer", 1_000_000)])
        outbox_service.process_outbox(db)
        db.refresh(b)
        assert b.refund_status == "requested"
        assert db.query(OutboxEvent).one().status == "done"

    def test_partial_vnpay_refund_reports_outstanding(self, db, make_user, make_hotel, add_booking, monkeypatch):
        calls = []

        def second_fails(self, **kw):
            calls.append(kw["txn_ref"])
            if len(calls) == 2:
                raise ExternalGatewayError("VNPay refund timed out", timeout=True)
            return {"vnp_ResponseCode": "00", "vnp_TransactionNo": "RF1"}

        monkeypatch.setattr(VnpayClient, "refund", second_fails)
        b = self._cancelled(db, make_user, make_hotel, add_booking, payments=[("vnpay", 400_000), ("vnpay", 600_000)])
        outbox_service.process_outbox(db)
        db.refresh(b)
        assert b.refund_status == "failed"
        assert float(b.refund_amount) == 400_000
        assert b.refund_transaction_id == "RF1"
        audit = db.query(AuditLog).filter_by(action="refund.outstanding").one()
        assert json.loads(audit.details_json)["outstanding_order_ids"] == ["BOOKING_BOOK-R-1_1"]

    def test_nothing_paid(self, db, make_user, make_hotel, add_booking):
        b = self._cancelled(db, make_user, make_hotel, add_booking)
        outbox_service.process_outbox(db)
        db.refresh(b)
        assert b.refund_status == "none"


class TestOrphanedPaymentRefund:
    ORDER = "BOOKING_REFO-2_1760000000000"

    @pytest.fixture()
    def orphaned(self, db):
        ledger.record_attempt(db, self.ORDER, "REFO-2", 1_000_000, "vnpay", extra_data={"user_id": 1})
        db.commit()
        ledger.settle(db, self.ORDER, "completed", "14000002")
        outbox_service.enqueue(db, outbox_service.PAYMENT_ORPHANED, None, {"order_id": self.ORDER})
        db.commit()

    def test_refunded_through_vnpay(self, db, orphaned, monkeypatch):
        refunds = []

        def fake_refund(self, **kw):
            refunds.append(kw)
            return {"vnp_ResponseCode": "00", "vnp_TransactionNo": "RF9"}

        monkeypatch.setattr(VnpayClient, "refund", fake_refund)
        assert outbox_service.process_outbox(db)["done"] == 1
        assert [(r["txn_ref"], r["amount"], r["transaction_no"]) for r in refunds] == [(self.ORDER, 1_000_000, "14000002")]
        audit = db.query(AuditLog).filter_by(action="refund.completed", entity_id=self.ORDER).one()
        assert json.loads(audit.details_json)["transaction_id"] == "RF9"

    def test_rejected_refund_is_retried(self, db, orphaned, monkeypatch):
        monkeypatch.setattr(VnpayClient, "refund", lambda self, **kw: {"vnp_ResponseCode": "94"})
        assert outbox_service.process_outbox(db)["failed"] == 1
        ev = db.query(OutboxEvent).one()
        assert ev.status == "failed"
        assert "94" in ev.last_error
        assert db.query(AuditLog).filter_by(action="refund.completed").count() == 0


class TestLifecycle:
    def _at(self, d: date, hour: int) -> datetime:
        return datetime(d.year, d.month, d.day, hour, 0, tzinfo=ZoneInfo(settings.TIMEZONE))

    def test_advances_confirmed_bookings(self, db, make_user, make_hotel, add_booking):
        today = date(2030, 6, 10)
        user = make_user()
        hotel, rt, rooms = make_hotel(rooms=4)
        arriving = add_booking(user, hotel, rt, rooms[0], today, today + timedelta(days=2), status="confirmed")
        leaving = add_booking(user, hotel, rt, rooms[1], today - timedelta(days=2), today, status="in_progress")
        future_stay = add_booking(user, hotel, rt, rooms[2], today + timedelta(days=1), today + timedelta(days=3),
                                  status="confirmed")
        unpaid = add_booking(user, hotel, rt, rooms[3], today, today + timedelta(days=1), status="pending")

        # before check-in and check-out hours nothing moves
        assert advance_booking_lifecycle(db, now=self._at(today, 9)) == {"in_progress": 0, "completed": 0}

        assert advance_booking_lifecycle(db, now=self._at(today, 15)) == {"in_progress": 1, "completed": 1}
        for b in (arriving, leaving, future_stay, unpaid):
            db.refresh(b)
        assert arriving.booking_status == "in_progress"
        assert leaving.booking_status == "completed"
        assert future_stay.booking_status == "confirmed"
        assert unpaid.booking_status == "pending"

    def test_reaper_disabled_by_default(self, db):
        assert expire_pending_bookings(db) == {"expired": 0, "enabled": False}

    def test_reaper_cancels_stale_holds(self, db, make_user, make_hotel, add_booking, monkeypatch):
        monkeypatch.setattr(settings, "PENDING_HOLD_HOURS", 2)
        now = datetime.now(timezone.utc)
        user = make_user()
        hotel, rt, rooms = make_hotel(rooms=3)
        stale = add_booking(user, hotel, rt, rooms[0], date(2030, 1, 1), date(2030, 1, 2),
                            created_at=now - timedelta(hours=3))
        fresh = add_booking(user, hotel, rt, rooms[1], date(2030, 1, 1), date(2030, 1, 2),
                            created_at=now - timedelta(minutes=30))
        paid = add_booking(user, hotel, rt, rooms[2], date(2030, 1, 1), date(2030, 1, 2),
                           payment_status="partial", created_at=now - timedelta(hours=3))

        assert expire_pending_bookings(db, now=now) == {"expired": 1, "enabled": True}
        for b in (stale, fresh, paid):
            db.refresh(b)
        assert stale.booking_status == "cancelled"
        assert stale.refund_reason == "payment hold expired"
        assert fresh.booking_status == "pending"
        assert paid.booking_status == "pending"


def test_worker_job_retries_failed_email(db, monkeypatch, outbox_mail):
    db.add(EmailLog(to_email="guest@example.com", subject="Booking confirmed", body="hello", status="failed"))
    db.commit()
    monkeypatch.setattr(worker_jobs, "SessionLocal", sessionmaker(bind=db.get_bind()))

    assert worker_jobs.process_email_queue() == {"processed": 1, "sent": 1, "failed": 0}
    assert outbox_mail == [("guest@example.com", "Booking confirmed", "hello")]
    db.expire_all()
    assert db.query(EmailLog).one().status == "sent"
