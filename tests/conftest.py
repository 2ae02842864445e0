import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("VNP_TMN_CODE", "TESTTMN1")
os.environ.setdefault("VNP_HASH_SECRET", "vnpay-test-secret")
os.environ.setdefault("MOMO_PARTNER_CODE", "MOMOTEST")
os.environ.setdefault("MOMO_ACCESS_KEY", "momo-access")
os.environ.setdefault("MOMO_SECRET_KEY", "momo-secret")
os.environ.setdefault("BANK_TRANSFER_SECRET", "bank-test-secret")
os.environ.setdefault("TIMEZONE", "Asia/Ho_Chi_Minh")

from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from hotelbooking.db.session import Base, get_db
from hotelbooking.main import app
from hotelbooking.core.security import create_access_token, hash_password
from hotelbooking.models.user import User
from hotelbooking.models.hotel import Hotel, RoomType, Room
from hotelbooking.models.booking import Booking
from hotelbooking.models.payment_attempt import PaymentAttempt  # noqa: F401
from hotelbooking.models.outbox_event import OutboxEvent  # noqa: F401
from hotelbooking.models.email_log import EmailLog  # noqa: F401
from hotelbooking.models.audit_log import AuditLog  # noqa: F401
from hotelbooking.services import email_service
from hotelbooking.services.admission_service import local_today

engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db():
    Base.metadata.create_all(engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)


@pytest.fixture(autouse=True)
def outbox_mail(monkeypatch):
    """Capture outgoing mail instead of talking to SMTP."""
    sent = []
    monkeypatch.setattr(email_service, "send_email", lambda to, subject, body: sent.append((to, subject, body)))
    return sent


@pytest.fixture()
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture()
def make_user(db):
    counter = {"n": 0}

    def _make(role: str = "customer", email: str | None = None) -> User:
        counter["n"] += 1
        u = User(
            email=email or f"user{counter['n']}@example.com",
            full_name=f"User {counter['n']}",
            phone="0900000000",
            role=role,
            password_hash=hash_password("password123"),
            is_active=True,
        )
        db.add(u)
        db.commit()
        return u

    return _make


@pytest.fixture()
def make_hotel(db):
    def _make(name: str = "Riverside", rooms: int = 1, manager: User | None = None, price: int = 500_000):
        h = Hotel(name=name, manager_user_id=manager.id if manager else None)
        db.add(h)
        db.flush()
        rt = RoomType(hotel_id=h.id, name="Deluxe")
        db.add(rt)
        db.flush()
        room_ids = []
        for n in range(rooms):
            r = Room(hotel_id=h.id, room_type_id=rt.id, room_number=f"1{n:02d}", price=price)
            db.add(r)
            db.flush()
            room_ids.append(r.id)
        db.commit()
        return h, rt, room_ids

    return _make


@pytest.fixture()
def add_booking(db):
    """Insert a booking row directly, bypassing admission and availability."""
    def _add(user: User, hotel: Hotel, room_type: RoomType, room_id: int, check_in: date, check_out: date,
             status: str = "pending", **kw) -> Booking:
        b = Booking(
            booking_code=kw.pop("booking_code", f"BOOK-TEST-{room_id}-{check_in:%m%d}-{status}"),
            user_id=user.id,
            user_email=user.email,
            hotel_id=hotel.id,
            room_type_id=room_type.id,
            room_id=room_id,
            check_in_date=check_in,
            check_out_date=check_out,
            nights=(check_out - check_in).days,
            total_price=kw.pop("total_price", 1_000_000),
            final_price=kw.pop("final_price", 1_000_000),
            booking_status=status,
            payment_method=kw.pop("payment_method", "vnpay"),
            **kw,
        )
        db.add(b)
        db.commit()
        return b

    return _add


@pytest.fixture()
def auth():
    def _auth(user: User) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}
    return _auth


@pytest.fixture()
def today():
    return local_today()


@pytest.fixture()
def future(today):
    def _future(days: int) -> date:
        return today + timedelta(days=days)
    return _future
