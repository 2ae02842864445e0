import logging

from sqlalchemy.orm import Session
from sqlalchemy import text
from sqlalchemy.exc import ProgrammingError

from hotelbooking.db.session import SessionLocal
from hotelbooking.core.security import hash_password
from hotelbooking.models.user import User
from hotelbooking.models.hotel import Hotel, RoomType, Room

logger = logging.getLogger(__name__)

DEMO_HOTELS = [
    # (hotel name, [(room type, price per night, room count)])
    ("Saigon Riverside Hotel", [("Deluxe Double", 1_200_000, 3), ("Family Suite", 2_500_000, 1)]),
    ("Hanoi Old Quarter Inn", [("Standard Twin", 800_000, 2)]),
]


def ensure_user(db: Session, email: str, password: str, role: str, name: str) -> User:
    u = db.query(User).filter(User.email == email).first()
    if u:
        return u
    u = User(email=email, full_name=name, role=role, password_hash=hash_password(password), is_active=True)
    db.add(u)
    db.commit()
    return u


def ensure_catalog(db: Session, manager: User) -> None:
    for hotel_name, types in DEMO_HOTELS:
        hotel = db.query(Hotel).filter(Hotel.name == hotel_name).first()
        if hotel:
            continue
        hotel = Hotel(name=hotel_name, manager_user_id=manager.id)
        db.add(hotel)
        db.flush()
        for type_name, price, count in types:
            rt = RoomType(hotel_id=hotel.id, name=type_name)
            db.add(rt)
            db.flush()
            for n in range(count):
                db.add(Room(hotel_id=hotel.id, room_type_id=rt.id, room_number=f"{rt.id}{n + 1:02d}", price=price))
        logger.info("seeded hotel %s", hotel_name)
    db.commit()


def run(db=None):
    own = db is None
    if own:
        db = SessionLocal()
    try:
        # If migrations haven't been applied yet, seeding must not crash the API.
        try:
            db.execute(text("SELECT 1 FROM users LIMIT 1"))
        except ProgrammingError:
            db.rollback()
            logger.warning("users table not found yet; skipping seed (run alembic upgrade head)")
            return

        ensure_user(db, "admin@hotelbooking.local", "admin12345", "admin", "Admin")
        manager = ensure_user(db, "manager@hotelbooking.local", "manager12345", "hotel_manager", "Hotel Manager")
        ensure_user(db, "guest@hotelbooking.local", "guest12345", "customer", "Demo Guest")
        ensure_catalog(db, manager)
    finally:
        if own:
            db.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run()
