from datetime import date

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from hotelbooking.core.errors import DataAccessError, ValidationError
from hotelbooking.models.booking import Booking, BLOCKING_STATUSES
from hotelbooking.models.hotel import Room, RoomType
from hotelbooking.services.catalog_service import HotelRoomCatalog


def _overlaps(check_in: date, check_out: date):
    # Half-open stay intervals: [check_in, check_out)
    return (Booking.check_in_date < check_out) & (Booking.check_out_date > check_in)


def available(db: Session, hotel_id: int, room_type_id: int, check_in: date, check_out: date) -> dict:
    """Free inventory of a room type for a stay.

    ``available`` is not floored at zero; a negative value means the type is already overbooked.
    """
    if check_out <= check_in:
        raise ValidationError("check_out must be after check_in")
    catalog = HotelRoomCatalog(db)
    catalog.get_room_type_row(hotel_id, room_type_id)
    try:
        total = catalog.get_physical_room_count(hotel_id, room_type_id)
        booked = db.execute(
            select(func.count(func.distinct(Booking.room_id))).where(
                Booking.hotel_id == hotel_id,
                Booking.room_type_id == room_type_id,
                Booking.booking_status.in_(BLOCKING_STATUSES),
                _overlaps(check_in, check_out),
            )
        ).scalar_one()
    except SQLAlchemyError as e:
        raise DataAccessError("could not compute availability") from e
    return {"total": int(total), "booked": int(booked), "available": int(total) - int(booked)}


def held_room_ids(db: Session, hotel_id: int, room_type_id: int, check_in: date, check_out: date) -> set[int]:
    return set(db.execute(
        select(Booking.room_id).where(
            Booking.hotel_id == hotel_id,
            Booking.room_type_id == room_type_id,
            Booking.booking_status.in_(BLOCKING_STATUSES),
            _overlaps(check_in, check_out),
        )
    ).scalars())


def pick_free_room(db: Session, hotel_id: int, room_type_id: int, check_in: date, check_out: date) -> int | None:
    """Lowest-id physical room of the type with no overlapping blocking booking."""
    held = held_room_ids(db, hotel_id, room_type_id, check_in, check_out)
    for rid in HotelRoomCatalog(db).room_ids(hotel_id, room_type_id):
        if rid not in held:
            return rid
    return None


def hotel_availability(db: Session, hotel_id: int, check_in: date, check_out: date) -> list[dict]:
    """``available()`` for every room type of a hotel, plus its name and lowest room price."""
    if check_out <= check_in:
        raise ValidationError("check_out must be after check_in")
    HotelRoomCatalog(db).get_hotel(hotel_id)
    try:
        types = db.execute(
            select(RoomType.id, RoomType.name, func.count(Room.id), func.min(Room.price))
            .join(Room, Room.room_type_id == RoomType.id, isouter=True)
            .where(RoomType.hotel_id == hotel_id)
            .group_by(RoomType.id, RoomType.name)
            .order_by(RoomType.id.asc())
        ).all()
        booked = dict(db.execute(
            select(Booking.room_type_id, func.count(func.distinct(Booking.room_id)))
            .where(
                Booking.hotel_id == hotel_id,
                Booking.booking_status.in_(BLOCKING_STATUSES),
                _overlaps(check_in, check_out),
            )
            .group_by(Booking.room_type_id)
        ).all())
    except SQLAlchemyError as e:
        raise DataAccessError("could not compute availability") from e
    out = []
    for rt_id, name, total, price in types:
        held = int(booked.get(rt_id, 0))
        out.append({
            "room_type_id": rt_id,
            "name": name,
            "price_from": float(price) if price is not None else None,
            "total": int(total),
            "booked": held,
            "available": int(total) - held,
        })
    return out
