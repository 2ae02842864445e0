from sqlalchemy import select, func, update
from sqlalchemy.orm import Session

from hotelbooking.core.errors import NotFound
from hotelbooking.models.hotel import Hotel, RoomType, Room


class HotelRoomCatalog:
    """Read side of the hotel/room catalog used by admission and confirmation."""

    def __init__(self, db: Session):
        self.db = db

    def get_room_type(self, room_id: int) -> dict:
        room = self.db.get(Room, room_id)
        if not room:
            raise NotFound(f"room {room_id} not found")
        return {"room_type_id": room.room_type_id, "hotel_id": room.hotel_id}

    def get_physical_room_count(self, hotel_id: int, room_type_id: int) -> int:
        return self.db.execute(
            select(func.count(Room.id)).where(Room.hotel_id == hotel_id, Room.room_type_id == room_type_id)
        ).scalar_one()

    def room_ids(self, hotel_id: int, room_type_id: int) -> list[int]:
        return list(self.db.execute(
            select(Room.id).where(Room.hotel_id == hotel_id, Room.room_type_id == room_type_id).order_by(Room.id.asc())
        ).scalars())

    def get_room_type_row(self, hotel_id: int, room_type_id: int, lock: bool = False) -> RoomType:
        q = select(RoomType).where(RoomType.id == room_type_id, RoomType.hotel_id == hotel_id)
        if lock:
            q = q.with_for_update()
        rt = self.db.execute(q).scalar_one_or_none()
        if not rt:
            raise NotFound(f"room type {room_type_id} not found at hotel {hotel_id}")
        return rt

    def get_hotel(self, hotel_id: int) -> Hotel:
        h = self.db.get(Hotel, hotel_id)
        if not h:
            raise NotFound(f"hotel {hotel_id} not found")
        return h

    def hotel_name(self, hotel_id: int) -> str:
        h = self.db.get(Hotel, hotel_id)
        return h.name if h else f"#{hotel_id}"

    def set_room_display_status(self, room_id: int, status: str) -> bool:
        res = self.db.execute(update(Room).where(Room.id == room_id).values(display_status=status))
        return res.rowcount == 1
