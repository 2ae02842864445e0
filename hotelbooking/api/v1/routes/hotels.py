from datetime import date
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from hotelbooking.db.session import get_db
from hotelbooking.services.availability_service import available, hotel_availability

router = APIRouter(tags=["hotels"])


@router.get("/hotels/{hotel_id}/availability")
def hotel_room_availability(hotel_id: int, check_in: date, check_out: date, db: Session = Depends(get_db)):
    return {
        "hotel_id": hotel_id,
        "check_in": check_in.isoformat(),
        "check_out": check_out.isoformat(),
        "room_types": hotel_availability(db, hotel_id, check_in, check_out),
    }


@router.get("/hotels/{hotel_id}/room-types/{room_type_id}/availability")
def room_type_availability(hotel_id: int, room_type_id: int, check_in: date, check_out: date,
                           db: Session = Depends(get_db)):
    counts = available(db, hotel_id, room_type_id, check_in, check_out)
    return {
        "hotel_id": hotel_id,
        "room_type_id": room_type_id,
        "check_in": check_in.isoformat(),
        "check_out": check_out.isoformat(),
        **counts,
    }
