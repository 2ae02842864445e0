import logging
from typing import Protocol

from sqlalchemy.orm import Session

from hotelbooking.core.errors import NotFound
from hotelbooking.models.user import User

logger = logging.getLogger(__name__)

BASE_POINTS = 100
# (threshold, level), highest first
VIP_LEVELS = [(10_000, "Diamond"), (5_000, "Gold"), (1_000, "Silver"), (0, "Bronze")]


def calculate_points(final_price: float) -> int:
    if not final_price or final_price <= 0:
        return 0
    return BASE_POINTS + int(float(final_price) // 100)


def level_for(points: int) -> str:
    for threshold, level in VIP_LEVELS:
        if points >= threshold:
            return level
    return "Bronze"


class LoyaltyService(Protocol):
    def grant_points(self, user_id: int, final_price: float) -> dict: ...


class UserLoyaltyService:
    """Keeps the balance on the users row. Does not commit; the caller owns the transaction."""

    def __init__(self, db: Session):
        self.db = db

    def grant_points(self, user_id: int, final_price: float) -> dict:
        user = self.db.get(User, user_id)
        if not user:
            raise NotFound(f"user {user_id} not found")
        added = calculate_points(final_price)
        old_level = user.vip_level or "Bronze"
        user.vip_points = int(user.vip_points or 0) + added
        user.vip_level = level_for(user.vip_points)
        leveled_up = user.vip_level != old_level
        logger.info("loyalty: +%s points user=%s total=%s level=%s", added, user_id, user.vip_points, user.vip_level)
        return {
            "points_added": added,
            "new_total": user.vip_points,
            "new_level": user.vip_level,
            "leveled_up": leveled_up,
        }
