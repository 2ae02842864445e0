from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from hotelbooking.db.session import get_db
from hotelbooking.core.security import decode_token, TokenError
from hotelbooking.models.user import User

bearer = HTTPBearer(auto_error=False)

# Operators who may look at any booking or payment and force statuses
STAFF_ROLES = ("admin", "hotel_manager")


def get_current_user(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
    db: Session = Depends(get_db),
) -> User:
    if not creds:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        user_id = decode_token(creds.credentials, expected_type="access")
    except TokenError:
        raise HTTPException(status_code=401, detail="Invalid or expired access token")
    user = db.get(User, user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="Account not found or disabled")
    return user


def is_staff(user: User) -> bool:
    return user.role in STAFF_ROLES


def require_roles(*roles: str):
    def _guard(user: User = Depends(get_current_user)) -> User:
        if user.role not in roles:
            raise HTTPException(status_code=403, detail=f"Requires role: {', '.join(roles)}")
        return user
    return _guard


require_staff = require_roles(*STAFF_ROLES)
