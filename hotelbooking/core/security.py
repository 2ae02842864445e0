from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from passlib.context import CryptContext

from hotelbooking.core.config import settings

# PBKDF2 avoids bcrypt backend/version issues and the 72-byte bcrypt input limit.
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
ALGO = "HS256"


class TokenError(ValueError):
    pass


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def _encode(subject: int, token_type: str, expires: timedelta) -> str:
    exp = datetime.now(timezone.utc) + expires
    payload = {"sub": str(subject), "type": token_type, "exp": exp}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=ALGO)


def create_access_token(user_id: int, expires_minutes: int | None = None) -> str:
    if expires_minutes is None:
        expires_minutes = settings.ACCESS_TOKEN_EXPIRE_MINUTES
    return _encode(user_id, "access", timedelta(minutes=expires_minutes))


def create_refresh_token(user_id: int, expires_days: int | None = None) -> str:
    if expires_days is None:
        expires_days = settings.REFRESH_TOKEN_EXPIRE_DAYS
    return _encode(user_id, "refresh", timedelta(days=expires_days))


def decode_token(token: str, expected_type: str = "access") -> int:
    """Return the user id carried by a token of ``expected_type``."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGO])
    except JWTError as e:
        raise TokenError(str(e)) from e
    if payload.get("type") != expected_type:
        raise TokenError("wrong token type")
    try:
        return int(payload.get("sub"))
    except (TypeError, ValueError) as e:
        raise TokenError("invalid subject") from e
