from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from hotelbooking.db.session import get_db
from hotelbooking.schemas.auth import LoginRequest, RegisterRequest, TokenPair
from hotelbooking.models.user import User
from hotelbooking.core.security import (
    verify_password, hash_password, create_access_token, create_refresh_token, decode_token, TokenError,
)
from hotelbooking.api.deps import get_current_user

router = APIRouter(tags=["auth"])

def _tokens(user: User) -> TokenPair:
    return TokenPair(
        access_token=create_access_token(user.id),
        refresh_token=create_refresh_token(user.id),
    )

@router.post("/auth/register", response_model=TokenPair)
def register(body: RegisterRequest, db: Session = Depends(get_db)):
    email = body.email.strip().lower()
    if not email:
        raise HTTPException(status_code=400, detail="email required")
    if len(body.password) < 8:
        raise HTTPException(status_code=400, detail="Password too short")
    if db.query(User).filter(User.email == email).first():
        raise HTTPException(status_code=409, detail="email already exists")
    user = User(
        email=email,
        full_name=body.full_name,
        phone=body.phone,
        role="customer",
        password_hash=hash_password(body.password),
        is_active=True,
    )
    db.add(user)
    db.commit()
    return _tokens(user)

@router.post("/auth/login", response_model=TokenPair)
def login(body: LoginRequest, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == body.email.lower()).first()
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if not verify_password(body.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return _tokens(user)


@router.post("/auth/refresh", response_model=TokenPair)
def refresh(refresh_token: str, db: Session = Depends(get_db)):
    try:
        user_id = decode_token(refresh_token, expected_type="refresh")
    except TokenError:
        raise HTTPException(status_code=401, detail="Invalid refresh token")
    user = db.get(User, user_id)
    if not user or not user.is_active:
        raise HTTPException(status_code=401, detail="User not found or inactive")
    return _tokens(user)

@router.get("/auth/me")
def me(me: User = Depends(get_current_user)):
    """Return current user info including role and loyalty balance."""
    return {
        "id": me.id,
        "email": me.email,
        "full_name": me.full_name or "",
        "role": me.role,
        "vip_points": me.vip_points,
        "vip_level": me.vip_level,
    }
