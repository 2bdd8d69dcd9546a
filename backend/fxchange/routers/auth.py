"""Auth router — registration, login, and user info."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from fxchange.config import settings
from fxchange.core.clock import as_utc
from fxchange.database import get_db
from fxchange.errors import ConflictError
from fxchange.models.user import User
from fxchange.schemas.auth import RegisterRequest, LoginRequest, TokenResponse, UserResponse
from fxchange.middleware.auth import (
    authenticate,
    get_current_user,
    hash_password,
    issue_token,
)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        role=user.role,
        full_name=user.full_name,
        phone=user.phone,
        status=user.status,
        point=user.point,
        reputation=user.reputation,
        rating=user.rating,
        created_at=as_utc(user.created_at).isoformat() if user.created_at else "",
    )


@router.post("/register", response_model=UserResponse, status_code=201)
def register(req: RegisterRequest, db: Session = Depends(get_db)):
    """Register a new user. Moderators are promoted by an admin, never self-registered."""
    existing = db.query(User).filter(User.email == req.email).first()
    if existing:
        raise ConflictError("Email already registered", code="EMAIL_EXISTS")

    user = User(
        email=req.email,
        password_hash=hash_password(req.password),
        full_name=req.full_name,
        phone=req.phone,
        point=settings.DEFAULT_POINT,
        reputation=settings.DEFAULT_REPUTATION,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return _user_to_response(user)


@router.post("/login", response_model=TokenResponse)
def login(req: LoginRequest, db: Session = Depends(get_db)):
    """Login and get JWT token."""
    user = authenticate(db, req.email, req.password)
    return TokenResponse(access_token=issue_token(user))


@router.get("/me", response_model=UserResponse)
def get_me(current_user: User = Depends(get_current_user)):
    """Get current user info."""
    return _user_to_response(current_user)
