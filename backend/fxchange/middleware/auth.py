"""Bearer-token authentication for marketplace accounts.

Tokens carry the account id and role. The account row is re-read on every
request, so a block or a role change applies to tokens already issued.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from fxchange.config import settings
from fxchange.database import get_db
from fxchange.errors import PermissionDeniedError, UnauthorizedError
from fxchange.models.user import User, UserStatus

# auto_error off so a missing header renders as a marketplace 401
security = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))


def issue_token(user: User) -> str:
    """Sign an access token for ``user``."""
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    claims = {"sub": user.id, "role": user.role, "exp": expire}
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def authenticate(db: Session, email: str, password: str) -> User:
    user = db.query(User).filter(User.email == email).first()
    if user is None or not verify_password(password, user.password_hash):
        raise UnauthorizedError("Invalid email or password", code="INVALID_CREDENTIALS")
    return user


def _account_id(token: str) -> str:
    try:
        claims = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise UnauthorizedError("Invalid or expired token", code="INVALID_TOKEN")
    account_id = claims.get("sub")
    if not account_id:
        raise UnauthorizedError("Invalid token payload", code="INVALID_TOKEN")
    return account_id


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """Any signed-in account; blocked accounts may still read."""
    if credentials is None:
        raise UnauthorizedError("Not authenticated", code="MISSING_TOKEN")
    user = db.get(User, _account_id(credentials.credentials))
    if user is None:
        raise UnauthorizedError("Account no longer exists", code="USER_NOT_FOUND")
    return user


def get_active_user(current_user: User = Depends(get_current_user)) -> User:
    """Blocked accounts can still read but not trade."""
    if current_user.status == UserStatus.blocked.value:
        raise PermissionDeniedError("Account is blocked", code="USER_BLOCKED")
    return current_user


def require_moderator(current_user: User = Depends(get_active_user)) -> User:
    if not current_user.is_moderator:
        raise PermissionDeniedError("Moderator role required", code="INVALID_ACTION")
    return current_user
