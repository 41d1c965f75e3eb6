"""Identity for the exchange API: bcrypt passwords and bearer JWTs.

The token subject is the user id. Routers pass that id to the services as the
acting user; ownership and participant checks live in the services.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from changeswap.config import settings
from changeswap.database import get_db
from changeswap.errors import ValidationError
from changeswap.models.user import User

security = HTTPBearer(auto_error=False)

MIN_PASSWORD_LENGTH = 8
BCRYPT_MAX_BYTES = 72


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def normalize_email(email: str) -> str:
    return email.strip().lower()


def hash_password(password: str) -> str:
    """Hash with bcrypt directly (passlib is broken with bcrypt>=4.1).

    bcrypt silently ignores input past 72 bytes, so longer passwords are refused.
    """
    raw = password.encode("utf-8")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(raw) > BCRYPT_MAX_BYTES:
        raise ValidationError(f"Password must be at most {BCRYPT_MAX_BYTES} bytes")
    return bcrypt.hashpw(raw, bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))


def authenticate(db: Session, email: str, password: str) -> Optional[User]:
    """The user for these credentials, or None."""
    user = db.query(User).filter(User.email == normalize_email(email)).first()
    if user is None or not verify_password(password, user.password_hash):
        return None
    return user


def create_access_token(user_id: str, expires_minutes: Optional[int] = None) -> str:
    issued = datetime.now(timezone.utc)
    lifetime = timedelta(minutes=expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    claims = {"sub": user_id, "iat": issued, "exp": issued + lifetime}
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise _unauthorized("Invalid or expired token")


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    if credentials is None:
        raise _unauthorized("Not authenticated")
    user_id = decode_token(credentials.credentials).get("sub")
    if not user_id:
        raise _unauthorized("Invalid token payload")
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise _unauthorized("User not found")
    return user
