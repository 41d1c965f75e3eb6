"""Auth router — registration, login, current user and public profiles."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from changeswap.database import get_db
from changeswap.models.user import User
from changeswap.schemas.auth import (
    RegisterRequest,
    LoginRequest,
    TokenResponse,
    UserResponse,
    UserProfileResponse,
)
from changeswap.middleware.auth import (
    hash_password,
    authenticate,
    normalize_email,
    create_access_token,
    get_current_user,
)
from changeswap.services import completion_service
from changeswap.timeutils import isoformat

router = APIRouter(prefix="/api", tags=["auth"])


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        display_name=user.display_name,
        average_rating=user.average_rating,
        total_ratings=user.total_ratings,
        completed_exchanges=user.completed_exchanges,
        created_at=isoformat(user.created_at),
    )


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(req: RegisterRequest, db: Session = Depends(get_db)):
    """Register a new user."""
    if not req.display_name.strip():
        raise HTTPException(status_code=400, detail="Display name is required")

    email = normalize_email(req.email)
    existing = db.query(User).filter(User.email == email).first()
    if existing:
        raise HTTPException(status_code=409, detail="Email already registered")

    user = User(
        email=email,
        password_hash=hash_password(req.password),
        display_name=req.display_name.strip(),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return _user_to_response(user)


@router.post("/auth/login", response_model=TokenResponse)
def login(req: LoginRequest, db: Session = Depends(get_db)):
    """Login and get JWT token."""
    user = authenticate(db, req.email, req.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid email or password")

    token = create_access_token(user.id)
    return TokenResponse(access_token=token)


@router.get("/auth/me", response_model=UserResponse)
def get_me(current_user: User = Depends(get_current_user)):
    """Get current user info, including the rating aggregate."""
    return _user_to_response(current_user)


@router.get("/users/{user_id}", response_model=UserProfileResponse)
def get_profile(
    user_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Public rating summary for a user."""
    return UserProfileResponse(**completion_service.get_rating_summary(db, user_id))
