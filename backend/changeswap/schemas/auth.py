"""Auth and user profile schemas."""

from pydantic import BaseModel


class RegisterRequest(BaseModel):
    email: str
    password: str
    display_name: str


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserResponse(BaseModel):
    id: str
    email: str
    display_name: str
    average_rating: float
    total_ratings: int
    completed_exchanges: int
    created_at: str

    class Config:
        from_attributes = True


class UserProfileResponse(BaseModel):
    """Public view of another user: no email."""

    user_id: str
    display_name: str
    average_rating: float
    total_ratings: int
    completed_exchanges: int
