"""Auth request/response schemas."""

from typing import Optional

from pydantic import BaseModel, Field


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(min_length=6)
    full_name: str
    phone: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserResponse(BaseModel):
    id: str
    email: str
    role: str
    full_name: str
    phone: Optional[str]
    status: str
    point: int
    reputation: int
    rating: Optional[float]
    created_at: str

    class Config:
        from_attributes = True
