"""Stuff request/response schemas."""

from typing import Optional

from pydantic import BaseModel, Field

from fxchange.models.stuff import StuffKind


class StuffCreate(BaseModel):
    name: str
    description: Optional[str] = None
    kind: StuffKind
    price: int = Field(default=0, ge=0)
    condition: int = Field(default=100, ge=0, le=100)
    media: list[str] = []
    tags: list[str] = []


class StuffResponse(BaseModel):
    id: str
    author_id: str
    name: str
    description: Optional[str]
    kind: str
    status: int
    price: int
    condition: int
    media: list[str]
    tags: list[str]
    created_at: str

    class Config:
        from_attributes = True


class StuffListResponse(BaseModel):
    stuff: list[StuffResponse]
    total: int
