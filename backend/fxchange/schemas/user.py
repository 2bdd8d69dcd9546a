"""Point history and feedback schemas."""

from typing import Optional

from pydantic import BaseModel, Field


class PointHistoryResponse(BaseModel):
    id: str
    change: int
    balance: int
    content: str
    time: str

    class Config:
        from_attributes = True


class PointSummaryResponse(BaseModel):
    point: int
    reputation: int
    history: list[PointHistoryResponse]


class FeedbackRate(BaseModel):
    rating: int = Field(ge=1, le=5)
    content: Optional[str] = None


class FeedbackResponse(BaseModel):
    id: str
    transaction_id: str
    author_id: str
    target_user_id: Optional[str]
    rating: Optional[int]
    content: Optional[str]
    expire_at: str

    class Config:
        from_attributes = True
