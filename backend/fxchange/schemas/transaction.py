"""Transaction request/response schemas."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class TransactionCreate(BaseModel):
    stuff_id: str
    exchange_stuff_id: Optional[str] = None
    is_pickup: bool = True
    expire_at: Optional[datetime] = None


class EvidenceRequest(BaseModel):
    media: list[str] = []


class CancelRequest(BaseModel):
    issue: str


class IssueCreate(BaseModel):
    issue: str
    issue_tag_user: Optional[str] = None
    issue_solved: bool = False


class IssueResolve(BaseModel):
    issue_solved: str


class MeetingDateRequest(BaseModel):
    meeting_date: datetime


class TransactionResponse(BaseModel):
    id: str
    stuff_id: str
    exchange_stuff_id: Optional[str]
    customer_id: str
    stuff_owner_id: str
    amount: int
    is_pickup: bool
    owner_paid: bool = False
    status: str
    expire_at: Optional[str]
    created_at: str

    class Config:
        from_attributes = True


class TransactionListResponse(BaseModel):
    transactions: list[TransactionResponse]
    total: int


class IssueResponse(BaseModel):
    id: str
    transaction_id: str
    mod_id: Optional[str]
    issue: str
    issue_tag_user: Optional[str]
    is_solved: bool
    issue_solved: Optional[str]
    created_at: str

    class Config:
        from_attributes = True
