"""Auction request/response schemas."""

from typing import Optional

from pydantic import BaseModel, Field


class AuctionCreate(BaseModel):
    name: str
    description: Optional[str] = None
    condition: int = Field(default=100, ge=0, le=100)
    media: list[str] = []
    tags: list[str] = []
    initial_price: int = Field(ge=0)
    step_price: int = Field(gt=0)
    duration: int = Field(gt=0)  # minutes


class BidRequest(BaseModel):
    bidding_price: int = Field(gt=0)


class BidResponse(BaseModel):
    id: str
    auction_id: str
    author_id: str
    bid_price: int
    created_at: str

    class Config:
        from_attributes = True


class AuctionResponse(BaseModel):
    stuff_id: str
    name: str
    owner_id: str
    status: Optional[str]
    is_approved: bool
    initial_price: int
    step_price: int
    duration: int
    start_at: Optional[str]
    expire_at: Optional[str]
    final_price: Optional[int]
    winner_id: Optional[str]
    last_bid: Optional[BidResponse] = None

    class Config:
        from_attributes = True


class AuctionListResponse(BaseModel):
    auctions: list[AuctionResponse]
    total: int


class PresenceResponse(BaseModel):
    stuff_id: str
    participants: int
