"""Stuff router — listing, detail, deletion and barter suggestions."""

import json
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from fxchange.core.clock import as_utc
from fxchange.database import get_db
from fxchange.errors import BadRequestError
from fxchange.middleware.auth import get_active_user, get_current_user
from fxchange.models.stuff import Stuff, StuffKind, StuffStatus
from fxchange.models.user import User
from fxchange.schemas.stuff import StuffCreate, StuffListResponse, StuffResponse
from fxchange.services import stuff_service

router = APIRouter(prefix="/api/stuff", tags=["stuff"])


def _stuff_to_response(stuff: Stuff) -> StuffResponse:
    return StuffResponse(
        id=stuff.id,
        author_id=stuff.author_id,
        name=stuff.name,
        description=stuff.description,
        kind=stuff.kind.value,
        status=stuff.status,
        price=stuff.price,
        condition=stuff.condition,
        media=json.loads(stuff.media or "[]"),
        tags=json.loads(stuff.tags or "[]"),
        created_at=as_utc(stuff.created_at).isoformat() if stuff.created_at else "",
    )


@router.post("", response_model=StuffResponse, status_code=201)
def create_stuff(
    req: StuffCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_active_user),
):
    """List a market or exchange item."""
    if req.kind == StuffKind.auction:
        raise BadRequestError("Auction items are created through /api/auctions", code="TYPE_NOT_VALID")
    price = req.price if req.kind.is_priced else 0
    stuff = stuff_service.create_stuff(
        db,
        owner_id=current_user.id,
        name=req.name,
        kind=req.kind,
        price=price,
        condition=req.condition,
        description=req.description,
        media=req.media,
        tags=req.tags,
    )
    db.commit()
    db.refresh(stuff)
    return _stuff_to_response(stuff)


@router.get("", response_model=StuffListResponse)
def list_stuff(
    kind: Optional[StuffKind] = Query(None),
    owner_id: Optional[str] = Query(None),
    status: Optional[int] = Query(None, ge=0, le=2),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    items = stuff_service.list_stuff(
        db,
        kind=kind,
        owner_id=owner_id,
        status=StuffStatus(status) if status is not None else None,
    )
    return StuffListResponse(stuff=[_stuff_to_response(s) for s in items], total=len(items))


@router.get("/{stuff_id}", response_model=StuffResponse)
def get_stuff(
    stuff_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _stuff_to_response(stuff_service.get_or_404(db, stuff_id))


@router.delete("/{stuff_id}", response_model=StuffResponse)
def delete_stuff(
    stuff_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Owner deletion or moderator takedown."""
    return _stuff_to_response(stuff_service.deactivate(db, current_user.id, stuff_id))


@router.get("/{stuff_id}/suggestions", response_model=StuffListResponse)
def get_suggestions(
    stuff_id: str,
    limit: int = Query(10, ge=1, le=50),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Items worth offering in exchange for this one."""
    items = stuff_service.find_available_for_suggestion(db, stuff_id, limit=limit)
    return StuffListResponse(stuff=[_stuff_to_response(s) for s in items], total=len(items))
