"""Users router — point balance, point history and feedback."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from fxchange.core.clock import as_utc
from fxchange.database import get_db
from fxchange.middleware.auth import get_current_user
from fxchange.models.feedback import Feedback
from fxchange.models.user import User
from fxchange.schemas.user import FeedbackRate, FeedbackResponse, PointHistoryResponse, PointSummaryResponse
from fxchange.services import feedback_service, user_service

router = APIRouter(prefix="/api", tags=["users"])


def _feedback_to_response(feedback: Feedback) -> FeedbackResponse:
    return FeedbackResponse(
        id=feedback.id,
        transaction_id=feedback.transaction_id,
        author_id=feedback.author_id,
        target_user_id=feedback.target_user_id,
        rating=feedback.rating,
        content=feedback.content,
        expire_at=as_utc(feedback.expire_at).isoformat(),
    )


@router.get("/users/me/points", response_model=PointSummaryResponse)
def my_points(
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    history = user_service.get_point_history(db, current_user.id, limit=limit)
    return PointSummaryResponse(
        point=current_user.point,
        reputation=current_user.reputation,
        history=[
            PointHistoryResponse(
                id=h.id,
                change=h.change,
                balance=h.balance,
                content=h.content,
                time=as_utc(h.time).isoformat(),
            )
            for h in history
        ],
    )


@router.get("/users/me/feedback", response_model=list[FeedbackResponse])
def my_feedback(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return [_feedback_to_response(f) for f in feedback_service.list_for_user(db, current_user.id)]


@router.post("/feedback/{feedback_id}", response_model=FeedbackResponse)
def rate_feedback(
    feedback_id: str,
    req: FeedbackRate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    feedback = feedback_service.rate_feedback(db, current_user.id, feedback_id, req.rating, req.content)
    return _feedback_to_response(feedback)
