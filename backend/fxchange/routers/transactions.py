"""Transactions router — creation, moderator confirmations, cancellation and issues."""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from fxchange.core.clock import as_utc
from fxchange.database import get_db
from fxchange.middleware.auth import get_active_user, get_current_user, require_moderator
from fxchange.models.transaction import Transaction, TransactionIssue
from fxchange.models.user import User
from fxchange.schemas.transaction import (
    CancelRequest,
    EvidenceRequest,
    IssueCreate,
    IssueResolve,
    IssueResponse,
    MeetingDateRequest,
    TransactionCreate,
    TransactionListResponse,
    TransactionResponse,
)
from fxchange.services import transaction_service

router = APIRouter(prefix="/api/transactions", tags=["transactions"])


def _iso(value) -> Optional[str]:
    return as_utc(value).isoformat() if value else None


def _transaction_to_response(transaction: Transaction) -> TransactionResponse:
    return TransactionResponse(
        id=transaction.id,
        stuff_id=transaction.stuff_id,
        exchange_stuff_id=transaction.exchange_stuff_id,
        customer_id=transaction.customer_id,
        stuff_owner_id=transaction.stuff_owner_id,
        amount=transaction.amount,
        is_pickup=transaction.is_pickup,
        owner_paid=transaction.owner_paid,
        status=transaction.status.value,
        expire_at=_iso(transaction.expire_at),
        created_at=_iso(transaction.created_at) or "",
    )


def _issue_to_response(issue: TransactionIssue) -> IssueResponse:
    return IssueResponse(
        id=issue.id,
        transaction_id=issue.transaction_id,
        mod_id=issue.mod_id,
        issue=issue.issue,
        issue_tag_user=issue.issue_tag_user,
        is_solved=issue.is_solved,
        issue_solved=issue.issue_solved,
        created_at=_iso(issue.created_at) or "",
    )


def _list_response(transactions: list[Transaction]) -> TransactionListResponse:
    return TransactionListResponse(
        transactions=[_transaction_to_response(t) for t in transactions],
        total=len(transactions),
    )


@router.post("", response_model=TransactionResponse, status_code=201)
def create_transaction(
    req: TransactionCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_active_user),
):
    """Buy a market item, or propose a barter for one of your items."""
    transaction = transaction_service.create_transaction(
        db,
        uid=current_user.id,
        stuff_id=req.stuff_id,
        exchange_stuff_id=req.exchange_stuff_id,
        is_pickup=req.is_pickup,
        expire_at=req.expire_at,
    )
    return _transaction_to_response(transaction)


@router.get("/mine", response_model=TransactionListResponse)
def my_transactions(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _list_response(transaction_service.get_transactions_by_user(db, current_user.id))


@router.get("/pickup", response_model=TransactionListResponse)
def pickup_transactions(
    db: Session = Depends(get_db),
    current_user: User = Depends(require_moderator),
):
    """Moderator queue of pickups still in progress."""
    return _list_response(transaction_service.get_pickup_transactions(db, current_user.id))


@router.get("", response_model=TransactionListResponse)
def filter_transactions(
    pickup: int = Query(0, description=">0 pickup only, <0 non-pickup only, 0 all"),
    db: Session = Depends(get_db),
    current_user: User = Depends(require_moderator),
):
    return _list_response(transaction_service.filter_transactions(db, current_user.id, pickup))


@router.get("/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _transaction_to_response(
        transaction_service.get_transaction_by_id(db, current_user.id, transaction_id)
    )


@router.post("/{transaction_id}/received", response_model=TransactionResponse)
def confirm_received(
    transaction_id: str,
    req: EvidenceRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_moderator),
):
    transaction = transaction_service.mod_confirm_received_stuff(db, current_user.id, transaction_id, req.media)
    return _transaction_to_response(transaction)


@router.post("/{transaction_id}/pickup", response_model=TransactionResponse)
def confirm_pickup(
    transaction_id: str,
    req: EvidenceRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_moderator),
):
    transaction = transaction_service.mod_confirm_pickup(db, current_user.id, transaction_id, req.media)
    return _transaction_to_response(transaction)


@router.post("/{transaction_id}/cancel", response_model=TransactionResponse)
def cancel_transaction(
    transaction_id: str,
    req: CancelRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    transaction = transaction_service.user_request_cancel(db, current_user.id, transaction_id, req.issue)
    return _transaction_to_response(transaction)


@router.put("/{transaction_id}/meeting-date", response_model=TransactionResponse)
def update_meeting_date(
    transaction_id: str,
    req: MeetingDateRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    transaction = transaction_service.update_meeting_date(db, current_user.id, transaction_id, req.meeting_date)
    return _transaction_to_response(transaction)


@router.get("/{transaction_id}/issues", response_model=list[IssueResponse])
def list_issues(
    transaction_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    issues = transaction_service.get_issues_by_transaction(db, current_user.id, transaction_id)
    return [_issue_to_response(i) for i in issues]


@router.post("/{transaction_id}/issues", response_model=TransactionResponse, status_code=201)
def create_issue(
    transaction_id: str,
    req: IssueCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_moderator),
):
    transaction = transaction_service.mod_create_issue(
        db,
        current_user.id,
        transaction_id,
        issue=req.issue,
        issue_tag_user=req.issue_tag_user,
        issue_solved=req.issue_solved,
    )
    return _transaction_to_response(transaction)


@router.post("/issues/{issue_id}/resolve", response_model=IssueResponse)
def resolve_issue(
    issue_id: str,
    req: IssueResolve,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_moderator),
):
    issue = transaction_service.handle_issue(db, current_user.id, issue_id, req.issue_solved)
    return _issue_to_response(issue)
