"""Transaction service — fulfilment lifecycle, disputes and cancellation settlement.

Lifecycle:
    PENDING -> ONGOING -> COMPLETED
    PENDING | ONGOING -> CANCELED
    ONGOING -> WAIT (barter dispute parked) -> ONGOING | CANCELED

Every settlement runs inside one unit of work with the configured timeout.
Point changes go through ``user_service.adjust_point`` so concurrent
settlements on the same user never lose updates; the penalty math lives in
``fxchange.calculate``.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from fxchange import calculate
from fxchange.config import settings
from fxchange.core.clock import as_utc, utcnow
from fxchange.database import settlement
from fxchange.errors import (
    BadRequestError,
    ConflictError,
    InsufficientFundsError,
    NotFoundError,
    PermissionDeniedError,
)
from fxchange.models.auction import Auction, TERMINAL_AUCTION_STATUSES
from fxchange.models.stuff import Stuff, StuffKind, StuffStatus
from fxchange.models.transaction import (
    ACTIVE_TRANSACTION_STATUSES,
    TERMINAL_TRANSACTION_STATUSES,
    Transaction,
    TransactionEvidence,
    TransactionIssue,
    TransactionStatus,
)
from fxchange.models.user import Role, User
from fxchange.services import (
    audit_service,
    conversation_service,
    feedback_service,
    notification_service,
    user_service,
)

logger = logging.getLogger(__name__)

EMAIL_SUBJECT = "Transaction notice"


def _snapshot(transaction: Transaction) -> dict:
    return {
        "status": transaction.status.value,
        "expire_at": transaction.expire_at,
        "amount": transaction.amount,
        "owner_paid": transaction.owner_paid,
    }


def _email_parties(db: Session, transaction: Transaction, customer_content: str, owner_content: Optional[str] = None):
    """Queue the same (or a per-side) email for both parties."""
    target_url = notification_service.transaction_url(transaction.id)
    for user, content in (
        (transaction.customer, customer_content),
        (transaction.stuff_owner, owner_content or customer_content),
    ):
        notification_service.send_email(
            db,
            to=user.email,
            subject=EMAIL_SUBJECT,
            name=user.full_name,
            target_url=target_url,
            content=content,
        )


def _restore_items(transaction: Transaction) -> None:
    transaction.stuff.status = int(StuffStatus.active)
    if transaction.exchange_stuff is not None:
        transaction.exchange_stuff.status = int(StuffStatus.active)


def _is_party(transaction: Transaction, user_id: str) -> bool:
    return user_id in (transaction.customer_id, transaction.stuff_owner_id)


# ── Queries ───────────────────────────────────────────────────────────────────

def get_or_404(db: Session, transaction_id: str) -> Transaction:
    transaction = db.query(Transaction).filter(Transaction.id == transaction_id).first()
    if not transaction:
        raise NotFoundError("Transaction not found", code="TRANSACTION_NOT_FOUND")
    return transaction


def _get_for_update(db: Session, transaction_id: str) -> Transaction:
    transaction = (
        db.query(Transaction)
        .filter(Transaction.id == transaction_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not transaction:
        raise NotFoundError("Transaction not found", code="TRANSACTION_NOT_FOUND")
    return transaction


def get_transaction_by_id(db: Session, uid: str, transaction_id: str) -> Transaction:
    """Parties and moderators only."""
    user = user_service.get_or_404(db, uid)
    transaction = get_or_404(db, transaction_id)
    if not _is_party(transaction, uid) and not user.is_moderator:
        raise PermissionDeniedError("Cannot access this transaction", code="CANNOT_ACCESS_TRANSACTION")
    return transaction


def get_transactions_by_user(db: Session, uid: str) -> list[Transaction]:
    return (
        db.query(Transaction)
        .filter(or_(Transaction.customer_id == uid, Transaction.stuff_owner_id == uid))
        .order_by(Transaction.updated_at.desc())
        .all()
    )


def get_transactions_by_stuff_id(db: Session, stuff_id: str) -> list[Transaction]:
    return (
        db.query(Transaction)
        .filter(or_(Transaction.stuff_id == stuff_id, Transaction.exchange_stuff_id == stuff_id))
        .order_by(Transaction.created_at.desc())
        .all()
    )


def get_pickup_transactions(db: Session, mod_id: str) -> list[Transaction]:
    """Moderator work queue: pickup transactions that still need handling."""
    user_service.require_moderator(db, mod_id)
    return (
        db.query(Transaction)
        .filter(Transaction.is_pickup.is_(True), Transaction.status.in_(ACTIVE_TRANSACTION_STATUSES))
        .order_by(Transaction.expire_at.asc())
        .all()
    )


def filter_transactions(db: Session, mod_id: str, pickup_filter: int = 0) -> list[Transaction]:
    """``pickup_filter`` > 0 pickup only, < 0 non-pickup only, 0 everything."""
    user_service.require_moderator(db, mod_id)
    query = db.query(Transaction)
    if pickup_filter > 0:
        query = query.filter(Transaction.is_pickup.is_(True))
    elif pickup_filter < 0:
        query = query.filter(Transaction.is_pickup.is_(False))
    return query.order_by(Transaction.updated_at.desc()).all()


def get_issues_by_transaction(db: Session, uid: str, transaction_id: str) -> list[TransactionIssue]:
    transaction = get_transaction_by_id(db, uid, transaction_id)
    return (
        db.query(TransactionIssue)
        .filter(TransactionIssue.transaction_id == transaction.id)
        .order_by(TransactionIssue.created_at.asc())
        .all()
    )


def get_issue_or_404(db: Session, issue_id: str) -> TransactionIssue:
    issue = db.query(TransactionIssue).filter(TransactionIssue.id == issue_id).first()
    if not issue:
        raise NotFoundError("Transaction issue not found", code="ISSUE_NOT_FOUND")
    return issue


def create_issue(
    db: Session,
    transaction_id: str,
    issue: str,
    mod_id: Optional[str] = None,
    issue_tag_user: Optional[str] = None,
    is_solved: bool = False,
    issue_solved: Optional[str] = None,
) -> TransactionIssue:
    """Record an issue row. The caller commits."""
    record = TransactionIssue(
        transaction_id=transaction_id,
        mod_id=mod_id,
        issue=issue,
        issue_tag_user=issue_tag_user,
        is_solved=is_solved,
        issue_solved=issue_solved,
    )
    db.add(record)
    db.flush()
    return record


# ── Creation ──────────────────────────────────────────────────────────────────

def _check_purchasable_auction(db: Session, stuff: Stuff) -> None:
    auction = db.query(Auction).filter(Auction.stuff_id == stuff.id).first()
    if auction is not None and auction.status not in TERMINAL_AUCTION_STATUSES:
        raise BadRequestError("Auction items are sold through bidding", code="TYPE_NOT_VALID")


def create_transaction(
    db: Session,
    uid: str,
    stuff_id: str,
    exchange_stuff_id: Optional[str] = None,
    is_pickup: bool = True,
    expire_at: Optional[datetime] = None,
) -> Transaction:
    """Open a purchase or a barter on ``stuff_id``.

    Purchases (market/auction items) are started by the buyer, always go
    through pickup and debit the buyer immediately. Barters are proposed by
    the item owner against a counter-item owned by the customer.
    """
    stuff = db.query(Stuff).filter(Stuff.id == stuff_id).first()
    if not stuff:
        raise NotFoundError("Stuff not found", code="STUFF_NOT_FOUND")
    if stuff.status != StuffStatus.active:
        raise BadRequestError("Stuff is not available", code="STUFF_IS_NOT_AVAILABLE")

    user = user_service.get_or_404(db, uid)
    if not user.phone:
        raise BadRequestError("Phone number is required to trade", code="PHONE_NOT_EXIST")

    existing = (
        db.query(Transaction)
        .filter(
            or_(Transaction.stuff_id == stuff_id, Transaction.exchange_stuff_id == stuff_id),
            Transaction.status.in_(ACTIVE_TRANSACTION_STATUSES),
        )
        .first()
    )
    if existing:
        raise ConflictError("Stuff already has an active transaction", code="TRANSACTION_EXISTS")

    exchange_stuff = None
    if stuff.kind.is_priced:
        if exchange_stuff_id:
            raise BadRequestError("Priced stuff cannot be bartered", code="TYPE_NOT_VALID")
        if uid == stuff.author_id:
            raise PermissionDeniedError("Owner cannot buy their own stuff", code="INVALID_USER")
        if not is_pickup:
            raise BadRequestError("Purchases must go through pickup", code="PICKUP_REQUIRED")
        if stuff.kind == StuffKind.auction:
            _check_purchasable_auction(db, stuff)
        if user.point < stuff.price:
            raise InsufficientFundsError("Point not enough", code="POINT_NOT_ENOUGH")
        customer_id = uid
        status = TransactionStatus.PENDING
    else:
        if stuff.kind != StuffKind.exchange or not exchange_stuff_id:
            raise BadRequestError("Stuff is not exchange type", code="TYPE_NOT_VALID")
        if uid != stuff.author_id:
            raise PermissionDeniedError("Only the owner can propose an exchange", code="INVALID_USER")
        exchange_stuff = db.query(Stuff).filter(Stuff.id == exchange_stuff_id).first()
        if not exchange_stuff or exchange_stuff.kind not in (StuffKind.exchange, StuffKind.archived):
            raise BadRequestError("Stuff is not exchange type", code="TYPE_NOT_VALID")
        if exchange_stuff.status != StuffStatus.active:
            raise BadRequestError("Exchange stuff is not available", code="INVALID_STUFF")
        if exchange_stuff.author_id == uid:
            raise BadRequestError("Cannot exchange with yourself", code="INVALID_USER")
        customer_id = exchange_stuff.author_id
        status = TransactionStatus.PENDING if is_pickup else TransactionStatus.ONGOING

    now = utcnow()
    if is_pickup:
        deadline = now + timedelta(days=settings.PICKUP_DEADLINE_DAYS)
    elif expire_at is not None:
        deadline = as_utc(expire_at)
        if deadline <= now:
            raise BadRequestError("Meeting date must be in the future", code="INVALID_MEETING_DATE")
    else:
        deadline = now + timedelta(days=settings.NON_PICKUP_DEADLINE_DAYS)

    with settlement(db, "FAILED_TO_CREATE_TRANSACTION", "Failed to create transaction"):
        transaction = Transaction(
            stuff_id=stuff.id,
            exchange_stuff_id=exchange_stuff.id if exchange_stuff else None,
            customer_id=customer_id,
            stuff_owner_id=stuff.author_id,
            amount=stuff.price,
            is_pickup=is_pickup,
            status=status,
            expire_at=deadline,
        )
        db.add(transaction)
        db.flush()

        stuff.status = int(StuffStatus.sold)
        conversation_service.detach_stuff_from_conversation_by_stuff_id(db, stuff.id)
        if exchange_stuff is not None:
            exchange_stuff.status = int(StuffStatus.sold)
            conversation_service.detach_stuff_from_conversation_by_stuff_id(db, exchange_stuff.id)

        if stuff.kind.is_priced:
            buyer = user_service.get_for_update(db, uid)
            if buyer.point < transaction.amount:
                raise InsufficientFundsError("Point not enough", code="POINT_NOT_ENOUGH")
            user_service.adjust_point(
                db, uid, -transaction.amount, f"Bought {stuff.name}, paid {transaction.amount}"
            )
            notification_service.notify(
                db,
                content=f"You have a new transaction from {user.full_name}.",
                actor_id=uid,
                target_id=transaction.id,
                type="transaction",
                receivers=[transaction.stuff_owner_id],
                for_moderator=True,
            )
        else:
            notification_service.notify(
                db,
                content="A new exchange has just been created.",
                actor_id=transaction.stuff_owner_id,
                target_id=transaction.id,
                type="transaction",
                receivers=[transaction.customer_id, transaction.stuff_owner_id],
                for_moderator=True,
            )

        _email_parties(
            db,
            transaction,
            customer_content="Your transaction has started; follow its progress with the link below.",
            owner_content=f"You have a new transaction from {transaction.customer.full_name}.",
        )
        audit_service.record(db, "transaction", transaction.id, "created", uid, new_data=_snapshot(transaction))

    db.refresh(transaction)
    logger.info(
        "Transaction created id=%s stuff=%s customer=%s amount=%s pickup=%s",
        transaction.id, stuff_id, customer_id, transaction.amount, is_pickup,
    )
    return transaction


# ── Moderator confirmations ───────────────────────────────────────────────────

def _pickup_transaction(db: Session, mod_id: str, transaction_id: str) -> Transaction:
    user_service.require_moderator(db, mod_id)
    transaction = get_or_404(db, transaction_id)
    if not transaction.is_pickup:
        raise BadRequestError("Transaction is not a pickup transaction", code="TRANSACTION_NOT_FOUND")
    if transaction.status in TERMINAL_TRANSACTION_STATUSES:
        raise BadRequestError("Transaction is already finished", code="TRANSACTION_ALREADY_FINISHED")
    return transaction


def _add_evidence(db: Session, transaction: Transaction, author_id: str, media: Optional[list[str]]):
    evidence = TransactionEvidence(
        transaction_id=transaction.id,
        author_id=author_id,
        media=json.dumps(media or []),
    )
    db.add(evidence)
    return evidence


def mod_confirm_received_stuff(
    db: Session, mod_id: str, transaction_id: str, media: Optional[list[str]] = None
) -> Transaction:
    """The item was deposited at the counter: ONGOING, deadline +2 days."""
    transaction = _pickup_transaction(db, mod_id, transaction_id)
    if transaction.status not in (TransactionStatus.PENDING, TransactionStatus.ONGOING):
        raise BadRequestError("Transaction is waiting on an issue", code="CANNOT_REQUEST_TRANSACTION")
    if transaction.evidences:
        raise BadRequestError("Deposit was already confirmed", code="CANNOT_REQUEST_TRANSACTION")

    with settlement(db, "FAILED_TO_UPDATE_TRANSACTION", "Failed to update transaction"):
        transaction = _get_for_update(db, transaction_id)
        old = _snapshot(transaction)
        transaction.status = TransactionStatus.ONGOING
        base = as_utc(transaction.expire_at) or utcnow()
        transaction.expire_at = base + timedelta(days=settings.RECEIVED_EXTENSION_DAYS)
        _add_evidence(db, transaction, mod_id, media)

        notification_service.notify(
            db,
            content="The item has been stored at the counter.",
            actor_id=mod_id,
            target_id=transaction.id,
            type="transaction",
            receivers=[transaction.customer_id, transaction.stuff_owner_id],
        )
        _email_parties(
            db,
            transaction,
            customer_content="Your transaction status was updated; follow it with the link below.",
        )
        audit_service.record(db, "transaction", transaction.id, "received", mod_id, old, _snapshot(transaction))

    db.refresh(transaction)
    logger.info("Transaction %s deposit confirmed by %s", transaction_id, mod_id)
    return transaction


def _award_completion(db: Session, transaction: Transaction) -> None:
    """+reputation for both sides and feedback slots for the parties."""
    user_service.plus_reputation_point(db, transaction.customer_id)
    user_service.plus_reputation_point(db, transaction.stuff_owner_id)
    feedback_service.create_feedback(db, transaction, transaction.customer_id)
    if not transaction.stuff.kind.is_priced:
        feedback_service.create_feedback(db, transaction, transaction.stuff_owner_id)


def mod_confirm_pickup(
    db: Session, mod_id: str, transaction_id: str, media: Optional[list[str]] = None
) -> Transaction:
    """The customer collected the item: COMPLETED and the seller gets paid."""
    transaction = _pickup_transaction(db, mod_id, transaction_id)
    if not transaction.evidences:
        raise BadRequestError(
            "Confirm the deposit before completing the transaction", code="CANNOT_REQUEST_TRANSACTION"
        )
    if transaction.status != TransactionStatus.ONGOING:
        raise BadRequestError("Transaction is not ongoing", code="CANNOT_REQUEST_TRANSACTION")

    with settlement(db, "FAILED_TO_UPDATE_TRANSACTION", "Failed to update transaction"):
        transaction = _get_for_update(db, transaction_id)
        old = _snapshot(transaction)
        transaction.status = TransactionStatus.COMPLETED
        _add_evidence(db, transaction, mod_id, media)
        _award_completion(db, transaction)

        stuff = transaction.stuff
        if stuff.kind.is_priced and not transaction.owner_paid:
            verb = "Auctioned" if stuff.kind == StuffKind.auction else "Sold"
            user_service.adjust_point(
                db,
                transaction.stuff_owner_id,
                transaction.amount,
                f"{verb} {stuff.name}, received {transaction.amount}",
            )

        notification_service.notify(
            db,
            content="The transaction has been completed.",
            actor_id=mod_id,
            target_id=transaction.id,
            type="transaction",
            receivers=[transaction.customer_id, transaction.stuff_owner_id],
        )
        _email_parties(
            db,
            transaction,
            customer_content="Your transaction is complete, thank you for using FXchange.",
        )
        audit_service.record(db, "transaction", transaction.id, "completed", mod_id, old, _snapshot(transaction))

    db.refresh(transaction)
    logger.info("Transaction %s completed by %s", transaction_id, mod_id)
    return transaction


def update_meeting_date(db: Session, uid: str, transaction_id: str, meeting_date: datetime) -> Transaction:
    transaction = get_transaction_by_id(db, uid, transaction_id)
    if transaction.status in TERMINAL_TRANSACTION_STATUSES:
        raise BadRequestError("Transaction is already finished", code="TRANSACTION_ALREADY_FINISHED")
    meeting_date = as_utc(meeting_date)
    if meeting_date < utcnow():
        raise BadRequestError("Invalid meeting date", code="INVALID_MEETING_DATE")

    with settlement(db, "FAILED_TO_UPDATE_MEETING_DATE", "Failed to set meeting date"):
        transaction = _get_for_update(db, transaction_id)
        old = _snapshot(transaction)
        transaction.expire_at = meeting_date
        notification_service.notify(
            db,
            content="The meeting date of the transaction was changed.",
            actor_id=uid,
            target_id=transaction.id,
            type="transaction",
            receivers=[transaction.stuff_owner_id, transaction.customer_id],
            for_moderator=True,
        )
        audit_service.record(db, "transaction", transaction.id, "meeting_date", uid, old, _snapshot(transaction))

    db.refresh(transaction)
    return transaction


# ── Cancellation & issues ─────────────────────────────────────────────────────

def _settle_cancellation(db: Session, transaction: Transaction, canceller_id: str, ongoing: bool) -> calculate.CancellationSettlement:
    """Apply the cancellation table for ``canceller_id`` and cancel.

    A seller already paid by a missed-pickup issue returns the payment
    before the table applies.

    Must run inside the caller's unit of work.
    """
    canceller = user_service.get_for_update(db, canceller_id)
    canceller_is_owner = canceller_id == transaction.stuff_owner_id
    stage = "ongoing" if ongoing else "pending"
    result = calculate.cancellation_settlement(
        canceller_is_owner=canceller_is_owner,
        ongoing=ongoing,
        priced=transaction.stuff.kind.is_priced,
        amount=transaction.amount,
        canceller_reputation=canceller.reputation,
        canceller_point=canceller.point,
    )

    if transaction.owner_paid:
        owner = user_service.get_for_update(db, transaction.stuff_owner_id)
        if owner.point < transaction.amount:
            raise InsufficientFundsError("Seller cannot return the payment", code="POINT_NOT_ENOUGH")
        user_service.adjust_point(
            db,
            transaction.stuff_owner_id,
            -transaction.amount,
            f"Canceled {stage} transaction, payment of {transaction.amount} reversed",
        )
        transaction.owner_paid = False

    if result.owner_delta:
        user_service.adjust_point(
            db,
            transaction.stuff_owner_id,
            result.owner_delta,
            f"Canceled {stage} transaction, penalty {result.penalty}",
        )
    if result.customer_delta > 0:
        user_service.adjust_point(
            db,
            transaction.customer_id,
            result.customer_delta,
            f"Canceled {stage} transaction, refund {result.customer_delta}",
        )
    elif result.customer_delta < 0:
        user_service.adjust_point(
            db,
            transaction.customer_id,
            result.customer_delta,
            f"Canceled {stage} transaction, penalty {result.penalty}",
        )

    user_service.reduce_reputation_point(db, canceller_id)
    _restore_items(transaction)
    transaction.status = TransactionStatus.CANCELED
    return result


def user_request_cancel(db: Session, uid: str, transaction_id: str, issue: str) -> Transaction:
    """A party walks away from a PENDING or ONGOING transaction."""
    transaction = get_or_404(db, transaction_id)
    if not _is_party(transaction, uid):
        raise PermissionDeniedError("Cannot access this transaction", code="CANNOT_ACCESS_TRANSACTION")
    if transaction.status in TERMINAL_TRANSACTION_STATUSES:
        raise BadRequestError(
            "Cannot cancel a finished transaction", code="FAILED_TO_CANCEL_TRANSACTION_COMPLETED"
        )
    if transaction.status not in (TransactionStatus.PENDING, TransactionStatus.ONGOING):
        raise BadRequestError("Transaction is waiting on an issue", code="TRANSACTION_IN_DISPUTE")
    if transaction.owner_paid:
        raise BadRequestError(
            "The seller was already paid; a moderator must settle this transaction",
            code="TRANSACTION_IN_DISPUTE",
        )

    with settlement(db, "FAILED_TO_CANCEL", "Failed to cancel transaction"):
        transaction = _get_for_update(db, transaction_id)
        if transaction.status not in (TransactionStatus.PENDING, TransactionStatus.ONGOING):
            raise BadRequestError(
                "Cannot cancel a finished transaction", code="FAILED_TO_CANCEL_TRANSACTION_COMPLETED"
            )
        old = _snapshot(transaction)
        ongoing = transaction.status == TransactionStatus.ONGOING
        create_issue(db, transaction.id, issue, issue_tag_user=uid, is_solved=True, issue_solved="canceled")
        _settle_cancellation(db, transaction, uid, ongoing)

        canceller = db.get(User, uid)
        counterparty = transaction.customer_id if uid == transaction.stuff_owner_id else transaction.stuff_owner_id
        notification_service.notify(
            db,
            content=f"{canceller.full_name} has just canceled the transaction.",
            actor_id=uid,
            target_id=transaction.id,
            type="transaction",
            receivers=[counterparty],
            for_moderator=True,
        )
        _email_parties(
            db,
            transaction,
            customer_content="Your transaction was canceled; see the details with the link below.",
        )
        audit_service.record(db, "transaction", transaction.id, "canceled", uid, old, _snapshot(transaction))

    db.refresh(transaction)
    logger.info("Transaction %s canceled by %s", transaction_id, uid)
    return transaction


def mod_create_issue(
    db: Session,
    mod_id: str,
    transaction_id: str,
    issue: str,
    issue_tag_user: Optional[str] = None,
    issue_solved: bool = False,
) -> Transaction:
    """Moderator records a missed deadline or dispute and settles it.

    Sales: the tagged party is treated as the canceller at the current
    stage, except a customer who missed the pickup of a deposited item; the
    owner is paid once per transaction and the customer gets another week.
    Canceling after that payment takes it back from the owner first.
    Barters: a PENDING barter is canceled at both parties' expense; an
    ONGOING one is canceled when ``issue_solved`` is set, otherwise parked
    in WAIT for another week.
    """
    user_service.require_moderator(db, mod_id)
    transaction = get_or_404(db, transaction_id)
    if transaction.status in TERMINAL_TRANSACTION_STATUSES:
        raise BadRequestError(
            "Cannot create an issue on a finished transaction", code="FAILED_TO_CREATE_TRANSACTION_ISSUE"
        )
    priced = transaction.stuff.kind.is_priced
    if (priced or transaction.status != TransactionStatus.PENDING) and not issue_tag_user:
        raise BadRequestError("Tag the user at fault for this issue", code="ISSUE_TAG_USER")
    if issue_tag_user and not _is_party(transaction, issue_tag_user):
        raise BadRequestError("Tagged user is not a party", code="CANNOT_ACCESS_TRANSACTION")

    with settlement(db, "FAILED_TO_CREATE", "Failed to create transaction issue"):
        transaction = _get_for_update(db, transaction_id)
        if transaction.status in TERMINAL_TRANSACTION_STATUSES:
            raise BadRequestError(
                "Cannot create an issue on a finished transaction", code="FAILED_TO_CREATE_TRANSACTION_ISSUE"
            )
        old = _snapshot(transaction)
        pending = transaction.status == TransactionStatus.PENDING
        extend_to = utcnow() + timedelta(days=settings.ISSUE_EXTENSION_DAYS)

        if priced:
            if issue_tag_user == transaction.customer_id and not pending:
                if not transaction.owner_paid:
                    user_service.adjust_point(
                        db,
                        transaction.stuff_owner_id,
                        transaction.amount,
                        f"Received {transaction.amount} for {transaction.stuff.name}",
                    )
                    transaction.owner_paid = True
                user_service.reduce_reputation_point(db, issue_tag_user)
                transaction.status = TransactionStatus.ONGOING
                transaction.expire_at = extend_to
                content = "The customer missed the pickup date; the meeting was moved 7 days later."
                create_issue(db, transaction.id, issue, mod_id, issue_tag_user)
            else:
                _settle_cancellation(db, transaction, issue_tag_user, ongoing=not pending)
                content = "The transaction was canceled by a moderator."
                create_issue(db, transaction.id, issue, mod_id, issue_tag_user, True, "canceled")
        elif pending:
            for party_id in (transaction.customer_id, transaction.stuff_owner_id):
                party = user_service.get_for_update(db, party_id)
                penalty = calculate.reduce_exchange_pending(party.reputation, party.point)
                if penalty:
                    user_service.adjust_point(db, party_id, -penalty, f"Canceled pending exchange, penalty {penalty}")
                user_service.reduce_reputation_point(db, party_id)
            _restore_items(transaction)
            transaction.status = TransactionStatus.CANCELED
            content = "The exchange was canceled because the items were not deposited in time."
            create_issue(db, transaction.id, issue, mod_id, issue_tag_user, True, "canceled")
        elif issue_solved:
            _settle_cancellation(db, transaction, issue_tag_user, ongoing=True)
            content = "The exchange was canceled by a moderator."
            create_issue(db, transaction.id, issue, mod_id, issue_tag_user, True, "canceled")
        else:
            transaction.status = TransactionStatus.WAIT
            transaction.expire_at = extend_to
            content = "The exchange has an issue and is on hold for 7 days."
            create_issue(db, transaction.id, issue, mod_id, issue_tag_user)

        notification_service.notify(
            db,
            content=content,
            actor_id=mod_id,
            target_id=transaction.id,
            type="transaction",
            receivers=[transaction.customer_id, transaction.stuff_owner_id],
            for_moderator=True,
        )
        _email_parties(
            db,
            transaction,
            customer_content="Your transaction ran into an issue; see the details with the link below.",
        )
        audit_service.record(db, "transaction", transaction.id, "issue", mod_id, old, _snapshot(transaction))

    db.refresh(transaction)
    logger.info(
        "Issue on transaction %s by %s: tagged=%s status=%s",
        transaction_id, mod_id, issue_tag_user, transaction.status.value,
    )
    return transaction


def handle_issue(db: Session, mod_id: str, issue_id: str, issue_solved: str) -> TransactionIssue:
    """Resolve an open issue; its transaction goes back to ONGOING."""
    mod = user_service.require_moderator(db, mod_id)
    issue = get_issue_or_404(db, issue_id)
    if issue.mod_id != mod_id and mod.role != Role.admin.value:
        raise PermissionDeniedError("Only the moderator who raised it can resolve it", code="CANNOT_ACCESS_TRANSACTION")
    if issue.is_solved:
        raise ConflictError("Issue is already solved", code="ISSUE_ALREADY_SOLVED")
    if issue.transaction.status in TERMINAL_TRANSACTION_STATUSES:
        raise BadRequestError("Transaction is already finished", code="TRANSACTION_ALREADY_FINISHED")

    with settlement(db, "FAILED_TO_HANDLE_ISSUE", "Failed to handle issue"):
        transaction = _get_for_update(db, issue.transaction_id)
        old = _snapshot(transaction)
        issue.is_solved = True
        issue.issue_solved = issue_solved
        transaction.status = TransactionStatus.ONGOING

        if issue.issue_tag_user:
            notification_service.notify(
                db,
                content="There is an update on an issue with your transaction.",
                actor_id=mod_id,
                target_id=transaction.id,
                type="common",
                receivers=[issue.issue_tag_user],
            )
        _email_parties(
            db,
            transaction,
            customer_content="Your transaction status was updated; see the details with the link below.",
        )
        audit_service.record(db, "transaction", transaction.id, "issue_handled", mod_id, old, _snapshot(transaction))

    db.refresh(issue)
    logger.info("Issue %s on transaction %s handled by %s", issue_id, issue.transaction_id, mod_id)
    return issue


# ── Scheduled sweeps ──────────────────────────────────────────────────────────

def send_email_transactions(db: Session, now: Optional[datetime] = None) -> int:
    """Remind both parties of transactions that expire tomorrow."""
    now = now or utcnow()
    tomorrow = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    window_end = tomorrow + timedelta(days=1)
    transactions = (
        db.query(Transaction)
        .filter(
            Transaction.status.in_(ACTIVE_TRANSACTION_STATUSES),
            Transaction.expire_at >= tomorrow,
            Transaction.expire_at < window_end,
        )
        .all()
    )
    for transaction in transactions:
        _email_parties(
            db,
            transaction,
            customer_content="Your transaction expires tomorrow; follow it with the link below.",
        )
    db.commit()
    if transactions:
        logger.info("Queued expiry reminders for %s transactions", len(transactions))
    return len(transactions)


def auto_update_success(db: Session, now: Optional[datetime] = None) -> int:
    """Complete non-pickup transactions whose meeting date passed.

    Completion awards reputation and opens feedback slots exactly like a
    moderator-confirmed barter.
    """
    now = now or utcnow()
    due_ids = [
        row.id
        for row in db.query(Transaction.id)
        .filter(
            Transaction.status == TransactionStatus.ONGOING,
            Transaction.is_pickup.is_(False),
            Transaction.expire_at < now,
        )
        .all()
    ]
    if not due_ids:
        return 0

    with settlement(db, "FAILED_TO_UPDATE_TRANSACTION", "Failed to auto-complete transactions"):
        for transaction_id in due_ids:
            transaction = _get_for_update(db, transaction_id)
            if transaction.status != TransactionStatus.ONGOING:
                continue
            old = _snapshot(transaction)
            transaction.status = TransactionStatus.COMPLETED
            _award_completion(db, transaction)
            notification_service.notify(
                db,
                content="The transaction has been completed.",
                actor_id=None,
                target_id=transaction.id,
                type="transaction",
                receivers=[transaction.customer_id, transaction.stuff_owner_id],
            )
            audit_service.record(db, "transaction", transaction.id, "completed", None, old, _snapshot(transaction))

    logger.info("Auto-completed %s transactions", len(due_ids))
    return len(due_ids)
