"""Notification service — outbox-backed notifications and email.

Settlement code calls ``notify`` / ``send_email`` inside its unit of work.
Those only write ``OutboxMessage`` rows, so a rolled-back settlement never
notifies anyone and a failed delivery never rolls back a settlement.
``OutboxDispatcher`` delivers committed messages with retry and backoff.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Literal, Optional

from sqlalchemy.orm import Session

from fxchange.config import settings
from fxchange.core.clock import utcnow
from fxchange.core.realtime import MOD_CHANNEL, RealtimeHub, notification_channel
from fxchange.models.notification import Notification, OutboxMessage

logger = logging.getLogger(__name__)

NotificationType = Literal["system", "common", "message", "stuff", "transaction", "point", "feedback"]

TARGET_ROOTS = {
    "system": "/notifications",
    "common": "/notifications",
    "message": "/chat",
    "transaction": "/transactions",
    "point": "/my-point",
    "feedback": "/feedback",
}

NEW_NOTIFICATION_EVENT = "notifications:new"


def transaction_url(transaction_id: str) -> str:
    return f"{settings.PUBLIC_BASE_URL}/transactions/{transaction_id}"


def notify(
    db: Session,
    content: str,
    actor_id: Optional[str],
    target_id: str,
    type: NotificationType,
    receivers: Optional[list[str]] = None,
    for_moderator: bool = False,
    stuff_slug: Optional[str] = None,
) -> OutboxMessage:
    """Queue a notification for delivery after the current unit of work commits."""
    if type == "stuff":
        target_root = "/" + (stuff_slug or "")
    else:
        target_root = TARGET_ROOTS[type]

    unique_receivers = list(dict.fromkeys(r for r in (receivers or []) if r))
    payload = {
        "content": content,
        "actor_id": actor_id,
        "target_id": target_id,
        "target_url": f"{target_root}/{target_id}",
        "type_slug": f"noti-{type}",
        "receivers": unique_receivers,
        "for_mod": for_moderator,
    }
    message = OutboxMessage(kind="notification", payload=json.dumps(payload))
    db.add(message)
    return message


def send_email(
    db: Session,
    to: Optional[str],
    subject: str,
    name: str,
    target_url: str,
    content: str,
    delay_seconds: Optional[int] = None,
) -> Optional[OutboxMessage]:
    """Queue an email; it becomes deliverable after a short delay."""
    if not to:
        logger.info("Skipping email %r to %s: no address", subject, name)
        return None
    delay = settings.EMAIL_DELAY_SECONDS if delay_seconds is None else delay_seconds
    payload = {
        "to": to,
        "subject": subject,
        "name": name,
        "target_url": target_url,
        "content": content,
    }
    message = OutboxMessage(
        kind="email",
        payload=json.dumps(payload),
        available_at=utcnow() + timedelta(seconds=delay),
    )
    db.add(message)
    return message


class EmailSender:
    """Delivery contract for outbound email."""

    def send(self, to: str, subject: str, name: str, target_url: str, content: str) -> None:
        raise NotImplementedError


class LoggingEmailSender(EmailSender):
    """Default sender: records the email in the log only."""

    def send(self, to: str, subject: str, name: str, target_url: str, content: str) -> None:
        logger.info("Email to %s <%s>: %s (%s)", name, to, subject, target_url)


class OutboxDispatcher:
    """Delivers due outbox messages; failures back off exponentially."""

    def __init__(
        self,
        hub: RealtimeHub,
        email_sender: EmailSender,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[int] = None,
    ):
        self.hub = hub
        self.email_sender = email_sender
        self.max_attempts = max_attempts or settings.OUTBOX_MAX_ATTEMPTS
        self.backoff_seconds = backoff_seconds or settings.OUTBOX_BACKOFF_SECONDS

    def drain(self, db: Session, now: Optional[datetime] = None, limit: int = 100) -> int:
        """Deliver every due message. Returns how many were delivered."""
        now = now or utcnow()
        due_ids = [
            row.id
            for row in db.query(OutboxMessage.id)
            .filter(OutboxMessage.status == "pending", OutboxMessage.available_at <= now)
            .order_by(OutboxMessage.created_at.asc())
            .limit(limit)
            .all()
        ]

        delivered = 0
        for message_id in due_ids:
            message = db.get(OutboxMessage, message_id)
            try:
                self._deliver(db, message)
                message.status = "sent"
                message.attempts += 1
                db.commit()
                delivered += 1
            except Exception as exc:
                db.rollback()
                self._record_failure(db, message_id, exc, now)
        return delivered

    def _deliver(self, db: Session, message: OutboxMessage) -> None:
        payload = json.loads(message.payload)
        if message.kind == "notification":
            self._deliver_notification(db, payload)
        elif message.kind == "email":
            self.email_sender.send(
                to=payload["to"],
                subject=payload["subject"],
                name=payload["name"],
                target_url=payload["target_url"],
                content=payload["content"],
            )
        else:
            raise ValueError(f"Unknown outbox message kind {message.kind!r}")

    def _deliver_notification(self, db: Session, payload: dict) -> Notification:
        notification = Notification(
            type_slug=payload["type_slug"],
            content=payload["content"],
            target_id=payload["target_id"],
            target_url=payload["target_url"],
            actor_id=payload["actor_id"],
            receiver_ids=json.dumps(payload["receivers"]),
            for_mod=payload["for_mod"],
        )
        db.add(notification)
        db.flush()

        body = {
            "id": notification.id,
            "content": notification.content,
            "target_id": notification.target_id,
            "target_url": notification.target_url,
            "type_slug": notification.type_slug,
            "receiver_ids": payload["receivers"],
            "is_read": False,
        }
        if payload["for_mod"]:
            self.hub.publish(MOD_CHANNEL, NEW_NOTIFICATION_EVENT, body)
        for user_id in payload["receivers"]:
            self.hub.publish(notification_channel(notification.type_slug, user_id), NEW_NOTIFICATION_EVENT, body)
        return notification

    def _record_failure(self, db: Session, message_id: str, exc: Exception, now: datetime) -> None:
        message = db.get(OutboxMessage, message_id)
        message.attempts += 1
        message.last_error = str(exc)[:1000]
        if message.attempts >= self.max_attempts:
            message.status = "failed"
            logger.warning("Outbox message %s failed permanently: %s", message_id, exc)
        else:
            delay = self.backoff_seconds * 2 ** (message.attempts - 1)
            message.available_at = now + timedelta(seconds=delay)
            logger.warning(
                "Outbox message %s failed (attempt %s), retrying in %ss: %s",
                message_id, message.attempts, delay, exc,
            )
        db.commit()
