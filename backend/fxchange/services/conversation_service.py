"""Conversation service — keeps chat threads from pointing at traded items."""

from sqlalchemy import or_
from sqlalchemy.orm import Session

from fxchange.models.conversation import Conversation


def detach_stuff_from_conversation_by_stuff_id(db: Session, stuff_id: str) -> int:
    """Unlink an item from every conversation referencing it. Returns rows touched."""
    conversations = (
        db.query(Conversation)
        .filter(or_(Conversation.stuff_id == stuff_id, Conversation.exchange_stuff_id == stuff_id))
        .all()
    )
    for conversation in conversations:
        if conversation.stuff_id == stuff_id:
            conversation.stuff_id = None
        if conversation.exchange_stuff_id == stuff_id:
            conversation.exchange_stuff_id = None
        conversation.status = "DISCUSSING"
    return len(conversations)
