"""Chat message persistence helpers shared by the chat and contract services."""

from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from agrolink.domain.enums import MessageType
from agrolink.domain.models import Contract, Message, User


def counterparty_id(contract: Contract, user_id: str) -> str:
    """Return the other party of ``contract`` relative to ``user_id``."""
    return contract.buyer_id if user_id == contract.farmer_id else contract.farmer_id


def add_message(
    db: AsyncSession,
    contract: Contract,
    sender: User,
    content: str,
    message_type: MessageType = MessageType.TEXT,
    offer_details: Optional[dict] = None,
    counter_offer_id: Optional[str] = None,
) -> Message:
    """Stage a message from ``sender`` to the counterparty. Caller commits."""
    message = Message(
        contract_id=contract.id,
        sender_id=sender.id,
        sender=sender,
        recipient_id=counterparty_id(contract, sender.id),
        message_type=message_type.value,
        content=content,
        offer_details=offer_details,
        counter_offer_id=counter_offer_id,
        read=False,
    )
    db.add(message)
    return message


async def count_unread(db: AsyncSession, user_id: str, contract_id: Optional[str] = None) -> int:
    """Unread messages addressed to ``user_id`` (optionally within one contract)."""
    query = select(func.count(Message.id)).where(
        Message.recipient_id == user_id,
        Message.read.is_(False),
    )
    if contract_id is not None:
        query = query.where(Message.contract_id == contract_id)
    return (await db.execute(query)).scalar_one()
