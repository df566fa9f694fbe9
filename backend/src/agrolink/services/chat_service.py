"""Contract chat: message history, sending, read receipts and chat list."""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from agrolink.domain.enums import MessageType
from agrolink.domain.models import Contract, Message, User, utcnow
from agrolink.domain.schemas import MessageCreate
from agrolink.services.contract_service import ContractService
from agrolink.services.email_service import Mailer
from agrolink.services.message_store import add_message
from agrolink.services.realtime import ConnectionManager, contract_room
from agrolink.services.serializers import serialize_message
from agrolink.services.side_effects import run_best_effort

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50


class ChatService:
    """Chat operations scoped to the parties of a contract."""

    def __init__(
        self,
        db: AsyncSession,
        mailer: Optional[Mailer] = None,
        realtime: Optional[ConnectionManager] = None,
    ):
        self.db = db
        self.realtime = realtime
        self.contracts = ContractService(db, mailer, realtime)

    async def list_messages(
        self,
        contract_id: str,
        user: User,
        before: Optional[datetime] = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> list[Message]:
        """Return a page of messages, oldest first, marking the caller's as read."""
        contract, _ = await self.contracts.get_for_party(contract_id, user)

        query = select(Message).where(Message.contract_id == contract.id)
        if before is not None:
            if before.tzinfo is not None:
                before = before.astimezone(timezone.utc).replace(tzinfo=None)
            query = query.where(Message.created_at < before)
        result = await self.db.execute(query.order_by(Message.created_at.desc()).limit(limit))
        messages = list(reversed(result.scalars().all()))

        await self.mark_read(contract.id, user, _contract=contract)
        return messages

    async def mark_read(
        self,
        contract_id: str,
        user: User,
        _contract: Optional[Contract] = None,
    ) -> int:
        """Mark every message addressed to ``user`` in the contract as read."""
        contract = _contract
        if contract is None:
            contract, _ = await self.contracts.get_for_party(contract_id, user)

        result = await self.db.execute(
            update(Message)
            .where(
                Message.contract_id == contract.id,
                Message.recipient_id == user.id,
                Message.read.is_(False),
            )
            .values(read=True, read_at=utcnow())
        )
        await self.db.commit()
        count = result.rowcount or 0

        if count and self.realtime is not None:
            await run_best_effort(
                "realtime:messages_read",
                self.realtime.emit(
                    contract_room(contract.id),
                    "messages_read",
                    {"contract_id": contract.id, "reader_id": user.id, "count": count},
                ),
            )
        return count

    async def send_message(self, contract_id: str, user: User, data: MessageCreate) -> Message:
        """Persist a chat message, then broadcast it.

        Counter-offer messages go through the contract negotiation flow.
        """
        if data.message_type == MessageType.COUNTER_OFFER:
            _, _, message = await self.contracts.submit_counter_offer(
                contract_id, user, data.changes, content=data.content
            )
            return message

        contract, _ = await self.contracts.get_for_party(contract_id, user)
        message = add_message(self.db, contract, user, data.content, MessageType.TEXT)
        await self.db.commit()
        logger.info("Message %s sent on contract %s by %s", message.id, contract.id, user.id)

        await self.contracts.announce_message(contract, user, message)
        return message

    async def accept_offer(self, contract_id: str, user: User):
        return await self.contracts.accept_latest_offer(contract_id, user)

    async def unread_summary(self, user: User) -> dict:
        result = await self.db.execute(
            select(Message.contract_id, func.count(Message.id))
            .where(Message.recipient_id == user.id, Message.read.is_(False))
            .group_by(Message.contract_id)
        )
        by_contract = {contract_id: count for contract_id, count in result.all()}
        return {"total": sum(by_contract.values()), "by_contract": by_contract}

    async def chat_list(self, user: User) -> list[dict]:
        """Contracts with their latest message and unread count, most recent first."""
        contracts = (
            await self.db.execute(
                select(Contract).where(
                    or_(Contract.farmer_id == user.id, Contract.buyer_id == user.id)
                )
            )
        ).scalars().all()
        unread = (await self.unread_summary(user))["by_contract"]

        chats = []
        for contract in contracts:
            latest = (
                await self.db.execute(
                    select(Message)
                    .where(Message.contract_id == contract.id)
                    .order_by(Message.created_at.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            other = contract.buyer if user.id == contract.farmer_id else contract.farmer
            chats.append({
                "contract_id": contract.id,
                "status": contract.status,
                "crop": {"id": contract.crop_id, "name": contract.crop.name if contract.crop else None},
                "other_party": {"id": other.id, "name": other.name, "role": other.role},
                "latest_message": serialize_message(latest) if latest else None,
                "unread_count": unread.get(contract.id, 0),
                "last_activity": latest.created_at if latest else contract.updated_at,
            })

        chats.sort(key=lambda c: c["last_activity"], reverse=True)
        for chat in chats:
            chat["last_activity"] = chat["last_activity"].isoformat()
        return chats
