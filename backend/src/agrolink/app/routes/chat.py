"""Contract chat REST endpoints. Live delivery happens over ``/ws/chat``."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from agrolink.app.dependencies import get_mailer, get_realtime
from agrolink.app.routes.auth import get_current_user_dep
from agrolink.domain.models import User
from agrolink.domain.schemas import MessageCreate
from agrolink.infra.database import get_db
from agrolink.services.chat_service import DEFAULT_PAGE_SIZE, ChatService
from agrolink.services.email_service import Mailer
from agrolink.services.realtime import ConnectionManager
from agrolink.services.serializers import serialize_contract, serialize_counter_offer, serialize_message

router = APIRouter(prefix="/api/v1/chat", tags=["chat"])


def get_chat_service(
    db: AsyncSession = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
    realtime: ConnectionManager = Depends(get_realtime),
) -> ChatService:
    return ChatService(db, mailer, realtime)


@router.get("/chats")
async def chat_list(
    user: User = Depends(get_current_user_dep),
    service: ChatService = Depends(get_chat_service),
):
    chats = await service.chat_list(user)
    return {"success": True, "count": len(chats), "chats": chats}


@router.get("/unread")
async def unread(
    user: User = Depends(get_current_user_dep),
    service: ChatService = Depends(get_chat_service),
):
    return {"success": True, **(await service.unread_summary(user))}


@router.get("/contracts/{contract_id}/messages")
async def list_messages(
    contract_id: str,
    before: Optional[datetime] = Query(None),
    limit: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=200),
    user: User = Depends(get_current_user_dep),
    service: ChatService = Depends(get_chat_service),
):
    messages = await service.list_messages(contract_id, user, before, limit)
    return {
        "success": True,
        "count": len(messages),
        "messages": [serialize_message(m) for m in messages],
    }


@router.post("/contracts/{contract_id}/messages", status_code=status.HTTP_201_CREATED)
async def send_message(
    contract_id: str,
    data: MessageCreate,
    user: User = Depends(get_current_user_dep),
    service: ChatService = Depends(get_chat_service),
):
    message = await service.send_message(contract_id, user, data)
    return {"success": True, "message": serialize_message(message)}


@router.put("/contracts/{contract_id}/messages/read")
async def mark_read(
    contract_id: str,
    user: User = Depends(get_current_user_dep),
    service: ChatService = Depends(get_chat_service),
):
    count = await service.mark_read(contract_id, user)
    return {"success": True, "marked_read": count}


@router.put("/contracts/{contract_id}/accept-offer")
async def accept_offer(
    contract_id: str,
    user: User = Depends(get_current_user_dep),
    service: ChatService = Depends(get_chat_service),
):
    contract, offer, message = await service.accept_offer(contract_id, user)
    return {
        "success": True,
        "contract": serialize_contract(contract),
        "counter_offer": serialize_counter_offer(offer),
        "message": serialize_message(message),
    }
