"""WebSocket handler for live contract chat.

Clients connect to ``/ws/chat?token=<jwt>`` with the same token used for
REST. The connection is auto-joined to ``user:<id>``; contract rooms must be
joined explicitly with ``join_chat``.

Client -> server frames: ``{"event": <name>, "data": {...}}`` where name is
one of join_chat, leave_chat, send_message, mark_messages_read, accept_offer,
ping. A bad frame produces an ``error`` event for the sender only; the
connection stays open.
"""

import json
import logging
import uuid as uuid_mod
from typing import Any, Callable, Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError as PydanticValidationError

from agrolink.app.errors import AppError, AuthenticationError, ValidationError
from agrolink.domain.models import User
from agrolink.domain.schemas import MessageCreate
from agrolink.infra.database import async_session
from agrolink.services.auth_service import get_user_from_token
from agrolink.services.chat_service import ChatService
from agrolink.services.email_service import Mailer
from agrolink.services.realtime import ConnectionManager, contract_room, user_room
from agrolink.services.serializers import serialize_message

logger = logging.getLogger(__name__)
router = APIRouter(tags=["websocket"])


class ChatSocketHandler:
    """Dispatches client events for one realtime manager.

    Every event runs in its own database session so one failing event does
    not poison the next.
    """

    def __init__(
        self,
        session_factory: Callable,
        realtime: ConnectionManager,
        mailer: Optional[Mailer] = None,
    ):
        self.session_factory = session_factory
        self.realtime = realtime
        self.mailer = mailer
        self._handlers = {
            "join_chat": self._join_chat,
            "leave_chat": self._leave_chat,
            "send_message": self._send_message,
            "mark_messages_read": self._mark_messages_read,
            "accept_offer": self._accept_offer,
        }

    async def authenticate(self, token: Optional[str]) -> Optional[User]:
        if not token:
            return None
        async with self.session_factory() as db:
            return await get_user_from_token(db, token)

    async def handle(self, client_id: str, user_id: str, raw: Any) -> None:
        """Handle one inbound frame (text or already-decoded dict)."""
        event = None
        try:
            if isinstance(raw, (str, bytes)):
                try:
                    raw = json.loads(raw)
                except json.JSONDecodeError:
                    raise ValidationError("Frames must be JSON") from None
            if not isinstance(raw, dict):
                raise ValidationError("Frames must be JSON objects")

            event = raw.get("event")
            data = raw.get("data") or {}
            if not isinstance(data, dict):
                raise ValidationError("Event data must be an object")

            if event == "ping":
                await self.realtime.send(client_id, "pong", {})
                return
            handler = self._handlers.get(event)
            if handler is None:
                raise ValidationError(f"Unknown event: {event}")

            async with self.session_factory() as db:
                user = await db.get(User, user_id)
                if user is None or not user.is_active:
                    raise AuthenticationError("User no longer active")
                await handler(db, client_id, user, data)
        except AppError as exc:
            await self._error(client_id, event, exc.message, exc.status_code)
        except PydanticValidationError as exc:
            messages = "; ".join(err["msg"] for err in exc.errors())
            await self._error(client_id, event, messages, 400)
        except Exception:
            logger.exception("Socket event %s from %s failed", event, client_id)
            await self._error(client_id, event, "Internal server error", 500)

    async def _error(self, client_id: str, event: Optional[str], message: str, status_code: int):
        await self.realtime.send(
            client_id, "error", {"event": event, "message": message, "status_code": status_code}
        )

    @staticmethod
    def _contract_id(data: dict) -> str:
        contract_id = data.get("contract_id")
        if not contract_id or not isinstance(contract_id, str):
            raise ValidationError("contract_id is required")
        return contract_id

    def _chat(self, db) -> ChatService:
        return ChatService(db, self.mailer, self.realtime)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _join_chat(self, db, client_id: str, user: User, data: dict):
        chat = self._chat(db)
        contract, _ = await chat.contracts.get_for_party(self._contract_id(data), user)
        self.realtime.join(client_id, contract_room(contract.id))
        marked = await chat.mark_read(contract.id, user, _contract=contract)
        logger.info("Client %s joined chat for contract %s", client_id, contract.id)
        await self.realtime.send(
            client_id, "joined_chat", {"contract_id": contract.id, "marked_read": marked}
        )

    async def _leave_chat(self, db, client_id: str, user: User, data: dict):
        contract_id = self._contract_id(data)
        self.realtime.leave(client_id, contract_room(contract_id))
        await self.realtime.send(client_id, "left_chat", {"contract_id": contract_id})

    def _require_joined(self, client_id: str, contract_id: str):
        if not self.realtime.in_room(client_id, contract_room(contract_id)):
            raise ValidationError("Join the chat before sending to it")

    async def _send_message(self, db, client_id: str, user: User, data: dict):
        contract_id = self._contract_id(data)
        self._require_joined(client_id, contract_id)
        payload = MessageCreate.model_validate(
            {k: v for k, v in data.items() if k in ("content", "message_type", "changes")}
        )
        message = await self._chat(db).send_message(contract_id, user, payload)
        await self.realtime.send(
            client_id,
            "message_sent",
            {"client_ref": data.get("client_ref"), "message": serialize_message(message)},
        )

    async def _mark_messages_read(self, db, client_id: str, user: User, data: dict):
        await self._chat(db).mark_read(self._contract_id(data), user)

    async def _accept_offer(self, db, client_id: str, user: User, data: dict):
        contract_id = self._contract_id(data)
        self._require_joined(client_id, contract_id)
        contract, _, _ = await self._chat(db).accept_offer(contract_id, user)
        logger.info("Offer on contract %s accepted over socket by %s", contract.id, user.id)


@router.websocket("/ws/chat")
async def chat_socket(websocket: WebSocket, token: Optional[str] = Query(None)):
    """Authenticated chat connection for contract parties."""
    realtime: ConnectionManager = websocket.app.state.realtime
    handler = ChatSocketHandler(async_session, realtime, websocket.app.state.mailer)

    user = await handler.authenticate(token)
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    client_id = f"user_{user.id}_{uuid_mod.uuid4().hex[:8]}"
    await realtime.connect(websocket, client_id, room=user_room(user.id))
    logger.info("Chat client connected: %s", client_id)

    try:
        while True:
            raw = await websocket.receive_text()
            await handler.handle(client_id, user.id, raw)
    except WebSocketDisconnect:
        logger.info("Chat client disconnected: %s", client_id)
    except Exception as e:
        logger.error("Chat WebSocket error for %s: %s", client_id, e)
    finally:
        realtime.disconnect(client_id)
