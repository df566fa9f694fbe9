"""ChatService: history paging, read receipts, unread counts and the chat list."""

from datetime import datetime, timedelta

import pytest

from agrolink.app.errors import AuthorizationError
from agrolink.domain.schemas import MessageCreate
from agrolink.services.chat_service import ChatService
from agrolink.services.message_store import add_message

BASE_TIME = datetime(2026, 3, 1, 9, 0, 0)


@pytest.fixture
def service(db_session, fake_mailer, realtime):
    return ChatService(db_session, fake_mailer, realtime)


async def _seed(db_session, contract, sender, count, start=BASE_TIME):
    for i in range(count):
        message = add_message(db_session, contract, sender, f"msg {i}")
        message.created_at = start + timedelta(minutes=i)
    await db_session.commit()


class TestHistory:
    async def test_page_is_oldest_first(self, service, make_contract, db_session):
        contract = await make_contract()
        await _seed(db_session, contract, contract.buyer, 5)

        messages = await service.list_messages(contract.id, contract.farmer, limit=3)

        assert [m.content for m in messages] == ["msg 2", "msg 3", "msg 4"]

    async def test_before_cursor(self, service, make_contract, db_session):
        contract = await make_contract()
        await _seed(db_session, contract, contract.buyer, 5)

        messages = await service.list_messages(
            contract.id, contract.farmer, before=BASE_TIME + timedelta(minutes=2)
        )

        assert [m.content for m in messages] == ["msg 0", "msg 1"]

    async def test_fetch_marks_only_callers_messages_read(self, service, make_contract, db_session, realtime):
        contract = await make_contract()
        await _seed(db_session, contract, contract.buyer, 2)

        await service.list_messages(contract.id, contract.buyer)
        assert (await service.unread_summary(contract.farmer))["total"] == 2
        assert not realtime.events("messages_read")

        await service.list_messages(contract.id, contract.farmer)
        assert (await service.unread_summary(contract.farmer))["total"] == 0
        [receipt] = realtime.events("messages_read", f"contract:{contract.id}")
        assert receipt == {"contract_id": contract.id, "reader_id": contract.farmer_id, "count": 2}

    async def test_outsider_cannot_read(self, service, make_contract, make_user, db_session):
        contract = await make_contract()
        outsider = await make_user()
        await db_session.commit()
        with pytest.raises(AuthorizationError):
            await service.list_messages(contract.id, outsider)


class TestUnreadAndChatList:
    async def test_unread_grouped_by_contract(self, service, make_contract, make_user, db_session):
        farmer = await make_user(role="farmer")
        first = await make_contract(farmer=farmer)
        second = await make_contract(farmer=farmer)
        await _seed(db_session, first, first.buyer, 2)
        await _seed(db_session, second, second.buyer, 1)

        summary = await service.unread_summary(farmer)

        assert summary == {"total": 3, "by_contract": {first.id: 2, second.id: 1}}

    async def test_chat_list_most_recent_first(self, service, make_contract, make_user, db_session):
        farmer = await make_user(role="farmer")
        older = await make_contract(farmer=farmer)
        newer = await make_contract(farmer=farmer)
        await _seed(db_session, older, older.buyer, 1, start=BASE_TIME)
        await _seed(db_session, newer, newer.buyer, 1, start=BASE_TIME + timedelta(days=1))

        chats = await service.chat_list(farmer)

        assert [c["contract_id"] for c in chats] == [newer.id, older.id]
        assert chats[0]["other_party"]["id"] == newer.buyer_id
        assert chats[0]["unread_count"] == 1
        assert chats[0]["latest_message"]["content"] == "msg 0"

    async def test_send_text_message(self, service, make_contract, db_session, realtime):
        contract = await make_contract()
        await db_session.commit()

        message = await service.send_message(contract.id, contract.buyer, MessageCreate(content="Hi"))

        assert message.recipient_id == contract.farmer_id
        assert message.read is False
        assert realtime.events("new_message", f"contract:{contract.id}")
