"""ChatSocketHandler: event dispatch, room gating and scoped error reporting."""

import json

import pytest
from sqlalchemy import select

from agrolink.app.routes.ws import ChatSocketHandler
from agrolink.domain.models import Message

CLIENT = "client-1"


@pytest.fixture
def handler(session_factory, realtime, fake_mailer):
    return ChatSocketHandler(session_factory, realtime, fake_mailer)


def _frame(event: str, **data) -> str:
    return json.dumps({"event": event, "data": data})


async def _joined(handler, realtime, contract, user, client_id=CLIENT):
    await handler.handle(client_id, user.id, _frame("join_chat", contract_id=contract.id))
    assert realtime.sent_to(client_id, "joined_chat")


class TestFrames:
    async def test_ping_pong(self, handler, realtime, make_user):
        user = await make_user()
        await handler.handle(CLIENT, user.id, _frame("ping"))
        assert realtime.sent_to(CLIENT) == [("pong", {})]

    async def test_malformed_json_reports_error(self, handler, realtime, make_user):
        user = await make_user()
        await handler.handle(CLIENT, user.id, "{not json")
        [(event, data)] = realtime.sent_to(CLIENT)
        assert event == "error"
        assert data["status_code"] == 400

    async def test_unknown_event_reports_error(self, handler, realtime, make_user):
        user = await make_user()
        await handler.handle(CLIENT, user.id, _frame("teleport"))
        [(event, data)] = realtime.sent_to(CLIENT)
        assert event == "error"
        assert data["event"] == "teleport"

    async def test_missing_contract_id(self, handler, realtime, make_user):
        user = await make_user()
        await handler.handle(CLIENT, user.id, _frame("join_chat"))
        assert realtime.sent_to(CLIENT, "error")[0][1]["message"] == "contract_id is required"


class TestJoinLeave:
    async def test_party_joins_contract_room(self, handler, realtime, make_contract, db_session):
        contract = await make_contract()
        await db_session.commit()

        await _joined(handler, realtime, contract, contract.buyer)

        assert realtime.in_room(CLIENT, f"contract:{contract.id}")
        [(_, data)] = realtime.sent_to(CLIENT, "joined_chat")
        assert data == {"contract_id": contract.id, "marked_read": 0}

    async def test_outsider_cannot_join(self, handler, realtime, make_contract, make_user, db_session):
        contract = await make_contract()
        outsider = await make_user()
        await db_session.commit()

        await handler.handle(CLIENT, outsider.id, _frame("join_chat", contract_id=contract.id))

        assert not realtime.in_room(CLIENT, f"contract:{contract.id}")
        [(event, data)] = realtime.sent_to(CLIENT)
        assert event == "error"
        assert data["status_code"] == 403

    async def test_leave_chat(self, handler, realtime, make_contract, db_session):
        contract = await make_contract()
        await db_session.commit()
        await _joined(handler, realtime, contract, contract.farmer)

        await handler.handle(CLIENT, contract.farmer.id, _frame("leave_chat", contract_id=contract.id))

        assert not realtime.in_room(CLIENT, f"contract:{contract.id}")
        assert realtime.sent_to(CLIENT, "left_chat")


class TestSendMessage:
    async def test_must_join_before_sending(self, handler, realtime, make_contract, db_session):
        contract = await make_contract()
        await db_session.commit()

        await handler.handle(
            CLIENT, contract.buyer.id, _frame("send_message", contract_id=contract.id, content="hello")
        )

        assert realtime.sent_to(CLIENT, "error")
        messages = (await db_session.execute(select(Message))).scalars().all()
        assert messages == []

    async def test_text_message_is_persisted_then_broadcast(self, handler, realtime, make_contract, db_session):
        contract = await make_contract()
        await db_session.commit()
        await _joined(handler, realtime, contract, contract.buyer)

        await handler.handle(
            CLIENT,
            contract.buyer.id,
            _frame("send_message", contract_id=contract.id, content="Is it organic?", client_ref="tmp-1"),
        )

        [(_, ack)] = realtime.sent_to(CLIENT, "message_sent")
        assert ack["client_ref"] == "tmp-1"
        assert ack["message"]["content"] == "Is it organic?"

        [broadcast] = realtime.events("new_message", f"contract:{contract.id}")
        assert broadcast["id"] == ack["message"]["id"]
        [unread] = realtime.events("unread_update", f"user:{contract.farmer_id}")
        assert unread == {"contract_id": contract.id, "unread_count": 1}

        stored = (await db_session.execute(select(Message))).scalar_one()
        assert stored.recipient_id == contract.farmer_id

    async def test_counter_offer_message_moves_contract_to_negotiating(
        self, handler, realtime, make_contract, db_session
    ):
        contract = await make_contract()
        await db_session.commit()
        await _joined(handler, realtime, contract, contract.farmer)

        await handler.handle(
            CLIENT,
            contract.farmer.id,
            _frame(
                "send_message",
                contract_id=contract.id,
                content="How about 60/kg?",
                message_type="counterOffer",
                changes=[{"kind": "price_per_unit", "value": 60}],
            ),
        )

        assert realtime.sent_to(CLIENT, "message_sent")
        [updated] = realtime.events("contract_updated", f"user:{contract.buyer_id}")
        assert updated["status"] == "negotiating"

    async def test_client_cannot_send_system_messages(self, handler, realtime, make_contract, db_session):
        contract = await make_contract()
        await db_session.commit()
        await _joined(handler, realtime, contract, contract.buyer)

        await handler.handle(
            CLIENT,
            contract.buyer.id,
            _frame("send_message", contract_id=contract.id, content="x", message_type="systemMessage"),
        )

        [(_, data)] = realtime.sent_to(CLIENT, "error")
        assert data["status_code"] == 400
        assert not realtime.events("new_message")

    async def test_bad_event_does_not_block_next(self, handler, realtime, make_contract, db_session):
        contract = await make_contract()
        await db_session.commit()
        await _joined(handler, realtime, contract, contract.buyer)

        await handler.handle(CLIENT, contract.buyer.id, _frame("send_message", contract_id=contract.id))
        await handler.handle(
            CLIENT, contract.buyer.id, _frame("send_message", contract_id=contract.id, content="second try")
        )

        assert realtime.sent_to(CLIENT, "error")
        assert realtime.sent_to(CLIENT, "message_sent")


class TestAcceptOffer:
    async def test_accept_offer_over_socket(self, handler, realtime, make_contract, db_session):
        contract = await make_contract(quantity=10, price_per_unit=50)
        await db_session.commit()
        farmer, buyer = contract.farmer, contract.buyer

        await _joined(handler, realtime, contract, farmer, "farmer-socket")
        await _joined(handler, realtime, contract, buyer, "buyer-socket")
        await handler.handle(
            "farmer-socket",
            farmer.id,
            _frame(
                "send_message",
                contract_id=contract.id,
                content="8 kg only",
                message_type="counterOffer",
                changes=[{"kind": "quantity", "value": 8}],
            ),
        )
        await handler.handle("buyer-socket", buyer.id, _frame("accept_offer", contract_id=contract.id))

        [accepted] = realtime.events("offer_accepted", f"contract:{contract.id}")
        assert accepted["accepted_by"] == buyer.id
        assert accepted["counter_offer"]["total_amount"] == 400
        assert not realtime.sent_to("buyer-socket", "error")

    async def test_self_accept_is_scoped_error(self, handler, realtime, make_contract, db_session):
        contract = await make_contract()
        await db_session.commit()
        farmer = contract.farmer
        await _joined(handler, realtime, contract, farmer)
        await handler.handle(
            CLIENT,
            farmer.id,
            _frame(
                "send_message",
                contract_id=contract.id,
                content="offer",
                message_type="counterOffer",
                changes=[{"kind": "quantity", "value": 8}],
            ),
        )

        await handler.handle(CLIENT, farmer.id, _frame("accept_offer", contract_id=contract.id))

        [(_, data)] = realtime.sent_to(CLIENT, "error")
        assert data["event"] == "accept_offer"
        assert data["status_code"] == 400
