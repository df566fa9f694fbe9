"""HTTP-level tests: auth, error envelope, contract negotiation and payment webhook."""

import pytest


class TestAuth:
    async def test_signup_login_me(self, api_client):
        resp = await api_client.post(
            "/api/v1/auth/signup",
            json={
                "name": "Ravi",
                "email": "Ravi@Farm.com",
                "password": "secret123",
                "role": "farmer",
                "farm_name": "Green Acres",
            },
        )
        assert resp.status_code == 201
        assert resp.json()["user"]["email"] == "ravi@farm.com"

        resp = await api_client.post(
            "/api/v1/auth/login", json={"email": "ravi@farm.com", "password": "secret123"}
        )
        assert resp.status_code == 200
        token = resp.json()["access_token"]

        resp = await api_client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        assert resp.json()["user"]["role"] == "farmer"

    async def test_admin_signup_rejected(self, api_client):
        resp = await api_client.post(
            "/api/v1/auth/signup",
            json={"name": "Eve", "email": "eve@x.com", "password": "secret123", "role": "admin"},
        )
        assert resp.status_code == 400
        assert resp.json()["success"] is False

    async def test_wrong_password(self, api_client, make_user, db_session):
        user = await make_user()
        await db_session.commit()
        resp = await api_client.post("/api/v1/auth/login", json={"email": user.email, "password": "nope"})
        assert resp.status_code == 401
        assert resp.json() == {"success": False, "message": "Invalid email or password"}

    async def test_missing_token(self, api_client):
        resp = await api_client.get("/api/v1/contracts")
        assert resp.status_code == 401

    async def test_garbage_token(self, api_client):
        resp = await api_client.get("/api/v1/contracts", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401


class TestProductsApi:
    async def test_listing_and_review_flow(self, api_client, make_user, make_product, db_session, auth_headers):
        farmer = await make_user(role="farmer")
        buyer = await make_user(role="customer")
        product = await make_product(farmer, name="Basmati Rice", price=80)
        await make_product(farmer, name="Wheat", price=25)
        await db_session.commit()

        resp = await api_client.get("/api/v1/products", params={"search": "rice"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 1
        assert body["products"][0]["id"] == product.id

        resp = await api_client.post(
            f"/api/v1/products/review/{product.id}",
            json={"rating": 4, "comment": "Fragrant"},
            headers=auth_headers(farmer),
        )
        assert resp.status_code == 400

        resp = await api_client.post(
            f"/api/v1/products/review/{product.id}",
            json={"rating": 4, "comment": "Fragrant"},
            headers=auth_headers(buyer),
        )
        assert resp.status_code == 200
        reviewed = resp.json()["product"]
        assert (reviewed["num_of_reviews"], reviewed["average_rating"]) == (1, 4)


class TestErrorEnvelope:
    async def test_request_validation_is_400_with_field_map(self, api_client, make_user, db_session, auth_headers):
        buyer = await make_user()
        await db_session.commit()
        resp = await api_client.post(
            "/api/v1/contracts/request",
            json={"crop_id": "x", "quantity": 0, "unit": "kg", "price_per_unit": 10, "quality_requirements": "A"},
            headers=auth_headers(buyer),
        )
        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert "quantity" in body["errors"]

    async def test_not_found(self, api_client, make_user, db_session, auth_headers):
        user = await make_user()
        await db_session.commit()
        resp = await api_client.get("/api/v1/contracts/does-not-exist", headers=auth_headers(user))
        assert resp.status_code == 404
        assert resp.json()["message"] == "Contract not found"


class TestContractFlow:
    async def test_request_negotiate_accept(self, api_client, make_user, make_product, db_session, auth_headers):
        farmer = await make_user(role="farmer")
        buyer = await make_user(role="customer")
        crop = await make_product(farmer, price=50)
        await db_session.commit()

        resp = await api_client.post(
            "/api/v1/contracts/request",
            json={
                "crop_id": crop.id,
                "quantity": 10,
                "unit": "kg",
                "price_per_unit": 50,
                "quality_requirements": "Grade A",
            },
            headers=auth_headers(buyer),
        )
        assert resp.status_code == 201
        contract = resp.json()["contract"]
        assert contract["total_amount"] == 500
        contract_id = contract["id"]

        resp = await api_client.post(
            f"/api/v1/contracts/{contract_id}/counter-offer",
            json={"changes": [{"kind": "quantity", "value": 8}], "message": "Only 8 kg"},
            headers=auth_headers(farmer),
        )
        assert resp.status_code == 200
        assert resp.json()["contract"]["status"] == "negotiating"
        assert resp.json()["counter_offer"]["total_amount"] == 400

        resp = await api_client.put(
            f"/api/v1/contracts/{contract_id}/accept-offer", headers=auth_headers(farmer)
        )
        assert resp.status_code == 400

        resp = await api_client.put(
            f"/api/v1/contracts/{contract_id}/accept-offer", headers=auth_headers(buyer)
        )
        assert resp.status_code == 200
        assert resp.json()["contract"]["status"] == "accepted"
        assert resp.json()["contract"]["total_amount"] == 400

        resp = await api_client.get(f"/api/v1/contracts/{contract_id}/timeline", headers=auth_headers(buyer))
        assert [e["event_type"] for e in resp.json()["events"]] == ["requested", "counter_offer", "offer_accepted"]

    async def test_outsider_gets_403(self, api_client, make_contract, make_user, db_session, auth_headers):
        contract = await make_contract()
        outsider = await make_user()
        await db_session.commit()
        resp = await api_client.get(f"/api/v1/contracts/{contract.id}", headers=auth_headers(outsider))
        assert resp.status_code == 403

    async def test_invalid_status_transition_is_400(self, api_client, make_contract, db_session, auth_headers):
        contract = await make_contract()
        await db_session.commit()
        resp = await api_client.put(
            f"/api/v1/contracts/{contract.id}/status",
            json={"status": "active"},
            headers=auth_headers(contract.farmer),
        )
        assert resp.status_code == 400
        assert "Invalid transition" in resp.json()["message"]

    async def test_empty_offer_rejected(self, api_client, make_contract, db_session, auth_headers):
        contract = await make_contract()
        await db_session.commit()
        resp = await api_client.post(
            f"/api/v1/contracts/{contract.id}/negotiate",
            json={"changes": []},
            headers=auth_headers(contract.buyer),
        )
        assert resp.status_code == 400


class TestPaymentsApi:
    async def test_create_then_form_webhook(
        self, api_client, make_contract, db_session, auth_headers, sign_webhook
    ):
        contract = await make_contract(status="accepted", quantity=10, price_per_unit=50)
        await db_session.commit()

        resp = await api_client.post(
            "/api/v1/payments/create",
            json={"contract_id": contract.id, "stage": "advance"},
            headers=auth_headers(contract.buyer),
        )
        assert resp.status_code == 201
        payment = resp.json()["payment"]
        assert payment["amount"] == 100
        assert resp.json()["payment_url"]

        payload = {
            "payment_request_id": payment["payment_request_id"],
            "payment_id": "MOJO-77",
            "status": "Credit",
            "amount": "100.00",
        }
        resp = await api_client.post(
            "/api/v1/payments/webhook",
            data=payload,
            headers={"X-Instamojo-Signature": sign_webhook(payload)},
        )
        assert resp.status_code == 200
        assert resp.json()["contract_status"] == "active"

        replay = await api_client.post(
            "/api/v1/payments/webhook",
            data=payload,
            headers={"X-Instamojo-Signature": sign_webhook(payload)},
        )
        assert replay.status_code == 200
        assert replay.json()["duplicate"] is True

        resp = await api_client.get(f"/api/v1/contracts/{contract.id}", headers=auth_headers(contract.farmer))
        assert resp.json()["contract"]["status"] == "active"
        assert resp.json()["contract"]["payments"]["advance"][0]["status"] == "completed"

    async def test_unsigned_webhook_rejected(self, api_client):
        resp = await api_client.post(
            "/api/v1/payments/webhook",
            json={"payment_request_id": "PR-1", "status": "Credit"},
        )
        assert resp.status_code == 400

    async def test_gateway_outage_is_503(
        self, api_client, make_contract, db_session, auth_headers, fake_gateway
    ):
        from agrolink.infra.instamojo import PaymentGatewayError

        contract = await make_contract(status="accepted")
        await db_session.commit()
        fake_gateway.fail_with = PaymentGatewayError("timed out", unavailable=True)
        resp = await api_client.post(
            "/api/v1/payments/create",
            json={"contract_id": contract.id, "stage": "advance"},
            headers=auth_headers(contract.buyer),
        )
        assert resp.status_code == 503

    async def test_disburse_requires_admin(self, api_client, make_contract, db_session, auth_headers):
        contract = await make_contract(status="accepted")
        await db_session.commit()
        resp = await api_client.put(
            "/api/v1/payments/whatever/disburse", headers=auth_headers(contract.buyer)
        )
        assert resp.status_code == 403


class TestNotificationsAndChatApi:
    async def test_notifications_for_recipient(self, api_client, make_contract, db_session, auth_headers):
        contract = await make_contract()
        await db_session.commit()
        await api_client.post(
            f"/api/v1/contracts/{contract.id}/accept", headers=auth_headers(contract.farmer)
        )

        resp = await api_client.get("/api/v1/notifications", headers=auth_headers(contract.buyer))
        body = resp.json()
        assert body["total"] == 1
        assert body["unread_count"] == 1
        notification_id = body["notifications"][0]["id"]

        resp = await api_client.delete(
            f"/api/v1/notifications/{notification_id}", headers=auth_headers(contract.farmer)
        )
        assert resp.status_code in (403, 404)

        resp = await api_client.put("/api/v1/notifications/mark-all-read", headers=auth_headers(contract.buyer))
        assert resp.json()["marked_read"] == 1

    async def test_chat_messages_and_unread(self, api_client, make_contract, db_session, auth_headers):
        contract = await make_contract()
        await db_session.commit()

        resp = await api_client.post(
            f"/api/v1/chat/contracts/{contract.id}/messages",
            json={"content": "Hello farmer"},
            headers=auth_headers(contract.buyer),
        )
        assert resp.status_code == 201

        resp = await api_client.get("/api/v1/chat/unread", headers=auth_headers(contract.farmer))
        assert resp.json()["total"] == 1

        resp = await api_client.get(
            f"/api/v1/chat/contracts/{contract.id}/messages", headers=auth_headers(contract.farmer)
        )
        assert [m["content"] for m in resp.json()["messages"]] == ["Hello farmer"]

        resp = await api_client.get("/api/v1/chat/unread", headers=auth_headers(contract.farmer))
        assert resp.json()["total"] == 0

        resp = await api_client.get("/api/v1/chat/chats", headers=auth_headers(contract.farmer))
        assert resp.json()["count"] == 1

    @pytest.mark.parametrize("message_type", ["systemMessage"])
    async def test_client_system_message_rejected(
        self, api_client, make_contract, db_session, auth_headers, message_type
    ):
        contract = await make_contract()
        await db_session.commit()
        resp = await api_client.post(
            f"/api/v1/chat/contracts/{contract.id}/messages",
            json={"content": "x", "message_type": message_type},
            headers=auth_headers(contract.buyer),
        )
        assert resp.status_code == 400
