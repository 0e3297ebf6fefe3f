"""
Tests for the order endpoints.
"""

import pytest
from uuid import uuid4

from app.core.security import ActorRole
from tests.fixtures.test_data import PICKUP, headers_for, make_actor, order_payload


async def create_order(client, customer) -> dict:
    response = await client.post("/api/orders", json=order_payload(), headers=headers_for(customer))
    assert response.status_code == 201
    return response.json()


class TestIdentity:
    """Tests for gateway identity headers."""

    @pytest.mark.asyncio
    async def test_missing_identity_is_401(self, client):
        response = await client.post("/api/orders", json=order_payload())
        assert response.status_code == 401
        assert response.json() == {"error": "unauthorized", "message": "Access token required"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("actor_id,role", [
        ("not-a-uuid", "customer"),
        (str(uuid4()), "superuser"),
        (str(uuid4()), "system"),
    ])
    async def test_malformed_identity_is_401(self, client, actor_id, role):
        response = await client.post(
            "/api/orders",
            json=order_payload(),
            headers={"X-Actor-Id": actor_id, "X-Actor-Role": role},
        )
        assert response.status_code == 401
        assert response.json()["message"] == "Invalid token"


class TestCreateOrder:
    """Tests for POST /api/orders."""

    @pytest.mark.asyncio
    async def test_customer_places_order(self, client, customer):
        body = await create_order(client, customer)

        assert body["status"] == "pending"
        assert body["customer_id"] == str(customer.id)
        assert body["agent_id"] is None
        assert body["order_number"].startswith("ORD-")
        assert body["items"] == [{"name": "Pizza", "quantity": 2, "price": 10.0}]

    @pytest.mark.asyncio
    async def test_agent_cannot_place_order(self, client):
        response = await client.post(
            "/api/orders", json=order_payload(), headers=headers_for(make_actor(ActorRole.AGENT))
        )
        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"

    @pytest.mark.asyncio
    async def test_invalid_body_is_400_with_fields(self, client, customer):
        payload = order_payload()
        payload["items"][0]["quantity"] = 0
        payload["delivery_lat"] = 95.0
        del payload["delivery_address"]

        response = await client.post("/api/orders", json=payload, headers=headers_for(customer))

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "validation_error"
        assert "items.0.quantity" in body["fields"]
        assert "delivery_lat" in body["fields"]
        assert "delivery_address" in body["fields"]

    @pytest.mark.asyncio
    async def test_empty_items_rejected(self, client, customer):
        payload = order_payload()
        payload["items"] = []
        response = await client.post("/api/orders", json=payload, headers=headers_for(customer))
        assert response.status_code == 400


class TestGetOrder:
    """Tests for GET /api/orders/{id}."""

    @pytest.mark.asyncio
    async def test_order_with_tracking(self, client, customer):
        created = await create_order(client, customer)

        response = await client.get(f"/api/orders/{created['id']}")

        assert response.status_code == 200
        body = response.json()
        assert body["id"] == created["id"]
        assert len(body["tracking"]) == 1
        assert body["tracking"][0]["sequence"] == 1
        assert body["tracking"][0]["description"] == "Order placed successfully"

    @pytest.mark.asyncio
    async def test_unknown_order_is_404(self, client):
        response = await client.get(f"/api/orders/{uuid4()}")
        assert response.status_code == 404
        assert response.json() == {"error": "not_found", "message": "Order not found"}

    @pytest.mark.asyncio
    async def test_malformed_id_is_400(self, client):
        response = await client.get("/api/orders/12345")
        assert response.status_code == 400


class TestStatusAndAssignment:
    """Tests for PATCH /status and POST /assign-agent."""

    @pytest.fixture
    async def assigned(self, client, customer, admin, add_agent):
        agent = await add_agent(PICKUP.lat + 0.001, PICKUP.lng, name="Linus Rider")
        order = await create_order(client, customer)
        response = await client.post(
            f"/api/orders/{order['id']}/assign-agent", headers=headers_for(admin)
        )
        assert response.status_code == 200
        return order, agent, response.json()

    @pytest.mark.asyncio
    async def test_assignment_response(self, assigned):
        order, agent, body = assigned
        assert body["message"] == "Agent assigned successfully"
        assert body["order"]["status"] == "accepted"
        assert body["order"]["agent_id"] == str(agent.id)
        assert body["agent"]["id"] == str(agent.id)
        assert body["agent"]["name"] == "Linus Rider"
        assert body["agent"]["distance_km"] == pytest.approx(0.111, abs=0.001)

    @pytest.mark.asyncio
    async def test_agent_walks_order_to_delivery(self, client, assigned):
        order, agent, _ = assigned
        url = f"/api/orders/{order['id']}/status"

        for status in ("preparing", "ready_for_pickup", "picked_up", "out_for_delivery", "delivered"):
            response = await client.patch(
                url,
                json={"status": status, "location_lat": 51.52, "location_lng": -0.15},
                headers=headers_for(agent),
            )
            assert response.status_code == 200
            assert response.json()["status"] == status

        detail = (await client.get(f"/api/orders/{order['id']}")).json()
        assert [t["status"] for t in detail["tracking"]] == [
            "pending", "accepted", "preparing", "ready_for_pickup",
            "picked_up", "out_for_delivery", "delivered",
        ]
        assert detail["tracking"][-1]["location_lat"] == 51.52

    @pytest.mark.asyncio
    async def test_other_agent_gets_404(self, client, assigned):
        order, _, _ = assigned
        response = await client.patch(
            f"/api/orders/{order['id']}/status",
            json={"status": "preparing"},
            headers=headers_for(make_actor(ActorRole.AGENT)),
        )
        assert response.status_code == 404
        assert response.json()["message"] == "Order not found or not assigned to you"

    @pytest.mark.asyncio
    async def test_customer_cannot_drive_delivery(self, client, customer, assigned):
        order, _, _ = assigned
        response = await client.patch(
            f"/api/orders/{order['id']}/status",
            json={"status": "preparing"},
            headers=headers_for(customer),
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_skipping_ahead_is_409(self, client, assigned):
        order, agent, _ = assigned
        response = await client.patch(
            f"/api/orders/{order['id']}/status",
            json={"status": "delivered"},
            headers=headers_for(agent),
        )
        assert response.status_code == 409
        assert response.json()["error"] == "invalid_transition"

    @pytest.mark.asyncio
    async def test_unknown_status_is_400(self, client, assigned):
        order, agent, _ = assigned
        response = await client.patch(
            f"/api/orders/{order['id']}/status",
            json={"status": "teleported"},
            headers=headers_for(agent),
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_half_a_location_is_400(self, client, assigned):
        order, agent, _ = assigned
        response = await client.patch(
            f"/api/orders/{order['id']}/status",
            json={"status": "preparing", "location_lat": 51.5},
            headers=headers_for(agent),
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_second_assignment_is_400(self, client, admin, add_agent, assigned):
        order, _, _ = assigned
        await add_agent(PICKUP.lat, PICKUP.lng)
        response = await client.post(f"/api/orders/{order['id']}/assign-agent", headers=headers_for(admin))
        assert response.status_code == 400
        assert response.json()["error"] == "already_assigned"

    @pytest.mark.asyncio
    async def test_no_agent_nearby_is_404(self, client, customer, admin):
        order = await create_order(client, customer)
        response = await client.post(f"/api/orders/{order['id']}/assign-agent", headers=headers_for(admin))
        assert response.status_code == 404
        assert response.json() == {
            "error": "no_available_agent",
            "message": "No available agents found nearby",
        }

    @pytest.mark.asyncio
    async def test_assign_cancelled_order_is_409(self, client, customer, admin, add_agent):
        await add_agent(PICKUP.lat, PICKUP.lng)
        order = await create_order(client, customer)
        cancel = await client.patch(
            f"/api/orders/{order['id']}/status",
            json={"status": "cancelled"},
            headers=headers_for(customer),
        )
        assert cancel.status_code == 200

        response = await client.post(f"/api/orders/{order['id']}/assign-agent", headers=headers_for(admin))
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_customer_cannot_assign(self, client, customer):
        order = await create_order(client, customer)
        response = await client.post(f"/api/orders/{order['id']}/assign-agent", headers=headers_for(customer))
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_assign_unknown_order_is_404(self, client, admin):
        response = await client.post(f"/api/orders/{uuid4()}/assign-agent", headers=headers_for(admin))
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"
