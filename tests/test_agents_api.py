"""
Tests for the agent endpoints and health checks.
"""

import pytest
from uuid import uuid4

from app.core.security import ActorRole
from tests.fixtures.test_data import PICKUP, headers_for, make_actor


class TestAgentRegistration:
    """Tests for POST /api/agents and GET /api/agents/{id}."""

    @pytest.mark.asyncio
    async def test_admin_registers_agent(self, client, admin):
        agent_id = uuid4()
        response = await client.post(
            "/api/agents",
            json={"id": str(agent_id), "name": "Ada", "vehicle_number": "EV-01", "vehicle_type": "scooter"},
            headers=headers_for(admin),
        )

        assert response.status_code == 201
        body = response.json()
        assert body["id"] == str(agent_id)
        assert body["status"] == "offline"
        assert body["current_lat"] is None

        fetched = await client.get(f"/api/agents/{agent_id}")
        assert fetched.status_code == 200
        assert fetched.json()["name"] == "Ada"

    @pytest.mark.asyncio
    async def test_registration_requires_admin(self, client, customer):
        response = await client.post("/api/agents", json={"name": "Ada"}, headers=headers_for(customer))
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_agent_is_404(self, client):
        response = await client.get(f"/api/agents/{uuid4()}")
        assert response.status_code == 404


class TestAvailability:
    """Tests for PATCH /api/agents/{id}/availability."""

    @pytest.mark.asyncio
    async def test_agent_goes_off_and_on_shift(self, client, add_agent):
        agent = await add_agent(PICKUP.lat, PICKUP.lng)
        url = f"/api/agents/{agent.id}/availability"

        off = await client.patch(url, json={"status": "offline"}, headers=headers_for(agent))
        assert off.status_code == 200
        assert off.json()["status"] == "offline"

        on = await client.patch(url, json={"status": "available"}, headers=headers_for(agent))
        assert on.json()["status"] == "available"

    @pytest.mark.asyncio
    async def test_busy_cannot_be_requested(self, client, add_agent):
        agent = await add_agent(PICKUP.lat, PICKUP.lng)
        response = await client.patch(
            f"/api/agents/{agent.id}/availability", json={"status": "busy"}, headers=headers_for(agent)
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_other_agent_forbidden(self, client, add_agent):
        agent = await add_agent(PICKUP.lat, PICKUP.lng)
        response = await client.patch(
            f"/api/agents/{agent.id}/availability",
            json={"status": "offline"},
            headers=headers_for(make_actor(ActorRole.AGENT)),
        )
        assert response.status_code == 403


class TestHealth:
    """Tests for health endpoints."""

    @pytest.mark.asyncio
    async def test_root(self, client):
        response = await client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
