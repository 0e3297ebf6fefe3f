import pytest
from typing import AsyncGenerator

from httpx import AsyncClient, ASGITransport

from app.api.deps import get_coordinator, get_event_bus
from app.config import Settings
from app.core.events import EventBus
from app.core.security import Actor, ActorRole
from app.database import build_engine, build_session_factory, init_db
from app.main import app
from app.models import AgentStatus
from app.services.geo_index import Coordinate, SampleMetadata
from app.services.tracking import TrackingCoordinator
from tests.fixtures.test_data import PICKUP, fake, make_actor, make_order_spec


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'tracking.db'}",
        operation_timeout_seconds=5.0,
        subscriber_buffer_size=16,
        sse_heartbeat_seconds=0.05,
    )


@pytest.fixture
async def test_engine(settings):
    """Function-scoped engine on a throwaway SQLite file."""
    engine = build_engine(settings.database_url, sqlite_busy_timeout=settings.sqlite_busy_timeout_seconds)
    await init_db(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return build_session_factory(test_engine)


@pytest.fixture
async def db_session(session_factory):
    """Plain session for arranging and inspecting state."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def event_bus():
    bus = EventBus(buffer_size=16)
    yield bus
    bus.close()


@pytest.fixture
def coordinator(session_factory, event_bus, settings) -> TrackingCoordinator:
    return TrackingCoordinator(session_factory, event_bus, settings)


@pytest.fixture
async def client(coordinator, event_bus) -> AsyncGenerator[AsyncClient, None]:
    """Test client wired to the per-test coordinator and event bus."""
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    app.dependency_overrides[get_event_bus] = lambda: event_bus

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def customer() -> Actor:
    return make_actor(ActorRole.CUSTOMER)


@pytest.fixture
def admin() -> Actor:
    return make_actor(ActorRole.ADMIN)


@pytest.fixture
def place_order(coordinator, customer):
    """Factory: place a pending order, by default as ``customer``."""
    async def _place(pickup: Coordinate = PICKUP, owner: Actor = None):
        return await coordinator.create_order(make_order_spec(pickup=pickup), owner or customer)
    return _place


@pytest.fixture
def add_agent(coordinator, admin):
    """Factory: register an agent and report its first position."""
    async def _add(
        lat: float,
        lng: float,
        status: AgentStatus = AgentStatus.AVAILABLE,
        name: str = None,
    ) -> Actor:
        actor = make_actor(ActorRole.AGENT)
        await coordinator.register_agent(
            admin,
            name=name or fake.name(),
            vehicle_number=fake.bothify("??-###").upper(),
            vehicle_type="bike",
            agent_id=actor.id,
            status=status,
        )
        await coordinator.update_agent_location(
            actor,
            Coordinate(lat, lng),
            SampleMetadata(accuracy=5.0, speed=3.0, heading=90.0),
        )
        return actor
    return _add


@pytest.fixture
def accepted_order(coordinator, place_order, add_agent, admin):
    """Factory: an order already assigned to a nearby agent. Returns (order, agent actor)."""
    async def _make():
        agent = await add_agent(PICKUP.lat + 0.001, PICKUP.lng)
        order = await place_order()
        result = await coordinator.assign_agent(order.id, admin)
        assert result.agent_id == agent.id
        return result.order, agent
    return _make
