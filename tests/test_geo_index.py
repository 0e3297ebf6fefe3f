"""
Tests for the geo index: distance math, sample upserts and nearest-agent search.
"""

import pytest
import numpy as np
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from app.core.errors import ValidationError
from app.database import utcnow
from app.models import Agent, AgentLocation, AgentStatus
from app.services.geo_index import (
    Coordinate,
    GeoIndex,
    NearbyAgent,
    SampleMetadata,
    bounding_box,
    haversine_distances,
    rank_candidates,
)
from sqlalchemy import func, select


LONDON = Coordinate(51.5074, -0.1278)
PARIS = Coordinate(48.8566, 2.3522)


class TestDistance:
    """Tests for the haversine helper."""

    def test_known_city_distances(self):
        lats = [PARIS.lat, 40.7128, -33.8688]
        lngs = [PARIS.lng, -74.0060, 151.2093]
        distances = haversine_distances(LONDON.lat, LONDON.lng, lats, lngs)
        np.testing.assert_allclose(distances, [343.5, 5570.2, 16993.9], rtol=2e-3)

    def test_zero_distance(self):
        distances = haversine_distances(10.0, 20.0, [10.0], [20.0])
        assert distances[0] == 0.0

    def test_one_degree_of_latitude(self):
        distances = haversine_distances(0.0, 0.0, [1.0, -1.0], [0.0, 0.0])
        np.testing.assert_allclose(distances, [111.19, 111.19], atol=0.01)

    def test_antipodal_points(self):
        distances = haversine_distances(0.0, 0.0, [0.0], [180.0])
        assert distances[0] == pytest.approx(np.pi * 6371.0, rel=1e-9)

    def test_empty_input(self):
        assert haversine_distances(0.0, 0.0, [], []).shape == (0,)


class TestBoundingBox:
    """Tests for the pre-filter window."""

    def test_box_encloses_circle(self):
        radius = 25.0
        min_lat, max_lat, min_lng, max_lng = bounding_box(LONDON, radius)
        lat_span = np.degrees(radius / 6371.0)
        assert min_lat < LONDON.lat - lat_span
        assert max_lat > LONDON.lat + lat_span

        east = [LONDON.lng + d for d in np.linspace(0, 1, 2001)]
        distances = haversine_distances(LONDON.lat, LONDON.lng, [LONDON.lat] * len(east), east)
        furthest_inside = max(lng for lng, d in zip(east, distances) if d <= radius)
        assert furthest_inside <= max_lng

    def test_polar_circle_drops_longitude_bounds(self):
        _, max_lat, min_lng, max_lng = bounding_box(Coordinate(89.9, 0.0), 50.0)
        assert max_lat == 90.0
        assert min_lng is None and max_lng is None

    def test_antimeridian_drops_longitude_bounds(self):
        _, _, min_lng, max_lng = bounding_box(Coordinate(0.0, 179.9), 50.0)
        assert min_lng is None and max_lng is None


class TestRanking:
    """Tests for candidate ordering."""

    def test_ties_break_on_freshness_then_id(self):
        now = datetime(2024, 1, 1, 12, 0, 0)
        ids = sorted([uuid4(), uuid4(), uuid4()], key=str)

        def candidate(agent_id, distance, age_s):
            return NearbyAgent(agent_id, None, None, 0.0, 0.0, distance, now - timedelta(seconds=age_s))

        ranked = rank_candidates([
            candidate(ids[2], 1.0, 0),
            candidate(ids[1], 1.0, 0),
            candidate(ids[0], 1.0, 30),
            candidate(ids[0], 0.5, 60),
        ])

        assert [c.distance_km for c in ranked] == [0.5, 1.0, 1.0, 1.0]
        assert [c.agent_id for c in ranked[1:3]] == [ids[1], ids[2]]
        assert ranked[3].sampled_at == now - timedelta(seconds=30)


class TestValidation:
    """Tests for coordinate and metadata checks."""

    @pytest.mark.parametrize("lat,lng,field", [
        (90.5, 0.0, "lat"),
        (-91.0, 0.0, "lat"),
        (0.0, 180.1, "lng"),
        (float("nan"), 0.0, "lat"),
    ])
    def test_out_of_range_coordinate(self, lat, lng, field):
        with pytest.raises(ValidationError) as exc_info:
            Coordinate(lat, lng).validate()
        assert field in exc_info.value.fields

    def test_boundary_coordinates_are_valid(self):
        Coordinate(90.0, 180.0).validate()
        Coordinate(-90.0, -180.0).validate()

    def test_metadata_ranges(self):
        with pytest.raises(ValidationError) as exc_info:
            SampleMetadata(accuracy=0, speed=-1, heading=361).validate()
        assert set(exc_info.value.fields) == {"accuracy", "speed", "heading"}


class TestGeoIndex:
    """Tests for upserts and queries against the database."""

    @pytest.fixture
    def index(self):
        return GeoIndex()

    @pytest.mark.asyncio
    async def test_first_sample_registers_available_agent(self, index, db_session):
        agent_id = uuid4()
        await index.upsert(db_session, agent_id, LONDON)
        await db_session.commit()

        agent = await db_session.get(Agent, agent_id)
        assert agent.status == AgentStatus.AVAILABLE

        latest = await index.latest(db_session, agent_id)
        assert latest.lat == LONDON.lat
        assert latest.lng == LONDON.lng

    @pytest.mark.asyncio
    async def test_first_report_after_concurrent_registration(self, index, db_session, monkeypatch):
        agent_id = uuid4()
        db_session.add(Agent(id=agent_id, status=AgentStatus.OFFLINE, status_changed_at=utcnow()))
        await db_session.flush()

        async def not_seen_yet(*args, **kwargs):
            return None

        monkeypatch.setattr(db_session, "get", not_seen_yet)
        sample = await index.upsert(db_session, agent_id, LONDON)
        monkeypatch.undo()
        await db_session.commit()

        assert sample.agent_id == agent_id
        agent = await db_session.get(Agent, agent_id, populate_existing=True)
        assert agent.status == AgentStatus.OFFLINE
        assert agent.current_lat == LONDON.lat

    @pytest.mark.asyncio
    async def test_out_of_order_sample_goes_to_history_only(self, index, db_session):
        agent_id = uuid4()
        now = utcnow()
        await index.upsert(db_session, agent_id, LONDON, timestamp=now)
        await index.upsert(db_session, agent_id, PARIS, timestamp=now - timedelta(minutes=5))
        await db_session.commit()

        latest = await index.latest(db_session, agent_id)
        assert (latest.lat, latest.lng) == (LONDON.lat, LONDON.lng)

        history = await index.history(db_session, agent_id, now - timedelta(hours=1))
        assert [h.lat for h in history] == [PARIS.lat, LONDON.lat]

    @pytest.mark.asyncio
    async def test_aware_timestamps_are_normalised(self, index, db_session):
        agent_id = uuid4()
        sampled = datetime(2024, 6, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        sample = await index.upsert(db_session, agent_id, LONDON, timestamp=sampled)
        assert sample.timestamp == datetime(2024, 6, 1, 12, 0)

    @pytest.mark.asyncio
    async def test_every_sample_is_kept(self, index, db_session):
        agent_id = uuid4()
        for i in range(5):
            await index.upsert(db_session, agent_id, Coordinate(LONDON.lat + i * 0.001, LONDON.lng))
        await db_session.commit()

        count = (
            await db_session.execute(
                select(func.count()).select_from(AgentLocation).where(AgentLocation.agent_id == agent_id)
            )
        ).scalar_one()
        assert count == 5

    @pytest.mark.asyncio
    async def test_invalid_sample_rejected(self, index, db_session):
        with pytest.raises(ValidationError):
            await index.upsert(db_session, uuid4(), Coordinate(100.0, 0.0))
        with pytest.raises(ValidationError):
            await index.upsert(db_session, uuid4(), LONDON, SampleMetadata(heading=400))

    @pytest.mark.asyncio
    async def test_latest_is_none_without_samples(self, index, db_session):
        assert await index.latest(db_session, uuid4()) is None

    @pytest.mark.asyncio
    async def test_nearest_filters_by_radius_and_status(self, index, db_session):
        near, far, busy = uuid4(), uuid4(), uuid4()
        await index.upsert(db_session, near, Coordinate(LONDON.lat + 0.01, LONDON.lng))
        await index.upsert(db_session, far, PARIS)
        await index.upsert(db_session, busy, Coordinate(LONDON.lat + 0.005, LONDON.lng))
        await db_session.flush()
        (await db_session.get(Agent, busy)).status = AgentStatus.BUSY
        await db_session.commit()

        candidates = await index.nearest(db_session, LONDON, 50.0)
        assert [c.agent_id for c in candidates] == [near]
        assert candidates[0].distance_km == pytest.approx(1.11, abs=0.01)

        everyone = await index.nearest(db_session, LONDON, 500.0, status=None)
        assert [c.agent_id for c in everyone] == [busy, near, far]

    @pytest.mark.asyncio
    async def test_nearest_radius_is_inclusive(self, index, db_session):
        agent_id = uuid4()
        point = Coordinate(LONDON.lat + 0.1, LONDON.lng)
        await index.upsert(db_session, agent_id, point)
        await db_session.commit()

        exact = float(haversine_distances(LONDON.lat, LONDON.lng, [point.lat], [point.lng])[0])
        assert len(await index.nearest(db_session, LONDON, exact)) == 1
        assert len(await index.nearest(db_session, LONDON, exact * 0.999)) == 0

    @pytest.mark.asyncio
    async def test_nearest_rejects_bad_radius(self, index, db_session):
        for radius in (0, -5, float("inf")):
            with pytest.raises(ValidationError):
                await index.nearest(db_session, LONDON, radius)

    @pytest.mark.asyncio
    async def test_nearest_with_no_agents_is_empty(self, index, db_session):
        assert await index.nearest(db_session, LONDON, 10.0) == []

    @pytest.mark.asyncio
    async def test_list_latest_returns_one_row_per_agent(self, index, db_session):
        first, second = uuid4(), uuid4()
        for i in range(3):
            await index.upsert(db_session, first, Coordinate(LONDON.lat + i * 0.001, LONDON.lng))
        await index.upsert(db_session, second, PARIS)
        await db_session.commit()

        samples = await index.list_latest(db_session)
        assert sorted(s.agent_id for s in samples) == sorted([first, second])
        by_id = {s.agent_id: s for s in samples}
        assert by_id[first].lat == pytest.approx(LONDON.lat + 0.002)
