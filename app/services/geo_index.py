"""
Geo index over agent positions.

Keeps the latest authoritative position per agent on the agents table, appends
every sample to agent_locations, and answers nearest-agent queries with
haversine distances on a spherical earth.
"""

from dataclasses import dataclass
from datetime import datetime
from math import asin, cos, degrees, isfinite, radians, sin
from typing import List, Optional, Sequence
from uuid import UUID
import logging

import numpy as np
from sqlalchemy import select, update, or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ValidationError
from app.database import utcnow, as_utc_naive
from app.models import Agent, AgentLocation, AgentStatus


logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

# Stores whose INSERT supports ON CONFLICT DO NOTHING.
DIALECT_INSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}

# Padding on the pre-filter window, in degrees
BOX_PADDING_DEG = 1e-6


@dataclass(frozen=True)
class Coordinate:
    """A WGS84 latitude/longitude pair in degrees."""
    lat: float
    lng: float

    def validate(self, prefix: str = "") -> "Coordinate":
        """
        Check the coordinate lies on the globe.

        Raises:
            ValidationError: naming the offending field(s)
        """
        errors = {}
        if not _is_number(self.lat) or not -90.0 <= self.lat <= 90.0:
            errors[f"{prefix}lat"] = "must be a number between -90 and 90"
        if not _is_number(self.lng) or not -180.0 <= self.lng <= 180.0:
            errors[f"{prefix}lng"] = "must be a number between -180 and 180"
        if errors:
            raise ValidationError("Invalid coordinate", fields=errors)
        return self


@dataclass(frozen=True)
class SampleMetadata:
    """Optional measurements reported with a location sample."""
    accuracy: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None

    def validate(self) -> "SampleMetadata":
        errors = {}
        if self.accuracy is not None and (not _is_number(self.accuracy) or self.accuracy <= 0):
            errors["accuracy"] = "must be positive"
        if self.speed is not None and (not _is_number(self.speed) or self.speed < 0):
            errors["speed"] = "must be zero or positive"
        if self.heading is not None and (not _is_number(self.heading) or not 0 <= self.heading <= 360):
            errors["heading"] = "must be between 0 and 360"
        if errors:
            raise ValidationError("Invalid location sample", fields=errors)
        return self


@dataclass(frozen=True)
class LocationSample:
    """Latest known position of one agent."""
    agent_id: UUID
    lat: float
    lng: float
    accuracy: Optional[float]
    speed: Optional[float]
    heading: Optional[float]
    timestamp: datetime
    status: AgentStatus


@dataclass(frozen=True)
class NearbyAgent:
    """A matching candidate ranked by distance."""
    agent_id: UUID
    name: Optional[str]
    vehicle_number: Optional[str]
    lat: float
    lng: float
    distance_km: float
    sampled_at: datetime


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and isfinite(value)


def haversine_distances(
    lat: float,
    lng: float,
    lats: Sequence[float],
    lngs: Sequence[float],
) -> np.ndarray:
    """
    Vectorised haversine from one point to many, in kilometers.
    """
    lat_rad = np.radians(lat)
    lats_rad = np.radians(np.asarray(lats, dtype=float))
    delta_lat = lats_rad - lat_rad
    delta_lng = np.radians(np.asarray(lngs, dtype=float) - lng)

    a = np.sin(delta_lat / 2) ** 2 + np.cos(lat_rad) * np.cos(lats_rad) * np.sin(delta_lng / 2) ** 2
    c = 2 * np.arctan2(np.sqrt(a), np.sqrt(np.clip(1 - a, 0.0, None)))

    return EARTH_RADIUS_KM * c


def bounding_box(target: Coordinate, radius_km: float):
    """
    Lat/lng window enclosing a circle of ``radius_km`` around ``target``.

    Returns (min_lat, max_lat, min_lng, max_lng); the longitude bounds are None
    when the circle reaches a pole or wraps the antimeridian.
    """
    angular = radius_km / EARTH_RADIUS_KM
    lat_delta = degrees(angular) + BOX_PADDING_DEG
    min_lat = target.lat - lat_delta
    max_lat = target.lat + lat_delta
    if min_lat <= -90.0 or max_lat >= 90.0:
        return max(min_lat, -90.0), min(max_lat, 90.0), None, None

    lng_delta = degrees(asin(min(1.0, sin(angular) / cos(radians(target.lat))))) + BOX_PADDING_DEG
    min_lng = target.lng - lng_delta
    max_lng = target.lng + lng_delta
    if min_lng < -180.0 or max_lng > 180.0:
        return min_lat, max_lat, None, None
    return min_lat, max_lat, min_lng, max_lng


def rank_candidates(candidates: List[NearbyAgent]) -> List[NearbyAgent]:
    """Order by distance, then freshest sample, then agent id."""
    ranked = sorted(candidates, key=lambda c: str(c.agent_id))
    ranked.sort(key=lambda c: c.sampled_at, reverse=True)
    ranked.sort(key=lambda c: c.distance_km)
    return ranked


class GeoIndex:
    """
    Latest-position index used for agent matching.

    Writes for different agents touch disjoint rows and need no coordination.
    """

    async def upsert(
        self,
        session: AsyncSession,
        agent_id: UUID,
        coordinate: Coordinate,
        metadata: Optional[SampleMetadata] = None,
        timestamp: Optional[datetime] = None,
    ) -> AgentLocation:
        """
        Record a location sample for an agent.

        The sample always goes to history. It replaces the latest position
        unless a newer sample is already recorded. An unknown agent id is
        registered as available.

        Raises:
            ValidationError: if the coordinate or metadata is out of range
        """
        coordinate.validate()
        metadata = (metadata or SampleMetadata()).validate()
        sampled_at = as_utc_naive(timestamp) if timestamp else utcnow()

        if await session.get(Agent, agent_id) is None:
            await self._register_agent(session, agent_id)

        sample = AgentLocation(
            agent_id=agent_id,
            lat=coordinate.lat,
            lng=coordinate.lng,
            accuracy=metadata.accuracy,
            speed=metadata.speed,
            heading=metadata.heading,
            timestamp=sampled_at,
        )
        session.add(sample)

        result = await session.execute(
            update(Agent)
            .where(Agent.id == agent_id)
            .where(
                or_(
                    Agent.location_updated_at.is_(None),
                    Agent.location_updated_at <= sampled_at,
                )
            )
            .values(
                current_lat=coordinate.lat,
                current_lng=coordinate.lng,
                current_accuracy=metadata.accuracy,
                current_speed=metadata.speed,
                current_heading=metadata.heading,
                location_updated_at=sampled_at,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.debug(f"Out-of-order sample for agent {agent_id} kept in history only")

        await session.flush()
        return sample

    async def _register_agent(self, session: AsyncSession, agent_id: UUID) -> None:
        """Insert an available agent row unless a concurrent report already did."""
        insert = DIALECT_INSERTS[session.get_bind().dialect.name]
        result = await session.execute(
            insert(Agent)
            .values(id=agent_id, status=AgentStatus.AVAILABLE, status_changed_at=utcnow())
            .on_conflict_do_nothing(index_elements=[Agent.id])
        )
        if result.rowcount:
            logger.info(f"Registering agent {agent_id} on first location report")

    async def nearest(
        self,
        session: AsyncSession,
        target: Coordinate,
        max_distance_km: float,
        status: Optional[AgentStatus] = AgentStatus.AVAILABLE,
    ) -> List[NearbyAgent]:
        """
        Agents within ``max_distance_km`` of ``target``, nearest first.

        Args:
            session: Database session
            target: Point to measure from
            max_distance_km: Inclusive search radius
            status: Availability filter; None matches any status

        Returns:
            Ranked candidates, empty if none qualify

        Raises:
            ValidationError: for an invalid target or radius
        """
        target.validate()
        if not _is_number(max_distance_km) or max_distance_km <= 0:
            raise ValidationError(
                "Invalid search radius",
                fields={"max_distance_km": "must be a positive number"},
            )

        min_lat, max_lat, min_lng, max_lng = bounding_box(target, max_distance_km)
        stmt = (
            select(Agent)
            .where(Agent.current_lat.is_not(None))
            .where(Agent.current_lng.is_not(None))
            .where(Agent.current_lat.between(min_lat, max_lat))
            .execution_options(populate_existing=True)
        )
        if min_lng is not None:
            stmt = stmt.where(Agent.current_lng.between(min_lng, max_lng))
        if status is not None:
            stmt = stmt.where(Agent.status == status)

        agents = list((await session.execute(stmt)).scalars().all())
        if not agents:
            return []

        distances = haversine_distances(
            target.lat,
            target.lng,
            [a.current_lat for a in agents],
            [a.current_lng for a in agents],
        )

        candidates = [
            NearbyAgent(
                agent_id=agent.id,
                name=agent.name,
                vehicle_number=agent.vehicle_number,
                lat=agent.current_lat,
                lng=agent.current_lng,
                distance_km=float(distance),
                sampled_at=agent.location_updated_at,
            )
            for agent, distance in zip(agents, distances)
            if distance <= max_distance_km
        ]
        return rank_candidates(candidates)

    async def latest(self, session: AsyncSession, agent_id: UUID) -> Optional[LocationSample]:
        """Latest authoritative position, or None if the agent never reported."""
        agent = (
            await session.execute(
                select(Agent)
                .where(Agent.id == agent_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if agent is None or not agent.has_position:
            return None
        return _to_sample(agent)

    async def history(
        self,
        session: AsyncSession,
        agent_id: UUID,
        since: datetime,
    ) -> List[AgentLocation]:
        """Samples reported at or after ``since``, oldest first."""
        result = await session.execute(
            select(AgentLocation)
            .where(AgentLocation.agent_id == agent_id)
            .where(AgentLocation.timestamp >= as_utc_naive(since))
            .order_by(AgentLocation.timestamp.asc(), AgentLocation.id)
        )
        return list(result.scalars().all())

    async def list_latest(
        self,
        session: AsyncSession,
        status: Optional[AgentStatus] = AgentStatus.AVAILABLE,
    ) -> List[LocationSample]:
        """One latest sample per agent with a known position, freshest first."""
        stmt = (
            select(Agent)
            .where(Agent.current_lat.is_not(None))
            .where(Agent.current_lng.is_not(None))
            .order_by(Agent.location_updated_at.desc(), Agent.id)
            .execution_options(populate_existing=True)
        )
        if status is not None:
            stmt = stmt.where(Agent.status == status)
        agents = (await session.execute(stmt)).scalars().all()
        return [_to_sample(agent) for agent in agents]


def _to_sample(agent: Agent) -> LocationSample:
    return LocationSample(
        agent_id=agent.id,
        lat=agent.current_lat,
        lng=agent.current_lng,
        accuracy=agent.current_accuracy,
        speed=agent.current_speed,
        heading=agent.current_heading,
        timestamp=agent.location_updated_at,
        status=agent.status,
    )
