"""
Agent location endpoints.
Position reports from agents plus latest/history/nearby queries.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_coordinator, get_current_actor
from app.core.security import Actor
from app.schemas.location import (
    ActiveAgentLocationsResponse,
    LocationHistoryResponse,
    LocationResponse,
    LocationUpdateRequest,
    NearbyAgentResponse,
    NearbyAgentsResponse,
)
from app.services.geo_index import Coordinate, SampleMetadata
from app.services.tracking import TrackingCoordinator

router = APIRouter(prefix="/location", tags=["Location"])


@router.post(
    "/update",
    response_model=LocationResponse,
    summary="Report location",
    description="Record a position sample for the calling agent.",
)
async def update_location(
    request: LocationUpdateRequest,
    actor: Actor = Depends(get_current_actor),
    coordinator: TrackingCoordinator = Depends(get_coordinator),
) -> LocationResponse:
    sample = await coordinator.update_agent_location(
        actor,
        Coordinate(request.lat, request.lng),
        SampleMetadata(accuracy=request.accuracy, speed=request.speed, heading=request.heading),
        timestamp=request.timestamp,
    )
    return LocationResponse.model_validate(sample)


@router.get(
    "/agent/{agent_id}",
    response_model=LocationResponse,
    summary="Latest agent location",
)
async def get_agent_location(
    agent_id: UUID,
    coordinator: TrackingCoordinator = Depends(get_coordinator),
) -> LocationResponse:
    sample = await coordinator.get_agent_location(agent_id)
    return LocationResponse.model_validate(sample)


@router.get(
    "/agent/{agent_id}/history",
    response_model=LocationHistoryResponse,
    summary="Agent location history",
    description="Samples reported in the last N hours, oldest first.",
)
async def get_agent_location_history(
    agent_id: UUID,
    hours: Optional[int] = Query(None, description="Hours to look back (default 24)"),
    coordinator: TrackingCoordinator = Depends(get_coordinator),
) -> LocationHistoryResponse:
    window = coordinator.settings.location_history_default_hours if hours is None else hours
    samples = await coordinator.get_agent_location_history(agent_id, window)
    return LocationHistoryResponse(
        agent_id=agent_id,
        hours=window,
        locations=[LocationResponse.model_validate(s) for s in samples],
    )


@router.get(
    "/active-agents",
    response_model=ActiveAgentLocationsResponse,
    summary="Available agent locations",
    description="Latest position of every available agent.",
)
async def get_active_agents(
    coordinator: TrackingCoordinator = Depends(get_coordinator),
) -> ActiveAgentLocationsResponse:
    samples = await coordinator.list_available_agent_locations()
    return ActiveAgentLocationsResponse(
        locations=[LocationResponse.model_validate(s) for s in samples],
        count=len(samples),
    )


@router.get(
    "/nearby",
    response_model=NearbyAgentsResponse,
    summary="Nearby available agents",
    description="Available agents within the radius, nearest first.",
)
async def get_nearby_agents(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    radius_km: Optional[float] = Query(None, gt=0, description="Search radius in km"),
    coordinator: TrackingCoordinator = Depends(get_coordinator),
) -> NearbyAgentsResponse:
    radius = coordinator.settings.assignment_max_distance_km if radius_km is None else radius_km
    agents = await coordinator.find_nearby_agents(Coordinate(lat, lng), radius)
    return NearbyAgentsResponse(
        agents=[NearbyAgentResponse.model_validate(a) for a in agents],
        radius_km=radius,
    )
