"""
Agent endpoints.
Registering delivery agents and switching their availability.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, status

from app.api.deps import get_coordinator, get_current_actor
from app.core.security import Actor
from app.schemas.agent import AgentCreate, AgentResponse, AvailabilityUpdate
from app.services.tracking import TrackingCoordinator

router = APIRouter(prefix="/agents", tags=["Agents"])


@router.post(
    "",
    response_model=AgentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register agent",
    description="Create an agent profile (admin only). An agent that already "
                "reported a location keeps its status and gets the profile attached.",
)
async def register_agent(
    request: AgentCreate,
    actor: Actor = Depends(get_current_actor),
    coordinator: TrackingCoordinator = Depends(get_coordinator),
) -> AgentResponse:
    agent = await coordinator.register_agent(
        actor,
        name=request.name,
        vehicle_number=request.vehicle_number,
        vehicle_type=request.vehicle_type,
        agent_id=request.id,
        status=request.status,
    )
    return AgentResponse.model_validate(agent)


@router.get(
    "/{agent_id}",
    response_model=AgentResponse,
    summary="Get agent",
)
async def get_agent(
    agent_id: UUID,
    coordinator: TrackingCoordinator = Depends(get_coordinator),
) -> AgentResponse:
    agent = await coordinator.get_agent(agent_id)
    return AgentResponse.model_validate(agent)


@router.patch(
    "/{agent_id}/availability",
    response_model=AgentResponse,
    summary="Set availability",
    description="Go on shift (available) or off shift (offline). Busy is managed by assignment.",
)
async def set_availability(
    agent_id: UUID,
    request: AvailabilityUpdate,
    actor: Actor = Depends(get_current_actor),
    coordinator: TrackingCoordinator = Depends(get_coordinator),
) -> AgentResponse:
    agent = await coordinator.set_agent_availability(agent_id, request.status, actor)
    return AgentResponse.model_validate(agent)
