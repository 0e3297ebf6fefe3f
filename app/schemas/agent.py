"""
Pydantic schemas for agent endpoints.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from app.models.agent import AgentStatus


class AgentCreate(BaseModel):
    """Request for POST /api/agents."""
    id: Optional[UUID] = Field(None, description="Identity id of the agent (generated if omitted)")
    name: str = Field(..., min_length=1, max_length=255)
    vehicle_number: Optional[str] = Field(None, max_length=50)
    vehicle_type: Optional[str] = Field(None, max_length=50)
    status: AgentStatus = AgentStatus.OFFLINE


class AvailabilityUpdate(BaseModel):
    """Request for PATCH /api/agents/{id}/availability."""
    status: AgentStatus


class AgentResponse(BaseModel):
    """Agent resource."""
    id: UUID
    name: Optional[str] = None
    vehicle_number: Optional[str] = None
    vehicle_type: Optional[str] = None
    status: AgentStatus
    status_changed_at: datetime
    current_lat: Optional[float] = None
    current_lng: Optional[float] = None
    location_updated_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}
