"""
Pydantic schemas for agent location endpoints.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class LocationUpdateRequest(BaseModel):
    """Request for POST /api/location/update."""
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = Field(None, gt=0, description="Accuracy radius in meters")
    speed: Optional[float] = Field(None, ge=0, description="Speed in m/s")
    heading: Optional[float] = Field(None, ge=0, le=360, description="Heading in degrees")
    timestamp: Optional[datetime] = Field(None, description="Sample time (defaults to now)")

    model_config = {
        "json_schema_extra": {
            "example": {
                "lat": 51.5155,
                "lng": -0.1410,
                "accuracy": 8.5,
                "speed": 4.2,
                "heading": 270,
            }
        }
    }


class LocationResponse(BaseModel):
    """A single location sample."""
    agent_id: UUID
    lat: float
    lng: float
    accuracy: Optional[float] = None
    speed: Optional[float] = None
    heading: Optional[float] = None
    timestamp: datetime

    model_config = {"from_attributes": True}


class LocationHistoryResponse(BaseModel):
    """Response for GET /api/location/agent/{id}/history."""
    agent_id: UUID
    hours: int
    locations: List[LocationResponse]


class ActiveAgentLocationsResponse(BaseModel):
    """Response for GET /api/location/active-agents."""
    locations: List[LocationResponse]
    count: int


class NearbyAgentResponse(BaseModel):
    """One ranked candidate from the geo index."""
    agent_id: UUID
    name: Optional[str] = None
    vehicle_number: Optional[str] = None
    lat: float
    lng: float
    distance_km: float
    sampled_at: datetime

    model_config = {"from_attributes": True}


class NearbyAgentsResponse(BaseModel):
    """Response for GET /api/location/nearby."""
    agents: List[NearbyAgentResponse]
    radius_km: float
