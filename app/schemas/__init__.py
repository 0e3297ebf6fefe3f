"""Schemas package initialization."""

from app.schemas.order import (
    LineItem,
    OrderCreate,
    OrderStatusUpdate,
    TrackingEntryResponse,
    OrderResponse,
    OrderDetailResponse,
    AssignedAgent,
    AssignmentResponse,
)
from app.schemas.location import (
    LocationUpdateRequest,
    LocationResponse,
    LocationHistoryResponse,
    ActiveAgentLocationsResponse,
    NearbyAgentResponse,
    NearbyAgentsResponse,
)
from app.schemas.agent import AgentCreate, AvailabilityUpdate, AgentResponse

__all__ = [
    "LineItem",
    "OrderCreate",
    "OrderStatusUpdate",
    "TrackingEntryResponse",
    "OrderResponse",
    "OrderDetailResponse",
    "AssignedAgent",
    "AssignmentResponse",
    "LocationUpdateRequest",
    "LocationResponse",
    "LocationHistoryResponse",
    "ActiveAgentLocationsResponse",
    "NearbyAgentResponse",
    "NearbyAgentsResponse",
    "AgentCreate",
    "AvailabilityUpdate",
    "AgentResponse",
]
