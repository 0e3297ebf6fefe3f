"""
Pydantic schemas for order endpoints.
Request/response models for /orders.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from app.models.order import OrderStatus


class LineItem(BaseModel):
    """One ordered item."""
    name: str = Field(..., min_length=1, max_length=255)
    quantity: int = Field(..., ge=1)
    price: float = Field(..., gt=0)


class OrderCreate(BaseModel):
    """Request for POST /api/orders."""
    restaurant_id: UUID
    items: List[LineItem] = Field(..., min_length=1)
    total_amount: float = Field(..., gt=0)
    delivery_address: str = Field(..., min_length=1)
    delivery_lat: float = Field(..., ge=-90, le=90)
    delivery_lng: float = Field(..., ge=-180, le=180)
    pickup_lat: float = Field(..., ge=-90, le=90)
    pickup_lng: float = Field(..., ge=-180, le=180)

    model_config = {
        "json_schema_extra": {
            "example": {
                "restaurant_id": "550e8400-e29b-41d4-a716-446655440001",
                "items": [{"name": "Pizza", "quantity": 2, "price": 10.0}],
                "total_amount": 20.0,
                "delivery_address": "221B Baker Street, London",
                "delivery_lat": 51.5237,
                "delivery_lng": -0.1585,
                "pickup_lat": 51.5155,
                "pickup_lng": -0.1410,
            }
        }
    }


class OrderStatusUpdate(BaseModel):
    """Request for PATCH /api/orders/{id}/status."""
    status: OrderStatus
    description: Optional[str] = Field(None, max_length=1000)
    location_lat: Optional[float] = Field(None, ge=-90, le=90)
    location_lng: Optional[float] = Field(None, ge=-180, le=180)

    @field_validator("status", mode="before")
    @classmethod
    def _parse_status(cls, value):
        if isinstance(value, str):
            try:
                return OrderStatus.parse(value)
            except ValueError:
                return value
        return value

    @model_validator(mode="after")
    def _location_pair(self):
        if (self.location_lat is None) != (self.location_lng is None):
            raise ValueError("location_lat and location_lng must be given together")
        return self

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "picked_up",
                "description": "Collected from the counter",
                "location_lat": 51.5155,
                "location_lng": -0.1410,
            }
        }
    }


class TrackingEntryResponse(BaseModel):
    """One order tracking entry."""
    id: UUID
    order_id: UUID
    sequence: int
    status: OrderStatus
    description: Optional[str] = None
    location_lat: Optional[float] = None
    location_lng: Optional[float] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class OrderResponse(BaseModel):
    """Order resource."""
    id: UUID
    order_number: str
    customer_id: UUID
    restaurant_id: UUID
    agent_id: Optional[UUID] = None
    items: List[LineItem]
    total_amount: float
    delivery_address: str
    delivery_lat: float
    delivery_lng: float
    pickup_lat: float
    pickup_lng: float
    status: OrderStatus
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class OrderDetailResponse(OrderResponse):
    """Response for GET /api/orders/{id}: the order with its tracking history."""
    tracking: List[TrackingEntryResponse] = Field(default_factory=list)


class AssignedAgent(BaseModel):
    """Agent chosen by the assignment engine."""
    id: UUID
    name: Optional[str] = None
    vehicle_number: Optional[str] = None
    distance_km: float


class AssignmentResponse(BaseModel):
    """Response for POST /api/orders/{id}/assign-agent."""
    message: str = "Agent assigned successfully"
    order: OrderResponse
    agent: AssignedAgent
