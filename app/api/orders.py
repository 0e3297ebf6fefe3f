"""
Order endpoints.
Placing orders, reading their tracking history, status updates and agent assignment.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from app.api.deps import get_coordinator, get_current_actor
from app.core.security import Actor
from app.schemas.order import (
    AssignedAgent,
    AssignmentResponse,
    OrderCreate,
    OrderDetailResponse,
    OrderResponse,
    OrderStatusUpdate,
    TrackingEntryResponse,
)
from app.services.geo_index import Coordinate
from app.services.order_state_machine import LineItemSpec, OrderSpec
from app.services.tracking import TrackingCoordinator

router = APIRouter(prefix="/orders", tags=["Orders"])


@router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Place an order",
    description="Create a pending order for the calling customer.",
)
async def create_order(
    request: OrderCreate,
    actor: Actor = Depends(get_current_actor),
    coordinator: TrackingCoordinator = Depends(get_coordinator),
) -> OrderResponse:
    spec = OrderSpec(
        restaurant_id=request.restaurant_id,
        items=[LineItemSpec(name=i.name, quantity=i.quantity, price=i.price) for i in request.items],
        total_amount=request.total_amount,
        delivery_address=request.delivery_address,
        delivery=Coordinate(request.delivery_lat, request.delivery_lng),
        pickup=Coordinate(request.pickup_lat, request.pickup_lng),
    )
    order = await coordinator.create_order(spec, actor)
    return OrderResponse.model_validate(order)


@router.get(
    "/{order_id}",
    response_model=OrderDetailResponse,
    summary="Get order",
    description="Fetch an order together with its tracking history, oldest entry first.",
)
async def get_order(
    order_id: UUID,
    coordinator: TrackingCoordinator = Depends(get_coordinator),
) -> OrderDetailResponse:
    snapshot = await coordinator.get_order_snapshot(order_id)
    body = OrderResponse.model_validate(snapshot.order).model_dump()
    return OrderDetailResponse(
        **body,
        tracking=[TrackingEntryResponse.model_validate(entry) for entry in snapshot.tracking],
    )


@router.patch(
    "/{order_id}/status",
    response_model=OrderResponse,
    summary="Update order status",
    description="Move an order along its lifecycle. Only the assigned agent drives delivery; "
                "customers may cancel while the order is pending.",
)
async def update_order_status(
    order_id: UUID,
    request: OrderStatusUpdate,
    actor: Actor = Depends(get_current_actor),
    coordinator: TrackingCoordinator = Depends(get_coordinator),
) -> OrderResponse:
    location = None
    if request.location_lat is not None:
        location = Coordinate(request.location_lat, request.location_lng)

    order = await coordinator.update_order_status(
        order_id,
        request.status,
        actor,
        description=request.description,
        location=location,
    )
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/assign-agent",
    response_model=AssignmentResponse,
    summary="Assign nearest agent",
    description="Bind a pending order to the nearest available agent around its pickup point.",
)
async def assign_agent(
    order_id: UUID,
    max_distance_km: Optional[float] = Query(None, gt=0, description="Search radius in km"),
    actor: Actor = Depends(get_current_actor),
    coordinator: TrackingCoordinator = Depends(get_coordinator),
) -> AssignmentResponse:
    result = await coordinator.assign_agent(order_id, actor, max_distance_km=max_distance_km)
    return AssignmentResponse(
        order=OrderResponse.model_validate(result.order),
        agent=AssignedAgent(
            id=result.agent_id,
            name=result.agent_name,
            vehicle_number=result.vehicle_number,
            distance_km=result.distance_km,
        ),
    )
