"""Services package initialization."""

from app.services.geo_index import Coordinate, SampleMetadata, GeoIndex, haversine_distances
from app.services.order_state_machine import OrderSpec, LineItemSpec, OrderStateMachine
from app.services.assignment import AssignmentEngine, AssignmentResult
from app.services.tracking import TrackingCoordinator, OrderSnapshot

__all__ = [
    "Coordinate",
    "SampleMetadata",
    "GeoIndex",
    "haversine_distances",
    "OrderSpec",
    "LineItemSpec",
    "OrderStateMachine",
    "AssignmentEngine",
    "AssignmentResult",
    "TrackingCoordinator",
    "OrderSnapshot",
]
