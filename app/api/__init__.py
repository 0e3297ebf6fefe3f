"""API routers package initialization."""

from app.api.orders import router as orders_router
from app.api.location import router as location_router
from app.api.agents import router as agents_router
from app.api.realtime import router as realtime_router

__all__ = [
    "orders_router",
    "location_router",
    "agents_router",
    "realtime_router",
]
