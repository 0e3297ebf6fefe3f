"""Models package initialization - imports all models for easy access."""

from app.models.agent import Agent, AgentLocation, AgentStatus
from app.models.order import Order, OrderStatus, OrderTracking

__all__ = [
    "Agent",
    "AgentLocation",
    "AgentStatus",
    "Order",
    "OrderStatus",
    "OrderTracking",
]
