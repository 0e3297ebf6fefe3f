"""
Assignment engine.

Binds a pending order to the nearest available agent. The agent claim is a
conditional update on the agents row (available -> busy), so two orders racing
for the same agent cannot both win even across service instances; the loser
moves on to the next-nearest candidate.
"""

from dataclasses import dataclass
from typing import Optional
from uuid import UUID
import logging

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import (
    AlreadyAssignedError,
    AssignmentFailedError,
    InvalidTransitionError,
    NoAvailableAgentError,
    TrackingError,
)
from app.core.security import SYSTEM_ACTOR
from app.database import utcnow
from app.models import Agent, AgentStatus, Order, OrderStatus, OrderTracking
from app.services.geo_index import Coordinate, GeoIndex, NearbyAgent
from app.services.order_state_machine import OrderStateMachine


logger = logging.getLogger(__name__)

DEFAULT_MAX_DISTANCE_KM = 50.0


@dataclass
class AssignmentResult:
    """Outcome of a successful assignment."""
    order: Order
    agent_id: UUID
    agent_name: Optional[str]
    vehicle_number: Optional[str]
    distance_km: float
    entry: OrderTracking
    candidates_considered: int


def describe_assignment(candidate: NearbyAgent) -> str:
    name = candidate.name or f"agent {candidate.agent_id}"
    if candidate.vehicle_number:
        return f"Assigned to {name} ({candidate.vehicle_number})"
    return f"Assigned to {name}"


async def _swap_status(
    session: AsyncSession,
    agent_id: UUID,
    expected: AgentStatus,
    new: AgentStatus,
) -> bool:
    result = await session.execute(
        update(Agent)
        .where(Agent.id == agent_id)
        .where(Agent.status == expected)
        .values(status=new, status_changed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def claim_agent(session: AsyncSession, agent_id: UUID) -> bool:
    """Flip an agent from available to busy. False if it was not available."""
    return await _swap_status(session, agent_id, AgentStatus.AVAILABLE, AgentStatus.BUSY)


async def release_agent(session: AsyncSession, agent_id: UUID) -> bool:
    """Return a busy agent to the matching pool. False if it was not busy."""
    return await _swap_status(session, agent_id, AgentStatus.BUSY, AgentStatus.AVAILABLE)


class AssignmentEngine:
    """
    Nearest-available-agent matching for pending orders.

    ``assign`` runs inside the caller's transaction; any failure after an
    agent has been claimed must abort that transaction.
    """

    def __init__(
        self,
        geo_index: GeoIndex,
        state_machine: OrderStateMachine,
        max_distance_km: float = DEFAULT_MAX_DISTANCE_KM,
    ) -> None:
        self.geo_index = geo_index
        self.state_machine = state_machine
        self.max_distance_km = max_distance_km

    async def assign(
        self,
        session: AsyncSession,
        order_id: UUID,
        max_distance_km: Optional[float] = None,
    ) -> AssignmentResult:
        """
        Assign the nearest available agent to an order.

        Args:
            session: Database session with an open transaction
            order_id: Order to assign
            max_distance_km: Search radius around the pickup point

        Returns:
            AssignmentResult for the claimed agent

        Raises:
            NotFoundError: unknown order
            AlreadyAssignedError: the order already has an agent
            InvalidTransitionError: the order is no longer pending
            NoAvailableAgentError: no available agent within range could be claimed
            AssignmentFailedError: a later step failed; the caller must roll back
        """
        radius = max_distance_km if max_distance_km is not None else self.max_distance_km

        order = await self.state_machine.get_order(session, order_id, for_update=True)
        if order.agent_id is not None:
            raise AlreadyAssignedError("Order already has an agent assigned")
        if order.status != OrderStatus.PENDING:
            raise InvalidTransitionError(
                f"Cannot assign an agent to an order in status {order.status.value}"
            )

        pickup = Coordinate(order.pickup_lat, order.pickup_lng)
        candidates = await self.geo_index.nearest(session, pickup, radius, AgentStatus.AVAILABLE)
        if not candidates:
            logger.info(f"No available agents within {radius} km of order {order_id}")
            raise NoAvailableAgentError("No available agents found nearby")

        chosen = None
        considered = 0
        for candidate in candidates:
            considered += 1
            if await claim_agent(session, candidate.agent_id):
                chosen = candidate
                break
            logger.info(
                f"Agent {candidate.agent_id} was claimed by another assignment, "
                f"trying next candidate for order {order_id}"
            )

        if chosen is None:
            raise NoAvailableAgentError("No available agents found nearby")

        try:
            order.agent_id = chosen.agent_id
            result = await self.state_machine.apply(
                session,
                order,
                OrderStatus.ACCEPTED,
                SYSTEM_ACTOR,
                description=describe_assignment(chosen),
            )
        except TrackingError as exc:
            raise AssignmentFailedError(f"Failed to assign agent: {exc.message}") from exc
        except Exception as exc:
            logger.exception(f"Assignment of order {order_id} to agent {chosen.agent_id} failed")
            raise AssignmentFailedError("Failed to assign agent") from exc

        logger.info(
            f"Order {order_id} assigned to agent {chosen.agent_id} "
            f"({chosen.distance_km:.3f} km, {considered} candidate(s) tried)"
        )
        return AssignmentResult(
            order=result.order,
            agent_id=chosen.agent_id,
            agent_name=chosen.name,
            vehicle_number=chosen.vehicle_number,
            distance_km=chosen.distance_km,
            entry=result.entry,
            candidates_considered=considered,
        )
