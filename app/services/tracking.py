"""
Tracking coordinator.

The request surface of the order-tracking core. Composes the order state
machine, geo index, assignment engine and event bus:

- every mutating call runs in one transaction in its own session,
- calls touching an order are serialized per order id,
- realtime events are published only after the transaction commits,
- every call is bounded by a deadline.
"""

from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
from uuid import UUID
import asyncio
import logging

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.config import Settings, get_settings
from app.core.errors import (
    AssignmentFailedError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    OperationTimeoutError,
    StorageError,
    TrackingError,
    ValidationError,
)
from app.core.events import (
    AGENT_LOCATION_CHANGED,
    AGENT_STATUS_CHANGED,
    ORDER_ASSIGNED,
    ORDER_STATUS_CHANGED,
    ORDER_TRACKING_UPDATED,
    EventBus,
    agent_topic,
    make_event,
    order_topic,
)
from app.core.locks import KeyedLock
from app.core.security import Actor, ActorRole
from app.database import READ_ONLY_OPTIONS, utcnow
from app.models import Agent, AgentLocation, AgentStatus, Order, OrderStatus, OrderTracking
from app.schemas.agent import AgentResponse
from app.schemas.location import LocationResponse
from app.schemas.order import (
    AssignedAgent,
    AssignmentResponse,
    OrderResponse,
    TrackingEntryResponse,
)
from app.services.assignment import AssignmentEngine, AssignmentResult, release_agent
from app.services.geo_index import (
    Coordinate,
    GeoIndex,
    LocationSample,
    NearbyAgent,
    SampleMetadata,
)
from app.services.order_state_machine import OrderSpec, OrderStateMachine, TransitionResult


logger = logging.getLogger(__name__)

PendingEvent = Tuple[str, Dict[str, Any]]

MANUAL_AGENT_STATUSES = (AgentStatus.AVAILABLE, AgentStatus.OFFLINE)


class Deadline:
    """Deadline of one coordinator call, checked at transaction boundaries."""

    def __init__(self, name: str, seconds: float) -> None:
        self.name = name
        self.seconds = seconds
        self.expires_at = asyncio.get_running_loop().time() + seconds
        self.open_sessions = 0

    @property
    def expired(self) -> bool:
        return asyncio.get_running_loop().time() >= self.expires_at

    def expire(self) -> None:
        self.expires_at = 0.0

    def check(self) -> None:
        if self.expired:
            raise self.error()

    def error(self) -> OperationTimeoutError:
        return OperationTimeoutError(f"{self.name} did not complete within {self.seconds} seconds")


_current_deadline: ContextVar[Optional[Deadline]] = ContextVar("tracking_deadline", default=None)


def _log_abandoned(task: "asyncio.Task[Any]") -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.warning(f"Operation abandoned by its caller failed: {task.exception()!r}")


@dataclass
class OrderSnapshot:
    order: Order
    tracking: List[OrderTracking]


def order_payload(order: Order) -> Dict[str, Any]:
    return OrderResponse.model_validate(order).model_dump(mode="json")


def tracking_payload(entry: OrderTracking) -> Dict[str, Any]:
    return TrackingEntryResponse.model_validate(entry).model_dump(mode="json")


def agent_payload(agent: Agent) -> Dict[str, Any]:
    return AgentResponse.model_validate(agent).model_dump(mode="json")


def assignment_payload(result: AssignmentResult) -> Dict[str, Any]:
    return AssignmentResponse(
        order=OrderResponse.model_validate(result.order),
        agent=AssignedAgent(
            id=result.agent_id,
            name=result.agent_name,
            vehicle_number=result.vehicle_number,
            distance_km=result.distance_km,
        ),
    ).model_dump(mode="json")


class TrackingCoordinator:
    """
    Facade over the tracking core.

    Args:
        session_factory: Creates one session per operation
        event_bus: Receives committed state changes
        settings: Timeouts, retry and matching limits
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        event_bus: EventBus,
        settings: Optional[Settings] = None,
        geo_index: Optional[GeoIndex] = None,
        state_machine: Optional[OrderStateMachine] = None,
        assignment_engine: Optional[AssignmentEngine] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.event_bus = event_bus
        self.geo_index = geo_index or GeoIndex()
        self.state_machine = state_machine or OrderStateMachine()
        self.assignment_engine = assignment_engine or AssignmentEngine(
            self.geo_index,
            self.state_machine,
            max_distance_km=self.settings.assignment_max_distance_km,
        )
        self._session_factory = session_factory
        self._order_locks = KeyedLock()

    # ==================== Infrastructure ====================

    @asynccontextmanager
    async def _transaction(self, read_only: bool = False) -> AsyncIterator[AsyncSession]:
        """
        One session, one transaction: commit on success, roll back on any error.

        Under a deadline the transaction refuses to start once the deadline has
        passed, and rolls back instead of committing when it passes mid-way.
        """
        deadline = _current_deadline.get()
        if deadline is not None:
            deadline.check()
            deadline.open_sessions += 1
        try:
            async with self._session_factory() as session:
                try:
                    async with session.begin():
                        if read_only:
                            await session.connection(execution_options=READ_ONLY_OPTIONS)
                        yield session
                        if deadline is not None:
                            deadline.check()
                except (TrackingError, StaleDataError):
                    raise
                except SQLAlchemyError as exc:
                    logger.exception("Storage operation failed")
                    raise StorageError("Storage operation failed") from exc
        finally:
            if deadline is not None:
                deadline.open_sessions -= 1

    async def _run(self, name: str, operation, timeout: Optional[float]):
        """
        Await ``operation`` within the deadline.

        The operation runs as its own task. When the deadline passes it is
        cancelled only if it has no session open; a task inside a transaction
        is left to reach its commit check and roll back, so no store lock
        outlives the call. A commit already under way when the deadline
        passes is reported as a success.
        """
        limit = self.settings.operation_timeout_seconds if timeout is None else timeout
        deadline = Deadline(name, limit)
        token = _current_deadline.set(deadline)
        try:
            task = asyncio.ensure_future(operation)
        finally:
            _current_deadline.reset(token)

        try:
            done, _ = await asyncio.wait({task}, timeout=limit)
            if not done:
                logger.warning(f"{name} exceeded its {limit}s deadline")
                if not deadline.open_sessions:
                    task.cancel()
                await asyncio.wait({task})
        except asyncio.CancelledError:
            deadline.expire()
            if not deadline.open_sessions:
                task.cancel()
            task.add_done_callback(_log_abandoned)
            raise

        if task.cancelled():
            raise deadline.error()
        return task.result()

    def _publish(self, events: List[PendingEvent]) -> None:
        for topic, event in events:
            try:
                self.event_bus.publish(topic, event)
            except Exception:
                logger.exception(f"Failed to publish {event.get('type')} on {topic}")

    # ==================== Orders ====================

    async def create_order(
        self,
        spec: OrderSpec,
        actor: Actor,
        timeout: Optional[float] = None,
    ) -> Order:
        """
        Place an order as the acting customer.

        Raises:
            ForbiddenError: actor is not a customer
            ValidationError: invalid items, total or coordinates
        """
        if actor.role != ActorRole.CUSTOMER:
            raise ForbiddenError("Customer access required")

        async def operation() -> Order:
            async with self._transaction() as session:
                return await self.state_machine.create(session, spec, actor.id)

        return await self._run("create_order", operation(), timeout)

    async def update_order_status(
        self,
        order_id: UUID,
        status,
        actor: Actor,
        description: Optional[str] = None,
        location: Optional[Coordinate] = None,
        timeout: Optional[float] = None,
    ) -> Order:
        """
        Apply a status transition and notify subscribers.

        Re-requesting the current status returns the order unchanged.
        """
        try:
            requested = OrderStatus.parse(status)
        except ValueError:
            raise ValidationError("Invalid status", fields={"status": f"unknown status {status!r}"})

        async def operation() -> Order:
            async with self._order_locks.hold(order_id):
                result, released = await self._transition_with_retry(
                    order_id, requested, actor, description, location
                )
            if result.changed:
                self._publish(self._transition_events(result, released))
            return result.order

        return await self._run("update_order_status", operation(), timeout)

    async def _transition_with_retry(
        self,
        order_id: UUID,
        requested: OrderStatus,
        actor: Actor,
        description: Optional[str],
        location: Optional[Coordinate],
    ) -> Tuple[TransitionResult, Optional[Agent]]:
        attempts = max(1, self.settings.transition_max_retries)
        for attempt in range(1, attempts + 1):
            try:
                async with self._transaction() as session:
                    result = await self.state_machine.transition(
                        session, order_id, requested, actor, description, location
                    )
                    released = None
                    if result.changed and requested.is_terminal and result.order.agent_id:
                        released = await self._release_agent(session, result.order.agent_id)
                return result, released
            except StaleDataError:
                logger.warning(
                    f"Order {order_id} changed concurrently (attempt {attempt}/{attempts}), retrying"
                )
        raise StorageError("Order kept changing concurrently, giving up")

    async def _release_agent(self, session: AsyncSession, agent_id: UUID) -> Optional[Agent]:
        if not await release_agent(session, agent_id):
            return None
        logger.info(f"Agent {agent_id} released back to the available pool")
        return await session.get(Agent, agent_id, populate_existing=True)

    def _transition_events(
        self,
        result: TransitionResult,
        released: Optional[Agent] = None,
    ) -> List[PendingEvent]:
        order = result.order
        topic = order_topic(order.id)
        body = order_payload(order)
        events: List[PendingEvent] = [
            (topic, make_event(ORDER_STATUS_CHANGED, topic, body)),
        ]
        if result.entry is not None:
            events.append((topic, make_event(ORDER_TRACKING_UPDATED, topic, tracking_payload(result.entry))))
        if order.agent_id is not None:
            a_topic = agent_topic(order.agent_id)
            events.append((a_topic, make_event(ORDER_STATUS_CHANGED, a_topic, body)))
        if released is not None:
            a_topic = agent_topic(released.id)
            events.append((a_topic, make_event(AGENT_STATUS_CHANGED, a_topic, agent_payload(released))))
        return events

    async def assign_agent(
        self,
        order_id: UUID,
        actor: Actor,
        max_distance_km: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> AssignmentResult:
        """
        Assign the nearest available agent to a pending order.

        Raises:
            ForbiddenError: actor is not an admin
            NotFoundError, AlreadyAssignedError, InvalidTransitionError,
            NoAvailableAgentError: unchanged from the assignment engine
            AssignmentFailedError: nothing was committed
        """
        if not actor.is_privileged:
            raise ForbiddenError("Admin access required")

        async def operation() -> AssignmentResult:
            async with self._order_locks.hold(order_id):
                try:
                    async with self._transaction() as session:
                        result = await self.assignment_engine.assign(session, order_id, max_distance_km)
                except (StorageError, StaleDataError) as exc:
                    raise AssignmentFailedError("Failed to assign agent") from exc

            order_id_topic = order_topic(order_id)
            a_topic = agent_topic(result.agent_id)
            self._publish([
                (order_id_topic, make_event(ORDER_STATUS_CHANGED, order_id_topic, order_payload(result.order))),
                (order_id_topic, make_event(ORDER_TRACKING_UPDATED, order_id_topic, tracking_payload(result.entry))),
                (a_topic, make_event(ORDER_ASSIGNED, a_topic, assignment_payload(result))),
            ])
            return result

        return await self._run("assign_agent", operation(), timeout)

    async def get_order_snapshot(
        self,
        order_id: UUID,
        timeout: Optional[float] = None,
    ) -> OrderSnapshot:
        """Order with its full tracking history."""

        async def operation() -> OrderSnapshot:
            async with self._transaction(read_only=True) as session:
                order = await self.state_machine.get_order(session, order_id)
                tracking = await self.state_machine.get_tracking(session, order_id)
            return OrderSnapshot(order=order, tracking=tracking)

        return await self._run("get_order_snapshot", operation(), timeout)

    # ==================== Agent locations ====================

    async def update_agent_location(
        self,
        actor: Actor,
        coordinate: Coordinate,
        metadata: Optional[SampleMetadata] = None,
        timestamp: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> AgentLocation:
        """
        Record the acting agent's position and notify its subscribers.

        Raises:
            ForbiddenError: actor is not an agent
            ValidationError: coordinate or metadata out of range
        """
        if actor.role != ActorRole.AGENT:
            raise ForbiddenError("Agent access required")

        async def operation() -> AgentLocation:
            async with self._transaction() as session:
                sample = await self.geo_index.upsert(session, actor.id, coordinate, metadata, timestamp)
            topic = agent_topic(actor.id)
            payload = LocationResponse.model_validate(sample).model_dump(mode="json")
            self._publish([(topic, make_event(AGENT_LOCATION_CHANGED, topic, payload))])
            return sample

        return await self._run("update_agent_location", operation(), timeout)

    async def get_agent_location(
        self,
        agent_id: UUID,
        timeout: Optional[float] = None,
    ) -> LocationSample:
        """
        Raises:
            NotFoundError: the agent never reported a position
        """

        async def operation() -> LocationSample:
            async with self._transaction(read_only=True) as session:
                sample = await self.geo_index.latest(session, agent_id)
            if sample is None:
                raise NotFoundError("Location not found")
            return sample

        return await self._run("get_agent_location", operation(), timeout)

    async def get_agent_location_history(
        self,
        agent_id: UUID,
        hours: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> List[AgentLocation]:
        """Samples from the last ``hours`` hours, oldest first."""
        hours = self.settings.location_history_default_hours if hours is None else hours
        if not 1 <= hours <= self.settings.location_history_max_hours:
            raise ValidationError(
                "Invalid history window",
                fields={"hours": f"must be between 1 and {self.settings.location_history_max_hours}"},
            )

        async def operation() -> List[AgentLocation]:
            since = utcnow() - timedelta(hours=hours)
            async with self._transaction(read_only=True) as session:
                return await self.geo_index.history(session, agent_id, since)

        return await self._run("get_agent_location_history", operation(), timeout)

    async def list_available_agent_locations(
        self,
        timeout: Optional[float] = None,
    ) -> List[LocationSample]:
        """Latest sample of every available agent."""

        async def operation() -> List[LocationSample]:
            async with self._transaction(read_only=True) as session:
                return await self.geo_index.list_latest(session, AgentStatus.AVAILABLE)

        return await self._run("list_available_agent_locations", operation(), timeout)

    async def find_nearby_agents(
        self,
        coordinate: Coordinate,
        max_distance_km: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> List[NearbyAgent]:
        """Available agents around a point, nearest first."""
        radius = self.settings.assignment_max_distance_km if max_distance_km is None else max_distance_km

        async def operation() -> List[NearbyAgent]:
            async with self._transaction(read_only=True) as session:
                return await self.geo_index.nearest(session, coordinate, radius, AgentStatus.AVAILABLE)

        return await self._run("find_nearby_agents", operation(), timeout)

    # ==================== Agents ====================

    async def register_agent(
        self,
        actor: Actor,
        name: str,
        vehicle_number: Optional[str] = None,
        vehicle_type: Optional[str] = None,
        agent_id: Optional[UUID] = None,
        status: AgentStatus = AgentStatus.OFFLINE,
        timeout: Optional[float] = None,
    ) -> Agent:
        """
        Create an agent profile, or fill in the profile of an agent that was
        registered implicitly by its first location report.

        Raises:
            ForbiddenError: actor is not an admin
            ValidationError: initial status is busy
        """
        if not actor.is_privileged:
            raise ForbiddenError("Admin access required")
        if status not in MANUAL_AGENT_STATUSES:
            raise ValidationError("Invalid status", fields={"status": "must be available or offline"})

        async def operation() -> Agent:
            async with self._transaction() as session:
                agent = await session.get(Agent, agent_id) if agent_id else None
                if agent is None:
                    agent = Agent(status=status, status_changed_at=utcnow())
                    if agent_id:
                        agent.id = agent_id
                    session.add(agent)
                agent.name = name
                agent.vehicle_number = vehicle_number
                agent.vehicle_type = vehicle_type
                await session.flush()
            logger.info(f"Agent {agent.id} registered as {name}")
            return agent

        return await self._run("register_agent", operation(), timeout)

    async def get_agent(self, agent_id: UUID, timeout: Optional[float] = None) -> Agent:
        async def operation() -> Agent:
            async with self._transaction(read_only=True) as session:
                agent = await session.get(Agent, agent_id)
            if agent is None:
                raise NotFoundError("Agent not found")
            return agent

        return await self._run("get_agent", operation(), timeout)

    async def set_agent_availability(
        self,
        agent_id: UUID,
        status: AgentStatus,
        actor: Actor,
        timeout: Optional[float] = None,
    ) -> Agent:
        """
        Go on or off shift. ``busy`` is owned by assignment and cannot be set
        or cleared here.

        Raises:
            ForbiddenError: actor is neither the agent nor an admin
            ValidationError: requested status is busy
            InvalidTransitionError: the agent is busy with an order
            NotFoundError: unknown agent
        """
        if not (actor.is_privileged or (actor.role == ActorRole.AGENT and actor.id == agent_id)):
            raise ForbiddenError("Only the agent or an administrator can change availability")
        status = AgentStatus(status)
        if status not in MANUAL_AGENT_STATUSES:
            raise ValidationError("Invalid status", fields={"status": "must be available or offline"})

        async def operation() -> Agent:
            async with self._transaction() as session:
                changed = await session.execute(
                    update(Agent)
                    .where(Agent.id == agent_id)
                    .where(Agent.status.in_(MANUAL_AGENT_STATUSES))
                    .values(status=status, status_changed_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                agent = await session.get(Agent, agent_id, populate_existing=True)
                if agent is None:
                    raise NotFoundError("Agent not found")
                if changed.rowcount == 0:
                    raise InvalidTransitionError("Agent is busy with an active order")
            topic = agent_topic(agent_id)
            self._publish([(topic, make_event(AGENT_STATUS_CHANGED, topic, agent_payload(agent)))])
            return agent

        return await self._run("set_agent_availability", operation(), timeout)

