"""
Order state machine.

Owns the order status graph and is the only code that changes an order's
status. Every accepted change appends exactly one tracking entry in the same
transaction as the status write.

    pending -> accepted -> preparing -> ready_for_pickup -> picked_up
            -> out_for_delivery -> delivered

Any non-terminal state may move to cancelled. delivered and cancelled are
terminal.
"""

from dataclasses import dataclass
from math import isfinite
from typing import Dict, FrozenSet, List, Optional, Sequence
from uuid import UUID
import logging
import secrets
import string
import time

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from app.core.security import Actor, ActorRole
from app.database import utcnow
from app.models import Order, OrderStatus, OrderTracking
from app.services.geo_index import Coordinate


logger = logging.getLogger(__name__)

S = OrderStatus

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    S.PENDING: frozenset({S.ACCEPTED, S.CANCELLED}),
    S.ACCEPTED: frozenset({S.PREPARING, S.CANCELLED}),
    S.PREPARING: frozenset({S.READY_FOR_PICKUP, S.CANCELLED}),
    S.READY_FOR_PICKUP: frozenset({S.PICKED_UP, S.CANCELLED}),
    S.PICKED_UP: frozenset({S.OUT_FOR_DELIVERY, S.CANCELLED}),
    S.OUT_FOR_DELIVERY: frozenset({S.DELIVERED, S.CANCELLED}),
    S.DELIVERED: frozenset(),
    S.CANCELLED: frozenset(),
}

ORDER_PLACED_DESCRIPTION = "Order placed successfully"

_ORDER_NUMBER_ALPHABET = string.digits + string.ascii_lowercase


def allowed_transitions(current: OrderStatus) -> FrozenSet[OrderStatus]:
    return TRANSITIONS[current]


def can_transition(current: OrderStatus, requested: OrderStatus) -> bool:
    return requested in TRANSITIONS[current]


def is_valid_walk(statuses: Sequence[OrderStatus]) -> bool:
    """True if ``statuses`` starts at pending and follows only legal edges."""
    if not statuses or statuses[0] != S.PENDING:
        return False
    return all(can_transition(a, b) for a, b in zip(statuses, statuses[1:]))


def generate_order_number() -> str:
    """Human-readable order number, e.g. ORD-1718000000000-k3j9x0a1b."""
    suffix = "".join(secrets.choice(_ORDER_NUMBER_ALPHABET) for _ in range(9))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


@dataclass(frozen=True)
class LineItemSpec:
    name: str
    quantity: int
    price: float


@dataclass
class OrderSpec:
    """Everything a customer submits to place an order."""
    restaurant_id: UUID
    items: List[LineItemSpec]
    total_amount: float
    delivery_address: str
    delivery: Coordinate
    pickup: Coordinate


@dataclass
class TransitionResult:
    order: Order
    previous_status: OrderStatus
    entry: Optional[OrderTracking] = None
    changed: bool = False


def _is_positive_number(value) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and isfinite(value)
        and value > 0
    )


def validate_order_spec(spec: OrderSpec) -> None:
    """
    Check commercial and geometric fields of an order.

    Raises:
        ValidationError: with one message per offending field
    """
    errors: Dict[str, str] = {}

    if not spec.items:
        errors["items"] = "at least one item is required"
    for index, item in enumerate(spec.items or []):
        if not isinstance(item.name, str) or not item.name.strip():
            errors[f"items[{index}].name"] = "is required"
        if not isinstance(item.quantity, int) or isinstance(item.quantity, bool) or item.quantity < 1:
            errors[f"items[{index}].quantity"] = "must be an integer of at least 1"
        if not _is_positive_number(item.price):
            errors[f"items[{index}].price"] = "must be greater than 0"

    if not _is_positive_number(spec.total_amount):
        errors["total_amount"] = "must be greater than 0"
    if not isinstance(spec.delivery_address, str) or not spec.delivery_address.strip():
        errors["delivery_address"] = "is required"

    for prefix, coordinate in (("delivery_", spec.delivery), ("pickup_", spec.pickup)):
        try:
            coordinate.validate(prefix=prefix)
        except ValidationError as exc:
            errors.update(exc.fields)

    if errors:
        raise ValidationError("Invalid order", fields=errors)


class OrderStateMachine:
    """
    Validates and applies order status transitions.

    Methods work inside the caller's transaction and never commit; the caller
    serializes access per order id.
    """

    async def create(
        self,
        session: AsyncSession,
        spec: OrderSpec,
        customer_id: UUID,
    ) -> Order:
        """
        Create an order in status pending together with its first tracking entry.

        Raises:
            ValidationError: if any commercial or coordinate field is invalid
        """
        validate_order_spec(spec)

        now = utcnow()
        order = Order(
            order_number=generate_order_number(),
            customer_id=customer_id,
            restaurant_id=spec.restaurant_id,
            items=[
                {"name": item.name.strip(), "quantity": item.quantity, "price": float(item.price)}
                for item in spec.items
            ],
            total_amount=float(spec.total_amount),
            delivery_address=spec.delivery_address.strip(),
            delivery_lat=spec.delivery.lat,
            delivery_lng=spec.delivery.lng,
            pickup_lat=spec.pickup.lat,
            pickup_lng=spec.pickup.lng,
            status=S.PENDING,
            created_at=now,
            updated_at=now,
        )
        session.add(order)
        await session.flush()

        session.add(
            OrderTracking(
                order_id=order.id,
                sequence=1,
                status=S.PENDING,
                description=ORDER_PLACED_DESCRIPTION,
                created_at=now,
            )
        )
        await session.flush()

        logger.info(f"Order {order.order_number} ({order.id}) created for customer {customer_id}")
        return order

    async def get_order(
        self,
        session: AsyncSession,
        order_id: UUID,
        for_update: bool = False,
    ) -> Order:
        """
        Load an order, optionally locking its row.

        Raises:
            NotFoundError: if no order has this id
        """
        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        order = (await session.execute(stmt)).scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order not found")
        return order

    async def get_tracking(self, session: AsyncSession, order_id: UUID) -> List[OrderTracking]:
        """Tracking entries for an order in creation order."""
        result = await session.execute(
            select(OrderTracking)
            .where(OrderTracking.order_id == order_id)
            .order_by(OrderTracking.sequence)
        )
        return list(result.scalars().all())

    async def transition(
        self,
        session: AsyncSession,
        order_id: UUID,
        requested: OrderStatus,
        actor: Actor,
        description: Optional[str] = None,
        location: Optional[Coordinate] = None,
    ) -> TransitionResult:
        """
        Move an order to ``requested`` on behalf of ``actor``.

        Requesting the current status is a no-op success.

        Raises:
            NotFoundError: unknown order, or an agent acting on an order not assigned to them
            ForbiddenError: the actor's role may not make this transition
            InvalidTransitionError: ``requested`` is not a successor of the current status
            ValidationError: the location is out of range
        """
        order = await self.get_order(session, order_id, for_update=True)
        return await self.apply(session, order, requested, actor, description, location)

    async def apply(
        self,
        session: AsyncSession,
        order: Order,
        requested: OrderStatus,
        actor: Actor,
        description: Optional[str] = None,
        location: Optional[Coordinate] = None,
    ) -> TransitionResult:
        """Same as transition() for an order already loaded under lock."""
        requested = OrderStatus.parse(requested)
        if location is not None:
            location.validate(prefix="location_")

        self.check_permission(order, requested, actor)

        previous = order.status
        if requested == previous:
            return TransitionResult(order=order, previous_status=previous, changed=False)

        if not can_transition(previous, requested):
            raise InvalidTransitionError(
                f"Cannot change order status from {previous.value} to {requested.value}"
            )
        if requested == S.ACCEPTED and order.agent_id is None:
            raise InvalidTransitionError("Order cannot be accepted before an agent is assigned")

        now = utcnow()
        order.status = requested
        order.updated_at = now
        entry = await self._append_entry(session, order, requested, description, location, now)

        logger.info(
            f"Order {order.id} moved {previous.value} -> {requested.value} "
            f"by {actor.role.value} {actor.id}"
        )
        return TransitionResult(order=order, previous_status=previous, entry=entry, changed=True)

    def check_permission(self, order: Order, requested: OrderStatus, actor: Actor) -> None:
        """
        Enforce who may drive which transition.

        Only the assigned agent (or the system) drives the delivery flow.
        Cancellation is open to admins and the system at any time, and to the
        ordering customer while the order is still pending.
        """
        if requested == S.CANCELLED:
            if actor.is_privileged:
                return
            if (
                actor.role == ActorRole.CUSTOMER
                and actor.id == order.customer_id
                and order.status in (S.PENDING, S.CANCELLED)
            ):
                return
            raise ForbiddenError("Only an administrator can cancel this order")

        if actor.role == ActorRole.SYSTEM:
            return
        if actor.role == ActorRole.AGENT:
            if order.agent_id is None or order.agent_id != actor.id:
                raise NotFoundError("Order not found or not assigned to you")
            return
        raise ForbiddenError("Only the assigned agent can update this order's status")

    async def _append_entry(
        self,
        session: AsyncSession,
        order: Order,
        status: OrderStatus,
        description: Optional[str],
        location: Optional[Coordinate],
        created_at,
    ) -> OrderTracking:
        last_sequence = (
            await session.execute(
                select(func.max(OrderTracking.sequence)).where(OrderTracking.order_id == order.id)
            )
        ).scalar_one()
        entry = OrderTracking(
            order_id=order.id,
            sequence=(last_sequence or 0) + 1,
            status=status,
            description=description,
            location_lat=location.lat if location else None,
            location_lng=location.lng if location else None,
            created_at=created_at,
        )
        session.add(entry)
        await session.flush()
        return entry
