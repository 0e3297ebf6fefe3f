"""
Delivery agent database models.
Includes Agent (availability + latest position) and the AgentLocation history.
"""

import enum
import uuid
from datetime import datetime
from typing import Optional, List, TYPE_CHECKING

from sqlalchemy import String, Float, DateTime, ForeignKey, Enum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, GUID, utcnow

if TYPE_CHECKING:
    from app.models.order import Order


class AgentStatus(str, enum.Enum):
    """Availability of a delivery agent for matching."""
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class Agent(Base):
    """
    Agent model representing a delivery driver.

    The current_* columns hold the latest authoritative position used for
    matching; every reported sample is also kept in agent_locations.
    """
    __tablename__ = "agents"

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    vehicle_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    vehicle_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    status: Mapped[AgentStatus] = mapped_column(
        Enum(AgentStatus, name="agent_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=AgentStatus.OFFLINE,
        index=True,
    )
    status_changed_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
    )

    # Latest position
    current_lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True, index=True)
    current_lng: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    current_accuracy: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    current_speed: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    current_heading: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    location_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
    )

    # Relationships
    orders: Mapped[List["Order"]] = relationship("Order", back_populates="agent")
    locations: Mapped[List["AgentLocation"]] = relationship(
        "AgentLocation",
        back_populates="agent",
        cascade="all, delete-orphan",
    )

    @property
    def has_position(self) -> bool:
        return self.current_lat is not None and self.current_lng is not None

    def __repr__(self) -> str:
        return f"<Agent(id={self.id}, name={self.name}, status={self.status})>"


class AgentLocation(Base):
    """
    Append-only history of reported agent positions.
    """
    __tablename__ = "agent_locations"

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )
    agent_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("agents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    accuracy: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    speed: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    heading: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        nullable=False,
        index=True,
    )

    # Relationships
    agent: Mapped["Agent"] = relationship("Agent", back_populates="locations")

    def __repr__(self) -> str:
        return f"<AgentLocation(agent_id={self.agent_id}, lat={self.lat}, lng={self.lng})>"
