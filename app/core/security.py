"""
Actor identity.

Credential verification is owned by the upstream auth gateway; this service
only consumes its result (identity + role). Every mutating operation receives
the Actor explicitly.
"""

import enum
import uuid
from dataclasses import dataclass
from typing import Mapping, Protocol

from app.core.errors import UnauthorizedError


class ActorRole(str, enum.Enum):
    """Roles that may act on orders and agents."""
    CUSTOMER = "customer"
    AGENT = "agent"
    ADMIN = "admin"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    id: uuid.UUID
    role: ActorRole

    @property
    def is_privileged(self) -> bool:
        return self.role in (ActorRole.ADMIN, ActorRole.SYSTEM)


# Internal identity used for transitions the service drives itself.
SYSTEM_ACTOR = Actor(id=uuid.UUID(int=0), role=ActorRole.SYSTEM)


class IdentityVerifier(Protocol):
    """Turns request credentials into an Actor or raises UnauthorizedError."""

    def verify(self, headers: Mapping[str, str]) -> Actor:
        ...


class GatewayHeaderVerifier:
    """
    Reads the identity the auth gateway forwards after verifying the bearer
    credential.
    """

    def __init__(self, id_header: str = "X-Actor-Id", role_header: str = "X-Actor-Role") -> None:
        self.id_header = id_header
        self.role_header = role_header

    def verify(self, headers: Mapping[str, str]) -> Actor:
        raw_id = headers.get(self.id_header)
        raw_role = headers.get(self.role_header)
        if not raw_id or not raw_role:
            raise UnauthorizedError("Access token required")

        try:
            actor_id = uuid.UUID(raw_id)
            role = ActorRole(raw_role.strip().lower())
        except ValueError:
            raise UnauthorizedError("Invalid token")

        if role is ActorRole.SYSTEM:
            # System identity is never accepted from outside the process.
            raise UnauthorizedError("Invalid token")

        return Actor(id=actor_id, role=role)
