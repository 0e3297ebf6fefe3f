"""
Shared API dependencies.

Services live on ``app.state`` (built by the lifespan handler) and are handed
to routes through these functions, so tests can override them with
``app.dependency_overrides``.
"""

from functools import lru_cache

from fastapi import Depends, Request

from app.config import Settings, get_settings
from app.core.events import EventBus
from app.core.security import Actor, GatewayHeaderVerifier, IdentityVerifier
from app.services.tracking import TrackingCoordinator


def get_coordinator(request: Request) -> TrackingCoordinator:
    return request.app.state.coordinator


@lru_cache()
def _gateway_verifier(id_header: str, role_header: str) -> GatewayHeaderVerifier:
    return GatewayHeaderVerifier(id_header=id_header, role_header=role_header)


def get_identity_verifier(settings: Settings = Depends(get_settings)) -> IdentityVerifier:
    return _gateway_verifier(settings.actor_id_header, settings.actor_role_header)


def get_current_actor(
    request: Request,
    verifier: IdentityVerifier = Depends(get_identity_verifier),
) -> Actor:
    """Identity of the caller; raises UnauthorizedError when absent or malformed."""
    return verifier.verify(request.headers)


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.event_bus
