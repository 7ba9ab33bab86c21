"""
FastAPI dependency wiring — process-wide collaborators and per-request engines.
Tests override `get_collaborators` (or `get_db`) through app.dependency_overrides.
"""
from dataclasses import dataclass
from functools import lru_cache
from typing import Mapping, Optional

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from esign_engine.config import get_settings
from esign_engine.database import get_db
from esign_engine.models.enums import ActorRole, IdentityMethod, OtpChannel
from esign_engine.schemas.schemas import Actor
from esign_engine.services.envelope_service import EnvelopeService
from esign_engine.services.envelope_types import EnvelopeTypeRegistry, build_registry
from esign_engine.services.identity_service import IdentityStrategy, build_identity_strategies
from esign_engine.services.notification_service import DeliveryChannel, build_delivery_channels
from esign_engine.services.signing_service import SessionGate, SigningEngine
from esign_engine.services.trust_service import TrustService, build_trust_service


@dataclass
class Collaborators:
    registry: EnvelopeTypeRegistry
    channels: Mapping[OtpChannel, DeliveryChannel]
    strategies: Mapping[IdentityMethod, IdentityStrategy]
    trust_service: TrustService
    gate: SessionGate


@lru_cache()
def get_collaborators() -> Collaborators:
    settings = get_settings()
    return Collaborators(
        registry=build_registry(settings),
        channels=build_delivery_channels(settings),
        strategies=build_identity_strategies(settings),
        trust_service=build_trust_service(settings),
        gate=SessionGate(),
    )


def get_engine(
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
) -> SigningEngine:
    return SigningEngine(
        db,
        registry=collaborators.registry,
        channels=collaborators.channels,
        strategies=collaborators.strategies,
        trust_service=collaborators.trust_service,
        gate=collaborators.gate,
    )


def get_envelope_service(
    db: Session = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
) -> EnvelopeService:
    return EnvelopeService(db, collaborators.registry)


def get_actor(
    request: Request,
    actor_id: str = Header(..., alias="actor-id"),
    actor_role: ActorRole = Header(..., alias="actor-role"),
    actor_email: Optional[str] = Header(None, alias="actor-email"),
    actor_phone: Optional[str] = Header(None, alias="actor-phone"),
) -> Actor:
    """Explicit caller identity for every engine call."""
    return Actor(
        id=actor_id,
        role=actor_role,
        email=actor_email,
        phone=actor_phone,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent", "")[:256],
    )
