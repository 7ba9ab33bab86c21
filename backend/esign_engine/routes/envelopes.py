"""
Envelope Routes — Customers on file, envelope creation and sending.
"""
from fastapi import APIRouter, Depends

from esign_engine.dependencies import get_actor, get_collaborators, get_envelope_service, Collaborators
from esign_engine.schemas.schemas import (
    Actor,
    CustomerCreateRequest,
    CustomerResponse,
    EnvelopeCreateRequest,
    EnvelopeResponse,
    EnvelopeTypeConfig,
)
from esign_engine.services.envelope_service import EnvelopeService

router = APIRouter(prefix="/api", tags=["Envelopes"])


@router.post("/customers", response_model=CustomerResponse, status_code=201)
def create_customer(
    payload: CustomerCreateRequest,
    service: EnvelopeService = Depends(get_envelope_service),
):
    return service.create_customer(payload)


@router.get("/envelope-types", response_model=list[EnvelopeTypeConfig])
def list_envelope_types(collaborators: Collaborators = Depends(get_collaborators)):
    return collaborators.registry.list_types()


@router.post("/envelopes", response_model=EnvelopeResponse, status_code=201)
def create_envelope(
    payload: EnvelopeCreateRequest,
    actor: Actor = Depends(get_actor),
    service: EnvelopeService = Depends(get_envelope_service),
):
    """Create an envelope from its type; sent for signature unless `send` is false."""
    envelope = service.create(
        customer_id=payload.customer_id,
        type_code=payload.type_code,
        name=payload.name,
        created_by=actor.id,
        expires_at=payload.expires_at,
        customer_message=payload.customer_message,
    )
    if payload.send:
        envelope = service.send(envelope.id)
    return envelope


@router.post("/envelopes/{envelope_id}/send", response_model=EnvelopeResponse)
def send_envelope(envelope_id: str, service: EnvelopeService = Depends(get_envelope_service)):
    return service.send(envelope_id)


@router.get("/envelopes/{envelope_id}", response_model=EnvelopeResponse)
def get_envelope(envelope_id: str, service: EnvelopeService = Depends(get_envelope_service)):
    return service.get(envelope_id)
