"""
Signing Routes — Thin HTTP adapter over the signing engine.
Handles: session start, stage advance, consents, documents, ID captures,
OTP issue/verify, identity invalidation, abandon, decline and the public
check of a signed document.
"""
from fastapi import APIRouter, Body, Depends
from pydantic import TypeAdapter

from esign_engine.dependencies import get_actor, get_engine
from esign_engine.schemas.schemas import (
    Actor,
    CaptureSubmitRequest,
    ConsentAcceptRequest,
    OtpIssueRequest,
    OtpStatusOut,
    OtpVerifyRequest,
    ReasonRequest,
    SessionResponse,
    SessionStartRequest,
    SignedDocumentVerification,
    StageInput,
)
from esign_engine.services.signing_service import SigningEngine
from esign_engine.utils.rate_limiter import rate_limit

router = APIRouter(prefix="/api/signing", tags=["Signing"])

_stage_input = TypeAdapter(StageInput)


@router.post("/sessions", response_model=SessionResponse, status_code=201)
def start_session(
    payload: SessionStartRequest,
    actor: Actor = Depends(get_actor),
    engine: SigningEngine = Depends(get_engine),
):
    """Begin signing an envelope with the chosen method."""
    session = engine.start_session(payload.envelope_id, payload.method, actor)
    return engine.describe(session.id)


@router.get("/sessions/{session_id}", response_model=SessionResponse)
def get_session(session_id: str, engine: SigningEngine = Depends(get_engine)):
    """Current stage, next stage and collected evidence summary."""
    return engine.describe(session_id)


@router.post("/sessions/{session_id}/advance", response_model=SessionResponse)
async def advance(
    session_id: str,
    payload: dict = Body(...),
    actor: Actor = Depends(get_actor),
    engine: SigningEngine = Depends(get_engine),
):
    """Leave the current stage. The body is the stage's input, tagged by `kind`."""
    stage_input = _stage_input.validate_python(payload)
    await engine.advance(session_id, stage_input, actor)
    return engine.describe(session_id)


@router.post("/sessions/{session_id}/consents", response_model=SessionResponse)
def accept_consent(
    session_id: str,
    payload: ConsentAcceptRequest,
    actor: Actor = Depends(get_actor),
    engine: SigningEngine = Depends(get_engine),
):
    engine.accept_consent(session_id, payload.consent_id, payload.value, actor)
    return engine.describe(session_id)


@router.post("/sessions/{session_id}/documents/{slot_id}", response_model=SessionResponse)
def mark_document(
    session_id: str,
    slot_id: str,
    actor: Actor = Depends(get_actor),
    engine: SigningEngine = Depends(get_engine),
):
    """Mark a document slot reviewed (agent flow) or printed (physical flow)."""
    engine.mark_document(session_id, slot_id, actor)
    return engine.describe(session_id)


@router.post("/sessions/{session_id}/captures", response_model=SessionResponse)
def submit_capture(
    session_id: str,
    payload: CaptureSubmitRequest,
    actor: Actor = Depends(get_actor),
    engine: SigningEngine = Depends(get_engine),
):
    engine.submit_capture(session_id, payload.kind, payload.ref, actor, digest=payload.digest)
    return engine.describe(session_id)


@router.post(
    "/sessions/{session_id}/otp",
    response_model=OtpStatusOut,
    dependencies=[Depends(rate_limit(requests=5, window=300))],
)
async def issue_otp(
    session_id: str,
    payload: OtpIssueRequest,
    actor: Actor = Depends(get_actor),
    engine: SigningEngine = Depends(get_engine),
):
    """Send a new one-time code. Rate-limited per client."""
    await engine.issue_otp(session_id, actor, channel=payload.channel)
    return engine.describe(session_id).otp


@router.post("/sessions/{session_id}/otp/verify", response_model=SessionResponse)
def verify_otp(
    session_id: str,
    payload: OtpVerifyRequest,
    actor: Actor = Depends(get_actor),
    engine: SigningEngine = Depends(get_engine),
):
    engine.verify_otp(session_id, payload.code, actor)
    return engine.describe(session_id)


@router.post("/sessions/{session_id}/identity/invalidate", response_model=SessionResponse)
def invalidate_identity(
    session_id: str,
    payload: ReasonRequest,
    actor: Actor = Depends(get_actor),
    engine: SigningEngine = Depends(get_engine),
):
    engine.invalidate_identity(session_id, actor, reason=payload.reason)
    return engine.describe(session_id)


@router.post("/sessions/{session_id}/abandon", response_model=SessionResponse)
def abandon(
    session_id: str,
    payload: ReasonRequest,
    actor: Actor = Depends(get_actor),
    engine: SigningEngine = Depends(get_engine),
):
    engine.abandon(session_id, actor, reason=payload.reason)
    return engine.describe(session_id)


@router.post("/sessions/{session_id}/decline", response_model=SessionResponse)
def decline(
    session_id: str,
    payload: ReasonRequest,
    actor: Actor = Depends(get_actor),
    engine: SigningEngine = Depends(get_engine),
):
    """Signer rejects the envelope."""
    engine.decline(session_id, actor, reason=payload.reason)
    return engine.describe(session_id)


@router.get("/verify/{signed_document_ref}", response_model=SignedDocumentVerification)
def verify_signed_document(signed_document_ref: str, engine: SigningEngine = Depends(get_engine)):
    """Seal metadata and audit chain verdict for a signed document. Read-only."""
    return engine.verify_signed_document(signed_document_ref)
