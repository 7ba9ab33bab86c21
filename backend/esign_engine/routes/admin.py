"""
Admin Routes — Compliance dashboard and audit trail access.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy import func
from sqlalchemy.orm import Session

from esign_engine.database import get_db
from esign_engine.dependencies import get_engine
from esign_engine.exceptions import NotFoundError
from esign_engine.models.envelope import Envelope
from esign_engine.models.session import SigningSession
from esign_engine.schemas.schemas import AuditEventOut, ChainVerificationResponse, SessionResponse
from esign_engine.services.signing_service import SigningEngine

router = APIRouter(prefix="/api/admin", tags=["Admin"])


@router.get("/dashboard")
def get_dashboard(db: Session = Depends(get_db)):
    """Envelope and session counts by status / method."""
    envelopes = dict(db.query(Envelope.status, func.count(Envelope.id)).group_by(Envelope.status).all())
    stages = dict(
        db.query(SigningSession.stage, func.count(SigningSession.id)).group_by(SigningSession.stage).all()
    )
    methods = dict(
        db.query(SigningSession.method, func.count(SigningSession.id)).group_by(SigningSession.method).all()
    )
    return {"envelopes_by_status": envelopes, "sessions_by_stage": stages, "sessions_by_method": methods}


@router.get("/sessions", response_model=list[SessionResponse])
def list_sessions(
    envelope_id: Optional[str] = None,
    db: Session = Depends(get_db),
    engine: SigningEngine = Depends(get_engine),
):
    query = db.query(SigningSession.id)
    if envelope_id:
        query = query.filter(SigningSession.envelope_id == envelope_id)
    return [engine.describe(row.id) for row in query.order_by(SigningSession.created_at.desc()).all()]


@router.get("/audit/{session_id}", response_model=list[AuditEventOut])
def get_audit_trail(session_id: str, engine: SigningEngine = Depends(get_engine)):
    """Get the full audit trail for a session."""
    events = engine.audit.events_for(session_id)
    if not events:
        raise NotFoundError("Audit trail", session_id)
    return events


@router.get("/audit/{session_id}/verify", response_model=ChainVerificationResponse)
def verify_audit_chain(session_id: str, engine: SigningEngine = Depends(get_engine)):
    """Verify the hash chain of a session's audit trail."""
    return engine.audit.verify_chain(session_id)


@router.get("/audit/{session_id}/export")
def export_audit_trail(session_id: str, engine: SigningEngine = Depends(get_engine)):
    """Compliance export: events, chain verdict and replayed session state."""
    engine.get_session(session_id)
    return engine.audit.export_trail(session_id)
