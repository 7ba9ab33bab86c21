"""
Audit Service — Append-only, hash-chained signing ledger.

`append` assigns the next per-session sequence number and chains the event
to its predecessor. It only flushes: the caller owns the transaction, so a
stage transition and its audit event commit (or roll back) together.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from esign_engine.exceptions import AuditWriteError
from esign_engine.models.audit import AuditEvent
from esign_engine.models.enums import AuditEventType
from esign_engine.schemas.schemas import Actor
from esign_engine.utils.clock import Clock, utcnow
from esign_engine.utils.hashing import generate_chain_hash

logger = logging.getLogger(__name__)


@dataclass
class SessionReplay:
    """Session state reconstructed purely from its audit events."""
    session_id: Optional[str] = None
    method: Optional[str] = None
    stage: Optional[str] = None
    stages: List[str] = field(default_factory=list)
    identity_verified: bool = False
    consents: Dict[str, bool] = field(default_factory=dict)
    otp_issued: int = 0
    otp_verified_since_issue: int = 0
    signed_document_ref: Optional[str] = None
    sequences: List[int] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.stage == "SigningCompleted"


class AuditService:
    """Creates tamper-evident audit events with per-session sequencing."""

    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def append(
        self,
        session_id: str,
        event_type: AuditEventType,
        actor: Actor,
        metadata: Optional[Dict] = None,
    ) -> AuditEvent:
        """Append one event to a session's ledger.

        Raises:
            AuditWriteError: if the event cannot be persisted. The caller
                must roll back the enclosing transition.
        """
        try:
            last_entry = (
                self.db.query(AuditEvent)
                .filter(AuditEvent.session_id == session_id)
                .order_by(AuditEvent.sequence.desc())
                .first()
            )
            previous_hash = last_entry.payload_hash if last_entry else ""
            sequence = last_entry.sequence + 1 if last_entry else 1

            entry = AuditEvent(
                session_id=session_id,
                sequence=sequence,
                event_type=AuditEventType(event_type).value,
                actor_id=actor.id,
                actor_role=actor.role.value,
                ip_address=actor.ip_address,
                user_agent=(actor.user_agent or "")[:256] or None,
                event_metadata=dict(metadata or {}),
                timestamp=self.clock(),
            )
            entry.previous_hash = previous_hash
            entry.payload_hash = generate_chain_hash(entry.canonical_payload(), previous_hash)

            self.db.add(entry)
            self.db.flush()
        except SQLAlchemyError as exc:
            logger.error("Audit write failed for session %s (%s): %s", session_id, event_type, exc)
            raise AuditWriteError(
                f"Could not persist {AuditEventType(event_type).value} for session {session_id}",
                session_id=session_id,
            ) from exc

        logger.debug("Audit #%d %s for session %s", sequence, entry.event_type, session_id)
        return entry

    def events_for(self, session_id: str) -> List[AuditEvent]:
        """Full ordered ledger for a session."""
        return (
            self.db.query(AuditEvent)
            .filter(AuditEvent.session_id == session_id)
            .order_by(AuditEvent.sequence.asc())
            .all()
        )

    def count_for(self, session_id: str) -> int:
        return (
            self.db.query(func.count(AuditEvent.id))
            .filter(AuditEvent.session_id == session_id)
            .scalar()
            or 0
        )

    def verify_chain(self, session_id: str) -> dict:
        """Verify the integrity of the audit chain for a session.

        Returns:
            dict with 'valid' (bool), 'total_entries', and 'broken_at' (if invalid).
        """
        entries = self.events_for(session_id)

        if not entries:
            return {"valid": True, "total_entries": 0, "broken_at": None}

        for i, entry in enumerate(entries):
            expected_prev = entries[i - 1].payload_hash if i > 0 else ""
            if entry.sequence != i + 1:
                return {
                    "valid": False,
                    "total_entries": len(entries),
                    "broken_at": entry.sequence,
                    "message": f"Sequence gap before entry {entry.sequence} ({entry.event_type})",
                }
            if entry.previous_hash != expected_prev:
                return {
                    "valid": False,
                    "total_entries": len(entries),
                    "broken_at": entry.sequence,
                    "message": f"Chain broken at entry {entry.sequence} ({entry.event_type})",
                }
            if entry.payload_hash != generate_chain_hash(entry.canonical_payload(), expected_prev):
                return {
                    "valid": False,
                    "total_entries": len(entries),
                    "broken_at": entry.sequence,
                    "message": f"Payload tampered at entry {entry.sequence} ({entry.event_type})",
                }

        return {"valid": True, "total_entries": len(entries), "broken_at": None}

    @staticmethod
    def replay(events: Iterable[AuditEvent]) -> SessionReplay:
        """Rebuild a session's progress from its ledger alone."""
        state = SessionReplay()
        for ev in events:
            meta = ev.event_metadata or {}
            state.session_id = ev.session_id
            state.sequences.append(ev.sequence)

            if ev.event_type == AuditEventType.SESSION_STARTED.value:
                state.method = meta.get("method")
            if meta.get("identity"):
                state.identity_verified = True

            if ev.event_type == AuditEventType.IDENTITY_INVALIDATED.value:
                state.identity_verified = False
                state.otp_verified_since_issue = 0
            elif ev.event_type == AuditEventType.CONSENT_ACCEPTED.value:
                state.consents[meta["consent_id"]] = bool(meta.get("value"))
            elif ev.event_type == AuditEventType.OTP_ISSUED.value:
                state.otp_issued += 1
                state.otp_verified_since_issue = 0
            elif ev.event_type == AuditEventType.OTP_VERIFIED.value:
                state.otp_verified_since_issue += 1
            elif ev.event_type == AuditEventType.DOCUMENT_SIGNED.value:
                state.signed_document_ref = meta.get("signed_document_ref")

            if meta.get("to_stage"):
                state.stage = meta["to_stage"]
                state.stages.append(meta["to_stage"])
        return state

    def export_trail(self, session_id: str) -> dict:
        """Compliance export: ordered events, chain verdict and replayed state."""
        events = self.events_for(session_id)
        replay = self.replay(events)
        return {
            "session_id": session_id,
            "exported_at": self.clock().isoformat(),
            "chain": self.verify_chain(session_id),
            "replay": {
                "method": replay.method,
                "stage": replay.stage,
                "stages": replay.stages,
                "identity_verified": replay.identity_verified,
                "consents": replay.consents,
                "otp_verified_since_issue": replay.otp_verified_since_issue,
                "signed_document_ref": replay.signed_document_ref,
            },
            "events": [
                {
                    "sequence": ev.sequence,
                    "event_type": ev.event_type,
                    "actor_id": ev.actor_id,
                    "actor_role": ev.actor_role,
                    "timestamp": ev.timestamp.isoformat(),
                    "metadata": ev.event_metadata or {},
                    "payload_hash": ev.payload_hash,
                    "previous_hash": ev.previous_hash,
                }
                for ev in events
            ],
        }
