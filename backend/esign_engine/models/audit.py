"""
Audit Event Model — Immutable, tamper-evident signing ledger.
Events are ordered per session by a gapless sequence number; each row is
SHA-256 chained to its predecessor. Rows can be inserted, never changed.
"""
from sqlalchemy import Column, String, Integer, DateTime, JSON, ForeignKey, UniqueConstraint, event

from esign_engine.database import Base
from esign_engine.utils.clock import utcnow


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (UniqueConstraint("session_id", "sequence", name="uq_audit_session_sequence"),)

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    session_id = Column(String(36), ForeignKey("signing_sessions.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)

    event_type = Column(String(40), nullable=False)
    # Types: see AuditEventType (SessionStarted, IdentityVerified, ConsentAccepted,
    #        OtpIssued, OtpVerified, SignatureCaptured, SealApplied, DocumentSigned, ...)

    actor_id = Column(String(64), nullable=False)
    actor_role = Column(String(16), nullable=False)   # customer | agent | system

    payload_hash = Column(String(64))       # chain hash over this event's canonical payload
    previous_hash = Column(String(64))      # payload_hash of the previous event in the session

    ip_address = Column(String(45))
    user_agent = Column(String(256))

    event_metadata = Column(JSON, default=dict)
    timestamp = Column(DateTime, default=utcnow, nullable=False)

    def canonical_payload(self) -> dict:
        """The fields covered by the chain hash."""
        return {
            "session_id": self.session_id,
            "sequence": self.sequence,
            "event_type": self.event_type,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "metadata": self.event_metadata or {},
        }


class AuditImmutableError(RuntimeError):
    pass


@event.listens_for(AuditEvent, "before_update")
def _refuse_update(mapper, connection, target):
    raise AuditImmutableError(f"Audit event {target.id} is append-only")


@event.listens_for(AuditEvent, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise AuditImmutableError(f"Audit event {target.id} is append-only")
