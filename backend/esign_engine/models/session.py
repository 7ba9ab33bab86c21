"""
Signing Session Model — One signer's attempt to sign one envelope.
The `stage` column is the authoritative progress marker; `evidence` holds
everything collected on the way (identity result, captures, signature
artifacts, OTP verification). Consent acceptances live in their own table.
"""
from sqlalchemy import Column, String, Integer, DateTime, JSON, ForeignKey, Boolean, UniqueConstraint
from sqlalchemy.orm import relationship

from esign_engine.database import Base
from esign_engine.utils.clock import utcnow


class SigningSession(Base):
    __tablename__ = "signing_sessions"

    id = Column(String(36), primary_key=True, index=True)
    envelope_id = Column(String(36), ForeignKey("envelopes.id"), nullable=False, index=True)
    signer_id = Column(String(36), ForeignKey("customers.id"), nullable=False, index=True)

    method = Column(String(24), nullable=False)    # SelfService | AgentAssisted | PhysicalUpload
    stage = Column(String(32), nullable=False)

    evidence = Column(JSON, default=dict)

    otp_channel = Column(String(8))                 # SMS | Email
    otp_attempts = Column(Integer, default=0)

    signed_document_ref = Column(String(128), index=True)

    created_by = Column(String(64))
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    # Optimistic concurrency: concurrent writers on one session fail with StaleDataError
    version = Column(Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version}

    envelope = relationship("Envelope")
    signer = relationship("Customer")
    consents = relationship(
        "ConsentRequirement",
        back_populates="session",
        order_by="ConsentRequirement.position",
        cascade="all, delete-orphan",
    )

    @property
    def is_terminal(self) -> bool:
        return self.stage in ("SigningCompleted", "Abandoned")


class ConsentRequirement(Base):
    """A consent the signer must (or may) accept for this session's envelope type."""
    __tablename__ = "consent_requirements"
    __table_args__ = (UniqueConstraint("session_id", "consent_id", name="uq_session_consent"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(36), ForeignKey("signing_sessions.id"), nullable=False, index=True)

    consent_id = Column(String(64), nullable=False)
    required = Column(Boolean, nullable=False, default=True)
    position = Column(Integer, nullable=False, default=0)

    value = Column(Boolean, nullable=True)          # null until accepted/declined
    accepted_at = Column(DateTime, nullable=True)
    accepted_by = Column(String(64))
    artifact_hash = Column(String(64))              # integrity of (text, value, time)

    session = relationship("SigningSession", back_populates="consents")
