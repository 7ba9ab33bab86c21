"""
Envelope Model — A document package routed for signature.
Statuses: Draft → PendingSignature → InProgress → Signed | Expired | Rejected.
Envelopes are never deleted; expiry is a status.
"""
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from esign_engine.database import Base
from esign_engine.utils.clock import utcnow


class Envelope(Base):
    __tablename__ = "envelopes"

    id = Column(String(36), primary_key=True, index=True)
    reference = Column(String(16), unique=True, index=True)   # ENV-12345
    type_code = Column(String(64), nullable=False, index=True)
    name = Column(String(256), nullable=False)

    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=False, index=True)
    created_by = Column(String(64))

    status = Column(String(24), nullable=False, default="Draft")
    expires_at = Column(DateTime, nullable=True)
    customer_message = Column(String(1024))

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    customer = relationship("Customer")
    documents = relationship(
        "EnvelopeDocument",
        back_populates="envelope",
        order_by="EnvelopeDocument.position",
        cascade="all, delete-orphan",
    )

    @property
    def slot_ids(self) -> list[str]:
        return [doc.slot_id for doc in self.documents]

    def is_expired(self, now) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class EnvelopeDocument(Base):
    """One required document slot of an envelope, in display order."""
    __tablename__ = "envelope_documents"
    __table_args__ = (UniqueConstraint("envelope_id", "slot_id", name="uq_envelope_document_slot"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    envelope_id = Column(String(36), ForeignKey("envelopes.id"), nullable=False, index=True)

    slot_id = Column(String(64), nullable=False)
    title = Column(String(256), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    content_ref = Column(String(512))       # storage reference, opaque to the engine
    content_hash = Column(String(64))       # SHA-256 before signing

    envelope = relationship("Envelope", back_populates="documents")
