"""
Envelope Service — Customers on file and envelope creation/sending.
Document slots are materialised from the envelope type's document list.
"""
import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from esign_engine.config import get_settings
from esign_engine.exceptions import ErrorKind, NotFoundError, StageError
from esign_engine.models.customer import Customer
from esign_engine.models.enums import CustomerType, EnvelopeStatus
from esign_engine.models.envelope import Envelope, EnvelopeDocument
from esign_engine.schemas.schemas import CustomerCreateRequest
from esign_engine.services.envelope_types import EnvelopeTypeRegistry
from esign_engine.utils.clock import Clock, utcnow
from esign_engine.utils.validators import sanitize_name, validate_email, validate_phone

logger = logging.getLogger(__name__)


def generate_reference() -> str:
    """Human-readable envelope reference, e.g. ENV-48213."""
    return f"ENV-{secrets.randbelow(90000) + 10000}"


class EnvelopeService:

    def __init__(self, db: Session, registry: EnvelopeTypeRegistry, clock: Clock = utcnow):
        self.db = db
        self.registry = registry
        self.clock = clock

    def create_customer(self, data: CustomerCreateRequest) -> Customer:
        if data.email and not validate_email(data.email):
            raise StageError(ErrorKind.INVALID_STAGE_INPUT, "Invalid email address", field="email")
        if data.phone and not validate_phone(data.phone):
            raise StageError(ErrorKind.INVALID_STAGE_INPUT, "Invalid phone number", field="phone")

        customer = Customer(
            id=str(uuid.uuid4()),
            customer_type=CustomerType(data.customer_type).value,
            full_name=sanitize_name(data.full_name),
            email=data.email,
            phone=data.phone,
            id_number=data.id_number,
            date_of_birth=data.date_of_birth,
            registration_number=data.registration_number,
            registration_date=data.registration_date,
            created_at=self.clock(),
        )
        self.db.add(customer)
        self.db.commit()
        self.db.refresh(customer)
        logger.info("Customer %s created (%s)", customer.id, customer.customer_type)
        return customer

    def get_customer(self, customer_id: str) -> Customer:
        customer = self.db.get(Customer, customer_id)
        if customer is None:
            raise NotFoundError("Customer", customer_id)
        return customer

    def create(
        self,
        customer_id: str,
        type_code: str,
        name: str,
        created_by: str,
        expires_at: Optional[datetime] = None,
        customer_message: Optional[str] = None,
    ) -> Envelope:
        """Create a Draft envelope with one slot per document the type requires."""
        self.get_customer(customer_id)
        config = self.registry.get_config(type_code)
        now = self.clock()

        envelope = Envelope(
            id=str(uuid.uuid4()),
            reference=self._unique_reference(),
            type_code=config.type_code,
            name=name,
            customer_id=customer_id,
            created_by=created_by,
            status=EnvelopeStatus.DRAFT.value,
            expires_at=expires_at or now + timedelta(days=get_settings().ENVELOPE_DEFAULT_EXPIRY_DAYS),
            customer_message=customer_message,
            created_at=now,
            updated_at=now,
        )
        envelope.documents = [
            EnvelopeDocument(slot_id=doc.id, title=doc.name, position=i)
            for i, doc in enumerate(d for d in config.required_documents if d.required)
        ]
        self.db.add(envelope)
        self.db.commit()
        self.db.refresh(envelope)
        logger.info("Envelope %s (%s) created for customer %s", envelope.reference, type_code, customer_id)
        return envelope

    def send(self, envelope_id: str) -> Envelope:
        """Draft → PendingSignature."""
        envelope = self.get(envelope_id)
        if envelope.status != EnvelopeStatus.DRAFT.value:
            raise StageError(
                ErrorKind.INVALID_STAGE_INPUT,
                f"Envelope is {envelope.status}; only drafts can be sent",
                status=envelope.status,
            )
        envelope.status = EnvelopeStatus.PENDING_SIGNATURE.value
        envelope.updated_at = self.clock()
        self.db.commit()
        logger.info("Envelope %s sent for signature", envelope.reference)
        return envelope

    def get(self, envelope_id: str) -> Envelope:
        envelope = self.db.get(Envelope, envelope_id)
        if envelope is None:
            raise NotFoundError("Envelope", envelope_id)
        return envelope

    def _unique_reference(self) -> str:
        while True:
            reference = generate_reference()
            if not self.db.query(Envelope.id).filter(Envelope.reference == reference).first():
                return reference
