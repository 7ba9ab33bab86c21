from esign_engine.models.customer import Customer
from esign_engine.models.envelope import Envelope, EnvelopeDocument
from esign_engine.models.session import SigningSession, ConsentRequirement
from esign_engine.models.otp import OtpChallenge
from esign_engine.models.audit import AuditEvent

__all__ = [
    "Customer", "Envelope", "EnvelopeDocument", "SigningSession",
    "ConsentRequirement", "OtpChallenge", "AuditEvent",
]
