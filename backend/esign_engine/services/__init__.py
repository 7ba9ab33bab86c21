from esign_engine.services.audit_service import AuditService
from esign_engine.services.consent_service import ConsentLedger
from esign_engine.services.envelope_service import EnvelopeService
from esign_engine.services.otp_service import OtpService
from esign_engine.services.signing_service import SessionGate, SigningEngine

__all__ = ["AuditService", "ConsentLedger", "EnvelopeService", "OtpService", "SessionGate", "SigningEngine"]
