"""
Pydantic Schemas — Value objects, stage inputs and API request/response models.
"""
from datetime import date, datetime
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from esign_engine.models.enums import (
    ActorRole,
    CaptureKind,
    EnvelopeStatus,
    IdentityMethod,
    OtpChannel,
    SigningMethod,
)


# ──────────────── Context ────────────────

class Actor(BaseModel):
    """Who is performing an engine call. Passed explicitly into every operation."""
    id: str
    role: ActorRole
    display_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    class Config:
        frozen = True


class Contact(BaseModel):
    """Contact details an OTP can be delivered to."""
    email: Optional[str] = None
    phone: Optional[str] = None

    def address_for(self, channel: OtpChannel) -> Optional[str]:
        return self.phone if channel == OtpChannel.SMS else self.email


# ──────────────── Identity ────────────────

class IdentityClaims(BaseModel):
    name: Optional[str] = None
    id_number: Optional[str] = None
    date_of_birth: Optional[str] = None


class IdentityVerificationResult(BaseModel):
    """Outcome of one successful identity check. Immutable once recorded."""
    method: IdentityMethod
    matched: bool
    claims: IdentityClaims = IdentityClaims()
    confidence: Optional[float] = None
    provider: Optional[str] = None
    verified_at: datetime

    class Config:
        frozen = True


class CaptureRecord(BaseModel):
    kind: CaptureKind
    ref: str
    digest: Optional[str] = None
    received_at: datetime


class IdentityClaim(BaseModel):
    """What the signer (or agent on their behalf) asserts about identity.

    Manual: id_number + date_of_birth (individuals) or
    registration_number + registration_date (companies).
    DocumentScanFaceMatch: uses the captures already submitted to the session.
    ExternalEidAssertion: the identity provider's assertion token.
    """
    kind: Literal["identity_claim"] = "identity_claim"
    method: IdentityMethod
    id_number: Optional[str] = None
    date_of_birth: Optional[str] = None
    registration_number: Optional[str] = None
    registration_date: Optional[str] = None
    eid_assertion: Optional[str] = None
    captures: List[CaptureRecord] = []


# ──────────────── Stage Inputs ────────────────

class IdentitySelectionInput(BaseModel):
    kind: Literal["identity_selection"] = "identity_selection"
    method: IdentityMethod


class ContactConfirmationInput(BaseModel):
    kind: Literal["contact_confirmation"] = "contact_confirmation"
    channel: OtpChannel
    destination_confirmed: bool = False


class PresenceInput(BaseModel):
    kind: Literal["presence"] = "presence"
    customer_present: bool = False
    customer_identified: bool = False
    agent_declaration: bool = False


class ContinueInput(BaseModel):
    """Leave a stage whose evidence was collected through in-stage operations."""
    kind: Literal["continue"] = "continue"


class SignatureInput(BaseModel):
    kind: Literal["signature"] = "signature"
    artifact_ref: str = Field(..., min_length=1)
    digest: Optional[str] = None


class PhysicalSignatureInput(BaseModel):
    kind: Literal["physical_signature"] = "physical_signature"
    customer_signed: bool = False
    witness_present: bool = False
    signature_date: Optional[date] = None


class ScanUploadInput(BaseModel):
    kind: Literal["scan_upload"] = "scan_upload"
    scan_refs: List[str] = []


class AgentDeclarationInput(BaseModel):
    kind: Literal["agent_declaration"] = "agent_declaration"
    witnessed_signature: bool = False
    verified_identity: bool = False
    customer_consented: bool = False
    uploads_accurate: bool = False
    identity: IdentityClaim


class FinalizeInput(BaseModel):
    """Leave an OTP stage: apply signature/seal and timestamp.
    Self-service signers supply their drawn signature artifact here.
    """
    kind: Literal["finalize"] = "finalize"
    signature_artifact_ref: Optional[str] = None


StageInput = Annotated[
    Union[
        IdentitySelectionInput,
        IdentityClaim,
        ContactConfirmationInput,
        PresenceInput,
        ContinueInput,
        SignatureInput,
        PhysicalSignatureInput,
        ScanUploadInput,
        AgentDeclarationInput,
        FinalizeInput,
    ],
    Field(discriminator="kind"),
]


# ──────────────── Session Evidence ────────────────

class SignatureArtifact(BaseModel):
    kind: Literal["drawn", "scanned"]
    refs: List[str]
    digest: Optional[str] = None
    captured_at: datetime


class OtpEvidence(BaseModel):
    challenge_id: str
    channel: OtpChannel
    verified_at: datetime


class ContactEvidence(BaseModel):
    channel: OtpChannel
    masked_destination: str


class SignedDocumentRef(BaseModel):
    """What the trust service hands back after sealing and timestamping."""
    reference: str
    document_hash: str
    signature: str
    certificate_serial: Optional[str] = None
    certificate_subject: Optional[str] = None
    timestamp_token: Optional[str] = None
    timestamped_at: Optional[datetime] = None
    timestamp_authority: Optional[str] = None


class SessionEvidence(BaseModel):
    """Everything a session has collected. Stored as JSON on the session row."""
    identity_method: Optional[IdentityMethod] = None
    identity: Optional[IdentityVerificationResult] = None
    captures: List[CaptureRecord] = []
    reviewed_documents: List[str] = []
    printed_documents: List[str] = []
    presence: Optional[Dict[str, bool]] = None
    contact: Optional[ContactEvidence] = None
    otp: Optional[OtpEvidence] = None
    signature: Optional[SignatureArtifact] = None
    physical_signature: Optional[Dict[str, Optional[str]]] = None
    declarations: Optional[Dict[str, bool]] = None
    signed_document: Optional[SignedDocumentRef] = None


# ──────────────── Envelope Types ────────────────

class DocumentRequirement(BaseModel):
    id: str
    name: str
    required: bool = True


class ConsentRule(BaseModel):
    consent_id: str
    required: bool = True


class ConsentDefinition(BaseModel):
    id: str
    title: str
    text: str = ""
    category: str = "legal"


class VerificationRequirements(BaseModel):
    identity_methods: List[IdentityMethod] = list(IdentityMethod)
    signing_methods: List[SigningMethod] = list(SigningMethod)
    otp_channels: List[OtpChannel] = list(OtpChannel)
    signature_type: Literal["SES", "AES", "QES"] = "AES"


class EnvelopeTypeConfig(BaseModel):
    type_code: str
    name: str
    required_documents: List[DocumentRequirement] = []
    consents: List[ConsentRule] = []
    verification_requirements: VerificationRequirements = VerificationRequirements()

    @property
    def required_consents(self) -> List[str]:
        return [c.consent_id for c in self.consents if c.required]

    @property
    def optional_consents(self) -> List[str]:
        return [c.consent_id for c in self.consents if not c.required]


# ──────────────── API: Envelopes ────────────────

class CustomerCreateRequest(BaseModel):
    customer_type: Literal["individual", "corporate"] = "individual"
    full_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    id_number: Optional[str] = None
    date_of_birth: Optional[str] = None
    registration_number: Optional[str] = None
    registration_date: Optional[str] = None


class CustomerResponse(BaseModel):
    id: str
    customer_type: str
    full_name: str
    created_at: datetime

    class Config:
        from_attributes = True


class EnvelopeCreateRequest(BaseModel):
    customer_id: str
    type_code: str
    name: str
    expires_at: Optional[datetime] = None
    customer_message: Optional[str] = None
    send: bool = True


class EnvelopeDocumentOut(BaseModel):
    slot_id: str
    title: str
    position: int

    class Config:
        from_attributes = True


class EnvelopeResponse(BaseModel):
    id: str
    reference: str
    type_code: str
    name: str
    customer_id: str
    status: EnvelopeStatus
    expires_at: Optional[datetime] = None
    documents: List[EnvelopeDocumentOut] = []

    class Config:
        from_attributes = True


# ──────────────── API: Signing ────────────────

class SessionStartRequest(BaseModel):
    envelope_id: str
    method: SigningMethod


class ConsentAcceptRequest(BaseModel):
    consent_id: str
    value: bool = True


class CaptureSubmitRequest(BaseModel):
    kind: CaptureKind
    ref: str
    digest: Optional[str] = None


class OtpIssueRequest(BaseModel):
    channel: Optional[OtpChannel] = None


class OtpVerifyRequest(BaseModel):
    code: str = Field(..., min_length=4, max_length=10)


class ReasonRequest(BaseModel):
    reason: str = ""


class ConsentStatusOut(BaseModel):
    consent_id: str
    required: bool
    value: Optional[bool] = None
    accepted_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class OtpStatusOut(BaseModel):
    challenge_id: str
    channel: OtpChannel
    masked_destination: Optional[str] = None
    expires_at: datetime
    resend_available_at: datetime
    can_resend: bool
    resend_in: int = 0
    attempts_remaining: int


class SessionResponse(BaseModel):
    session_id: str
    envelope_id: str
    method: SigningMethod
    stage: str
    next_stage: Optional[str] = None
    consents: List[ConsentStatusOut] = []
    identity_verified: bool = False
    otp_verified: bool = False
    otp: Optional[OtpStatusOut] = None
    signed_document_ref: Optional[str] = None
    created_at: datetime
    updated_at: datetime


# ──────────────── Admin / Audit ────────────────

class AuditEventOut(BaseModel):
    id: int
    session_id: str
    sequence: int
    event_type: str
    actor_id: str
    actor_role: str
    payload_hash: Optional[str] = None
    previous_hash: Optional[str] = None
    timestamp: datetime
    event_metadata: Optional[Dict] = None

    class Config:
        from_attributes = True


class ChainVerificationResponse(BaseModel):
    valid: bool
    total_entries: int
    broken_at: Optional[int] = None
    message: Optional[str] = None


class SignedDocumentVerification(BaseModel):
    """Public check of a signed document: seal metadata plus its audit chain verdict."""
    signed_document_ref: str
    envelope_reference: str
    envelope_name: str
    signed_at: Optional[datetime] = None
    document_hash: Optional[str] = None
    certificate_serial: Optional[str] = None
    timestamp_authority: Optional[str] = None
    timestamped_at: Optional[datetime] = None
    chain: ChainVerificationResponse


# ──────────────── Generic ────────────────

class ErrorResponse(BaseModel):
    detail: str
    error_code: Optional[str] = None
    recovery: Optional[str] = None
    context: Optional[Dict] = None
