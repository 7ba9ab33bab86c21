"""
Domain enums shared by the ORM models, schemas and engine services.
Values are stored as plain strings in the database.
"""
from enum import Enum


class EnvelopeStatus(str, Enum):
    DRAFT = "Draft"
    PENDING_SIGNATURE = "PendingSignature"
    IN_PROGRESS = "InProgress"
    SIGNED = "Signed"
    EXPIRED = "Expired"
    REJECTED = "Rejected"


class CustomerType(str, Enum):
    INDIVIDUAL = "individual"
    CORPORATE = "corporate"


class SigningMethod(str, Enum):
    SELF_SERVICE = "SelfService"
    AGENT_ASSISTED = "AgentAssisted"
    PHYSICAL_UPLOAD = "PhysicalUpload"


class Stage(str, Enum):
    # Self-service
    IDENTITY_SELECTION = "IdentitySelection"
    IDENTITY_VERIFYING = "IdentityVerifying"
    CONTACT_CONFIRMATION = "ContactConfirmation"
    OTP_VERIFICATION = "OtpVerification"
    # Agent-assisted
    CONFIRM_PRESENCE = "ConfirmPresence"
    REVIEW_DOCUMENTS = "ReviewDocuments"
    CAPTURE_CONSENT = "CaptureConsent"
    VERIFY_CUSTOMER_IDENTITY = "VerifyCustomerIdentity"
    CAPTURE_SIGNATURE = "CaptureSignature"
    # Physical upload
    PRINT_DOCUMENTS = "PrintDocuments"
    CUSTOMER_SIGNS = "CustomerSigns"
    SCAN_UPLOAD = "ScanUpload"
    AGENT_DECLARATION = "AgentDeclaration"
    AGENT_OTP_VERIFICATION = "AgentOtpVerification"
    # Terminal
    SIGNING_COMPLETED = "SigningCompleted"
    ABANDONED = "Abandoned"


class OtpChannel(str, Enum):
    SMS = "SMS"
    EMAIL = "Email"


class IdentityMethod(str, Enum):
    MANUAL = "Manual"
    DOCUMENT_SCAN_FACE_MATCH = "DocumentScanFaceMatch"
    EXTERNAL_EID = "ExternalEidAssertion"


class CaptureKind(str, Enum):
    FRONT = "front"
    BACK = "back"
    SELFIE = "selfie"


class ActorRole(str, Enum):
    CUSTOMER = "customer"
    AGENT = "agent"
    SYSTEM = "system"


class AuditEventType(str, Enum):
    SESSION_STARTED = "SessionStarted"
    IDENTITY_METHOD_SELECTED = "IdentityMethodSelected"
    IDENTITY_CAPTURE_RECEIVED = "IdentityCaptureReceived"
    IDENTITY_VERIFIED = "IdentityVerified"
    IDENTITY_INVALIDATED = "IdentityInvalidated"
    CONSENT_ACCEPTED = "ConsentAccepted"
    CONSENT_CAPTURED = "ConsentCaptured"
    DOCUMENT_REVIEWED = "DocumentReviewed"
    DOCUMENTS_REVIEWED = "DocumentsReviewed"
    DOCUMENT_PRINTED = "DocumentPrinted"
    DOCUMENTS_PRINTED = "DocumentsPrinted"
    PRESENCE_CONFIRMED = "PresenceConfirmed"
    CONTACT_CONFIRMED = "ContactConfirmed"
    OTP_ISSUED = "OtpIssued"
    OTP_VERIFIED = "OtpVerified"
    SIGNATURE_CAPTURED = "SignatureCaptured"
    PHYSICAL_SIGNATURE_CONFIRMED = "PhysicalSignatureConfirmed"
    SCANS_UPLOADED = "ScansUploaded"
    AGENT_DECLARED = "AgentDeclared"
    SEAL_APPLIED = "SealApplied"
    DOCUMENT_SIGNED = "DocumentSigned"
    SESSION_ABANDONED = "SessionAbandoned"
    DOCUMENT_REJECTED = "DocumentRejected"
