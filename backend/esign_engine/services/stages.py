"""
Stage flows per signing method, and which input each stage accepts.
The session's `stage` column is the only source of truth for progress.
"""
from typing import Dict, List, Optional, Type

from pydantic import BaseModel

from esign_engine.models.enums import ActorRole, AuditEventType, SigningMethod, Stage
from esign_engine.schemas.schemas import (
    AgentDeclarationInput,
    ContactConfirmationInput,
    ContinueInput,
    FinalizeInput,
    IdentityClaim,
    IdentitySelectionInput,
    PhysicalSignatureInput,
    PresenceInput,
    ScanUploadInput,
    SignatureInput,
)

FLOWS: Dict[SigningMethod, List[Stage]] = {
    SigningMethod.SELF_SERVICE: [
        Stage.IDENTITY_SELECTION,
        Stage.IDENTITY_VERIFYING,
        Stage.CONTACT_CONFIRMATION,
        Stage.OTP_VERIFICATION,
        Stage.SIGNING_COMPLETED,
    ],
    SigningMethod.AGENT_ASSISTED: [
        Stage.CONFIRM_PRESENCE,
        Stage.REVIEW_DOCUMENTS,
        Stage.CAPTURE_CONSENT,
        Stage.VERIFY_CUSTOMER_IDENTITY,
        Stage.CAPTURE_SIGNATURE,
        Stage.OTP_VERIFICATION,
        Stage.SIGNING_COMPLETED,
    ],
    SigningMethod.PHYSICAL_UPLOAD: [
        Stage.PRINT_DOCUMENTS,
        Stage.CUSTOMER_SIGNS,
        Stage.SCAN_UPLOAD,
        Stage.AGENT_DECLARATION,
        Stage.AGENT_OTP_VERIFICATION,
        Stage.SIGNING_COMPLETED,
    ],
}

STAGE_INPUTS: Dict[Stage, Type[BaseModel]] = {
    Stage.IDENTITY_SELECTION: IdentitySelectionInput,
    Stage.IDENTITY_VERIFYING: IdentityClaim,
    Stage.CONTACT_CONFIRMATION: ContactConfirmationInput,
    Stage.OTP_VERIFICATION: FinalizeInput,
    Stage.CONFIRM_PRESENCE: PresenceInput,
    Stage.REVIEW_DOCUMENTS: ContinueInput,
    Stage.CAPTURE_CONSENT: ContinueInput,
    Stage.VERIFY_CUSTOMER_IDENTITY: IdentityClaim,
    Stage.CAPTURE_SIGNATURE: SignatureInput,
    Stage.PRINT_DOCUMENTS: ContinueInput,
    Stage.CUSTOMER_SIGNS: PhysicalSignatureInput,
    Stage.SCAN_UPLOAD: ScanUploadInput,
    Stage.AGENT_DECLARATION: AgentDeclarationInput,
    Stage.AGENT_OTP_VERIFICATION: FinalizeInput,
}

EXIT_EVENTS: Dict[Stage, AuditEventType] = {
    Stage.IDENTITY_SELECTION: AuditEventType.IDENTITY_METHOD_SELECTED,
    Stage.IDENTITY_VERIFYING: AuditEventType.IDENTITY_VERIFIED,
    Stage.CONTACT_CONFIRMATION: AuditEventType.CONTACT_CONFIRMED,
    Stage.OTP_VERIFICATION: AuditEventType.DOCUMENT_SIGNED,
    Stage.CONFIRM_PRESENCE: AuditEventType.PRESENCE_CONFIRMED,
    Stage.REVIEW_DOCUMENTS: AuditEventType.DOCUMENTS_REVIEWED,
    Stage.CAPTURE_CONSENT: AuditEventType.CONSENT_CAPTURED,
    Stage.VERIFY_CUSTOMER_IDENTITY: AuditEventType.IDENTITY_VERIFIED,
    Stage.CAPTURE_SIGNATURE: AuditEventType.SIGNATURE_CAPTURED,
    Stage.PRINT_DOCUMENTS: AuditEventType.DOCUMENTS_PRINTED,
    Stage.CUSTOMER_SIGNS: AuditEventType.PHYSICAL_SIGNATURE_CONFIRMED,
    Stage.SCAN_UPLOAD: AuditEventType.SCANS_UPLOADED,
    Stage.AGENT_DECLARATION: AuditEventType.AGENT_DECLARED,
    Stage.AGENT_OTP_VERIFICATION: AuditEventType.DOCUMENT_SIGNED,
}

IDENTITY_STAGES = {Stage.IDENTITY_VERIFYING, Stage.VERIFY_CUSTOMER_IDENTITY, Stage.AGENT_DECLARATION}
CONSENT_STAGES = {Stage.CONTACT_CONFIRMATION, Stage.CAPTURE_CONSENT, Stage.CUSTOMER_SIGNS}
OTP_STAGES = {Stage.OTP_VERIFICATION, Stage.AGENT_OTP_VERIFICATION}
CAPTURE_STAGES = {Stage.IDENTITY_VERIFYING, Stage.VERIFY_CUSTOMER_IDENTITY, Stage.AGENT_DECLARATION}
TERMINAL_STAGES = {Stage.SIGNING_COMPLETED, Stage.ABANDONED}

DOCUMENT_MARK_STAGES = {
    Stage.REVIEW_DOCUMENTS: ("reviewed_documents", AuditEventType.DOCUMENT_REVIEWED),
    Stage.PRINT_DOCUMENTS: ("printed_documents", AuditEventType.DOCUMENT_PRINTED),
}

SIGNER_ROLE: Dict[SigningMethod, ActorRole] = {
    SigningMethod.SELF_SERVICE: ActorRole.CUSTOMER,
    SigningMethod.AGENT_ASSISTED: ActorRole.AGENT,
    SigningMethod.PHYSICAL_UPLOAD: ActorRole.AGENT,
}


def first_stage(method: SigningMethod) -> Stage:
    return FLOWS[SigningMethod(method)][0]


def next_stage(method: SigningMethod, stage: Stage) -> Optional[Stage]:
    flow = FLOWS[SigningMethod(method)]
    stage = Stage(stage)
    if stage not in flow or stage == flow[-1]:
        return None
    return flow[flow.index(stage) + 1]


def identity_stage(method: SigningMethod) -> Stage:
    """The stage a session returns to when its identity result is invalidated."""
    flow = FLOWS[SigningMethod(method)]
    return next(stage for stage in flow if stage in IDENTITY_STAGES)


def flow_includes(method: SigningMethod, stage: Stage) -> bool:
    return Stage(stage) in FLOWS[SigningMethod(method)]
