"""
Signing Errors — the engine's error taxonomy.

Every error names what went wrong (`kind`) and what the caller should do
next (`recovery`): retry the same stage, re-enter data, re-issue a code,
switch verification method, or nothing (the session is closed).
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    # Input / precondition
    INCOMPLETE_REQUIREMENT = "IncompleteRequirement"
    INVALID_STAGE_INPUT = "InvalidStageInput"
    UNKNOWN_CONSENT = "UnknownConsent"
    IDENTITY_MISMATCH = "IdentityMismatch"
    LOW_CONFIDENCE_MATCH = "LowConfidenceMatch"
    METHOD_NOT_ALLOWED = "MethodNotAllowed"
    ACTOR_NOT_PERMITTED = "ActorNotPermitted"
    ALREADY_VERIFIED = "AlreadyVerified"

    # Resource / time
    EXPIRED = "Expired"
    EXHAUSTED = "Exhausted"
    MISMATCH = "Mismatch"
    CONSUMED = "Consumed"
    SUPERSEDED = "Superseded"
    NO_ACTIVE_CHALLENGE = "NoActiveChallenge"
    COOLDOWN_ACTIVE = "CooldownActive"
    CHANNEL_UNAVAILABLE = "ChannelUnavailable"

    # External dependency
    PROVIDER_UNAVAILABLE = "ProviderUnavailable"
    FINALIZATION_FAILED = "FinalizationFailed"
    DELIVERY_ERROR = "DeliveryError"

    # Integrity
    AUDIT_WRITE_FAILED = "AuditWriteFailed"

    # Session lifecycle
    SESSION_BUSY = "SessionBusy"
    SESSION_CLOSED = "SessionClosed"
    SESSION_EXPIRED = "SessionExpired"
    SESSION_ALREADY_ACTIVE = "SessionAlreadyActive"
    NOT_FOUND = "NotFound"


class Recovery(str, Enum):
    RETRY = "retry_same_stage"
    REENTER = "reenter_data"
    REISSUE = "reissue"
    SWITCH_METHOD = "switch_method"
    NONE = "none"


DEFAULT_RECOVERY: Dict[ErrorKind, Recovery] = {
    ErrorKind.INCOMPLETE_REQUIREMENT: Recovery.REENTER,
    ErrorKind.INVALID_STAGE_INPUT: Recovery.REENTER,
    ErrorKind.UNKNOWN_CONSENT: Recovery.REENTER,
    ErrorKind.IDENTITY_MISMATCH: Recovery.REENTER,
    ErrorKind.LOW_CONFIDENCE_MATCH: Recovery.SWITCH_METHOD,
    ErrorKind.METHOD_NOT_ALLOWED: Recovery.SWITCH_METHOD,
    ErrorKind.ACTOR_NOT_PERMITTED: Recovery.NONE,
    ErrorKind.ALREADY_VERIFIED: Recovery.NONE,
    ErrorKind.EXPIRED: Recovery.REISSUE,
    ErrorKind.EXHAUSTED: Recovery.REISSUE,
    ErrorKind.MISMATCH: Recovery.REENTER,
    ErrorKind.CONSUMED: Recovery.REISSUE,
    ErrorKind.SUPERSEDED: Recovery.REENTER,
    ErrorKind.NO_ACTIVE_CHALLENGE: Recovery.REISSUE,
    ErrorKind.COOLDOWN_ACTIVE: Recovery.RETRY,
    ErrorKind.CHANNEL_UNAVAILABLE: Recovery.SWITCH_METHOD,
    ErrorKind.PROVIDER_UNAVAILABLE: Recovery.RETRY,
    ErrorKind.FINALIZATION_FAILED: Recovery.RETRY,
    ErrorKind.DELIVERY_ERROR: Recovery.RETRY,
    ErrorKind.AUDIT_WRITE_FAILED: Recovery.RETRY,
    ErrorKind.SESSION_BUSY: Recovery.RETRY,
    ErrorKind.SESSION_CLOSED: Recovery.NONE,
    ErrorKind.SESSION_EXPIRED: Recovery.NONE,
    ErrorKind.SESSION_ALREADY_ACTIVE: Recovery.NONE,
    ErrorKind.NOT_FOUND: Recovery.NONE,
}


class SigningError(Exception):
    """Base exception for all engine errors."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str = "",
        recovery: Optional[Recovery] = None,
        **detail: Any,
    ):
        super().__init__(message or kind.value)
        self.kind = kind
        self.message = message or kind.value
        self.recovery = recovery or DEFAULT_RECOVERY.get(kind, Recovery.NONE)
        self.detail: Dict[str, Any] = detail

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detail": self.message,
            "error_code": self.kind.value,
            "recovery": self.recovery.value,
            "context": self.detail,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.kind.value!r}, {self.message!r})"


class StageError(SigningError):
    """A stage precondition or lifecycle rule was not met. Session unchanged."""


class ConsentError(SigningError):
    """Consent could not be recorded."""


class IdentityError(SigningError):
    """Identity verification failed or the provider could not be reached."""


class OtpError(SigningError):
    """OTP issuance or verification failed."""


class DeliveryError(SigningError):
    """The delivery channel could not send the code."""

    def __init__(self, message: str = "", **detail: Any):
        super().__init__(ErrorKind.DELIVERY_ERROR, message, **detail)


class FinalizationError(SigningError):
    """The trust service could not finalize the signature. Retryable."""

    def __init__(self, message: str = "", **detail: Any):
        super().__init__(ErrorKind.FINALIZATION_FAILED, message, **detail)


class AuditWriteError(SigningError):
    """The audit ledger rejected a write; the enclosing transition is rolled back."""

    def __init__(self, message: str = "", **detail: Any):
        super().__init__(ErrorKind.AUDIT_WRITE_FAILED, message, **detail)


class SessionBusyError(SigningError):
    """Another mutating call is already in flight for this session."""

    def __init__(self, session_id: str):
        super().__init__(
            ErrorKind.SESSION_BUSY,
            f"Session {session_id} is already processing another request",
            session_id=session_id,
        )


class NotFoundError(SigningError):
    def __init__(self, what: str, identifier: str):
        super().__init__(ErrorKind.NOT_FOUND, f"{what} not found: {identifier}", resource=what, id=identifier)
