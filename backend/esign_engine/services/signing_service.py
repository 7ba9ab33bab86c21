"""
Signing Engine — Drives one envelope + signer through the stages of a signing method.

Every mutating call runs inside one database transaction guarded by the
SessionGate: validate, append the audit event, apply the new state, commit.
Any failure rolls the whole call back, so a stage change never exists
without its event and a failed call leaves the session as it was.
"""
import asyncio
import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Set, Tuple

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from esign_engine.config import Settings, get_settings
from esign_engine.exceptions import (
    DeliveryError,
    ErrorKind,
    FinalizationError,
    IdentityError,
    NotFoundError,
    OtpError,
    SessionBusyError,
    StageError,
)
from esign_engine.models.envelope import Envelope
from esign_engine.models.enums import (
    ActorRole,
    AuditEventType,
    CaptureKind,
    EnvelopeStatus,
    IdentityMethod,
    OtpChannel,
    SigningMethod,
    Stage,
)
from esign_engine.models.otp import OtpChallenge
from esign_engine.models.session import SigningSession
from esign_engine.schemas.schemas import (
    Actor,
    AgentDeclarationInput,
    CaptureRecord,
    ConsentStatusOut,
    Contact,
    ContactConfirmationInput,
    ContactEvidence,
    FinalizeInput,
    IdentityClaim,
    IdentitySelectionInput,
    OtpEvidence,
    OtpStatusOut,
    PhysicalSignatureInput,
    PresenceInput,
    ScanUploadInput,
    SessionEvidence,
    SessionResponse,
    SignatureArtifact,
    SignatureInput,
    SignedDocumentVerification,
)
from esign_engine.services.audit_service import AuditService
from esign_engine.services.consent_service import ConsentLedger
from esign_engine.services.envelope_types import EnvelopeTypeRegistry
from esign_engine.services.identity_service import IdentityStrategy
from esign_engine.services.notification_service import DeliveryChannel
from esign_engine.services.otp_service import OtpPolicy, OtpService, mask_destination
from esign_engine.services.stages import (
    CAPTURE_STAGES,
    DOCUMENT_MARK_STAGES,
    EXIT_EVENTS,
    OTP_STAGES,
    SIGNER_ROLE,
    STAGE_INPUTS,
    first_stage,
    identity_stage,
    next_stage,
)
from esign_engine.services.trust_service import TrustService
from esign_engine.utils.clock import Clock, seconds_until, utcnow

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = Actor(id="system", role=ActorRole.SYSTEM)

CAPTURE_ORDER = [CaptureKind.FRONT, CaptureKind.BACK, CaptureKind.SELFIE]


class SessionGate:
    """Process-wide single-writer guard. A second call for a busy key is rejected, never queued."""

    def __init__(self):
        self._lock = threading.Lock()
        self._in_flight: Set[str] = set()

    @contextmanager
    def hold(self, key: str):
        with self._lock:
            if key in self._in_flight:
                raise SessionBusyError(key)
            self._in_flight.add(key)
        try:
            yield
        finally:
            with self._lock:
                self._in_flight.discard(key)

    def is_busy(self, key: str) -> bool:
        with self._lock:
            return key in self._in_flight


@dataclass
class Transition:
    """What a stage handler wants to record; applied only after the audit append."""
    evidence: SessionEvidence
    metadata: Dict = field(default_factory=dict)
    changes: Dict = field(default_factory=dict)
    events: List[Tuple[AuditEventType, Dict]] = field(default_factory=list)


def _incomplete(message: str, **detail) -> StageError:
    return StageError(ErrorKind.INCOMPLETE_REQUIREMENT, message, **detail)


class SigningEngine:
    """Signing session state machine."""

    def __init__(
        self,
        db: Session,
        registry: EnvelopeTypeRegistry,
        channels: Mapping[OtpChannel, DeliveryChannel],
        strategies: Mapping[IdentityMethod, IdentityStrategy],
        trust_service: TrustService,
        gate: Optional[SessionGate] = None,
        settings: Optional[Settings] = None,
        otp_policy: Optional[OtpPolicy] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.registry = registry
        self.channels = channels
        self.strategies = strategies
        self.trust_service = trust_service
        self.gate = gate or SessionGate()
        self.settings = settings or get_settings()
        self.clock = clock

        self.audit = AuditService(db, clock)
        self.otp = OtpService(
            db, channels,
            policy=otp_policy or OtpPolicy.from_settings(self.settings),
            secret=self.settings.SECRET_KEY,
            clock=clock,
        )
        self.consents = ConsentLedger(db, registry, clock)

        self._handlers = {
            Stage.IDENTITY_SELECTION: self._select_identity_method,
            Stage.IDENTITY_VERIFYING: self._verify_identity,
            Stage.CONTACT_CONFIRMATION: self._confirm_contact,
            Stage.OTP_VERIFICATION: self._finalize,
            Stage.CONFIRM_PRESENCE: self._confirm_presence,
            Stage.REVIEW_DOCUMENTS: self._documents_done,
            Stage.CAPTURE_CONSENT: self._consents_done,
            Stage.VERIFY_CUSTOMER_IDENTITY: self._verify_identity,
            Stage.CAPTURE_SIGNATURE: self._capture_signature,
            Stage.PRINT_DOCUMENTS: self._documents_done,
            Stage.CUSTOMER_SIGNS: self._customer_signs,
            Stage.SCAN_UPLOAD: self._scan_upload,
            Stage.AGENT_DECLARATION: self._agent_declaration,
            Stage.AGENT_OTP_VERIFICATION: self._finalize,
        }

    # ──────────────── Transaction plumbing ────────────────

    @contextmanager
    def _transaction(self, key: str):
        with self.gate.hold(key):
            try:
                yield
                self.db.commit()
            except StaleDataError as exc:
                self.db.rollback()
                logger.warning("Concurrent write detected on %s", key)
                raise SessionBusyError(key) from exc
            except Exception:
                self.db.rollback()
                raise

    def _load(self, session_id: str) -> SigningSession:
        session = self.db.get(SigningSession, session_id)
        if session is None:
            raise NotFoundError("Signing session", session_id)
        return session

    @staticmethod
    def _evidence(session: SigningSession) -> SessionEvidence:
        return SessionEvidence.model_validate(session.evidence or {})

    def _apply(self, session: SigningSession, evidence: SessionEvidence,
               stage: Optional[Stage] = None, **changes) -> None:
        # Reassign the JSON column so the change is tracked
        session.evidence = evidence.model_dump(mode="json")
        if stage is not None:
            session.stage = Stage(stage).value
        for name, value in changes.items():
            setattr(session, name, value)
        session.updated_at = self.clock()

    def _check_actor(self, session: SigningSession, actor: Actor, allow_system: bool = False) -> None:
        if allow_system and actor.role == ActorRole.SYSTEM:
            return
        expected = SIGNER_ROLE[SigningMethod(session.method)]
        if actor.role != expected:
            raise StageError(
                ErrorKind.ACTOR_NOT_PERMITTED,
                f"{session.method} sessions are driven by the {expected.value}",
                actor_role=actor.role.value,
            )
        if expected == ActorRole.CUSTOMER and actor.id != session.signer_id:
            raise StageError(ErrorKind.ACTOR_NOT_PERMITTED, "Only the signer may act on this session")

    def _ensure_open(self, session: SigningSession) -> None:
        """Reject closed sessions; abandon expired or idle ones on first touch."""
        if session.is_terminal:
            raise StageError(ErrorKind.SESSION_CLOSED, f"Session is {session.stage}", stage=session.stage)

        reason = self._expiry_reason(session)
        if reason:
            self._expire(session, reason)
            self.db.commit()
            raise StageError(ErrorKind.SESSION_EXPIRED, "Signing session has expired", reason=reason)

    def _expiry_reason(self, session: SigningSession) -> Optional[str]:
        now = self.clock()
        if session.envelope.is_expired(now):
            return "envelope_expired"
        idle_limit = self.settings.SESSION_IDLE_TIMEOUT_MINUTES * 60
        if session.updated_at and (now - session.updated_at).total_seconds() > idle_limit:
            return "session_idle"
        return None

    def _expire(self, session: SigningSession, reason: str) -> None:
        from_stage = session.stage
        self.audit.append(session.id, AuditEventType.SESSION_ABANDONED, SYSTEM_ACTOR, {
            "reason": reason,
            "from_stage": from_stage,
            "to_stage": Stage.ABANDONED.value,
        })
        self._apply(session, self._evidence(session), Stage.ABANDONED)
        envelope = session.envelope
        envelope.status = (
            EnvelopeStatus.EXPIRED.value if reason == "envelope_expired"
            else EnvelopeStatus.PENDING_SIGNATURE.value
        )
        logger.info("Session %s abandoned at %s (%s)", session.id, from_stage, reason)

    def _require_stage(self, session: SigningSession, allowed, operation: str) -> Stage:
        stage = Stage(session.stage)
        if stage not in allowed:
            raise StageError(
                ErrorKind.INVALID_STAGE_INPUT,
                f"{operation} is not available in stage {stage.value}",
                stage=stage.value,
            )
        return stage

    # ──────────────── Session lifecycle ────────────────

    def start_session(self, envelope_id: str, method: SigningMethod, actor: Actor) -> SigningSession:
        """Open the single active signing session for an envelope."""
        method = SigningMethod(method)
        with self._transaction(f"env:{envelope_id}"):
            envelope = self.db.get(Envelope, envelope_id)
            if envelope is None:
                raise NotFoundError("Envelope", envelope_id)

            active = (
                self.db.query(SigningSession)
                .filter(
                    SigningSession.envelope_id == envelope_id,
                    SigningSession.stage.notin_([Stage.SIGNING_COMPLETED.value, Stage.ABANDONED.value]),
                )
                .first()
            )
            if active is not None:
                reason = self._expiry_reason(active)
                if not reason:
                    raise StageError(
                        ErrorKind.SESSION_ALREADY_ACTIVE,
                        "A signing session is already in progress for this envelope",
                        session_id=active.id,
                    )
                self._expire(active, reason)

            now = self.clock()
            if envelope.is_expired(now) or envelope.status == EnvelopeStatus.EXPIRED.value:
                envelope.status = EnvelopeStatus.EXPIRED.value
                self.db.commit()
                raise StageError(ErrorKind.SESSION_EXPIRED, "Envelope has expired", envelope_id=envelope_id)
            if envelope.status != EnvelopeStatus.PENDING_SIGNATURE.value:
                raise StageError(
                    ErrorKind.SESSION_CLOSED,
                    f"Envelope is {envelope.status}; it cannot be signed",
                    status=envelope.status,
                )

            config = self.registry.get_config(envelope.type_code)
            if method not in config.verification_requirements.signing_methods:
                raise StageError(
                    ErrorKind.METHOD_NOT_ALLOWED,
                    f"{method.value} is not allowed for {config.name}",
                    method=method.value,
                )

            expected = SIGNER_ROLE[method]
            if actor.role != expected or (expected == ActorRole.CUSTOMER and actor.id != envelope.customer_id):
                raise StageError(
                    ErrorKind.ACTOR_NOT_PERMITTED,
                    f"{method.value} signing must be started by the {expected.value}",
                )

            stage = first_stage(method)
            session = SigningSession(
                id=str(uuid.uuid4()),
                envelope_id=envelope.id,
                signer_id=envelope.customer_id,
                method=method.value,
                stage=stage.value,
                evidence={},
                otp_attempts=0,
                created_by=actor.id,
                created_at=now,
                updated_at=now,
            )
            session.consents = self.consents.requirements_for(envelope.type_code)
            self.db.add(session)
            self.db.flush()

            self.audit.append(session.id, AuditEventType.SESSION_STARTED, actor, {
                "method": method.value,
                "envelope_type": envelope.type_code,
                "to_stage": stage.value,
            })
            envelope.status = EnvelopeStatus.IN_PROGRESS.value
            envelope.updated_at = now

        logger.info("Session %s started for envelope %s (%s)", session.id, envelope.reference, method.value)
        return session

    async def advance(self, session_id: str, stage_input, actor: Actor) -> SigningSession:
        """Leave the current stage with the one input it accepts.

        Raises:
            StageError: wrong input type or an unmet precondition. Session unchanged.
            IdentityError / OtpError: the stage's check failed. Session unchanged.
            FinalizationError: the trust service failed. Session stays in its OTP stage.
        """
        with self._transaction(session_id):
            session = self._load(session_id)
            self._check_actor(session, actor)
            self._ensure_open(session)

            stage = Stage(session.stage)
            expected = STAGE_INPUTS[stage]
            if not isinstance(stage_input, expected):
                raise StageError(
                    ErrorKind.INVALID_STAGE_INPUT,
                    f"Stage {stage.value} expects '{expected.model_fields['kind'].default}' input",
                    stage=stage.value,
                    expected=expected.model_fields["kind"].default,
                )

            transition = await self._handlers[stage](session, stage_input, actor)
            target = next_stage(session.method, stage)

            for event_type, event_metadata in transition.events:
                self.audit.append(session.id, event_type, actor, event_metadata)
            metadata = dict(transition.metadata)
            metadata.update(from_stage=stage.value, to_stage=target.value)
            self.audit.append(session.id, EXIT_EVENTS[stage], actor, metadata)
            self._apply(session, transition.evidence, target, **transition.changes)

            if target == Stage.SIGNING_COMPLETED:
                session.envelope.status = EnvelopeStatus.SIGNED.value
                session.envelope.updated_at = self.clock()

        logger.info("Session %s: %s -> %s", session_id, stage.value, target.value)
        if target == Stage.SIGNING_COMPLETED:
            await self._send_completion_notice(session)
        return session

    async def _send_completion_notice(self, session: SigningSession) -> bool:
        """Tell the signer where to check their signed document. Best-effort."""
        signer = session.signer
        channel = OtpChannel.EMAIL if signer.email else OtpChannel.SMS
        destination = signer.email or signer.phone
        delivery = self.channels.get(channel)
        if not destination or delivery is None:
            logger.info("No %s contact for completion notice on session %s", channel.value, session.id)
            return False

        link = f"{self.settings.PUBLIC_BASE_URL.rstrip('/')}/api/signing/verify/{session.signed_document_ref}"
        text = (
            f"Dear {signer.full_name}, your signature on '{session.envelope.name}' "
            f"({session.envelope.reference}) is complete. Verify the signed document at {link}"
        )
        try:
            await asyncio.wait_for(
                delivery.notify(destination, channel, "Your document has been signed", text),
                timeout=self.settings.OTP_DELIVERY_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.warning("Completion notice for session %s timed out", session.id)
            return False
        except DeliveryError as exc:
            logger.warning("Completion notice for session %s not delivered: %s", session.id, exc.message)
            return False
        return True

    def abandon(self, session_id: str, actor: Actor, reason: str = "") -> SigningSession:
        """Give up on this attempt. The envelope can be signed in a new session."""
        with self._transaction(session_id):
            session = self._load(session_id)
            self._check_actor(session, actor, allow_system=True)
            self._ensure_open(session)
            from_stage = session.stage
            self.audit.append(session.id, AuditEventType.SESSION_ABANDONED, actor, {
                "reason": reason,
                "from_stage": from_stage,
                "to_stage": Stage.ABANDONED.value,
            })
            self._apply(session, self._evidence(session), Stage.ABANDONED)
            session.envelope.status = EnvelopeStatus.PENDING_SIGNATURE.value
        logger.info("Session %s abandoned at %s", session_id, from_stage)
        return session

    def decline(self, session_id: str, actor: Actor, reason: str = "") -> SigningSession:
        """The signer rejects the envelope outright."""
        with self._transaction(session_id):
            session = self._load(session_id)
            self._check_actor(session, actor)
            self._ensure_open(session)
            from_stage = session.stage
            self.audit.append(session.id, AuditEventType.DOCUMENT_REJECTED, actor, {
                "reason": reason,
                "from_stage": from_stage,
                "to_stage": Stage.ABANDONED.value,
            })
            self._apply(session, self._evidence(session), Stage.ABANDONED)
            session.envelope.status = EnvelopeStatus.REJECTED.value
        logger.info("Envelope for session %s rejected by %s", session_id, actor.id)
        return session

    # ──────────────── In-stage evidence ────────────────

    def accept_consent(self, session_id: str, consent_id: str, value: bool, actor: Actor) -> SigningSession:
        with self._transaction(session_id):
            session = self._load(session_id)
            self._check_actor(session, actor)
            self._ensure_open(session)
            self.consents.ensure_known(session, consent_id)

            self.audit.append(session.id, AuditEventType.CONSENT_ACCEPTED, actor, {
                "consent_id": consent_id,
                "value": bool(value),
                "stage": session.stage,
            })
            self.consents.accept(session, consent_id, value, actor.id)
            self._apply(session, self._evidence(session))
        return session

    def mark_document(self, session_id: str, slot_id: str, actor: Actor) -> SigningSession:
        """Mark one document slot reviewed (agent flow) or printed (physical flow)."""
        with self._transaction(session_id):
            session = self._load(session_id)
            self._check_actor(session, actor)
            self._ensure_open(session)
            stage = self._require_stage(session, DOCUMENT_MARK_STAGES, "Marking documents")
            field_name, event_type = DOCUMENT_MARK_STAGES[stage]

            if slot_id not in session.envelope.slot_ids:
                raise StageError(ErrorKind.INVALID_STAGE_INPUT, f"Unknown document slot '{slot_id}'", slot_id=slot_id)

            evidence = self._evidence(session)
            marked = getattr(evidence, field_name)
            if slot_id in marked:
                return session

            self.audit.append(session.id, event_type, actor, {"slot_id": slot_id, "stage": stage.value})
            setattr(evidence, field_name, marked + [slot_id])
            self._apply(session, evidence)
        return session

    def submit_capture(self, session_id: str, kind: CaptureKind, ref: str, actor: Actor,
                       digest: Optional[str] = None) -> SigningSession:
        """Accept one ID capture. Order is front, back, selfie; a new front restarts the set."""
        kind = CaptureKind(kind)
        with self._transaction(session_id):
            session = self._load(session_id)
            self._check_actor(session, actor)
            self._ensure_open(session)
            stage = self._require_stage(session, CAPTURE_STAGES, "Submitting ID captures")

            evidence = self._evidence(session)
            if evidence.identity is not None:
                raise StageError(ErrorKind.ALREADY_VERIFIED, "Identity is already verified for this session")
            if stage == Stage.IDENTITY_VERIFYING and evidence.identity_method != IdentityMethod.DOCUMENT_SCAN_FACE_MATCH:
                raise StageError(
                    ErrorKind.INVALID_STAGE_INPUT,
                    "Captures are only used by document scan verification",
                    identity_method=evidence.identity_method.value if evidence.identity_method else None,
                )

            if kind == CaptureKind.FRONT:
                captures = []
            else:
                captures = list(evidence.captures)
                expected = CAPTURE_ORDER[len(captures)] if len(captures) < len(CAPTURE_ORDER) else CaptureKind.FRONT
                if kind != expected:
                    raise StageError(
                        ErrorKind.INVALID_STAGE_INPUT,
                        f"Expected the {expected.value} capture next",
                        expected=expected.value,
                    )

            self.audit.append(session.id, AuditEventType.IDENTITY_CAPTURE_RECEIVED, actor, {
                "kind": kind.value,
                "ref": ref,
                "digest": digest,
                "stage": stage.value,
            })
            captures.append(CaptureRecord(kind=kind, ref=ref, digest=digest, received_at=self.clock()))
            evidence.captures = captures
            self._apply(session, evidence)
        return session

    async def issue_otp(self, session_id: str, actor: Actor,
                        channel: Optional[OtpChannel] = None) -> OtpChallenge:
        """Send a fresh code, superseding any active one. Honors the resend cooldown."""
        with self._transaction(session_id):
            session = self._load(session_id)
            self._check_actor(session, actor)
            self._ensure_open(session)
            stage = self._require_stage(session, OTP_STAGES, "Issuing an OTP")

            evidence = self._evidence(session)
            if evidence.contact is not None:
                confirmed = evidence.contact.channel
                if channel is not None and OtpChannel(channel) != confirmed:
                    raise StageError(
                        ErrorKind.INVALID_STAGE_INPUT,
                        f"Codes for this session go to the confirmed {confirmed.value} contact",
                        channel=OtpChannel(channel).value,
                        confirmed_channel=confirmed.value,
                    )
                channel = confirmed
            channel = OtpChannel(channel or session.otp_channel or self._default_channel(session, actor))
            config = self.registry.get_config(session.envelope.type_code)
            if channel not in config.verification_requirements.otp_channels:
                raise OtpError(
                    ErrorKind.CHANNEL_UNAVAILABLE,
                    f"{channel.value} codes are not allowed for {config.name}",
                    channel=channel.value,
                )

            latest = self.otp.latest_for(session.id)
            if latest is not None and self.clock() < latest.resend_available_at:
                wait = self.otp.resend_in(latest)
                raise OtpError(
                    ErrorKind.COOLDOWN_ACTIVE,
                    f"Please wait {wait} seconds before requesting a new code",
                    retry_after=wait,
                )

            challenge = await self.otp.issue(session.id, self._otp_contact(session, actor), channel)

            self.audit.append(session.id, AuditEventType.OTP_ISSUED, actor, {
                "challenge_id": challenge.id,
                "channel": channel.value,
                "masked_destination": challenge.masked_destination,
                "expires_at": challenge.expires_at.isoformat(),
                "stage": stage.value,
            })
            evidence.otp = None
            self._apply(session, evidence, otp_channel=channel.value, otp_attempts=0)
        return challenge

    def verify_otp(self, session_id: str, code: str, actor: Actor) -> SigningSession:
        """Check a code against the latest challenge. Wrong codes still count."""
        with self._transaction(session_id):
            session = self._load(session_id)
            self._check_actor(session, actor)
            self._ensure_open(session)
            stage = self._require_stage(session, OTP_STAGES, "Verifying an OTP")

            latest = self.otp.latest_for(session.id)
            if latest is None:
                raise OtpError(ErrorKind.NO_ACTIVE_CHALLENGE, "No code has been issued for this session")

            try:
                challenge = self.otp.verify(latest.id, code)
            except OtpError as exc:
                if exc.kind in (ErrorKind.MISMATCH, ErrorKind.EXHAUSTED):
                    session.otp_attempts = latest.attempts
                    session.updated_at = self.clock()
                    self.db.commit()
                raise

            self.audit.append(session.id, AuditEventType.OTP_VERIFIED, actor, {
                "challenge_id": challenge.id,
                "channel": challenge.channel,
                "stage": stage.value,
            })
            evidence = self._evidence(session)
            evidence.otp = OtpEvidence(
                challenge_id=challenge.id,
                channel=OtpChannel(challenge.channel),
                verified_at=challenge.consumed_at,
            )
            self._apply(session, evidence, otp_attempts=challenge.attempts)
        logger.info("OTP verified for session %s", session_id)
        return session

    def invalidate_identity(self, session_id: str, actor: Actor, reason: str = "") -> SigningSession:
        """Drop a successful identity result and return to the identity stage.
        The OTP verification goes with it: it was bound to that identity."""
        with self._transaction(session_id):
            session = self._load(session_id)
            self._check_actor(session, actor)
            self._ensure_open(session)

            evidence = self._evidence(session)
            if evidence.identity is None:
                raise StageError(ErrorKind.INVALID_STAGE_INPUT, "There is no verified identity to invalidate")

            from_stage = session.stage
            target = identity_stage(session.method)
            self.audit.append(session.id, AuditEventType.IDENTITY_INVALIDATED, actor, {
                "reason": reason,
                "previous_method": evidence.identity.method.value,
                "from_stage": from_stage,
                "to_stage": target.value,
            })
            evidence.identity = None
            evidence.otp = None
            evidence.captures = []
            evidence.declarations = None
            self._apply(session, evidence, target)
        logger.info("Identity invalidated for session %s (%s -> %s)", session_id, from_stage, target.value)
        return session

    # ──────────────── Stage handlers ────────────────

    async def _select_identity_method(self, session, data: IdentitySelectionInput, actor) -> Transition:
        self._check_identity_method(session, data.method)
        evidence = self._evidence(session)
        evidence.identity_method = data.method
        evidence.captures = []
        return Transition(evidence, {"identity_method": data.method.value})

    async def _verify_identity(self, session, claim: IdentityClaim, actor) -> Transition:
        evidence = self._evidence(session)
        result = await self._run_identity(session, evidence, claim)
        evidence.identity = result
        evidence.identity_method = result.method
        return Transition(evidence, {"identity": self._identity_metadata(result)})

    async def _confirm_contact(self, session, data: ContactConfirmationInput, actor) -> Transition:
        if not data.destination_confirmed:
            raise _incomplete("Please confirm where the code should be sent")
        missing = self.consents.missing(session)
        if missing:
            raise _incomplete("Required consents have not been accepted", missing=missing)

        config = self.registry.get_config(session.envelope.type_code)
        if data.channel not in config.verification_requirements.otp_channels:
            raise OtpError(ErrorKind.CHANNEL_UNAVAILABLE, f"{data.channel.value} is not available", channel=data.channel.value)
        address = self._otp_contact(session, actor).address_for(data.channel)
        if not address:
            raise OtpError(
                ErrorKind.CHANNEL_UNAVAILABLE,
                f"No {data.channel.value} contact on file for this signer",
                channel=data.channel.value,
            )

        evidence = self._evidence(session)
        evidence.contact = ContactEvidence(
            channel=data.channel,
            masked_destination=mask_destination(data.channel, address),
        )
        return Transition(
            evidence,
            {"channel": data.channel.value, "masked_destination": evidence.contact.masked_destination},
            changes={"otp_channel": data.channel.value},
        )

    async def _confirm_presence(self, session, data: PresenceInput, actor) -> Transition:
        confirmations = data.model_dump(exclude={"kind"})
        missing = [name for name, value in confirmations.items() if not value]
        if missing:
            raise _incomplete("All presence confirmations are required", missing=missing)
        evidence = self._evidence(session)
        evidence.presence = confirmations
        return Transition(evidence, {"confirmations": confirmations})

    async def _documents_done(self, session, data, actor) -> Transition:
        field_name, _ = DOCUMENT_MARK_STAGES[Stage(session.stage)]
        evidence = self._evidence(session)
        done = getattr(evidence, field_name)
        missing = [slot for slot in session.envelope.slot_ids if slot not in done]
        if missing:
            raise _incomplete("Every document must be handled before continuing", missing=missing)
        return Transition(evidence, {"documents": list(done)})

    async def _consents_done(self, session, data, actor) -> Transition:
        missing = self.consents.missing(session)
        if missing:
            raise _incomplete("Required consents have not been accepted", missing=missing)
        accepted = [c.consent_id for c in session.consents if c.value is True]
        return Transition(self._evidence(session), {"accepted": accepted})

    async def _capture_signature(self, session, data: SignatureInput, actor) -> Transition:
        evidence = self._evidence(session)
        evidence.signature = SignatureArtifact(
            kind="drawn", refs=[data.artifact_ref], digest=data.digest, captured_at=self.clock(),
        )
        return Transition(evidence, {"artifact_ref": data.artifact_ref, "digest": data.digest})

    async def _customer_signs(self, session, data: PhysicalSignatureInput, actor) -> Transition:
        if not data.customer_signed:
            raise _incomplete("The customer must sign the printed documents", missing=["customer_signed"])
        missing = self.consents.missing(session)
        if missing:
            raise _incomplete("Required consents have not been accepted", missing=missing)
        evidence = self._evidence(session)
        evidence.physical_signature = {
            "customer_signed": "true",
            "witness_present": "true" if data.witness_present else "false",
            "signature_date": data.signature_date.isoformat() if data.signature_date else None,
        }
        return Transition(evidence, dict(evidence.physical_signature))

    async def _scan_upload(self, session, data: ScanUploadInput, actor) -> Transition:
        refs = [ref.strip() for ref in data.scan_refs if ref and ref.strip()]
        if not refs:
            raise _incomplete("Upload at least one scan of the signed documents", missing=["scan_refs"])
        evidence = self._evidence(session)
        evidence.signature = SignatureArtifact(kind="scanned", refs=refs, captured_at=self.clock())
        return Transition(evidence, {"scan_count": len(refs)})

    async def _agent_declaration(self, session, data: AgentDeclarationInput, actor) -> Transition:
        declarations = data.model_dump(include={
            "witnessed_signature", "verified_identity", "customer_consented", "uploads_accurate",
        })
        missing = [name for name, value in declarations.items() if not value]
        if missing:
            raise _incomplete("All agent declarations must be confirmed", missing=missing)

        evidence = self._evidence(session)
        result = evidence.identity or await self._run_identity(session, evidence, data.identity)
        evidence.identity = result
        evidence.identity_method = result.method
        evidence.declarations = declarations
        return Transition(evidence, {"declarations": declarations, "identity": self._identity_metadata(result)})

    async def _finalize(self, session, data: FinalizeInput, actor) -> Transition:
        evidence = self._evidence(session)
        artifact = evidence.signature
        if session.method == SigningMethod.SELF_SERVICE.value and data.signature_artifact_ref:
            artifact = SignatureArtifact(kind="drawn", refs=[data.signature_artifact_ref], captured_at=self.clock())

        self._check_completion(session, evidence, artifact)

        try:
            signed = await asyncio.wait_for(
                self.trust_service.finalize(session.envelope, artifact),
                timeout=self.settings.TRUST_SERVICE_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as exc:
            logger.error("Trust service timed out finalizing session %s", session.id)
            raise FinalizationError("Trust service timed out", session_id=session.id) from exc

        now = self.clock()
        evidence.signature = artifact
        evidence.signed_document = signed
        seal = {
            "signed_document_ref": signed.reference,
            "document_hash": signed.document_hash,
            "certificate_serial": signed.certificate_serial,
            "timestamp_authority": signed.timestamp_authority,
        }
        return Transition(
            evidence,
            dict(seal),
            changes={"signed_document_ref": signed.reference, "completed_at": now},
            events=[(AuditEventType.SEAL_APPLIED, {
                **seal,
                "certificate_subject": signed.certificate_subject,
                "timestamped_at": signed.timestamped_at.isoformat() if signed.timestamped_at else None,
                "stage": session.stage,
            })],
        )

    # ──────────────── Checks ────────────────

    def _check_completion(self, session: SigningSession, evidence: SessionEvidence,
                          artifact: Optional[SignatureArtifact]) -> None:
        """Re-derive every completion invariant from stored state before sealing."""
        method = SigningMethod(session.method)
        missing = []

        if evidence.identity is None or not evidence.identity.matched:
            missing.append("identity")
        if not self.consents.is_satisfied(session):
            missing.extend(f"consent:{cid}" for cid in self.consents.missing(session))

        slots = session.envelope.slot_ids
        if method == SigningMethod.AGENT_ASSISTED:
            if evidence.presence is None:
                missing.append("presence")
            missing.extend(f"review:{s}" for s in slots if s not in evidence.reviewed_documents)
        if method == SigningMethod.PHYSICAL_UPLOAD:
            missing.extend(f"print:{s}" for s in slots if s not in evidence.printed_documents)
            if not evidence.physical_signature:
                missing.append("physical_signature")
            if not evidence.declarations or not all(evidence.declarations.values()):
                missing.append("declarations")

        expected_kind = "scanned" if method == SigningMethod.PHYSICAL_UPLOAD else "drawn"
        if artifact is None or artifact.kind != expected_kind or not artifact.refs:
            missing.append("signature")

        latest = self.otp.latest_for(session.id)
        if (
            latest is None
            or latest.consumed_at is None
            or evidence.otp is None
            or evidence.otp.challenge_id != latest.id
        ):
            missing.append("otp")

        if missing:
            raise _incomplete("Signing requirements are not complete", missing=missing)

    def _check_identity_method(self, session: SigningSession, method: IdentityMethod) -> None:
        config = self.registry.get_config(session.envelope.type_code)
        if method not in config.verification_requirements.identity_methods:
            raise IdentityError(
                ErrorKind.METHOD_NOT_ALLOWED,
                f"{method.value} verification is not allowed for {config.name}",
                method=method.value,
            )

    async def _run_identity(self, session: SigningSession, evidence: SessionEvidence, claim: IdentityClaim):
        if evidence.identity is not None:
            raise IdentityError(ErrorKind.ALREADY_VERIFIED, "Identity is already verified; invalidate it first")
        self._check_identity_method(session, claim.method)
        strategy = self.strategies.get(claim.method)
        if strategy is None:
            raise IdentityError(ErrorKind.PROVIDER_UNAVAILABLE, f"{claim.method.value} verification is not configured")
        if claim.method == IdentityMethod.DOCUMENT_SCAN_FACE_MATCH:
            claim = claim.model_copy(update={"captures": list(evidence.captures)})
        try:
            return await strategy.verify(claim, session.signer)
        except IdentityError as exc:
            logger.warning("Identity check %s failed for session %s: %s", claim.method.value, session.id, exc.kind.value)
            raise

    @staticmethod
    def _identity_metadata(result) -> Dict:
        return {
            "method": result.method.value,
            "confidence": result.confidence,
            "provider": result.provider,
            "verified_at": result.verified_at.isoformat(),
        }

    def _otp_contact(self, session: SigningSession, actor: Actor) -> Contact:
        # Physical uploads are confirmed by the agent's own code
        if session.method == SigningMethod.PHYSICAL_UPLOAD.value:
            return Contact(email=actor.email, phone=actor.phone)
        return Contact(email=session.signer.email, phone=session.signer.phone)

    def _default_channel(self, session: SigningSession, actor: Actor) -> OtpChannel:
        evidence = self._evidence(session)
        if evidence.contact is not None:
            return evidence.contact.channel
        contact = self._otp_contact(session, actor)
        return OtpChannel.SMS if contact.phone else OtpChannel.EMAIL

    # ──────────────── Read side ────────────────

    def get_session(self, session_id: str) -> SigningSession:
        return self._load(session_id)

    def verify_signed_document(self, signed_document_ref: str) -> SignedDocumentVerification:
        """Seal metadata and chain verdict for a signed document reference."""
        session = (
            self.db.query(SigningSession)
            .filter(SigningSession.signed_document_ref == signed_document_ref)
            .first()
        )
        if session is None:
            raise NotFoundError("Signed document", signed_document_ref)

        signed = self._evidence(session).signed_document
        return SignedDocumentVerification(
            signed_document_ref=signed_document_ref,
            envelope_reference=session.envelope.reference,
            envelope_name=session.envelope.name,
            signed_at=session.completed_at,
            document_hash=signed.document_hash if signed else None,
            certificate_serial=signed.certificate_serial if signed else None,
            timestamp_authority=signed.timestamp_authority if signed else None,
            timestamped_at=signed.timestamped_at if signed else None,
            chain=self.audit.verify_chain(session.id),
        )

    def describe(self, session_id: str) -> SessionResponse:
        """Read-only view of a session; never takes the gate."""
        session = self._load(session_id)
        evidence = self._evidence(session)

        otp_status = None
        if Stage(session.stage) in OTP_STAGES:
            challenge = self.otp.latest_for(session.id)
            if challenge is not None:
                now = self.clock()
                otp_status = OtpStatusOut(
                    challenge_id=challenge.id,
                    channel=OtpChannel(challenge.channel),
                    masked_destination=challenge.masked_destination,
                    expires_at=challenge.expires_at,
                    resend_available_at=challenge.resend_available_at,
                    can_resend=now >= challenge.resend_available_at,
                    resend_in=seconds_until(challenge.resend_available_at, now),
                    attempts_remaining=max(0, challenge.max_attempts - challenge.attempts),
                )

        upcoming = next_stage(session.method, session.stage) if not session.is_terminal else None
        return SessionResponse(
            session_id=session.id,
            envelope_id=session.envelope_id,
            method=SigningMethod(session.method),
            stage=session.stage,
            next_stage=upcoming.value if upcoming else None,
            consents=[ConsentStatusOut.model_validate(c) for c in session.consents],
            identity_verified=evidence.identity is not None,
            otp_verified=evidence.otp is not None,
            otp=otp_status,
            signed_document_ref=session.signed_document_ref,
            created_at=session.created_at,
            updated_at=session.updated_at,
        )
