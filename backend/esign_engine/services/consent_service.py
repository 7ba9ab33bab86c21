"""
Consent Ledger — Which consents an envelope type needs and whether they were given.
Each acceptance is archived with an integrity hash over (session, consent,
text, value, time) for regulatory auditing.
"""
import logging
from typing import List, Set

from sqlalchemy.orm import Session

from esign_engine.exceptions import ConsentError, ErrorKind
from esign_engine.models.session import ConsentRequirement, SigningSession
from esign_engine.services.envelope_types import EnvelopeTypeRegistry
from esign_engine.utils.clock import Clock, utcnow
from esign_engine.utils.hashing import generate_hash

logger = logging.getLogger(__name__)


class ConsentLedger:

    def __init__(self, db: Session, registry: EnvelopeTypeRegistry, clock: Clock = utcnow):
        self.db = db
        self.registry = registry
        self.clock = clock

    def required_for(self, type_code: str) -> Set[str]:
        return set(self.registry.get_config(type_code).required_consents)

    def requirements_for(self, type_code: str) -> List[ConsentRequirement]:
        """Fresh, unanswered requirement rows for a new session, in configured order."""
        config = self.registry.get_config(type_code)
        return [
            ConsentRequirement(consent_id=rule.consent_id, required=rule.required, position=i)
            for i, rule in enumerate(config.consents)
        ]

    def ensure_known(self, session: SigningSession, consent_id: str) -> ConsentRequirement:
        for requirement in session.consents:
            if requirement.consent_id == consent_id:
                return requirement
        raise ConsentError(
            ErrorKind.UNKNOWN_CONSENT,
            f"Consent '{consent_id}' is not part of envelope type {session.envelope.type_code}",
            consent_id=consent_id,
        )

    def accept(self, session: SigningSession, consent_id: str, value: bool, accepted_by: str) -> ConsentRequirement:
        """Record a consent answer on the session. Flushed by the caller's transaction.

        Raises:
            ConsentError(UnknownConsent): the consent is neither required nor optional for the type.
        """
        requirement = self.ensure_known(session, consent_id)
        now = self.clock()
        definition = self.registry.get_consent(consent_id)

        requirement.value = bool(value)
        requirement.accepted_at = now
        requirement.accepted_by = accepted_by
        requirement.artifact_hash = generate_hash({
            "session_id": session.id,
            "consent_id": consent_id,
            "text": definition.text if definition else "",
            "value": bool(value),
            "ts": now.isoformat(),
        })
        logger.info("Consent %s=%s recorded for session %s", consent_id, value, session.id)
        return requirement

    def missing(self, session: SigningSession) -> List[str]:
        """Required consents that are not yet accepted."""
        return [r.consent_id for r in session.consents if r.required and r.value is not True]

    def is_satisfied(self, session: SigningSession) -> bool:
        return not self.missing(session)
