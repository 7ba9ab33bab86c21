"""
Envelope Type Registry — Documents, consents and verification rules per envelope type.

The engine only reads from the registry. The in-memory registry ships a
small default catalogue and can be extended from a JSON file
(`ENVELOPE_TYPES_FILE`) shaped as {"consents": [...], "envelope_types": [...]}.
"""
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from esign_engine.config import Settings, get_settings
from esign_engine.exceptions import NotFoundError
from esign_engine.models.enums import IdentityMethod, OtpChannel, SigningMethod
from esign_engine.schemas.schemas import (
    ConsentDefinition,
    ConsentRule,
    DocumentRequirement,
    EnvelopeTypeConfig,
    VerificationRequirements,
)

logger = logging.getLogger(__name__)


DEFAULT_CONSENTS = [
    ConsentDefinition(
        id="consent-001",
        title="GDPR Data Processing Consent",
        text="I consent to the processing of my personal data for the purpose of this agreement.",
        category="privacy",
    ),
    ConsentDefinition(
        id="consent-002",
        title="Terms & Conditions Acceptance",
        text="I have read and accept the Terms and Conditions.",
        category="legal",
    ),
    ConsentDefinition(
        id="consent-003",
        title="Electronic Communication Consent",
        text="I agree to receive documents and notices electronically.",
        category="communication",
    ),
    ConsentDefinition(
        id="consent-004",
        title="Marketing Communications",
        text="I would like to receive news and offers.",
        category="marketing",
    ),
]

DEFAULT_ENVELOPE_TYPES = [
    EnvelopeTypeConfig(
        type_code="HOME_INS_PROP",
        name="Home Insurance Proposal",
        required_documents=[
            DocumentRequirement(id="doc-proposal", name="Insurance Proposal"),
            DocumentRequirement(id="doc-terms", name="Policy Terms"),
        ],
        consents=[
            ConsentRule(consent_id="consent-001"),
            ConsentRule(consent_id="consent-002"),
            ConsentRule(consent_id="consent-004", required=False),
        ],
    ),
    EnvelopeTypeConfig(
        type_code="LOAN_AGREEMENT",
        name="Loan Agreement",
        required_documents=[DocumentRequirement(id="doc-agreement", name="Loan Agreement")],
        consents=[
            ConsentRule(consent_id="consent-001"),
            ConsentRule(consent_id="consent-002"),
            ConsentRule(consent_id="consent-003"),
        ],
        verification_requirements=VerificationRequirements(
            identity_methods=[IdentityMethod.DOCUMENT_SCAN_FACE_MATCH, IdentityMethod.EXTERNAL_EID],
            signing_methods=[SigningMethod.SELF_SERVICE, SigningMethod.AGENT_ASSISTED],
            otp_channels=[OtpChannel.SMS, OtpChannel.EMAIL],
        ),
    ),
]


class EnvelopeTypeRegistry(ABC):
    """Read-only configuration consumed by the signing engine."""

    @abstractmethod
    def get_config(self, type_code: str) -> EnvelopeTypeConfig:
        """Raises NotFoundError for an unknown type code."""

    @abstractmethod
    def get_consent(self, consent_id: str) -> Optional[ConsentDefinition]:
        ...

    @abstractmethod
    def list_types(self) -> List[EnvelopeTypeConfig]:
        ...


class InMemoryEnvelopeTypeRegistry(EnvelopeTypeRegistry):

    def __init__(
        self,
        types: Iterable[EnvelopeTypeConfig] = (),
        consents: Iterable[ConsentDefinition] = (),
    ):
        self._types: Dict[str, EnvelopeTypeConfig] = {}
        self._consents: Dict[str, ConsentDefinition] = {}
        for consent in consents:
            self.register_consent(consent)
        for config in types:
            self.register(config)

    def register(self, config: EnvelopeTypeConfig) -> None:
        self._types[config.type_code] = config

    def register_consent(self, consent: ConsentDefinition) -> None:
        self._consents[consent.id] = consent

    def get_config(self, type_code: str) -> EnvelopeTypeConfig:
        config = self._types.get(type_code)
        if config is None:
            raise NotFoundError("Envelope type", type_code)
        return config

    def get_consent(self, consent_id: str) -> Optional[ConsentDefinition]:
        return self._consents.get(consent_id)

    def list_types(self) -> List[EnvelopeTypeConfig]:
        return list(self._types.values())

    def load_file(self, path: str) -> None:
        """Merge envelope types and consent definitions from a JSON file."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        for raw in data.get("consents", []):
            self.register_consent(ConsentDefinition.model_validate(raw))
        for raw in data.get("envelope_types", []):
            self.register(EnvelopeTypeConfig.model_validate(raw))
        logger.info(
            "Loaded %d envelope types and %d consents from %s",
            len(data.get("envelope_types", [])), len(data.get("consents", [])), path,
        )


def build_registry(settings: Optional[Settings] = None) -> InMemoryEnvelopeTypeRegistry:
    settings = settings or get_settings()
    registry = InMemoryEnvelopeTypeRegistry(DEFAULT_ENVELOPE_TYPES, DEFAULT_CONSENTS)
    if settings.ENVELOPE_TYPES_FILE:
        registry.load_file(settings.ENVELOPE_TYPES_FILE)
    return registry
