"""
Pytest configuration for the signing engine tests.
"""
from __future__ import annotations

import asyncio
import os
from datetime import datetime, timedelta

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-testing-only")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from esign_engine.config import Settings
from esign_engine.database import init_db
from esign_engine.exceptions import DeliveryError, FinalizationError
from esign_engine.models.enums import ActorRole, IdentityMethod, OtpChannel, SigningMethod
from esign_engine.schemas.schemas import (
    Actor,
    ConsentDefinition,
    ConsentRule,
    CustomerCreateRequest,
    DocumentRequirement,
    EnvelopeTypeConfig,
    SignedDocumentRef,
    VerificationRequirements,
)
from esign_engine.services.envelope_service import EnvelopeService
from esign_engine.services.envelope_types import InMemoryEnvelopeTypeRegistry
from esign_engine.services.identity_service import EidProvider, build_identity_strategies
from esign_engine.services.notification_service import DeliveryChannel
from esign_engine.services.ocr_service import DocumentAnalysis, DocumentAnalyzer
from esign_engine.services.otp_service import OtpPolicy
from esign_engine.services.signing_service import SessionGate, SigningEngine
from esign_engine.services.trust_service import TrustService

T0 = datetime(2026, 1, 15, 9, 0, 0)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


class RecordingChannel(DeliveryChannel):
    def __init__(self) -> None:
        self.sent: list[tuple[str, OtpChannel, str]] = []
        self.notices: list[tuple[str, OtpChannel, str, str]] = []
        self.fail = False
        self.fail_notices = False

    async def send(self, destination, channel, code):
        if self.fail:
            raise DeliveryError("provider down", channel=channel.value)
        self.sent.append((destination, channel, code))

    async def notify(self, destination, channel, subject, text):
        if self.fail_notices:
            raise DeliveryError("provider down", channel=channel.value)
        self.notices.append((destination, channel, subject, text))

    def last_code(self) -> str:
        return self.sent[-1][2]


class FakeAnalyzer(DocumentAnalyzer):
    def __init__(self, confidence: float = 97.5, id_number: str = "X1234567") -> None:
        self.confidence = confidence
        self.id_number = id_number
        self.calls: list[tuple[str, str, str]] = []

    async def analyze(self, front, back, selfie):
        self.calls.append((front, back, selfie))
        return DocumentAnalysis(
            claims={"name": "MARIA GEORGIOU", "id_number": self.id_number, "date_of_birth": "1985-04-12"},
            face_match_confidence=self.confidence,
            source="fake-analyzer",
        )


class FakeEidProvider(EidProvider):
    name = "fake-eid"

    def __init__(self, claims=None, valid: bool = True, error: Exception | None = None, delay: float = 0) -> None:
        self.claims = claims if claims is not None else {
            "name": "Maria Georgiou", "id_number": "X1234567", "date_of_birth": "1985-04-12",
        }
        self.valid = valid
        self.error = error
        self.delay = delay

    async def validate(self, assertion):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.claims if self.valid else None


class FakeTrustService(TrustService):
    def __init__(self) -> None:
        self.fail_times = 0
        self.delay = 0.0
        self.calls = 0

    async def finalize(self, envelope, artifact):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_times:
            self.fail_times -= 1
            raise FinalizationError("trust service down")
        return SignedDocumentRef(
            reference=f"SIGNED-{envelope.reference}-{self.calls}",
            document_hash="ab" * 32,
            signature="c2VhbA==",
            certificate_serial="TEST-CERT",
            timestamped_at=T0,
            timestamp_authority="test-tsa",
        )


def build_registry() -> InMemoryEnvelopeTypeRegistry:
    return InMemoryEnvelopeTypeRegistry(
        types=[
            EnvelopeTypeConfig(
                type_code="TEST_AGREEMENT",
                name="Test Agreement",
                required_documents=[
                    DocumentRequirement(id="doc-1", name="Proposal"),
                    DocumentRequirement(id="doc-2", name="Terms"),
                ],
                consents=[
                    ConsentRule(consent_id="GDPR"),
                    ConsentRule(consent_id="Terms"),
                    ConsentRule(consent_id="Marketing", required=False),
                ],
            ),
            EnvelopeTypeConfig(
                type_code="EID_ONLY",
                name="eID Only",
                required_documents=[DocumentRequirement(id="doc-1", name="Contract")],
                consents=[ConsentRule(consent_id="GDPR")],
                verification_requirements=VerificationRequirements(
                    identity_methods=[IdentityMethod.EXTERNAL_EID],
                    signing_methods=[SigningMethod.SELF_SERVICE],
                    otp_channels=[OtpChannel.EMAIL],
                ),
            ),
        ],
        consents=[
            ConsentDefinition(id="GDPR", title="GDPR", text="I consent to data processing.", category="privacy"),
            ConsentDefinition(id="Terms", title="Terms", text="I accept the terms.", category="legal"),
            ConsentDefinition(id="Marketing", title="Marketing", text="Send me offers.", category="marketing"),
        ],
    )


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        SECRET_KEY="test-secret-key-for-testing-only",
        FACE_MATCH_THRESHOLD=90.0,
        TRUST_SERVICE_TIMEOUT_SECONDS=2.0,
        SESSION_IDLE_TIMEOUT_MINUTES=120,
    )


@pytest.fixture
def registry():
    return build_registry()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def eid_provider():
    return FakeEidProvider()


@pytest.fixture
def trust():
    return FakeTrustService()


@pytest.fixture
def engine(db, registry, channel, analyzer, eid_provider, trust, settings, clock):
    strategies = build_identity_strategies(settings, analyzer=analyzer, eid_provider=eid_provider, clock=clock)
    return SigningEngine(
        db,
        registry=registry,
        channels={OtpChannel.SMS: channel, OtpChannel.EMAIL: channel},
        strategies=strategies,
        trust_service=trust,
        gate=SessionGate(),
        settings=settings,
        otp_policy=OtpPolicy(),
        clock=clock,
    )


@pytest.fixture
def envelopes(db, registry, clock):
    return EnvelopeService(db, registry, clock)


@pytest.fixture
def customer(envelopes):
    return envelopes.create_customer(CustomerCreateRequest(
        full_name="Maria  Georgiou",
        email="maria@example.com",
        phone="+35799123456",
        id_number="X1234567",
        date_of_birth="1985-04-12",
    ))


@pytest.fixture
def envelope(envelopes, customer):
    created = envelopes.create(customer.id, "TEST_AGREEMENT", "Home policy 2026", created_by="agent-7")
    return envelopes.send(created.id)


@pytest.fixture
def customer_actor(customer):
    return Actor(id=customer.id, role=ActorRole.CUSTOMER, ip_address="10.0.0.5")


@pytest.fixture
def agent_actor():
    return Actor(
        id="agent-7",
        role=ActorRole.AGENT,
        email="agent7@broker.example",
        phone="+35799000777",
    )
