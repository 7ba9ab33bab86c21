"""
Tests for the consent ledger.
"""
from __future__ import annotations

import pytest

from esign_engine.exceptions import ConsentError, ErrorKind
from esign_engine.models.enums import SigningMethod
from esign_engine.services.consent_service import ConsentLedger


@pytest.fixture
def ledger(db, registry, clock):
    return ConsentLedger(db, registry, clock)


@pytest.fixture
def session(engine, envelope, customer_actor):
    return engine.start_session(envelope.id, SigningMethod.SELF_SERVICE, customer_actor)


class TestConsentLedger:
    def test_required_for_type(self, ledger):
        assert ledger.required_for("TEST_AGREEMENT") == {"GDPR", "Terms"}

    def test_session_gets_required_and_optional_rows(self, session):
        rows = [(c.consent_id, c.required, c.value) for c in session.consents]
        assert rows == [("GDPR", True, None), ("Terms", True, None), ("Marketing", False, None)]

    def test_unknown_consent_is_rejected(self, ledger, session):
        with pytest.raises(ConsentError) as exc_info:
            ledger.accept(session, "Newsletter", True, "cust-1")
        assert exc_info.value.kind == ErrorKind.UNKNOWN_CONSENT

    def test_optional_consent_does_not_block(self, ledger, session, clock):
        """Should be satisfied once every required consent is true, optional ones untouched."""
        ledger.accept(session, "GDPR", True, "cust-1")
        assert ledger.is_satisfied(session) is False
        assert ledger.missing(session) == ["Terms"]

        requirement = ledger.accept(session, "Terms", True, "cust-1")
        assert ledger.is_satisfied(session) is True
        assert requirement.accepted_at == clock()
        assert len(requirement.artifact_hash) == 64

    def test_declined_required_consent_is_not_satisfied(self, ledger, session):
        ledger.accept(session, "GDPR", True, "cust-1")
        ledger.accept(session, "Terms", False, "cust-1")
        assert ledger.is_satisfied(session) is False
        assert ledger.missing(session) == ["Terms"]
