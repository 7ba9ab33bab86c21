"""
Tests for the hash-chained audit ledger.
"""
from __future__ import annotations

import pytest
from sqlalchemy import update

from esign_engine.models.audit import AuditEvent, AuditImmutableError
from esign_engine.models.enums import ActorRole, AuditEventType, SigningMethod
from esign_engine.schemas.schemas import Actor
from esign_engine.services.audit_service import AuditService

AGENT = Actor(id="agent-7", role=ActorRole.AGENT, ip_address="10.1.1.1", user_agent="pytest")


@pytest.fixture
def session_id(engine, envelope, customer_actor):
    return engine.start_session(envelope.id, SigningMethod.SELF_SERVICE, customer_actor).id


@pytest.fixture
def audit(db, clock):
    return AuditService(db, clock)


class TestAppend:
    def test_sequence_is_gapless_and_chained(self, db, audit, session_id):
        """Should number events 1..n per session and link each to its predecessor."""
        audit.append(session_id, AuditEventType.CONSENT_ACCEPTED, AGENT, {"consent_id": "GDPR", "value": True})
        audit.append(session_id, AuditEventType.CONSENT_ACCEPTED, AGENT, {"consent_id": "Terms", "value": True})
        db.commit()

        events = audit.events_for(session_id)
        assert [e.sequence for e in events] == [1, 2, 3]
        assert events[0].event_type == AuditEventType.SESSION_STARTED.value
        assert events[0].previous_hash == ""
        for previous, current in zip(events, events[1:]):
            assert current.previous_hash == previous.payload_hash
        assert audit.count_for(session_id) == 3

    def test_sequences_are_scoped_per_session(self, db, audit, session_id):
        audit.append("other-session", AuditEventType.SESSION_STARTED, AGENT, {"to_stage": "ConfirmPresence"})
        db.commit()
        assert [e.sequence for e in audit.events_for("other-session")] == [1]

    def test_events_cannot_be_modified(self, db, audit, session_id):
        """Should refuse ORM updates to a recorded event."""
        event = audit.events_for(session_id)[0]
        event.event_metadata = {"tampered": True}
        with pytest.raises(AuditImmutableError):
            db.flush()
        db.rollback()


class TestVerifyChain:
    def test_untouched_chain_is_valid(self, db, audit, session_id):
        audit.append(session_id, AuditEventType.OTP_ISSUED, AGENT, {"channel": "SMS"})
        db.commit()
        assert audit.verify_chain(session_id) == {"valid": True, "total_entries": 2, "broken_at": None}

    def test_tampered_metadata_is_detected(self, db, audit, session_id):
        """Should flag an event whose stored payload no longer matches its hash."""
        audit.append(session_id, AuditEventType.CONSENT_ACCEPTED, AGENT, {"consent_id": "GDPR", "value": True})
        db.commit()

        # Bypass the ORM guard the way a direct database edit would
        db.execute(
            update(AuditEvent)
            .where(AuditEvent.session_id == session_id, AuditEvent.sequence == 2)
            .values(event_metadata={"consent_id": "GDPR", "value": False})
        )
        db.commit()
        db.expire_all()

        verdict = audit.verify_chain(session_id)
        assert verdict["valid"] is False
        assert verdict["broken_at"] == 2


class TestReplay:
    def test_replay_tracks_stage_and_consents(self, db, audit, session_id):
        audit.append(session_id, AuditEventType.IDENTITY_METHOD_SELECTED, AGENT, {
            "identity_method": "Manual", "from_stage": "IdentitySelection", "to_stage": "IdentityVerifying",
        })
        audit.append(session_id, AuditEventType.CONSENT_ACCEPTED, AGENT, {"consent_id": "GDPR", "value": True})
        db.commit()

        state = audit.replay(audit.events_for(session_id))

        assert state.method == "SelfService"
        assert state.stage == "IdentityVerifying"
        assert state.stages == ["IdentitySelection", "IdentityVerifying"]
        assert state.consents == {"GDPR": True}
        assert state.identity_verified is False
        assert state.completed is False

    def test_export_bundles_chain_and_replay(self, db, audit, session_id):
        export = audit.export_trail(session_id)
        assert export["chain"]["valid"] is True
        assert export["replay"]["stage"] == "IdentitySelection"
        assert [e["sequence"] for e in export["events"]] == [1]
