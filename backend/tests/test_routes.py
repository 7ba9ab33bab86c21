"""
HTTP tests for the signing API.
"""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import build_registry
from esign_engine.database import get_db
from esign_engine.dependencies import Collaborators, get_collaborators
from esign_engine.main import app
from esign_engine.models.enums import OtpChannel
from esign_engine.services.identity_service import build_identity_strategies
from esign_engine.services.signing_service import SessionGate
from esign_engine.utils.rate_limiter import rate_limit_keys, reset_rate_limits

AGENT_HEADERS = {"actor-id": "agent-7", "actor-role": "agent"}


@pytest.fixture
def client(db, channel, analyzer, eid_provider, trust, settings):
    def override_get_db():
        yield db

    collaborators = Collaborators(
        registry=build_registry(),
        channels={OtpChannel.SMS: channel, OtpChannel.EMAIL: channel},
        strategies=build_identity_strategies(settings, analyzer=analyzer, eid_provider=eid_provider),
        trust_service=trust,
        gate=SessionGate(),
    )
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_collaborators] = lambda: collaborators
    reset_rate_limits()
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def signer(client):
    """A customer on file with one envelope waiting for signature."""
    customer = client.post("/api/customers", json={
        "full_name": "Maria Georgiou",
        "email": "maria@example.com",
        "phone": "+35799123456",
        "id_number": "X1234567",
        "date_of_birth": "1985-04-12",
    })
    assert customer.status_code == 201
    customer_id = customer.json()["id"]

    envelope = client.post("/api/envelopes", headers=AGENT_HEADERS, json={
        "customer_id": customer_id,
        "type_code": "TEST_AGREEMENT",
        "name": "Home policy 2026",
    })
    assert envelope.status_code == 201
    assert envelope.json()["status"] == "PendingSignature"
    return {
        "envelope_id": envelope.json()["id"],
        "headers": {"actor-id": customer_id, "actor-role": "customer"},
    }


def _start(client, signer, method="SelfService"):
    response = client.post(
        "/api/signing/sessions",
        headers=signer["headers"],
        json={"envelope_id": signer["envelope_id"], "method": method},
    )
    return response


class TestSelfServiceOverHttp:
    def test_full_flow(self, client, signer, channel):
        headers = signer["headers"]
        started = _start(client, signer)
        assert started.status_code == 201
        session_id = started.json()["session_id"]
        assert started.json()["stage"] == "IdentitySelection"
        base = f"/api/signing/sessions/{session_id}"

        steps = [
            {"kind": "identity_selection", "method": "Manual"},
            {"kind": "identity_claim", "method": "Manual", "id_number": "X1234567", "date_of_birth": "1985-04-12"},
        ]
        for body in steps:
            assert client.post(f"{base}/advance", headers=headers, json=body).status_code == 200

        for consent_id in ("GDPR", "Terms"):
            response = client.post(f"{base}/consents", headers=headers, json={"consent_id": consent_id})
            assert response.status_code == 200

        response = client.post(f"{base}/advance", headers=headers, json={
            "kind": "contact_confirmation", "channel": "SMS", "destination_confirmed": True,
        })
        assert response.json()["stage"] == "OtpVerification"

        otp = client.post(f"{base}/otp", headers=headers, json={})
        assert otp.status_code == 200
        assert otp.json()["masked_destination"].endswith("3456")
        assert otp.json()["can_resend"] is False

        verified = client.post(f"{base}/otp/verify", headers=headers, json={"code": channel.last_code()})
        assert verified.json()["otp_verified"] is True

        done = client.post(f"{base}/advance", headers=headers, json={
            "kind": "finalize", "signature_artifact_ref": "sig://drawn/1",
        })
        assert done.status_code == 200
        assert done.json()["stage"] == "SigningCompleted"
        assert done.json()["signed_document_ref"].startswith("SIGNED-ENV-")

        envelope = client.get(f"/api/envelopes/{signer['envelope_id']}")
        assert envelope.json()["status"] == "Signed"

        chain = client.get(f"/api/admin/audit/{session_id}/verify")
        assert chain.json()["valid"] is True
        assert chain.json()["total_entries"] == 10

        ref = done.json()["signed_document_ref"]
        verification = client.get(f"/api/signing/verify/{ref}")
        assert verification.status_code == 200
        assert verification.json()["envelope_name"] == "Home policy 2026"
        assert verification.json()["certificate_serial"] == "TEST-CERT"
        assert verification.json()["chain"] == {
            "valid": True, "total_entries": 10, "broken_at": None, "message": None,
        }
        assert channel.notices[-1][0] == "maria@example.com"
        assert ref in channel.notices[-1][3]

    def test_malformed_stage_input(self, client, signer):
        """Should answer 422 InvalidStageInput for a body no stage accepts."""
        session_id = _start(client, signer).json()["session_id"]
        response = client.post(
            f"/api/signing/sessions/{session_id}/advance",
            headers=signer["headers"],
            json={"kind": "teleport"},
        )
        assert response.status_code == 422
        assert response.json()["error_code"] == "InvalidStageInput"

    def test_second_session_conflicts(self, client, signer):
        assert _start(client, signer).status_code == 201
        response = _start(client, signer)
        assert response.status_code == 409
        assert response.json()["error_code"] == "SessionAlreadyActive"

    def test_identity_mismatch_is_reported(self, client, signer):
        session_id = _start(client, signer).json()["session_id"]
        base = f"/api/signing/sessions/{session_id}"
        client.post(f"{base}/advance", headers=signer["headers"], json={"kind": "identity_selection", "method": "Manual"})

        response = client.post(f"{base}/advance", headers=signer["headers"], json={
            "kind": "identity_claim", "method": "Manual", "id_number": "X1234567", "date_of_birth": "1990-01-01",
        })

        assert response.status_code == 422
        assert response.json()["error_code"] == "IdentityMismatch"
        assert client.get(base).json()["stage"] == "IdentityVerifying"

    def test_wrong_actor_is_forbidden(self, client, signer):
        session_id = _start(client, signer).json()["session_id"]
        response = client.post(
            f"/api/signing/sessions/{session_id}/consents",
            headers=AGENT_HEADERS,
            json={"consent_id": "GDPR"},
        )
        assert response.status_code == 403


    def test_unknown_signed_document_is_404(self, client):
        response = client.get("/api/signing/verify/SIGNED-ENV-00000-deadbeef")
        assert response.status_code == 404
        assert response.json()["error_code"] == "NotFound"


class TestOtpRateLimit:
    def test_limit_answers_429_with_retry_after(self, client, signer):
        """Should cut off the sixth code request inside the window with 429 and Retry-After."""
        headers = signer["headers"]
        for _ in range(5):
            assert client.post("/api/signing/sessions/missing/otp", headers=headers, json={}).status_code == 404

        response = client.post("/api/signing/sessions/missing/otp", headers=headers, json={})

        assert response.status_code == 429
        assert response.json()["error_code"] == "CooldownActive"
        assert response.json()["detail"].startswith("Too many code requests")
        assert 0 < int(response.headers["Retry-After"]) <= 300

    def test_sessions_share_one_bucket_per_client(self, client, signer):
        headers = signer["headers"]
        for session_id in ("first", "second", "third"):
            client.post(f"/api/signing/sessions/{session_id}/otp", headers=headers, json={})

        assert rate_limit_keys() == [("testclient", "/api/signing/sessions/{session_id}/otp")]


class TestAdmin:
    def test_unknown_session_is_404(self, client):
        assert client.get("/api/admin/audit/nope").status_code == 404
        assert client.get("/api/signing/sessions/nope").status_code == 404

    def test_dashboard_counts(self, client, signer):
        _start(client, signer)
        data = client.get("/api/admin/dashboard").json()
        assert data["envelopes_by_status"] == {"InProgress": 1}
        assert data["sessions_by_method"] == {"SelfService": 1}

    def test_envelope_types_are_listed(self, client):
        codes = [t["type_code"] for t in client.get("/api/envelope-types").json()]
        assert codes == ["TEST_AGREEMENT", "EID_ONLY"]
