"""
Tests for the identity verification strategies.
"""
from __future__ import annotations

from datetime import datetime

import httpx
import pytest

from conftest import FakeAnalyzer, FakeClock, FakeEidProvider
from esign_engine.exceptions import ErrorKind, IdentityError
from esign_engine.models.customer import Customer
from esign_engine.models.enums import CaptureKind, IdentityMethod
from esign_engine.schemas.schemas import CaptureRecord, IdentityClaim
from esign_engine.services.identity_service import (
    DocumentScanFaceMatchStrategy,
    ExternalEidStrategy,
    ManualStrategy,
)

NOW = datetime(2026, 1, 15, 9, 0, 0)


def _person() -> Customer:
    return Customer(
        id="cust-1", customer_type="individual", full_name="Maria Georgiou",
        id_number="X1234567", date_of_birth="1985-04-12",
    )


def _company() -> Customer:
    return Customer(
        id="cust-2", customer_type="corporate", full_name="Acme Holdings Ltd",
        registration_number="HE 123456", registration_date="2011-03-01",
    )


def _captures(*kinds: CaptureKind) -> list[CaptureRecord]:
    return [CaptureRecord(kind=k, ref=f"captures/{k.value}.jpg", received_at=NOW) for k in kinds]


class TestManualStrategy:
    @pytest.mark.asyncio
    async def test_exact_match_verifies(self):
        """Should accept an ID number differing only in formatting."""
        strategy = ManualStrategy(FakeClock())
        claim = IdentityClaim(method=IdentityMethod.MANUAL, id_number="x-123 4567", date_of_birth="1985-04-12")

        result = await strategy.verify(claim, _person())

        assert result.matched is True
        assert result.method == IdentityMethod.MANUAL
        assert result.claims.id_number == "X1234567"

    @pytest.mark.asyncio
    async def test_wrong_birth_date_is_mismatch(self):
        """Should give no partial credit."""
        claim = IdentityClaim(method=IdentityMethod.MANUAL, id_number="X1234567", date_of_birth="1985-04-13")
        with pytest.raises(IdentityError) as exc_info:
            await ManualStrategy().verify(claim, _person())
        assert exc_info.value.kind == ErrorKind.IDENTITY_MISMATCH

    @pytest.mark.asyncio
    async def test_missing_fields_are_incomplete(self):
        claim = IdentityClaim(method=IdentityMethod.MANUAL, id_number="X1234567")
        with pytest.raises(IdentityError) as exc_info:
            await ManualStrategy().verify(claim, _person())
        assert exc_info.value.kind == ErrorKind.INCOMPLETE_REQUIREMENT
        assert exc_info.value.detail["missing"] == ["date_of_birth"]

    @pytest.mark.asyncio
    async def test_company_uses_registration_details(self):
        """Should match corporate signers on registration number and date."""
        claim = IdentityClaim(
            method=IdentityMethod.MANUAL, registration_number="HE123456", registration_date="2011-03-01",
        )
        result = await ManualStrategy().verify(claim, _company())
        assert result.claims.id_number == "HE 123456"


class TestDocumentScanFaceMatch:
    @pytest.mark.asyncio
    async def test_front_and_back_only_never_matches(self):
        """Should not call the analyzer until the selfie is present."""
        analyzer = FakeAnalyzer()
        strategy = DocumentScanFaceMatchStrategy(analyzer)
        claim = IdentityClaim(
            method=IdentityMethod.DOCUMENT_SCAN_FACE_MATCH,
            captures=_captures(CaptureKind.FRONT, CaptureKind.BACK),
        )

        with pytest.raises(IdentityError) as exc_info:
            await strategy.verify(claim, _person())

        assert exc_info.value.kind == ErrorKind.INCOMPLETE_REQUIREMENT
        assert exc_info.value.detail["missing"] == ["selfie"]
        assert analyzer.calls == []

    @pytest.mark.asyncio
    async def test_confidence_above_threshold_verifies(self):
        analyzer = FakeAnalyzer(confidence=96.0)
        claim = IdentityClaim(
            method=IdentityMethod.DOCUMENT_SCAN_FACE_MATCH,
            captures=_captures(CaptureKind.FRONT, CaptureKind.BACK, CaptureKind.SELFIE),
        )

        result = await DocumentScanFaceMatchStrategy(analyzer, threshold=90.0).verify(claim, _person())

        assert result.confidence == 96.0
        assert result.provider == "fake-analyzer"
        assert analyzer.calls == [("captures/front.jpg", "captures/back.jpg", "captures/selfie.jpg")]

    @pytest.mark.asyncio
    async def test_confidence_at_threshold_is_low_confidence(self):
        """Should require confidence strictly above the threshold."""
        claim = IdentityClaim(
            method=IdentityMethod.DOCUMENT_SCAN_FACE_MATCH,
            captures=_captures(CaptureKind.FRONT, CaptureKind.BACK, CaptureKind.SELFIE),
        )
        with pytest.raises(IdentityError) as exc_info:
            await DocumentScanFaceMatchStrategy(FakeAnalyzer(confidence=90.0), threshold=90.0).verify(claim, _person())
        assert exc_info.value.kind == ErrorKind.LOW_CONFIDENCE_MATCH

    @pytest.mark.asyncio
    async def test_document_of_someone_else_is_mismatch(self):
        claim = IdentityClaim(
            method=IdentityMethod.DOCUMENT_SCAN_FACE_MATCH,
            captures=_captures(CaptureKind.FRONT, CaptureKind.BACK, CaptureKind.SELFIE),
        )
        with pytest.raises(IdentityError) as exc_info:
            await DocumentScanFaceMatchStrategy(FakeAnalyzer(id_number="Z9999999")).verify(claim, _person())
        assert exc_info.value.kind == ErrorKind.IDENTITY_MISMATCH


class TestExternalEid:
    @pytest.mark.asyncio
    async def test_valid_assertion_is_trusted(self):
        claim = IdentityClaim(method=IdentityMethod.EXTERNAL_EID, eid_assertion="signed.jwt.token")
        result = await ExternalEidStrategy(FakeEidProvider()).verify(claim, _person())
        assert result.provider == "fake-eid"
        assert result.claims.name == "Maria Georgiou"

    @pytest.mark.asyncio
    async def test_rejected_assertion_is_mismatch(self):
        claim = IdentityClaim(method=IdentityMethod.EXTERNAL_EID, eid_assertion="forged")
        with pytest.raises(IdentityError) as exc_info:
            await ExternalEidStrategy(FakeEidProvider(valid=False)).verify(claim, _person())
        assert exc_info.value.kind == ErrorKind.IDENTITY_MISMATCH

    @pytest.mark.asyncio
    async def test_provider_timeout_is_unavailable(self):
        """Should surface a slow provider as ProviderUnavailable, not block."""
        claim = IdentityClaim(method=IdentityMethod.EXTERNAL_EID, eid_assertion="signed.jwt.token")
        strategy = ExternalEidStrategy(FakeEidProvider(delay=1.0), timeout=0.01)
        with pytest.raises(IdentityError) as exc_info:
            await strategy.verify(claim, _person())
        assert exc_info.value.kind == ErrorKind.PROVIDER_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_provider_http_error_is_unavailable(self):
        claim = IdentityClaim(method=IdentityMethod.EXTERNAL_EID, eid_assertion="signed.jwt.token")
        provider = FakeEidProvider(error=httpx.ConnectError("connection refused"))
        with pytest.raises(IdentityError) as exc_info:
            await ExternalEidStrategy(provider).verify(claim, _person())
        assert exc_info.value.kind == ErrorKind.PROVIDER_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_assertion_for_other_person_is_mismatch(self):
        claim = IdentityClaim(method=IdentityMethod.EXTERNAL_EID, eid_assertion="signed.jwt.token")
        provider = FakeEidProvider(claims={"name": "Someone Else", "id_number": "Q0000001"})
        with pytest.raises(IdentityError) as exc_info:
            await ExternalEidStrategy(provider).verify(claim, _person())
        assert exc_info.value.kind == ErrorKind.IDENTITY_MISMATCH
