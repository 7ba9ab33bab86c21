"""
Identity Verification — Interchangeable strategies behind one `verify` call.

  Manual                 exact match of signer details against the record on file
  DocumentScanFaceMatch  front + back + selfie through the document analyzer
  ExternalEidAssertion   assertion validated by an external identity provider

Every strategy returns an `IdentityVerificationResult` or raises
IdentityError. A failed check never produces a result.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

import httpx

from esign_engine.config import Settings, get_settings
from esign_engine.exceptions import ErrorKind, IdentityError
from esign_engine.models.customer import Customer
from esign_engine.models.enums import CaptureKind, IdentityMethod
from esign_engine.schemas.schemas import IdentityClaim, IdentityClaims, IdentityVerificationResult
from esign_engine.services.ocr_service import DocumentAnalyzer, GeminiDocumentAnalyzer
from esign_engine.utils.clock import Clock, utcnow
from esign_engine.utils.validators import normalize_identifier

logger = logging.getLogger(__name__)


class IdentityStrategy(ABC):
    method: IdentityMethod

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock

    @abstractmethod
    async def verify(self, claim: IdentityClaim, signer: Customer) -> IdentityVerificationResult:
        """Check `claim` for `signer`. Raises IdentityError on any failure."""

    def _result(self, claims: IdentityClaims, confidence: Optional[float] = None,
                provider: Optional[str] = None) -> IdentityVerificationResult:
        return IdentityVerificationResult(
            method=self.method,
            matched=True,
            claims=claims,
            confidence=confidence,
            provider=provider,
            verified_at=self.clock(),
        )


def _require(fields: Dict[str, Optional[str]]) -> None:
    missing = [name for name, value in fields.items() if not value]
    if missing:
        raise IdentityError(
            ErrorKind.INCOMPLETE_REQUIREMENT,
            f"Missing identity details: {', '.join(missing)}",
            missing=missing,
        )


class ManualStrategy(IdentityStrategy):
    """Exact match; no partial credit."""
    method = IdentityMethod.MANUAL

    async def verify(self, claim: IdentityClaim, signer: Customer) -> IdentityVerificationResult:
        if signer.is_corporate:
            _require({
                "registration_number": claim.registration_number,
                "registration_date": claim.registration_date,
            })
            matched = (
                normalize_identifier(claim.registration_number) == normalize_identifier(signer.registration_number)
                and (claim.registration_date or "").strip() == (signer.registration_date or "")
            )
            on_file = signer.registration_number
        else:
            _require({"id_number": claim.id_number, "date_of_birth": claim.date_of_birth})
            matched = (
                normalize_identifier(claim.id_number) == normalize_identifier(signer.id_number)
                and (claim.date_of_birth or "").strip() == (signer.date_of_birth or "")
            )
            on_file = signer.id_number

        if not on_file or not matched:
            logger.warning("Manual identity mismatch for signer %s", signer.id)
            raise IdentityError(ErrorKind.IDENTITY_MISMATCH, "Details do not match our records")

        return self._result(IdentityClaims(
            name=signer.full_name,
            id_number=on_file,
            date_of_birth=signer.registration_date if signer.is_corporate else signer.date_of_birth,
        ))


class DocumentScanFaceMatchStrategy(IdentityStrategy):
    """ID front, ID back and a live selfie, scored by the document analyzer."""
    method = IdentityMethod.DOCUMENT_SCAN_FACE_MATCH

    def __init__(self, analyzer: DocumentAnalyzer, threshold: float = 90.0,
                 timeout: float = 30.0, clock: Clock = utcnow):
        super().__init__(clock)
        self.analyzer = analyzer
        self.threshold = threshold
        self.timeout = timeout

    async def verify(self, claim: IdentityClaim, signer: Customer) -> IdentityVerificationResult:
        refs = {capture.kind: capture.ref for capture in claim.captures}
        missing = [kind.value for kind in CaptureKind if kind not in refs]
        if missing:
            raise IdentityError(
                ErrorKind.INCOMPLETE_REQUIREMENT,
                f"Captures still required: {', '.join(missing)}",
                missing=missing,
            )

        try:
            analysis = await asyncio.wait_for(
                self.analyzer.analyze(refs[CaptureKind.FRONT], refs[CaptureKind.BACK], refs[CaptureKind.SELFIE]),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise IdentityError(ErrorKind.PROVIDER_UNAVAILABLE, "Document analysis timed out") from exc
        except ValueError as exc:
            raise IdentityError(ErrorKind.PROVIDER_UNAVAILABLE, str(exc)) from exc

        confidence = analysis.face_match_confidence
        if confidence <= self.threshold:
            logger.warning(
                "Face match %.1f%% not above threshold %.1f%% for signer %s",
                confidence, self.threshold, signer.id,
            )
            raise IdentityError(
                ErrorKind.LOW_CONFIDENCE_MATCH,
                "Selfie could not be matched to the ID document",
                confidence=confidence,
                threshold=self.threshold,
            )

        extracted_id = analysis.claims.get("id_number")
        if extracted_id and signer.id_number and \
                normalize_identifier(extracted_id) != normalize_identifier(signer.id_number):
            raise IdentityError(ErrorKind.IDENTITY_MISMATCH, "ID document does not belong to this signer")

        return self._result(IdentityClaims(**analysis.claims), confidence=confidence, provider=analysis.source)


class EidProvider(ABC):
    """External identity provider that validates signed assertions."""
    name = "eid"

    @abstractmethod
    async def validate(self, assertion: str) -> Optional[Dict[str, Optional[str]]]:
        """Claim set for a valid assertion, None if the assertion is rejected.
        Raises httpx.HTTPError when the provider cannot be reached."""


class HttpEidProvider(EidProvider):

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 15.0):
        self.name = base_url
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def validate(self, assertion: str) -> Optional[Dict[str, Optional[str]]]:
        response = await self._client.post("/assertions/validate", json={"assertion": assertion})
        if response.status_code in (400, 401, 422):
            return None
        response.raise_for_status()
        body = response.json()
        if not body.get("valid"):
            return None
        return body.get("claims") or {}

    async def aclose(self):
        await self._client.aclose()


class ExternalEidStrategy(IdentityStrategy):
    """Trusts the provider's claim set once it accepts the assertion."""
    method = IdentityMethod.EXTERNAL_EID

    def __init__(self, provider: Optional[EidProvider], timeout: float = 15.0, clock: Clock = utcnow):
        super().__init__(clock)
        self.provider = provider
        self.timeout = timeout

    async def verify(self, claim: IdentityClaim, signer: Customer) -> IdentityVerificationResult:
        _require({"eid_assertion": claim.eid_assertion})
        if self.provider is None:
            raise IdentityError(ErrorKind.PROVIDER_UNAVAILABLE, "No eID provider is configured")

        try:
            claims = await asyncio.wait_for(self.provider.validate(claim.eid_assertion), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise IdentityError(ErrorKind.PROVIDER_UNAVAILABLE, "eID provider timed out") from exc
        except httpx.HTTPError as exc:
            logger.error("eID provider call failed: %s", exc)
            raise IdentityError(ErrorKind.PROVIDER_UNAVAILABLE, "eID provider unreachable") from exc
        except ValueError as exc:
            logger.error("eID provider sent an unreadable answer: %s", exc)
            raise IdentityError(ErrorKind.PROVIDER_UNAVAILABLE, "eID provider answer could not be read") from exc

        if claims is None:
            raise IdentityError(ErrorKind.IDENTITY_MISMATCH, "eID assertion was rejected by the provider")

        # The assertion must be about this signer
        asserted_id = claims.get("id_number")
        if asserted_id and signer.id_number and \
                normalize_identifier(asserted_id) != normalize_identifier(signer.id_number):
            raise IdentityError(ErrorKind.IDENTITY_MISMATCH, "eID assertion belongs to a different person")

        return self._result(
            IdentityClaims(
                name=claims.get("name"),
                id_number=asserted_id,
                date_of_birth=claims.get("date_of_birth"),
            ),
            provider=self.provider.name,
        )


def build_identity_strategies(
    settings: Optional[Settings] = None,
    analyzer: Optional[DocumentAnalyzer] = None,
    eid_provider: Optional[EidProvider] = None,
    clock: Clock = utcnow,
) -> Dict[IdentityMethod, IdentityStrategy]:
    settings = settings or get_settings()
    if eid_provider is None and settings.EID_PROVIDER_URL:
        eid_provider = HttpEidProvider(settings.EID_PROVIDER_URL, timeout=settings.EID_TIMEOUT_SECONDS)
    return {
        IdentityMethod.MANUAL: ManualStrategy(clock),
        IdentityMethod.DOCUMENT_SCAN_FACE_MATCH: DocumentScanFaceMatchStrategy(
            analyzer or GeminiDocumentAnalyzer(settings),
            threshold=settings.FACE_MATCH_THRESHOLD,
            timeout=settings.ANALYZER_TIMEOUT_SECONDS,
            clock=clock,
        ),
        IdentityMethod.EXTERNAL_EID: ExternalEidStrategy(eid_provider, timeout=settings.EID_TIMEOUT_SECONDS, clock=clock),
    }
