"""
Trust Service — Applies the signature/seal and an RFC 3161 timestamp.

`LocalTrustService` simulates an eSeal for development (HMAC seal, local
timestamp token). `HttpTrustService` delegates to a remote trust service
provider. Both raise FinalizationError on failure.
"""
import base64
import hashlib
import hmac
import json
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from esign_engine.config import Settings, get_settings
from esign_engine.exceptions import FinalizationError
from esign_engine.models.envelope import Envelope
from esign_engine.schemas.schemas import SignatureArtifact, SignedDocumentRef
from esign_engine.utils.clock import Clock, utcnow
from esign_engine.utils.hashing import generate_hash

logger = logging.getLogger(__name__)


def envelope_digest(envelope: Envelope, artifact: SignatureArtifact) -> str:
    """SHA-256 over the envelope's document hashes and the signature artifact."""
    return generate_hash({
        "envelope": envelope.reference,
        "documents": [
            {"slot_id": doc.slot_id, "content_hash": doc.content_hash or ""}
            for doc in envelope.documents
        ],
        "signature": {"kind": artifact.kind, "refs": artifact.refs, "digest": artifact.digest},
    })


class TrustService(ABC):

    @abstractmethod
    async def finalize(self, envelope: Envelope, artifact: SignatureArtifact) -> SignedDocumentRef:
        """Seal and timestamp the envelope. Raises FinalizationError."""


class LocalTrustService(TrustService):
    """Development eSeal. Not for production."""

    CERT_SERIAL = "DEV-CERT-001"
    CERT_SUBJECT = "CN=eSign Development eSeal"

    def __init__(self, secret: str, clock: Clock = utcnow):
        self.secret = secret
        self.clock = clock
        logger.warning("Using local trust service — signatures are NOT legally valid")

    async def finalize(self, envelope: Envelope, artifact: SignatureArtifact) -> SignedDocumentRef:
        document_hash = envelope_digest(envelope, artifact)
        seal = hmac.new(self.secret.encode("utf-8"), document_hash.encode("utf-8"), hashlib.sha256).digest()
        now = self.clock()
        token = {
            "hash": document_hash,
            "time": now.isoformat(),
            "serial": uuid.uuid4().hex[:16],
            "tsa": "local",
        }
        return SignedDocumentRef(
            reference=f"SIGNED-{envelope.reference}-{uuid.uuid4().hex[:8].upper()}",
            document_hash=document_hash,
            signature=base64.b64encode(seal).decode("ascii"),
            certificate_serial=self.CERT_SERIAL,
            certificate_subject=self.CERT_SUBJECT,
            timestamp_token=base64.b64encode(json.dumps(token).encode("utf-8")).decode("ascii"),
            timestamped_at=now,
            timestamp_authority="local",
        )


class HttpTrustService(TrustService):
    """Remote trust service provider (signature + RFC 3161 timestamp)."""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or get_settings()
        self._client = client or httpx.AsyncClient(
            base_url=self.settings.TRUST_SERVICE_URL,
            timeout=self.settings.TRUST_SERVICE_TIMEOUT_SECONDS,
            headers={"Authorization": f"Bearer {self.settings.TRUST_SERVICE_API_KEY}"},
        )

    async def finalize(self, envelope: Envelope, artifact: SignatureArtifact) -> SignedDocumentRef:
        document_hash = envelope_digest(envelope, artifact)
        body = {
            "reference": envelope.reference,
            "document_hash": document_hash,
            "hash_algorithm": "SHA-256",
            "signature_artifact": artifact.model_dump(mode="json"),
            "tsa_url": self.settings.TSA_URL,
        }
        try:
            response = await self._client.post("/finalize", json=body)
            response.raise_for_status()
            return SignedDocumentRef.model_validate(response.json())
        except httpx.HTTPStatusError as exc:
            logger.error("Trust service rejected %s: HTTP %s", envelope.reference, exc.response.status_code)
            raise FinalizationError(
                "Trust service rejected the signing request",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("Trust service unreachable for %s: %s", envelope.reference, exc)
            raise FinalizationError("Trust service unreachable") from exc
        except ValueError as exc:
            logger.error("Trust service returned an unreadable response for %s", envelope.reference)
            raise FinalizationError("Trust service returned an invalid response") from exc

    async def aclose(self):
        await self._client.aclose()


def build_trust_service(settings: Optional[Settings] = None, clock: Clock = utcnow) -> TrustService:
    settings = settings or get_settings()
    if settings.TRUST_SERVICE_URL:
        return HttpTrustService(settings)
    return LocalTrustService(settings.SECRET_KEY, clock)
