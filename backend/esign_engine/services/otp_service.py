"""
OTP Service — Issues, delivers and verifies one-time passcodes.

Codes are drawn from `secrets`, delivered through a channel collaborator and
stored only as an HMAC bound to the challenge id. Expiry, cooldown and
attempt limits are evaluated lazily against stored timestamps.
"""
import asyncio
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Mapping, Optional

from sqlalchemy.orm import Session

from esign_engine.config import Settings, get_settings
from esign_engine.exceptions import DeliveryError, ErrorKind, NotFoundError, OtpError
from esign_engine.models.enums import OtpChannel
from esign_engine.models.otp import OtpChallenge
from esign_engine.schemas.schemas import Contact
from esign_engine.services.notification_service import DeliveryChannel
from esign_engine.utils.clock import Clock, seconds_until, utcnow
from esign_engine.utils.hashing import hash_otp, otp_matches
from esign_engine.utils.validators import mask_email, mask_phone, validate_email, validate_phone

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OtpPolicy:
    length: int = 6
    ttl: timedelta = timedelta(minutes=10)
    resend_cooldown: timedelta = timedelta(seconds=60)
    max_attempts: int = 5
    delivery_timeout: float = 10.0

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "OtpPolicy":
        settings = settings or get_settings()
        return cls(
            length=settings.OTP_LENGTH,
            ttl=timedelta(minutes=settings.OTP_TTL_MINUTES),
            resend_cooldown=timedelta(seconds=settings.OTP_RESEND_COOLDOWN_SECONDS),
            max_attempts=settings.OTP_MAX_ATTEMPTS,
            delivery_timeout=settings.OTP_DELIVERY_TIMEOUT_SECONDS,
        )


def generate_code(length: int = 6) -> str:
    """Fixed-length numeric code from a CSPRNG (leading zeros kept)."""
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def mask_destination(channel: OtpChannel, destination: str) -> str:
    return mask_phone(destination) if channel == OtpChannel.SMS else mask_email(destination)


class OtpService:
    """One-time passcode lifecycle for signing sessions."""

    def __init__(
        self,
        db: Session,
        channels: Mapping[OtpChannel, DeliveryChannel],
        policy: Optional[OtpPolicy] = None,
        secret: Optional[str] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.channels = channels
        self.policy = policy or OtpPolicy.from_settings()
        self.secret = secret or get_settings().SECRET_KEY
        self.clock = clock

    async def issue(self, session_id: str, destination: Contact, channel: OtpChannel) -> OtpChallenge:
        """Create, deliver and persist a new challenge for a session.

        Any previously active challenge for the session is superseded, but
        only once delivery of the new code has succeeded.

        Raises:
            OtpError(ChannelUnavailable): no usable contact or sender for the channel.
            DeliveryError: the channel failed or timed out.
        """
        channel = OtpChannel(channel)
        address = destination.address_for(channel)
        valid = validate_phone(address) if channel == OtpChannel.SMS else validate_email(address)
        if not address or not valid:
            raise OtpError(
                ErrorKind.CHANNEL_UNAVAILABLE,
                f"No {channel.value} contact on file for this signer",
                channel=channel.value,
            )
        sender = self.channels.get(channel)
        if sender is None:
            raise OtpError(
                ErrorKind.CHANNEL_UNAVAILABLE,
                f"{channel.value} delivery is not configured",
                channel=channel.value,
            )

        now = self.clock()
        code = generate_code(self.policy.length)
        challenge = OtpChallenge(
            id=str(uuid.uuid4()),
            session_id=session_id,
            channel=channel.value,
            destination=address,
            masked_destination=mask_destination(channel, address),
            issued_at=now,
            expires_at=now + self.policy.ttl,
            resend_available_at=now + self.policy.resend_cooldown,
            attempts=0,
            max_attempts=self.policy.max_attempts,
        )
        challenge.code_hash = hash_otp(self.secret, challenge.id, code)

        try:
            await asyncio.wait_for(
                sender.send(address, channel, code),
                timeout=self.policy.delivery_timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.error("OTP delivery via %s to %s timed out", channel.value, challenge.masked_destination)
            raise DeliveryError(
                f"{channel.value} delivery timed out",
                channel=channel.value,
            ) from exc

        for previous in self._active_for(session_id, now):
            previous.superseded_at = now

        self.db.add(challenge)
        self.db.flush()

        logger.info(
            "OTP issued via %s to %s for session %s",
            channel.value, challenge.masked_destination, session_id,
        )
        return challenge

    def verify(self, challenge_id: str, candidate_code: str) -> OtpChallenge:
        """Check a candidate code and consume the challenge on success.

        Raises:
            OtpError: Consumed, Superseded, Expired, Exhausted or Mismatch.
                A wrong code increments the attempt counter first.
        """
        challenge = self.get(challenge_id)
        now = self.clock()

        if challenge.consumed_at is not None:
            raise OtpError(ErrorKind.CONSUMED, "This code has already been used", challenge_id=challenge.id)
        if challenge.superseded_at is not None:
            raise OtpError(
                ErrorKind.SUPERSEDED,
                "A newer code has been sent; use the latest one",
                challenge_id=challenge.id,
            )
        if challenge.is_expired(now):
            raise OtpError(ErrorKind.EXPIRED, "OTP has expired. Please request a new one.", challenge_id=challenge.id)
        if challenge.is_exhausted():
            raise OtpError(
                ErrorKind.EXHAUSTED,
                "Too many failed attempts. Please request a new OTP.",
                challenge_id=challenge.id,
                attempts_remaining=0,
            )

        if not otp_matches(self.secret, challenge.id, (candidate_code or "").strip(), challenge.code_hash):
            challenge.attempts += 1
            self.db.flush()
            remaining = max(0, challenge.max_attempts - challenge.attempts)
            logger.warning(
                "Invalid OTP attempt for session %s. Attempts remaining: %d",
                challenge.session_id, remaining,
            )
            if remaining == 0:
                raise OtpError(
                    ErrorKind.EXHAUSTED,
                    "Too many failed attempts. Please request a new OTP.",
                    challenge_id=challenge.id,
                    attempts_remaining=0,
                )
            raise OtpError(
                ErrorKind.MISMATCH,
                f"Invalid OTP. {remaining} attempts remaining.",
                challenge_id=challenge.id,
                attempts_remaining=remaining,
            )

        challenge.consumed_at = now
        self.db.flush()
        logger.info("OTP verified for session %s", challenge.session_id)
        return challenge

    def can_resend(self, challenge_id: str) -> bool:
        """True once the resend cooldown has elapsed since issuance."""
        challenge = self.get(challenge_id)
        return self.clock() >= challenge.resend_available_at

    def resend_in(self, challenge: OtpChallenge) -> int:
        return seconds_until(challenge.resend_available_at, self.clock())

    def get(self, challenge_id: str) -> OtpChallenge:
        challenge = self.db.get(OtpChallenge, challenge_id)
        if challenge is None:
            raise NotFoundError("OTP challenge", challenge_id)
        return challenge

    def latest_for(self, session_id: str) -> Optional[OtpChallenge]:
        return (
            self.db.query(OtpChallenge)
            .filter(OtpChallenge.session_id == session_id)
            .order_by(OtpChallenge.issued_at.desc())
            .first()
        )

    def active_for(self, session_id: str) -> Optional[OtpChallenge]:
        active = self._active_for(session_id, self.clock())
        return active[0] if active else None

    def _active_for(self, session_id: str, now) -> list[OtpChallenge]:
        candidates = (
            self.db.query(OtpChallenge)
            .filter(
                OtpChallenge.session_id == session_id,
                OtpChallenge.consumed_at.is_(None),
                OtpChallenge.superseded_at.is_(None),
            )
            .order_by(OtpChallenge.issued_at.desc())
            .all()
        )
        return [c for c in candidates if c.is_active(now)]
