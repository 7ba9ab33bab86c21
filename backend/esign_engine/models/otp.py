"""
OTP Challenge Model — One issued one-time passcode.
Only a keyed hash of the code is stored. A challenge is active while it is
unexpired, unconsumed, not superseded and below its attempt limit.
"""
from sqlalchemy import Column, String, Integer, DateTime, ForeignKey

from esign_engine.database import Base


class OtpChallenge(Base):
    __tablename__ = "otp_challenges"

    id = Column(String(36), primary_key=True, index=True)
    session_id = Column(String(36), ForeignKey("signing_sessions.id"), nullable=False, index=True)

    channel = Column(String(8), nullable=False)          # SMS | Email
    destination = Column(String(254), nullable=False)
    masked_destination = Column(String(254))
    code_hash = Column(String(64), nullable=False)

    issued_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    resend_available_at = Column(DateTime, nullable=False)

    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)

    consumed_at = Column(DateTime, nullable=True)
    superseded_at = Column(DateTime, nullable=True)

    def is_expired(self, now) -> bool:
        return now >= self.expires_at

    def is_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def is_active(self, now) -> bool:
        return (
            self.consumed_at is None
            and self.superseded_at is None
            and not self.is_expired(now)
            and not self.is_exhausted()
        )
