"""
Tests for OTP issuance, verification and resend policy.
"""
from __future__ import annotations

from dataclasses import replace

import pytest

from esign_engine.exceptions import DeliveryError, ErrorKind, OtpError
from esign_engine.models.enums import OtpChannel, SigningMethod
from esign_engine.models.otp import OtpChallenge
from esign_engine.schemas.schemas import Contact
from esign_engine.services.otp_service import OtpPolicy, OtpService, generate_code
from esign_engine.utils.hashing import hash_otp

SECRET = "test-secret-key-for-testing-only"
CONTACT = Contact(email="maria@example.com", phone="+35799123456")


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


@pytest.fixture
def session_id(engine, envelope, customer_actor):
    return engine.start_session(envelope.id, SigningMethod.SELF_SERVICE, customer_actor).id


@pytest.fixture
def otp(db, channel, clock):
    return OtpService(db, {OtpChannel.SMS: channel, OtpChannel.EMAIL: channel}, OtpPolicy(), SECRET, clock)


class TestCodeGeneration:
    def test_codes_are_fixed_length_digits(self):
        """Should always produce six digits, keeping leading zeros."""
        for _ in range(200):
            code = generate_code(6)
            assert len(code) == 6
            assert code.isdigit()


class TestIssue:
    @pytest.mark.asyncio
    async def test_stores_only_keyed_hash(self, otp, channel, session_id):
        """Should deliver the code but persist only its HMAC."""
        challenge = await otp.issue(session_id, CONTACT, OtpChannel.SMS)
        code = channel.last_code()

        assert channel.sent[-1][0] == "+35799123456"
        assert challenge.code_hash != code
        assert challenge.code_hash == hash_otp(SECRET, challenge.id, code)
        assert challenge.masked_destination.endswith("3456")

    @pytest.mark.asyncio
    async def test_missing_contact_is_channel_unavailable(self, otp, session_id):
        """Should refuse Email when no email is on file."""
        with pytest.raises(OtpError) as exc_info:
            await otp.issue(session_id, Contact(phone="+35799123456"), OtpChannel.EMAIL)
        assert exc_info.value.kind == ErrorKind.CHANNEL_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_new_issue_supersedes_previous(self, otp, channel, clock, session_id):
        """Should leave at most one active challenge per session."""
        first = await otp.issue(session_id, CONTACT, OtpChannel.SMS)
        first_code = channel.last_code()
        clock.advance(seconds=61)
        second = await otp.issue(session_id, CONTACT, OtpChannel.SMS)

        assert first.superseded_at is not None
        assert otp.active_for(session_id).id == second.id
        with pytest.raises(OtpError) as exc_info:
            otp.verify(first.id, first_code)
        assert exc_info.value.kind == ErrorKind.SUPERSEDED

    @pytest.mark.asyncio
    async def test_failed_delivery_keeps_previous_challenge(self, db, otp, channel, session_id):
        """Should not supersede the live code when the new one cannot be sent."""
        first = await otp.issue(session_id, CONTACT, OtpChannel.SMS)
        channel.fail = True

        with pytest.raises(DeliveryError):
            await otp.issue(session_id, CONTACT, OtpChannel.SMS)

        assert first.superseded_at is None
        assert db.query(OtpChallenge).count() == 1


class TestVerify:
    @pytest.mark.asyncio
    async def test_expired_then_fresh_issue_verifies(self, otp, channel, clock, session_id):
        """Should reject after the TTL and accept a fresh code issued afterwards."""
        challenge = await otp.issue(session_id, CONTACT, OtpChannel.SMS)
        code = channel.last_code()

        clock.advance(minutes=11)
        with pytest.raises(OtpError) as exc_info:
            otp.verify(challenge.id, code)
        assert exc_info.value.kind == ErrorKind.EXPIRED

        fresh = await otp.issue(session_id, CONTACT, OtpChannel.SMS)
        verified = otp.verify(fresh.id, channel.last_code())
        assert verified.consumed_at == clock()

    @pytest.mark.asyncio
    async def test_fourth_wrong_attempt_is_exhausted(self, db, channel, clock, session_id):
        """Should return Mismatch for attempts 1-3 and Exhausted on the 4th when max is 4."""
        otp = OtpService(db, {OtpChannel.SMS: channel}, replace(OtpPolicy(), max_attempts=4), SECRET, clock)
        challenge = await otp.issue(session_id, CONTACT, OtpChannel.SMS)
        wrong = _wrong(channel.last_code())

        for remaining in (3, 2, 1):
            with pytest.raises(OtpError) as exc_info:
                otp.verify(challenge.id, wrong)
            assert exc_info.value.kind == ErrorKind.MISMATCH
            assert exc_info.value.detail["attempts_remaining"] == remaining

        with pytest.raises(OtpError) as exc_info:
            otp.verify(challenge.id, wrong)
        assert exc_info.value.kind == ErrorKind.EXHAUSTED
        assert challenge.attempts == 4

    @pytest.mark.asyncio
    async def test_exhausted_challenge_rejects_correct_code(self, db, channel, clock, session_id):
        """Should stay exhausted even when the right code finally arrives."""
        otp = OtpService(db, {OtpChannel.SMS: channel}, replace(OtpPolicy(), max_attempts=2), SECRET, clock)
        challenge = await otp.issue(session_id, CONTACT, OtpChannel.SMS)
        code = channel.last_code()
        for _ in range(2):
            with pytest.raises(OtpError):
                otp.verify(challenge.id, _wrong(code))

        with pytest.raises(OtpError) as exc_info:
            otp.verify(challenge.id, code)
        assert exc_info.value.kind == ErrorKind.EXHAUSTED

    @pytest.mark.asyncio
    async def test_single_use(self, otp, channel, session_id):
        """Should succeed at most once for the same challenge and code."""
        challenge = await otp.issue(session_id, CONTACT, OtpChannel.SMS)
        code = channel.last_code()

        otp.verify(challenge.id, code)
        with pytest.raises(OtpError) as exc_info:
            otp.verify(challenge.id, code)
        assert exc_info.value.kind == ErrorKind.CONSUMED


class TestResend:
    @pytest.mark.asyncio
    async def test_cooldown_is_derived_from_issue_time(self, otp, clock, session_id):
        """Should allow a resend only once the cooldown has elapsed."""
        challenge = await otp.issue(session_id, CONTACT, OtpChannel.SMS)

        clock.advance(seconds=30)
        assert otp.can_resend(challenge.id) is False
        assert otp.resend_in(challenge) == 30

        clock.advance(seconds=30)
        assert otp.can_resend(challenge.id) is True
        assert otp.resend_in(challenge) == 0
