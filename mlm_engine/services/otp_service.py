"""
One-time codes for withdrawal/deposit attestation.

Sessions live in the otp_sessions table so every service instance sees the
same state. A session is created by sendCode, consumed by the first
successful verify, and dead after OTP_TTL_SECONDS or OTP_MAX_ATTEMPTS wrong
codes. Only sha256("{sessionID}:{code}") is stored.
"""
import hashlib
import hmac
import secrets
from datetime import timedelta
from typing import Protocol
from sqlalchemy.orm import Session
import logging

from config import Config
from models.otp_session import OTPSession
from mlm_engine.errors import OTPDeliveryError
from mlm_engine.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class OTPDelivery(Protocol):
    """Transport for codes (EmailService implements it)."""

    async def send_otp(self, destination: str, code: str, purpose: str) -> bool:
        ...


def hash_code(sessionId: str, code: str) -> str:
    return hashlib.sha256(f"{sessionId}:{code}".encode()).hexdigest()


class OTPService:
    """TTL-bounded OTP store."""

    def __init__(self, session: Session, delivery: OTPDelivery):
        self.session = session
        self.delivery = delivery

    def _generateCode(self) -> str:
        length = Config.get(Config.OTP_LENGTH, 6)
        return ''.join(secrets.choice('0123456789') for _ in range(length))

    async def sendCode(self, destination: str, purpose: str) -> str:
        """
        Create a session and deliver a fresh code.

        Returns:
            Opaque session id

        Raises:
            OTPDeliveryError: transport reported failure
        """
        session_id = secrets.token_urlsafe(24)
        code = self._generateCode()
        ttl = Config.get(Config.OTP_TTL_SECONDS, 600)
        now = timeMachine.utcnow

        delivered = await self.delivery.send_otp(destination, code, purpose)
        if not delivered:
            logger.error(f"OTP delivery to {destination} failed ({purpose})")
            raise OTPDeliveryError(f"Could not deliver verification code to {destination}")

        self.session.add(OTPSession(
            sessionID=session_id,
            destination=destination,
            purpose=purpose,
            codeHash=hash_code(session_id, code),
            attempts=0,
            createdAt=now,
            expiresAt=now + timedelta(seconds=ttl),
        ))
        self.session.commit()

        logger.info(f"OTP sent to {destination} for {purpose}, expires in {ttl}s")
        return session_id

    def verify(self, sessionId: str, code: str, purpose: str = None) -> bool:
        """
        Check a code. A correct code consumes the session.
        Commits the attempt counter either way.
        """
        otp = self.session.get(OTPSession, sessionId) if sessionId else None
        if otp is None:
            logger.warning("OTP verify for unknown session")
            return False

        now = timeMachine.utcnow
        max_attempts = Config.get(Config.OTP_MAX_ATTEMPTS, 5)

        if otp.consumedAt is not None:
            logger.warning(f"OTP session for {otp.destination} already used")
            return False
        if now >= otp.expiresAt:
            logger.info(f"OTP session for {otp.destination} expired")
            return False
        if otp.attempts >= max_attempts:
            logger.warning(f"OTP session for {otp.destination} exhausted its attempts")
            return False
        if purpose is not None and otp.purpose != purpose:
            logger.warning(f"OTP session purpose mismatch: {otp.purpose} != {purpose}")
            return False

        if hmac.compare_digest(otp.codeHash, hash_code(sessionId, str(code).strip())):
            otp.consumedAt = now
            self.session.commit()
            logger.info(f"OTP verified for {otp.destination} ({otp.purpose})")
            return True

        otp.attempts += 1
        self.session.commit()
        logger.info(f"Wrong OTP for {otp.destination}, attempt {otp.attempts}/{max_attempts}")
        return False

    def cleanupExpired(self) -> int:
        """Delete expired and consumed sessions."""
        now = timeMachine.utcnow
        deleted = self.session.query(OTPSession).filter(
            (OTPSession.expiresAt <= now) | (OTPSession.consumedAt.isnot(None))
        ).delete(synchronize_session=False)
        self.session.commit()
        if deleted:
            logger.info(f"Cleaned up {deleted} OTP sessions")
        return deleted
