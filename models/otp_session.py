"""
OTPSession - durable TTL store for one-time codes.

Only a hash of the code is kept. A row is live until expiresAt or until it
is consumed by a successful verify.
"""
from sqlalchemy import Column, Integer, String, DateTime

from models.base import Base, _get_current_time


class OTPSession(Base):
    __tablename__ = 'otp_sessions'

    sessionID = Column(String, primary_key=True)
    destination = Column(String, nullable=False)
    purpose = Column(String, nullable=False)
    codeHash = Column(String, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)

    createdAt = Column(DateTime, default=_get_current_time)
    expiresAt = Column(DateTime, nullable=False, index=True)
    consumedAt = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<OTPSession(purpose={self.purpose}, destination={self.destination}, expiresAt={self.expiresAt})>"
