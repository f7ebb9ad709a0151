"""
MoneyRequest - deposit/withdrawal/transfer requests and their approval state.

Deposits and withdrawals: REQUESTED -> OTP_VERIFIED -> PENDING_REVIEW -> COMPLETED | REJECTED
Transfers: REQUESTED -> COMPLETED (validated synchronously)
"""
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from models.base import Base, AuditMixin

# Kinds
DEPOSIT = "deposit"
WITHDRAWAL = "withdrawal"
TRANSFER = "transfer"

# States
REQUESTED = "REQUESTED"
OTP_VERIFIED = "OTP_VERIFIED"
PENDING_REVIEW = "PENDING_REVIEW"
COMPLETED = "COMPLETED"
REJECTED = "REJECTED"
TERMINAL_STATES = (COMPLETED, REJECTED)


class MoneyRequest(Base, AuditMixin):
    __tablename__ = 'requests'

    requestID = Column(Integer, primary_key=True, autoincrement=True)
    userID = Column(Integer, ForeignKey('users.userID'), nullable=False, index=True)

    kind = Column(String, nullable=False)
    walletClass = Column(String, nullable=False)
    amount = Column(DECIMAL(18, 2), nullable=False)
    state = Column(String, nullable=False, default=REQUESTED, index=True)

    # Ledger links
    transactionID = Column(Integer, ForeignKey('transactions.transactionID'), nullable=True)
    counterTransactionID = Column(Integer, ForeignKey('transactions.transactionID'), nullable=True)
    investmentID = Column(Integer, ForeignKey('investments.investmentID'), nullable=True)
    recipientUserID = Column(Integer, ForeignKey('users.userID'), nullable=True)

    # Attestation
    otpSessionID = Column(String, nullable=True)
    blockchain = Column(String, nullable=True)  # network label, not interpreted
    address = Column(String, nullable=True)
    proofRef = Column(String, nullable=True)  # attachment reference from file storage

    # Review
    reviewedBy = Column(Integer, nullable=True)
    reviewedAt = Column(DateTime, nullable=True)
    reason = Column(String, nullable=True)

    user = relationship('User', foreign_keys=[userID])

    @property
    def isTerminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> dict:
        return {
            "requestId": self.requestID,
            "userId": self.userID,
            "kind": self.kind,
            "walletClass": self.walletClass,
            "amount": str(self.amount),
            "state": self.state,
            "transactionId": self.transactionID,
            "investmentId": self.investmentID,
            "recipientUserId": self.recipientUserID,
            "blockchain": self.blockchain,
            "address": self.address,
            "proofRef": self.proofRef,
            "reviewedBy": self.reviewedBy,
            "reviewedAt": self.reviewedAt.isoformat() if self.reviewedAt else None,
            "reason": self.reason,
            "createdAt": self.createdAt.isoformat() if self.createdAt else None,
        }

    def __repr__(self):
        return f"<MoneyRequest(id={self.requestID}, kind={self.kind}, amount={self.amount}, state={self.state})>"
