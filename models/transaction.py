"""
LedgerTransaction - append-only money journal.

Each row is a credit or a debit against one wallet class of one user.
Only status (PENDING -> COMPLETED | REJECTED) and resolvedAt may change after
insert; see models/listeners/balance_listeners.py for the guard.
"""
from sqlalchemy import (
    Column, Integer, String, DECIMAL, DateTime, ForeignKey, CheckConstraint, Index
)
from sqlalchemy.orm import relationship

from models.base import Base, _get_current_time

# Directions
CREDIT = "credit"
DEBIT = "debit"

# Statuses
PENDING = "PENDING"
COMPLETED = "COMPLETED"
REJECTED = "REJECTED"
TERMINAL_STATUSES = (COMPLETED, REJECTED)

# Income source tags
DIRECT_INCOME = "direct_income"
TEAM_INCOME = "team_income"
SALARY_INCOME = "salary_income"
MONTHLY_PROFIT = "monthly_profit"
PACKAGE_DEPOSIT = "package_deposit"
INVESTMENT_DEPOSIT = "investment_deposit"
INCOME_WITHDRAWAL = "income_withdrawal"
INVESTMENT_WITHDRAWAL = "investment_withdrawal"
TRANSFER_OUT = "transfer_out"
TRANSFER_IN = "transfer_in"
PACKAGE_INVESTMENT = "package_investment"
INVESTMENT_FROM_PACKAGE = "investment_from_package"
ADMIN_CREDIT = "admin_credit"

# Tags that count as a member's own deposit (direct bonus trigger)
DEPOSIT_SOURCES = (PACKAGE_DEPOSIT, INVESTMENT_DEPOSIT)
INCOME_SOURCES = (DIRECT_INCOME, TEAM_INCOME, SALARY_INCOME, MONTHLY_PROFIT)


class LedgerTransaction(Base):
    __tablename__ = 'transactions'
    __table_args__ = (
        CheckConstraint('amount >= 0', name='ck_transactions_amount_non_negative'),
        Index('ix_transactions_user_wallet_status', 'userID', 'walletClass', 'status'),
    )

    transactionID = Column(Integer, primary_key=True, autoincrement=True)
    userID = Column(Integer, ForeignKey('users.userID'), nullable=False)

    walletClass = Column(String, nullable=False)  # package, investment
    amount = Column(DECIMAL(18, 2), nullable=False)
    direction = Column(String, nullable=False)  # credit, debit
    incomeSource = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default=PENDING)
    description = Column(String, nullable=True)

    # Linking metadata
    referralLevel = Column(Integer, nullable=True)
    investmentID = Column(Integer, ForeignKey('investments.investmentID'), nullable=True, index=True)
    sourceUserID = Column(Integer, ForeignKey('users.userID'), nullable=True)
    sourceTransactionID = Column(Integer, ForeignKey('transactions.transactionID'), nullable=True)

    # event source + purpose (+ level) for system postings
    idempotencyKey = Column(String, unique=True, nullable=True)

    createdAt = Column(DateTime, default=_get_current_time)
    resolvedAt = Column(DateTime, nullable=True)

    user = relationship('User', foreign_keys=[userID])

    @property
    def isTerminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "transactionId": self.transactionID,
            "userId": self.userID,
            "walletClass": self.walletClass,
            "amount": str(self.amount),
            "direction": self.direction,
            "incomeSource": self.incomeSource,
            "status": self.status,
            "description": self.description,
            "referralLevel": self.referralLevel,
            "investmentId": self.investmentID,
            "sourceUserId": self.sourceUserID,
            "createdAt": self.createdAt.isoformat() if self.createdAt else None,
            "resolvedAt": self.resolvedAt.isoformat() if self.resolvedAt else None,
        }

    def __repr__(self):
        return (
            f"<LedgerTransaction(id={self.transactionID}, user={self.userID}, "
            f"{self.direction} {self.amount} {self.walletClass}, "
            f"source={self.incomeSource}, status={self.status})>"
        )
