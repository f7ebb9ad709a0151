"""
Wallet model - cached per-user balances.

Both columns are written ONLY by models/listeners/balance_listeners.py as
SUM(completed credits) - SUM(completed debits) over the transactions log.
"""
from sqlalchemy import Column, Integer, DECIMAL, ForeignKey
from sqlalchemy.orm import relationship

from models.base import Base, AuditMixin

PACKAGE = "package"
INVESTMENT = "investment"
WALLET_CLASSES = (PACKAGE, INVESTMENT)

BALANCE_COLUMNS = {
    PACKAGE: "packageBalance",
    INVESTMENT: "investmentBalance",
}


class Wallet(Base, AuditMixin):
    __tablename__ = 'wallets'

    userID = Column(Integer, ForeignKey('users.userID'), primary_key=True)

    packageBalance = Column(DECIMAL(18, 2), default=0, nullable=False)
    investmentBalance = Column(DECIMAL(18, 2), default=0, nullable=False)

    user = relationship('User', back_populates='wallet')

    def balance_of(self, walletClass: str):
        return getattr(self, BALANCE_COLUMNS[walletClass])

    def __repr__(self):
        return (
            f"<Wallet(userID={self.userID}, package={self.packageBalance}, "
            f"investment={self.investmentBalance})>"
        )
