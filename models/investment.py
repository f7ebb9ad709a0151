"""
Investment model - locked principal that accrues monthly profit.

Principal never changes. lastAccruedCycle is the accrual marker: cycle n is
due once now >= startDate + n months.
"""
from sqlalchemy import Column, Integer, String, DECIMAL, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from models.base import Base, AuditMixin

ACTIVE = "active"
ELIGIBLE = "eligible"
WITHDRAWING = "withdrawing"
WITHDRAWN = "withdrawn"

ACCRUING_STATUSES = (ACTIVE, ELIGIBLE)
LOCKED_STATUSES = (ACTIVE, ELIGIBLE)


class Investment(Base, AuditMixin):
    __tablename__ = 'investments'

    investmentID = Column(Integer, primary_key=True, autoincrement=True)
    userID = Column(Integer, ForeignKey('users.userID'), nullable=False, index=True)

    principal = Column(DECIMAL(18, 2), nullable=False)
    monthlyProfitRate = Column(DECIMAL(6, 3), nullable=False)  # percent
    packageName = Column(String, nullable=True)

    startDate = Column(DateTime, nullable=False)
    unlockDate = Column(DateTime, nullable=False)
    status = Column(String, nullable=False, default=ACTIVE, index=True)

    lastAccruedCycle = Column(Integer, nullable=False, default=0)

    depositTransactionID = Column(Integer, nullable=True)
    withdrawalTransactionID = Column(Integer, nullable=True)

    user = relationship('User', backref='investments')

    def to_dict(self) -> dict:
        return {
            "investmentId": self.investmentID,
            "userId": self.userID,
            "principal": str(self.principal),
            "monthlyProfitRate": str(self.monthlyProfitRate),
            "packageName": self.packageName,
            "startDate": self.startDate.isoformat(),
            "unlockDate": self.unlockDate.isoformat(),
            "status": self.status,
            "lastAccruedCycle": self.lastAccruedCycle,
        }

    def __repr__(self):
        return (
            f"<Investment(id={self.investmentID}, user={self.userID}, "
            f"principal={self.principal}, status={self.status})>"
        )
