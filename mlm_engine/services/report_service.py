"""
Read-side reports: wallet, income, eligibility and salary summaries.
"""
from decimal import Decimal
from typing import Dict, List
from sqlalchemy import func
from sqlalchemy.orm import Session
import logging

from models.investment import Investment, ELIGIBLE, LOCKED_STATUSES
from models.transaction import (
    LedgerTransaction, CREDIT, DEBIT, COMPLETED, PENDING, INCOME_SOURCES, TEAM_INCOME,
    INCOME_WITHDRAWAL, INVESTMENT_WITHDRAWAL,
)
from models.user import User
from models.wallet import WALLET_CLASSES, INVESTMENT
from mlm_engine.errors import NotFound
from mlm_engine.services.investment_service import InvestmentService
from mlm_engine.services.ledger_service import LedgerService
from mlm_engine.services.rank_service import RankService
from mlm_engine.utils.money import to_money, ZERO

logger = logging.getLogger(__name__)


class ReportService:
    """Query endpoints for members and admins."""

    def __init__(self, session: Session):
        self.session = session
        self.ledger = LedgerService(session)
        self.investments = InvestmentService(session)

    def _requireUser(self, userId: int) -> User:
        user = self.session.get(User, userId)
        if user is None:
            raise NotFound(f"User {userId} not found")
        return user

    def _sum(self, userId: int, *criteria) -> Decimal:
        value = self.session.query(
            func.coalesce(func.sum(LedgerTransaction.amount), 0)
        ).filter(LedgerTransaction.userID == userId, *criteria).scalar()
        return to_money(value)

    def walletSummary(self, userId: int) -> Dict:
        self._requireUser(userId)
        wallets = {}
        for walletClass in WALLET_CLASSES:
            wallets[walletClass] = {
                "balance": self.ledger.balance(userId, walletClass),
                "available": self.ledger.availableBalance(userId, walletClass),
                "pendingDebits": self.ledger.pendingDebits(userId, walletClass),
            }
        wallets[INVESTMENT]["lockedPrincipal"] = self.ledger.lockedPrincipal(userId)
        return {"userId": userId, "wallets": wallets}

    def history(self, userId: int, page: int = 1, pageSize: int = 20,
                incomeSource: str = None, status: str = None, walletClass: str = None) -> Dict:
        self._requireUser(userId)
        result = self.ledger.history(userId, page, pageSize, incomeSource, status, walletClass)
        result["items"] = [entry.to_dict() for entry in result["items"]]
        return result

    def incomeBreakdown(self, userId: int) -> Dict:
        """Completed income credits per source."""
        self._requireUser(userId)
        rows = self.session.query(
            LedgerTransaction.incomeSource, func.sum(LedgerTransaction.amount)
        ).filter(
            LedgerTransaction.userID == userId,
            LedgerTransaction.direction == CREDIT,
            LedgerTransaction.status == COMPLETED,
            LedgerTransaction.incomeSource.in_(INCOME_SOURCES),
        ).group_by(LedgerTransaction.incomeSource).all()

        breakdown = {source: ZERO for source in INCOME_SOURCES}
        for source, total in rows:
            breakdown[source] = to_money(total)

        return {
            "userId": userId,
            "bySource": breakdown,
            "total": sum(breakdown.values(), ZERO),
        }

    def teamIncomeByLevel(self, userId: int) -> List[Dict]:
        self._requireUser(userId)
        rows = self.session.query(
            LedgerTransaction.referralLevel,
            func.count(LedgerTransaction.transactionID),
            func.sum(LedgerTransaction.amount),
        ).filter(
            LedgerTransaction.userID == userId,
            LedgerTransaction.incomeSource == TEAM_INCOME,
            LedgerTransaction.status == COMPLETED,
        ).group_by(LedgerTransaction.referralLevel).order_by(LedgerTransaction.referralLevel).all()

        return [
            {"level": level, "count": count, "total": to_money(total)}
            for level, count, total in rows
        ]

    def withdrawalEligibility(self, userId: int) -> Dict:
        """
        What the member could withdraw now, and why not more.
        """
        self._requireUser(userId)
        self.investments.refreshAll()

        total_income = self._sum(
            userId,
            LedgerTransaction.direction == CREDIT,
            LedgerTransaction.status == COMPLETED,
            LedgerTransaction.incomeSource.in_(INCOME_SOURCES),
        )
        withdrawn = self._sum(
            userId,
            LedgerTransaction.direction == DEBIT,
            LedgerTransaction.status == COMPLETED,
            LedgerTransaction.incomeSource.in_((INCOME_WITHDRAWAL, INVESTMENT_WITHDRAWAL)),
        )
        pending = self._sum(
            userId,
            LedgerTransaction.direction == DEBIT,
            LedgerTransaction.status == PENDING,
            LedgerTransaction.walletClass == INVESTMENT,
        )
        locked = self.ledger.lockedPrincipal(userId)
        unlocked = to_money(self.session.query(
            func.coalesce(func.sum(Investment.principal), 0)
        ).filter(Investment.userID == userId, Investment.status == ELIGIBLE).scalar())

        investments = [
            self.investments.getEligibility(inv)
            for inv in self.investments.getInvestments(userId)
            if inv.status in LOCKED_STATUSES
        ]

        return {
            "userId": userId,
            "totalIncome": total_income,
            "completedWithdrawals": withdrawn,
            "pendingHolds": pending,
            "lockedPrincipal": locked,
            "unlockedPrincipal": unlocked,
            "withdrawableIncome": self.ledger.availableBalance(userId, INVESTMENT),
            "investments": investments,
        }

    def investmentList(self, userId: int) -> List[Dict]:
        self._requireUser(userId)
        return [inv.to_dict() for inv in self.investments.getInvestments(userId)]

    async def salaryStatus(self, userId: int) -> Dict:
        user = self._requireUser(userId)
        status = await RankService(self.session).getRankStatus(userId)
        data = status.to_dict()
        data["storedRank"] = user.rank
        data["lastSalaryPeriod"] = user.lastSalaryPeriod
        return data
