"""
Investment lifecycle: creation, lock/eligibility, admin credits, and
investing from the package wallet.

    active --(now >= unlockDate)--> eligible --(withdrawal requested)--> withdrawing
    withdrawing --(approved)--> withdrawn
    withdrawing --(rejected)--> eligible
"""
import math
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional
from sqlalchemy.orm import Session
import logging

from config import Config
from core.identity import Actor, require_admin
from core.locks import userLocks
from models.investment import Investment, ACTIVE, ELIGIBLE, WITHDRAWING, WITHDRAWN
from models.transaction import (
    CREDIT, DEBIT, ADMIN_CREDIT, PACKAGE_INVESTMENT, INVESTMENT_FROM_PACKAGE,
)
from models.user import User
from models.wallet import PACKAGE, INVESTMENT, WALLET_CLASSES
from mlm_engine.errors import InvalidAmount, NotEligible, NotFound
from mlm_engine.services.ledger_service import LedgerService
from mlm_engine.utils.investment_helpers import get_tier_percentage, package_name, unlock_date_for
from mlm_engine.utils.money import to_money, is_multiple_of
from mlm_engine.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


def remaining_days(until: datetime, now: datetime) -> int:
    """Whole days left until a moment, rounded up; 0 once reached."""
    seconds = (until - now).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / 86400)


def validate_step_amount(amount: Decimal, minimum: Decimal, step: Decimal) -> Decimal:
    """
    Raises:
        InvalidAmount: below minimum or not a multiple of step
    """
    amount = to_money(amount)
    if amount < minimum or not is_multiple_of(amount, step):
        raise InvalidAmount(amount, minimum, step)
    return amount


class InvestmentService:
    """Service for investment creation and status management."""

    def __init__(self, session: Session):
        self.session = session
        self.ledger = LedgerService(session)

    def getInvestment(self, investmentId: int) -> Investment:
        investment = self.session.get(Investment, investmentId)
        if investment is None:
            raise NotFound(f"Investment {investmentId} not found")
        return investment

    def getInvestments(self, userId: int, status: str = None) -> List[Investment]:
        query = self.session.query(Investment).filter(Investment.userID == userId)
        if status:
            query = query.filter(Investment.status == status)
        return query.order_by(Investment.startDate, Investment.investmentID).all()

    def createInvestment(
            self,
            userId: int,
            principal: Decimal,
            depositTransactionId: int = None,
            startDate: datetime = None,
            monthlyProfitRate: Decimal = None,
    ) -> Investment:
        """
        Open an investment. Rate defaults to the principal's tier.
        Flushes, does not commit.
        """
        principal = to_money(principal)
        start = startDate or timeMachine.utcnow
        rate = monthlyProfitRate if monthlyProfitRate is not None else get_tier_percentage(principal)

        if rate <= 0:
            logger.warning(f"Investment of {principal} for user {userId} has no profit tier")

        investment = Investment(
            userID=userId,
            principal=principal,
            monthlyProfitRate=rate,
            packageName=package_name(principal),
            startDate=start,
            unlockDate=unlock_date_for(start),
            status=ACTIVE,
            lastAccruedCycle=0,
            depositTransactionID=depositTransactionId,
        )
        self.session.add(investment)
        self.session.flush()

        logger.info(
            f"Investment {investment.investmentID} opened for user {userId}: "
            f"principal={principal}, rate={rate}%, unlock={investment.unlockDate.date()}"
        )
        return investment

    # ═══════════════════════════════════════════════════════════════════
    # STATUS
    # ═══════════════════════════════════════════════════════════════════

    def refreshStatus(self, investment: Investment) -> bool:
        """active → eligible once the lock has elapsed. Returns True on change."""
        if investment.status == ACTIVE and timeMachine.utcnow >= investment.unlockDate:
            investment.status = ELIGIBLE
            logger.info(f"Investment {investment.investmentID} is now eligible for withdrawal")
            return True
        return False

    def refreshAll(self) -> int:
        """Unlock every active investment whose lock has elapsed."""
        due = self.session.query(Investment).filter(
            Investment.status == ACTIVE,
            Investment.unlockDate <= timeMachine.utcnow,
        ).all()
        for investment in due:
            self.refreshStatus(investment)
        if due:
            self.session.flush()
            logger.info(f"Unlocked {len(due)} investments")
        return len(due)

    def checkWithdrawable(self, investment: Investment) -> None:
        """
        Raises:
            NotEligible: still locked (with remaining days), or not in a
                         withdrawable state
        """
        self.refreshStatus(investment)

        if investment.status == ACTIVE:
            days = remaining_days(investment.unlockDate, timeMachine.utcnow)
            raise NotEligible(
                f"Investment {investment.investmentID} is locked for {days} more day(s)",
                remainingDays=days,
                eligibleAt=investment.unlockDate,
            )
        if investment.status != ELIGIBLE:
            raise NotEligible(
                f"Investment {investment.investmentID} is {investment.status}, not eligible"
            )

    def markWithdrawing(self, investment: Investment, withdrawalTransactionId: int) -> None:
        investment.status = WITHDRAWING
        investment.withdrawalTransactionID = withdrawalTransactionId

    def markWithdrawn(self, investment: Investment) -> None:
        if investment.status == WITHDRAWN:
            return
        investment.status = WITHDRAWN
        logger.info(f"Investment {investment.investmentID} withdrawn, accrual stopped")

    def releaseWithdrawal(self, investment: Investment) -> None:
        """Withdrawal rejected: back to eligible."""
        if investment.status == WITHDRAWING:
            investment.status = ELIGIBLE
            investment.withdrawalTransactionID = None
            logger.info(f"Investment {investment.investmentID} withdrawal released, eligible again")

    def getEligibility(self, investment: Investment) -> Dict:
        self.refreshStatus(investment)
        now = timeMachine.utcnow
        return {
            "investmentId": investment.investmentID,
            "status": investment.status,
            "eligible": investment.status == ELIGIBLE,
            "remainingDays": remaining_days(investment.unlockDate, now),
            "eligibleAt": investment.unlockDate.isoformat(),
        }

    # ═══════════════════════════════════════════════════════════════════
    # FUNDING COMMANDS
    # ═══════════════════════════════════════════════════════════════════

    async def adminCredit(
            self,
            actor: Actor,
            referralCodes: List[str],
            amount: Decimal,
            walletClass: str = INVESTMENT,
            note: str = None,
    ) -> List[Dict]:
        """
        Manual credit by an administrator to one or more members.

        Credits to the investment wallet open an investment with the credited
        principal. Admin credits never trigger the direct referral bonus.
        All codes are resolved first; the credit is all-or-nothing.

        Raises:
            PermissionDenied, NotFound, InvalidAmount
        """
        require_admin(actor)
        if walletClass not in WALLET_CLASSES:
            raise InvalidAmount(amount, reason=f"Unknown wallet class {walletClass!r}")

        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmount(amount, reason="Credit amount must be positive")

        users = []
        for code in referralCodes:
            user = self.session.query(User).filter_by(referralCode=code.strip().upper()).first()
            if user is None:
                raise NotFound(f"No member with referral code {code}")
            users.append(user)

        results = []
        async with userLocks.hold(*[u.userID for u in users]):
            try:
                for user in users:
                    entry = self.ledger.postCompleted(
                        userId=user.userID,
                        amount=amount,
                        direction=CREDIT,
                        incomeSource=ADMIN_CREDIT,
                        walletClass=walletClass,
                        description=note or f"Manual credit by admin {actor.userId}",
                    )
                    result = {
                        "userId": user.userID,
                        "referralCode": user.referralCode,
                        "transactionId": entry.transactionID,
                        "status": entry.status,
                        "investmentId": None,
                    }
                    if walletClass == INVESTMENT:
                        investment = self.createInvestment(user.userID, amount, entry.transactionID)
                        result["investmentId"] = investment.investmentID
                    results.append(result)

                self.session.commit()
            except Exception:
                self.session.rollback()
                raise

        logger.info(
            f"Admin {actor.userId} credited {amount} ({walletClass}) to {len(results)} member(s)"
        )
        return results

    async def investFromPackage(self, actor: Actor, amount: Decimal) -> Dict:
        """
        Move funds from the package wallet into a new investment.

        Raises:
            InvalidAmount, InsufficientBalance
        """
        amount = validate_step_amount(
            amount,
            Config.get(Config.DEPOSIT_MIN, Decimal("100")),
            Config.get(Config.DEPOSIT_STEP, Decimal("10")),
        )

        async with userLocks.hold(actor.userId):
            try:
                self.ledger.lockWallet(actor.userId)
                self.ledger.ensureAvailable(actor.userId, PACKAGE, amount)

                debit = self.ledger.postCompleted(
                    userId=actor.userId,
                    amount=amount,
                    direction=DEBIT,
                    incomeSource=PACKAGE_INVESTMENT,
                    walletClass=PACKAGE,
                    description="Invested from package wallet",
                )
                credit = self.ledger.postCompleted(
                    userId=actor.userId,
                    amount=amount,
                    direction=CREDIT,
                    incomeSource=INVESTMENT_FROM_PACKAGE,
                    walletClass=INVESTMENT,
                    description="Investment principal from package wallet",
                    sourceTransactionId=debit.transactionID,
                )
                investment = self.createInvestment(actor.userId, amount, credit.transactionID)
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise

        return {
            "investmentId": investment.investmentID,
            "transactionId": credit.transactionID,
            "debitTransactionId": debit.transactionID,
            "status": credit.status,
        }
