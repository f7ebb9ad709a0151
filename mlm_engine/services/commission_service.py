# mlm_engine/services/commission_service.py
"""
Commission distribution - direct referral bonus and 10-level team income.

Every posting is completed immediately and carries an explicit
idempotency key, so re-running a trigger can never pay twice:

    direct_income:{sponsorId}:{referredUserId}
    team_income:{profitTransactionId}:L{level}
"""
from decimal import Decimal
from typing import Dict, List, Optional
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session
import logging

from config import Config
from models.user import User
from models.transaction import (
    LedgerTransaction, CREDIT, COMPLETED, DIRECT_INCOME, TEAM_INCOME, DEPOSIT_SOURCES,
    MONTHLY_PROFIT,
)
from models.wallet import INVESTMENT
from mlm_engine.config.ranks import TEAM_INCOME_MAX_LEVELS
from mlm_engine.errors import DuplicateBonus
from mlm_engine.services.ledger_service import LedgerService
from mlm_engine.utils.chain_walker import ChainWalker
from mlm_engine.utils.money import percent_of, to_money, ZERO

logger = logging.getLogger(__name__)


def direct_bonus_key(sponsorId: int, referredUserId: int) -> str:
    return f"direct_income:{sponsorId}:{referredUserId}"


def team_income_key(sourceTransactionId: int, level: int) -> str:
    return f"team_income:{sourceTransactionId}:L{level}"


class CommissionService:
    """Service for posting referral commissions."""

    def __init__(self, session: Session):
        self.session = session
        self.ledger = LedgerService(session)

    # ═══════════════════════════════════════════════════════════════════
    # DIRECT BONUS
    # ═══════════════════════════════════════════════════════════════════

    def _isFirstDeposit(self, deposit: LedgerTransaction) -> bool:
        earlier = self.session.query(LedgerTransaction.transactionID).filter(
            LedgerTransaction.userID == deposit.userID,
            LedgerTransaction.incomeSource.in_(DEPOSIT_SOURCES),
            LedgerTransaction.status == COMPLETED,
            LedgerTransaction.transactionID != deposit.transactionID,
            or_(
                LedgerTransaction.resolvedAt < deposit.resolvedAt,
                and_(
                    LedgerTransaction.resolvedAt == deposit.resolvedAt,
                    LedgerTransaction.transactionID < deposit.transactionID,
                ),
            ),
        ).first()
        return earlier is None

    async def processDirectBonus(self, depositTransactionId: int) -> Optional[Dict]:
        """
        Pay the referral sponsor DIRECT_BONUS_PERCENT of a member's first
        completed deposit.

        Safe to call for every completed deposit: later deposits, members
        without a sponsor and repeated triggers post nothing.

        Returns:
            Commission dict if a bonus was posted, None otherwise
        """
        deposit = self.session.get(LedgerTransaction, depositTransactionId)
        if deposit is None:
            logger.error(f"Deposit transaction {depositTransactionId} not found")
            return None

        if deposit.incomeSource not in DEPOSIT_SOURCES or deposit.status != COMPLETED:
            logger.debug(
                f"Transaction {depositTransactionId} is not a completed deposit "
                f"({deposit.incomeSource}/{deposit.status}), no direct bonus"
            )
            return None

        referred = self.session.get(User, deposit.userID)
        if referred is None or referred.sponsorID is None:
            logger.debug(f"User {deposit.userID} has no sponsor, no direct bonus")
            return None

        if not self._isFirstDeposit(deposit):
            logger.debug(f"Deposit {depositTransactionId} is not the first for user {referred.userID}")
            return None

        try:
            return self._postDirectBonus(referred, deposit)
        except DuplicateBonus as e:
            logger.warning(
                f"Direct bonus for sponsor {referred.sponsorID} / user {referred.userID} "
                f"already paid (transaction {e.transactionId}), skipping"
            )
            return None

    def _postDirectBonus(self, referred: User, deposit: LedgerTransaction) -> Optional[Dict]:
        percent = Config.get(Config.DIRECT_BONUS_PERCENT, Decimal("10"))
        amount = percent_of(deposit.amount, percent)
        key = direct_bonus_key(referred.sponsorID, referred.userID)

        if amount <= 0:
            logger.warning(f"Direct bonus for deposit {deposit.transactionID} rounds to zero")
            return None

        entry, created = self.ledger.postCompletedOnce(
            userId=referred.sponsorID,
            amount=amount,
            direction=CREDIT,
            incomeSource=DIRECT_INCOME,
            walletClass=INVESTMENT,
            idempotencyKey=key,
            description=f"Direct referral bonus {percent}% of first deposit by user {referred.userID}",
            sourceUserId=referred.userID,
            sourceTransactionId=deposit.transactionID,
        )
        if not created:
            raise DuplicateBonus(key, entry.transactionID)

        logger.info(
            f"✓ Direct bonus ${amount} to sponsor {referred.sponsorID} "
            f"for first deposit ${deposit.amount} of user {referred.userID}"
        )
        return {
            "userId": referred.sponsorID,
            "amount": amount,
            "percentage": percent,
            "transactionId": entry.transactionID,
            "incomeSource": DIRECT_INCOME,
        }

    # ═══════════════════════════════════════════════════════════════════
    # TEAM INCOME
    # ═══════════════════════════════════════════════════════════════════

    async def distributeTeamIncome(self, profitTransactionId: int) -> Dict:
        """
        Pay tree ancestors their share of a monthly profit credit.

        Level n ancestor receives TEAM_INCOME_PERCENTAGES[n-1] percent.
        Missing ancestors (shallow tree) contribute nothing.

        Returns:
            Dict with success flag, commissions list and totalDistributed
        """
        profit = self.session.get(LedgerTransaction, profitTransactionId)
        if profit is None:
            logger.error(f"Profit transaction {profitTransactionId} not found")
            return {"success": False, "error": "Profit transaction not found"}

        if profit.incomeSource != MONTHLY_PROFIT or profit.status != COMPLETED:
            logger.error(
                f"Transaction {profitTransactionId} is not a completed monthly profit "
                f"({profit.incomeSource}/{profit.status})"
            )
            return {"success": False, "error": "Not a completed monthly profit"}

        origin = self.session.get(User, profit.userID)
        percentages = Config.get_team_percentages()[:TEAM_INCOME_MAX_LEVELS]

        results = {
            "success": True,
            "profitTransactionId": profitTransactionId,
            "commissions": [],
            "skipped": 0,
            "totalDistributed": ZERO,
        }

        if origin is None or not percentages:
            return results

        walker = ChainWalker(self.session)
        ancestors: List[User] = walker.get_upline_chain(origin, max_depth=len(percentages))

        for level, ancestor in enumerate(ancestors, start=1):
            percent = percentages[level - 1]
            amount = percent_of(profit.amount, percent)
            if amount <= 0:
                continue

            entry, created = self.ledger.postCompletedOnce(
                userId=ancestor.userID,
                amount=amount,
                direction=CREDIT,
                incomeSource=TEAM_INCOME,
                walletClass=INVESTMENT,
                idempotencyKey=team_income_key(profit.transactionID, level),
                description=f"Team income level {level} ({percent}%) on profit of user {origin.userID}",
                referralLevel=level,
                investmentId=profit.investmentID,
                sourceUserId=origin.userID,
                sourceTransactionId=profit.transactionID,
            )

            if not created:
                results["skipped"] += 1
                continue

            results["commissions"].append({
                "userId": ancestor.userID,
                "level": level,
                "percentage": percent,
                "amount": amount,
                "transactionId": entry.transactionID,
            })
            results["totalDistributed"] += amount

        logger.info(
            f"Team income for profit {profitTransactionId} (user {origin.userID}, ${profit.amount}): "
            f"{len(results['commissions'])} postings, total {to_money(results['totalDistributed'])}, "
            f"skipped {results['skipped']}"
        )

        return results
