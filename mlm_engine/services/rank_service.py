"""
Rank management and monthly salary.

A user holds the highest tier whose threshold both leg volumes meet.
Salary is paid once per period (YYYY-MM), keyed salary_income:{userId}:{period},
with User.lastSalaryPeriod as the resumable batch marker.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
import logging

from core.locks import userLocks
from models.user import User, LEFT, RIGHT
from models.transaction import CREDIT, SALARY_INCOME
from models.wallet import INVESTMENT
from mlm_engine.config.ranks import RANK_CONFIG, RankTier
from mlm_engine.errors import ConcurrentModification, LedgerUnavailable, NotFound
from mlm_engine.services.ledger_service import LedgerService
from mlm_engine.services.tree_service import TreeService
from mlm_engine.utils.money import ZERO
from mlm_engine.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

ONE = Decimal("1")


def salary_key(userId: int, period: str) -> str:
    return f"salary_income:{userId}:{period}"


def tier_progress(weaker_leg: Decimal, threshold: Decimal) -> Decimal:
    """min(weaker leg / threshold, 1), clamped to [0, 1]."""
    if threshold <= 0:
        return ONE
    progress = weaker_leg / threshold
    if progress < 0:
        return Decimal("0")
    return min(progress, ONE)


@dataclass
class TierProgress:
    name: str
    threshold: Decimal
    salary: Decimal
    progress: Decimal
    leftNeeded: Decimal
    rightNeeded: Decimal
    achieved: bool


@dataclass
class RankStatus:
    userId: int
    leftVolume: Decimal
    rightVolume: Decimal
    currentRank: Optional[RankTier]
    nextRank: Optional[RankTier]
    nextProgress: Decimal
    tiers: List[TierProgress] = field(default_factory=list)

    @property
    def weakerLeg(self) -> Decimal:
        return min(self.leftVolume, self.rightVolume)

    def to_dict(self) -> Dict:
        return {
            "userId": self.userId,
            "leftVolume": str(self.leftVolume),
            "rightVolume": str(self.rightVolume),
            "currentRank": self.currentRank.name if self.currentRank else None,
            "currentSalary": str(self.currentRank.salary) if self.currentRank else "0.00",
            "nextRank": self.nextRank.name if self.nextRank else None,
            "nextProgress": str(self.nextProgress),
            "tiers": [
                {
                    "name": t.name,
                    "threshold": str(t.threshold),
                    "salary": str(t.salary),
                    "progress": str(t.progress),
                    "leftNeeded": str(t.leftNeeded),
                    "rightNeeded": str(t.rightNeeded),
                    "achieved": t.achieved,
                }
                for t in self.tiers
            ],
        }


class RankService:
    """Service for rank qualification and salary payment."""

    def __init__(self, session: Session):
        self.session = session
        self.tree = TreeService(session)
        self.ledger = LedgerService(session)

    def evaluate(self, leftVolume: Decimal, rightVolume: Decimal, userId: int = None) -> RankStatus:
        """Rank status for given leg volumes (pure, no DB access)."""
        weaker = min(leftVolume, rightVolume)
        tiers = RANK_CONFIG()

        current = None
        next_rank = None
        progress_rows = []

        for tier in tiers:
            achieved = weaker >= tier.threshold
            if achieved:
                current = tier
            elif next_rank is None:
                next_rank = tier
            progress_rows.append(TierProgress(
                name=tier.name,
                threshold=tier.threshold,
                salary=tier.salary,
                progress=tier_progress(weaker, tier.threshold),
                leftNeeded=max(tier.threshold - leftVolume, ZERO),
                rightNeeded=max(tier.threshold - rightVolume, ZERO),
                achieved=achieved,
            ))

        next_progress = tier_progress(weaker, next_rank.threshold) if next_rank else ONE

        return RankStatus(
            userId=userId,
            leftVolume=leftVolume,
            rightVolume=rightVolume,
            currentRank=current,
            nextRank=next_rank,
            nextProgress=next_progress,
            tiers=progress_rows,
        )

    async def getRankStatus(self, userId: int, includeProfit: bool = False) -> RankStatus:
        if self.session.get(User, userId) is None:
            raise NotFound(f"User {userId} not found")
        volumes = self.tree.getLegVolumes(userId, includeProfit)
        return self.evaluate(volumes[LEFT], volumes[RIGHT], userId)

    async def payMonthlySalary(self, userId: int, period: str = None) -> Optional[Dict]:
        """
        Evaluate one user and pay the salary of their rank for the period.
        Commits. Returns payment dict, or None if not qualified / already paid.
        """
        period = period or timeMachine.currentMonth

        async with userLocks.hold(userId):
            user = self.session.get(User, userId)
            if user is None:
                raise NotFound(f"User {userId} not found")
            self.session.refresh(user)

            status = await self.getRankStatus(userId)
            rank_name = status.currentRank.name if status.currentRank else None
            if user.rank != rank_name:
                logger.info(f"User {userId} rank {user.rank} → {rank_name}")
                user.rank = rank_name

            if status.currentRank is None:
                self.session.commit()
                return None

            if user.lastSalaryPeriod == period:
                logger.debug(f"Salary for user {userId} already paid for {period}")
                self.session.commit()
                return None

            entry, created = self.ledger.postCompletedOnce(
                userId=userId,
                amount=status.currentRank.salary,
                direction=CREDIT,
                incomeSource=SALARY_INCOME,
                walletClass=INVESTMENT,
                idempotencyKey=salary_key(userId, period),
                description=f"{status.currentRank.name} salary for {period}",
            )
            user.lastSalaryPeriod = period
            self.session.commit()

        if not created:
            logger.warning(f"Salary for user {userId} / {period} existed, marker repaired")
            return None

        logger.info(
            f"✓ Salary ${status.currentRank.salary} ({status.currentRank.name}) "
            f"paid to user {userId} for {period}"
        )
        return {
            "userId": userId,
            "period": period,
            "rank": status.currentRank.name,
            "amount": status.currentRank.salary,
            "transactionId": entry.transactionID,
        }

    async def runMonthlySalary(self, period: str = None) -> Dict:
        """
        Batch job: pay salary to every qualified user for the period.
        Users already marked for the period are skipped without evaluation.
        """
        period = period or timeMachine.currentMonth

        user_ids = [
            row[0] for row in
            self.session.query(User.userID)
            .filter((User.lastSalaryPeriod.is_(None)) | (User.lastSalaryPeriod != period))
            .order_by(User.userID)
            .all()
        ]

        stats = {
            "success": True,
            "period": period,
            "evaluated": len(user_ids),
            "paid": 0,
            "totalAmount": ZERO,
            "errors": 0,
        }

        for user_id in user_ids:
            try:
                payment = await self.payMonthlySalary(user_id, period)
                if payment:
                    stats["paid"] += 1
                    stats["totalAmount"] += payment["amount"]
            except ConcurrentModification as e:
                self.session.rollback()
                logger.warning(f"Salary for user {user_id} written concurrently: {e}")
            except OperationalError as e:
                self.session.rollback()
                logger.critical(f"Ledger unavailable during salary run: {e}")
                raise LedgerUnavailable(str(e)) from e
            except Exception as e:
                self.session.rollback()
                logger.error(f"Error paying salary to user {user_id}: {e}", exc_info=True)
                stats["errors"] += 1

        stats["success"] = stats["errors"] == 0
        logger.info(
            f"Salary run {period}: evaluated={stats['evaluated']}, paid={stats['paid']}, "
            f"total=${stats['totalAmount']}, errors={stats['errors']}"
        )
        return stats
