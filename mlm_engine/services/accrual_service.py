"""
Investment accrual - monthly profit and the team income it feeds.

Cycle n of an investment is due once now >= startDate + n months. Each cycle
is posted with key monthly_profit:{investmentId}:{n} and the investment's
lastAccruedCycle marker is advanced in the same commit, so a crashed or
overlapping run resumes at the first unprocessed cycle and never re-credits.
"""
from typing import Dict, List
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
import logging

from core.locks import userLocks
from models.investment import Investment, ACCRUING_STATUSES
from models.transaction import CREDIT, MONTHLY_PROFIT
from models.wallet import INVESTMENT
from mlm_engine.errors import ConcurrentModification, LedgerUnavailable
from mlm_engine.services.commission_service import CommissionService
from mlm_engine.services.investment_service import InvestmentService
from mlm_engine.services.ledger_service import LedgerService
from mlm_engine.utils.money import percent_of, ZERO
from mlm_engine.utils.time_machine import timeMachine, add_months

logger = logging.getLogger(__name__)


def monthly_profit_key(investmentId: int, cycle: int) -> str:
    return f"monthly_profit:{investmentId}:{cycle}"


class AccrualService:
    """Posts monthly profit for active/eligible investments."""

    def __init__(self, session: Session):
        self.session = session
        self.ledger = LedgerService(session)
        self.commissions = CommissionService(session)
        self.investments = InvestmentService(session)

    @staticmethod
    def dueCycles(investment: Investment, now) -> List[int]:
        """Cycles after the marker whose anniversary has passed."""
        cycles = []
        cycle = (investment.lastAccruedCycle or 0) + 1
        while add_months(investment.startDate, cycle) <= now:
            cycles.append(cycle)
            cycle += 1
        return cycles

    async def accrueCycle(self, investment: Investment, cycle: int) -> Dict:
        """
        Post one cycle of profit, distribute team income, advance marker.
        Commits.
        """
        profit = percent_of(investment.principal, investment.monthlyProfitRate)
        result = {"cycle": cycle, "profit": profit, "transactionId": None, "teamIncome": ZERO}

        if profit > 0:
            entry, created = self.ledger.postCompletedOnce(
                userId=investment.userID,
                amount=profit,
                direction=CREDIT,
                incomeSource=MONTHLY_PROFIT,
                walletClass=INVESTMENT,
                idempotencyKey=monthly_profit_key(investment.investmentID, cycle),
                description=(
                    f"Monthly profit {investment.monthlyProfitRate}% on investment "
                    f"{investment.investmentID}, cycle {cycle}"
                ),
                investmentId=investment.investmentID,
            )
            result["transactionId"] = entry.transactionID

            # Team income keys hang off the profit transaction, so this is
            # safe to repeat for an already-posted profit.
            distribution = await self.commissions.distributeTeamIncome(entry.transactionID)
            result["teamIncome"] = distribution.get("totalDistributed", ZERO)
            if not created:
                logger.warning(
                    f"Profit for investment {investment.investmentID} cycle {cycle} "
                    f"already posted, marker repaired"
                )

        investment.lastAccruedCycle = cycle
        self.session.commit()
        return result

    async def accrueInvestment(self, investmentId: int) -> Dict:
        """
        Bring one investment up to date. Processes every due cycle.
        """
        investment = self.session.get(Investment, investmentId)
        summary = {"investmentId": investmentId, "cycles": [], "totalProfit": ZERO}
        if investment is None:
            return summary

        async with userLocks.hold(investment.userID):
            self.session.refresh(investment)
            if self.investments.refreshStatus(investment):
                self.session.commit()

            if investment.status not in ACCRUING_STATUSES:
                return summary

            for cycle in self.dueCycles(investment, timeMachine.utcnow):
                cycle_result = await self.accrueCycle(investment, cycle)
                summary["cycles"].append(cycle_result)
                summary["totalProfit"] += cycle_result["profit"]

        if summary["cycles"]:
            logger.info(
                f"Investment {investmentId}: accrued {len(summary['cycles'])} cycle(s), "
                f"profit {summary['totalProfit']}"
            )
        return summary

    async def runAccrual(self) -> Dict:
        """
        Batch job: accrue every active/eligible investment.

        A failing investment is rolled back, logged and counted; completed
        cycles of other investments stay committed.
        """
        self.investments.refreshAll()
        self.session.commit()

        investment_ids = [
            row[0] for row in
            self.session.query(Investment.investmentID)
            .filter(Investment.status.in_(ACCRUING_STATUSES))
            .order_by(Investment.investmentID)
            .all()
        ]

        stats = {
            "success": True,
            "investments": len(investment_ids),
            "cyclesPosted": 0,
            "totalProfit": ZERO,
            "errors": 0,
            "failedInvestments": [],
        }

        for investment_id in investment_ids:
            try:
                summary = await self.accrueInvestment(investment_id)
                stats["cyclesPosted"] += len(summary["cycles"])
                stats["totalProfit"] += summary["totalProfit"]
            except ConcurrentModification as e:
                # Another run posted the same cycle; the next run picks up the marker
                self.session.rollback()
                logger.warning(f"Investment {investment_id} accrued concurrently: {e}")
            except OperationalError as e:
                self.session.rollback()
                logger.critical(f"Ledger unavailable during accrual: {e}")
                raise LedgerUnavailable(str(e)) from e
            except Exception as e:
                self.session.rollback()
                logger.error(f"Error accruing investment {investment_id}: {e}", exc_info=True)
                stats["errors"] += 1
                stats["failedInvestments"].append(investment_id)

        stats["success"] = stats["errors"] == 0
        logger.info(
            f"Accrual run at {timeMachine.utcnow}: investments={stats['investments']}, "
            f"cycles={stats['cyclesPosted']}, profit={stats['totalProfit']}, errors={stats['errors']}"
        )
        return stats
