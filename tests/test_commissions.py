# tests/test_commissions.py
"""
Tests for direct referral bonus and 10-level team income.

Direct bonus: 10% of the referred member's first completed deposit, once.
Team income: 10/5/2/1/0.5x6 percent of each monthly profit to tree ancestors.
"""
from decimal import Decimal

import pytest

from models import LedgerTransaction
from models.transaction import (
    CREDIT, DIRECT_INCOME, TEAM_INCOME, MONTHLY_PROFIT, INVESTMENT_DEPOSIT, PACKAGE_DEPOSIT,
)
from models.wallet import INVESTMENT, PACKAGE
from mlm_engine.services.accrual_service import AccrualService
from mlm_engine.services.commission_service import CommissionService
from mlm_engine.services.investment_service import InvestmentService
from mlm_engine.services.ledger_service import LedgerService
from mlm_engine.utils.time_machine import timeMachine


def post_deposit(session, user, amount, source=INVESTMENT_DEPOSIT, walletClass=INVESTMENT):
    entry = LedgerService(session).postCompleted(
        userId=user.userID,
        amount=Decimal(amount),
        direction=CREDIT,
        incomeSource=source,
        walletClass=walletClass,
    )
    session.commit()
    return entry


def post_profit(session, user, amount):
    entry = LedgerService(session).postCompleted(
        userId=user.userID,
        amount=Decimal(amount),
        direction=CREDIT,
        incomeSource=MONTHLY_PROFIT,
        walletClass=INVESTMENT,
    )
    session.commit()
    return entry


def postings(session, user, source):
    return session.query(LedgerTransaction).filter_by(userID=user.userID, incomeSource=source).all()


async def build_chain(make_user, length):
    """root <- u1 <- u2 ... each sponsored (and placed LEFT) under the previous one."""
    chain = [await make_user("u0")]
    for i in range(1, length):
        chain.append(await make_user(f"u{i}", sponsor=chain[-1]))
    return chain


# =============================================================================
# TEST CLASS: Direct bonus
# =============================================================================

class TestDirectBonus:
    """Tests for CommissionService.processDirectBonus."""

    @pytest.mark.asyncio
    async def test_first_deposit_pays_sponsor_once(self, session, make_user):
        """
        TEST: B deposits $1,000 → A gets $100 once; a second deposit pays nothing.
        """
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        commissions = CommissionService(session)

        first = post_deposit(session, b, "1000")
        result = await commissions.processDirectBonus(first.transactionID)
        session.commit()

        assert result["userId"] == a.userID
        assert result["amount"] == Decimal("100.00")

        second = post_deposit(session, b, "1000")
        assert await commissions.processDirectBonus(second.transactionID) is None
        session.commit()

        bonuses = postings(session, a, DIRECT_INCOME)
        assert len(bonuses) == 1
        assert bonuses[0].amount == Decimal("100.00")
        assert bonuses[0].sourceUserID == b.userID
        assert bonuses[0].idempotencyKey == f"direct_income:{a.userID}:{b.userID}"

    @pytest.mark.asyncio
    async def test_repeated_trigger_is_idempotent(self, session, make_user):
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        deposit = post_deposit(session, b, "500")
        commissions = CommissionService(session)

        await commissions.processDirectBonus(deposit.transactionID)
        session.commit()
        assert await commissions.processDirectBonus(deposit.transactionID) is None
        session.commit()

        assert len(postings(session, a, DIRECT_INCOME)) == 1
        assert LedgerService(session).balance(a.userID, INVESTMENT) == Decimal("50.00")

    @pytest.mark.asyncio
    async def test_package_deposit_counts_as_first(self, session, make_user):
        """
        TEST: The first deposit of either wallet class triggers the bonus.
        """
        a = await make_user("a")
        b = await make_user("b", sponsor=a)

        package = post_deposit(session, b, "200", source=PACKAGE_DEPOSIT, walletClass=PACKAGE)
        investment = post_deposit(session, b, "1000")
        commissions = CommissionService(session)

        assert await commissions.processDirectBonus(investment.transactionID) is None
        result = await commissions.processDirectBonus(package.transactionID)
        session.commit()

        assert result["amount"] == Decimal("20.00")

    @pytest.mark.asyncio
    async def test_bonus_goes_to_sponsor_not_tree_parent(self, session, make_user):
        """
        TEST: A spillover member's bonus is paid to the referral sponsor.
        """
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        await make_user("c", sponsor=a)
        d = await make_user("d", sponsor=a)
        assert d.parentID == b.userID

        deposit = post_deposit(session, d, "300")
        result = await CommissionService(session).processDirectBonus(deposit.transactionID)
        session.commit()

        assert result["userId"] == a.userID
        assert postings(session, b, DIRECT_INCOME) == []

    @pytest.mark.asyncio
    async def test_root_deposit_pays_nothing(self, session, make_user):
        a = await make_user("a")
        deposit = post_deposit(session, a, "1000")

        assert await CommissionService(session).processDirectBonus(deposit.transactionID) is None

    @pytest.mark.asyncio
    async def test_non_deposit_ignored(self, session, make_user):
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        profit = post_profit(session, b, "50")

        assert await CommissionService(session).processDirectBonus(profit.transactionID) is None


# =============================================================================
# TEST CLASS: Team income
# =============================================================================

class TestTeamIncome:
    """Tests for CommissionService.distributeTeamIncome."""

    @pytest.mark.asyncio
    async def test_single_ancestor_gets_level_one(self, session, make_user):
        """
        TEST: $50 profit of B with A as the only ancestor → A gets $5.00 at level 1.
        """
        a = await make_user("a")
        b = await make_user("b", sponsor=a)

        investment = InvestmentService(session).createInvestment(
            b.userID, Decimal("500"), monthlyProfitRate=Decimal("10")
        )
        session.commit()

        timeMachine.advanceTime(months=1)
        summary = await AccrualService(session).accrueInvestment(investment.investmentID)

        assert summary["totalProfit"] == Decimal("50.00")
        team = postings(session, a, TEAM_INCOME)
        assert len(team) == 1
        assert team[0].amount == Decimal("5.00")
        assert team[0].referralLevel == 1
        assert session.query(LedgerTransaction).filter_by(incomeSource=TEAM_INCOME).count() == 1

    @pytest.mark.asyncio
    async def test_ten_ancestors_receive_21_percent(self, session, make_user):
        chain = await build_chain(make_user, 11)
        profit = post_profit(session, chain[-1], "100")

        result = await CommissionService(session).distributeTeamIncome(profit.transactionID)
        session.commit()

        assert result["success"] is True
        assert result["totalDistributed"] == Decimal("21.00")

        by_level = {c["level"]: (c["userId"], c["amount"]) for c in result["commissions"]}
        assert by_level[1] == (chain[9].userID, Decimal("10.00"))
        assert by_level[2] == (chain[8].userID, Decimal("5.00"))
        assert by_level[3] == (chain[7].userID, Decimal("2.00"))
        assert by_level[4] == (chain[6].userID, Decimal("1.00"))
        assert [by_level[level][1] for level in range(5, 11)] == [Decimal("0.50")] * 6

    @pytest.mark.asyncio
    async def test_eleventh_ancestor_gets_nothing(self, session, make_user):
        chain = await build_chain(make_user, 12)
        profit = post_profit(session, chain[-1], "100")

        result = await CommissionService(session).distributeTeamIncome(profit.transactionID)
        session.commit()

        assert len(result["commissions"]) == 10
        assert postings(session, chain[0], TEAM_INCOME) == []

    @pytest.mark.asyncio
    async def test_shallow_tree_is_prefix_truncated(self, session, make_user):
        chain = await build_chain(make_user, 4)
        profit = post_profit(session, chain[-1], "100")

        result = await CommissionService(session).distributeTeamIncome(profit.transactionID)
        session.commit()

        assert [c["percentage"] for c in result["commissions"]] == [
            Decimal("10"), Decimal("5"), Decimal("2"),
        ]
        assert result["totalDistributed"] == Decimal("17.00")

    @pytest.mark.asyncio
    async def test_redistribution_pays_nothing_new(self, session, make_user):
        chain = await build_chain(make_user, 3)
        profit = post_profit(session, chain[-1], "100")
        commissions = CommissionService(session)

        await commissions.distributeTeamIncome(profit.transactionID)
        session.commit()
        again = await commissions.distributeTeamIncome(profit.transactionID)
        session.commit()

        assert again["commissions"] == []
        assert again["skipped"] == 2
        assert session.query(LedgerTransaction).filter_by(incomeSource=TEAM_INCOME).count() == 2

    @pytest.mark.asyncio
    async def test_rounding_per_level(self, session, make_user):
        """
        TEST: Each level rounds half-up to the cent on its own.
        """
        chain = await build_chain(make_user, 6)
        profit = post_profit(session, chain[-1], "0.99")

        result = await CommissionService(session).distributeTeamIncome(profit.transactionID)
        session.commit()

        amounts = [c["amount"] for c in result["commissions"]]
        # 10% → 0.099, 5% → 0.0495, 2% → 0.0198, 1% → 0.0099, 0.5% → 0.00495
        assert amounts == [Decimal("0.10"), Decimal("0.05"), Decimal("0.02"), Decimal("0.01")]

    @pytest.mark.asyncio
    async def test_only_monthly_profit_distributes(self, session, make_user):
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        deposit = post_deposit(session, b, "1000")

        result = await CommissionService(session).distributeTeamIncome(deposit.transactionID)

        assert result["success"] is False
        assert postings(session, a, TEAM_INCOME) == []
