# tests/test_requests.py
"""
Tests for the request approval state machine.

Deposits/withdrawals: REQUESTED → OTP_VERIFIED → PENDING_REVIEW → COMPLETED | REJECTED
Transfers: REQUESTED → COMPLETED in one unit of work
"""
import asyncio
from decimal import Decimal

import pytest

from core.identity import Actor
from models import Investment, LedgerTransaction, MoneyRequest
from models.investment import ELIGIBLE, WITHDRAWING, WITHDRAWN
from models.request import (
    REQUESTED, OTP_VERIFIED, PENDING_REVIEW, COMPLETED, REJECTED, TRANSFER,
)
from models.transaction import (
    PENDING, DIRECT_INCOME, TRANSFER_IN, TRANSFER_OUT,
    COMPLETED as TX_COMPLETED, REJECTED as TX_REJECTED,
)
from models.wallet import PACKAGE, INVESTMENT
from mlm_engine.errors import (
    InsufficientBalance, InvalidAmount, InvalidOtp, NotEligible, NotFound, PermissionDenied,
)
from mlm_engine.services.investment_service import InvestmentService
from mlm_engine.services.ledger_service import LedgerService
from mlm_engine.services.otp_service import OTPService
from mlm_engine.services.request_service import RequestService
from mlm_engine.utils.time_machine import timeMachine


@pytest.fixture
def requests(session, delivery):
    return RequestService(session, OTPService(session, delivery))


async def attest(requests, delivery, actor, result):
    """Confirm the last code and submit for review."""
    await requests.confirmOtp(actor, result["requestId"], delivery.last_code)
    return await requests.submitForReview(actor, result["requestId"])


def direct_bonuses(session, user):
    return session.query(LedgerTransaction).filter_by(userID=user.userID, incomeSource=DIRECT_INCOME).all()


# =============================================================================
# TEST CLASS: Deposits
# =============================================================================

class TestDeposits:

    @pytest.mark.asyncio
    async def test_full_deposit_flow(self, session, make_user, requests, delivery, admin_actor):
        """
        TEST: Deposit walks every state; approval credits, invests and pays the sponsor.
        """
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        actor = Actor(b.userID)
        ledger = LedgerService(session)

        created = await requests.requestDeposit(actor, Decimal("1000"))
        assert created["state"] == REQUESTED
        assert delivery.sent[-1]["destination"] == "b@example.com"
        assert delivery.sent[-1]["purpose"] == f"deposit:{created['requestId']}"

        confirmed = await requests.confirmOtp(actor, created["requestId"], delivery.last_code)
        assert confirmed["state"] == OTP_VERIFIED

        submitted = await requests.submitForReview(actor, created["requestId"], proofRef="files/receipt-1")
        assert submitted["state"] == PENDING_REVIEW
        assert submitted["status"] == PENDING
        assert ledger.balance(b.userID, INVESTMENT) == Decimal("0.00")

        approved = await requests.approve(admin_actor(a), created["requestId"])
        assert approved["state"] == COMPLETED
        assert approved["status"] == TX_COMPLETED
        assert approved["terminal"] is True

        investment = session.get(Investment, approved["investmentId"])
        assert investment.principal == Decimal("1000.00")
        assert investment.monthlyProfitRate == Decimal("15")
        assert ledger.balance(b.userID, INVESTMENT) == Decimal("1000.00")
        assert ledger.availableBalance(b.userID, INVESTMENT) == Decimal("0.00")

        bonuses = direct_bonuses(session, a)
        assert len(bonuses) == 1
        assert bonuses[0].amount == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_second_deposit_pays_no_bonus(self, session, make_user, requests, delivery, admin_actor):
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        actor = Actor(b.userID)

        for _ in range(2):
            created = await requests.requestDeposit(actor, Decimal("1000"))
            await attest(requests, delivery, actor, created)
            await requests.approve(admin_actor(a), created["requestId"])

        assert len(direct_bonuses(session, a)) == 1
        assert LedgerService(session).balance(a.userID, INVESTMENT) == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_package_deposit_opens_no_investment(self, session, make_user, requests, delivery, admin_actor):
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        actor = Actor(b.userID)

        created = await requests.requestDeposit(actor, Decimal("500"), walletClass=PACKAGE)
        await attest(requests, delivery, actor, created)
        approved = await requests.approve(admin_actor(a), created["requestId"])

        assert approved["investmentId"] is None
        assert session.query(Investment).count() == 0
        assert LedgerService(session).balance(b.userID, PACKAGE) == Decimal("500.00")
        assert direct_bonuses(session, a)[0].amount == Decimal("50.00")

    @pytest.mark.asyncio
    async def test_approve_is_idempotent(self, session, make_user, requests, delivery, admin_actor):
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        actor = Actor(b.userID)
        created = await requests.requestDeposit(actor, Decimal("1000"))
        await attest(requests, delivery, actor, created)

        first, second = await asyncio.gather(
            requests.approve(admin_actor(a), created["requestId"]),
            requests.approve(admin_actor(a), created["requestId"]),
        )
        third = await requests.approve(admin_actor(a), created["requestId"])

        assert first["state"] == second["state"] == third["state"] == COMPLETED
        assert session.query(Investment).count() == 1
        assert len(direct_bonuses(session, a)) == 1
        assert LedgerService(session).balance(b.userID, INVESTMENT) == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_reject_after_approve_is_noop(self, session, make_user, requests, delivery, admin_actor):
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        actor = Actor(b.userID)
        created = await requests.requestDeposit(actor, Decimal("100"))
        await attest(requests, delivery, actor, created)
        await requests.approve(admin_actor(a), created["requestId"])

        result = await requests.reject(admin_actor(a), created["requestId"], "too late")

        assert result["state"] == COMPLETED
        assert LedgerService(session).balance(b.userID, INVESTMENT) == Decimal("100.00")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["50", "155"])
    async def test_invalid_deposit_amount(self, session, make_user, requests, delivery, amount):
        a = await make_user("a")

        with pytest.raises(InvalidAmount) as exc_info:
            await requests.requestDeposit(Actor(a.userID), Decimal(amount))

        assert exc_info.value.minimum == Decimal("100")
        assert exc_info.value.step == Decimal("10")
        assert delivery.sent == []
        assert session.query(MoneyRequest).count() == 0

    @pytest.mark.asyncio
    async def test_wrong_otp_keeps_state(self, session, make_user, requests, delivery):
        a = await make_user("a")
        actor = Actor(a.userID)
        created = await requests.requestDeposit(actor, Decimal("100"))
        wrong = "000000" if delivery.last_code != "000000" else "111111"

        with pytest.raises(InvalidOtp):
            await requests.confirmOtp(actor, created["requestId"], wrong)

        assert session.get(MoneyRequest, created["requestId"]).state == REQUESTED

    @pytest.mark.asyncio
    async def test_submit_requires_otp(self, session, make_user, requests):
        a = await make_user("a")
        actor = Actor(a.userID)
        created = await requests.requestDeposit(actor, Decimal("100"))

        with pytest.raises(NotEligible):
            await requests.submitForReview(actor, created["requestId"])

    @pytest.mark.asyncio
    async def test_resend_otp_replaces_code(self, session, make_user, requests, delivery):
        a = await make_user("a")
        actor = Actor(a.userID)
        created = await requests.requestDeposit(actor, Decimal("100"))

        await requests.resendOtp(actor, created["requestId"])
        confirmed = await requests.confirmOtp(actor, created["requestId"], delivery.last_code)

        assert len(delivery.sent) == 2
        assert confirmed["state"] == OTP_VERIFIED

    @pytest.mark.asyncio
    async def test_only_admin_reviews(self, session, make_user, requests, delivery):
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        actor = Actor(b.userID)
        created = await requests.requestDeposit(actor, Decimal("100"))
        await attest(requests, delivery, actor, created)

        with pytest.raises(PermissionDenied):
            await requests.approve(actor, created["requestId"])
        with pytest.raises(PermissionDenied):
            requests.getPendingRequests(actor)

    @pytest.mark.asyncio
    async def test_admin_by_config(self, session, make_user, requests, delivery, engine_config):
        """
        TEST: ADMIN_USER_IDS grants the admin role regardless of the header role.
        """
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        engine_config.set(engine_config.ADMIN_USER_IDS, [a.userID])
        actor = Actor(b.userID)
        created = await requests.requestDeposit(actor, Decimal("100"))
        await attest(requests, delivery, actor, created)

        approved = await requests.approve(Actor(a.userID), created["requestId"])

        assert approved["state"] == COMPLETED

    @pytest.mark.asyncio
    async def test_other_members_request_hidden(self, session, make_user, requests):
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        created = await requests.requestDeposit(Actor(a.userID), Decimal("100"))

        with pytest.raises(NotFound):
            requests.getRequest(Actor(b.userID), created["requestId"])

    @pytest.mark.asyncio
    async def test_pending_queue(self, session, make_user, requests, delivery, admin_actor):
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        actor = Actor(b.userID)
        waiting = await requests.requestDeposit(actor, Decimal("100"))
        await attest(requests, delivery, actor, waiting)
        await requests.requestDeposit(actor, Decimal("200"))

        pending = requests.getPendingRequests(admin_actor(a))

        assert [r["requestId"] for r in pending] == [waiting["requestId"]]
        assert len(requests.getUserRequests(b.userID, openOnly=True)) == 2


# =============================================================================
# TEST CLASS: Withdrawals
# =============================================================================

class TestWithdrawals:

    async def _invest(self, session, admin, member, amount="1000"):
        results = await InvestmentService(session).adminCredit(admin, [member.referralCode], Decimal(amount))
        return session.get(Investment, results[0]["investmentId"])

    @pytest.mark.asyncio
    async def test_locked_investment_not_eligible(self, session, make_user, requests, admin_actor):
        """
        TEST: Withdrawing before unlockDate fails with the remaining day count.
        """
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        investment = await self._invest(session, admin_actor(a), b)
        timeMachine.advanceTime(days=10)

        with pytest.raises(NotEligible) as exc_info:
            await requests.requestWithdrawal(Actor(b.userID), investmentId=investment.investmentID)

        expected_days = (investment.unlockDate - timeMachine.utcnow).days
        assert exc_info.value.remainingDays == expected_days
        assert exc_info.value.remainingDays == 171
        assert exc_info.value.eligibleAt == investment.unlockDate
        assert session.query(MoneyRequest).count() == 0

    @pytest.mark.asyncio
    async def test_investment_withdrawal_approved(self, session, make_user, requests, delivery, admin_actor):
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        actor = Actor(b.userID)
        investment = await self._invest(session, admin_actor(a), b)
        timeMachine.advanceTime(months=6)

        created = await requests.requestWithdrawal(actor, investmentId=investment.investmentID)
        assert created["amount"] == Decimal("1000.00")

        submitted = await attest(requests, delivery, actor, created)
        assert submitted["status"] == PENDING
        session.refresh(investment)
        assert investment.status == WITHDRAWING

        await requests.approve(admin_actor(a), created["requestId"])

        session.refresh(investment)
        assert investment.status == WITHDRAWN
        assert LedgerService(session).balance(b.userID, INVESTMENT) == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_rejected_withdrawal_releases_hold(self, session, make_user, requests, delivery, admin_actor):
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        actor = Actor(b.userID)
        investment = await self._invest(session, admin_actor(a), b)
        timeMachine.advanceTime(months=6)

        created = await requests.requestWithdrawal(actor, investmentId=investment.investmentID)
        await attest(requests, delivery, actor, created)
        ledger = LedgerService(session)
        assert ledger.pendingDebits(b.userID, INVESTMENT) == Decimal("1000.00")

        rejected = await requests.reject(admin_actor(a), created["requestId"], "address mismatch")

        assert rejected["state"] == REJECTED
        assert rejected["status"] == TX_REJECTED
        assert ledger.pendingDebits(b.userID, INVESTMENT) == Decimal("0.00")
        assert ledger.balance(b.userID, INVESTMENT) == Decimal("1000.00")
        session.refresh(investment)
        assert investment.status == ELIGIBLE
        assert session.get(MoneyRequest, created["requestId"]).reason == "address mismatch"

        # Eligible again: a new request goes through
        again = await requests.requestWithdrawal(actor, investmentId=investment.investmentID)
        assert again["state"] == REQUESTED

    @pytest.mark.asyncio
    async def test_withdrawing_investment_cannot_be_requested_twice(
            self, session, make_user, requests, delivery, admin_actor):
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        actor = Actor(b.userID)
        investment = await self._invest(session, admin_actor(a), b)
        timeMachine.advanceTime(months=6)
        created = await requests.requestWithdrawal(actor, investmentId=investment.investmentID)
        await attest(requests, delivery, actor, created)

        with pytest.raises(NotEligible):
            await requests.requestWithdrawal(actor, investmentId=investment.investmentID)

    @pytest.mark.asyncio
    async def test_unconfirmed_request_does_not_reserve_investment(
            self, session, make_user, requests, delivery, admin_actor):
        """
        TEST: The investment turns WITHDRAWING when the attested request posts
        its hold; an abandoned request leaves it ELIGIBLE.
        """
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        actor = Actor(b.userID)
        investment = await self._invest(session, admin_actor(a), b)
        timeMachine.advanceTime(months=6)

        abandoned = await requests.requestWithdrawal(actor, investmentId=investment.investmentID)
        session.refresh(investment)
        assert investment.status == ELIGIBLE

        second = await requests.requestWithdrawal(actor, investmentId=investment.investmentID)
        await requests.confirmOtp(actor, second["requestId"], delivery.sent[1]["code"])
        await requests.submitForReview(actor, second["requestId"])
        session.refresh(investment)
        assert investment.status == WITHDRAWING

        await requests.confirmOtp(actor, abandoned["requestId"], delivery.sent[0]["code"])
        with pytest.raises(NotEligible):
            await requests.submitForReview(actor, abandoned["requestId"])

        assert session.get(MoneyRequest, abandoned["requestId"]).state == OTP_VERIFIED
        assert LedgerService(session).pendingDebits(b.userID, INVESTMENT) == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_income_withdrawal_hold(self, session, make_user, requests, delivery, credit, admin_actor):
        """
        TEST: A pending income withdrawal reduces what the next one may draw.
        """
        a = await make_user("a")
        actor = Actor(a.userID)
        credit(a, "200", INVESTMENT, incomeSource=DIRECT_INCOME)
        ledger = LedgerService(session)

        created = await requests.requestWithdrawal(actor, amount=Decimal("150"))
        await attest(requests, delivery, actor, created)
        assert ledger.availableBalance(a.userID, INVESTMENT) == Decimal("50.00")

        with pytest.raises(InsufficientBalance) as exc_info:
            await requests.requestWithdrawal(actor, amount=Decimal("100"))
        assert exc_info.value.available == Decimal("50.00")

        await requests.reject(admin_actor(a), created["requestId"])
        assert ledger.availableBalance(a.userID, INVESTMENT) == Decimal("200.00")

    @pytest.mark.asyncio
    async def test_income_withdrawal_cannot_touch_principal(self, session, make_user, requests, admin_actor):
        a = await make_user("a")
        await self._invest(session, admin_actor(a), a)

        with pytest.raises(InsufficientBalance):
            await requests.requestWithdrawal(Actor(a.userID), amount=Decimal("10"))

    @pytest.mark.asyncio
    async def test_foreign_investment_not_found(self, session, make_user, requests, admin_actor):
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        investment = await self._invest(session, admin_actor(a), a)

        with pytest.raises(NotFound):
            await requests.requestWithdrawal(Actor(b.userID), investmentId=investment.investmentID)

    @pytest.mark.asyncio
    async def test_reject_before_otp(self, session, make_user, requests, admin_actor, credit):
        a = await make_user("a")
        credit(a, "100", INVESTMENT, incomeSource=DIRECT_INCOME)
        created = await requests.requestWithdrawal(Actor(a.userID), amount=Decimal("50"))

        rejected = await requests.reject(admin_actor(a), created["requestId"])

        assert rejected["state"] == REJECTED
        assert rejected["transactionId"] is None


# =============================================================================
# TEST CLASS: Transfers
# =============================================================================

class TestTransfers:

    @pytest.mark.asyncio
    async def test_transfer_moves_funds(self, session, make_user, requests, credit):
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        credit(a, "100", PACKAGE)

        result = await requests.transfer(Actor(a.userID), b.referralCode, Decimal("60"))

        assert result["state"] == COMPLETED
        ledger = LedgerService(session)
        assert ledger.balance(a.userID, PACKAGE) == Decimal("40.00")
        assert ledger.balance(b.userID, PACKAGE) == Decimal("60.00")

        request = session.get(MoneyRequest, result["requestId"])
        assert request.kind == TRANSFER
        assert request.recipientUserID == b.userID
        assert request.counterTransactionID is not None

    @pytest.mark.asyncio
    async def test_investment_earnings_cannot_be_transferred(self, session, make_user, requests, credit):
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        credit(a, "100", INVESTMENT, incomeSource=DIRECT_INCOME)

        with pytest.raises(InsufficientBalance):
            await requests.transfer(Actor(a.userID), b.referralCode, Decimal("50"))

        ledger = LedgerService(session)
        assert ledger.balance(a.userID, INVESTMENT) == Decimal("100.00")
        assert ledger.balance(b.userID, INVESTMENT) == Decimal("0.00")
        assert session.query(LedgerTransaction).filter_by(incomeSource=TRANSFER_IN).count() == 0

    @pytest.mark.asyncio
    async def test_insufficient_balance_posts_nothing(self, session, make_user, requests, credit):
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        credit(a, "50", PACKAGE)

        with pytest.raises(InsufficientBalance) as exc_info:
            await requests.transfer(Actor(a.userID), b.referralCode, Decimal("60"))

        assert exc_info.value.needed == Decimal("60.00")
        assert exc_info.value.available == Decimal("50.00")
        assert session.query(MoneyRequest).count() == 0
        assert session.query(LedgerTransaction).filter_by(incomeSource=TRANSFER_OUT).count() == 0

    @pytest.mark.asyncio
    async def test_failed_credit_leg_rolls_back_debit(self, session, make_user, requests, credit, monkeypatch):
        """
        TEST: Either both legs are posted or neither.
        """
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        credit(a, "100", PACKAGE)

        original = LedgerService.postCompleted

        def failing_post(self, userId, amount, direction, incomeSource, walletClass, **metadata):
            if incomeSource == TRANSFER_IN:
                raise RuntimeError("credit leg failed")
            return original(self, userId, amount, direction, incomeSource, walletClass, **metadata)

        monkeypatch.setattr(LedgerService, "postCompleted", failing_post)

        with pytest.raises(RuntimeError):
            await requests.transfer(Actor(a.userID), b.referralCode, Decimal("60"))

        assert session.query(LedgerTransaction).filter_by(incomeSource=TRANSFER_OUT).count() == 0
        assert session.query(MoneyRequest).count() == 0
        assert LedgerService(session).balance(a.userID, PACKAGE) == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_concurrent_transfers_cannot_overdraw(self, session, make_user, requests, credit):
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        c = await make_user("c", sponsor=a)
        credit(a, "100", PACKAGE)

        results = await asyncio.gather(
            requests.transfer(Actor(a.userID), b.referralCode, Decimal("60")),
            requests.transfer(Actor(a.userID), c.referralCode, Decimal("60")),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], InsufficientBalance)
        assert LedgerService(session).balance(a.userID, PACKAGE) == Decimal("40.00")

    @pytest.mark.asyncio
    async def test_transfer_to_self_denied(self, session, make_user, requests, credit):
        a = await make_user("a")
        credit(a, "100", PACKAGE)

        with pytest.raises(PermissionDenied):
            await requests.transfer(Actor(a.userID), a.referralCode, Decimal("10"))

    @pytest.mark.asyncio
    async def test_unknown_recipient(self, session, make_user, requests, credit):
        a = await make_user("a")
        credit(a, "100", PACKAGE)

        with pytest.raises(NotFound):
            await requests.transfer(Actor(a.userID), "NOPE000000", Decimal("10"))

    @pytest.mark.asyncio
    async def test_transfer_step(self, session, make_user, requests, credit):
        a = await make_user("a")
        b = await make_user("b", sponsor=a)
        credit(a, "100", PACKAGE)

        with pytest.raises(InvalidAmount):
            await requests.transfer(Actor(a.userID), b.referralCode, Decimal("15"))
