"""
Request approval state machine.

Deposits and withdrawals:
    REQUESTED --confirmOtp--> OTP_VERIFIED --submitForReview--> PENDING_REVIEW
    PENDING_REVIEW --approve--> COMPLETED  (pending transaction completed)
    PENDING_REVIEW --reject--> REJECTED    (pending transaction rejected)

Transfers are validated synchronously: REQUESTED -> COMPLETED in one unit
of work, debit and credit legs together.

approve/reject are compare-and-set on the request state, so a repeated or
racing admin action returns the already-reached outcome instead of failing.
"""
from decimal import Decimal
from typing import Dict, List
from sqlalchemy.orm import Session
import logging

from config import Config
from core.identity import Actor, require_admin
from core.locks import userLocks
from models.investment import Investment
from models.request import (
    MoneyRequest, DEPOSIT, WITHDRAWAL, TRANSFER,
    REQUESTED, OTP_VERIFIED, PENDING_REVIEW, COMPLETED, REJECTED, TERMINAL_STATES,
)
from models.transaction import (
    LedgerTransaction, CREDIT, DEBIT,
    PACKAGE_DEPOSIT, INVESTMENT_DEPOSIT, INCOME_WITHDRAWAL, INVESTMENT_WITHDRAWAL,
    TRANSFER_OUT, TRANSFER_IN,
)
from models.user import User
from models.wallet import PACKAGE, INVESTMENT, WALLET_CLASSES
from mlm_engine.errors import (
    InsufficientBalance, InvalidAmount, InvalidOtp, NotEligible, NotFound, PermissionDenied,
)
from mlm_engine.services.commission_service import CommissionService
from mlm_engine.services.investment_service import InvestmentService, validate_step_amount
from mlm_engine.services.ledger_service import LedgerService
from mlm_engine.services.otp_service import OTPService
from mlm_engine.services.tree_service import TreeService
from mlm_engine.utils.money import to_money
from mlm_engine.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

DEPOSIT_SOURCE_BY_WALLET = {
    PACKAGE: PACKAGE_DEPOSIT,
    INVESTMENT: INVESTMENT_DEPOSIT,
}


def request_key(requestId: int) -> str:
    return f"request:{requestId}"


def otp_purpose(request: MoneyRequest) -> str:
    return f"{request.kind}:{request.requestID}"


class RequestService:
    """Deposit, withdrawal and transfer commands."""

    def __init__(self, session: Session, otp: OTPService = None):
        self.session = session
        self.otp = otp
        self.ledger = LedgerService(session)
        self.investments = InvestmentService(session)
        self.commissions = CommissionService(session)
        self.tree = TreeService(session)

    # ═══════════════════════════════════════════════════════════════════
    # HELPERS
    # ═══════════════════════════════════════════════════════════════════

    def _result(self, request: MoneyRequest) -> Dict:
        """Command result: request state plus ledger transaction id/status."""
        status = None
        if request.transactionID is not None:
            status = self.session.query(LedgerTransaction.status).filter_by(
                transactionID=request.transactionID
            ).scalar()
        return {
            "requestId": request.requestID,
            "kind": request.kind,
            "state": request.state,
            "amount": to_money(request.amount),
            "walletClass": request.walletClass,
            "transactionId": request.transactionID,
            "status": status,
            "investmentId": request.investmentID,
            "terminal": request.isTerminal,
        }

    def getRequest(self, actor: Actor, requestId: int) -> MoneyRequest:
        """Owner or admin only."""
        request = self.session.get(MoneyRequest, requestId)
        if request is None:
            raise NotFound(f"Request {requestId} not found")
        if request.userID != actor.userId and not actor.isAdmin:
            # Do not reveal other members' requests
            raise NotFound(f"Request {requestId} not found")
        return request

    def _requireState(self, request: MoneyRequest, expected: str) -> None:
        if request.state != expected:
            raise NotEligible(
                f"Request {request.requestID} is {request.state}, expected {expected}"
            )

    def _getUser(self, userId: int) -> User:
        user = self.session.get(User, userId)
        if user is None:
            raise NotFound(f"User {userId} not found")
        return user

    async def _sendOtp(self, user: User, request: MoneyRequest) -> None:
        if self.otp is None:
            raise RuntimeError("RequestService needs an OTPService for attested requests")
        request.otpSessionID = await self.otp.sendCode(user.email, otp_purpose(request))

    async def resendOtp(self, actor: Actor, requestId: int) -> Dict:
        """Issue a new code for a request still awaiting confirmation."""
        request = self.getRequest(actor, requestId)
        self._requireState(request, REQUESTED)
        user = self._getUser(request.userID)
        try:
            await self._sendOtp(user, request)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return self._result(request)

    # ═══════════════════════════════════════════════════════════════════
    # CREATE
    # ═══════════════════════════════════════════════════════════════════

    async def requestDeposit(
            self,
            actor: Actor,
            amount: Decimal,
            walletClass: str = INVESTMENT,
            blockchain: str = None,
            address: str = None,
            proofRef: str = None,
    ) -> Dict:
        """
        Open a deposit request and send the attestation code.

        Raises:
            InvalidAmount, OTPDeliveryError
        """
        if walletClass not in WALLET_CLASSES:
            raise InvalidAmount(amount, reason=f"Unknown wallet class {walletClass!r}")
        amount = validate_step_amount(
            amount,
            Config.get(Config.DEPOSIT_MIN, Decimal("100")),
            Config.get(Config.DEPOSIT_STEP, Decimal("10")),
        )
        user = self._getUser(actor.userId)

        request = MoneyRequest(
            userID=user.userID,
            kind=DEPOSIT,
            walletClass=walletClass,
            amount=amount,
            state=REQUESTED,
            blockchain=blockchain,
            address=address,
            proofRef=proofRef,
        )
        try:
            self.session.add(request)
            self.session.flush()
            await self._sendOtp(user, request)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info(f"Deposit request {request.requestID}: user {user.userID}, {amount} {walletClass}")
        return self._result(request)

    async def requestWithdrawal(
            self,
            actor: Actor,
            amount: Decimal = None,
            investmentId: int = None,
            blockchain: str = None,
            address: str = None,
    ) -> Dict:
        """
        Open a withdrawal request.

        With investmentId the investment's principal is withdrawn and the
        lock must have elapsed. Without it, earned income is withdrawn from
        the investment wallet.

        Raises:
            NotEligible: investment still locked (remainingDays set) or not withdrawable
            InvalidAmount, InsufficientBalance, NotFound, OTPDeliveryError
        """
        user = self._getUser(actor.userId)

        if investmentId is not None:
            investment = self.session.get(Investment, investmentId)
            if investment is None or investment.userID != user.userID:
                raise NotFound(f"Investment {investmentId} not found")
            self.investments.checkWithdrawable(investment)
            amount = to_money(investment.principal)
        else:
            if amount is None:
                raise InvalidAmount(None, reason="Withdrawal amount is required")
            amount = validate_step_amount(
                amount,
                Config.get(Config.WITHDRAWAL_MIN, Decimal("10")),
                Config.get(Config.WITHDRAWAL_STEP, Decimal("10")),
            )
            self.ledger.ensureAvailable(user.userID, INVESTMENT, amount)

        request = MoneyRequest(
            userID=user.userID,
            kind=WITHDRAWAL,
            walletClass=INVESTMENT,
            amount=amount,
            state=REQUESTED,
            investmentID=investmentId,
            blockchain=blockchain,
            address=address,
        )
        try:
            self.session.add(request)
            self.session.flush()
            await self._sendOtp(user, request)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        logger.info(
            f"Withdrawal request {request.requestID}: user {user.userID}, {amount}"
            + (f" (investment {investmentId})" if investmentId else " (income)")
        )
        return self._result(request)

    # ═══════════════════════════════════════════════════════════════════
    # ATTESTATION
    # ═══════════════════════════════════════════════════════════════════

    async def confirmOtp(self, actor: Actor, requestId: int, code: str) -> Dict:
        """
        REQUESTED → OTP_VERIFIED.

        Raises:
            InvalidOtp: wrong, expired or used code
        """
        request = self.getRequest(actor, requestId)
        self._requireState(request, REQUESTED)

        if self.otp is None or not self.otp.verify(request.otpSessionID, code, otp_purpose(request)):
            raise InvalidOtp(f"Invalid or expired verification code for request {requestId}")

        request.state = OTP_VERIFIED
        self.session.commit()
        logger.info(f"Request {requestId} OTP verified")
        return self._result(request)

    async def submitForReview(self, actor: Actor, requestId: int, proofRef: str = None) -> Dict:
        """
        OTP_VERIFIED → PENDING_REVIEW and post the PENDING ledger entry.

        Withdrawals place their hold here: the pending debit reduces the
        available balance until an admin decides.
        """
        request = self.getRequest(actor, requestId)
        self._requireState(request, OTP_VERIFIED)

        async with userLocks.hold(request.userID):
            try:
                self.session.refresh(request)
                self._requireState(request, OTP_VERIFIED)
                if proofRef:
                    request.proofRef = proofRef

                if request.kind == DEPOSIT:
                    entry = self.ledger.postPending(
                        userId=request.userID,
                        amount=request.amount,
                        direction=CREDIT,
                        incomeSource=DEPOSIT_SOURCE_BY_WALLET[request.walletClass],
                        walletClass=request.walletClass,
                        description=f"Deposit request {request.requestID}",
                        idempotencyKey=request_key(request.requestID),
                    )
                else:
                    entry = self._holdWithdrawal(request)

                request.transactionID = entry.transactionID
                request.state = PENDING_REVIEW
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise

        logger.info(f"Request {requestId} submitted for review, transaction {request.transactionID}")
        return self._result(request)

    def _holdWithdrawal(self, request: MoneyRequest) -> LedgerTransaction:
        self.ledger.lockWallet(request.userID)

        if request.investmentID is not None:
            investment = self.investments.getInvestment(request.investmentID)
            self.session.refresh(investment)
            self.investments.checkWithdrawable(investment)

            # Principal is still counted as locked here, so check against the
            # unheld balance rather than availableBalance
            unheld = (
                self.ledger.computeBalance(request.userID, INVESTMENT)
                - self.ledger.pendingDebits(request.userID, INVESTMENT)
            )
            if request.amount > unheld:
                raise InsufficientBalance(to_money(request.amount), to_money(unheld), INVESTMENT)

            entry = self.ledger.postPending(
                userId=request.userID,
                amount=request.amount,
                direction=DEBIT,
                incomeSource=INVESTMENT_WITHDRAWAL,
                walletClass=INVESTMENT,
                description=f"Principal withdrawal of investment {investment.investmentID}",
                idempotencyKey=request_key(request.requestID),
                investmentId=investment.investmentID,
            )
            self.investments.markWithdrawing(investment, entry.transactionID)
            return entry

        self.ledger.ensureAvailable(request.userID, INVESTMENT, request.amount)
        return self.ledger.postPending(
            userId=request.userID,
            amount=request.amount,
            direction=DEBIT,
            incomeSource=INCOME_WITHDRAWAL,
            walletClass=INVESTMENT,
            description=f"Income withdrawal request {request.requestID}",
            idempotencyKey=request_key(request.requestID),
        )

    # ═══════════════════════════════════════════════════════════════════
    # REVIEW (admin)
    # ═══════════════════════════════════════════════════════════════════

    def _claim(self, request: MoneyRequest, newState: str, actor: Actor, reason: str = None) -> bool:
        """Compare-and-set PENDING_REVIEW → newState. False if someone else won."""
        updated = self.session.query(MoneyRequest).filter(
            MoneyRequest.requestID == request.requestID,
            MoneyRequest.state == request.state,
        ).update({
            MoneyRequest.state: newState,
            MoneyRequest.reviewedBy: actor.userId,
            MoneyRequest.reviewedAt: timeMachine.utcnow,
            MoneyRequest.reason: reason,
        }, synchronize_session=False)
        return updated == 1

    async def approve(self, actor: Actor, requestId: int) -> Dict:
        """
        PENDING_REVIEW → COMPLETED. Completes the pending transaction.

        Deposits into the investment wallet open an investment; any first
        completed deposit pays the sponsor's direct bonus. Investment
        withdrawals stop accrual. Approving an already-completed request
        returns its result unchanged.
        """
        require_admin(actor)
        request = self.session.get(MoneyRequest, requestId)
        if request is None:
            raise NotFound(f"Request {requestId} not found")

        if request.isTerminal:
            logger.info(f"Request {requestId} already {request.state}, approve is a no-op")
            return self._result(request)
        self._requireState(request, PENDING_REVIEW)

        async with userLocks.hold(request.userID):
            try:
                self.session.refresh(request)
                if request.isTerminal:
                    return self._result(request)

                if not self._claim(request, COMPLETED, actor):
                    self.session.rollback()
                    self.session.refresh(request)
                    logger.warning(f"Request {requestId} resolved concurrently as {request.state}")
                    return self._result(request)

                entry = self.ledger.complete(request.transactionID)

                if request.kind == DEPOSIT:
                    if request.walletClass == INVESTMENT:
                        investment = self.investments.createInvestment(
                            request.userID, entry.amount, entry.transactionID
                        )
                        request.investmentID = investment.investmentID
                    await self.commissions.processDirectBonus(entry.transactionID)
                elif request.kind == WITHDRAWAL and request.investmentID is not None:
                    investment = self.investments.getInvestment(request.investmentID)
                    self.investments.markWithdrawn(investment)

                self.session.commit()
            except Exception:
                self.session.rollback()
                raise

        self.session.refresh(request)
        logger.info(f"✓ Request {requestId} ({request.kind}, {request.amount}) approved by {actor.userId}")
        return self._result(request)

    async def reject(self, actor: Actor, requestId: int, reason: str = None) -> Dict:
        """
        Any non-terminal state → REJECTED. A pending transaction is rejected,
        which releases a withdrawal hold; an investment goes back to eligible.
        """
        require_admin(actor)
        request = self.session.get(MoneyRequest, requestId)
        if request is None:
            raise NotFound(f"Request {requestId} not found")

        if request.isTerminal:
            logger.info(f"Request {requestId} already {request.state}, reject is a no-op")
            return self._result(request)

        async with userLocks.hold(request.userID):
            try:
                self.session.refresh(request)
                if request.isTerminal:
                    return self._result(request)

                if not self._claim(request, REJECTED, actor, reason):
                    self.session.rollback()
                    self.session.refresh(request)
                    logger.warning(f"Request {requestId} resolved concurrently as {request.state}")
                    return self._result(request)

                if request.transactionID is not None:
                    self.ledger.reject(request.transactionID)

                if request.kind == WITHDRAWAL and request.investmentID is not None:
                    investment = self.investments.getInvestment(request.investmentID)
                    if investment.withdrawalTransactionID == request.transactionID:
                        self.investments.releaseWithdrawal(investment)

                self.session.commit()
            except Exception:
                self.session.rollback()
                raise

        self.session.refresh(request)
        logger.info(f"Request {requestId} rejected by {actor.userId}: {reason}")
        return self._result(request)

    def getPendingRequests(self, actor: Actor, kind: str = None) -> List[Dict]:
        """Requests awaiting an admin decision, oldest first."""
        require_admin(actor)
        query = self.session.query(MoneyRequest).filter(MoneyRequest.state == PENDING_REVIEW)
        if kind:
            query = query.filter(MoneyRequest.kind == kind)
        return [r.to_dict() for r in query.order_by(MoneyRequest.createdAt, MoneyRequest.requestID).all()]

    def getUserRequests(self, userId: int, openOnly: bool = False) -> List[Dict]:
        query = self.session.query(MoneyRequest).filter(MoneyRequest.userID == userId)
        if openOnly:
            query = query.filter(MoneyRequest.state.notin_(TERMINAL_STATES))
        return [r.to_dict() for r in query.order_by(MoneyRequest.requestID.desc()).all()]

    # ═══════════════════════════════════════════════════════════════════
    # TRANSFER
    # ═══════════════════════════════════════════════════════════════════

    async def transfer(
            self,
            actor: Actor,
            recipientCode: str,
            amount: Decimal,
    ) -> Dict:
        """
        Peer-to-peer transfer, REQUESTED → COMPLETED in one unit of work.

        Debits the sender's package wallet and credits the recipient's
        package wallet. Either both legs are posted or neither.

        Raises:
            InvalidAmount, InsufficientBalance, NotFound (recipient code),
            PermissionDenied (transfer to self)
        """
        amount = validate_step_amount(
            amount,
            Config.get(Config.TRANSFER_MIN, Decimal("10")),
            Config.get(Config.TRANSFER_STEP, Decimal("10")),
        )

        sender = self._getUser(actor.userId)
        recipient = self.tree.findByReferralCode(recipientCode)
        if recipient is None:
            raise NotFound(f"No member with referral code {recipientCode}")
        if recipient.userID == sender.userID:
            raise PermissionDenied("Cannot transfer to yourself")

        async with userLocks.hold(sender.userID, recipient.userID):
            try:
                self.ledger.lockWallet(sender.userID)
                self.ledger.lockWallet(recipient.userID)
                self.ledger.ensureAvailable(sender.userID, PACKAGE, amount)

                request = MoneyRequest(
                    userID=sender.userID,
                    kind=TRANSFER,
                    walletClass=PACKAGE,
                    amount=amount,
                    state=REQUESTED,
                    recipientUserID=recipient.userID,
                )
                self.session.add(request)
                self.session.flush()

                debit = self.ledger.postCompleted(
                    userId=sender.userID,
                    amount=amount,
                    direction=DEBIT,
                    incomeSource=TRANSFER_OUT,
                    walletClass=PACKAGE,
                    description=f"Transfer to {recipient.referralCode}",
                    idempotencyKey=f"{request_key(request.requestID)}:out",
                    sourceUserId=recipient.userID,
                )
                credit = self.ledger.postCompleted(
                    userId=recipient.userID,
                    amount=amount,
                    direction=CREDIT,
                    incomeSource=TRANSFER_IN,
                    walletClass=PACKAGE,
                    description=f"Transfer from {sender.referralCode}",
                    idempotencyKey=f"{request_key(request.requestID)}:in",
                    sourceUserId=sender.userID,
                    sourceTransactionId=debit.transactionID,
                )

                request.transactionID = debit.transactionID
                request.counterTransactionID = credit.transactionID
                request.state = COMPLETED
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise

        logger.info(
            f"✓ Transfer {amount}: user {sender.userID} → user {recipient.userID} "
            f"(request {request.requestID})"
        )
        return self._result(request)
