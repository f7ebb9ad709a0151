"""
Ledger service - the only writer of money movement.

Every posting is a LedgerTransaction row. Wallet balances are never touched
here; the balance listeners recompute them from the journal after each
flush. This service flushes but does not commit: the caller owns the unit
of work.
"""
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import logging

from models.transaction import (
    LedgerTransaction, CREDIT, DEBIT, PENDING, COMPLETED, REJECTED, TERMINAL_STATUSES,
)
from models.investment import Investment, LOCKED_STATUSES
from models.wallet import Wallet, WALLET_CLASSES, PACKAGE, INVESTMENT
from mlm_engine.errors import (
    ConcurrentModification, InsufficientBalance, InvalidAmount, NotFound,
)
from mlm_engine.utils.money import to_money, ZERO
from mlm_engine.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)


class LedgerService:
    """Append-only journal with derived, cached balances."""

    def __init__(self, session: Session):
        self.session = session

    # ═══════════════════════════════════════════════════════════════════
    # POSTING
    # ═══════════════════════════════════════════════════════════════════

    def findByKey(self, idempotencyKey: str) -> Optional[LedgerTransaction]:
        if not idempotencyKey:
            return None
        return self.session.query(LedgerTransaction).filter_by(
            idempotencyKey=idempotencyKey
        ).first()

    def _post(
            self,
            status: str,
            userId: int,
            amount: Decimal,
            direction: str,
            incomeSource: str,
            walletClass: str,
            description: str = None,
            idempotencyKey: str = None,
            referralLevel: int = None,
            investmentId: int = None,
            sourceUserId: int = None,
            sourceTransactionId: int = None,
    ) -> Tuple[LedgerTransaction, bool]:
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmount(amount, reason=f"Posting amount must be positive, got {amount}")
        if direction not in (CREDIT, DEBIT):
            raise ValueError(f"Unknown direction {direction!r}")
        if walletClass not in WALLET_CLASSES:
            raise ValueError(f"Unknown wallet class {walletClass!r}")

        existing = self.findByKey(idempotencyKey)
        if existing is not None:
            logger.warning(
                f"Duplicate posting ignored: key={idempotencyKey}, "
                f"existing transaction {existing.transactionID}"
            )
            return existing, False

        entry = LedgerTransaction(
            userID=userId,
            walletClass=walletClass,
            amount=amount,
            direction=direction,
            incomeSource=incomeSource,
            status=status,
            description=description,
            idempotencyKey=idempotencyKey,
            referralLevel=referralLevel,
            investmentID=investmentId,
            sourceUserID=sourceUserId,
            sourceTransactionID=sourceTransactionId,
            createdAt=timeMachine.utcnow,
            resolvedAt=timeMachine.utcnow if status == COMPLETED else None,
        )
        try:
            # Savepoint: a lost race undoes only this insert, not the caller's unit of work
            with self.session.begin_nested():
                self.session.add(entry)
        except IntegrityError as e:
            if not idempotencyKey:
                raise
            existing = self.findByKey(idempotencyKey)
            if existing is None:
                raise ConcurrentModification(
                    f"Posting {idempotencyKey} written concurrently"
                ) from e
            logger.warning(
                f"Concurrent duplicate posting resolved: key={idempotencyKey}, "
                f"existing transaction {existing.transactionID}"
            )
            return existing, False

        logger.info(
            f"Posted {status} {direction} {amount} {walletClass} "
            f"({incomeSource}) for user {userId}: transaction {entry.transactionID}"
        )
        return entry, True

    def postPending(self, userId: int, amount: Decimal, direction: str, incomeSource: str,
                    walletClass: str, **metadata) -> LedgerTransaction:
        """
        Create a PENDING transaction. No balance effect until completed.

        Returns:
            The new (or, for a reused idempotency key, the existing) transaction
        """
        entry, _ = self._post(PENDING, userId, amount, direction, incomeSource, walletClass, **metadata)
        return entry

    def postCompleted(self, userId: int, amount: Decimal, direction: str, incomeSource: str,
                      walletClass: str, **metadata) -> LedgerTransaction:
        """
        Create an immediately COMPLETED transaction (system postings).
        """
        entry, _ = self._post(COMPLETED, userId, amount, direction, incomeSource, walletClass, **metadata)
        return entry

    def postCompletedOnce(self, userId: int, amount: Decimal, direction: str, incomeSource: str,
                          walletClass: str, idempotencyKey: str,
                          **metadata) -> Tuple[LedgerTransaction, bool]:
        """
        postCompleted keyed by idempotencyKey.

        Returns:
            (transaction, created) - created is False when the key was already used
        """
        return self._post(
            COMPLETED, userId, amount, direction, incomeSource, walletClass,
            idempotencyKey=idempotencyKey, **metadata
        )

    # ═══════════════════════════════════════════════════════════════════
    # RESOLUTION
    # ═══════════════════════════════════════════════════════════════════

    def _resolve(self, transactionId: int, status: str) -> LedgerTransaction:
        entry = (
            self.session.query(LedgerTransaction)
            .filter_by(transactionID=transactionId)
            .with_for_update()
            .first()
        )
        if entry is None:
            raise NotFound(f"Transaction {transactionId} not found")

        if entry.status in TERMINAL_STATUSES:
            if entry.status != status:
                logger.warning(
                    f"Transaction {transactionId} already {entry.status}, "
                    f"ignoring request to mark {status}"
                )
            else:
                logger.debug(f"Transaction {transactionId} already {status}")
            return entry

        entry.status = status
        entry.resolvedAt = timeMachine.utcnow
        self.session.flush()

        logger.info(f"Transaction {transactionId} → {status}")
        return entry

    def complete(self, transactionId: int) -> LedgerTransaction:
        """PENDING → COMPLETED. No-op if already terminal."""
        return self._resolve(transactionId, COMPLETED)

    def reject(self, transactionId: int) -> LedgerTransaction:
        """PENDING → REJECTED. No-op if already terminal."""
        return self._resolve(transactionId, REJECTED)

    # ═══════════════════════════════════════════════════════════════════
    # BALANCES
    # ═══════════════════════════════════════════════════════════════════

    def balance(self, userId: int, walletClass: str) -> Decimal:
        """Materialized balance from the wallet cache."""
        column = getattr(Wallet, 'packageBalance' if walletClass == PACKAGE else 'investmentBalance')
        value = self.session.query(column).filter(Wallet.userID == userId).scalar()
        return to_money(value)

    def computeBalance(self, userId: int, walletClass: str) -> Decimal:
        """Balance recomputed from the journal (authoritative)."""
        signed = case(
            (LedgerTransaction.direction == CREDIT, LedgerTransaction.amount),
            else_=-LedgerTransaction.amount
        )
        value = self.session.query(func.coalesce(func.sum(signed), 0)).filter(
            LedgerTransaction.userID == userId,
            LedgerTransaction.walletClass == walletClass,
            LedgerTransaction.status == COMPLETED,
        ).scalar()
        return to_money(value)

    def pendingDebits(self, userId: int, walletClass: str) -> Decimal:
        """Soft-held amount: PENDING debits not yet approved or rejected."""
        value = self.session.query(func.coalesce(func.sum(LedgerTransaction.amount), 0)).filter(
            LedgerTransaction.userID == userId,
            LedgerTransaction.walletClass == walletClass,
            LedgerTransaction.direction == DEBIT,
            LedgerTransaction.status == PENDING,
        ).scalar()
        return to_money(value)

    def lockedPrincipal(self, userId: int) -> Decimal:
        """Principal of investments still held in the investment wallet."""
        value = self.session.query(func.coalesce(func.sum(Investment.principal), 0)).filter(
            Investment.userID == userId,
            Investment.status.in_(LOCKED_STATUSES),
        ).scalar()
        return to_money(value)

    def availableBalance(self, userId: int, walletClass: str) -> Decimal:
        """
        What a new debit may draw on.

        package:    completed balance - pending debits
        investment: completed balance - pending debits - locked principal
        """
        available = self.computeBalance(userId, walletClass) - self.pendingDebits(userId, walletClass)
        if walletClass == INVESTMENT:
            available -= self.lockedPrincipal(userId)
        return max(to_money(available), ZERO)

    def ensureAvailable(self, userId: int, walletClass: str, amount: Decimal) -> Decimal:
        """
        Raises:
            InsufficientBalance: amount exceeds availableBalance
        """
        available = self.availableBalance(userId, walletClass)
        if to_money(amount) > available:
            raise InsufficientBalance(to_money(amount), available, walletClass)
        return available

    def lockWallet(self, userId: int) -> Optional[Wallet]:
        """Row lock on the wallet (no-op on SQLite)."""
        return (
            self.session.query(Wallet)
            .filter_by(userID=userId)
            .with_for_update()
            .first()
        )

    # ═══════════════════════════════════════════════════════════════════
    # RECONCILIATION / HISTORY
    # ═══════════════════════════════════════════════════════════════════

    def reconcile(self, userId: int, repair: bool = False) -> Dict:
        """
        Compare cached balances with the journal.

        Args:
            repair: overwrite a drifted cache with the journal value

        Returns:
            Dict per wallet class with cached, journal and ok flag
        """
        report = {"userId": userId, "ok": True, "wallets": {}}
        wallet = self.session.get(Wallet, userId)
        if wallet is None:
            raise NotFound(f"Wallet for user {userId} not found")
        self.session.refresh(wallet)

        for walletClass in WALLET_CLASSES:
            cached = to_money(wallet.balance_of(walletClass))
            journal = self.computeBalance(userId, walletClass)
            ok = cached == journal
            report["wallets"][walletClass] = {
                "cached": cached,
                "journal": journal,
                "ok": ok,
            }
            if not ok:
                report["ok"] = False
                logger.warning(
                    f"Balance drift: user={userId}, class={walletClass}, "
                    f"cached={cached}, journal={journal}"
                )
                if repair:
                    column = 'packageBalance' if walletClass == PACKAGE else 'investmentBalance'
                    self.session.query(Wallet).filter_by(userID=userId).update(
                        {column: journal}, synchronize_session=False
                    )
                    logger.info(f"Repaired {walletClass} balance for user {userId}: {journal}")

        return report

    def history(
            self,
            userId: int,
            page: int = 1,
            pageSize: int = 20,
            incomeSource: str = None,
            status: str = None,
            walletClass: str = None,
    ) -> Dict:
        """Paged transaction history, newest first."""
        query = self.session.query(LedgerTransaction).filter(LedgerTransaction.userID == userId)
        if incomeSource:
            query = query.filter(LedgerTransaction.incomeSource == incomeSource)
        if status:
            query = query.filter(LedgerTransaction.status == status)
        if walletClass:
            query = query.filter(LedgerTransaction.walletClass == walletClass)

        total = query.count()
        page = max(page, 1)
        items: List[LedgerTransaction] = (
            query.order_by(LedgerTransaction.createdAt.desc(), LedgerTransaction.transactionID.desc())
            .offset((page - 1) * pageSize)
            .limit(pageSize)
            .all()
        )

        return {
            "items": items,
            "page": page,
            "pageSize": pageSize,
            "total": total,
        }
