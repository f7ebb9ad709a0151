# models/listeners/balance_listeners.py
"""
Balance Event Listeners - Auto-sync Wallet balances on journal changes.

Architecture:
    LedgerTransaction (INSERT/UPDATE) → Wallet.<class>Balance =
        SUM(credit amounts) - SUM(debit amounts)
        WHERE userID=X AND walletClass=<class> AND status='COMPLETED'

The wallet columns are a cache. The journal is authoritative and the cache
is overwritten from it on every journal change, so a drifted cache heals on
the next write for that wallet.

The journal itself is append-only: the only permitted update is a
PENDING → COMPLETED/REJECTED transition (plus its resolvedAt stamp).
Anything else raises LedgerIntegrityError before it reaches the database.
"""
import logging

from sqlalchemy import case, event, func, inspect, select

logger = logging.getLogger(__name__)

MUTABLE_FIELDS = ('status', 'resolvedAt')


def signed_completed_sum(table, user_id, wallet_class):
    """SELECT expression for the completed signed balance of one wallet."""
    signed = case(
        (table.c.direction == 'credit', table.c.amount),
        else_=-table.c.amount
    )
    return (
        select(func.coalesce(func.sum(signed), 0))
        .where(table.c.userID == user_id)
        .where(table.c.walletClass == wallet_class)
        .where(table.c.status == 'COMPLETED')
    )


def register_balance_listeners():
    """
    Register event listeners for balance synchronization.

    Called once during application startup from models/listeners/__init__.py
    """
    from models.transaction import LedgerTransaction
    from models.wallet import Wallet, BALANCE_COLUMNS

    journal = LedgerTransaction.__table__
    wallets = Wallet.__table__

    def recalc_wallet_balance(mapper, connection, target):
        """
        Full recalculation of one wallet class from the journal.
        """
        column = BALANCE_COLUMNS.get(target.walletClass)
        if column is None:
            logger.error(
                f"Unknown walletClass {target.walletClass!r} on transaction {target.transactionID}"
            )
            return

        real_balance = connection.execute(
            signed_completed_sum(journal, target.userID, target.walletClass)
        ).scalar()

        # Overwrite (NOT increment!)
        result = connection.execute(
            wallets.update()
            .where(wallets.c.userID == target.userID)
            .values(**{column: real_balance})
        )

        if result.rowcount == 0:
            logger.warning(f"No wallet row for user {target.userID}, balance not cached")
            return

        logger.info(
            f"Wallet RECALC: user={target.userID}, class={target.walletClass}, "
            f"new_balance={real_balance}, trigger={target.incomeSource}#{target.transactionID}"
        )

    event.listen(LedgerTransaction, 'after_insert', recalc_wallet_balance)
    event.listen(LedgerTransaction, 'after_update', recalc_wallet_balance)


# =========================================================================
# SAFETY: Append-only journal
# =========================================================================

def register_journal_protection():
    """Reject journal updates other than a status resolution, and all deletes."""
    from models.transaction import LedgerTransaction, PENDING, TERMINAL_STATUSES
    from mlm_engine.errors import LedgerIntegrityError

    def guard_update(mapper, connection, target):
        state = inspect(target)

        for attr in mapper.column_attrs:
            history = state.attrs[attr.key].history
            if not history.has_changes():
                continue

            if attr.key not in MUTABLE_FIELDS:
                raise LedgerIntegrityError(
                    f"Transaction {target.transactionID}: field '{attr.key}' is immutable"
                )

            if attr.key == 'status':
                old = history.deleted[0] if history.deleted else None
                new = history.added[0] if history.added else None
                if old != PENDING or new not in TERMINAL_STATUSES:
                    raise LedgerIntegrityError(
                        f"Transaction {target.transactionID}: status {old} → {new} not allowed"
                    )

    def guard_delete(mapper, connection, target):
        raise LedgerIntegrityError(
            f"Transaction {target.transactionID} cannot be deleted; post an offsetting entry"
        )

    event.listen(LedgerTransaction, 'before_update', guard_update)
    event.listen(LedgerTransaction, 'before_delete', guard_delete)


# =========================================================================
# SAFETY: Warn on direct balance modification
# =========================================================================

def register_balance_protection():
    """
    Log warnings when Wallet balances are set through the ORM.

    Listener writes go through Core UPDATE and never trigger these.
    """
    from models.wallet import Wallet

    def _warn(column_name):
        def warn_direct_balance_set(target, value, oldvalue, initiator):
            if oldvalue is not None and value != oldvalue:
                import traceback
                stack = ''.join(traceback.format_stack()[-5:-1])

                logger.warning(
                    f"DIRECT {column_name} modification detected! "
                    f"user={target.userID}, {oldvalue} → {value}\n"
                    f"Stack:\n{stack}"
                )
        return warn_direct_balance_set

    event.listen(Wallet.packageBalance, 'set', _warn('packageBalance'))
    event.listen(Wallet.investmentBalance, 'set', _warn('investmentBalance'))
