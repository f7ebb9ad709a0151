#!/usr/bin/env python3
"""
Compare cached wallet balances with the ledger journal.

Every wallet's packageBalance/investmentBalance is recomputed from COMPLETED
transactions and compared with the cached column. With --repair a drifted
cache is overwritten with the journal value.

Usage:
    python scripts/reconcile_wallets.py [--user-id ID] [--repair]
"""

import sys
import os
import argparse

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config
from core.db import get_session
from models.wallet import Wallet
from mlm_engine.services.ledger_service import LedgerService

import logging

logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def reconcile(session, user_ids, repair=False):
    """
    Returns:
        List of drift reports (only wallets that did not match)
    """
    ledger = LedgerService(session)
    drifted = []

    for user_id in user_ids:
        report = ledger.reconcile(user_id, repair=repair)
        if not report["ok"]:
            drifted.append(report)

    if repair and drifted:
        session.commit()

    return drifted


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Audit wallet cache against the ledger')
    parser.add_argument('--user-id', type=int, help='Check a single user')
    parser.add_argument('--repair', action='store_true', help='Overwrite drifted caches')
    args = parser.parse_args()

    Config.initialize_from_env()

    session = get_session()
    try:
        if args.user_id:
            user_ids = [args.user_id]
        else:
            user_ids = [row[0] for row in session.query(Wallet.userID).order_by(Wallet.userID).all()]

        print("\n" + "=" * 80)
        print(f"WALLET RECONCILIATION ({len(user_ids)} wallets{', repair mode' if args.repair else ''})")
        print("=" * 80 + "\n")

        drifted = reconcile(session, user_ids, repair=args.repair)

        for report in drifted:
            for wallet_class, row in report["wallets"].items():
                if row["ok"]:
                    continue
                print(
                    f"❌ user {report['userId']:6} {wallet_class:10} "
                    f"cached={row['cached']:>14} journal={row['journal']:>14}"
                )

        if drifted:
            action = "repaired" if args.repair else "found"
            print(f"\n{len(drifted)} drifted wallet(s) {action}")
        else:
            print("✅ All wallet caches match the journal")

        print("\n" + "=" * 80 + "\n")

    finally:
        session.close()


if __name__ == "__main__":
    main()
