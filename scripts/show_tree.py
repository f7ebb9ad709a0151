#!/usr/bin/env python3
"""
Display the binary placement tree.

Shows every member with leg, rank and wallet balances.

Usage:
    python scripts/show_tree.py [--root-code RSG123456] [--max-depth DEPTH] [--stats]
"""

import sys
import os
import argparse

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import func

from config import Config
from core.db import get_session
from models.user import User, LEFT, RIGHT
from models.wallet import Wallet
from models.investment import Investment
from mlm_engine.services.tree_service import TreeService
from mlm_engine.utils.chain_walker import ChainWalker

import logging

logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def describe(user, wallet):
    rank_display = f"[{user.rank}]" if user.rank else ""
    balances = ""
    if wallet is not None:
        balances = f"pkg=${wallet.packageBalance} inv=${wallet.investmentBalance}"
    root_marker = "👑 " if user.isRoot else ""
    return f"{root_marker}{user.fullName or user.email} ({user.referralCode}, ID:{user.userID}) {rank_display} {balances}"


def print_tree(session, root_user, max_depth=None):
    """Print ASCII tree, LEFT child above RIGHT child."""
    walker = ChainWalker(session)

    print("\n" + "=" * 80)
    print("BINARY PLACEMENT TREE")
    print("=" * 80)
    print("\nLegend:")
    print("  👑 = Root member")
    print("  L/R = Leg position under parent")
    print("  [rank] = Last evaluated rank")
    print("\n" + "=" * 80 + "\n")

    print(describe(root_user, session.get(Wallet, root_user.userID)))

    def push_children(user, prefix, depth):
        if max_depth is not None and depth >= max_depth:
            return
        children = walker.children_of(user.userID)
        present = [(pos, children[pos]) for pos in (LEFT, RIGHT) if pos in children]
        # Reverse push keeps LEFT on top of the stack
        for i in reversed(range(len(present))):
            position, child = present[i]
            is_last = i == len(present) - 1
            stack.append((child, prefix, is_last, position, depth + 1))

    # Explicit stack so deep trees print without recursion
    stack = []
    push_children(root_user, "", 0)

    while stack:
        user, prefix, is_last, position, depth = stack.pop()
        connector = "└─ " if is_last else "├─ "
        print(f"{prefix}{connector}{position[0]} {describe(user, session.get(Wallet, user.userID))}")
        push_children(user, prefix + ("    " if is_last else "│   "), depth)

    print("\n" + "=" * 80 + "\n")


def print_statistics(session, root_user):
    """Print database statistics."""
    tree = TreeService(session)

    total_users = session.query(User).count()
    unplaced = session.query(User).filter(User.parentID.is_(None), User.sponsorID.isnot(None)).count()
    total_principal = session.query(func.coalesce(func.sum(Investment.principal), 0)).scalar()
    volumes = tree.getLegVolumes(root_user.userID)

    print("=" * 80)
    print("DATABASE STATISTICS")
    print("=" * 80 + "\n")

    print(f"Total users:      {total_users}")
    print(f"Unplaced users:   {unplaced}")
    print(f"Total principal:  ${total_principal}")
    print(f"Root left leg:    ${volumes[LEFT]}")
    print(f"Root right leg:   ${volumes[RIGHT]}")

    print("\nUsers by rank:")
    rank_counts = session.query(User.rank, func.count(User.userID)).group_by(User.rank).all()
    for rank, count in rank_counts:
        print(f"  {rank or '-':12} {count:5} ({count / total_users * 100:.1f}%)")

    print("\n" + "=" * 80 + "\n")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Display binary placement tree')
    parser.add_argument('--root-code', help='Referral code of the subtree root (default: tree root)')
    parser.add_argument('--max-depth', type=int, help='Maximum depth to display')
    parser.add_argument('--stats', action='store_true', help='Show statistics only')
    args = parser.parse_args()

    Config.initialize_from_env()

    session = get_session()
    try:
        if args.root_code:
            root = TreeService(session).findByReferralCode(args.root_code)
            if not root:
                print(f"❌ Member with referral code {args.root_code} not found!")
                return
        else:
            root = session.query(User).filter(
                User.parentID.is_(None), User.sponsorID.is_(None)
            ).order_by(User.userID).first()
            if not root:
                print("❌ No root member found, database is empty")
                return

        if not args.stats:
            print_tree(session, root, args.max_depth)
        print_statistics(session, root)

    finally:
        session.close()


if __name__ == "__main__":
    main()
