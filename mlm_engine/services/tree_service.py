"""
Binary tree directory - registration, placement and leg queries.

Placement is breadth-first from the sponsor, scanning LEFT before RIGHT at
every node; the new member takes the first open slot found. The database
unique constraint on (parentID, position) is the final arbiter when two
placements race for the same slot: the loser retries from scratch.
"""
import secrets
from collections import deque
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
import logging

from config import Config
from models.user import User, LEFT, LEGS
from models.wallet import Wallet
from models.investment import Investment
from models.transaction import LedgerTransaction, MONTHLY_PROFIT, COMPLETED
from mlm_engine.config.ranks import REFERRAL_CODE_DIGITS
from mlm_engine.errors import InvalidPlacement, NotFound, UnknownSponsor
from mlm_engine.utils.chain_walker import ChainWalker, DownlineView, FRONTIER_BATCH
from mlm_engine.utils.money import to_money, ZERO
from mlm_engine.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

PLACEMENT_ATTEMPTS = 5


class TreeService:
    """Registration and binary placement."""

    def __init__(self, session: Session):
        self.session = session
        self.walker = ChainWalker(session)

    # ═══════════════════════════════════════════════════════════════════
    # LOOKUPS
    # ═══════════════════════════════════════════════════════════════════

    def getUser(self, userId: int) -> User:
        user = self.session.get(User, userId)
        if user is None:
            raise NotFound(f"User {userId} not found")
        return user

    def findByReferralCode(self, code: str) -> Optional[User]:
        if not code:
            return None
        return self.session.query(User).filter(
            func.upper(User.referralCode) == code.strip().upper()
        ).first()

    def getSponsorInfo(self, code: str) -> Dict:
        """Public sponsor lookup used by the signup form."""
        sponsor = self.findByReferralCode(code)
        if sponsor is None:
            raise UnknownSponsor(code)
        return {
            "userId": sponsor.userID,
            "fullName": sponsor.fullName,
            "referralCode": sponsor.referralCode,
        }

    def generateReferralCode(self) -> str:
        prefix = Config.get(Config.REFERRAL_CODE_PREFIX, "RSG")
        for _ in range(20):
            digits = ''.join(secrets.choice('0123456789') for _ in range(REFERRAL_CODE_DIGITS))
            code = f"{prefix}{digits}"
            if not self.session.query(User.userID).filter_by(referralCode=code).first():
                return code
        raise RuntimeError("Could not generate a unique referral code")

    # ═══════════════════════════════════════════════════════════════════
    # PLACEMENT
    # ═══════════════════════════════════════════════════════════════════

    def findOpenSlot(self, sponsorId: int) -> Tuple[int, str]:
        """
        Breadth-first search for the first open slot under sponsor.

        Returns:
            (parentId, position)
        """
        queue = deque([sponsorId])
        visited = {sponsorId}

        while queue:
            batch = [queue.popleft() for _ in range(min(len(queue), FRONTIER_BATCH))]
            rows = (
                self.session.query(User.userID, User.parentID, User.position)
                .filter(User.parentID.in_(batch))
                .all()
            )
            slots: Dict[int, Dict[str, int]] = {}
            for child_id, parent_id, position in rows:
                slots.setdefault(parent_id, {})[position] = child_id

            for node_id in batch:
                taken = slots.get(node_id, {})
                for position in LEGS:
                    if position not in taken:
                        return node_id, position
                for position in LEGS:
                    child_id = taken[position]
                    if child_id in visited:
                        raise InvalidPlacement(f"Cycle detected in tree at user {child_id}")
                    visited.add(child_id)
                    queue.append(child_id)

        # Unreachable for a finite tree: leaves always have open slots
        raise InvalidPlacement(f"No open slot found under sponsor {sponsorId}")

    def _validatePlacement(self, user: User, sponsor: User) -> None:
        if sponsor.userID == user.userID:
            raise InvalidPlacement("A user cannot sponsor themselves")
        if user.parentID is not None:
            raise InvalidPlacement(f"User {user.userID} is already placed under {user.parentID}")
        if user.userID is not None and self.walker.is_in_subtree(sponsor.userID, user.userID):
            raise InvalidPlacement(
                f"Sponsor {sponsor.userID} is inside the subtree of user {user.userID}"
            )

    def _attach(self, user: User, sponsor: User) -> None:
        parent_id, position = self.findOpenSlot(sponsor.userID)
        user.parentID = parent_id
        user.position = position
        user.placedAt = timeMachine.utcnow
        logger.info(
            f"Placing user {user.email} under {parent_id} ({position}), "
            f"sponsor {sponsor.userID}"
            + (" [spillover]" if parent_id != sponsor.userID else "")
        )

    async def registerUser(
            self,
            email: str,
            fullName: str = None,
            sponsorCode: str = None,
            role: str = "user",
    ) -> User:
        """
        Create a member, their wallet, and place them in the tree.

        Without a sponsor code only the very first member (the root) may
        register. Commits on success; nothing is written on failure.

        Raises:
            UnknownSponsor: code does not resolve, or missing while a root exists
            InvalidPlacement: placement would be invalid
        """
        email = email.strip().lower()
        if self.session.query(User.userID).filter_by(email=email).first():
            raise InvalidPlacement(f"Email {email} is already registered")

        for attempt in range(1, PLACEMENT_ATTEMPTS + 1):
            sponsor = None
            if sponsorCode:
                sponsor = self.findByReferralCode(sponsorCode)
                if sponsor is None:
                    raise UnknownSponsor(sponsorCode)
            elif self.session.query(User.userID).first() is not None:
                raise UnknownSponsor(sponsorCode)

            user = User(
                email=email,
                fullName=fullName,
                referralCode=self.generateReferralCode(),
                role=role,
                sponsorID=sponsor.userID if sponsor else None,
                createdAt=timeMachine.utcnow,
            )

            if sponsor is not None:
                self._validatePlacement(user, sponsor)
                self._attach(user, sponsor)
            else:
                user.placedAt = timeMachine.utcnow
                logger.info(f"Registering root user {email}")

            self.session.add(user)
            try:
                self.session.flush()
                self.session.add(Wallet(userID=user.userID))
                self.session.commit()
            except IntegrityError as e:
                self.session.rollback()
                if self.session.query(User.userID).filter_by(email=email).first():
                    raise InvalidPlacement(f"Email {email} is already registered") from e
                logger.warning(
                    f"Placement conflict for {email} (attempt {attempt}/{PLACEMENT_ATTEMPTS}), retrying"
                )
                continue

            logger.info(
                f"✓ Registered user {user.userID} ({user.referralCode}) "
                f"at parent={user.parentID} position={user.position}"
            )
            return user

        raise InvalidPlacement(f"Could not place {email} after {PLACEMENT_ATTEMPTS} attempts")

    async def placeUser(self, userId: int, sponsorId: int) -> User:
        """
        Place an existing, unplaced user under sponsor's subtree.

        Raises:
            UnknownSponsor: sponsor does not exist
            InvalidPlacement: self-sponsoring, already placed, or cycle
        """
        user = self.getUser(userId)
        sponsor = self.session.get(User, sponsorId)
        if sponsor is None:
            raise UnknownSponsor(sponsorId)

        self._validatePlacement(user, sponsor)
        if user.sponsorID is None:
            user.sponsorID = sponsor.userID
        self._attach(user, sponsor)

        try:
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            raise InvalidPlacement(f"Slot taken concurrently while placing user {userId}") from e

        return user

    # ═══════════════════════════════════════════════════════════════════
    # LEG QUERIES
    # ═══════════════════════════════════════════════════════════════════

    def _sumPrincipal(self, user_ids: List[int]) -> Decimal:
        total = ZERO
        for start in range(0, len(user_ids), FRONTIER_BATCH):
            batch = user_ids[start:start + FRONTIER_BATCH]
            value = self.session.query(
                func.coalesce(func.sum(Investment.principal), 0)
            ).filter(Investment.userID.in_(batch)).scalar()
            total += to_money(value)
        return total

    def _sumProfit(self, user_ids: List[int]) -> Decimal:
        total = ZERO
        for start in range(0, len(user_ids), FRONTIER_BATCH):
            batch = user_ids[start:start + FRONTIER_BATCH]
            value = self.session.query(
                func.coalesce(func.sum(LedgerTransaction.amount), 0)
            ).filter(
                LedgerTransaction.userID.in_(batch),
                LedgerTransaction.incomeSource == MONTHLY_PROFIT,
                LedgerTransaction.status == COMPLETED,
            ).scalar()
            total += to_money(value)
        return total

    def getLegVolume(self, userId: int, leg: str, includeProfit: bool = False) -> Decimal:
        """
        Cumulative invested principal of the subtree under user's leg child,
        that child included. With includeProfit, completed monthly profit of
        the same members is added.
        """
        if leg not in LEGS:
            raise ValueError(f"Unknown leg {leg!r}")

        member_ids = self.walker.leg_member_ids(userId, leg)
        if not member_ids:
            return ZERO

        volume = self._sumPrincipal(member_ids)
        if includeProfit:
            volume += self._sumProfit(member_ids)

        logger.debug(f"Leg volume user={userId} leg={leg}: {volume} ({len(member_ids)} members)")
        return volume

    def getLegVolumes(self, userId: int, includeProfit: bool = False) -> Dict[str, Decimal]:
        return {leg: self.getLegVolume(userId, leg, includeProfit) for leg in LEGS}

    def getDownline(self, userId: int, maxDepth: int = 10) -> DownlineView:
        self.getUser(userId)
        return DownlineView(self.session, userId, maxDepth)

    def getTreeSnapshot(self, userId: int, maxDepth: int = 10) -> Dict:
        """
        Root plus left/right member lists (the genealogy view).
        """
        root = self.getUser(userId)
        snapshot = {
            "root": self._nodeInfo(root),
            "left": [],
            "right": [],
        }

        for node in DownlineView(self.session, userId, maxDepth):
            info = self._nodeInfo(node.user)
            info["depth"] = node.depth
            snapshot["left" if node.leg == LEFT else "right"].append(info)

        snapshot["leftCount"] = len(snapshot["left"])
        snapshot["rightCount"] = len(snapshot["right"])
        return snapshot

    @staticmethod
    def _nodeInfo(user: User) -> Dict:
        return {
            "userId": user.userID,
            "fullName": user.fullName,
            "referralCode": user.referralCode,
            "parentId": user.parentID,
            "position": user.position,
            "sponsorId": user.sponsorID,
            "rank": user.rank,
            "createdAt": user.createdAt.isoformat() if user.createdAt else None,
        }
