# mlm_engine/utils/chain_walker.py
"""
Safe binary-tree walking utilities.

All walks are iterative (explicit queue / loop with a visited set), so deep
or wide trees cannot exhaust the Python stack and a corrupted parent link
cannot loop forever.
"""
from collections import deque
from typing import Callable, Dict, Iterator, List, NamedTuple, Optional
from sqlalchemy.orm import Session
import logging

from models.user import User, LEFT, RIGHT

logger = logging.getLogger(__name__)

# Children of a frontier are fetched in batches of this many parent ids
FRONTIER_BATCH = 500


class DownlineNode(NamedTuple):
    user: User
    depth: int
    leg: str  # LEFT/RIGHT subtree of the walk root this node belongs to


class DownlineView:
    """
    Lazy, finite, restartable downline of one user.

    Every iteration starts a fresh breadth-first walk, so the view always
    reflects the current tree. Nodes come level by level, LEFT before RIGHT.

    Usage:
        for node in DownlineView(session, user.userID, maxDepth=10):
            print(node.depth, node.leg, node.user.userID)
    """

    def __init__(self, session: Session, rootId: int, maxDepth: int = 10):
        self.session = session
        self.rootId = rootId
        self.maxDepth = maxDepth

    def __iter__(self) -> Iterator[DownlineNode]:
        # (parentId, leg of parent relative to root)
        frontier = [(self.rootId, None)]
        visited = {self.rootId}
        depth = 0

        while frontier and depth < self.maxDepth:
            depth += 1
            legs_by_parent = {parent_id: leg for parent_id, leg in frontier}
            next_frontier = []

            for batch_start in range(0, len(frontier), FRONTIER_BATCH):
                parent_ids = [pid for pid, _ in frontier[batch_start:batch_start + FRONTIER_BATCH]]
                children = (
                    self.session.query(User)
                    .filter(User.parentID.in_(parent_ids))
                    .all()
                )
                by_parent: Dict[int, Dict[str, User]] = {}
                for child in children:
                    by_parent.setdefault(child.parentID, {})[child.position] = child

                for parent_id in parent_ids:
                    slots = by_parent.get(parent_id, {})
                    for position in (LEFT, RIGHT):
                        child = slots.get(position)
                        if child is None:
                            continue
                        if child.userID in visited:
                            logger.error(f"Cycle detected in downline at user {child.userID}")
                            continue
                        visited.add(child.userID)
                        leg = legs_by_parent[parent_id] or position
                        next_frontier.append((child.userID, leg))
                        yield DownlineNode(child, depth, leg)

            frontier = next_frontier

    def count(self) -> int:
        return sum(1 for _ in self)


class ChainWalker:
    """
    Safe utilities for walking placement-tree upline/downline chains.
    Prevents infinite loops and validates chain integrity.
    """

    def __init__(self, session: Session):
        self.session = session

    def walk_upline(
            self,
            start_user: User,
            callback: Callable[[User, int], bool],
            max_depth: int = 50
    ) -> int:
        """
        Walk up the tree-parent chain, calling callback for each ancestor.

        Args:
            start_user: Starting user (not passed to callback)
            callback: Function(ancestor, level) -> continue_walking (bool)
            max_depth: Maximum number of ancestors visited

        Returns:
            Number of ancestors processed
        """
        current_user = start_user
        level = 1
        processed = 0
        visited = {start_user.userID}

        while current_user.parentID is not None and level <= max_depth:
            if current_user.parentID in visited:
                logger.error(f"Cycle detected at user {current_user.parentID}")
                break

            parent = self.session.get(User, current_user.parentID)
            if parent is None:
                logger.warning(
                    f"Tree parent not found: userID={current_user.parentID} "
                    f"for user {current_user.userID}"
                )
                break

            visited.add(parent.userID)
            should_continue = callback(parent, level)
            processed += 1

            if not should_continue:
                break

            current_user = parent
            level += 1

        return processed

    def get_upline_chain(self, user: User, max_depth: int = 50) -> List[User]:
        """
        Ancestors from the tree parent (level 1) upwards.
        """
        chain = []

        def collect(ancestor, level):
            chain.append(ancestor)
            return True

        self.walk_upline(user, collect, max_depth)
        return chain

    def is_in_subtree(self, candidate_id: int, root_id: int, max_depth: int = 10_000) -> bool:
        """True if candidate is root itself or one of its tree descendants."""
        if candidate_id == root_id:
            return True
        candidate = self.session.get(User, candidate_id)
        if candidate is None:
            return False

        found = False

        def check(ancestor, level):
            nonlocal found
            if ancestor.userID == root_id:
                found = True
                return False
            return True

        self.walk_upline(candidate, check, max_depth)
        return found

    def children_of(self, user_id: int) -> Dict[str, User]:
        """{'LEFT': User, 'RIGHT': User} with missing slots omitted."""
        children = self.session.query(User).filter(User.parentID == user_id).all()
        return {child.position: child for child in children}

    def leg_child(self, user_id: int, leg: str) -> Optional[User]:
        return (
            self.session.query(User)
            .filter(User.parentID == user_id, User.position == leg)
            .first()
        )

    def subtree_ids(self, root_id: int) -> List[int]:
        """
        All user ids in the subtree rooted at root_id, root included.
        Iterative level-order walk over parentID.
        """
        result = [root_id]
        visited = {root_id}
        frontier = [root_id]

        while frontier:
            next_frontier = []
            for batch_start in range(0, len(frontier), FRONTIER_BATCH):
                batch = frontier[batch_start:batch_start + FRONTIER_BATCH]
                rows = (
                    self.session.query(User.userID)
                    .filter(User.parentID.in_(batch))
                    .all()
                )
                for (child_id,) in rows:
                    if child_id in visited:
                        logger.error(f"Cycle detected in subtree at user {child_id}")
                        continue
                    visited.add(child_id)
                    next_frontier.append(child_id)
            result.extend(next_frontier)
            frontier = next_frontier

        return result

    def leg_member_ids(self, user_id: int, leg: str) -> List[int]:
        """Ids of the subtree under user's LEFT or RIGHT child (empty if no child)."""
        child = self.leg_child(user_id, leg)
        if child is None:
            return []
        return self.subtree_ids(child.userID)
