"""
User model - a member and a node of the binary placement tree.

sponsorID is the referral sponsor fixed at signup; parentID/position is the
tree placement, which differs from the sponsor when spillover happens.
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import relationship

from models.base import Base, _get_current_time

LEFT = "LEFT"
RIGHT = "RIGHT"
LEGS = (LEFT, RIGHT)


class User(Base):
    __tablename__ = 'users'
    __table_args__ = (
        # One LEFT and one RIGHT child per node, enforced by the database
        UniqueConstraint('parentID', 'position', name='uq_users_parent_position'),
        Index('ix_users_parent', 'parentID'),
    )

    # Primary identification
    userID = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, unique=True, nullable=False)
    fullName = Column(String, nullable=True)
    referralCode = Column(String, unique=True, nullable=False, index=True)
    role = Column(String, default="user", nullable=False)  # user, admin
    createdAt = Column(DateTime, default=_get_current_time)

    # Referral and placement
    sponsorID = Column(Integer, ForeignKey('users.userID'), nullable=True, index=True)
    parentID = Column(Integer, ForeignKey('users.userID'), nullable=True)
    position = Column(String, nullable=True)  # LEFT, RIGHT; null for root/unplaced
    placedAt = Column(DateTime, nullable=True)

    # Rank / salary markers
    rank = Column(String, nullable=True)
    lastSalaryPeriod = Column(String, nullable=True)  # YYYY-MM of last salary credit

    # Relationships
    sponsor = relationship('User', remote_side=[userID], foreign_keys=[sponsorID])
    parent = relationship('User', remote_side=[userID], foreign_keys=[parentID])
    wallet = relationship('Wallet', uselist=False, back_populates='user')

    @property
    def isRoot(self) -> bool:
        return self.parentID is None and self.sponsorID is None

    def __repr__(self):
        return (
            f"<User(userID={self.userID}, code={self.referralCode}, "
            f"parent={self.parentID}, position={self.position})>"
        )
