# tests/conftest.py
"""
Pytest configuration and shared fixtures for the engine tests.

Every test gets a fresh in-memory SQLite database, a frozen virtual clock
and a fake OTP transport that records the codes it was asked to send.

Run:
    pytest tests -v
"""
import os
from datetime import datetime
from decimal import Decimal

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("IDENTITY_SECRET_KEY", "test_identity_secret")

import pytest
from sqlalchemy import create_engine, func
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import Config
from core.db import bind_engine, enable_sqlite_savepoints
from core.identity import Actor, ROLE_ADMIN
from core.locks import userLocks
from models import Base, LedgerTransaction
from models.listeners import register_all_listeners
from models.transaction import CREDIT, COMPLETED
from mlm_engine.config.ranks import reload_rank_config
from mlm_engine.services.ledger_service import LedgerService
from mlm_engine.services.tree_service import TreeService
from mlm_engine.utils.time_machine import timeMachine

# =============================================================================
# CONSTANTS
# =============================================================================

FROZEN_NOW = datetime(2025, 1, 1, 12, 0, 0)


# =============================================================================
# CONFIG / CLOCK
# =============================================================================

@pytest.fixture(autouse=True)
def engine_config():
    """Fresh configuration for each test (tests may Config.set overrides)."""
    Config.initialize_from_env()
    reload_rank_config()
    yield Config
    reload_rank_config()


@pytest.fixture(autouse=True)
def frozen_time():
    """Virtual clock pinned to FROZEN_NOW; advance with timeMachine.advanceTime."""
    timeMachine.setTime(FROZEN_NOW)
    yield timeMachine
    timeMachine.resetToRealTime()


@pytest.fixture(autouse=True)
def clear_locks():
    yield
    userLocks.clear()


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest.fixture(scope="session", autouse=True)
def setup_listeners():
    """Register listeners once at test session start."""
    register_all_listeners()


@pytest.fixture
def engine():
    """In-memory database shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)
    bind_engine(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    """Create database session for each test."""
    Session = sessionmaker(bind=engine, expire_on_commit=False)
    session = Session()
    yield session
    session.close()


# =============================================================================
# USER FIXTURES
# =============================================================================

@pytest.fixture
def make_user(session):
    """
    Register a member through TreeService.

    Usage:
        root = await make_user("root")
        child = await make_user("b", sponsor=root)
    """
    tree = TreeService(session)

    async def _make(name, sponsor=None):
        return await tree.registerUser(
            email=f"{name}@example.com",
            fullName=name.upper(),
            sponsorCode=sponsor.referralCode if sponsor is not None else None,
        )

    return _make


@pytest.fixture
def admin_actor():
    def _admin(user):
        return Actor(userId=user.userID, role=ROLE_ADMIN)
    return _admin


# =============================================================================
# HELPER FIXTURES
# =============================================================================

class FakeDelivery:
    """OTP transport that keeps sent codes instead of emailing them."""

    def __init__(self, succeed=True):
        self.succeed = succeed
        self.sent = []

    async def send_otp(self, destination, code, purpose):
        self.sent.append({"destination": destination, "code": code, "purpose": purpose})
        return self.succeed

    @property
    def last_code(self):
        return self.sent[-1]["code"] if self.sent else None


@pytest.fixture
def delivery():
    return FakeDelivery()


@pytest.fixture
def failing_delivery():
    return FakeDelivery(succeed=False)


@pytest.fixture
def credit(session):
    """Post and commit a completed credit (test funding)."""
    ledger = LedgerService(session)

    def _credit(user, amount, walletClass, incomeSource="admin_credit"):
        entry = ledger.postCompleted(
            userId=user.userID,
            amount=Decimal(amount),
            direction=CREDIT,
            incomeSource=incomeSource,
            walletClass=walletClass,
            description="test funding",
        )
        session.commit()
        return entry

    return _credit


@pytest.fixture
def calc_journal_sum(session):
    """
    Signed SUM of COMPLETED rows for one wallet class, straight from the journal.
    """

    def _calc(user_id: int, wallet_class: str) -> Decimal:
        rows = session.query(LedgerTransaction.direction, func.sum(LedgerTransaction.amount)).filter(
            LedgerTransaction.userID == user_id,
            LedgerTransaction.walletClass == wallet_class,
            LedgerTransaction.status == COMPLETED,
        ).group_by(LedgerTransaction.direction).all()
        total = Decimal("0")
        for direction, amount in rows:
            amount = Decimal(str(amount))
            total += amount if direction == CREDIT else -amount
        return total.quantize(Decimal("0.01"))

    return _calc
