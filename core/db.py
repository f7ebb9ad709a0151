# treeledger/core/db.py
"""
Database management for the treeledger engine.
Single database, one engine per process.
"""
import logging
from contextlib import contextmanager
from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError, DBAPIError, IntegrityError
from sqlalchemy.orm import sessionmaker, Session

from config import Config
from models.base import Base

logger = logging.getLogger(__name__)

# Database engines
_engine = None
_SessionFactory = None


def get_engine():
    """Get or create database engine."""
    global _engine
    if _engine is None:
        database_url = Config.get(Config.DATABASE_URL, "sqlite:///treeledger.db")
        _engine = create_engine(
            database_url,
            echo=False,
            pool_pre_ping=True
        )
        if _engine.dialect.name == "sqlite":
            enable_sqlite_savepoints(_engine)
        logger.info(f"Database engine created: {database_url}")
    return _engine


def enable_sqlite_savepoints(engine) -> None:
    """
    Let SQLAlchemy emit BEGIN itself on pysqlite connections.

    The driver's own implicit transactions break SAVEPOINT (begin_nested),
    which the ledger uses for duplicate postings. Register before the first
    connection is made.
    """

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


def bind_engine(engine) -> None:
    """
    Replace the process engine (tests, scripts with their own URL).

    Resets the session factory so new sessions use the given engine.
    """
    global _engine, _SessionFactory
    _engine = engine
    _SessionFactory = None
    logger.info(f"Database engine bound: {engine.url}")


def get_session_factory():
    """Get or create session factory."""
    global _SessionFactory
    if _SessionFactory is None:
        engine = get_engine()
        _SessionFactory = sessionmaker(bind=engine, expire_on_commit=False)
        logger.info("Session factory created")
    return _SessionFactory


def get_session() -> Session:
    """
    Get a new database session.

    Returns:
        Session instance
    """
    factory = get_session_factory()
    return factory()


@contextmanager
def get_db_session_ctx():
    """
    Context manager for database sessions.

    Connection-level failures are re-raised as LedgerUnavailable so callers
    never mistake a lost write for a business error.

    Usage:
        with get_db_session_ctx() as session:
            user = session.query(User).first()
    """
    from mlm_engine.errors import LedgerUnavailable

    session = get_session()
    try:
        yield session
        session.commit()
    except IntegrityError:
        session.rollback()
        raise
    except (OperationalError, DBAPIError) as e:
        session.rollback()
        logger.error(f"Database unavailable: {e}")
        raise LedgerUnavailable(str(e)) from e
    except Exception as e:
        session.rollback()
        logger.error(f"Database error: {e}")
        raise
    finally:
        session.close()


def setup_database():
    """Initialize database - create all tables."""
    logger.info("Setting up database...")
    engine = get_engine()
    Base.metadata.create_all(engine)
    logger.info("Database setup completed")


def drop_all_tables():
    """Drop all tables - USE WITH CAUTION!"""
    logger.warning("Dropping all tables...")
    engine = get_engine()
    Base.metadata.drop_all(engine)
    logger.info("All tables dropped")
