"""
Database connection, session management and the unit-of-work helper.
"""

from contextlib import contextmanager
from typing import Generator, Iterator
from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session
from canonical_contacts.core.config import get_settings
from canonical_contacts.core.errors import IdentityError, InternalError
from canonical_contacts.core.models import Base

# Import model modules so they're registered with SQLAlchemy
from canonical_contacts.core import contact_models  # noqa: F401
from canonical_contacts.core import deal_models  # noqa: F401
from canonical_contacts.core import migration_models  # noqa: F401
import logging

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Singleton engine & session factory, created once and reused everywhere
# ---------------------------------------------------------------------------
_engine = None
_SessionLocal = None


def enable_sqlite_savepoints(engine) -> None:
    """
    Let pysqlite honour SAVEPOINT / ROLLBACK TO.

    The driver otherwise opens transactions lazily on its own and
    begin_nested() silently loses its rollback scope.
    """

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


def get_engine():
    """
    Get the shared database engine (singleton).

    The engine is created once and reused for the lifetime of the process.
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        if settings.database_url.startswith("sqlite"):
            _engine = create_engine(settings.database_url, echo=False)
            enable_sqlite_savepoints(_engine)
        else:
            _engine = create_engine(
                settings.database_url,
                pool_size=5,
                max_overflow=10,
                pool_pre_ping=True,  # Verify connections before using
                echo=False,
            )
    return _engine


def create_tables(engine=None):
    """
    Create all contact-system tables if they don't exist.

    Idempotent - safe to call multiple times.
    """
    if engine is None:
        engine = get_engine()

    logger.info("Creating contact system tables if they don't exist...")
    Base.metadata.create_all(bind=engine)
    logger.info("Contact system tables ready")


def get_session_factory():
    """Get the shared session factory (singleton)."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, bind=get_engine()
        )
    return _SessionLocal


def get_db() -> Generator[Session, None, None]:
    """
    Yield a session and close it afterwards.

    Usage:
        for db in get_db():
            ...
    """
    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(session: Session) -> Iterator[Session]:
    """
    Scoped unit of work.

    The outermost block commits on success and rolls back on any error.
    Nested blocks join the enclosing unit of work, so a service that calls
    another service still commits exactly once. Storage failures surface as
    InternalError; identity errors pass through unchanged.
    """
    depth = session.info.get("tx_depth", 0)
    session.info["tx_depth"] = depth + 1
    try:
        yield session
        if depth == 0:
            session.commit()
    except IdentityError:
        if depth == 0:
            session.rollback()
        raise
    except SQLAlchemyError as e:
        if depth == 0:
            session.rollback()
        logger.error(f"Storage failure, transaction rolled back: {e}")
        raise InternalError(f"Storage failure: {e.__class__.__name__}") from e
    except Exception:
        if depth == 0:
            session.rollback()
        raise
    finally:
        session.info["tx_depth"] = depth
