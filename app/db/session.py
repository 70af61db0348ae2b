from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager

from loguru import logger
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.config.settings import settings

# Lazy initialization so importing the app never opens a database connection
_engine: Engine | None = None
_SessionLocal: sessionmaker[Session] | None = None


def enable_sqlite_savepoints(engine: Engine) -> None:
    """Let SQLite honour SAVEPOINT / begin_nested().

    pysqlite starts transactions lazily and on its own terms, which breaks
    nested transactions. Take over BEGIN emission so the unique-constraint
    fallback in the activity store behaves the same as on PostgreSQL.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def _get_engine() -> Engine:
    """Get or create the database engine."""
    global _engine
    if _engine is None:
        url = settings.database_url
        is_sqlite = url.lower().startswith("sqlite")
        connect_args: dict = {"check_same_thread": False} if is_sqlite else {"connect_timeout": 10, "application_name": "ridesync"}

        _engine = create_engine(
            url,
            connect_args=connect_args,
            echo=False,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
        if is_sqlite:
            enable_sqlite_savepoints(_engine)
            logger.warning("Using SQLite database (local development only)")
        logger.info("Database engine initialized")
    return _engine


def get_engine() -> Engine:
    """Public accessor for the lazily created engine."""
    return _get_engine()


def _get_session_local() -> sessionmaker[Session]:
    """Get or create the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_get_engine(), expire_on_commit=False)
        logger.info("Database session factory initialized")
    return _SessionLocal


def init_db() -> None:
    """Create all tables that do not exist yet."""
    from app.db.models import Base

    Base.metadata.create_all(bind=_get_engine())
    logger.info("Database tables ensured")


def get_db() -> Generator[Session, None, None]:
    """Database session for FastAPI dependencies.

    Routes commit explicitly; the session is closed once the response is sent.

    Yields:
        Session: SQLAlchemy database session
    """
    session = _get_session_local()()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Session context manager that commits on success and rolls back on error.

    For FastAPI route dependencies, use get_db() instead.
    """
    session = _get_session_local()()
    try:
        yield session
        # Savepoints flush eagerly, so pending work is not always visible in session.new
        if session.in_transaction():
            session.commit()
    except Exception as e:
        logger.error(f"Database session error, rolling back: {type(e).__name__}: {e}")
        session.rollback()
        raise
    finally:
        session.close()
