"""
Database initialization and connection management utilities.

This module provides functions for initializing the ledger/target database,
managing connections, and creating sessions. A commit unit opened with
`transaction()` is shared by every `get_session()` call made inside it, so
ledger and target writes for one entity land together or not at all.
"""

from collections.abc import Generator
from contextlib import contextmanager
from contextvars import ContextVar

from sqlalchemy import Engine, create_engine, event, pool, text
from sqlalchemy.orm import Session, sessionmaker

from history_migration.client.exceptions import ConfigurationError, StateError
from history_migration.migration.models import Base
from history_migration.utils.logging import get_logger

logger = get_logger(__name__)

# Global engine and session factory (initialized on first use)
_engine: Engine | None = None
_SessionFactory: sessionmaker | None = None
_database_url: str | None = None

# Session of the commit unit open in the current context, if any
_active_session: ContextVar[Session | None] = ContextVar("active_session", default=None)


def _enable_sqlite_foreign_keys(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_database_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    pool_recycle: int = 3600,
) -> Engine:
    """
    Create a SQLAlchemy engine with appropriate settings.

    Args:
        database_url: Database connection URL (sqlite:/// or postgresql://)
        echo: Whether to log SQL statements
        pool_size: Number of connections to maintain in the pool
        max_overflow: Maximum number of connections that can be created beyond pool_size
        pool_timeout: Timeout for getting a connection from the pool (seconds)
        pool_recycle: Recycle connections after this many seconds

    Returns:
        SQLAlchemy Engine instance

    Raises:
        ConfigurationError: If database URL is invalid
    """
    if not database_url:
        raise ConfigurationError("Database URL cannot be empty")

    try:
        is_sqlite = database_url.startswith("sqlite")

        if is_sqlite:
            # NullPool avoids sharing SQLite connections across threads
            engine = create_engine(
                database_url,
                echo=echo,
                poolclass=pool.NullPool,
                connect_args={"check_same_thread": False},
            )
            event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        else:
            engine = create_engine(
                database_url,
                echo=echo,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_timeout=pool_timeout,
                pool_pre_ping=True,
                pool_recycle=pool_recycle,
            )

        logger.info(
            "Database engine created",
            database_type=engine.dialect.name,
            pool_size=pool_size if not is_sqlite else "NullPool",
        )

        return engine

    except Exception as e:
        logger.error("Failed to create database engine", error=str(e), database_url=database_url)
        raise ConfigurationError(f"Failed to create database engine: {e}") from e


def init_database(
    database_url: str,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    pool_recycle: int = 3600,
) -> Engine:
    """
    Initialize the migration database.

    Creates all tables if they don't exist. This is idempotent and safe
    to call multiple times.

    Args:
        database_url: Database connection URL
        echo: Whether to log SQL statements
        pool_size: Number of connections to maintain in the pool
        max_overflow: Maximum number of connections beyond pool_size
        pool_timeout: Timeout for getting a connection from the pool (seconds)
        pool_recycle: Recycle connections after this many seconds

    Returns:
        SQLAlchemy Engine instance

    Raises:
        ConfigurationError: If database initialization fails
    """
    global _engine, _SessionFactory, _database_url

    try:
        engine = create_database_engine(
            database_url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
        )
        Base.metadata.create_all(engine)

        if _engine is not None and _engine is not engine:
            _engine.dispose()

        _engine = engine
        _SessionFactory = sessionmaker(bind=engine, expire_on_commit=False)
        _database_url = database_url

        logger.info(
            "Database initialized successfully",
            database_url=database_url,
            tables=len(Base.metadata.tables),
        )

        return engine

    except ConfigurationError:
        raise
    except Exception as e:
        logger.error("Failed to initialize database", error=str(e), database_url=database_url)
        raise ConfigurationError(f"Failed to initialize database: {e}") from e


def get_engine(database_url: str | None = None, echo: bool = False) -> Engine:
    """
    Get the global database engine.

    Initializes the engine when it hasn't been created yet or when a
    different database URL is requested.

    Args:
        database_url: Database connection URL (optional if already initialized)
        echo: Whether to log SQL statements

    Returns:
        SQLAlchemy Engine instance

    Raises:
        ConfigurationError: If engine is not initialized and no URL provided
    """
    if _engine is None or (database_url is not None and database_url != _database_url):
        if database_url is None:
            raise ConfigurationError(
                "Database engine not initialized. Call init_database() first or provide database_url."
            )
        init_database(database_url, echo=echo)

    assert _engine is not None, "Engine should be initialized by init_database()"
    return _engine


def get_session_factory() -> sessionmaker:
    """
    Get the global session factory.

    Raises:
        ConfigurationError: If session factory is not initialized
    """
    if _SessionFactory is None:
        raise ConfigurationError("Session factory not initialized. Call init_database() first.")

    return _SessionFactory


def in_transaction() -> bool:
    """Return True when a commit unit is open in the current context."""
    return _active_session.get() is not None


@contextmanager
def get_session(database_url: str | None = None) -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Inside an open `transaction()` the unit's session is yielded and nothing
    is committed here; the unit decides. Otherwise a fresh session is
    committed on success, rolled back on error, and always closed.

    Args:
        database_url: Database connection URL (optional if already initialized)

    Yields:
        SQLAlchemy Session instance

    Raises:
        StateError: If database operation fails
    """
    active = _active_session.get()
    if active is not None:
        yield active
        return

    get_engine(database_url)
    session = get_session_factory()()

    try:
        yield session
        session.commit()
        logger.debug("Database session committed successfully")

    except Exception as e:
        session.rollback()
        logger.error("Database session rolled back due to error", error=str(e))
        raise StateError(f"Database operation failed: {e}") from e

    finally:
        session.close()


@contextmanager
def transaction(database_url: str | None = None) -> Generator[Session, None, None]:
    """
    Open one atomic commit unit.

    Every `get_session()` call inside the block joins this unit. Exceptions
    roll the unit back and propagate unchanged; a nested `transaction()`
    joins the outer one.

    Args:
        database_url: Database connection URL (optional if already initialized)

    Yields:
        SQLAlchemy Session instance shared by the unit

    Raises:
        StateError: If the commit itself fails
    """
    active = _active_session.get()
    if active is not None:
        yield active
        return

    get_engine(database_url)
    session = get_session_factory()()
    token = _active_session.set(session)

    try:
        try:
            yield session
        except BaseException:
            session.rollback()
            logger.debug("Commit unit rolled back")
            raise

        try:
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error("Commit unit failed to commit", error=str(e))
            raise StateError(f"Failed to commit transaction: {e}") from e

    finally:
        _active_session.reset(token)
        session.close()


def validate_database_connection(database_url: str) -> bool:
    """
    Validate that a database connection can be established.

    Args:
        database_url: Database connection URL

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = create_database_engine(database_url)
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        engine.dispose()
        logger.info("Database connection validated successfully", database_url=database_url)
        return True

    except Exception as e:
        logger.error(
            "Database connection validation failed", error=str(e), database_url=database_url
        )
        return False
