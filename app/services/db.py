"""
SQLAlchemy session and engine setup for the packet database
Connection pooling and pre-ping for PostgreSQL, plain engine for SQLite (local/dev)
"""
import logging
from contextlib import contextmanager
from typing import Generator
from sqlalchemy import create_engine, event, pool, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.exc import DisconnectionError, OperationalError
from dotenv import load_dotenv

from app.config import settings

# Load .env file
load_dotenv()

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    """
    Create an engine for the given URL.

    SQLite does not accept the pool sizing arguments, so it gets a bare engine
    with cross-thread access enabled (the packet worker runs in an executor).
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=settings.db_echo,
            future=True,
        )

    logger.info(
        f"Database connection pool configuration: "
        f"pool_size={settings.db_pool_size}, "
        f"max_overflow={settings.db_max_overflow}, "
        f"total_max={settings.db_pool_size + settings.db_max_overflow} connections"
    )
    return create_engine(
        database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
        pool_pre_ping=settings.db_pool_pre_ping,
        echo=settings.db_echo,
        poolclass=pool.QueuePool,
        future=True,
    )


engine = build_engine(settings.database_url)

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False,  # Prevent lazy loading issues after commit
)


@event.listens_for(Engine, "invalidate")
def receive_invalidate(dbapi_conn, connection_record, exception):
    """
    Handle connection invalidation.

    With pool_pre_ping=True, SQLAlchemy catches dead connections before use,
    so these are mostly informational.
    """
    error_msg = str(exception).lower()
    if "server closed the connection" in error_msg or "connection unexpectedly" in error_msg:
        logger.debug(
            f"Connection closed by database server (expected): {type(exception).__name__}"
        )
    else:
        logger.warning(
            f"Connection invalidated: {exception}",
            exc_info=exception
        )


def init_db(bind: Engine = None) -> None:
    """Create packet tables if they do not exist."""
    from app.models.packet_db import Base

    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def get_db_session(session_factory=None) -> Generator[Session, None, None]:
    """
    Context manager for database sessions (for use outside FastAPI routes).

    Commits on success, rolls back on error, always closes.

    Usage:
        with get_db_session() as db:
            items = db.query(Item).all()
    """
    factory = session_factory or SessionLocal
    db: Session = None
    try:
        db = factory()
        yield db
        db.commit()
    except (OperationalError, DisconnectionError) as e:
        if db:
            try:
                db.rollback()
            except Exception:
                # Ignore rollback errors on dead connections
                pass
        error_msg = str(e).lower()
        if "server closed" in error_msg or "connection unexpectedly" in error_msg:
            logger.warning(
                f"Database connection error (transient): {type(e).__name__}. "
                "Connection pool will replace dead connection."
            )
        else:
            logger.error(f"Database connection error: {e}", exc_info=True)
        raise
    except Exception as e:
        if db:
            try:
                db.rollback()
            except Exception as rollback_error:
                logger.warning(
                    f"Failed to rollback session: {rollback_error}. "
                    "Connection may be dead."
                )
        logger.error(f"Database session error: {e}", exc_info=True)
        raise
    finally:
        if db:
            try:
                db.close()
            except Exception as close_error:
                logger.debug(f"Error closing session (non-critical): {close_error}")


def test_connection() -> bool:
    """
    Test database connection health.

    Returns:
        True if connection is healthy, False otherwise
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        return True
    except Exception as e:
        logger.error(f"Database connection test: FAILED - {e}", exc_info=True)
        return False


def get_pool_status() -> dict:
    """Get connection pool status for monitoring."""
    pool_obj = engine.pool
    return {
        "pool_size": getattr(pool_obj, "size", lambda: None)(),
        "checked_in": getattr(pool_obj, "checkedin", lambda: 0)(),
        "checked_out": getattr(pool_obj, "checkedout", lambda: 0)(),
        "overflow": getattr(pool_obj, "overflow", lambda: 0)(),
    }


def close_all_connections():
    """
    Close all connections in the pool.
    Use this during application shutdown.
    """
    logger.info("Closing all database connections")
    engine.dispose()


def health_check() -> dict:
    """
    Database health check.

    Returns:
        Dict with health status and pool information
    """
    try:
        is_healthy = test_connection()
        return {
            "status": "healthy" if is_healthy else "unhealthy",
            "connection_test": is_healthy,
            "pool": get_pool_status(),
        }
    except Exception as e:
        logger.error(f"Health check failed: {e}", exc_info=True)
        return {
            "status": "error",
            "error": str(e),
        }
