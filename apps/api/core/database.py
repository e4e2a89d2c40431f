"""
Database connection management.

Engines and session factories are built explicitly by core.context; nothing
connects at import time.
"""
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
import logging

logger = logging.getLogger(__name__)

Base = declarative_base()


def build_engine(database_url: str, pool_size: int = 10, max_overflow: int = 5, echo: bool = False) -> Engine:
    """Create an engine with pooling suited to the URL's backend."""
    if database_url.startswith("sqlite"):
        # In-memory SQLite must share a single connection across sessions
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=echo,
        )
    return create_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,  # Verify connections before using
        echo=echo,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
        expire_on_commit=False,  # Prevent lazy loading issues
    )


def check_db_connection(engine: Engine) -> bool:
    """Check if database connection is healthy."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


def init_schema(engine: Engine) -> None:
    """Create any missing tables. Existing tables are left untouched."""
    import models  # noqa: F401  registers mappers on Base

    Base.metadata.create_all(bind=engine)
