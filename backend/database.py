"""
Database configuration and session management
"""

import structlog
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from contextlib import contextmanager
from config import settings

logger = structlog.get_logger()


def create_db_engine(url: str):
    """Create a SQLAlchemy engine for the given URL"""
    return create_engine(
        url,
        connect_args={"check_same_thread": False} if "sqlite" in url else {},
        echo=settings.DEBUG,
        pool_pre_ping=True  # Verify connections before using
    )


# Create SQLAlchemy engine
engine = create_db_engine(settings.DATABASE_URL)

# Create SessionLocal class
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Create Base class for models
Base = declarative_base()


def init_db(bind=None):
    """Initialize database - create all tables"""
    # Register models on Base.metadata
    import models  # noqa: F401

    target = bind or engine
    try:
        Base.metadata.create_all(bind=target)
        logger.info("database_initialized", url=str(target.url))
    except Exception as e:
        logger.error("database_init_failed", error=str(e))
        raise


def get_db() -> Session:
    """
    Get database session (dependency injection for FastAPI)

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context():
    """
    Get database session as context manager

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
