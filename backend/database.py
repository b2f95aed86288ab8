"""
Database setup for the sync pipeline.
Uses SQLAlchemy against the KPTV schema (MySQL in production, SQLite for tests).
"""
import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

# SQLAlchemy Base for model declarations
Base = declarative_base()

# Engine and session factory (initialized on startup)
_engine = None
_SessionLocal = None


def _engine_options(database_url: str) -> dict:
    """SQLite needs a shared connection; server databases get a recycling pool."""
    if database_url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url:
            options["poolclass"] = StaticPool
        return options
    return {"pool_pre_ping": True, "pool_recycle": 3600}


def init_db(database_url: str, create_tables: bool = True) -> None:
    """Initialize the engine and session factory, creating tables if they don't exist."""
    global _engine, _SessionLocal

    try:
        logger.debug(f"Initializing database at {database_url.split('@')[-1]}")

        _engine = create_engine(database_url, echo=False, **_engine_options(database_url))
        _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)

        # Import models to register them with Base
        from models import StreamProvider, Stream, StreamFilter, StreamTemp, StreamMissing  # noqa: F401

        if create_tables:
            # checkfirst: existing production tables are left untouched
            Base.metadata.create_all(bind=_engine)
            logger.debug("Database tables created/verified")
    except Exception as e:
        logger.exception(f"Failed to initialize database: {e}")
        raise


def get_session() -> Session:
    """Get a new database session."""
    if _SessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _SessionLocal()


def dispose_db() -> None:
    """Dispose the engine and reset module state."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None
