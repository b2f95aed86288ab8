"""
Pytest configuration and shared fixtures for backend tests.
"""
import logging
import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

# Set test config directory before importing modules
os.environ["CONFIG_DIR"] = "/tmp/kptv_test_config"

# Ensure test config directory exists
Path("/tmp/kptv_test_config").mkdir(parents=True, exist_ok=True)

from config import SyncSettings
from database import Base
from models import StreamProvider, Stream, StreamFilter, StreamTemp, StreamMissing  # noqa: F401


@pytest.fixture(scope="function")
def test_engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    # Create all tables
    Base.metadata.create_all(bind=engine)
    yield engine
    # Cleanup
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_session(test_engine):
    """Create a test database session."""
    # expire_on_commit=False allows accessing object attributes after commit,
    # tests inspect returned rows after the engines commit
    TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine, expire_on_commit=False)
    session = TestSessionLocal()
    yield session
    session.close()


@pytest.fixture
def settings():
    """Settings with no waits between retries or requests."""
    return SyncSettings(
        database_url="sqlite:///:memory:",
        retry_delay=0,
        request_delay=0,
        staging_batch_size=2,
        insert_batch_size=2,
        fixup_batch_size=2,
        progress_interval=2,
    )


@pytest.fixture(autouse=True)
def _drop_cli_log_handlers():
    """configure_logging() binds to the stream captured for one test; unbind it afterwards."""
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_kptv_handler", False):
            root.removeHandler(handler)
