"""
Integration test fixtures and configuration.

This module provides pytest fixtures for integration testing with a real PostGIS database.
The fixtures handle database lifecycle management, schema creation, and cleanup.

Key fixtures:
- test_db_engine: SQLAlchemy engine connected to test database
- test_db: Database with schema created and cleaned up after tests
- test_db_writer: DatabaseWriter instance for test operations
- seeded_notes: notes with and without comments, for gap checks

Running integration tests:
    pytest tests/integration -v -m integration
"""

import os
import time

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from scripts.database.db_writer import DatabaseWriter
from utils.logging import setup_logging


def wait_for_db(engine: Engine, max_retries: int = 30, retry_delay: float = 1.0) -> None:
    """
    Wait for database to be ready by attempting connections.

    Raises:
        RuntimeError: If database doesn't become ready within max_retries
    """
    for attempt in range(max_retries):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            print(f"✅ Database ready after {attempt + 1} attempt(s)")
            return
        except Exception as e:
            if attempt < max_retries - 1:
                print(f"⏳ Waiting for database (attempt {attempt + 1}/{max_retries})...")
                time.sleep(retry_delay)
            else:
                raise RuntimeError(
                    f"Database not ready after {max_retries} attempts: {e}"
                ) from e


@pytest.fixture(scope="session")
def test_db_engine() -> Engine:
    """
    Create a SQLAlchemy engine for the test database.

    Environment Variables:
        POSTGRES_TEST_HOST: Test database host (default: localhost)
        POSTGRES_TEST_PORT: Test database port (default: 5434)
        POSTGRES_TEST_DB: Test database name (default: osm_notes_test)
        POSTGRES_TEST_USER: Test database user (default: postgres)
        POSTGRES_TEST_PASSWORD: Test database password (default: test_password)
    """
    host = os.getenv("POSTGRES_TEST_HOST", "localhost")
    port = os.getenv("POSTGRES_TEST_PORT", "5434")
    db = os.getenv("POSTGRES_TEST_DB", "osm_notes_test")
    user = os.getenv("POSTGRES_TEST_USER", "postgres")
    password = os.getenv("POSTGRES_TEST_PASSWORD", "test_password")

    engine = create_engine(f"postgresql+psycopg2://{user}:{password}@{host}:{port}/{db}")
    try:
        wait_for_db(engine, max_retries=int(os.getenv("POSTGRES_TEST_WAIT", "30")))
    except RuntimeError as e:
        pytest.skip(f"Test database unavailable: {e}")

    with engine.begin() as conn:
        conn.execute(text("CREATE EXTENSION IF NOT EXISTS postgis"))

    yield engine

    engine.dispose()


@pytest.fixture(scope="function")
def test_db(test_db_engine: Engine) -> Engine:
    """
    Provide a clean database with schema for each test.

    All tables are created from sql/schema before the test and dropped after it.
    """
    logger = setup_logging(logger_name="test_db", log_level="INFO")
    writer = DatabaseWriter(test_db_engine, logger)

    logger.info("📦 Creating test database schema...")
    writer.drop_all_tables()
    writer._create_all_tables()
    logger.info("✅ Test database schema created")

    yield test_db_engine

    logger.info("🧹 Cleaning up test database...")
    writer.drop_all_tables()
    logger.info("✅ Test database cleaned")


@pytest.fixture
def test_db_writer(test_db: Engine) -> DatabaseWriter:
    """Provide a DatabaseWriter connected to the clean test database."""
    logger = setup_logging(logger_name="test_writer", log_level="DEBUG")
    return DatabaseWriter(test_db, logger)


@pytest.fixture
def seeded_notes(test_db: Engine) -> dict:
    """
    Insert three recent notes; note 3 has no comments and note 2's comment
    has no text.

    Returns:
        dict: note ids by situation
    """
    with test_db.begin() as conn:
        conn.execute(
            text(
                """
                INSERT INTO notes (note_id, latitude, longitude, created_at, status) VALUES
                    (1, 40.4, -3.7, NOW() - INTERVAL '2 days', 'open'),
                    (2, 40.5, -3.6, NOW() - INTERVAL '1 day', 'open'),
                    (3, 40.6, -3.5, NOW(), 'open')
                """
            )
        )
        conn.execute(
            text(
                """
                INSERT INTO note_comments (note_id, sequence_action, event, created_at) VALUES
                    (1, 1, 'opened', NOW() - INTERVAL '2 days'),
                    (2, 1, 'opened', NOW() - INTERVAL '1 day')
                """
            )
        )
        conn.execute(
            text(
                "INSERT INTO note_comments_text (note_id, sequence_action, body) "
                "VALUES (1, 1, 'Missing bridge')"
            )
        )
    return {"complete": 1, "without_text": 2, "without_comments": 3}
