"""
Shared test fixtures and configuration for the OSM Notes Ingestion test suite.

This file contains pytest fixtures that can be used across all test modules.
Fixtures defined here are automatically available to all test files.
"""

import logging
import os
from unittest.mock import MagicMock, Mock

import pytest
from dotenv import load_dotenv

# Load test environment variables (if any)
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


@pytest.fixture(autouse=True)
def setup_test_environment():
    """
    Set up test environment variables.

    This fixture automatically runs before each test to ensure the test
    environment is properly configured.
    """
    if not os.getenv("POSTGRES_PASSWORD"):
        os.environ["POSTGRES_PASSWORD"] = "test_password"

    yield

    if os.getenv("POSTGRES_PASSWORD") == "test_password":
        del os.environ["POSTGRES_PASSWORD"]


@pytest.fixture
def queue_dir(tmp_path):
    """Provide an empty queue directory for coordination tests."""
    path = tmp_path / "download_queue"
    path.mkdir()
    return str(path)


@pytest.fixture
def work_dir(tmp_path):
    """Provide an empty work directory for batch tests."""
    path = tmp_path / "work"
    path.mkdir()
    return str(path)


@pytest.fixture
def mock_logger():
    """Provide a mock logger so tests can assert on log calls."""
    return Mock(spec=logging.Logger)


@pytest.fixture
def no_sleep():
    """Provide a sleep replacement that records requested delays."""
    delays = []
    return delays.append, delays


@pytest.fixture
def mock_db_engine():
    """
    Provide a mock SQLAlchemy engine.

    Returns a Mock engine with both ``connect()`` and ``begin()`` context
    managers configured to yield the same connection.
    """
    mock_engine = MagicMock()
    mock_connection = MagicMock()

    mock_engine.connect.return_value.__enter__.return_value = mock_connection
    mock_engine.connect.return_value.__exit__.return_value = None
    mock_engine.begin.return_value.__enter__.return_value = mock_connection
    mock_engine.begin.return_value.__exit__.return_value = None

    return mock_engine


@pytest.fixture
def overpass_boundary_payload():
    """Provide a minimal Overpass answer for relation 1703814."""
    return {
        "version": 0.6,
        "generator": "Overpass API",
        "elements": [
            {"type": "node", "id": 1, "lat": 31.5, "lon": 34.4},
            {"type": "way", "id": 10, "nodes": [1, 1]},
            {
                "type": "relation",
                "id": 1703814,
                "members": [{"type": "way", "ref": 10, "role": "outer"}],
                "tags": {
                    "boundary": "administrative",
                    "name": "Gaza",
                    "name:en": "Gaza Strip",
                    "name:es": "Franja de Gaza",
                },
            },
        ],
    }


@pytest.fixture
def boundary_feature_collection():
    """Provide a converted boundary as GeoJSON."""
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "geometry": {
                    "type": "Polygon",
                    "coordinates": [
                        [[34.2, 31.2], [34.6, 31.2], [34.6, 31.6], [34.2, 31.6], [34.2, 31.2]]
                    ],
                },
                "properties": {
                    "id": "relation/1703814",
                    "name": "Gaza",
                    "name:en": "Gaza Strip",
                    "name:es": "Franja de Gaza",
                },
            }
        ],
    }


@pytest.fixture
def osm_note_feature():
    """Provide a note as returned by the OSM API ``/notes/{id}.json``."""
    return {
        "type": "Feature",
        "geometry": {"type": "Point", "coordinates": [-3.7, 40.4]},
        "properties": {
            "id": 4242,
            "status": "open",
            "comments": [
                {
                    "date": "2025-01-10 08:00:00 UTC",
                    "uid": 7,
                    "user": "mapper",
                    "action": "opened",
                    "text": "Missing bridge",
                },
                {
                    "date": "2025-01-11 09:30:00 UTC",
                    "action": "commented",
                    "text": "",
                },
            ],
        },
    }
