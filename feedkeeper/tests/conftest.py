"""
Pytest fixtures for feedkeeper tests.
"""

import os
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from feedkeeper.config import config, state
from feedkeeper.database import Database
from feedkeeper.server import app, build_scheduler

from .fakes import FEED_URL, RSS_FEED, FakeFeedParser, make_article

STATE_ATTRS = ("db", "feed_parser", "refresher", "rule_engine", "events", "scheduler")


@pytest.fixture
def temp_db_path():
    """Create a temporary database file path."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        yield Path(f.name)
    # Cleanup
    if os.path.exists(f.name):
        os.unlink(f.name)


@pytest.fixture
def test_db(temp_db_path):
    """Create a test database instance."""
    db = Database(temp_db_path)
    yield db


@pytest.fixture
def fake_parser():
    return FakeFeedParser({FEED_URL: RSS_FEED})


@pytest.fixture
def app_state(test_db, fake_parser):
    """Install a test database and fake parser on the shared state."""
    original = {attr: getattr(state, attr) for attr in STATE_ATTRS}
    original_auth_key = config.AUTH_API_KEY
    config.AUTH_API_KEY = ""

    state.db = test_db
    state.feed_parser = fake_parser
    state.scheduler = build_scheduler(test_db, fake_parser)

    yield state

    for attr, value in original.items():
        setattr(state, attr, value)
    config.AUTH_API_KEY = original_auth_key


@pytest.fixture
def client(app_state):
    """Create a test client with isolated database and fake transport."""
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client


@pytest.fixture
def client_with_data(app_state, test_db):
    """Test client with a feed, two articles and a folder pre-populated."""
    folder, _ = test_db.get_or_create_folder("Tech")
    feed_id = test_db.add_feed(FEED_URL, "Example Feed", folder_id=folder.id)
    article_ids = test_db.insert_articles(feed_id, [
        make_article("a-1", "Python 3.13 released", summary="New interpreter features"),
        make_article("a-2", "Gardening tips", summary="Tomatoes in spring"),
    ])

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client, {
            "feed_id": feed_id,
            "folder_id": folder.id,
            "article_ids": article_ids,
        }
