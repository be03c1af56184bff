# ruff: noqa: INP001
"""Pytest configuration shared across backend tests."""

import os
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Tests should fail fast if auth-mode wiring breaks, but still need deterministic
# defaults during import-time settings initialization, regardless of shell env.
os.environ["AUTH_MODE"] = "local"
os.environ["LOCAL_AUTH_TOKEN"] = "test-local-token-0123456789-0123456789-0123456789x"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DB_AUTO_MIGRATE"] = "false"
os.environ["CHANGE_FEED_BACKEND"] = "memory"

from taskshare.services.change_feed import InMemoryChangeFeed, set_change_feed  # noqa: E402
from taskshare.services.workspace import visible_task_cache  # noqa: E402


@pytest.fixture(autouse=True)
def change_feed() -> InMemoryChangeFeed:
    """Give every test its own process-local feed and an empty visible-set cache."""
    feed = InMemoryChangeFeed(queue_size=64)
    set_change_feed(feed)
    visible_task_cache.invalidate_all()
    yield feed
    set_change_feed(None)
    visible_task_cache.invalidate_all()
