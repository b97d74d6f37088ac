"""
Pytest configuration and shared fixtures.

Both stores point at throwaway SQLite files. The environment is set here,
before any pledge_tracker import, and the settings cache is cleared so
the test values are used.
"""

import os
import tempfile
from datetime import datetime
from decimal import Decimal

import pytest

_db_dir = tempfile.mkdtemp(prefix="pledge-tracker-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_db_dir}/primary.db"
os.environ["SMS_DATABASE_URL"] = f"sqlite:///{_db_dir}/sms.db"
os.environ["POLL_INTERVAL_SECONDS"] = "3600"
os.environ["PADDLE_TIERS"] = "[100000, 50000, 25000, 10000, 5000, 2500]"
os.environ["GOAL_AMOUNT_CENTS"] = "100000000"
os.environ["DISPLAY_TIMEZONE"] = "America/New_York"
os.environ.setdefault("LOG_LEVEL", "WARNING")

from pledge_tracker.config import get_settings  # noqa: E402
get_settings.cache_clear()

from fastapi.testclient import TestClient  # noqa: E402

from pledge_tracker.main import app  # noqa: E402
from pledge_tracker.storage import PrimaryBase, SmsBase  # noqa: E402


class RecordingBroadcaster:
    """Stands in for the WebSocket fan-out and remembers every publish."""

    def __init__(self):
        self.messages = []

    async def publish(self, topic: str, payload: dict) -> int:
        self.messages.append((topic, payload))
        return 1


@pytest.fixture(scope="function")
def client():
    """Test client with freshly created and seeded stores for each test."""
    with TestClient(app) as test_client:
        yield test_client
        # Cleanup - drop all tables after test
        PrimaryBase.metadata.drop_all(bind=app.state.tier_store.engine)
        SmsBase.metadata.drop_all(bind=app.state.text_store.engine)


@pytest.fixture
def broadcasts(client) -> RecordingBroadcaster:
    recorder = RecordingBroadcaster()
    client.app.state.broadcaster = recorder
    return recorder


@pytest.fixture
def add_text_pledge(client):
    """Insert a text pledge the way the SMS provider would."""
    from pledge_tracker.models import TextPledge

    def _add(amount, phone_number="+15555550100", message_text="PLEDGE", created_at=None):
        pledge = TextPledge(
            pledge_amount=Decimal(str(amount)),
            phone_number=phone_number,
            message_text=message_text,
        )
        if created_at is not None:
            pledge.created_at = created_at
        with client.app.state.text_store.SessionLocal() as db:
            db.add(pledge)
            db.commit()

    return _add


@pytest.fixture
def set_tier_count(client):
    """Set a tier's count through the API, asserting success."""

    def _set(tier_cents: int, count: int):
        response = client.put(f"/api/paddle-pledges/{tier_cents}", json={"count": count})
        assert response.status_code == 200
        return response.json()

    return _set


@pytest.fixture
def fixed_time() -> datetime:
    return datetime(2025, 1, 15, 18, 30, 0)
