# tests/conftest.py

import pytest
from unittest.mock import Mock

from scorecard import database
from scorecard.models import Assessment, ScoreBreakdown
from scorecard.rate_limiter import InMemoryRateLimiter, reset_rate_limiter
from scorecard.retry_queue import RetryQueueService
from scorecard.sync import HubSpotSyncService


class FakeClock:
    """Manually advanced time source (seconds since the epoch)."""

    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


# ============================================================================
# ENVIRONMENT
# ============================================================================

@pytest.fixture(autouse=True)
def temp_db(tmp_path, monkeypatch):
    """Fresh SQLite file per test; the shared connection is reopened against it."""
    for var in ("HUBSPOT_MAX_REQUESTS", "HUBSPOT_RATE_WINDOW", "RATE_LIMIT_BACKEND", "WEBHOOK_SECRET"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("HUBSPOT_ACCESS_TOKEN", "test-token")

    database.close_db()
    monkeypatch.setattr(database, "DB_PATH", str(tmp_path / "scorecard-test.db"))
    reset_rate_limiter()
    yield tmp_path / "scorecard-test.db"
    database.close_db()
    reset_rate_limiter()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return InMemoryRateLimiter(max_requests=100, window_seconds=10, identifier="hubspot", clock=clock)


# ============================================================================
# HUBSPOT
# ============================================================================

@pytest.fixture
def mock_client():
    """Stand-in for scorecard.hubspot_client with successful responses."""
    client = Mock()
    client.create_or_update_contact = Mock(return_value={"id": "101", "created": True})
    client.create_deal = Mock(return_value={"id": "201"})
    client.get_account_details = Mock(return_value={"portalId": 1234})
    return client


@pytest.fixture
def sync_service(mock_client, limiter):
    return HubSpotSyncService(client=mock_client, rate_limiter=limiter)


@pytest.fixture
def retry_queue(sync_service):
    return RetryQueueService(sync_service)


# ============================================================================
# DATA
# ============================================================================

@pytest.fixture
def strong_responses():
    return {"q1_value": "A", "q2_customer": "A", "q3_risk": "B", "q4_governance": "A"}


def make_assessment(**overrides):
    data = {
        "session_id": "session-1",
        "email": "jane@example.com",
        "total_score": 75,
        "score_category": "builder",
        "score_breakdown": ScoreBreakdown(value_assurance=80, customer_safe=75, risk_compliance=70, governance=72),
    }
    data.update(overrides)
    return Assessment(**data)


@pytest.fixture
def stored_assessment():
    """An assessment row the queue can reference."""
    return database.insert_assessment(make_assessment())
