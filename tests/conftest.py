"""
Pytest configuration and shared fixtures for LunarScry tests.

This module provides shared fixtures and test configuration including:
- A controllable clock for voting-window deadlines
- Orchestrator instances with a small quorum and a funded reward pool
- Flask app setup backed by in-memory storage and a deterministic scorer
- Metrics and lock manager reset between tests
"""

import os
import sys

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

# Set up test environment before any imports
os.environ["LUNARSCRY_API_KEY"] = "test-api-key-12345"
os.environ["LUNARSCRY_REQUIRE_AUTH"] = "false"
os.environ["STORAGE_BACKEND"] = "memory"
os.environ["LUNARSCRY_REQUIRE_SIGNATURES"] = "false"
os.environ.pop("LUNARSCRY_ADMIN_PUBLIC_KEY", None)
os.environ.pop("LUNARSCRY_SCORER_PUBLIC_KEY", None)
os.environ.pop("ANTHROPIC_API_KEY", None)

START_TIME = 1_700_000_000
DAY = 86400


class FakeClock:
    """Manually advanced unix clock."""

    def __init__(self, start: int = START_TIME):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset process-wide metrics and lock manager between tests."""
    from monitoring import metrics
    from scaling import reset_lock_manager

    metrics.reset()
    reset_lock_manager()
    yield
    reset_lock_manager()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    """Two voters and 1000 stake make quorum; one-day window."""
    from moderation_config import ModerationConfig

    return ModerationConfig(
        ai_score_threshold=50,
        voting_window_seconds=DAY,
        quorum_min_voters=2,
        quorum_min_stake=1000,
        reward_per_content=100,
        vote_cooldown_seconds=10,
    )


@pytest.fixture
def orchestrator(config, clock):
    """Fresh orchestrator with a funded reward pool."""
    from moderation import ModerationOrchestrator
    from scaling import LocalLockManager

    return ModerationOrchestrator(
        config=config,
        admin="admin",
        clock=clock,
        lock_manager=LocalLockManager(),
        initial_reward_pool=1000,
    )


@pytest.fixture
def voting_content(orchestrator):
    """A text item scored above threshold, so its voting window is open."""
    record = orchestrator.submit("a" * 64, "text", "submitter")
    return orchestrator.apply_score(record.content_id, 80, caller="ai-score-gate")


@pytest.fixture
def stakers(orchestrator):
    """alice, bob and carol with 1000 staked each."""
    for owner in ("alice", "bob", "carol"):
        orchestrator.stake(owner, 1000)
    return ("alice", "bob", "carol")


@pytest.fixture
def scorer():
    from score_gate import StaticScorer

    return StaticScorer(default_score=80)


@pytest.fixture
def flask_app(orchestrator, scorer):
    """Create Flask test app around the test orchestrator."""
    from api import create_app
    from storage import MemoryStorage

    app = create_app(orchestrator=orchestrator, storage_backend=MemoryStorage(), scorer=scorer)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def flask_client(flask_app):
    """Create Flask test client."""
    return flask_app.test_client()


@pytest.fixture
def auth_headers():
    """API authentication headers."""
    return {"X-API-Key": "test-api-key-12345", "Content-Type": "application/json"}
