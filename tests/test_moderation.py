"""
Tests for the Moderation Orchestrator (src/moderation.py)

Tests cover:
- End-to-end lifecycles: AI approval, community approval, expiry
- Scoring authority and validation
- Window deadlines and permissionless finalization races
- Emergency pause, admin management and daily limits
- Concurrency of vote casting on one content item
- Settlement failure and resumption
- Snapshot persistence
"""

import json
import threading

import pytest

from moderation import ModerationOrchestrator
from moderation_config import MAX_EMERGENCY_ADMINS, ModerationConfig
from moderation_exceptions import (
    AlreadyFinalizedError,
    ContentNotFoundError,
    DuplicateContentError,
    InvalidContentError,
    InvalidScoreError,
    InvalidStateError,
    ProtocolPausedError,
    RateLimitExceededError,
    SettlementError,
    UnauthorizedError,
    VotingClosedError,
    VotingWindowOpenError,
)
from monitoring import metrics
from scaling import LocalLockManager

GATE = "ai-score-gate"
DAY = 86400


def _fp(n: int) -> str:
    return f"{n:064x}"


# ============================================================
# End-to-end scenarios
# ============================================================

class TestEndToEnd:
    """Full content lifecycles."""

    def test_low_score_is_approved_without_voting(self, orchestrator, stakers):
        record = orchestrator.submit(_fp(1), "text", "submitter")
        result = orchestrator.apply_score(record.content_id, 30, caller=GATE)

        assert result.state == "approved"
        assert result.outcome == "approved_by_ai"
        assert result.outcome_reason == "below_ai_threshold"
        assert result.voting_end is None
        assert orchestrator.get_tally(record.content_id).voter_count == 0
        assert orchestrator.ledger.totals()["total_locked"] == 0
        with pytest.raises(VotingClosedError):
            orchestrator.cast_vote(record.content_id, "alice", "reject", 100)

    def test_threshold_score_opens_voting(self, orchestrator, clock):
        record = orchestrator.submit(_fp(2), "image", "submitter")
        result = orchestrator.apply_score(record.content_id, 50, caller=GATE)

        assert result.state == "voting"
        assert result.ai_score == 50
        assert result.voting_start == clock.now
        assert result.voting_end == clock.now + DAY
        assert [h["state"] for h in result.history] == ["pending", "flagged", "voting"]

    def test_community_approval_rewards_winner(self, orchestrator, voting_content, stakers, clock):
        cid = voting_content.content_id
        orchestrator.cast_vote(cid, "alice", "approve", 600)
        orchestrator.cast_vote(cid, "bob", "reject", 400)

        clock.advance(DAY)
        result = orchestrator.close_window(cid)

        assert result.outcome == "approved"
        assert result.reason == "majority_approve"
        assert result.content.state == "approved"
        settlements = {s.voter: s for s in result.settlements}
        assert settlements["alice"].reward == 100
        assert settlements["bob"].reward == 0

        alice = orchestrator.get_stake_account("alice")
        bob = orchestrator.get_stake_account("bob")
        assert (alice.total, alice.locked) == (1100, 0)
        assert (bob.total, bob.locked) == (1000, 0)
        assert orchestrator.pool.balance == 900
        assert orchestrator.ledger.check_invariants()

    def test_quorum_not_met_expires_and_releases_stake(self, orchestrator, voting_content, stakers, clock):
        cid = voting_content.content_id
        orchestrator.cast_vote(cid, "alice", "reject", 900)

        clock.advance(DAY)
        result = orchestrator.close_window(cid)

        assert result.outcome == "expired"
        assert result.reason == "quorum_not_met"
        assert [v.voter for v in result.released] == ["alice"]
        assert result.settlements == []
        assert orchestrator.get_stake_account("alice").locked == 0
        assert orchestrator.get_stake_account("alice").total == 1000
        assert orchestrator.pool.balance == 1000
        assert orchestrator.get_distribution(cid) is None

    def test_tie_resolves_to_reject(self, orchestrator, voting_content, stakers, clock):
        cid = voting_content.content_id
        orchestrator.cast_vote(cid, "alice", "approve", 500)
        orchestrator.cast_vote(cid, "bob", "reject", 500)

        clock.advance(DAY)
        result = orchestrator.close_window(cid)

        assert result.outcome == "rejected"
        assert result.reason == "tie_resolved_reject"
        assert orchestrator.get_stake_account("bob").rewards_earned == 100

    def test_vote_replacement_through_orchestrator(self, orchestrator, voting_content, clock):
        cid = voting_content.content_id
        orchestrator.stake("dave", 100)
        orchestrator.cast_vote(cid, "dave", "approve", 40)
        clock.advance(10)
        orchestrator.cast_vote(cid, "dave", "reject", 70)

        assert orchestrator.get_stake_account("dave").locked == 70
        tally = orchestrator.get_tally(cid)
        assert (tally.approve_stake, tally.reject_stake, tally.voter_count) == (0, 70, 1)

    def test_expired_content_can_be_resubmitted(self, orchestrator, voting_content, clock):
        clock.advance(DAY)
        orchestrator.close_window(voting_content.content_id)

        again = orchestrator.submit(voting_content.fingerprint, "text", "submitter")

        assert again.content_id != voting_content.content_id
        assert again.state == "pending"

    def test_withdraw_vote(self, orchestrator, voting_content, stakers):
        cid = voting_content.content_id
        orchestrator.cast_vote(cid, "alice", "approve", 600)
        withdrawn = orchestrator.withdraw_vote(cid, "alice")

        assert withdrawn.stake_amount == 600
        assert orchestrator.get_vote(cid, "alice") is None
        assert orchestrator.get_stake_account("alice").locked == 0
        assert orchestrator.get_tally(cid).voter_count == 0


# ============================================================
# Scoring
# ============================================================

class TestApplyScore:
    """Authority and validation of apply_score."""

    def test_unauthorized_scorer(self, orchestrator):
        record = orchestrator.submit(_fp(3), "text", "submitter")

        with pytest.raises(UnauthorizedError):
            orchestrator.apply_score(record.content_id, 90, caller="submitter")
        assert orchestrator.get_content(record.content_id).state == "pending"

    @pytest.mark.parametrize("score", [-1, 101, 50.5, True, "80"])
    def test_invalid_score(self, orchestrator, score):
        record = orchestrator.submit(_fp(4), "text", "submitter")

        with pytest.raises(InvalidScoreError):
            orchestrator.apply_score(record.content_id, score, caller=GATE)

    def test_category_mismatch(self, orchestrator):
        record = orchestrator.submit(_fp(5), "link", "submitter")

        with pytest.raises(InvalidContentError):
            orchestrator.apply_score(record.content_id, 90, caller=GATE, category="image")

    def test_score_only_once(self, orchestrator, voting_content):
        with pytest.raises(InvalidStateError):
            orchestrator.apply_score(voting_content.content_id, 10, caller=GATE)

    def test_unknown_content(self, orchestrator):
        with pytest.raises(ContentNotFoundError):
            orchestrator.apply_score("CONTENT-NOPE", 10, caller=GATE)

    def test_duplicate_submission(self, orchestrator):
        orchestrator.submit(_fp(6), "text", "submitter")

        with pytest.raises(DuplicateContentError):
            orchestrator.submit(_fp(6), "text", "someone-else")


# ============================================================
# Finalization
# ============================================================

class TestCloseWindow:
    """Deadline and race behaviour of close_window."""

    def test_close_before_deadline(self, orchestrator, voting_content, clock):
        clock.advance(DAY - 1)

        with pytest.raises(VotingWindowOpenError):
            orchestrator.close_window(voting_content.content_id)

    def test_finalization_drops_cooldown_entries(self, orchestrator, voting_content, stakers, clock):
        cid = voting_content.content_id
        orchestrator.cast_vote(cid, "alice", "approve", 600)
        orchestrator.cast_vote(cid, "bob", "approve", 400)
        orchestrator.cast_vote(cid, "carol", "reject", 100)
        orchestrator.withdraw_vote(cid, "carol")

        clock.advance(DAY)
        orchestrator.close_window(cid)

        assert orchestrator.to_dict()["voting"]["last_cast"] == []
        assert orchestrator.get_content(voting_content.content_id).state == "voting"

    def test_deadline_is_exclusive_for_votes_inclusive_for_close(self, orchestrator, voting_content, stakers, clock):
        clock.advance(DAY)

        with pytest.raises(VotingClosedError):
            orchestrator.cast_vote(voting_content.content_id, "alice", "approve", 10)
        assert orchestrator.close_window(voting_content.content_id).outcome == "expired"

    def test_close_pending_content(self, orchestrator):
        record = orchestrator.submit(_fp(7), "text", "submitter")

        with pytest.raises(InvalidStateError):
            orchestrator.close_window(record.content_id)

    def test_close_twice(self, orchestrator, voting_content, clock):
        clock.advance(DAY)
        orchestrator.close_window(voting_content.content_id)

        with pytest.raises(AlreadyFinalizedError):
            orchestrator.close_window(voting_content.content_id)

    def test_close_ai_approved_content(self, orchestrator):
        record = orchestrator.submit(_fp(8), "text", "submitter")
        orchestrator.apply_score(record.content_id, 0, caller=GATE)

        with pytest.raises(AlreadyFinalizedError):
            orchestrator.close_window(record.content_id)

    def test_concurrent_close_transitions_once(self, orchestrator, voting_content, stakers, clock):
        cid = voting_content.content_id
        orchestrator.cast_vote(cid, "alice", "approve", 600)
        orchestrator.cast_vote(cid, "bob", "reject", 400)
        clock.advance(DAY)

        results, errors = [], []

        def close():
            try:
                results.append(orchestrator.close_window(cid))
            except AlreadyFinalizedError as e:
                errors.append(e)

        threads = [threading.Thread(target=close) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 1
        assert len(errors) == 7
        assert orchestrator.get_stake_account("alice").rewards_earned == 100
        assert len(orchestrator.get_events(event_type="DecisionFinalized")) == 1

    def test_settlement_failure_keeps_transition_and_resumes(self, orchestrator, voting_content, stakers, clock, monkeypatch):
        cid = voting_content.content_id
        orchestrator.cast_vote(cid, "alice", "approve", 600)
        orchestrator.cast_vote(cid, "bob", "reject", 400)
        clock.advance(DAY)

        original_unlock = orchestrator.ledger.unlock

        def failing_unlock(owner, amount):
            if owner == "bob":
                raise RuntimeError("ledger unavailable")
            return original_unlock(owner, amount)

        monkeypatch.setattr(orchestrator.ledger, "unlock", failing_unlock)
        with pytest.raises(SettlementError):
            orchestrator.close_window(cid)

        assert orchestrator.get_content(cid).state == "approved"
        assert orchestrator.get_distribution(cid).pending == ["bob"]

        monkeypatch.setattr(orchestrator.ledger, "unlock", original_unlock)
        resumed = orchestrator.distribute(cid)

        assert [s.voter for s in resumed] == ["bob"]
        assert orchestrator.get_stake_account("bob").locked == 0
        assert orchestrator.get_stake_account("alice").rewards_earned == 100

    def test_settle_is_idempotent(self, orchestrator, voting_content, stakers, clock):
        cid = voting_content.content_id
        orchestrator.cast_vote(cid, "alice", "approve", 600)
        orchestrator.cast_vote(cid, "bob", "reject", 400)
        clock.advance(DAY)
        orchestrator.close_window(cid)

        orchestrator.settle(cid, "alice")
        orchestrator.settle(cid, "alice")

        assert orchestrator.get_stake_account("alice").total == 1100
        assert len(orchestrator.get_events(event_type="RewardSettled")) == 2


# ============================================================
# Concurrency
# ============================================================

class TestConcurrentVoting:
    """Concurrent casts must not corrupt the tally."""

    def test_parallel_casts(self, orchestrator, voting_content):
        cid = voting_content.content_id
        voters = [f"voter-{i}" for i in range(25)]
        for voter in voters:
            orchestrator.stake(voter, 100)

        def cast(voter, index):
            orchestrator.cast_vote(cid, voter, "approve" if index % 2 else "reject", 10 + index)

        threads = [threading.Thread(target=cast, args=(v, i)) for i, v in enumerate(voters)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        tally = orchestrator.get_tally(cid)
        assert tally.voter_count == 25
        assert tally.approve_stake == sum(10 + i for i in range(25) if i % 2)
        assert tally.reject_stake == sum(10 + i for i in range(25) if not i % 2)
        assert orchestrator.ledger.totals()["total_locked"] == tally.total_stake
        assert orchestrator.ledger.check_invariants()


# ============================================================
# Administration and limits
# ============================================================

class TestEmergencyControls:
    """Pause and emergency admin management."""

    def test_pause_blocks_mutations(self, orchestrator, voting_content, stakers, clock):
        orchestrator.pause("admin")

        with pytest.raises(ProtocolPausedError):
            orchestrator.submit(_fp(9), "text", "submitter")
        with pytest.raises(ProtocolPausedError):
            orchestrator.cast_vote(voting_content.content_id, "alice", "approve", 10)
        with pytest.raises(ProtocolPausedError):
            orchestrator.stake("alice", 10)
        clock.advance(DAY)
        with pytest.raises(ProtocolPausedError):
            orchestrator.close_window(voting_content.content_id)

        assert orchestrator.get_content(voting_content.content_id).state == "voting"
        orchestrator.unpause("admin")
        assert orchestrator.close_window(voting_content.content_id).outcome == "expired"

    def test_only_admins_pause(self, orchestrator):
        with pytest.raises(UnauthorizedError):
            orchestrator.pause("alice")
        assert orchestrator.paused is False

    def test_add_and_remove_admin(self, orchestrator):
        assert orchestrator.add_emergency_admin("admin", "ops") == ["admin", "ops"]
        assert orchestrator.add_emergency_admin("admin", "ops") == ["admin", "ops"]

        orchestrator.pause("ops")
        assert orchestrator.paused is True

        assert orchestrator.remove_emergency_admin("ops", "admin") == ["ops"]
        with pytest.raises(InvalidStateError):
            orchestrator.remove_emergency_admin("ops", "ops")

    def test_admin_cap(self, orchestrator):
        for i in range(MAX_EMERGENCY_ADMINS - 1):
            orchestrator.add_emergency_admin("admin", f"admin-{i}")

        with pytest.raises(InvalidStateError):
            orchestrator.add_emergency_admin("admin", "one-too-many")

    def test_non_admin_cannot_add(self, orchestrator):
        with pytest.raises(UnauthorizedError):
            orchestrator.add_emergency_admin("alice", "alice")


class TestDailyLimits:
    """Per-day submission and vote caps."""

    @pytest.fixture
    def limited(self, clock):
        config = ModerationConfig(max_daily_submissions=2, max_daily_votes=1, quorum_min_voters=1)
        return ModerationOrchestrator(config=config, admin="admin", clock=clock, lock_manager=LocalLockManager())

    def test_submission_limit_resets_daily(self, limited, clock):
        limited.submit(_fp(10), "text", "s")
        limited.submit(_fp(11), "text", "s")

        with pytest.raises(RateLimitExceededError):
            limited.submit(_fp(12), "text", "s")

        clock.advance(DAY)
        assert limited.submit(_fp(12), "text", "s").state == "pending"
        assert limited.get_protocol_status()["daily_submission_count"] == 1

    def test_vote_limit(self, limited):
        record = limited.submit(_fp(13), "text", "s")
        limited.apply_score(record.content_id, 99, caller=GATE)
        limited.stake("alice", 100)
        limited.stake("bob", 100)
        limited.cast_vote(record.content_id, "alice", "approve", 10)

        with pytest.raises(RateLimitExceededError):
            limited.cast_vote(record.content_id, "bob", "approve", 10)
        assert limited.get_stake_account("bob").locked == 0


# ============================================================
# Queries, events and metrics
# ============================================================

class TestObservability:
    """Events, status and metrics emitted by operations."""

    def test_events_recorded(self, orchestrator, voting_content, stakers):
        orchestrator.cast_vote(voting_content.content_id, "alice", "approve", 10)

        types = [e["event_type"] for e in orchestrator.get_events(limit=100)]
        assert "ContentSubmitted" in types
        assert "VotingOpened" in types
        vote_events = orchestrator.get_events(event_type="VoteCast")
        assert vote_events[-1]["data"]["voter"] == "alice"
        assert "timestamp" in vote_events[-1]

    def test_metrics_counters(self, orchestrator, voting_content, stakers):
        orchestrator.cast_vote(voting_content.content_id, "alice", "reject", 10)

        assert metrics.get_counter("content_submitted_total", {"category": "text"}) == 1
        assert metrics.get_counter("content_flagged_total") == 1
        assert metrics.get_counter("votes_cast_total", {"direction": "reject"}) == 1
        assert metrics.get_counter_total("stake_operations_total") == 3

    def test_protocol_status(self, orchestrator, voting_content, stakers):
        status = orchestrator.get_protocol_status()

        assert status["paused"] is False
        assert status["emergency_admins"] == ["admin"]
        assert status["content_by_state"]["voting"] == 1
        assert status["stake"] == {"participants": 3, "total_staked": 3000, "total_locked": 0}
        assert status["reward_pool"]["balance"] == 1000
        assert status["total_submissions"] == 1

    def test_list_content_by_state(self, orchestrator, voting_content):
        orchestrator.submit(_fp(14), "text", "submitter")

        assert len(orchestrator.list_content()) == 2
        assert [r.content_id for r in orchestrator.list_content("voting")] == [voting_content.content_id]

    def test_fund_reward_pool(self, orchestrator):
        balance = orchestrator.fund_reward_pool("treasury", 500)

        assert balance["balance"] == 1500
        assert orchestrator.get_events(event_type="RewardPoolFunded")[0]["data"]["funder"] == "treasury"


# ============================================================
# Persistence
# ============================================================

class TestPersistence:
    """Snapshot and restore."""

    def test_round_trip_mid_vote(self, orchestrator, voting_content, stakers, clock):
        cid = voting_content.content_id
        orchestrator.cast_vote(cid, "alice", "approve", 600)
        orchestrator.cast_vote(cid, "bob", "reject", 400)

        snapshot = json.loads(json.dumps(orchestrator.to_dict()))
        restored = ModerationOrchestrator.from_dict(snapshot, clock=clock, lock_manager=LocalLockManager())

        assert restored.get_tally(cid).total_stake == 1000
        assert restored.get_stake_account("alice").locked == 600
        assert restored.emergency_admins == ["admin"]

        clock.advance(DAY)
        result = restored.close_window(cid)
        assert result.outcome == "approved"
        assert restored.get_stake_account("alice").total == 1100

    def test_round_trip_keeps_pause_and_counts(self, orchestrator, voting_content):
        orchestrator.pause("admin")

        restored = ModerationOrchestrator.from_dict(orchestrator.to_dict(), lock_manager=LocalLockManager())

        assert restored.paused is True
        assert restored.total_submissions == 1
        assert len(restored.events) == len(orchestrator.events)
