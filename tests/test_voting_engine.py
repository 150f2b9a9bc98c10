"""
Tests for the Voting Engine (src/voting_engine.py)

Tests cover:
- Stake-weighted casting and tally deltas
- Vote replacement (never summing)
- Withdrawal, cooldown and window checks
- Deterministic quorum/majority evaluation
"""

import pytest

from content_registry import ContentRecord, Outcome
from moderation_config import ModerationConfig
from moderation_exceptions import (
    InsufficientStakeError,
    InvalidAmountError,
    InvalidStateError,
    InvalidVoteError,
    VoteCooldownError,
    VotingClosedError,
)
from stake_ledger import StakeLedger
from voting_engine import (
    MAJORITY_APPROVE,
    MAJORITY_REJECT,
    QUORUM_NOT_MET,
    TIE_RESOLVED_REJECT,
    OutcomeTally,
    VoteDirection,
    VotingEngine,
    evaluate_outcome,
)

NOW = 1_700_000_000
CID = "CONTENT-TEST"


def _voting_record(state="voting", voting_end=NOW + 86400):
    return ContentRecord(
        content_id=CID,
        submitter="submitter",
        fingerprint="f" * 64,
        category="text",
        created_at=NOW,
        state=state,
        ai_score=80,
        voting_start=NOW,
        voting_end=voting_end,
    )


@pytest.fixture
def config():
    return ModerationConfig(quorum_min_voters=3, quorum_min_stake=1000, vote_cooldown_seconds=10, min_vote_stake=5)


@pytest.fixture
def ledger():
    ledger = StakeLedger()
    ledger.stake("alice", 100)
    ledger.stake("bob", 1000)
    return ledger


@pytest.fixture
def engine(ledger, config):
    engine = VotingEngine(ledger, config)
    engine.open(CID)
    return engine


# ============================================================
# Casting
# ============================================================

class TestCastVote:
    """Tests for cast_vote()."""

    def test_cast_locks_stake_and_updates_tally(self, engine, ledger):
        vote = engine.cast_vote(_voting_record(), "alice", "approve", 40, NOW)

        assert vote.direction == "approve"
        assert vote.stake_amount == 40
        assert ledger.get_account("alice").locked == 40
        tally = engine.get_tally(CID)
        assert (tally.approve_stake, tally.reject_stake, tally.voter_count) == (40, 0, 1)

    def test_direction_enum_and_case(self, engine):
        engine.cast_vote(_voting_record(), "alice", VoteDirection.REJECT, 10, NOW)
        engine.cast_vote(_voting_record(), "bob", "APPROVE", 10, NOW)

        tally = engine.get_tally(CID)
        assert tally.approve_stake == 10
        assert tally.reject_stake == 10

    def test_recast_replaces_not_sums(self, engine, ledger):
        """Stake 100, vote Approve 40, re-vote Reject 70: locked 70, tally only 70 on Reject."""
        engine.cast_vote(_voting_record(), "alice", "approve", 40, NOW)
        engine.cast_vote(_voting_record(), "alice", "reject", 70, NOW + 10)

        assert ledger.get_account("alice").locked == 70
        tally = engine.get_tally(CID)
        assert tally.approve_stake == 0
        assert tally.reject_stake == 70
        assert tally.voter_count == 1
        assert engine.get_vote(CID, "alice").direction == "reject"

    def test_recast_up_to_full_stake(self, engine, ledger):
        engine.cast_vote(_voting_record(), "alice", "approve", 40, NOW)
        engine.cast_vote(_voting_record(), "alice", "approve", 100, NOW + 10)

        assert ledger.get_account("alice").locked == 100

    def test_insufficient_stake_leaves_state_unchanged(self, engine, ledger):
        with pytest.raises(InsufficientStakeError):
            engine.cast_vote(_voting_record(), "alice", "approve", 101, NOW)

        assert ledger.get_account("alice").locked == 0
        assert engine.get_tally(CID).voter_count == 0
        assert engine.get_vote(CID, "alice") is None

    def test_failed_recast_keeps_previous_vote(self, engine, ledger):
        engine.cast_vote(_voting_record(), "alice", "approve", 40, NOW)

        with pytest.raises(InsufficientStakeError):
            engine.cast_vote(_voting_record(), "alice", "reject", 500, NOW + 10)

        assert ledger.get_account("alice").locked == 40
        assert engine.get_tally(CID).approve_stake == 40

    @pytest.mark.parametrize("amount", [0, -1, True, 2.5])
    def test_invalid_amount(self, engine, amount):
        with pytest.raises(InvalidAmountError):
            engine.cast_vote(_voting_record(), "alice", "approve", amount, NOW)

    def test_below_minimum_stake(self, engine):
        with pytest.raises(InvalidAmountError):
            engine.cast_vote(_voting_record(), "alice", "approve", 4, NOW)

    def test_unknown_direction(self, engine):
        with pytest.raises(InvalidVoteError):
            engine.cast_vote(_voting_record(), "alice", "abstain", 10, NOW)

    def test_cooldown(self, engine):
        engine.cast_vote(_voting_record(), "alice", "approve", 10, NOW)

        with pytest.raises(VoteCooldownError) as exc_info:
            engine.cast_vote(_voting_record(), "alice", "reject", 10, NOW + 9)
        assert exc_info.value.retry_at == NOW + 10

    def test_cooldown_is_per_voter(self, engine):
        engine.cast_vote(_voting_record(), "alice", "approve", 10, NOW)
        engine.cast_vote(_voting_record(), "bob", "reject", 10, NOW)

        assert engine.get_tally(CID).voter_count == 2

    def test_not_in_voting_state(self, engine):
        with pytest.raises(VotingClosedError):
            engine.cast_vote(_voting_record(state="flagged"), "alice", "approve", 10, NOW)

    def test_window_elapsed(self, engine):
        with pytest.raises(VotingClosedError):
            engine.cast_vote(_voting_record(), "alice", "approve", 10, NOW + 86400)


# ============================================================
# Withdrawal and release
# ============================================================

class TestWithdrawAndRelease:
    """Tests for withdraw_vote(), release_all() and reclaim()."""

    def test_withdraw_unlocks_and_reverses_tally(self, engine, ledger):
        engine.cast_vote(_voting_record(), "alice", "approve", 40, NOW)
        engine.withdraw_vote(_voting_record(), "alice", NOW + 1)

        assert ledger.get_account("alice").locked == 0
        tally = engine.get_tally(CID)
        assert (tally.approve_stake, tally.voter_count) == (0, 0)
        assert engine.get_vote(CID, "alice") is None

    def test_withdraw_without_vote(self, engine):
        with pytest.raises(InvalidStateError):
            engine.withdraw_vote(_voting_record(), "alice", NOW)

    def test_withdraw_after_window(self, engine):
        engine.cast_vote(_voting_record(), "alice", "approve", 40, NOW)

        with pytest.raises(VotingClosedError):
            engine.withdraw_vote(_voting_record(), "alice", NOW + 86400)

    def test_withdraw_does_not_reset_cooldown(self, engine):
        engine.cast_vote(_voting_record(), "alice", "approve", 40, NOW)
        engine.withdraw_vote(_voting_record(), "alice", NOW + 1)

        with pytest.raises(VoteCooldownError):
            engine.cast_vote(_voting_record(), "alice", "approve", 40, NOW + 2)
        assert engine.cast_vote(_voting_record(), "alice", "approve", 40, NOW + 10).stake_amount == 40

    def test_release_all(self, engine, ledger):
        engine.cast_vote(_voting_record(), "alice", "approve", 40, NOW)
        engine.cast_vote(_voting_record(), "bob", "reject", 400, NOW)

        released = engine.release_all(CID)

        assert {v.voter for v in released} == {"alice", "bob"}
        assert ledger.totals()["total_locked"] == 0
        assert engine.votes_for(CID) == []
        assert engine.locked_for(CID) == 0

    def test_reclaim_keeps_tally(self, engine):
        engine.cast_vote(_voting_record(), "alice", "approve", 40, NOW)

        assert engine.reclaim(CID, "alice").stake_amount == 40
        assert engine.reclaim(CID, "alice") is None
        assert engine.get_tally(CID).approve_stake == 40

    def test_release_all_drops_cooldowns(self, engine):
        engine.cast_vote(_voting_record(), "alice", "approve", 40, NOW)

        engine.release_all(CID)

        assert engine.to_dict()["last_cast"] == []

    def test_reclaim_drops_voter_cooldown(self, engine):
        engine.cast_vote(_voting_record(), "alice", "approve", 40, NOW)
        engine.cast_vote(_voting_record(), "bob", "reject", 40, NOW)

        engine.reclaim(CID, "alice")

        assert [c["voter"] for c in engine.to_dict()["last_cast"]] == ["bob"]

    def test_end_voting_drops_only_that_content(self, engine):
        engine.cast_vote(_voting_record(), "alice", "approve", 40, NOW)
        other = _voting_record()
        other.content_id = "CONTENT-OTHER"
        engine.cast_vote(other, "bob", "reject", 40, NOW)

        engine.end_voting(CID)

        assert [c["content_id"] for c in engine.to_dict()["last_cast"]] == ["CONTENT-OTHER"]


# ============================================================
# Outcome evaluation
# ============================================================

class TestEvaluateOutcome:
    """Tests for evaluate_outcome()."""

    @pytest.mark.parametrize(
        "approve,reject,voters,expected",
        [
            (600, 400, 3, (Outcome.APPROVED, MAJORITY_APPROVE)),
            (400, 600, 3, (Outcome.REJECTED, MAJORITY_REJECT)),
            (500, 500, 3, (Outcome.REJECTED, TIE_RESOLVED_REJECT)),
            (900, 900, 2, (Outcome.EXPIRED, QUORUM_NOT_MET)),
            (500, 400, 3, (Outcome.EXPIRED, QUORUM_NOT_MET)),
            (5000, 0, 1, (Outcome.EXPIRED, QUORUM_NOT_MET)),
        ],
    )
    def test_outcomes(self, config, approve, reject, voters, expected):
        tally = OutcomeTally(content_id=CID, approve_stake=approve, reject_stake=reject, voter_count=voters)

        assert evaluate_outcome(tally, config) == expected

    def test_quorum_boundaries_are_inclusive(self, config):
        tally = OutcomeTally(content_id=CID, approve_stake=1000, reject_stake=0, voter_count=3)

        assert evaluate_outcome(tally, config)[0] == Outcome.APPROVED


class TestEnginePersistence:
    """Tests for to_dict/from_dict."""

    def test_round_trip_preserves_votes_and_cooldown(self, engine, ledger, config):
        engine.cast_vote(_voting_record(), "alice", "approve", 40, NOW)

        restored = VotingEngine.from_dict(engine.to_dict(), ledger, config)

        assert restored.get_vote(CID, "alice").stake_amount == 40
        assert restored.get_tally(CID).approve_stake == 40
        with pytest.raises(VoteCooldownError):
            restored.cast_vote(_voting_record(), "alice", "reject", 40, NOW + 1)
