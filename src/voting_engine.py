"""
LunarScry - Voting Engine

Accepts stake-weighted votes on content in the Voting state and keeps a
running Outcome Tally per content item.

Key rules:
- One vote record per (content, voter); re-casting replaces the previous
  vote (old stake unlocked, new stake locked) and never sums weights.
- Stake is snapshotted at cast time; later stake changes do not alter it.
- Tallies are maintained by O(1) deltas per cast/withdrawal and are never
  mutated from outside the engine.
- Quorum and majority are a pure function of the tally and config.
"""

import copy
import logging
import threading
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from content_registry import ContentRecord, ContentState, Outcome
from moderation_config import ModerationConfig
from moderation_exceptions import (
    InvalidAmountError,
    InvalidStateError,
    InvalidVoteError,
    VoteCooldownError,
    VotingClosedError,
)
from stake_ledger import StakeLedger

logger = logging.getLogger(__name__)

QUORUM_NOT_MET = "quorum_not_met"
MAJORITY_APPROVE = "majority_approve"
MAJORITY_REJECT = "majority_reject"
TIE_RESOLVED_REJECT = "tie_resolved_reject"


class VoteDirection(Enum):
    """Direction of a moderation vote."""
    APPROVE = "approve"
    REJECT = "reject"


@dataclass
class VoteRecord:
    """A voter's committed position on one content item."""
    content_id: str
    voter: str
    direction: str
    stake_amount: int
    cast_at: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class OutcomeTally:
    """Running totals for one content item."""
    content_id: str
    approve_stake: int = 0
    reject_stake: int = 0
    voter_count: int = 0

    @property
    def total_stake(self) -> int:
        return self.approve_stake + self.reject_stake

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["total_stake"] = self.total_stake
        return data


def evaluate_outcome(tally: OutcomeTally, config: ModerationConfig) -> tuple[Outcome, str]:
    """
    Decide the outcome of a closed voting window.

    Quorum requires both distinct voters >= quorum_min_voters and total
    staked votes >= quorum_min_stake. With quorum, the side with more stake
    wins; a tie resolves to Reject.

    Returns:
        Tuple of (outcome, reason)
    """
    if tally.voter_count < config.quorum_min_voters or tally.total_stake < config.quorum_min_stake:
        return Outcome.EXPIRED, QUORUM_NOT_MET
    if tally.approve_stake > tally.reject_stake:
        return Outcome.APPROVED, MAJORITY_APPROVE
    if tally.approve_stake == tally.reject_stake:
        return Outcome.REJECTED, TIE_RESOLVED_REJECT
    return Outcome.REJECTED, MAJORITY_REJECT


def _parse_direction(direction: VoteDirection | str) -> VoteDirection:
    if isinstance(direction, VoteDirection):
        return direction
    try:
        return VoteDirection(str(direction).lower())
    except ValueError:
        raise InvalidVoteError(direction) from None


class VotingEngine:
    """Owns vote records and outcome tallies for content in Voting."""

    def __init__(self, ledger: StakeLedger, config: ModerationConfig):
        self.ledger = ledger
        self.config = config
        self._tallies: dict[str, OutcomeTally] = {}
        self._votes: dict[str, dict[str, VoteRecord]] = {}  # content_id -> voter -> vote
        self._last_cast: dict[tuple[str, str], int] = {}
        self._lock = threading.RLock()

    def open(self, content_id: str) -> OutcomeTally:
        """Create the (empty) tally for content entering Voting."""
        with self._lock:
            tally = self._tallies.setdefault(content_id, OutcomeTally(content_id=content_id))
            self._votes.setdefault(content_id, {})
            return copy.copy(tally)

    # ==================== CASTING ====================

    def cast_vote(
        self,
        record: ContentRecord,
        voter: str,
        direction: VoteDirection | str,
        stake_amount: int,
        now: int,
    ) -> VoteRecord:
        """
        Cast or replace a stake-weighted vote.

        Args:
            record: Current snapshot of the content record
            voter: Voter identity
            direction: Approve or Reject
            stake_amount: Stake committed behind this vote
            now: Current unix timestamp

        Returns:
            The stored vote record

        Raises:
            VotingClosedError: Content not in Voting, or window elapsed
            InvalidAmountError: Zero, negative or below-minimum stake
            InsufficientStakeError: Voter lacks the unlocked stake
            VoteCooldownError: Re-cast within the cooldown period
        """
        self._require_open(record, now, "cast_vote")
        vote_direction = _parse_direction(direction)

        if not isinstance(stake_amount, int) or isinstance(stake_amount, bool) or stake_amount <= 0:
            raise InvalidAmountError(
                "Vote stake must be a positive integer", stake_amount, "cast_vote", component="voting_engine"
            )
        if stake_amount < self.config.min_vote_stake:
            raise InvalidAmountError(
                f"Vote stake must be at least {self.config.min_vote_stake}",
                stake_amount,
                "cast_vote",
                component="voting_engine",
            )

        content_id = record.content_id
        with self._lock:
            last = self._last_cast.get((content_id, voter))
            if last is not None and now < last + self.config.vote_cooldown_seconds:
                raise VoteCooldownError(content_id, voter, last + self.config.vote_cooldown_seconds)

            tally = self._tallies.setdefault(content_id, OutcomeTally(content_id=content_id))
            votes = self._votes.setdefault(content_id, {})
            previous = votes.get(voter)

            # Ledger first: if it raises, neither the vote nor the tally changed
            if previous is not None:
                self.ledger.relock(voter, previous.stake_amount, stake_amount)
                self._apply_delta(tally, previous.direction, -previous.stake_amount)
            else:
                self.ledger.lock(voter, stake_amount)
                tally.voter_count += 1

            self._apply_delta(tally, vote_direction.value, stake_amount)
            vote = VoteRecord(
                content_id=content_id,
                voter=voter,
                direction=vote_direction.value,
                stake_amount=stake_amount,
                cast_at=now,
            )
            votes[voter] = vote
            self._last_cast[(content_id, voter)] = now

        logger.info(
            "Vote %s on %s by %s with %d stake%s",
            vote_direction.value, content_id, voter, stake_amount,
            " (replaced)" if previous else "",
        )
        return copy.copy(vote)

    def withdraw_vote(self, record: ContentRecord, voter: str, now: int) -> VoteRecord:
        """
        Withdraw a vote while the window is still open.

        The committed stake is unlocked and the record removed; the voter
        must cast again to contribute weight. The cooldown keeps running from
        the last cast, so withdrawing does not allow an immediate re-cast.

        Raises:
            VotingClosedError: Content not in Voting, or window elapsed
            InvalidStateError: Voter has no vote on this content
        """
        self._require_open(record, now, "withdraw_vote")
        content_id = record.content_id
        with self._lock:
            votes = self._votes.get(content_id, {})
            vote = votes.get(voter)
            if vote is None:
                raise InvalidStateError(
                    f"{voter} has no vote on {content_id}",
                    content_id=content_id,
                    current_state=record.state,
                    action="withdraw_vote",
                    component="voting_engine",
                )
            self.ledger.unlock(voter, vote.stake_amount)
            tally = self._tallies[content_id]
            self._apply_delta(tally, vote.direction, -vote.stake_amount)
            tally.voter_count -= 1
            del votes[voter]

        logger.info("Vote on %s withdrawn by %s (%d unlocked)", content_id, voter, vote.stake_amount)
        return vote

    # ==================== CLOSING ====================

    def end_voting(self, content_id: str) -> None:
        """Drop cooldown bookkeeping for content whose window has closed."""
        with self._lock:
            for key in [k for k in self._last_cast if k[0] == content_id]:
                del self._last_cast[key]

    def release_all(self, content_id: str) -> list[VoteRecord]:
        """
        Unlock every voter's stake and reclaim all vote records.

        Used when a window closes without quorum (Expired).
        """
        with self._lock:
            votes = self._votes.get(content_id, {})
            released = list(votes.values())
            for vote in released:
                self.ledger.unlock(vote.voter, vote.stake_amount)
                del votes[vote.voter]
            self.end_voting(content_id)
        if released:
            logger.info("Released %d vote(s) on expired content %s", len(released), content_id)
        return released

    def reclaim(self, content_id: str, voter: str) -> VoteRecord | None:
        """Remove a settled vote record. The tally keeps its totals."""
        with self._lock:
            self._last_cast.pop((content_id, voter), None)
            return self._votes.get(content_id, {}).pop(voter, None)

    # ==================== QUERIES ====================

    def get_tally(self, content_id: str) -> OutcomeTally:
        with self._lock:
            tally = self._tallies.get(content_id)
            return copy.copy(tally) if tally else OutcomeTally(content_id=content_id)

    def get_vote(self, content_id: str, voter: str) -> VoteRecord | None:
        with self._lock:
            vote = self._votes.get(content_id, {}).get(voter)
            return copy.copy(vote) if vote else None

    def votes_for(self, content_id: str) -> list[VoteRecord]:
        with self._lock:
            return [copy.copy(v) for v in self._votes.get(content_id, {}).values()]

    def locked_for(self, content_id: str) -> int:
        """Stake still locked behind unsettled votes on a content item."""
        with self._lock:
            return sum(v.stake_amount for v in self._votes.get(content_id, {}).values())

    # ==================== INTERNALS ====================

    @staticmethod
    def _apply_delta(tally: OutcomeTally, direction: str, amount: int) -> None:
        if direction == VoteDirection.APPROVE.value:
            tally.approve_stake += amount
        else:
            tally.reject_stake += amount

    @staticmethod
    def _require_open(record: ContentRecord, now: int, action: str) -> None:
        if record.lifecycle_state != ContentState.VOTING:
            raise VotingClosedError(record.content_id, f"content is {record.state}", action=action)
        if record.voting_end is None or now >= record.voting_end:
            raise VotingClosedError(record.content_id, "voting window has elapsed", action=action)

    # ==================== PERSISTENCE ====================

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "tallies": [asdict(t) for t in self._tallies.values()],
                "votes": [asdict(v) for votes in self._votes.values() for v in votes.values()],
                "last_cast": [
                    {"content_id": c, "voter": v, "at": at} for (c, v), at in self._last_cast.items()
                ],
            }

    @classmethod
    def from_dict(cls, data: dict[str, Any], ledger: StakeLedger, config: ModerationConfig) -> "VotingEngine":
        engine = cls(ledger, config)
        for item in data.get("tallies", []):
            tally = OutcomeTally(**item)
            engine._tallies[tally.content_id] = tally
            engine._votes.setdefault(tally.content_id, {})
        for item in data.get("votes", []):
            vote = VoteRecord(**item)
            engine._votes.setdefault(vote.content_id, {})[vote.voter] = vote
        for item in data.get("last_cast", []):
            engine._last_cast[(item["content_id"], item["voter"])] = item["at"]
        return engine
