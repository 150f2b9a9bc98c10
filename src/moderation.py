"""
LunarScry - Moderation Orchestrator

Coordinates a content item through submission -> AI gating -> community
voting -> finalization -> reward distribution. It is the only component
that performs lifecycle transitions on content records.

Core Properties:
- Every mutation on a content item runs under that item's named lock, so
  concurrent casts cannot corrupt a tally and concurrent finalizers
  cannot both transition a record (compare-and-transition on state).
- Deadlines are timestamp comparisons against an injectable clock; there
  are no scheduled callbacks.
- Every operation completes or raises a typed ModerationError.
- All actions are appended to an audit event log.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from content_registry import ContentRecord, ContentRegistry, ContentState, Outcome
from moderation_config import (
    DAILY_WINDOW_SECONDS,
    MAX_EMERGENCY_ADMINS,
    PROTOCOL_VERSION,
    ModerationConfig,
)
from moderation_exceptions import (
    AlreadyFinalizedError,
    InvalidContentError,
    InvalidScoreError,
    InvalidStateError,
    ProtocolPausedError,
    RateLimitExceededError,
    UnauthorizedError,
    VotingWindowOpenError,
)
from monitoring import metrics
from reward_distributor import ContentSettlement, RewardDistributor, RewardPool, SettlementRecord
from scaling import LockManager, content_lock_name, get_lock_manager
from stake_ledger import StakeAccount, StakeLedger
from voting_engine import OutcomeTally, VoteDirection, VoteRecord, VotingEngine, evaluate_outcome

logger = logging.getLogger(__name__)

BELOW_AI_THRESHOLD = "below_ai_threshold"
MAX_EVENTS = 10000


@dataclass
class FinalizationResult:
    """What close_window did."""
    content: ContentRecord
    outcome: str
    reason: str
    tally: OutcomeTally
    settlements: list[SettlementRecord] = field(default_factory=list)
    released: list[VoteRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content.to_dict(),
            "outcome": self.outcome,
            "reason": self.reason,
            "tally": self.tally.to_dict(),
            "settlements": [asdict(s) for s in self.settlements],
            "released": [v.to_dict() for v in self.released],
        }


class ModerationOrchestrator:
    """
    Content-moderation governance state machine.

    Args:
        config: Policy configuration (defaults to ModerationConfig())
        admin: Initial emergency admin identity
        clock: Callable returning the current unix time
        lock_manager: Named lock provider (defaults to scaling.get_lock_manager())
        initial_reward_pool: Starting reward pool balance
    """

    def __init__(
        self,
        config: ModerationConfig | None = None,
        admin: str = "protocol-admin",
        clock: Callable[[], float] | None = None,
        lock_manager: LockManager | None = None,
        initial_reward_pool: int = 0,
    ):
        self.config = (config or ModerationConfig()).validate()
        self.clock = clock or time.time
        self.lock_manager = lock_manager or get_lock_manager()

        self.registry = ContentRegistry(max_fingerprint_length=self.config.max_fingerprint_length)
        self.ledger = StakeLedger(max_stake_per_user=self.config.max_stake_per_user)
        self.engine = VotingEngine(self.ledger, self.config)
        self.pool = RewardPool(initial_balance=initial_reward_pool)
        self.distributor = RewardDistributor(self.ledger, self.engine, self.pool, self.config)

        self.paused = False
        self.emergency_admins: list[str] = [admin]
        self.daily_submission_count = 0
        self.daily_vote_count = 0
        self.daily_window_start = self._now()
        self.total_submissions = 0
        self.total_votes = 0

        self.events: list[dict[str, Any]] = []
        self._state_lock = threading.RLock()

    # ==================== STAKING ====================

    def stake(self, owner: str, amount: int) -> StakeAccount:
        """Stake tokens for voting weight."""
        self._require_active("stake")
        account = self.ledger.stake(owner, amount)
        self._emit_event("Staked", {"owner": owner, "amount": amount, "total": account.total})
        metrics.increment("stake_operations_total", labels={"kind": "stake"})
        return account

    def unstake(self, owner: str, amount: int) -> StakeAccount:
        """Withdraw unlocked stake."""
        self._require_active("unstake")
        account = self.ledger.unstake(owner, amount)
        self._emit_event("Unstaked", {"owner": owner, "amount": amount, "total": account.total})
        metrics.increment("stake_operations_total", labels={"kind": "unstake"})
        return account

    def fund_reward_pool(self, funder: str, amount: int) -> dict[str, int]:
        """Deposit external funds (treasury, mint) into the reward pool."""
        self._require_active("fund_reward_pool")
        balance = self.pool.fund(amount, funder)
        self._emit_event("RewardPoolFunded", {"funder": funder, "amount": amount, "balance": balance})
        return self.pool.get_balance()

    # ==================== CONTENT LIFECYCLE ====================

    def submit(self, fingerprint: str, category: str, submitter: str) -> ContentRecord:
        """
        Submit content (by fingerprint) for moderation.

        Raises:
            ProtocolPausedError, RateLimitExceededError,
            InvalidContentError, DuplicateContentError
        """
        self._require_active("submit")
        now = self._now()
        with self._state_lock:
            self._check_daily_limit("submissions", self.daily_submission_count, self.config.max_daily_submissions, now)
            record = self.registry.submit(fingerprint, category, submitter, now)
            self.daily_submission_count += 1
            self.total_submissions += 1

        self._emit_event("ContentSubmitted", {
            "content_id": record.content_id,
            "submitter": submitter,
            "fingerprint": fingerprint,
            "category": record.category,
        })
        metrics.increment("content_submitted_total", labels={"category": record.category})
        return record

    def apply_score(
        self,
        content_id: str,
        score: int,
        caller: str,
        category: str | None = None,
    ) -> ContentRecord:
        """
        Apply the external AI confidence score to a Pending record.

        Below the threshold the record is approved immediately (no voting);
        otherwise it is flagged and its voting window opens at once.

        Args:
            content_id: Content to score
            score: Confidence 0-100
            caller: Must be one of config.authorized_scorers
            category: Optional category echoed by the gate; must match the record

        Raises:
            UnauthorizedError: Caller is not an authorised scorer
            InvalidScoreError: Score outside 0-100
            InvalidStateError: Record is not Pending
        """
        self._require_active("apply_score")
        if caller not in self.config.authorized_scorers:
            raise UnauthorizedError(caller, "apply_score", component="score_gate")
        if not isinstance(score, int) or isinstance(score, bool) or not 0 <= score <= 100:
            raise InvalidScoreError(score)

        with self.lock_manager.lock(content_lock_name(content_id)):
            now = self._now()
            record = self.registry.get(content_id)
            if category is not None and category != record.category:
                raise InvalidContentError(
                    f"Category {category} does not match registered category {record.category}",
                    {"content_id": content_id, "category": category},
                )
            self.registry.record_score(content_id, score)
            self._emit_event("ScoreApplied", {"content_id": content_id, "score": score, "scorer": caller})

            if score < self.config.ai_score_threshold:
                record = self.registry.transition(
                    content_id, ContentState.APPROVED, now,
                    outcome=Outcome.APPROVED_BY_AI, reason=BELOW_AI_THRESHOLD,
                )
                self._emit_event("DecisionFinalized", {
                    "content_id": content_id,
                    "outcome": Outcome.APPROVED_BY_AI.value,
                    "reason": BELOW_AI_THRESHOLD,
                })
                metrics.increment("content_finalized_total", labels={"outcome": Outcome.APPROVED_BY_AI.value})
                return record

            self.registry.transition(content_id, ContentState.FLAGGED, now)
            window_end = now + self.config.voting_window_seconds
            self.registry.open_window(content_id, now, window_end)
            record = self.registry.transition(content_id, ContentState.VOTING, now)
            self.engine.open(content_id)

        self._emit_event("VotingOpened", {
            "content_id": content_id,
            "voting_start": now,
            "voting_end": window_end,
        })
        metrics.increment("content_flagged_total")
        return record

    # ==================== VOTING ====================

    def cast_vote(
        self,
        content_id: str,
        voter: str,
        direction: VoteDirection | str,
        stake_amount: int,
    ) -> VoteRecord:
        """
        Cast (or replace) a stake-weighted vote.

        Raises:
            VotingClosedError, InvalidAmountError, InvalidVoteError,
            InsufficientStakeError, VoteCooldownError, RateLimitExceededError
        """
        self._require_active("cast_vote")
        with self.lock_manager.lock(content_lock_name(content_id)):
            now = self._now()
            record = self.registry.get(content_id)
            with self._state_lock:
                self._check_daily_limit("votes", self.daily_vote_count, self.config.max_daily_votes, now)
                vote = self.engine.cast_vote(record, voter, direction, stake_amount, now)
                self.daily_vote_count += 1
                self.total_votes += 1
            tally = self.engine.get_tally(content_id)

        self._emit_event("VoteCast", {
            "content_id": content_id,
            "voter": voter,
            "direction": vote.direction,
            "stake_amount": vote.stake_amount,
            "voter_count": tally.voter_count,
        })
        metrics.increment("votes_cast_total", labels={"direction": vote.direction})
        return vote

    def withdraw_vote(self, content_id: str, voter: str) -> VoteRecord:
        """
        Withdraw a vote before the window closes, unlocking its stake.

        Raises:
            VotingClosedError, InvalidStateError
        """
        self._require_active("withdraw_vote")
        with self.lock_manager.lock(content_lock_name(content_id)):
            now = self._now()
            record = self.registry.get(content_id)
            vote = self.engine.withdraw_vote(record, voter, now)

        self._emit_event("VoteWithdrawn", {
            "content_id": content_id,
            "voter": voter,
            "stake_amount": vote.stake_amount,
        })
        metrics.increment("votes_withdrawn_total")
        return vote

    # ==================== FINALIZATION ====================

    def close_window(self, content_id: str) -> FinalizationResult:
        """
        Finalize a content item whose voting window has passed.

        Permissionless: anyone may call it; the first successful call
        performs the transition and later calls raise AlreadyFinalizedError.

        Raises:
            AlreadyFinalizedError: Record already terminal
            VotingWindowOpenError: Window end not reached yet
            InvalidStateError: Record never reached Voting
            SettlementError: Distribution stopped partway (the transition stands)
        """
        self._require_active("close_window")
        with self.lock_manager.lock(content_lock_name(content_id)):
            now = self._now()
            record = self.registry.get(content_id)
            if record.is_terminal:
                raise AlreadyFinalizedError(content_id, record.state)
            if record.lifecycle_state != ContentState.VOTING:
                raise InvalidStateError(
                    f"Content {content_id} is {record.state}; no voting window to close",
                    content_id=content_id,
                    current_state=record.state,
                    expected=[ContentState.VOTING.value],
                    action="close_window",
                    component="moderation",
                )
            if now < record.voting_end:
                raise VotingWindowOpenError(content_id, record.voting_end, now)

            tally = self.engine.get_tally(content_id)
            outcome, reason = evaluate_outcome(tally, self.config)

            if outcome == Outcome.EXPIRED:
                record = self.registry.transition(content_id, ContentState.EXPIRED, now, outcome=outcome, reason=reason)
                released = self.engine.release_all(content_id)
                self._emit_finalized(record, tally, reason)
                return FinalizationResult(
                    content=record, outcome=outcome.value, reason=reason, tally=tally, released=released
                )

            new_state = ContentState.APPROVED if outcome == Outcome.APPROVED else ContentState.REJECTED
            record = self.registry.transition(content_id, new_state, now, outcome=outcome, reason=reason)
            self.engine.end_voting(content_id)
            self.distributor.begin(content_id, outcome, tally)
            self._emit_finalized(record, tally, reason)

            settlements = self._distribute(content_id, now)

        return FinalizationResult(
            content=record, outcome=outcome.value, reason=reason, tally=tally, settlements=settlements
        )

    def settle(self, content_id: str, voter: str) -> SettlementRecord:
        """Settle one voter on a finalized content item (idempotent)."""
        self._require_active("settle")
        with self.lock_manager.lock(content_lock_name(content_id)):
            already = self.distributor.get_settlement(content_id, voter)
            record = self.distributor.settle(content_id, voter, self._now())
        if already is None:
            self._emit_settled(record)
        return record

    def distribute(self, content_id: str) -> list[SettlementRecord]:
        """Resume distribution for every voter not yet settled."""
        self._require_active("distribute")
        with self.lock_manager.lock(content_lock_name(content_id)):
            return self._distribute(content_id, self._now())

    def _distribute(self, content_id: str, now: int) -> list[SettlementRecord]:
        settlements = self.distributor.distribute(content_id, now)
        for record in settlements:
            self._emit_settled(record)
        return settlements

    # ==================== QUERIES ====================

    def get_content(self, content_id: str) -> ContentRecord:
        return self.registry.get(content_id)

    def list_content(self, state: str | None = None, limit: int = 50, offset: int = 0) -> list[ContentRecord]:
        return self.registry.list_records(ContentState(state) if state else None, limit, offset)

    def get_tally(self, content_id: str) -> OutcomeTally:
        self.registry.get(content_id)
        return self.engine.get_tally(content_id)

    def get_vote(self, content_id: str, voter: str) -> VoteRecord | None:
        return self.engine.get_vote(content_id, voter)

    def get_votes(self, content_id: str) -> list[VoteRecord]:
        return self.engine.votes_for(content_id)

    def get_stake_account(self, owner: str) -> StakeAccount:
        return self.ledger.get_account(owner)

    def get_settlement(self, content_id: str, voter: str) -> SettlementRecord | None:
        return self.distributor.get_settlement(content_id, voter)

    def get_distribution(self, content_id: str) -> ContentSettlement | None:
        return self.distributor.get_distribution(content_id)

    def get_events(self, limit: int = 50, event_type: str | None = None) -> list[dict[str, Any]]:
        with self._state_lock:
            events = [e for e in self.events if event_type is None or e["event_type"] == event_type]
        return events[-limit:]

    def get_protocol_status(self) -> dict[str, Any]:
        with self._state_lock:
            return {
                "version": PROTOCOL_VERSION,
                "paused": self.paused,
                "emergency_admins": list(self.emergency_admins),
                "daily_submission_count": self.daily_submission_count,
                "daily_vote_count": self.daily_vote_count,
                "daily_window_start": self.daily_window_start,
                "total_submissions": self.total_submissions,
                "total_votes": self.total_votes,
                "content_by_state": self.registry.count_by_state(),
                "stake": self.ledger.totals(),
                "reward_pool": self.pool.get_balance(),
                "settlements": self.distributor.totals(),
                "config": self.config.to_dict(),
            }

    # ==================== EMERGENCY ADMINISTRATION ====================

    def pause(self, admin: str) -> None:
        """Pause every mutating operation."""
        self._require_admin(admin, "pause")
        with self._state_lock:
            self.paused = True
        logger.warning("Protocol paused by %s", admin)
        self._emit_event("ProtocolPaused", {"paused_by": admin})

    def unpause(self, admin: str) -> None:
        self._require_admin(admin, "unpause")
        with self._state_lock:
            self.paused = False
        logger.warning("Protocol unpaused by %s", admin)
        self._emit_event("ProtocolUnpaused", {"unpaused_by": admin})

    def add_emergency_admin(self, admin: str, new_admin: str) -> list[str]:
        """
        Add an emergency admin.

        Raises:
            UnauthorizedError: Caller is not an admin
            InvalidStateError: Maximum number of admins reached
        """
        self._require_admin(admin, "add_emergency_admin")
        with self._state_lock:
            if new_admin in self.emergency_admins:
                return list(self.emergency_admins)
            if len(self.emergency_admins) >= MAX_EMERGENCY_ADMINS:
                raise InvalidStateError(
                    f"Maximum of {MAX_EMERGENCY_ADMINS} emergency admins reached",
                    action="add_emergency_admin",
                    component="moderation",
                )
            self.emergency_admins.append(new_admin)
            admins = list(self.emergency_admins)
        self._emit_event("EmergencyAdminAdded", {"new_admin": new_admin, "added_by": admin})
        return admins

    def remove_emergency_admin(self, admin: str, target: str) -> list[str]:
        """
        Remove an emergency admin; the last one cannot be removed.

        Raises:
            UnauthorizedError: Caller is not an admin
            InvalidStateError: Target is the last admin
        """
        self._require_admin(admin, "remove_emergency_admin")
        with self._state_lock:
            if target not in self.emergency_admins:
                return list(self.emergency_admins)
            if len(self.emergency_admins) <= 1:
                raise InvalidStateError(
                    "Cannot remove the last emergency admin",
                    action="remove_emergency_admin",
                    component="moderation",
                )
            self.emergency_admins.remove(target)
            admins = list(self.emergency_admins)
        self._emit_event("EmergencyAdminRemoved", {"removed_admin": target, "removed_by": admin})
        return admins

    # ==================== INTERNALS ====================

    def _now(self) -> int:
        return int(self.clock())

    def _require_active(self, action: str) -> None:
        if self.paused:
            raise ProtocolPausedError(action)

    def _require_admin(self, admin: str, action: str) -> None:
        if admin not in self.emergency_admins:
            raise UnauthorizedError(admin, action)

    def _check_daily_limit(self, name: str, count: int, limit: int, now: int) -> None:
        # Caller holds _state_lock
        if now - self.daily_window_start >= DAILY_WINDOW_SECONDS:
            self.daily_submission_count = 0
            self.daily_vote_count = 0
            self.daily_window_start = now
            count = 0
        if count >= limit:
            raise RateLimitExceededError(name, limit, self.daily_window_start + DAILY_WINDOW_SECONDS)

    def _emit_finalized(self, record: ContentRecord, tally: OutcomeTally, reason: str) -> None:
        self._emit_event("DecisionFinalized", {
            "content_id": record.content_id,
            "outcome": record.outcome,
            "reason": reason,
            "approve_stake": tally.approve_stake,
            "reject_stake": tally.reject_stake,
            "voter_count": tally.voter_count,
        })
        metrics.increment("content_finalized_total", labels={"outcome": record.outcome})

    def _emit_settled(self, record: SettlementRecord) -> None:
        self._emit_event("RewardSettled", asdict(record))
        metrics.increment("settlements_total", labels={"won": str(record.won).lower()})
        if record.reward:
            metrics.increment("rewards_paid_total", value=record.reward)

    def _emit_event(self, event_type: str, data: dict[str, Any]) -> None:
        """Emit an event for audit trail."""
        event = {
            "event_type": event_type,
            "timestamp": datetime.utcnow().isoformat(),
            "data": data,
        }
        with self._state_lock:
            self.events.append(event)
            if len(self.events) > MAX_EVENTS:
                del self.events[: len(self.events) - MAX_EVENTS]
        logger.debug("Event %s: %s", event_type, data)

    # ==================== PERSISTENCE ====================

    def to_dict(self) -> dict[str, Any]:
        """Snapshot the complete moderation state."""
        with self._state_lock:
            return {
                "version": PROTOCOL_VERSION,
                "config": self.config.to_dict(),
                "protocol": {
                    "paused": self.paused,
                    "emergency_admins": list(self.emergency_admins),
                    "daily_submission_count": self.daily_submission_count,
                    "daily_vote_count": self.daily_vote_count,
                    "daily_window_start": self.daily_window_start,
                    "total_submissions": self.total_submissions,
                    "total_votes": self.total_votes,
                },
                "registry": self.registry.to_dict(),
                "ledger": self.ledger.to_dict(),
                "voting": self.engine.to_dict(),
                "reward_pool": self.pool.to_dict(),
                "distributor": self.distributor.to_dict(),
                "events": list(self.events),
            }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        clock: Callable[[], float] | None = None,
        lock_manager: LockManager | None = None,
    ) -> "ModerationOrchestrator":
        """Restore an orchestrator from a to_dict() snapshot."""
        config = ModerationConfig.from_dict(data.get("config", {}))
        protocol = data.get("protocol", {})
        admins = protocol.get("emergency_admins") or ["protocol-admin"]

        orchestrator = cls(config=config, admin=admins[0], clock=clock, lock_manager=lock_manager)
        orchestrator.emergency_admins = list(admins)
        orchestrator.paused = protocol.get("paused", False)
        orchestrator.daily_submission_count = protocol.get("daily_submission_count", 0)
        orchestrator.daily_vote_count = protocol.get("daily_vote_count", 0)
        orchestrator.daily_window_start = protocol.get("daily_window_start", orchestrator.daily_window_start)
        orchestrator.total_submissions = protocol.get("total_submissions", 0)
        orchestrator.total_votes = protocol.get("total_votes", 0)

        orchestrator.registry = ContentRegistry.from_dict(data.get("registry", {}))
        orchestrator.ledger = StakeLedger.from_dict(data.get("ledger", {}))
        orchestrator.engine = VotingEngine.from_dict(data.get("voting", {}), orchestrator.ledger, config)
        orchestrator.pool = RewardPool.from_dict(data.get("reward_pool", {}))
        orchestrator.distributor = RewardDistributor.from_dict(
            data.get("distributor", {}), orchestrator.ledger, orchestrator.engine, orchestrator.pool, config
        )
        orchestrator.events = list(data.get("events", []))
        return orchestrator
