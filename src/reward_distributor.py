"""
LunarScry - Reward Distributor

Settles voters once a content item reaches Approved or Rejected through
community voting.

Policy:
- A content budget of min(reward_per_content, pool balance) is reserved
  from the reward pool at the terminal transition.
- Each winning voter is unlocked and credited
  budget * stake_amount // total_winning_stake.
- Each losing voter is unlocked; loser_penalty_bps of the committed stake
  is forfeited to the reward pool (0 by default, i.e. no reward only).
- Rounding dust returns to the pool once every voter is settled.

Settlement is keyed by (content_id, voter) and recorded before the vote
record is reclaimed, so retrying any settlement never pays twice.
"""

import copy
import hashlib
import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from content_registry import Outcome
from moderation_config import BPS_DENOMINATOR, ModerationConfig
from moderation_exceptions import InvalidAmountError, InvalidStateError, SettlementError
from stake_ledger import StakeLedger
from voting_engine import OutcomeTally, VoteDirection, VotingEngine

logger = logging.getLogger(__name__)

# Oldest pool movements are dropped beyond this many
MAX_POOL_MOVEMENTS = 10000


@dataclass
class PoolMovement:
    """Record of a reward pool inflow or outflow."""
    movement_id: str
    kind: str  # funding, penalty, reserve, dust_return
    amount: int
    source: str
    timestamp: str


class RewardPool:
    """
    Protocol reward balance.

    Funded externally (treasury deposits, mint) and by forfeited penalties;
    drained only by content budget reservations.
    """

    def __init__(self, initial_balance: int = 0):
        self.balance = initial_balance
        self.total_funded = initial_balance
        self.total_reserved = 0
        self.movements: list[PoolMovement] = []
        self.movement_count = 0
        self._lock = threading.RLock()

    def fund(self, amount: int, source: str) -> int:
        """
        Deposit into the pool.

        Returns:
            New pool balance
        """
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise InvalidAmountError("Funding amount must be a positive integer", amount, "fund", "reward_pool")
        with self._lock:
            self.balance += amount
            self.total_funded += amount
            self._record("funding", amount, source)
            return self.balance

    def receive_penalty(self, amount: int, source: str) -> None:
        with self._lock:
            self.balance += amount
            self._record("penalty", amount, source)

    def reserve(self, requested: int, content_id: str) -> int:
        """Reserve up to `requested` for a content budget; returns the amount reserved."""
        with self._lock:
            reserved = min(requested, self.balance)
            if reserved > 0:
                self.balance -= reserved
                self.total_reserved += reserved
                self._record("reserve", reserved, content_id)
            return reserved

    def return_dust(self, amount: int, content_id: str) -> None:
        if amount <= 0:
            return
        with self._lock:
            self.balance += amount
            self.total_reserved -= amount
            self._record("dust_return", amount, content_id)

    def get_balance(self) -> dict[str, int]:
        with self._lock:
            return {
                "balance": self.balance,
                "total_funded": self.total_funded,
                "total_reserved": self.total_reserved,
            }

    def _record(self, kind: str, amount: int, source: str) -> None:
        timestamp = datetime.utcnow().isoformat()
        hash_input = json.dumps(
            {"kind": kind, "amount": amount, "source": source, "n": self.movement_count, "ts": timestamp},
            sort_keys=True,
        )
        self.movements.append(PoolMovement(
            movement_id=f"POOL-{hashlib.sha256(hash_input.encode()).hexdigest()[:12].upper()}",
            kind=kind,
            amount=amount,
            source=source,
            timestamp=timestamp,
        ))
        self.movement_count += 1
        if len(self.movements) > MAX_POOL_MOVEMENTS:
            del self.movements[: len(self.movements) - MAX_POOL_MOVEMENTS]

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "balance": self.balance,
                "total_funded": self.total_funded,
                "total_reserved": self.total_reserved,
                "movement_count": self.movement_count,
                "movements": [asdict(m) for m in self.movements],
            }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RewardPool":
        pool = cls()
        pool.balance = data.get("balance", 0)
        pool.total_funded = data.get("total_funded", 0)
        pool.total_reserved = data.get("total_reserved", 0)
        pool.movements = [PoolMovement(**m) for m in data.get("movements", [])]
        pool.movement_count = data.get("movement_count", len(pool.movements))
        return pool


@dataclass
class SettlementRecord:
    """Result of settling one voter on one content item."""
    content_id: str
    voter: str
    direction: str
    stake_amount: int
    won: bool
    reward: int
    penalty: int
    settled_at: int


@dataclass
class ContentSettlement:
    """Distribution state of one finalized content item."""
    content_id: str
    outcome: str
    winning_direction: str
    total_winning_stake: int
    budget: int
    paid: int = 0
    pending: list[str] = field(default_factory=list)
    completed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class RewardDistributor:
    """Only writer of reward and penalty adjustments to stake accounts."""

    def __init__(
        self,
        ledger: StakeLedger,
        engine: VotingEngine,
        pool: RewardPool,
        config: ModerationConfig,
    ):
        self.ledger = ledger
        self.engine = engine
        self.pool = pool
        self.config = config
        self._distributions: dict[str, ContentSettlement] = {}
        self._settlements: dict[tuple[str, str], SettlementRecord] = {}
        self._lock = threading.RLock()

    def begin(self, content_id: str, outcome: Outcome, tally: OutcomeTally) -> ContentSettlement:
        """
        Open distribution for a content item that just reached Approved/Rejected.

        Reserves the content budget from the pool. Calling again for the
        same content returns the existing distribution.
        """
        if outcome not in (Outcome.APPROVED, Outcome.REJECTED):
            raise InvalidStateError(
                f"Rewards are only distributed for voted outcomes, not {outcome.value}",
                content_id=content_id,
                current_state=outcome.value,
                expected=[Outcome.APPROVED.value, Outcome.REJECTED.value],
                action="begin_distribution",
                component="reward_distributor",
            )
        with self._lock:
            existing = self._distributions.get(content_id)
            if existing is not None:
                return copy.deepcopy(existing)

            winning = VoteDirection.APPROVE if outcome == Outcome.APPROVED else VoteDirection.REJECT
            winning_stake = tally.approve_stake if winning == VoteDirection.APPROVE else tally.reject_stake
            budget = self.pool.reserve(self.config.reward_per_content, content_id)
            distribution = ContentSettlement(
                content_id=content_id,
                outcome=outcome.value,
                winning_direction=winning.value,
                total_winning_stake=winning_stake,
                budget=budget,
                pending=sorted(v.voter for v in self.engine.votes_for(content_id)),
            )
            self._distributions[content_id] = distribution

        logger.info(
            "Distribution opened for %s: outcome=%s budget=%d voters=%d",
            content_id, outcome.value, budget, len(distribution.pending),
        )
        return copy.deepcopy(distribution)

    def settle(self, content_id: str, voter: str, now: int) -> SettlementRecord:
        """
        Settle a single voter. Safe to retry: a recorded settlement is
        returned as-is without paying again.

        Raises:
            InvalidStateError: No open distribution, or voter did not vote
        """
        with self._lock:
            existing = self._settlements.get((content_id, voter))
            if existing is not None:
                return copy.copy(existing)

            distribution = self._distributions.get(content_id)
            if distribution is None:
                raise InvalidStateError(
                    f"No distribution open for {content_id}",
                    content_id=content_id,
                    action="settle",
                    component="reward_distributor",
                )
            vote = self.engine.get_vote(content_id, voter)
            if vote is None:
                raise InvalidStateError(
                    f"{voter} has no vote to settle on {content_id}",
                    content_id=content_id,
                    action="settle",
                    component="reward_distributor",
                )

            won = vote.direction == distribution.winning_direction
            reward = 0
            penalty = 0
            self.ledger.unlock(voter, vote.stake_amount)
            if won:
                if distribution.total_winning_stake > 0:
                    reward = distribution.budget * vote.stake_amount // distribution.total_winning_stake
                if reward > 0:
                    self.ledger.credit(voter, reward)
            else:
                penalty = vote.stake_amount * self.config.loser_penalty_bps // BPS_DENOMINATOR
                if penalty > 0:
                    self.ledger.forfeit(voter, penalty)
                    self.pool.receive_penalty(penalty, f"{content_id}:{voter}")

            record = SettlementRecord(
                content_id=content_id,
                voter=voter,
                direction=vote.direction,
                stake_amount=vote.stake_amount,
                won=won,
                reward=reward,
                penalty=penalty,
                settled_at=now,
            )
            self._settlements[(content_id, voter)] = record
            self.engine.reclaim(content_id, voter)

            distribution.paid += reward
            if voter in distribution.pending:
                distribution.pending.remove(voter)
            if not distribution.pending and not distribution.completed:
                distribution.completed = True
                self.pool.return_dust(distribution.budget - distribution.paid, content_id)

        logger.info(
            "Settled %s on %s: %s reward=%d penalty=%d",
            voter, content_id, "won" if won else "lost", reward, penalty,
        )
        return copy.copy(record)

    def distribute(self, content_id: str, now: int) -> list[SettlementRecord]:
        """
        Settle every pending voter of a content item.

        Resumable: voters settled by an earlier (possibly interrupted) run
        are skipped.

        Raises:
            SettlementError: A voter failed to settle; carries the voters still pending
        """
        with self._lock:
            distribution = self._distributions.get(content_id)
            if distribution is None:
                raise InvalidStateError(
                    f"No distribution open for {content_id}",
                    content_id=content_id,
                    action="distribute",
                    component="reward_distributor",
                )
            pending = list(distribution.pending)

        results = []
        for index, voter in enumerate(pending):
            try:
                results.append(self.settle(content_id, voter, now))
            except Exception as e:
                logger.error("Settlement of %s on %s failed: %s", voter, content_id, e)
                raise SettlementError(content_id, voter, pending[index:], cause=e) from e
        return results

    # ==================== QUERIES ====================

    def get_settlement(self, content_id: str, voter: str) -> SettlementRecord | None:
        with self._lock:
            record = self._settlements.get((content_id, voter))
            return copy.copy(record) if record else None

    def get_distribution(self, content_id: str) -> ContentSettlement | None:
        with self._lock:
            distribution = self._distributions.get(content_id)
            return copy.deepcopy(distribution) if distribution else None

    def settlements_for(self, content_id: str) -> list[SettlementRecord]:
        with self._lock:
            return [copy.copy(r) for (c, _), r in self._settlements.items() if c == content_id]

    def totals(self) -> dict[str, int]:
        with self._lock:
            return {
                "settlements": len(self._settlements),
                "rewards_paid": sum(r.reward for r in self._settlements.values()),
                "penalties_collected": sum(r.penalty for r in self._settlements.values()),
                "open_distributions": sum(1 for d in self._distributions.values() if not d.completed),
            }

    # ==================== PERSISTENCE ====================

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "distributions": [asdict(d) for d in self._distributions.values()],
                "settlements": [asdict(s) for s in self._settlements.values()],
            }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        ledger: StakeLedger,
        engine: VotingEngine,
        pool: RewardPool,
        config: ModerationConfig,
    ) -> "RewardDistributor":
        distributor = cls(ledger, engine, pool, config)
        for item in data.get("distributions", []):
            distribution = ContentSettlement(**item)
            distributor._distributions[distribution.content_id] = distribution
        for item in data.get("settlements", []):
            record = SettlementRecord(**item)
            distributor._settlements[(record.content_id, record.voter)] = record
        return distributor
