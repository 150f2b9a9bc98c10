"""
LunarScry - Stake Ledger

Tracks each participant's staked balance and the portion of it locked in
active votes.

Invariant: 0 <= locked <= total for every account, after every operation.

Write access:
- stake/unstake: the participant (via the orchestrator)
- lock/relock: the voting engine, when a vote is cast or replaced
- unlock: the voting engine (withdrawal) and the orchestrator (window close)
- credit/forfeit: the reward distributor, after a terminal outcome
"""

import copy
import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any

from moderation_exceptions import (
    InsufficientStakeError,
    InsufficientUnlockedError,
    InvalidAmountError,
)

logger = logging.getLogger(__name__)


@dataclass
class StakeAccount:
    """Staked balance of one participant, in the smallest indivisible unit."""
    owner: str
    total: int = 0
    locked: int = 0
    rewards_earned: int = 0
    penalties_paid: int = 0

    @property
    def unlocked(self) -> int:
        return self.total - self.locked

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["unlocked"] = self.unlocked
        return data


def _require_positive(amount: Any, action: str) -> None:
    # bool is an int subclass; True must not pass as 1 unit
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise InvalidAmountError(f"{action} amount must be a positive integer", amount, action)


class StakeLedger:
    """
    Exclusive owner of stake accounts.

    All mutations hold a re-entrant lock so that each one is atomic with
    respect to the read-check-write of a single account.
    """

    def __init__(self, max_stake_per_user: int | None = None):
        """
        Initialize an empty ledger.

        Args:
            max_stake_per_user: Optional cap on a participant's staked total
        """
        self.max_stake_per_user = max_stake_per_user
        self._accounts: dict[str, StakeAccount] = {}
        self._lock = threading.RLock()

    def _account(self, owner: str) -> StakeAccount:
        account = self._accounts.get(owner)
        if account is None:
            account = StakeAccount(owner=owner)
            self._accounts[owner] = account
        return account

    # ==================== PARTICIPANT OPERATIONS ====================

    def stake(self, owner: str, amount: int) -> StakeAccount:
        """
        Add stake to an account. Locked amount is unchanged.

        Raises:
            InvalidAmountError: If amount is not positive or the per-user cap is exceeded
        """
        _require_positive(amount, "stake")
        with self._lock:
            account = self._account(owner)
            if self.max_stake_per_user is not None and account.total + amount > self.max_stake_per_user:
                raise InvalidAmountError(
                    f"Stake would exceed per-user maximum of {self.max_stake_per_user}",
                    amount,
                    "stake",
                )
            account.total += amount
            logger.info("Staked %d for %s (total=%d)", amount, owner, account.total)
            return copy.copy(account)

    def unstake(self, owner: str, amount: int) -> StakeAccount:
        """
        Withdraw unlocked stake.

        Raises:
            InsufficientUnlockedError: If amount exceeds total - locked
        """
        _require_positive(amount, "unstake")
        with self._lock:
            account = self._account(owner)
            if amount > account.unlocked:
                raise InsufficientUnlockedError(owner, amount, account.unlocked)
            account.total -= amount
            logger.info("Unstaked %d for %s (total=%d)", amount, owner, account.total)
            return copy.copy(account)

    # ==================== VOTE LOCKING ====================

    def lock(self, owner: str, amount: int) -> StakeAccount:
        """
        Lock stake behind a vote.

        Raises:
            InsufficientStakeError: If locking would exceed the account total
        """
        _require_positive(amount, "lock")
        with self._lock:
            account = self._account(owner)
            if amount > account.unlocked:
                raise InsufficientStakeError(owner, amount, account.unlocked, action="lock")
            account.locked += amount
            return copy.copy(account)

    def unlock(self, owner: str, amount: int) -> StakeAccount:
        """
        Release previously locked stake.

        Raises:
            InvalidAmountError: If more is released than is locked
        """
        _require_positive(amount, "unlock")
        with self._lock:
            account = self._account(owner)
            if amount > account.locked:
                raise InvalidAmountError(
                    f"Cannot unlock {amount}; only {account.locked} locked for {owner}",
                    amount,
                    "unlock",
                )
            account.locked -= amount
            return copy.copy(account)

    def relock(self, owner: str, old_amount: int, new_amount: int) -> StakeAccount:
        """
        Replace a locked amount with a new one in a single step.

        The previously locked amount counts towards availability, so a
        voter with 100 staked and 40 locked may relock to 100.

        Raises:
            InsufficientStakeError: If new_amount exceeds unlocked + old_amount
        """
        _require_positive(new_amount, "lock")
        with self._lock:
            account = self._account(owner)
            if old_amount > account.locked:
                raise InvalidAmountError(
                    f"Cannot release {old_amount}; only {account.locked} locked for {owner}",
                    old_amount,
                    "relock",
                )
            available = account.unlocked + old_amount
            if new_amount > available:
                raise InsufficientStakeError(owner, new_amount, available, action="lock")
            account.locked = account.locked - old_amount + new_amount
            return copy.copy(account)

    # ==================== SETTLEMENT ADJUSTMENTS ====================

    def credit(self, owner: str, amount: int) -> StakeAccount:
        """Credit a reward to an account's staked total."""
        _require_positive(amount, "credit")
        with self._lock:
            account = self._account(owner)
            account.total += amount
            account.rewards_earned += amount
            return copy.copy(account)

    def forfeit(self, owner: str, amount: int) -> StakeAccount:
        """
        Remove a penalty from an account's unlocked stake.

        Raises:
            InsufficientUnlockedError: If the penalty exceeds the unlocked balance
        """
        _require_positive(amount, "forfeit")
        with self._lock:
            account = self._account(owner)
            if amount > account.unlocked:
                raise InsufficientUnlockedError(owner, amount, account.unlocked)
            account.total -= amount
            account.penalties_paid += amount
            return copy.copy(account)

    # ==================== QUERIES ====================

    def get_account(self, owner: str) -> StakeAccount:
        """Snapshot of an account (a zero account if the owner never staked)."""
        with self._lock:
            account = self._accounts.get(owner)
            return copy.copy(account) if account else StakeAccount(owner=owner)

    def available(self, owner: str) -> int:
        return self.get_account(owner).unlocked

    def accounts(self) -> list[StakeAccount]:
        with self._lock:
            return [copy.copy(a) for a in self._accounts.values()]

    def totals(self) -> dict[str, int]:
        with self._lock:
            return {
                "participants": len(self._accounts),
                "total_staked": sum(a.total for a in self._accounts.values()),
                "total_locked": sum(a.locked for a in self._accounts.values()),
            }

    def check_invariants(self) -> bool:
        """True if every account satisfies 0 <= locked <= total."""
        with self._lock:
            return all(0 <= a.locked <= a.total for a in self._accounts.values())

    # ==================== PERSISTENCE ====================

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "max_stake_per_user": self.max_stake_per_user,
                "accounts": [asdict(a) for a in self._accounts.values()],
            }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StakeLedger":
        ledger = cls(max_stake_per_user=data.get("max_stake_per_user"))
        for item in data.get("accounts", []):
            account = StakeAccount(**item)
            ledger._accounts[account.owner] = account
        return ledger
