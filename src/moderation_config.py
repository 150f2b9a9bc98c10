"""
LunarScry - Moderation Configuration

Policy knobs for the moderation core: AI gate threshold, voting window,
quorum, reward formula and anti-abuse limits. Values come from defaults,
explicit keyword arguments, or MODERATION_* environment variables.
"""

import os
from dataclasses import asdict, dataclass, field
from typing import Any

from moderation_exceptions import InvalidConfigurationError

PROTOCOL_VERSION = 3

# Bounds
MIN_VOTING_PERIOD = 86400      # 1 day
MAX_VOTING_PERIOD = 2592000    # 30 days
MAX_EMERGENCY_ADMINS = 10
DAILY_WINDOW_SECONDS = 86400
BPS_DENOMINATOR = 10000

SUPPORTED_CATEGORIES = ("text", "image", "link")


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if raw is None:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise InvalidConfigurationError(name, raw, "must be an integer") from e


@dataclass
class ModerationConfig:
    """Configuration for the moderation state machine."""

    # AI gate
    ai_score_threshold: int = 50
    authorized_scorers: list[str] = field(default_factory=lambda: ["ai-score-gate"])

    # Voting window and quorum
    voting_window_seconds: int = 86400
    quorum_min_voters: int = 3
    quorum_min_stake: int = 1000

    # Rewards
    reward_per_content: int = 100
    loser_penalty_bps: int = 0  # Basis points of a losing vote's stake forfeited to the pool

    # Anti-abuse limits
    min_vote_stake: int = 1
    max_stake_per_user: int = 10_000_000_000
    vote_cooldown_seconds: int = 10
    max_daily_submissions: int = 10000
    max_daily_votes: int = 100000
    max_fingerprint_length: int = 64

    @classmethod
    def from_env(cls, **overrides: Any) -> "ModerationConfig":
        """Create configuration from environment variables."""
        config = cls(
            ai_score_threshold=_env_int("MODERATION_AI_THRESHOLD", 50),
            authorized_scorers=_env_list("MODERATION_AUTHORIZED_SCORERS", ["ai-score-gate"]),
            voting_window_seconds=_env_int("MODERATION_VOTING_WINDOW", 86400),
            quorum_min_voters=_env_int("MODERATION_QUORUM_MIN_VOTERS", 3),
            quorum_min_stake=_env_int("MODERATION_QUORUM_MIN_STAKE", 1000),
            reward_per_content=_env_int("MODERATION_REWARD_PER_CONTENT", 100),
            loser_penalty_bps=_env_int("MODERATION_LOSER_PENALTY_BPS", 0),
            min_vote_stake=_env_int("MODERATION_MIN_VOTE_STAKE", 1),
            max_stake_per_user=_env_int("MODERATION_MAX_STAKE_PER_USER", 10000000000),
            vote_cooldown_seconds=_env_int("MODERATION_VOTE_COOLDOWN", 10),
            max_daily_submissions=_env_int("MODERATION_MAX_DAILY_SUBMISSIONS", 10000),
            max_daily_votes=_env_int("MODERATION_MAX_DAILY_VOTES", 100000),
        )
        for key, value in overrides.items():
            setattr(config, key, value)
        return config.validate()

    def validate(self) -> "ModerationConfig":
        """
        Check every field against its allowed bounds.

        Returns:
            self, so construction can be chained

        Raises:
            InvalidConfigurationError: On the first out-of-bounds field
        """
        if not 0 <= self.ai_score_threshold <= 100:
            raise InvalidConfigurationError(
                "ai_score_threshold", self.ai_score_threshold, "must be within 0-100"
            )
        if not MIN_VOTING_PERIOD <= self.voting_window_seconds <= MAX_VOTING_PERIOD:
            raise InvalidConfigurationError(
                "voting_window_seconds",
                self.voting_window_seconds,
                f"must be within {MIN_VOTING_PERIOD}-{MAX_VOTING_PERIOD}",
            )
        if self.quorum_min_voters < 1:
            raise InvalidConfigurationError("quorum_min_voters", self.quorum_min_voters, "must be >= 1")
        if self.quorum_min_stake < 0:
            raise InvalidConfigurationError("quorum_min_stake", self.quorum_min_stake, "must be >= 0")
        if self.reward_per_content <= 0:
            raise InvalidConfigurationError("reward_per_content", self.reward_per_content, "must be > 0")
        if not 0 <= self.loser_penalty_bps <= BPS_DENOMINATOR:
            raise InvalidConfigurationError(
                "loser_penalty_bps", self.loser_penalty_bps, f"must be within 0-{BPS_DENOMINATOR}"
            )
        if self.min_vote_stake < 1:
            raise InvalidConfigurationError("min_vote_stake", self.min_vote_stake, "must be >= 1")
        if self.max_stake_per_user < self.min_vote_stake:
            raise InvalidConfigurationError(
                "max_stake_per_user", self.max_stake_per_user, "must be >= min_vote_stake"
            )
        if self.vote_cooldown_seconds < 0:
            raise InvalidConfigurationError(
                "vote_cooldown_seconds", self.vote_cooldown_seconds, "must be >= 0"
            )
        if self.max_daily_submissions < 1:
            raise InvalidConfigurationError(
                "max_daily_submissions", self.max_daily_submissions, "must be >= 1"
            )
        if self.max_daily_votes < 1:
            raise InvalidConfigurationError("max_daily_votes", self.max_daily_votes, "must be >= 1")
        if not self.authorized_scorers:
            raise InvalidConfigurationError("authorized_scorers", self.authorized_scorers, "must not be empty")
        return self

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ModerationConfig":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known).validate()
