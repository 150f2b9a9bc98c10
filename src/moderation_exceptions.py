"""
LunarScry - Moderation Exception Hierarchy

Typed errors for every moderation component. Each exception carries a
structured ErrorContext so callers (the orchestrator, the REST API, the
logs) can report the failing component, operation and details without
parsing messages.

Quorum failure is deliberately absent: an unmet quorum is an outcome
(Expired), not an error.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ErrorSeverity(Enum):
    """Severity levels for moderation errors."""
    LOW = "low"           # Expected under normal traffic (races, retries)
    MEDIUM = "medium"     # Caller mistake, rejected input
    HIGH = "high"         # Economic or access-control violation attempt
    CRITICAL = "critical" # Internal invariant broken


@dataclass
class ErrorContext:
    """Structured context for error tracking and debugging."""
    component: str
    action: str
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat() + "Z")
    details: dict[str, Any] = field(default_factory=dict)
    severity: ErrorSeverity = ErrorSeverity.MEDIUM

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "component": self.component,
            "action": self.action,
            "timestamp": self.timestamp,
            "details": self.details,
            "severity": self.severity.value
        }


class ModerationError(Exception):
    """
    Base exception for all moderation errors.

    Includes structured error context for improved debugging
    and for serialisation by the API layer.
    """

    error_code = "moderation_error"

    def __init__(
        self,
        message: str,
        component: str = "unknown",
        action: str = "unknown",
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None
    ):
        super().__init__(message)
        self.message = message
        self.context = ErrorContext(
            component=component,
            action=action,
            severity=severity,
            details=details or {}
        )
        self.cause = cause

        if cause:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        result = {
            "error_type": type(self).__name__,
            "error_code": self.error_code,
            "message": self.message,
            **self.context.to_dict()
        }
        if self.cause:
            result["cause"] = {
                "type": type(self.cause).__name__,
                "message": str(self.cause)
            }
        return result

    def __str__(self) -> str:
        base = f"[{self.context.component}:{self.context.action}] {self.message}"
        if self.cause:
            base += f" (caused by: {self.cause})"
        return base


# =============================================================================
# Content Lifecycle Errors
# =============================================================================

class ContentNotFoundError(ModerationError):
    """Raised when a content identifier is unknown."""

    error_code = "content_not_found"

    def __init__(self, content_id: str, action: str = "lookup"):
        super().__init__(
            message=f"Content {content_id} not found",
            component="content_registry",
            action=action,
            details={"content_id": content_id}
        )
        self.content_id = content_id


class DuplicateContentError(ModerationError):
    """Raised when a fingerprint already has a live (non-expired) record."""

    error_code = "duplicate_content"

    def __init__(self, fingerprint: str, existing_id: str):
        super().__init__(
            message=f"Fingerprint already registered as {existing_id}",
            component="content_registry",
            action="submit",
            details={"fingerprint": fingerprint, "existing_content_id": existing_id}
        )
        self.fingerprint = fingerprint
        self.existing_id = existing_id


class InvalidContentError(ModerationError):
    """
    Raised when a submission is malformed.

    Examples:
    - Unsupported content category
    - Empty or over-long fingerprint
    """

    error_code = "invalid_content"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            component="content_registry",
            action="submit",
            details=details
        )


class InvalidStateError(ModerationError):
    """Raised when an operation targets a record in the wrong lifecycle state."""

    error_code = "invalid_state"

    def __init__(
        self,
        message: str,
        content_id: str | None = None,
        current_state: str | None = None,
        expected: list[str] | None = None,
        action: str = "transition",
        component: str = "content_registry"
    ):
        super().__init__(
            message=message,
            component=component,
            action=action,
            details={
                "content_id": content_id,
                "current_state": current_state,
                "expected_states": expected or [],
            }
        )
        self.content_id = content_id
        self.current_state = current_state


class VotingWindowOpenError(InvalidStateError):
    """Raised when finalization is attempted before the window end."""

    error_code = "voting_window_open"

    def __init__(self, content_id: str, window_end: int, now: int):
        super().__init__(
            message=f"Voting window for {content_id} is open until {window_end}",
            content_id=content_id,
            current_state="voting",
            action="close_window",
            component="moderation"
        )
        self.context.details.update({"window_end": window_end, "now": now})
        self.window_end = window_end


class AlreadyFinalizedError(ModerationError):
    """
    Raised when close_window observes a terminal record.

    Expected whenever several permissionless callers race to finalize;
    only the first one performs the transition.
    """

    error_code = "already_finalized"

    def __init__(self, content_id: str, state: str):
        super().__init__(
            message=f"Content {content_id} already finalized as {state}",
            component="moderation",
            action="close_window",
            severity=ErrorSeverity.LOW,
            details={"content_id": content_id, "state": state}
        )
        self.content_id = content_id
        self.state = state


class InvalidScoreError(ModerationError):
    """Raised when a confidence score falls outside 0-100."""

    error_code = "invalid_score"

    def __init__(self, score: Any):
        super().__init__(
            message=f"Confidence score must be an integer in 0-100, got {score!r}",
            component="score_gate",
            action="apply_score",
            details={"score": score}
        )


# =============================================================================
# Stake & Voting Errors
# =============================================================================

class InvalidAmountError(ModerationError):
    """Raised for zero, negative or out-of-bounds amounts."""

    error_code = "invalid_amount"

    def __init__(self, message: str, amount: Any, action: str, component: str = "stake_ledger"):
        super().__init__(
            message=message,
            component=component,
            action=action,
            details={"amount": amount}
        )
        self.amount = amount


class InsufficientStakeError(ModerationError):
    """Raised when locking (or voting with) more stake than is available."""

    error_code = "insufficient_stake"

    def __init__(self, owner: str, requested: int, available: int, action: str = "lock"):
        super().__init__(
            message=f"{owner} has {available} available stake, {requested} requested",
            component="stake_ledger",
            action=action,
            severity=ErrorSeverity.MEDIUM,
            details={"owner": owner, "requested": requested, "available": available}
        )
        self.owner = owner
        self.requested = requested
        self.available = available


class InsufficientUnlockedError(InsufficientStakeError):
    """Raised when unstaking more than the unlocked balance."""

    error_code = "insufficient_unlocked"

    def __init__(self, owner: str, requested: int, available: int):
        super().__init__(owner, requested, available, action="unstake")
        self.message = f"{owner} has {available} unlocked stake, {requested} requested"


class VotingClosedError(ModerationError):
    """Raised when a vote targets content that is not accepting votes."""

    error_code = "voting_closed"

    def __init__(self, content_id: str, reason: str, action: str = "cast_vote"):
        super().__init__(
            message=f"Voting closed for {content_id}: {reason}",
            component="voting_engine",
            action=action,
            details={"content_id": content_id, "reason": reason}
        )
        self.content_id = content_id


class VoteCooldownError(ModerationError):
    """Raised when a voter re-casts on the same content too quickly."""

    error_code = "vote_cooldown"

    def __init__(self, content_id: str, voter: str, retry_at: int):
        super().__init__(
            message=f"{voter} must wait until {retry_at} to vote again on {content_id}",
            component="voting_engine",
            action="cast_vote",
            details={"content_id": content_id, "voter": voter, "retry_at": retry_at}
        )
        self.retry_at = retry_at


# =============================================================================
# Settlement Errors
# =============================================================================

class SettlementError(ModerationError):
    """
    Raised when a distribution run stops before every voter is settled.

    The terminal transition has already been committed; re-invoking
    distribute() (or settle() per voter) resumes from the pending voters.
    """

    error_code = "settlement_failed"

    def __init__(self, content_id: str, voter: str, pending: list[str], cause: Exception | None = None):
        super().__init__(
            message=f"Settlement of {voter} on {content_id} failed; {len(pending)} voter(s) pending",
            component="reward_distributor",
            action="settle",
            severity=ErrorSeverity.HIGH,
            details={"content_id": content_id, "voter": voter, "pending": pending},
            cause=cause
        )
        self.content_id = content_id
        self.voter = voter
        self.pending = pending


# =============================================================================
# Protocol / Access Errors
# =============================================================================

class UnauthorizedError(ModerationError):
    """Raised when a caller lacks the authority for an operation."""

    error_code = "unauthorized"

    def __init__(self, caller: str, action: str, component: str = "moderation"):
        super().__init__(
            message=f"{caller} is not authorized to {action}",
            component=component,
            action=action,
            severity=ErrorSeverity.HIGH,
            details={"caller": caller}
        )
        self.caller = caller


class ProtocolPausedError(ModerationError):
    """Raised for mutating operations while the protocol is paused."""

    error_code = "protocol_paused"

    def __init__(self, action: str):
        super().__init__(
            message="Protocol is paused",
            component="moderation",
            action=action,
            severity=ErrorSeverity.LOW
        )


class RateLimitExceededError(ModerationError):
    """Raised when the daily submission or vote cap is reached."""

    error_code = "rate_limit_exceeded"

    def __init__(self, limit_name: str, limit: int, resets_at: int):
        super().__init__(
            message=f"Daily {limit_name} limit of {limit} reached",
            component="moderation",
            action=limit_name,
            severity=ErrorSeverity.LOW,
            details={"limit": limit, "resets_at": resets_at}
        )
        self.resets_at = resets_at


class InvalidConfigurationError(ModerationError):
    """Raised when configuration values fall outside their allowed bounds."""

    error_code = "invalid_configuration"

    def __init__(self, field_name: str, value: Any, reason: str):
        super().__init__(
            message=f"Invalid {field_name}={value!r}: {reason}",
            component="config",
            action="validate",
            severity=ErrorSeverity.HIGH,
            details={"field": field_name, "value": value}
        )
        self.field_name = field_name


class InvalidVoteError(ModerationError):
    """Raised when a vote direction is not Approve or Reject."""

    error_code = "invalid_vote"

    def __init__(self, direction: Any):
        super().__init__(
            message=f"Unknown vote direction: {direction!r}",
            component="voting_engine",
            action="cast_vote",
            details={"direction": direction}
        )


class ScorerError(ModerationError):
    """Raised when the external content scorer fails or answers unusably."""

    error_code = "scorer_error"

    def __init__(self, message: str, content_id: str | None = None, cause: Exception | None = None):
        super().__init__(
            message=message,
            component="score_gate",
            action="score",
            severity=ErrorSeverity.HIGH,
            details={"content_id": content_id},
            cause=cause
        )
