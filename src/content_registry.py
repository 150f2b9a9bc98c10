"""
LunarScry - Content Registry & Lifecycle State Machine

Stores submitted content records (fingerprints only, never raw payloads)
and enforces the lifecycle:

    Pending -> Flagged -> Voting -> {Approved | Rejected | Expired}
    Pending -> Approved                      (benign, approved by the AI gate)

Transitions only move forward; a record in a terminal state is immutable.
A fingerprint may be resubmitted only once its previous record expired.
"""

import copy
import hashlib
import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from moderation_config import SUPPORTED_CATEGORIES
from moderation_exceptions import (
    ContentNotFoundError,
    DuplicateContentError,
    InvalidContentError,
    InvalidStateError,
)

logger = logging.getLogger(__name__)


class ContentCategory(Enum):
    """Kinds of content that can be submitted."""
    TEXT = "text"
    IMAGE = "image"
    LINK = "link"


class ContentState(Enum):
    """Lifecycle states of a content record."""
    PENDING = "pending"      # Submitted, awaiting AI score
    FLAGGED = "flagged"      # Score >= threshold, awaiting window open
    VOTING = "voting"        # Window open, accepting votes
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"      # Quorum not met

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


class Outcome(Enum):
    """Final outcome recorded on a terminal record."""
    APPROVED_BY_AI = "approved_by_ai"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


TERMINAL_STATES = frozenset({ContentState.APPROVED, ContentState.REJECTED, ContentState.EXPIRED})

ALLOWED_TRANSITIONS = {
    ContentState.PENDING: {ContentState.FLAGGED, ContentState.APPROVED},
    ContentState.FLAGGED: {ContentState.VOTING},
    ContentState.VOTING: {ContentState.APPROVED, ContentState.REJECTED, ContentState.EXPIRED},
    ContentState.APPROVED: set(),
    ContentState.REJECTED: set(),
    ContentState.EXPIRED: set(),
}


def compute_fingerprint(payload: str | bytes) -> str:
    """
    Fingerprint a raw text/image/link payload.

    Args:
        payload: Raw content; text is UTF-8 encoded before hashing

    Returns:
        SHA-256 hex digest (64 characters)
    """
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


@dataclass
class ContentRecord:
    """A submitted content item and its lifecycle position."""
    content_id: str
    submitter: str
    fingerprint: str
    category: str
    created_at: int
    state: str = ContentState.PENDING.value
    ai_score: int | None = None
    voting_start: int | None = None
    voting_end: int | None = None
    outcome: str | None = None
    outcome_reason: str | None = None
    finalized_at: int | None = None
    history: list[dict[str, Any]] = field(default_factory=list)

    @property
    def lifecycle_state(self) -> ContentState:
        return ContentState(self.state)

    @property
    def is_terminal(self) -> bool:
        return self.lifecycle_state.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ContentRegistry:
    """
    Registry of content records keyed by content id.

    Only the moderation orchestrator should call the transition methods;
    everyone else reads snapshots via get()/list_records().
    """

    def __init__(self, max_fingerprint_length: int = 64):
        self.max_fingerprint_length = max_fingerprint_length
        self._records: dict[str, ContentRecord] = {}
        self._by_fingerprint: dict[str, str] = {}  # fingerprint -> latest content_id
        self._sequence = 0
        self._lock = threading.RLock()

    # ==================== SUBMISSION ====================

    def submit(self, fingerprint: str, category: str, submitter: str, now: int) -> ContentRecord:
        """
        Register a new content record in Pending.

        Args:
            fingerprint: Hash of the content payload
            category: One of text, image, link
            submitter: Identity of the submitter
            now: Current unix timestamp

        Returns:
            Snapshot of the created record

        Raises:
            InvalidContentError: Unsupported category or malformed fingerprint
            DuplicateContentError: Fingerprint has a non-expired record
        """
        category = category.value if isinstance(category, ContentCategory) else category
        if category not in SUPPORTED_CATEGORIES:
            raise InvalidContentError(
                f"Unsupported content category: {category}",
                {"category": category, "supported": list(SUPPORTED_CATEGORIES)},
            )
        if not isinstance(fingerprint, str) or not fingerprint:
            raise InvalidContentError("Fingerprint is required", {"fingerprint": fingerprint})
        if len(fingerprint) > self.max_fingerprint_length:
            raise InvalidContentError(
                f"Fingerprint exceeds {self.max_fingerprint_length} characters",
                {"length": len(fingerprint)},
            )
        if not submitter:
            raise InvalidContentError("Submitter identity is required")

        with self._lock:
            existing_id = self._by_fingerprint.get(fingerprint)
            if existing_id is not None:
                existing = self._records[existing_id]
                if existing.lifecycle_state != ContentState.EXPIRED:
                    raise DuplicateContentError(fingerprint, existing_id)

            self._sequence += 1
            content_id = self._generate_content_id(fingerprint, submitter, now, self._sequence)
            record = ContentRecord(
                content_id=content_id,
                submitter=submitter,
                fingerprint=fingerprint,
                category=category,
                created_at=now,
                history=[{"state": ContentState.PENDING.value, "at": now}],
            )
            self._records[content_id] = record
            self._by_fingerprint[fingerprint] = content_id

        logger.info("Content %s submitted by %s (%s)", content_id, submitter, category)
        return copy.deepcopy(record)

    # ==================== LIFECYCLE ====================

    def transition(
        self,
        content_id: str,
        new_state: ContentState,
        now: int,
        outcome: Outcome | None = None,
        reason: str | None = None,
    ) -> ContentRecord:
        """
        Move a record forward in its lifecycle.

        Raises:
            ContentNotFoundError: Unknown content id
            InvalidStateError: Transition not allowed from the current state
        """
        with self._lock:
            record = self._require(content_id)
            current = record.lifecycle_state
            if new_state not in ALLOWED_TRANSITIONS[current]:
                raise InvalidStateError(
                    f"Cannot move {content_id} from {current.value} to {new_state.value}",
                    content_id=content_id,
                    current_state=current.value,
                    expected=[s.value for s in ALLOWED_TRANSITIONS[current]],
                )
            record.state = new_state.value
            record.history.append({"state": new_state.value, "at": now})
            if new_state.is_terminal:
                record.outcome = outcome.value if outcome else new_state.value
                record.outcome_reason = reason
                record.finalized_at = now

        logger.info("Content %s: %s -> %s", content_id, current.value, new_state.value)
        return copy.deepcopy(record)

    def record_score(self, content_id: str, score: int) -> None:
        """Attach the AI confidence score; only allowed while Pending."""
        with self._lock:
            record = self._require(content_id)
            if record.lifecycle_state != ContentState.PENDING:
                raise InvalidStateError(
                    f"Score can only be applied to pending content ({content_id} is {record.state})",
                    content_id=content_id,
                    current_state=record.state,
                    expected=[ContentState.PENDING.value],
                    action="apply_score",
                )
            record.ai_score = score

    def open_window(self, content_id: str, start: int, end: int) -> None:
        """Stamp the voting window on a Flagged record."""
        with self._lock:
            record = self._require(content_id)
            if record.lifecycle_state != ContentState.FLAGGED:
                raise InvalidStateError(
                    f"Voting window can only open on flagged content ({content_id} is {record.state})",
                    content_id=content_id,
                    current_state=record.state,
                    expected=[ContentState.FLAGGED.value],
                    action="open_window",
                )
            record.voting_start = start
            record.voting_end = end

    # ==================== QUERIES ====================

    def get(self, content_id: str) -> ContentRecord:
        """
        Snapshot of a record.

        Raises:
            ContentNotFoundError: Unknown content id
        """
        with self._lock:
            return copy.deepcopy(self._require(content_id))

    def find_by_fingerprint(self, fingerprint: str) -> ContentRecord | None:
        with self._lock:
            content_id = self._by_fingerprint.get(fingerprint)
            return copy.deepcopy(self._records[content_id]) if content_id else None

    def list_records(
        self,
        state: ContentState | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ContentRecord]:
        """List records, newest first, optionally filtered by state."""
        with self._lock:
            records = list(self._records.values())
        if state is not None:
            records = [r for r in records if r.state == state.value]
        records.sort(key=lambda r: (r.created_at, r.content_id), reverse=True)
        return [copy.deepcopy(r) for r in records[offset:offset + limit]]

    def count_by_state(self) -> dict[str, int]:
        counts = {s.value: 0 for s in ContentState}
        with self._lock:
            for record in self._records.values():
                counts[record.state] += 1
        return counts

    def __len__(self) -> int:
        return len(self._records)

    # ==================== INTERNALS ====================

    def _require(self, content_id: str) -> ContentRecord:
        record = self._records.get(content_id)
        if record is None:
            raise ContentNotFoundError(content_id)
        return record

    def _generate_content_id(self, fingerprint: str, submitter: str, now: int, sequence: int) -> str:
        """Generate unique content ID."""
        data = {
            "fingerprint": fingerprint,
            "submitter": submitter,
            "timestamp": now,
            "sequence": sequence,
        }
        hash_input = json.dumps(data, sort_keys=True)
        return f"CONTENT-{hashlib.sha256(hash_input.encode()).hexdigest()[:16].upper()}"

    # ==================== PERSISTENCE ====================

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "max_fingerprint_length": self.max_fingerprint_length,
                "sequence": self._sequence,
                "records": [asdict(r) for r in self._records.values()],
            }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContentRegistry":
        registry = cls(max_fingerprint_length=data.get("max_fingerprint_length", 64))
        registry._sequence = data.get("sequence", 0)
        for item in data.get("records", []):
            record = ContentRecord(**item)
            registry._records[record.content_id] = record
        # Rebuild fingerprint index so the latest record per fingerprint wins
        for record in sorted(registry._records.values(), key=lambda r: r.created_at):
            registry._by_fingerprint[record.fingerprint] = record.content_id
        return registry
