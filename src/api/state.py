"""
Shared state for the LunarScry API.

Holds the orchestrator, storage backend, identity registry and optional
AI score gate used by every blueprint. Blueprints access these as
attributes of this module (`state.orchestrator`) so init_state() can
swap them, e.g. for tests.
"""

import logging
import os
import threading
from typing import Any

from identity import IdentityRegistry
from moderation import ModerationOrchestrator
from moderation_config import ModerationConfig
from score_gate import AIScoreGate, ClaudeContentScorer, ContentScorer
from storage import StorageBackend, get_storage_backend

logger = logging.getLogger(__name__)

# ============================================================
# Shared State
# ============================================================

orchestrator: ModerationOrchestrator | None = None
storage: StorageBackend | None = None
identities: IdentityRegistry = IdentityRegistry()
score_gate: AIScoreGate | None = None

_save_lock = threading.Lock()


def init_state(
    orchestrator_instance: ModerationOrchestrator | None = None,
    storage_backend: StorageBackend | None = None,
    scorer: ContentScorer | None = None,
    identity_registry: IdentityRegistry | None = None,
) -> ModerationOrchestrator:
    """
    Wire up the shared instances.

    Without an explicit orchestrator the state is restored from storage
    when a snapshot exists, otherwise a fresh orchestrator is built from
    the environment. A ClaudeContentScorer is used when no scorer is given
    and ANTHROPIC_API_KEY is set. Keys in LUNARSCRY_ADMIN_PUBLIC_KEY and
    LUNARSCRY_SCORER_PUBLIC_KEY are bound to the admin and scorer names.
    """
    global orchestrator, storage, identities, score_gate

    storage = storage_backend or get_storage_backend()
    identities = identity_registry or IdentityRegistry()

    if orchestrator_instance is None:
        orchestrator_instance = _restore() or ModerationOrchestrator(
            config=ModerationConfig.from_env(),
            admin=os.getenv("LUNARSCRY_ADMIN", "protocol-admin"),
        )
    orchestrator = orchestrator_instance

    if scorer is None and os.getenv("ANTHROPIC_API_KEY"):
        scorer = ClaudeContentScorer()
    score_gate = AIScoreGate(orchestrator, scorer, gate_id=orchestrator.config.authorized_scorers[0]) if scorer else None
    _register_provisioned_keys()

    logger.info(
        "API state ready: storage=%s scorer=%s",
        storage.__class__.__name__,
        scorer.__class__.__name__ if scorer else "none",
    )
    return orchestrator


def _restore() -> ModerationOrchestrator | None:
    global identities
    data = storage.load_state()
    if not data:
        logger.info("No existing moderation state found. Starting fresh.")
        return None
    identities = IdentityRegistry.from_dict(data.get("identities", {}))
    restored = ModerationOrchestrator.from_dict(data["moderation"])
    logger.info("Loaded moderation state with %d content records", len(restored.registry))
    return restored


def snapshot() -> dict[str, Any]:
    return {"moderation": orchestrator.to_dict(), "identities": identities.to_dict()}


def save_state() -> None:
    """Persist the current state; StorageError propagates to the caller."""
    with _save_lock:
        storage.save_state(snapshot())


def is_reserved_identity(participant: str) -> bool:
    """Admin and scorer names cannot be claimed through self-registration."""
    return participant in orchestrator.emergency_admins or participant in orchestrator.config.authorized_scorers


def _register_provisioned_keys() -> None:
    """Bind the configured admin and scorer public keys."""
    provisioned = [
        (os.getenv("LUNARSCRY_ADMIN", "protocol-admin"), os.getenv("LUNARSCRY_ADMIN_PUBLIC_KEY")),
        (orchestrator.config.authorized_scorers[0], os.getenv("LUNARSCRY_SCORER_PUBLIC_KEY")),
    ]
    for participant, public_key in provisioned:
        if public_key:
            identities.register(participant, public_key)
