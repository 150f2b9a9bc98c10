"""
LunarScry API Package.

Flask blueprints exposing the moderation core over HTTP.

Blueprints:
- content: submission, scoring, finalization, settlement
- voting: cast, withdraw, tallies
- staking: stake, unstake, accounts
- admin: pause, emergency admins, reward pool, events, status
- identity: participant public keys
- monitoring: health and metrics
"""

import logging

from flask import Flask, jsonify

from api.admin import admin_bp
from api.content import content_bp
from api.identity import identity_bp
from api.monitoring import monitoring_bp
from api.staking import staking_bp
from api.utils import error_response
from api.voting import voting_bp
from api import state
from moderation_exceptions import ModerationError
from monitoring import setup_request_logging
from storage import StorageError

logger = logging.getLogger(__name__)

# Tuple format: (blueprint, url_prefix); admin_bp carries its own prefix
ALL_BLUEPRINTS = [
    (content_bp, ""),
    (voting_bp, ""),
    (staking_bp, ""),
    (admin_bp, None),
    (identity_bp, ""),
    (monitoring_bp, ""),
]


def register_blueprints(app: Flask) -> None:
    """Register all blueprints with the Flask app."""
    for blueprint, url_prefix in ALL_BLUEPRINTS:
        app.register_blueprint(blueprint, url_prefix=url_prefix)


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ModerationError)
    def handle_moderation_error(error: ModerationError):
        return error_response(error)

    @app.errorhandler(StorageError)
    def handle_storage_error(error: StorageError):
        logger.error("Failed to persist moderation state: %s", error)
        return jsonify({"error": "Storage failure", "details": str(error)}), 500

    @app.errorhandler(TimeoutError)
    def handle_lock_timeout(error: TimeoutError):
        logger.warning("Lock timeout: %s", error)
        return jsonify({"error": "Content is busy, retry shortly"}), 503

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({"error": "Endpoint not found"}), 404

    @app.errorhandler(500)
    def internal_error(error):
        return jsonify({"error": "Internal server error"}), 500


def create_app(
    orchestrator=None,
    storage_backend=None,
    scorer=None,
    identity_registry=None,
) -> Flask:
    """
    Build the Flask application.

    Args:
        orchestrator: ModerationOrchestrator to serve (restored from storage when None)
        storage_backend: StorageBackend (from STORAGE_BACKEND when None)
        scorer: ContentScorer for the AI Score Gate
        identity_registry: IdentityRegistry for request signatures
    """
    app = Flask(__name__)
    app.json.sort_keys = False

    state.init_state(orchestrator, storage_backend, scorer, identity_registry)
    setup_request_logging(app)
    register_blueprints(app)
    register_error_handlers(app)
    return app
