"""
Shared utilities for the LunarScry API.

Authentication, payload validation, pagination bounds, request signing
and the mapping from moderation errors to HTTP responses.
"""

import logging
import os
import secrets
from functools import wraps
from typing import Any

from flask import jsonify, request

from api import state
from identity import build_operation, signatures_required
from moderation_exceptions import (
    AlreadyFinalizedError,
    ContentNotFoundError,
    DuplicateContentError,
    InsufficientStakeError,
    InvalidAmountError,
    InvalidConfigurationError,
    InvalidContentError,
    InvalidScoreError,
    InvalidStateError,
    InvalidVoteError,
    ModerationError,
    ProtocolPausedError,
    RateLimitExceededError,
    ScorerError,
    SettlementError,
    UnauthorizedError,
    VoteCooldownError,
    VotingClosedError,
)

logger = logging.getLogger(__name__)

# ============================================================
# Security Configuration
# ============================================================

API_KEY = os.getenv("LUNARSCRY_API_KEY", None)
# Authentication is on unless explicitly disabled
API_KEY_REQUIRED = os.getenv("LUNARSCRY_REQUIRE_AUTH", "true").lower() == "true"

DEFAULT_PAGE_LIMIT = 50
MAX_RESULTS = 200
MAX_OFFSET = 100000
MAX_ID_LENGTH = 128

# Most specific classes first; the first isinstance match wins.
ERROR_STATUS = [
    (ContentNotFoundError, 404),
    (UnauthorizedError, 403),
    (ProtocolPausedError, 423),
    (RateLimitExceededError, 429),
    (VoteCooldownError, 429),
    (DuplicateContentError, 409),
    (AlreadyFinalizedError, 409),
    (InvalidStateError, 409),
    (VotingClosedError, 409),
    (InsufficientStakeError, 400),
    (InvalidAmountError, 400),
    (InvalidContentError, 400),
    (InvalidScoreError, 400),
    (InvalidVoteError, 400),
    (InvalidConfigurationError, 400),
    (ScorerError, 502),
    (SettlementError, 500),
]


# ============================================================
# Error Responses
# ============================================================

def status_for(error: ModerationError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return status
    return 500


def error_response(error: ModerationError):
    """Serialise a moderation error as a JSON response with its HTTP status."""
    status = status_for(error)
    body = {"error": error.message, **error.to_dict()}
    if status >= 500:
        logger.error("Moderation operation failed: %s", error, extra={"error_code": error.error_code})
    else:
        logger.warning("Rejected %s: %s", error.context.action, error.message, extra={"error_code": error.error_code})
    return jsonify(body), status


# ============================================================
# Validation Utilities
# ============================================================

def validate_pagination_params(
    limit: Any,
    offset: Any = 0,
    max_limit: int = MAX_RESULTS,
    max_offset: int = MAX_OFFSET,
) -> tuple[int, int]:
    """
    Bound pagination parameters.

    Returns:
        Tuple of (bounded_limit, bounded_offset)

    Raises:
        ValueError: limit or offset is not an integer
    """
    try:
        limit = int(limit) if limit else max_limit
        offset = int(offset) if offset else 0
    except (TypeError, ValueError) as e:
        raise ValueError("limit and offset must be integers") from e
    bounded_limit = max(1, min(limit, max_limit))
    bounded_offset = max(0, min(offset, max_offset))
    return bounded_limit, bounded_offset


def validate_json_schema(
    data: Any,
    required_fields: dict[str, type | tuple[type, ...]],
    optional_fields: dict[str, type | tuple[type, ...]] | None = None,
    max_lengths: dict[str, int] | None = None,
) -> tuple[bool, str | None]:
    """
    Validate a JSON payload against a simple type schema.

    Booleans are rejected where an int is expected.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(data, dict):
        return False, "Request body must be a JSON object"

    fields = [(name, t, True) for name, t in required_fields.items()]
    fields += [(name, t, False) for name, t in (optional_fields or {}).items()]
    for field_name, expected_type, required in fields:
        if field_name not in data or data[field_name] is None:
            if required:
                return False, f"Missing required field: {field_name}"
            continue
        value = data[field_name]
        expects_int = expected_type is int or (isinstance(expected_type, tuple) and int in expected_type)
        if not isinstance(value, expected_type) or (expects_int and isinstance(value, bool)):
            type_name = getattr(expected_type, "__name__", str(expected_type))
            return False, f"Field '{field_name}' must be of type {type_name}"

    for field_name, max_len in (max_lengths or {}).items():
        value = data.get(field_name)
        if isinstance(value, str) and len(value) > max_len:
            return False, f"Field '{field_name}' exceeds maximum length of {max_len}"

    return True, None


def get_json_body() -> dict[str, Any] | None:
    return request.get_json(silent=True)


# ============================================================
# Authentication Decorators
# ============================================================

def require_api_key(f):
    """Require the X-API-Key header when authentication is enabled."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not API_KEY_REQUIRED:
            return f(*args, **kwargs)

        provided_key = request.headers.get("X-API-Key")
        if not provided_key:
            return jsonify({
                "error": "API key required",
                "hint": "Provide API key in X-API-Key header",
            }), 401
        if not API_KEY:
            return jsonify({
                "error": "Server API key not configured",
                "hint": "Set LUNARSCRY_API_KEY environment variable",
            }), 503
        if not secrets.compare_digest(provided_key, API_KEY):
            return jsonify({"error": "Invalid API key"}), 403

        return f(*args, **kwargs)
    return decorated_function


def verify_signed_request(action: str, participant: str, data: dict[str, Any]) -> None:
    """
    Check the request signature unless LUNARSCRY_REQUIRE_SIGNATURES=false.

    The signed params are the request body minus "signature" and "nonce".

    Raises:
        UnauthorizedError: Missing or invalid signature
    """
    if not signatures_required():
        return
    params = {k: v for k, v in data.items() if k not in ("signature", "nonce")}
    operation = build_operation(action, participant, params, str(data.get("nonce", "")))
    state.identities.verify(participant, operation, data.get("signature"))


def parse_json_body(
    required_fields: dict[str, type | tuple[type, ...]],
    optional_fields: dict[str, type | tuple[type, ...]] | None = None,
    max_lengths: dict[str, int] | None = None,
):
    """
    Read and validate the request body.

    Returns:
        (data, None) on success, (None, error response) otherwise
    """
    data = get_json_body()
    if data is None:
        return None, (jsonify({"error": "Request body must be valid JSON"}), 400)
    optional = {"signature": str, "nonce": (str, int)}
    optional.update(optional_fields or {})
    is_valid, error = validate_json_schema(data, required_fields, optional, max_lengths)
    if not is_valid:
        return None, (jsonify({"error": error}), 400)
    return data, None
