"""
Content lifecycle blueprint.

- POST /content                        submit content (fingerprint or payload)
- GET  /content                        list content records
- GET  /content/<id>                   record + tally
- POST /content/<id>/score             apply the AI confidence score
- POST /content/<id>/close             finalize after the voting window
- POST /content/<id>/settle            settle one voter
- POST /content/<id>/distribute        resume distribution
- GET  /content/<id>/settlements       distribution state and settlements
"""

from dataclasses import asdict

from flask import Blueprint, jsonify, request

from content_registry import ContentState, compute_fingerprint

from . import state
from .utils import (
    DEFAULT_PAGE_LIMIT,
    MAX_ID_LENGTH,
    parse_json_body,
    require_api_key,
    validate_pagination_params,
    verify_signed_request,
)

content_bp = Blueprint("content", __name__)

MAX_PAYLOAD_LENGTH = 1_000_000


@content_bp.route("/content", methods=["POST"])
@require_api_key
def submit_content():
    """
    Submit content for moderation.

    Request body:
    {
        "category": "text" | "image" | "link",
        "submitter": "identity",
        "fingerprint": "sha256 hex",     (or)
        "payload": "raw content, hashed and discarded"
    }
    """
    data, error = parse_json_body(
        {"category": str, "submitter": str},
        {"fingerprint": str, "payload": str},
        {"submitter": MAX_ID_LENGTH, "payload": MAX_PAYLOAD_LENGTH},
    )
    if error:
        return error

    if data.get("fingerprint"):
        fingerprint = data["fingerprint"]
    elif data.get("payload"):
        fingerprint = compute_fingerprint(data["payload"])
    else:
        return jsonify({"error": "Provide either fingerprint or payload"}), 400

    verify_signed_request("submit", data["submitter"], data)
    record = state.orchestrator.submit(fingerprint, data["category"], data["submitter"])
    state.save_state()
    return jsonify({"status": "submitted", "content": record.to_dict()}), 201


@content_bp.route("/content", methods=["GET"])
@require_api_key
def list_content():
    """
    List content records.

    Query params:
        state: Filter by lifecycle state (pending, flagged, voting, ...)
        limit, offset: Pagination
    """
    state_filter = request.args.get("state")
    if state_filter and state_filter not in {s.value for s in ContentState}:
        return jsonify({"error": f"Unknown state: {state_filter}"}), 400
    try:
        limit, offset = validate_pagination_params(
            request.args.get("limit", DEFAULT_PAGE_LIMIT), request.args.get("offset", 0)
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    records = state.orchestrator.list_content(state_filter, limit, offset)
    return jsonify({
        "count": len(records),
        "limit": limit,
        "offset": offset,
        "content": [r.to_dict() for r in records],
    })


@content_bp.route("/content/<content_id>", methods=["GET"])
@require_api_key
def get_content(content_id: str):
    record = state.orchestrator.get_content(content_id)
    return jsonify({
        "content": record.to_dict(),
        "tally": state.orchestrator.get_tally(content_id).to_dict(),
    })


@content_bp.route("/content/<content_id>/score", methods=["POST"])
@require_api_key
def score_content(content_id: str):
    """
    Apply the AI confidence score.

    Either runs the configured AI Score Gate on the raw payload:
        {"payload": "...", "media_type": "image/png"}
    or accepts a score from an external, authorised scoring service:
        {"score": 0-100, "scorer": "ai-score-gate"}
    """
    data, error = parse_json_body(
        {},
        {"payload": str, "media_type": str, "score": int, "scorer": str},
        {"payload": MAX_PAYLOAD_LENGTH, "scorer": MAX_ID_LENGTH},
    )
    if error:
        return error

    if data.get("payload") is not None:
        if state.score_gate is None:
            return jsonify({
                "error": "AI scoring not configured",
                "hint": "Set ANTHROPIC_API_KEY or submit a score from an authorised scorer",
            }), 503
        record = state.score_gate.evaluate(content_id, data["payload"], data.get("media_type", "image/png"))
    elif data.get("score") is not None and data.get("scorer"):
        verify_signed_request("apply_score", data["scorer"], data)
        record = state.orchestrator.apply_score(content_id, data["score"], caller=data["scorer"])
    else:
        return jsonify({"error": "Provide either payload, or score and scorer"}), 400

    state.save_state()
    return jsonify({"content": record.to_dict()})


@content_bp.route("/content/<content_id>/close", methods=["POST"])
@require_api_key
def close_window(content_id: str):
    """Finalize a content item whose voting window has ended (permissionless)."""
    result = state.orchestrator.close_window(content_id)
    state.save_state()
    return jsonify(result.to_dict())


@content_bp.route("/content/<content_id>/settle", methods=["POST"])
@require_api_key
def settle_voter(content_id: str):
    data, error = parse_json_body({"voter": str}, max_lengths={"voter": MAX_ID_LENGTH})
    if error:
        return error
    record = state.orchestrator.settle(content_id, data["voter"])
    state.save_state()
    return jsonify({"settlement": asdict(record)})


@content_bp.route("/content/<content_id>/distribute", methods=["POST"])
@require_api_key
def distribute(content_id: str):
    settlements = state.orchestrator.distribute(content_id)
    state.save_state()
    distribution = state.orchestrator.get_distribution(content_id)
    return jsonify({
        "settled": [asdict(s) for s in settlements],
        "distribution": distribution.to_dict() if distribution else None,
    })


@content_bp.route("/content/<content_id>/settlements", methods=["GET"])
@require_api_key
def get_settlements(content_id: str):
    state.orchestrator.get_content(content_id)
    distribution = state.orchestrator.get_distribution(content_id)
    return jsonify({
        "distribution": distribution.to_dict() if distribution else None,
        "settlements": [asdict(s) for s in state.orchestrator.distributor.settlements_for(content_id)],
    })
