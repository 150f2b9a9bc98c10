"""
Protocol administration blueprint.

- POST /admin/pause, /admin/unpause     emergency pause
- GET  /admin/admins                    emergency admin list
- POST /admin/admins                    add an emergency admin
- POST /admin/admins/remove             remove an emergency admin
- POST /admin/reward-pool               fund the reward pool
- GET  /admin/events                    audit event log
- GET  /admin/status                    protocol status
"""

from flask import Blueprint, jsonify, request

from identity import validate_public_key
from moderation_exceptions import UnauthorizedError

from . import state
from .utils import (
    DEFAULT_PAGE_LIMIT,
    MAX_ID_LENGTH,
    parse_json_body,
    require_api_key,
    validate_pagination_params,
    verify_signed_request,
)

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


@admin_bp.route("/pause", methods=["POST"])
@require_api_key
def pause():
    data, error = parse_json_body({"admin": str}, max_lengths={"admin": MAX_ID_LENGTH})
    if error:
        return error
    verify_signed_request("pause", data["admin"], data)
    state.orchestrator.pause(data["admin"])
    state.save_state()
    return jsonify({"paused": True})


@admin_bp.route("/unpause", methods=["POST"])
@require_api_key
def unpause():
    data, error = parse_json_body({"admin": str}, max_lengths={"admin": MAX_ID_LENGTH})
    if error:
        return error
    verify_signed_request("unpause", data["admin"], data)
    state.orchestrator.unpause(data["admin"])
    state.save_state()
    return jsonify({"paused": False})


@admin_bp.route("/admins", methods=["GET"])
@require_api_key
def list_admins():
    return jsonify({"emergency_admins": state.orchestrator.get_protocol_status()["emergency_admins"]})


@admin_bp.route("/admins", methods=["POST"])
@require_api_key
def add_admin():
    """
    Add an emergency admin.

    Request body:
    {
        "admin": "existing admin",
        "new_admin": "identity to add",
        "public_key": "optional base64 Ed25519 key for the new admin"
    }
    """
    data, error = parse_json_body(
        {"admin": str, "new_admin": str},
        {"public_key": str},
        max_lengths={"admin": MAX_ID_LENGTH, "new_admin": MAX_ID_LENGTH, "public_key": 128},
    )
    if error:
        return error
    verify_signed_request("add_emergency_admin", data["admin"], data)

    public_key = data.get("public_key")
    if public_key:
        try:
            validate_public_key(public_key)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        existing = state.identities.get_public_key(data["new_admin"])
        if existing is not None and existing != public_key:
            raise UnauthorizedError(data["admin"], "add_emergency_admin", component="identity")

    admins = state.orchestrator.add_emergency_admin(data["admin"], data["new_admin"])
    if public_key:
        state.identities.register(data["new_admin"], public_key)
    state.save_state()
    return jsonify({"emergency_admins": admins}), 201


@admin_bp.route("/admins/remove", methods=["POST"])
@require_api_key
def remove_admin():
    data, error = parse_json_body(
        {"admin": str, "target": str},
        max_lengths={"admin": MAX_ID_LENGTH, "target": MAX_ID_LENGTH},
    )
    if error:
        return error
    verify_signed_request("remove_emergency_admin", data["admin"], data)
    admins = state.orchestrator.remove_emergency_admin(data["admin"], data["target"])
    state.save_state()
    return jsonify({"emergency_admins": admins})


@admin_bp.route("/reward-pool", methods=["POST"])
@require_api_key
def fund_reward_pool():
    """
    Deposit into the reward pool.

    Request body:
    {
        "funder": "treasury",
        "amount": 5000
    }
    """
    data, error = parse_json_body({"funder": str, "amount": int}, max_lengths={"funder": MAX_ID_LENGTH})
    if error:
        return error
    verify_signed_request("fund_reward_pool", data["funder"], data)
    balance = state.orchestrator.fund_reward_pool(data["funder"], data["amount"])
    state.save_state()
    return jsonify({"reward_pool": balance}), 201


@admin_bp.route("/reward-pool", methods=["GET"])
@require_api_key
def get_reward_pool():
    return jsonify({"reward_pool": state.orchestrator.pool.get_balance()})


@admin_bp.route("/events", methods=["GET"])
@require_api_key
def get_events():
    """
    Audit event log.

    Query params:
        limit: Maximum events (default 50)
        type: Filter by event type, e.g. VoteCast
    """
    try:
        limit, _ = validate_pagination_params(request.args.get("limit", DEFAULT_PAGE_LIMIT))
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    events = state.orchestrator.get_events(limit=limit, event_type=request.args.get("type"))
    return jsonify({"count": len(events), "events": events})


@admin_bp.route("/status", methods=["GET"])
@require_api_key
def get_status():
    return jsonify(state.orchestrator.get_protocol_status())
