"""
Voting blueprint.

- POST /votes                          cast or replace a vote
- POST /votes/withdraw                 withdraw a vote before the window closes
- GET  /votes/<content_id>             tally and current votes
- GET  /votes/<content_id>/<voter>     a single vote
"""

from flask import Blueprint, jsonify

from . import state
from .utils import MAX_ID_LENGTH, parse_json_body, require_api_key, verify_signed_request

voting_bp = Blueprint("voting", __name__)


@voting_bp.route("/votes", methods=["POST"])
@require_api_key
def cast_vote():
    """
    Cast a stake-weighted vote.

    Request body:
    {
        "content_id": "CONTENT-...",
        "voter": "identity",
        "direction": "approve" | "reject",
        "stake_amount": 600
    }
    """
    data, error = parse_json_body(
        {"content_id": str, "voter": str, "direction": str, "stake_amount": int},
        max_lengths={"content_id": MAX_ID_LENGTH, "voter": MAX_ID_LENGTH},
    )
    if error:
        return error

    verify_signed_request("cast_vote", data["voter"], data)
    vote = state.orchestrator.cast_vote(
        data["content_id"], data["voter"], data["direction"], data["stake_amount"]
    )
    state.save_state()
    return jsonify({
        "vote": vote.to_dict(),
        "tally": state.orchestrator.get_tally(data["content_id"]).to_dict(),
    }), 201


@voting_bp.route("/votes/withdraw", methods=["POST"])
@require_api_key
def withdraw_vote():
    data, error = parse_json_body(
        {"content_id": str, "voter": str},
        max_lengths={"content_id": MAX_ID_LENGTH, "voter": MAX_ID_LENGTH},
    )
    if error:
        return error

    verify_signed_request("withdraw_vote", data["voter"], data)
    vote = state.orchestrator.withdraw_vote(data["content_id"], data["voter"])
    state.save_state()
    return jsonify({
        "withdrawn": vote.to_dict(),
        "tally": state.orchestrator.get_tally(data["content_id"]).to_dict(),
    })


@voting_bp.route("/votes/<content_id>", methods=["GET"])
@require_api_key
def get_votes(content_id: str):
    tally = state.orchestrator.get_tally(content_id)
    return jsonify({
        "tally": tally.to_dict(),
        "votes": [v.to_dict() for v in state.orchestrator.get_votes(content_id)],
    })


@voting_bp.route("/votes/<content_id>/<voter>", methods=["GET"])
@require_api_key
def get_vote(content_id: str, voter: str):
    vote = state.orchestrator.get_vote(content_id, voter)
    if vote is None:
        return jsonify({"error": "Vote not found"}), 404
    return jsonify({"vote": vote.to_dict()})
