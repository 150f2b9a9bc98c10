"""
Staking blueprint.

- POST /stake            stake tokens
- POST /stake/unstake    withdraw unlocked stake
- GET  /stake/<owner>    stake account
"""

from flask import Blueprint, jsonify

from . import state
from .utils import MAX_ID_LENGTH, parse_json_body, require_api_key, verify_signed_request

staking_bp = Blueprint("staking", __name__)


def _stake_operation(action: str):
    data, error = parse_json_body({"owner": str, "amount": int}, max_lengths={"owner": MAX_ID_LENGTH})
    if error:
        return error

    verify_signed_request(action, data["owner"], data)
    operation = getattr(state.orchestrator, action)
    account = operation(data["owner"], data["amount"])
    state.save_state()
    return jsonify({"account": account.to_dict()})


@staking_bp.route("/stake", methods=["POST"])
@require_api_key
def stake():
    """
    Stake tokens for voting weight.

    Request body:
    {
        "owner": "identity",
        "amount": 1000
    }
    """
    return _stake_operation("stake")


@staking_bp.route("/stake/unstake", methods=["POST"])
@require_api_key
def unstake():
    return _stake_operation("unstake")


@staking_bp.route("/stake/<owner>", methods=["GET"])
@require_api_key
def get_account(owner: str):
    return jsonify({"account": state.orchestrator.get_stake_account(owner).to_dict()})
