"""
Identity blueprint.

- POST /identity                 register a participant's Ed25519 public key
- GET  /identity/<participant>   look up a registered key
"""

from flask import Blueprint, jsonify

from identity import build_operation
from moderation_exceptions import UnauthorizedError

from . import state
from .utils import MAX_ID_LENGTH, parse_json_body, require_api_key

identity_bp = Blueprint("identity", __name__)


@identity_bp.route("/identity", methods=["POST"])
@require_api_key
def register_identity():
    """
    Register a public key.

    The request is signed with the key being registered. Emergency admin
    and authorised scorer names are reserved; their keys are provisioned
    from the environment or by the admin who adds them.

    Request body:
    {
        "participant": "alice",
        "public_key": "base64 raw Ed25519 public key",
        "nonce": "unique string",
        "signature": "signature over the register_identity operation"
    }
    """
    data, error = parse_json_body(
        {"participant": str, "public_key": str, "nonce": (str, int), "signature": str},
        max_lengths={"participant": MAX_ID_LENGTH, "public_key": 128},
    )
    if error:
        return error

    participant = data["participant"]
    if state.is_reserved_identity(participant):
        raise UnauthorizedError(participant, "register_identity", component="identity")

    params = {"participant": participant, "public_key": data["public_key"]}
    operation = build_operation("register_identity", participant, params, str(data["nonce"]))
    try:
        registered = state.identities.register_signed(
            participant, data["public_key"], operation, data["signature"]
        )
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    state.save_state()
    return jsonify(registered), 201


@identity_bp.route("/identity/<participant>", methods=["GET"])
@require_api_key
def get_identity(participant: str):
    public_key = state.identities.get_public_key(participant)
    if public_key is None:
        return jsonify({"error": "Identity not registered"}), 404
    return jsonify({"participant": participant, "public_key": public_key})
