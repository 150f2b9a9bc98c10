"""
LunarScry - Participant Identity

Ed25519 keypairs for submitters, voters, stakers and admins. Unless the API
runs with LUNARSCRY_REQUIRE_SIGNATURES=false, every mutating request must
carry a signature over the canonical operation payload made with the key
registered for the acting participant, so identities are proven rather
than self-asserted.

Usage:
    identity = ParticipantIdentity.generate("alice")
    registry.register("alice", identity.public_key_b64)

    op = build_operation("cast_vote", "alice", {"content_id": cid, ...}, nonce="n-1")
    signature = identity.sign_operation(op)

    registry.verify("alice", op, signature)  # raises UnauthorizedError on failure
"""

import base64
import binascii
import hashlib
import json
import logging
import os
import threading
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import (
    BestAvailableEncryption,
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_pem_private_key,
)

from moderation_exceptions import UnauthorizedError

logger = logging.getLogger(__name__)

REQUIRE_SIGNATURES_ENV = "LUNARSCRY_REQUIRE_SIGNATURES"


def signatures_required() -> bool:
    return os.getenv(REQUIRE_SIGNATURES_ENV, "true").lower() != "false"


def build_operation(action: str, participant: str, params: dict[str, Any], nonce: str) -> dict[str, Any]:
    """Assemble the operation dict that gets signed."""
    return {"action": action, "participant": participant, "params": params, "nonce": nonce}


def canonical_operation_payload(operation: dict[str, Any]) -> bytes:
    """Deterministic bytes for signing: sorted keys, no whitespace."""
    payload = {key: operation.get(key) for key in ("action", "participant", "params", "nonce")}
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def validate_public_key(public_key_b64: str) -> bytes:
    """
    Decode a base64 raw Ed25519 public key.

    Raises:
        ValueError: Malformed key
    """
    try:
        raw = base64.b64decode(public_key_b64, validate=True)
        Ed25519PublicKey.from_public_bytes(raw)
    except (ValueError, binascii.Error) as e:
        raise ValueError(f"Invalid Ed25519 public key: {e}") from e
    return raw


def public_key_fingerprint(public_key_bytes: bytes) -> str:
    return hashlib.sha256(public_key_bytes).hexdigest()[:16]


class ParticipantIdentity:
    """Ed25519 signing identity of one protocol participant."""

    def __init__(self, name: str, private_key: Ed25519PrivateKey):
        self.name = name
        self._private_key = private_key
        self._public_key = private_key.public_key()

    @classmethod
    def generate(cls, name: str) -> "ParticipantIdentity":
        logger.info("Generated new identity for '%s'", name)
        return cls(name, Ed25519PrivateKey.generate())

    @property
    def public_key_bytes(self) -> bytes:
        return self._public_key.public_bytes(Encoding.Raw, PublicFormat.Raw)

    @property
    def public_key_b64(self) -> str:
        return base64.b64encode(self.public_key_bytes).decode("ascii")

    @property
    def fingerprint(self) -> str:
        return public_key_fingerprint(self.public_key_bytes)

    def sign_operation(self, operation: dict[str, Any]) -> str:
        """
        Sign an operation.

        Returns:
            Base64-encoded Ed25519 signature
        """
        signature = self._private_key.sign(canonical_operation_payload(operation))
        return base64.b64encode(signature).decode("ascii")

    @staticmethod
    def verify_operation(operation: dict[str, Any], signature_b64: str, public_key_b64: str) -> bool:
        """
        Verify a signature over an operation.

        Returns:
            True if the signature is valid for the key, False otherwise
        """
        try:
            public_key = Ed25519PublicKey.from_public_bytes(base64.b64decode(public_key_b64, validate=True))
            public_key.verify(base64.b64decode(signature_b64, validate=True), canonical_operation_payload(operation))
            return True
        except (InvalidSignature, ValueError, binascii.Error) as e:
            logger.warning("Signature verification failed: %s", e)
            return False

    def save(self, path: str, passphrase: str | None = None) -> None:
        """Write the private key as PKCS8 PEM with owner-only permissions."""
        encryption = BestAvailableEncryption(passphrase.encode("utf-8")) if passphrase else NoEncryption()
        private_bytes = self._private_key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, encryption)

        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            os.write(fd, private_bytes)
        finally:
            os.close(fd)
        logger.info("Saved identity for '%s' to %s", self.name, path)

    @classmethod
    def load(cls, path: str, name: str = "", passphrase: str | None = None) -> "ParticipantIdentity":
        with open(path, "rb") as f:
            private_key = load_pem_private_key(f.read(), password=passphrase.encode("utf-8") if passphrase else None)
        if not isinstance(private_key, Ed25519PrivateKey):
            raise ValueError(f"{path} does not contain an Ed25519 private key")
        return cls(name or os.path.splitext(os.path.basename(path))[0], private_key)


class IdentityRegistry:
    """
    Maps participant names to registered public keys and rejects replayed
    nonces.
    """

    def __init__(self):
        self._keys: dict[str, str] = {}
        self._used_nonces: dict[str, set[str]] = {}
        self._lock = threading.Lock()

    def register(self, participant: str, public_key_b64: str) -> dict[str, str]:
        """
        Register a participant's public key. Re-registering with a different
        key is refused.

        Raises:
            ValueError: Malformed key
            UnauthorizedError: Participant already bound to another key
        """
        raw = validate_public_key(public_key_b64)

        with self._lock:
            existing = self._keys.get(participant)
            if existing is not None and existing != public_key_b64:
                raise UnauthorizedError(participant, "register_identity", component="identity")
            self._keys[participant] = public_key_b64
        logger.info("Registered identity for '%s'", participant)
        return {"participant": participant, "public_key": public_key_b64, "fingerprint": public_key_fingerprint(raw)}

    def register_signed(
        self,
        participant: str,
        public_key_b64: str,
        operation: dict[str, Any],
        signature_b64: str | None,
    ) -> dict[str, str]:
        """
        Register a key whose holder proves possession by signing the
        "register_identity" operation with it.

        Raises:
            ValueError: Malformed key
            UnauthorizedError: Missing or invalid proof, reused nonce, or
                participant already bound to another key
        """
        validate_public_key(public_key_b64)
        if (
            not signature_b64
            or not operation.get("nonce")
            or operation.get("action") != "register_identity"
            or operation.get("participant") != participant
            or not ParticipantIdentity.verify_operation(operation, signature_b64, public_key_b64)
        ):
            raise UnauthorizedError(participant, "register_identity", component="identity")

        registered = self.register(participant, public_key_b64)
        self._consume_nonce(participant, operation, "register_identity")
        return registered

    def get_public_key(self, participant: str) -> str | None:
        with self._lock:
            return self._keys.get(participant)

    def verify(self, participant: str, operation: dict[str, Any], signature_b64: str | None) -> None:
        """
        Check a signed operation from a participant.

        Raises:
            UnauthorizedError: Unknown participant, participant mismatch,
                bad signature or reused nonce
        """
        action = operation.get("action", "unknown")
        public_key = self.get_public_key(participant)
        if (
            public_key is None
            or not signature_b64
            or operation.get("participant") != participant
            or not ParticipantIdentity.verify_operation(operation, signature_b64, public_key)
        ):
            raise UnauthorizedError(participant, action, component="identity")

        self._consume_nonce(participant, operation, action)

    def _consume_nonce(self, participant: str, operation: dict[str, Any], action: str) -> None:
        nonce = str(operation.get("nonce", ""))
        with self._lock:
            used = self._used_nonces.setdefault(participant, set())
            if not nonce or nonce in used:
                raise UnauthorizedError(participant, action, component="identity")
            used.add(nonce)

    def __len__(self) -> int:
        return len(self._keys)

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {"keys": dict(self._keys)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IdentityRegistry":
        registry = cls()
        registry._keys = dict(data.get("keys", {}))
        return registry
