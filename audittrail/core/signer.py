"""
Export Signing

Ed25519 over export bundle manifests. A signature ties a bundle to the
deployment holding the private key; the hash chain alone only shows the
entries are internally consistent.

Keys and signatures travel as standard base64 text.
"""

import json
from typing import Any, Tuple

from nacl.encoding import Base64Encoder
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey


SIGNATURE_ALGORITHM = "ed25519"


def _text(raw: bytes) -> str:
    return raw.decode("ascii")


class Signer:
    """Ed25519 helpers for exported audit bundles."""

    @staticmethod
    def generate_keypair() -> Tuple[str, str]:
        """Returns (private_key, public_key), both base64."""
        key = SigningKey.generate()
        return (
            _text(key.encode(encoder=Base64Encoder)),
            _text(key.verify_key.encode(encoder=Base64Encoder)),
        )

    @staticmethod
    def public_key_for(private_key: str) -> str:
        key = SigningKey(private_key, encoder=Base64Encoder)
        return _text(key.verify_key.encode(encoder=Base64Encoder))

    @staticmethod
    def sign(message: str, private_key: str) -> str:
        """Detached signature over the UTF-8 bytes of message, base64."""
        key = SigningKey(private_key, encoder=Base64Encoder)
        signed = key.sign(message.encode("utf-8"), encoder=Base64Encoder)
        return _text(signed.signature)

    @staticmethod
    def verify(message: str, signature: str, public_key: str) -> bool:
        """False for a bad signature and for malformed keys or signatures."""
        try:
            VerifyKey(public_key, encoder=Base64Encoder).verify(
                message.encode("utf-8"),
                Base64Encoder.decode(signature),
            )
        except (BadSignatureError, ValueError, TypeError):
            return False
        return True

    @staticmethod
    def manifest_message(manifest: dict[str, Any]) -> str:
        """The exact text a manifest signature covers: sorted, compact, ASCII JSON."""
        return json.dumps(manifest, sort_keys=True, separators=(",", ":"), ensure_ascii=True)

    @classmethod
    def sign_manifest(cls, manifest: dict[str, Any], private_key: str) -> str:
        return cls.sign(cls.manifest_message(manifest), private_key)

    @classmethod
    def verify_manifest(cls, manifest: dict[str, Any], signature: str, public_key: str) -> bool:
        return cls.verify(cls.manifest_message(manifest), signature, public_key)
