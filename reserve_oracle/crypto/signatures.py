"""
Ed25519 signature verification.

Signers are identified by their raw public key, hex encoded (64 chars).
Messages are hashed with SHA-256 first; the 32-byte digest is what gets
signed, so callers may sign canonical payloads of any size.
"""

import hashlib
from typing import Optional, Union
import logging

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from ..errors import SignatureError, ValidationError

logger = logging.getLogger(__name__)

PUBLIC_KEY_HEX_LENGTH = 64


def message_digest(message: bytes) -> bytes:
    """SHA-256 digest of the message; the value that is actually signed"""
    return hashlib.sha256(message).digest()


def normalize_public_key(key: Union[str, bytes]) -> str:
    """
    Accept a hex string, raw 32 bytes or a PEM public key and return
    the canonical lowercase hex form.
    """
    if isinstance(key, bytes):
        if key.startswith(b"-----BEGIN"):
            loaded = serialization.load_pem_public_key(key)
            if not isinstance(loaded, Ed25519PublicKey):
                raise ValidationError("only Ed25519 public keys are supported")
            key = loaded.public_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PublicFormat.Raw,
            )
        if len(key) != PUBLIC_KEY_HEX_LENGTH // 2:
            raise ValidationError(f"public key must be {PUBLIC_KEY_HEX_LENGTH // 2} bytes, got {len(key)}")
        return key.hex()

    key = key.strip()
    if key.startswith("-----BEGIN"):
        return normalize_public_key(key.encode("ascii"))
    if key.startswith("0x"):
        key = key[2:]
    if len(key) != PUBLIC_KEY_HEX_LENGTH:
        raise ValidationError(f"public key must be {PUBLIC_KEY_HEX_LENGTH} hex chars")
    try:
        bytes.fromhex(key)
    except ValueError:
        raise ValidationError("public key is not valid hex")
    return key.lower()


def _decode_signature(signature: Union[str, bytes]) -> Optional[bytes]:
    if isinstance(signature, bytes):
        return signature
    signature = signature.strip()
    if signature.startswith("0x"):
        signature = signature[2:]
    try:
        return bytes.fromhex(signature)
    except ValueError:
        return None


class SignatureVerifier:
    """
    Stateless signature verification against a known public key.

    `verify` never raises: malformed keys or signatures simply fail.
    """

    @staticmethod
    def verify(public_key: Union[str, bytes], message: bytes, signature: Union[str, bytes]) -> bool:
        raw_signature = _decode_signature(signature)
        if not raw_signature:
            return False
        try:
            key_hex = normalize_public_key(public_key)
            verifier = Ed25519PublicKey.from_public_bytes(bytes.fromhex(key_hex))
            verifier.verify(raw_signature, message_digest(message))
            return True
        except InvalidSignature:
            return False
        except (ValidationError, ValueError) as e:
            logger.warning(f"Signature check on malformed input: {e}")
            return False

    @classmethod
    def require(cls, public_key: Union[str, bytes], message: bytes, signature: Union[str, bytes]):
        """Raise SignatureError unless the signature verifies"""
        if not cls.verify(public_key, message, signature):
            raise SignatureError("signature does not match the bound signer")


class Signer:
    """
    Holds an Ed25519 private key. Used by attestors and operator tooling
    to produce signatures the verifier accepts.
    """

    def __init__(self, private_key: Optional[Ed25519PrivateKey] = None):
        self._private_key = private_key or Ed25519PrivateKey.generate()

    @classmethod
    def generate(cls) -> "Signer":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_hex(cls, private_key_hex: str) -> "Signer":
        if private_key_hex.startswith("0x"):
            private_key_hex = private_key_hex[2:]
        return cls(Ed25519PrivateKey.from_private_bytes(bytes.fromhex(private_key_hex)))

    @property
    def public_key(self) -> str:
        raw = self._private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return raw.hex()

    def private_key_hex(self) -> str:
        raw = self._private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return raw.hex()

    def sign(self, message: bytes) -> str:
        """Sign the message digest; returns hex"""
        return self._private_key.sign(message_digest(message)).hex()
