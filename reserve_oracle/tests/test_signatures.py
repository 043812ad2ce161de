"""Tests for Ed25519 signature verification"""

import pytest
from cryptography.hazmat.primitives import serialization

from reserve_oracle.crypto.signatures import SignatureVerifier, Signer, normalize_public_key
from reserve_oracle.errors import SignatureError, ValidationError


@pytest.fixture
def signer():
    return Signer.generate()


class TestSignatureVerifier:
    def test_roundtrip(self, signer):
        signature = signer.sign(b"reserve report")
        assert SignatureVerifier.verify(signer.public_key, b"reserve report", signature)

    def test_wrong_message(self, signer):
        signature = signer.sign(b"reserve report")
        assert not SignatureVerifier.verify(signer.public_key, b"reserve report!", signature)

    def test_wrong_key(self, signer):
        signature = signer.sign(b"msg")
        assert not SignatureVerifier.verify(Signer.generate().public_key, b"msg", signature)

    @pytest.mark.parametrize("signature", ["", "nothex", "00" * 64, "0x1234"])
    def test_malformed_signature_is_false(self, signer, signature):
        assert not SignatureVerifier.verify(signer.public_key, b"msg", signature)

    def test_malformed_key_is_false(self, signer):
        assert not SignatureVerifier.verify("abcd", b"msg", signer.sign(b"msg"))

    def test_require_raises(self, signer):
        with pytest.raises(SignatureError):
            SignatureVerifier.require(signer.public_key, b"msg", Signer.generate().sign(b"msg"))

    def test_prefixed_signature_accepted(self, signer):
        assert SignatureVerifier.verify(signer.public_key, b"msg", "0x" + signer.sign(b"msg"))


class TestKeys:
    def test_normalize_forms(self, signer):
        raw = bytes.fromhex(signer.public_key)
        assert normalize_public_key(raw) == signer.public_key
        assert normalize_public_key("0x" + signer.public_key.upper()) == signer.public_key

    def test_normalize_pem(self, signer):
        pem = signer._private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        assert normalize_public_key(pem) == signer.public_key
        assert normalize_public_key(pem.decode()) == signer.public_key

    @pytest.mark.parametrize("key", ["", "12", "zz" * 32])
    def test_normalize_rejects(self, key):
        with pytest.raises(ValidationError):
            normalize_public_key(key)

    @pytest.mark.parametrize("key", [b"", b"\x01" * 16, b"\x01" * 33])
    def test_normalize_rejects_wrong_length_bytes(self, key):
        with pytest.raises(ValidationError, match="32 bytes"):
            normalize_public_key(key)

    def test_signer_from_hex(self, signer):
        restored = Signer.from_hex(signer.private_key_hex())
        assert restored.public_key == signer.public_key
