"""AES-256-GCM test vectors.

Test cases 13-15 from "The Galois/Counter Mode of Operation (GCM)",
McGrew & Viega, Appendix B (the 256-bit key cases without AAD).
Source: NIST submission of the GCM mode, revised January 2005.

Envelopes carry no associated data, so the AAD cases (16+) do not apply.
Each vector is checked against the primitive and through the envelope
codec, so a swapped tag/ciphertext split would fail here.

To update: These are hardcoded from the paper.
"""

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from flux_mask import envelope as envelope_module
from flux_mask.envelope import Envelope, decode_envelope, decrypt, encode_envelope, encrypt
from flux_mask.exceptions import AuthenticationError
from flux_mask.keys import SymmetricKey

VECTORS = [
    pytest.param(
        "0000000000000000000000000000000000000000000000000000000000000000",
        "000000000000000000000000",
        "",
        "",
        "530f8afbc74536b9a963b4f1c4cb738b",
        id="tc13-empty",
    ),
    pytest.param(
        "0000000000000000000000000000000000000000000000000000000000000000",
        "000000000000000000000000",
        "00000000000000000000000000000000",
        "cea7403d4d606b6e074ec5d3baf39d18",
        "d0d1c8a799996bf0265b98b5d48ab919",
        id="tc14-one-block",
    ),
    pytest.param(
        "feffe9928665731c6d6a8f9467308308feffe9928665731c6d6a8f9467308308",
        "cafebabefacedbaddecaf888",
        "d9313225f88406e5a55909c5aff5269a86a7a9531534f7da2e4c303d8a318a72"
        "1c3c0c95956809532fcf0e2449a6b525b16aedf5aa0de657ba637b391aafd255",
        "522dc1f099567d07f47f37a32a84427d643a8cdcbfe5c0c97598a2bd2555d1aa"
        "8cb08e48590dbb3da7b08b1056828838c5f61e6393ba7a0abcc9f662898015ad",
        "b094dac5d93471bdec1a502270e3cc6c",
        id="tc15-four-blocks",
    ),
]


@pytest.mark.vectors
class TestAESGCMVectors:
    """GCM paper Appendix B vectors for AES-256."""

    @pytest.mark.parametrize(("key", "iv", "plaintext", "ciphertext", "tag"), VECTORS)
    def test_primitive(self, key: str, iv: str, plaintext: str, ciphertext: str, tag: str) -> None:
        sealed = AESGCM(bytes.fromhex(key)).encrypt(bytes.fromhex(iv), bytes.fromhex(plaintext), None)
        assert sealed == bytes.fromhex(ciphertext + tag)

    @pytest.mark.parametrize(("key", "iv", "plaintext", "ciphertext", "tag"), VECTORS)
    def test_envelope_decrypt(self, key: str, iv: str, plaintext: str, ciphertext: str, tag: str) -> None:
        wire = encode_envelope(
            Envelope(iv=bytes.fromhex(iv), auth_tag=bytes.fromhex(tag), ciphertext=bytes.fromhex(ciphertext))
        )
        assert decrypt(wire, SymmetricKey(bytes.fromhex(key))) == bytes.fromhex(plaintext)

    @pytest.mark.parametrize(("key", "iv", "plaintext", "ciphertext", "tag"), VECTORS)
    def test_envelope_encrypt(
        self, monkeypatch: pytest.MonkeyPatch, key: str, iv: str, plaintext: str, ciphertext: str, tag: str
    ) -> None:
        """With the nonce pinned, encrypt() produces exactly the vector."""
        fixed_iv = bytes.fromhex(iv)

        def pinned_urandom(n: int) -> bytes:
            assert n == len(fixed_iv)
            return fixed_iv

        monkeypatch.setattr(envelope_module.os, "urandom", pinned_urandom)
        parsed = decode_envelope(encrypt(bytes.fromhex(plaintext), SymmetricKey(bytes.fromhex(key))))

        assert parsed.iv == fixed_iv
        assert parsed.ciphertext == bytes.fromhex(ciphertext)
        assert parsed.auth_tag == bytes.fromhex(tag)

    def test_tag_mismatch_rejected(self) -> None:
        wire = encode_envelope(
            Envelope(iv=bytes(12), auth_tag=bytes.fromhex("530f8afbc74536b9a963b4f1c4cb738c"), ciphertext=b"")
        )
        with pytest.raises(AuthenticationError):
            decrypt(wire, SymmetricKey(bytes(32)))
