"""Tests for the crypto engine -- key derivation, AES-GCM, and tokens."""

from __future__ import annotations

import base64
import json

import pytest

from sessionsync.models import EncryptedPayload
from sessionsync.sync.crypto import (
    CURRENT_VERSION,
    IV_LENGTH,
    KEY_LENGTH,
    SALT_LENGTH,
    DecryptionFailed,
    cached_encryptor,
    create_verification_token,
    decode_payload,
    decrypt,
    decrypt_from_string,
    derive_key,
    encode_payload,
    encrypt,
    encrypt_to_string,
    hash_content,
    verify_passphrase,
)

PASSPHRASE = "hunter2hunter2"


class TestKeyDerivation:
    """PBKDF2-SHA512 key derivation."""

    def test_key_length(self):
        assert len(derive_key(PASSPHRASE, b"\x00" * SALT_LENGTH)) == KEY_LENGTH

    def test_deterministic_for_same_salt(self):
        salt = b"\x01" * SALT_LENGTH
        assert derive_key(PASSPHRASE, salt) == derive_key(PASSPHRASE, salt)

    def test_salt_changes_key(self):
        assert derive_key(PASSPHRASE, b"\x01" * 16) != derive_key(PASSPHRASE, b"\x02" * 16)


class TestEncryptDecrypt:
    """Authenticated encryption of session data."""

    def test_roundtrip_bytes(self):
        data = b"\x00\xffbinary\nsession\r\n"
        assert decrypt(encrypt(data, PASSPHRASE), PASSPHRASE) == data

    def test_text_is_utf8_encoded(self):
        assert decrypt(encrypt("héllo", PASSPHRASE), PASSPHRASE) == "héllo".encode("utf-8")

    def test_fresh_salt_and_iv_each_time(self):
        a = encrypt(b"same", PASSPHRASE)
        b = encrypt(b"same", PASSPHRASE)
        assert a.salt != b.salt
        assert a.iv != b.iv
        assert a.ciphertext != b.ciphertext

    def test_payload_shape(self):
        payload = encrypt(b"x", PASSPHRASE)
        assert payload.version == CURRENT_VERSION
        assert len(base64.b64decode(payload.iv)) == IV_LENGTH
        assert len(base64.b64decode(payload.salt)) == SALT_LENGTH
        # 1 byte of plaintext plus the 16-byte tag
        assert len(base64.b64decode(payload.ciphertext)) == 17

    def test_wrong_passphrase_fails(self):
        payload = encrypt(b"secret", PASSPHRASE)
        with pytest.raises(DecryptionFailed):
            decrypt(payload, "not the passphrase")

    def test_tampered_ciphertext_fails(self):
        payload = encrypt(b"secret message", PASSPHRASE)
        raw = bytearray(base64.b64decode(payload.ciphertext))
        raw[0] ^= 0x01
        tampered = payload.model_copy(update={"ciphertext": base64.b64encode(bytes(raw)).decode()})
        with pytest.raises(DecryptionFailed):
            decrypt(tampered, PASSPHRASE)

    def test_tampered_auth_tag_fails(self):
        payload = encrypt(b"secret message", PASSPHRASE)
        raw = bytearray(base64.b64decode(payload.ciphertext))
        raw[-1] ^= 0x80
        tampered = payload.model_copy(update={"ciphertext": base64.b64encode(bytes(raw)).decode()})
        with pytest.raises(DecryptionFailed):
            decrypt(tampered, PASSPHRASE)

    def test_unknown_version_fails(self):
        payload = encrypt(b"secret", PASSPHRASE).model_copy(update={"version": 99})
        with pytest.raises(DecryptionFailed, match="version"):
            decrypt(payload, PASSPHRASE)

    def test_truncated_ciphertext_fails(self):
        payload = encrypt(b"secret", PASSPHRASE).model_copy(
            update={"ciphertext": base64.b64encode(b"short").decode()}
        )
        with pytest.raises(DecryptionFailed):
            decrypt(payload, PASSPHRASE)

    def test_malformed_base64_fails(self):
        payload = EncryptedPayload(salt="!!", iv="!!", ciphertext="!!", version=CURRENT_VERSION)
        with pytest.raises(DecryptionFailed):
            decrypt(payload, PASSPHRASE)


class TestWireFormat:
    """The single base64 string stored remotely."""

    def test_string_roundtrip(self):
        encoded = encrypt_to_string("manifest body", PASSPHRASE)
        assert decrypt_from_string(encoded, PASSPHRASE) == b"manifest body"

    def test_encoded_is_base64_json(self):
        payload = encrypt(b"x", PASSPHRASE)
        inner = json.loads(base64.b64decode(encode_payload(payload)))
        assert set(inner) == {"salt", "iv", "ciphertext", "version"}

    def test_decode_accepts_bytes(self):
        encoded = encrypt_to_string(b"x", PASSPHRASE).encode("ascii")
        assert decode_payload(encoded).version == CURRENT_VERSION

    @pytest.mark.parametrize("garbage", ["not base64 at all!", base64.b64encode(b"[1, 2]").decode(), ""])
    def test_decode_garbage_fails(self, garbage):
        with pytest.raises(DecryptionFailed):
            decode_payload(garbage)


class TestCachedEncryptor:
    """One key derivation for a whole push."""

    def test_shares_salt_but_not_iv(self):
        enc = cached_encryptor(PASSPHRASE)
        a = enc.encrypt(b"one")
        b = enc.encrypt(b"two")
        assert a.salt == b.salt
        assert a.iv != b.iv

    def test_output_decrypts_with_plain_decrypt(self):
        enc = cached_encryptor(PASSPHRASE)
        assert decrypt_from_string(enc.encrypt_to_string(b"body"), PASSPHRASE) == b"body"


class TestVerification:
    """Passphrase verification tokens."""

    def test_correct_passphrase_verifies(self):
        token = create_verification_token(PASSPHRASE)
        assert verify_passphrase(PASSPHRASE, token) is True

    def test_wrong_passphrase_does_not_verify(self):
        token = create_verification_token(PASSPHRASE)
        assert verify_passphrase("something else", token) is False

    def test_garbage_token_does_not_verify(self):
        assert verify_passphrase(PASSPHRASE, b"garbage") is False

    def test_token_for_other_plaintext_does_not_verify(self):
        assert verify_passphrase(PASSPHRASE, encrypt_to_string(b"other", PASSPHRASE)) is False


def test_hash_content_is_sha256_hex():
    assert hash_content(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    assert hash_content("abc") == hash_content(b"abc")
