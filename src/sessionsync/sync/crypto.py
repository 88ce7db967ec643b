"""
Crypto engine -- passphrase-based authenticated encryption.

Scheme (version 1):
    - Key derivation: PBKDF2-HMAC-SHA512, 100,000 iterations, random 16-byte salt
    - Cipher: AES-256-GCM, random 12-byte IV, 16-byte tag appended to the ciphertext
    - Storage form: base64(JSON {salt, iv, ciphertext, version}), one string per object

Content hashes (SHA-256) are for change detection only. Authentication
comes from the GCM tag.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import os
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import ValidationError

from ..models import EncryptedPayload

logger = logging.getLogger("sessionsync.sync.crypto")

KEY_LENGTH = 32
IV_LENGTH = 12
SALT_LENGTH = 16
AUTH_TAG_LENGTH = 16
PBKDF2_ITERATIONS = 100_000
CURRENT_VERSION = 1

VERIFICATION_PLAINTEXT = b"copilot-session-sync-verification-v1"

Data = Union[bytes, str]


class DecryptionFailed(Exception):
    """Wrong passphrase, tampered ciphertext, or an unreadable payload."""


def _as_bytes(data: Data) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else data


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def derive_key(passphrase: str, salt: bytes) -> bytes:
    """Derive a 256-bit key from a passphrase with PBKDF2-HMAC-SHA512.

    Args:
        passphrase: The user's passphrase.
        salt: Random salt (16 bytes).

    Returns:
        32 bytes of key material.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def _seal(data: bytes, key: bytes, salt: bytes) -> EncryptedPayload:
    iv = os.urandom(IV_LENGTH)
    ciphertext = AESGCM(key).encrypt(iv, data, None)
    return EncryptedPayload(
        salt=_b64(salt),
        iv=_b64(iv),
        ciphertext=_b64(ciphertext),
        version=CURRENT_VERSION,
    )


def encrypt(data: Data, passphrase: str) -> EncryptedPayload:
    """Encrypt data under a passphrase with a fresh salt and IV.

    Args:
        data: Plaintext bytes or text (text is UTF-8 encoded).
        passphrase: The user's passphrase.

    Returns:
        EncryptedPayload with salt, IV, and ciphertext+tag.
    """
    salt = os.urandom(SALT_LENGTH)
    return _seal(_as_bytes(data), derive_key(passphrase, salt), salt)


def decrypt(payload: EncryptedPayload, passphrase: str) -> bytes:
    """Decrypt a payload back to plaintext bytes.

    Raises:
        DecryptionFailed: Unsupported version, malformed fields, or a
            failed authentication tag check.
    """
    if payload.version != CURRENT_VERSION:
        raise DecryptionFailed(f"Unsupported encryption version: {payload.version}")

    try:
        salt = base64.b64decode(payload.salt, validate=True)
        iv = base64.b64decode(payload.iv, validate=True)
        ciphertext = base64.b64decode(payload.ciphertext, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionFailed(f"Malformed encrypted payload: {exc}") from exc

    if len(iv) != IV_LENGTH or len(ciphertext) < AUTH_TAG_LENGTH:
        raise DecryptionFailed("Malformed encrypted payload: bad IV or truncated ciphertext")

    key = derive_key(passphrase, salt)
    try:
        return AESGCM(key).decrypt(iv, ciphertext, None)
    except InvalidTag as exc:
        raise DecryptionFailed("Decryption failed: wrong passphrase or corrupted data.") from exc


def encode_payload(payload: EncryptedPayload) -> str:
    """Wrap a payload as a single base64 string for remote storage."""
    return _b64(payload.model_dump_json().encode("utf-8"))


def decode_payload(encoded: Data) -> EncryptedPayload:
    """Inverse of :func:`encode_payload`.

    Raises:
        DecryptionFailed: If the string is not a valid wrapped payload.
    """
    try:
        raw = base64.b64decode(_as_bytes(encoded), validate=True)
        return EncryptedPayload(**json.loads(raw))
    except (binascii.Error, ValueError, TypeError, ValidationError) as exc:
        raise DecryptionFailed(f"Unreadable encrypted payload: {exc}") from exc


def encrypt_to_string(data: Data, passphrase: str) -> str:
    """Encrypt and wrap in one step."""
    return encode_payload(encrypt(data, passphrase))


def decrypt_from_string(encoded: Data, passphrase: str) -> bytes:
    """Unwrap and decrypt in one step."""
    return decrypt(decode_payload(encoded), passphrase)


def hash_content(content: Data) -> str:
    """SHA-256 hex digest of session content."""
    return hashlib.sha256(_as_bytes(content)).hexdigest()


def create_verification_token(passphrase: str) -> str:
    """Encrypt a known plaintext so other devices can check a passphrase.

    The token is small and stored at the remote root. A second device
    verifies against it before touching the manifest or any session.
    """
    return encrypt_to_string(VERIFICATION_PLAINTEXT, passphrase)


def verify_passphrase(passphrase: str, token: Data) -> bool:
    """Check a passphrase against a stored verification token."""
    try:
        return decrypt_from_string(token, passphrase) == VERIFICATION_PLAINTEXT
    except DecryptionFailed:
        return False


class CachedEncryptor:
    """Encrypts many objects under one derived key.

    PBKDF2 runs once, against a single fresh salt, and every call still
    draws a fresh IV. Ciphertexts produced by one encryptor share a salt.
    Hold one only for the lifetime of a single push; never persist it.
    """

    def __init__(self, passphrase: str):
        self._salt = os.urandom(SALT_LENGTH)
        self._key = derive_key(passphrase, self._salt)

    def encrypt(self, data: Data) -> EncryptedPayload:
        return _seal(_as_bytes(data), self._key, self._salt)

    def encrypt_to_string(self, data: Data) -> str:
        return encode_payload(self.encrypt(data))


def cached_encryptor(passphrase: str) -> CachedEncryptor:
    """Create a :class:`CachedEncryptor` for one push operation."""
    return CachedEncryptor(passphrase)
