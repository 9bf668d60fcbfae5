"""
Authenticated encryption for secrets at rest.

Envelope layout: base64( nonce[12] || ciphertext || tag[16] ), AES-256-GCM.
AESGCM.encrypt() already returns ciphertext with the tag appended.
"""

import base64
import binascii
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .constants import AES_KEY_BYTES, AES_NONCE_BYTES

_TAG_BYTES = 16


class DecryptionError(Exception):
    """Envelope is malformed or was not produced with this master key."""


def generate_master_key() -> str:
    """Return a fresh base64-encoded 256-bit master key."""
    return base64.b64encode(secrets.token_bytes(AES_KEY_BYTES)).decode("ascii")


def decode_master_key(master_key: str) -> bytes:
    """Decode and validate a base64 master key. Raises ValueError."""
    try:
        key = base64.b64decode(master_key, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"master key is not valid base64: {e}") from e
    if len(key) != AES_KEY_BYTES:
        raise ValueError(f"master key must be {AES_KEY_BYTES} bytes, got {len(key)}")
    return key


def encrypt_secret(plaintext: str, key: bytes) -> str:
    nonce = secrets.token_bytes(AES_NONCE_BYTES)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.b64encode(nonce + ciphertext).decode("ascii")


def decrypt_secret(envelope: str, key: bytes) -> str:
    try:
        raw = base64.b64decode(envelope.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError("envelope is not valid base64") from e
    if len(raw) < AES_NONCE_BYTES + _TAG_BYTES:
        raise DecryptionError("envelope is truncated")
    nonce, ciphertext = raw[:AES_NONCE_BYTES], raw[AES_NONCE_BYTES:]
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise DecryptionError("authentication tag mismatch") from e
    return plaintext.decode("utf-8")
