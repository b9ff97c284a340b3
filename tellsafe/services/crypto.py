"""
At-rest encryption for respondent free text.

Tokens are url-safe base64 of ``nonce(12) || ciphertext || tag(16)`` produced
with AES-256-GCM. Keys are per organization and supplied from configuration;
nothing in this module generates, stores or rotates them.
"""
import os
import base64
import binascii
from typing import Mapping, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from tellsafe.errors import DecryptionError, KeyUnavailableError

KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16

_CHECK_VALUE = "key-check@tellsafe"

def _aead(key: bytes) -> AESGCM:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_BYTES:
        raise KeyUnavailableError(f"organization key must be {KEY_BYTES} bytes")
    return AESGCM(bytes(key))

def encrypt(plaintext: str, org_key: bytes) -> str:
    nonce = os.urandom(NONCE_BYTES)
    sealed = _aead(org_key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.urlsafe_b64encode(nonce + sealed).decode("ascii")

def _unpack(token: Union[str, bytes]) -> bytes:
    try:
        raw = token.encode("ascii") if isinstance(token, str) else bytes(token)
        packed = base64.b64decode(raw, altchars=b"-_", validate=True)
    except (UnicodeEncodeError, binascii.Error, ValueError, TypeError) as exc:
        raise DecryptionError("ciphertext is not valid base64") from exc
    # Reject non-canonical encodings so no flipped bit can hide in padding bits
    if base64.urlsafe_b64encode(packed) != raw:
        raise DecryptionError("ciphertext encoding is not canonical")
    if len(packed) < NONCE_BYTES + TAG_BYTES:
        raise DecryptionError("ciphertext is truncated")
    return packed

def decrypt(ciphertext: Union[str, bytes], org_key: bytes) -> str:
    try:
        aead = _aead(org_key)
    except KeyUnavailableError as exc:
        raise DecryptionError(str(exc)) from exc
    packed = _unpack(ciphertext)
    nonce, sealed = packed[:NONCE_BYTES], packed[NONCE_BYTES:]
    try:
        plain = aead.decrypt(nonce, sealed, None)
    except InvalidTag as exc:
        raise DecryptionError("authentication failed (wrong key or tampered ciphertext)") from exc
    try:
        return plain.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionError("plaintext is not valid UTF-8") from exc

def verify_key(org_key: bytes) -> bool:
    """Round-trip a fixed check value; used by the `keys check` CLI at deploy time."""
    try:
        return decrypt(encrypt(_CHECK_VALUE, org_key), org_key) == _CHECK_VALUE
    except (DecryptionError, KeyUnavailableError):
        return False


class OrgKeyProvider:
    """Resolves an organization's key from a slug -> hex mapping."""

    def __init__(self, keys: Mapping[str, str]):
        self._keys = dict(keys or {})

    @classmethod
    def from_config(cls, config) -> "OrgKeyProvider":
        return cls(config.get("ORG_ENCRYPTION_KEYS") or {})

    def slugs(self) -> list[str]:
        return sorted(self._keys)

    def key_for(self, org) -> bytes:
        slug = getattr(org, "slug", org)
        hex_key = self._keys.get(slug)
        if not hex_key:
            raise KeyUnavailableError(f"no encryption key configured for org {slug!r}")
        try:
            key = bytes.fromhex(hex_key)
        except (TypeError, ValueError) as exc:
            raise KeyUnavailableError(f"encryption key for org {slug!r} is not hex") from exc
        if len(key) != KEY_BYTES:
            raise KeyUnavailableError(f"encryption key for org {slug!r} must be {KEY_BYTES} bytes")
        return key
