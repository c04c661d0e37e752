"""Cipher envelope codec for field-level encryption at rest.

Two on-disk formats are produced and consumed:

* Standard: base64 of a compact JSON object ``{"iv", "value", "mac"}``.  The
  value is AES-256-CBC (or AES-128-CBC) with PKCS#7 padding, and ``mac`` is the
  hex HMAC-SHA256 of ``iv || value`` in their base64 forms.
* Compact: ``c:<iv>.<ciphertext>.<tag>``, each segment base64.  AES-128-CBC with
  the first 16 key bytes and the first 16 bytes of HMAC-SHA256 over the raw
  ``iv || ciphertext``.  The shortened tag is a deliberate trade against column
  width and gives 128-bit rather than 256-bit forgery resistance.

Both formats are wire contracts with previously written data and must be
reproduced byte for byte.

The key is read from ENCRYPTION_AT_REST_KEY (falling back to APP_KEY) on every
call and never cached here.  Generate one with:

    python -c "import base64, os; print('base64:' + base64.b64encode(os.urandom(32)).decode())"
"""

from __future__ import annotations

import base64
import json
import logging
import os
from dataclasses import dataclass
from hmac import compare_digest

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from config import Settings, get_settings
from errors import ConfigError, FormatError, IntegrityError

logger = logging.getLogger(__name__)

# Supported standard ciphers and their key sizes in bytes
CIPHER_KEY_SIZES: dict[str, int] = {
    "AES-128-CBC": 16,
    "AES-256-CBC": 32,
}
DEFAULT_CIPHER = "AES-256-CBC"

IV_SIZE = 16
BLOCK_SIZE = 16
COMPACT_PREFIX = "c:"
COMPACT_SEPARATOR = "."
COMPACT_KEY_SIZE = 16
COMPACT_TAG_SIZE = 16
STANDARD_KEYS = frozenset({"iv", "value", "mac"})


# ─── Key material ─────────────────────────────────────────────────────────────


def resolve_key(settings: Settings | None = None) -> bytes:
    """Return the configured secret as raw bytes.

    Raises ConfigError if neither the dedicated key nor the application key is
    set, or if a ``base64:`` secret does not decode.
    """
    settings = settings or get_settings()
    raw = settings.key or settings.app_key
    if not raw:
        raise ConfigError(
            "ENCRYPTION_AT_REST_KEY is not set and no APP_KEY fallback is configured"
        )
    if raw.startswith("base64:"):
        try:
            return base64.b64decode(raw[len("base64:"):], validate=True)
        except ValueError as exc:
            raise ConfigError(f"Invalid base64 encryption key: {exc}") from exc
    return raw.encode("utf-8")


def check_key(key: bytes, cipher: str = DEFAULT_CIPHER) -> None:
    """Raise ConfigError unless *key* is usable with *cipher*."""
    expected = CIPHER_KEY_SIZES.get(cipher)
    if expected is None:
        raise ConfigError(
            f"Unsupported cipher {cipher!r}. Supported: {sorted(CIPHER_KEY_SIZES)}"
        )
    if len(key) != expected:
        raise ConfigError(
            f"Invalid key size for {cipher}: expected {expected} bytes, got {len(key)}"
        )


def is_encryption_enabled(settings: Settings | None = None) -> bool:
    """Return True if a usable key and cipher are configured."""
    settings = settings or get_settings()
    try:
        check_key(resolve_key(settings), settings.cipher)
    except ConfigError as exc:
        logger.warning("Encryption at rest is not usable: %s", exc)
        return False
    return True


# ─── Primitives ───────────────────────────────────────────────────────────────


def b64decode_strict(value: str | bytes) -> bytes:
    """Decode strict (padded, alphabet-only) base64 or raise FormatError."""
    try:
        return base64.b64decode(value, validate=True)
    except ValueError as exc:
        raise FormatError(f"Invalid base64: {exc}") from exc


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _to_bytes(plaintext: str | bytes) -> bytes:
    return plaintext.encode("utf-8") if isinstance(plaintext, str) else plaintext


def _mac(key: bytes, data: bytes) -> hmac.HMAC:
    h = hmac.HMAC(key, hashes.SHA256())
    h.update(data)
    return h


def _cbc_encrypt(key: bytes, iv: bytes, plaintext: bytes) -> bytes:
    padder = padding.PKCS7(BLOCK_SIZE * 8).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def _cbc_decrypt(key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(BLOCK_SIZE * 8).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as exc:
        raise FormatError("Invalid padding in decrypted payload") from exc


def _check_blocks(iv: bytes, ciphertext: bytes) -> None:
    if len(iv) != IV_SIZE:
        raise FormatError(f"Invalid IV size: expected {IV_SIZE}, got {len(iv)}")
    if not ciphertext or len(ciphertext) % BLOCK_SIZE:
        raise FormatError("Ciphertext is not a whole number of AES blocks")


# ─── Standard envelope ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StandardEnvelope:
    """Base64 components of a standard envelope."""

    iv: str
    value: str
    mac: str

    def serialize(self) -> str:
        # Escaped slashes keep the output identical to existing stored data
        body = json.dumps(
            {"iv": self.iv, "value": self.value, "mac": self.mac},
            separators=(",", ":"),
        ).replace("/", "\\/")
        return _b64encode(body.encode("ascii"))

    @classmethod
    def parse(cls, payload: str) -> StandardEnvelope:
        """Parse a serialized envelope.  Raises FormatError on any structural problem."""
        try:
            data = json.loads(b64decode_strict(payload))
        except ValueError as exc:
            raise FormatError(f"Envelope is not JSON: {exc}") from exc
        if not isinstance(data, dict) or set(data) != STANDARD_KEYS:
            raise FormatError("Envelope must contain exactly the keys iv, value and mac")
        if not all(isinstance(data[k], str) for k in STANDARD_KEYS):
            raise FormatError("Envelope components must be strings")
        return cls(iv=data["iv"], value=data["value"], mac=data["mac"])


def encode_standard(
    plaintext: str | bytes, key: bytes, cipher: str = DEFAULT_CIPHER
) -> str:
    """Encrypt *plaintext* into a serialized standard envelope with a fresh IV."""
    check_key(key, cipher)
    iv = os.urandom(IV_SIZE)
    ciphertext = _cbc_encrypt(key, iv, _to_bytes(plaintext))
    iv_b64 = _b64encode(iv)
    value_b64 = _b64encode(ciphertext)
    mac = _mac(key, (iv_b64 + value_b64).encode("ascii")).finalize().hex()
    return StandardEnvelope(iv=iv_b64, value=value_b64, mac=mac).serialize()


def decode_standard(payload: str, key: bytes, cipher: str = DEFAULT_CIPHER) -> bytes:
    """Verify and decrypt a standard envelope.

    Raises FormatError for a malformed envelope and IntegrityError when the MAC
    does not match (tampering or wrong key).
    """
    check_key(key, cipher)
    envelope = StandardEnvelope.parse(payload)
    iv = b64decode_strict(envelope.iv)
    ciphertext = b64decode_strict(envelope.value)
    _check_blocks(iv, ciphertext)
    try:
        tag = bytes.fromhex(envelope.mac)
    except ValueError as exc:
        raise FormatError("MAC is not hexadecimal") from exc

    try:
        _mac(key, (envelope.iv + envelope.value).encode("ascii")).verify(tag)
    except InvalidSignature as exc:
        raise IntegrityError("The MAC is invalid") from exc
    return _cbc_decrypt(key, iv, ciphertext)


# ─── Compact envelope ─────────────────────────────────────────────────────────


def _compact_key(key: bytes) -> bytes:
    if len(key) < COMPACT_KEY_SIZE:
        raise ConfigError(
            f"Compact encryption needs at least {COMPACT_KEY_SIZE} key bytes, got {len(key)}"
        )
    return key[:COMPACT_KEY_SIZE]


def split_compact(payload: str) -> tuple[bytes, bytes, bytes]:
    """Split a compact payload into raw (iv, ciphertext, tag).

    Raises FormatError unless the payload is ``c:`` followed by exactly three
    non-empty, valid base64 segments.
    """
    if not payload.startswith(COMPACT_PREFIX):
        raise FormatError("Compact payload must start with 'c:'")
    segments = payload[len(COMPACT_PREFIX):].split(COMPACT_SEPARATOR)
    if len(segments) != 3 or not all(segments):
        raise FormatError("Compact payload must have exactly three non-empty segments")
    iv, ciphertext, tag = (b64decode_strict(s) for s in segments)
    return iv, ciphertext, tag


def encode_compact(plaintext: str | bytes, key: bytes) -> str:
    """Encrypt *plaintext* into the shorter ``c:`` envelope."""
    aes_key = _compact_key(key)
    iv = os.urandom(IV_SIZE)
    ciphertext = _cbc_encrypt(aes_key, iv, _to_bytes(plaintext))
    tag = _mac(key, iv + ciphertext).finalize()[:COMPACT_TAG_SIZE]
    return COMPACT_PREFIX + COMPACT_SEPARATOR.join(
        _b64encode(part) for part in (iv, ciphertext, tag)
    )


def decode_compact(payload: str, key: bytes) -> bytes:
    """Verify and decrypt a compact envelope.  Fails like decode_standard."""
    aes_key = _compact_key(key)
    iv, ciphertext, tag = split_compact(payload)
    _check_blocks(iv, ciphertext)
    if len(tag) != COMPACT_TAG_SIZE:
        raise FormatError(f"Invalid tag size: expected {COMPACT_TAG_SIZE}, got {len(tag)}")

    # HMAC.verify() needs the full digest, so compare the truncated tag directly
    expected = _mac(key, iv + ciphertext).finalize()[:COMPACT_TAG_SIZE]
    if not compare_digest(expected, tag):
        raise IntegrityError("The MAC is invalid")
    return _cbc_decrypt(aes_key, iv, ciphertext)


# ─── Dispatch ─────────────────────────────────────────────────────────────────


def encode(
    plaintext: str | bytes,
    key: bytes,
    *,
    cipher: str = DEFAULT_CIPHER,
    compact: bool = False,
) -> str:
    if compact:
        return encode_compact(plaintext, key)
    return encode_standard(plaintext, key, cipher)


def decode(payload: str, key: bytes, *, cipher: str = DEFAULT_CIPHER) -> bytes:
    """Decode either envelope format, chosen by the ``c:`` tag."""
    if payload.startswith(COMPACT_PREFIX):
        return decode_compact(payload, key)
    return decode_standard(payload, key, cipher)


def encrypt_value(
    plaintext: str, *, compact: bool = False, settings: Settings | None = None
) -> str:
    """Encrypt a string with the configured key.  Errors propagate."""
    settings = settings or get_settings()
    return encode(plaintext, resolve_key(settings), cipher=settings.cipher, compact=compact)


def decrypt_value(payload: str, *, settings: Settings | None = None) -> str:
    """Decrypt a stored envelope with the configured key.  Errors propagate."""
    settings = settings or get_settings()
    raw = decode(payload, resolve_key(settings), cipher=settings.cipher)
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise FormatError("Decrypted payload is not valid UTF-8") from exc
