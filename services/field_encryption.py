"""Per-field encrypt-on-write / decrypt-on-read orchestration.

The caller always sees plaintext and the store always holds ciphertext.
Repeated reads and writes of the same field are idempotent:

* ``on_set`` never re-encrypts a value the classifier recognises as ciphertext.
* ``on_get`` returns legacy plaintext rows unchanged, and unwraps one extra
  layer when a decrypted value is itself ciphertext.

Decode errors are swallowed only on the read path.  Encode errors always
propagate so plaintext can never be stored by accident.
"""

from __future__ import annotations

import logging
from typing import Any

from config import Settings, get_settings
from crypto import (
    BLOCK_SIZE,
    decrypt_value,
    encode,
    encode_compact,
    encode_standard,
    resolve_key,
)
from errors import CapacityError, ConfigError, FormatError, IntegrityError
from services.classifier import looks_encrypted

logger = logging.getLogger(__name__)

PLACEHOLDER_MARKER = "..."


def is_empty(value: Any) -> bool:
    """True for values that are stored as absent (None, "" and empty containers)."""
    if value is None:
        return True
    if isinstance(value, (str, bytes, list, tuple, dict, set)):
        return len(value) == 0
    return False


class FieldEncryptor:
    """Encrypts and decrypts the values of a single flat field.

    Settings are resolved on each call when none are given, so key changes and
    test overrides take effect without rebuilding the encryptor.
    """

    def __init__(self, settings: Settings | None = None, *, compact: bool = False) -> None:
        self._settings = settings
        self.compact = compact

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    # ─── Write path ──────────────────────────────────────────────────────────

    def on_set(self, value: Any, *, max_length: int | None = None) -> str | None:
        """Return the value to store for *value*.

        ``max_length`` is the column width when the backend enforces it, and
        None otherwise.  Bytes must be UTF-8; other non-strings are stored as
        ``str(value)``.
        """
        if is_empty(value):
            return None
        if isinstance(value, bytes):
            try:
                value = value.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise FormatError("Field value bytes are not valid UTF-8") from exc
        if looks_encrypted(value):
            return value
        return self.encode_for_storage(str(value), max_length)

    def encode_for_storage(self, plaintext: str, max_length: int | None = None) -> str:
        """Encrypt *plaintext*, falling back to shorter encodings under a width limit.

        Without a limit the configured format is used as is.  With one the
        order is standard, compact, truncation, then placeholder, as far as
        ``overflow_policy`` allows.  Raises CapacityError when nothing fits.
        """
        settings = self.settings
        key = resolve_key(settings)
        if max_length is None:
            return encode(plaintext, key, cipher=settings.cipher, compact=self.compact)

        if not self.compact:
            encoded = encode_standard(plaintext, key, settings.cipher)
            if len(encoded) <= max_length:
                return encoded

        encoded = encode_compact(plaintext, key)
        if len(encoded) <= max_length:
            return encoded

        if settings.overflow_policy == "raise":
            raise CapacityError(
                f"Encrypted value needs {len(encoded)} characters; column allows {max_length}"
            )

        truncated = self._truncate_to_fit(
            plaintext, key, max_length, overflow=len(encoded) - max_length
        )
        if truncated is not None:
            return truncated

        if settings.overflow_policy == "placeholder":
            placeholder = plaintext[: settings.placeholder_length] + PLACEHOLDER_MARKER
            encoded = encode_compact(placeholder, key)
            if len(encoded) <= max_length:
                logger.warning(
                    "Stored a %d-character placeholder for a %d-character value "
                    "that could not fit a %d-character column",
                    len(placeholder),
                    len(plaintext),
                    max_length,
                )
                return encoded

        raise CapacityError(
            f"Value could not be encrypted within {max_length} characters "
            f"after {settings.max_truncation_attempts} truncation attempts"
        )

    def _truncate_to_fit(
        self, plaintext: str, key: bytes, max_length: int, *, overflow: int
    ) -> str | None:
        """Shorten the email local part (or the tail) until the compact form fits."""
        if "@" in plaintext:
            head, _, domain = plaintext.rpartition("@")
            suffix = "@" + domain
        else:
            head, suffix = plaintext, ""

        for _ in range(self.settings.max_truncation_attempts):
            if len(head) <= 1:
                return None
            # base64 adds a third and padding works in whole AES blocks
            cut = -(-overflow * 3 // 4) + BLOCK_SIZE - 1
            head = head[: max(1, len(head) - cut)]
            candidate = head + suffix
            encoded = encode_compact(candidate, key)
            overflow = len(encoded) - max_length
            if overflow <= 0:
                logger.warning(
                    "Truncated a %d-character value to %d characters to fit a "
                    "%d-character column",
                    len(plaintext),
                    len(candidate),
                    max_length,
                )
                return encoded
        return None

    # ─── Read path ───────────────────────────────────────────────────────────

    def on_get(self, stored: Any) -> Any:
        """Return the plaintext for *stored*, or *stored* itself if it can't be decoded."""
        if is_empty(stored) or not looks_encrypted(stored):
            return stored
        try:
            plaintext = decrypt_value(stored, settings=self.settings)
        except IntegrityError:
            logger.warning("Stored value failed authentication; returning it undecrypted")
            return stored
        except ConfigError as exc:
            logger.warning("Cannot decrypt stored value: %s", exc)
            return stored
        except FormatError as exc:
            logger.debug("Stored value is not a valid envelope: %s", exc)
            return stored
        return self._unwrap_nested(plaintext)

    def decrypt(self, stored: Any) -> Any:
        """Strict variant of on_get for explicit decryption.

        Values that don't look encrypted are returned unchanged.  Values that do
        but fail to decode raise FormatError or IntegrityError.
        """
        if is_empty(stored) or not looks_encrypted(stored):
            return stored
        return self._unwrap_nested(decrypt_value(stored, settings=self.settings))

    def _unwrap_nested(self, plaintext: str) -> str:
        if not self.settings.retry_nested_decrypt or not looks_encrypted(plaintext):
            return plaintext
        logger.warning("Decrypted value is itself ciphertext; decoding a second layer")
        try:
            return decrypt_value(plaintext, settings=self.settings)
        except (FormatError, IntegrityError):
            return plaintext
