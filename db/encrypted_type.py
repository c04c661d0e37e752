"""SQLAlchemy custom column types for transparent field-level encryption.

Encrypts on write, decrypts on read, so application code works with plaintext.
Both directions go through the field orchestrators, which makes re-saving a
row that already holds ciphertext a no-op.
"""

from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import String, Text, TypeDecorator

from config import get_settings
from services.field_encryption import FieldEncryptor
from services.json_field_encryption import JsonFieldEncryptor

# Shared by every column; they resolve settings on each call
_FIELD_ENCRYPTORS = {flag: FieldEncryptor(compact=flag) for flag in (False, True)}


def is_strict_dialect(dialect) -> bool:
    """True when the backend enforces declared text column widths."""
    if dialect is None:
        return False
    return dialect.name in get_settings().strict_width_dialects


class EncryptedString(TypeDecorator):
    """A String column that encrypts values at rest.

    Without a length the underlying column is Text.  With a length, a backend
    listed in ``strict_width_dialects`` gets the size-constrained fallback
    (compact envelope, then truncation) so writes never overflow the column.
    Pass ``searchable`` to keep a deterministic index in a sibling column.
    """

    impl = Text
    cache_ok = True

    def __init__(
        self,
        length: int | None = None,
        *,
        compact: bool | None = None,
        searchable: str | None = None,
    ) -> None:
        super().__init__()
        if length is not None:
            self.impl = String(length)
        self.length = length
        self.compact = compact
        self.searchable = searchable

    def _encryptor(self) -> FieldEncryptor:
        compact = self.compact
        if compact is None:
            settings = get_settings()
            compact = settings.compact_email if self.searchable else settings.compact_field
        return _FIELD_ENCRYPTORS[compact]

    def process_bind_param(self, value, dialect):
        """Encrypt before writing to the database."""
        if value is None:
            return None
        max_length = self.length if is_strict_dialect(dialect) else None
        return self._encryptor().on_set(value, max_length=max_length)

    def process_result_value(self, value, dialect):
        """Decrypt when reading from the database."""
        if value is None:
            return None
        return self._encryptor().on_get(value)


class EncryptedJSON(TypeDecorator):
    """A JSON-object column whose listed keys are encrypted at rest.

    Stored as Text holding serialized JSON.  Unlisted keys stay plaintext.
    """

    impl = Text
    cache_ok = True

    def __init__(self, keys: Iterable[str]) -> None:
        super().__init__()
        self.keys = tuple(keys)
        self._encryptors: dict[bool, JsonFieldEncryptor] = {}

    def _encryptor(self) -> JsonFieldEncryptor:
        compact = get_settings().compact_field
        if compact not in self._encryptors:
            self._encryptors[compact] = JsonFieldEncryptor(self.keys, compact=compact)
        return self._encryptors[compact]

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return self._encryptor().on_set(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return self._encryptor().on_get(value)
