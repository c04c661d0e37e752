"""Encryption of selected keys inside a JSON-valued field.

Only the configured keys are transformed.  Every other key passes through in
plaintext both ways, so non-sensitive data in the same column stays queryable.

A sensitive string is encrypted as is.  Any other value (number, bool, list,
object) is encrypted as ``STRUCTURED_PREFIX`` plus its JSON text, and so is a
string that itself starts with the prefix, so reads restore the original type.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from config import Settings
from errors import FormatError
from services.classifier import looks_encrypted
from services.field_encryption import FieldEncryptor, is_empty

logger = logging.getLogger(__name__)

STRUCTURED_PREFIX = "\x00json:"


def serialize_value(value: Any) -> str:
    """Plaintext form of a sensitive JSON value."""
    if isinstance(value, str) and not value.startswith(STRUCTURED_PREFIX):
        return value
    return STRUCTURED_PREFIX + json.dumps(value)


def restore_value(plaintext: Any) -> Any:
    """Inverse of serialize_value.  Anything without the prefix is returned unchanged."""
    if not isinstance(plaintext, str) or not plaintext.startswith(STRUCTURED_PREFIX):
        return plaintext
    try:
        return json.loads(plaintext[len(STRUCTURED_PREFIX):])
    except ValueError as exc:
        raise FormatError(f"Invalid serialized value: {exc}") from exc


class JsonFieldEncryptor:
    """Applies FieldEncryptor to a named subset of keys of a JSON object."""

    def __init__(
        self,
        keys: Iterable[str],
        settings: Settings | None = None,
        *,
        compact: bool = False,
    ) -> None:
        self.keys = tuple(keys)
        self.field = FieldEncryptor(settings, compact=compact)

    def on_set(self, structure: Mapping[str, Any] | str | None) -> str | None:
        """Encrypt the sensitive keys and return the serialized object.

        Accepts a mapping or a JSON string.  Raises FormatError for a string that
        is not a JSON object.
        """
        if structure is None or structure == "":
            return None
        data = self.parse(structure)
        for key in self.keys:
            value = data.get(key)
            if key in data and not is_empty(value) and not looks_encrypted(value):
                data[key] = self.field.on_set(serialize_value(value))
        return json.dumps(data)

    def on_get(self, stored: Mapping[str, Any] | str | None) -> Any:
        """Return the parsed object with sensitive keys decrypted.

        Keys that fail to decode are left as stored.  A stored value that isn't
        a JSON object is returned unchanged.
        """
        if stored is None or stored == "":
            return None
        try:
            data = self.parse(stored)
        except FormatError as exc:
            logger.warning("Stored structured field is not a JSON object: %s", exc)
            return stored
        for key in self.keys:
            if key not in data:
                continue
            plaintext = self.field.on_get(data[key])
            try:
                data[key] = restore_value(plaintext)
            except FormatError as exc:
                logger.warning("Decrypted key %r could not be restored: %s", key, exc)
                data[key] = plaintext
        return data

    def decrypt(self, stored: Mapping[str, Any] | str | None) -> dict[str, Any] | None:
        """Strict variant of on_get; decode errors propagate."""
        if stored is None or stored == "":
            return None
        data = self.parse(stored)
        for key in self.keys:
            if key in data:
                data[key] = restore_value(self.field.decrypt(data[key]))
        return data

    @staticmethod
    def parse(structure: Mapping[str, Any] | str) -> dict[str, Any]:
        if isinstance(structure, Mapping):
            return dict(structure)
        if not isinstance(structure, str):
            raise FormatError(f"Expected a mapping or JSON string, got {type(structure).__name__}")
        try:
            data = json.loads(structure)
        except ValueError as exc:
            raise FormatError(f"Invalid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise FormatError("Structured field must hold a JSON object")
        return data
