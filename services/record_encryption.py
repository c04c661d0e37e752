"""Record-level composition of the field, JSON and search-index services.

An ``EncryptionProfile`` is the static description of one record type: its
encrypted flat fields, its JSON fields with their sensitive keys, the searchable
field with its index column, and column width limits.  A ``RecordEncryptor``
holds one service per concern and applies the profile to plain attribute
mappings.  Each mapping is the in-memory state of one record, so no state is
shared between records.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from config import Settings, get_settings
from services.classifier import looks_encrypted
from services.field_encryption import FieldEncryptor, is_empty
from services.json_field_encryption import JsonFieldEncryptor
from services.search_index import index_of


@dataclass(frozen=True)
class SearchableField:
    """An encrypted field with a deterministic index column beside it."""

    name: str = "email"
    index_column: str = "email_index"


@dataclass(frozen=True)
class EncryptionProfile:
    table: str
    fields: tuple[str, ...] = ()
    json_fields: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    searchable: SearchableField | None = None
    column_limits: Mapping[str, int] = field(default_factory=dict)
    primary_key: str = "id"

    @property
    def columns(self) -> tuple[str, ...]:
        """Every stored column the profile reads or writes."""
        names = list(self.fields) + list(self.json_fields)
        if self.searchable is not None:
            names += [self.searchable.name, self.searchable.index_column]
        return tuple(names)

    @property
    def is_empty(self) -> bool:
        return not self.fields and not self.json_fields and self.searchable is None


class SearchableIndex:
    """Keeps a searchable field and its index column in step."""

    def __init__(self, column: SearchableField, encryptor: FieldEncryptor) -> None:
        self.column = column
        self.encryptor = encryptor

    def index_for(self, value: Any) -> str | None:
        if is_empty(value):
            return None
        plaintext = self.encryptor.on_get(value) if looks_encrypted(value) else value
        if looks_encrypted(plaintext):
            # Undecryptable ciphertext; an index of it would never match a lookup
            return None
        return index_of(str(plaintext))

    def on_set(self, attributes: dict[str, Any], value: Any, *, max_length: int | None) -> None:
        attributes[self.column.name] = self.encryptor.on_set(value, max_length=max_length)
        attributes[self.column.index_column] = self.index_for(value)


class RecordEncryptor:
    """Explicit load/save hooks for one record type."""

    def __init__(
        self,
        profile: EncryptionProfile,
        settings: Settings | None = None,
        *,
        strict: bool = False,
    ) -> None:
        resolved = settings or get_settings()
        self.profile = profile
        self.strict = strict
        self.fields = FieldEncryptor(settings, compact=resolved.compact_field)
        self.json_fields = {
            name: JsonFieldEncryptor(keys, settings, compact=resolved.compact_field)
            for name, keys in profile.json_fields.items()
        }
        self.searchable = (
            SearchableIndex(
                profile.searchable, FieldEncryptor(settings, compact=resolved.compact_email)
            )
            if profile.searchable is not None
            else None
        )

    def _limit(self, name: str) -> int | None:
        return self.profile.column_limits.get(name) if self.strict else None

    # ─── Attribute access ────────────────────────────────────────────────────

    def set_attribute(self, attributes: dict[str, Any], name: str, value: Any) -> None:
        """Assign *value* to *name*, encrypting it eagerly if the field is sensitive."""
        if self.searchable is not None and name == self.searchable.column.name:
            self.searchable.on_set(attributes, value, max_length=self._limit(name))
        elif name in self.profile.fields:
            attributes[name] = self.fields.on_set(value, max_length=self._limit(name))
        elif name in self.json_fields:
            attributes[name] = self.json_fields[name].on_set(value)
        else:
            attributes[name] = value

    def get_attribute(self, attributes: Mapping[str, Any], name: str) -> Any:
        """Read *name*, decrypting it if the field is sensitive."""
        value = attributes.get(name)
        if self.searchable is not None and name == self.searchable.column.name:
            return self.searchable.encryptor.on_get(value)
        if name in self.profile.fields:
            return self.fields.on_get(value)
        if name in self.json_fields:
            return self.json_fields[name].on_get(value)
        return value

    def save(self, values: Mapping[str, Any]) -> dict[str, Any]:
        """Return the storable form of a whole record."""
        stored: dict[str, Any] = {}
        for name, value in values.items():
            self.set_attribute(stored, name, value)
        return stored

    def load(self, stored: Mapping[str, Any]) -> dict[str, Any]:
        """Return the plaintext form of a stored record, e.g. a raw query row."""
        return {name: self.get_attribute(stored, name) for name in stored}

    # ─── Bulk migration ──────────────────────────────────────────────────────

    def prepare_encrypt(self, stored: Mapping[str, Any]) -> dict[str, Any]:
        """Return the column updates that bring a stored row fully to rest encryption.

        An empty result means the row is already encrypted.
        """
        changes: dict[str, Any] = {}
        for name in self.profile.fields:
            value = stored.get(name)
            if not is_empty(value) and not looks_encrypted(value):
                changes[name] = self.fields.on_set(value, max_length=self._limit(name))
        for name, encryptor in self.json_fields.items():
            raw = stored.get(name)
            if is_empty(raw):
                continue
            data = encryptor.parse(raw)
            if any(
                not is_empty(data.get(key)) and not looks_encrypted(data.get(key))
                for key in encryptor.keys
            ):
                changes[name] = encryptor.on_set(data)
        changes.update(self.prepare_email(stored))
        return changes

    def prepare_email(self, stored: Mapping[str, Any]) -> dict[str, Any]:
        """Updates for the searchable field and its index only."""
        if self.searchable is None:
            return {}
        column = self.searchable.column
        value = stored.get(column.name)
        if is_empty(value):
            return {}
        changes: dict[str, Any] = {}
        if not looks_encrypted(value):
            changes[column.name] = self.searchable.encryptor.on_set(
                value, max_length=self._limit(column.name)
            )
        index = self.searchable.index_for(value)
        if index is not None and stored.get(column.index_column) != index:
            changes[column.index_column] = index
        return changes

    def prepare_decrypt(self, stored: Mapping[str, Any]) -> dict[str, Any]:
        """Return the column updates that turn a stored row back into plaintext.

        Raises FormatError or IntegrityError for a value that looks encrypted
        but can't be decoded.  The search index is left in place.
        """
        changes: dict[str, Any] = {}
        flat = list(self.profile.fields)
        encryptors = {name: self.fields for name in flat}
        if self.searchable is not None:
            encryptors[self.searchable.column.name] = self.searchable.encryptor
        for name, encryptor in encryptors.items():
            value = stored.get(name)
            decrypted = encryptor.decrypt(value)
            if decrypted != value:
                changes[name] = decrypted
        for name, encryptor in self.json_fields.items():
            raw = stored.get(name)
            if is_empty(raw):
                continue
            before = encryptor.parse(raw)
            after = encryptor.decrypt(before)
            if after != before:
                changes[name] = json.dumps(after)
        return changes

