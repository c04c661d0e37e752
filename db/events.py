"""SQLAlchemy ORM event listeners for encrypted models."""

import logging

from sqlalchemy import event, inspect

from db.encrypted_type import EncryptedString
from services.field_encryption import FieldEncryptor
from services.record_encryption import SearchableField, SearchableIndex

logger = logging.getLogger(__name__)

_registered: set[type] = set()


def searchable_columns(model) -> list[SearchableField]:
    """Searchable EncryptedString columns of a mapped class, with their index columns."""
    found = []
    for attr in inspect(model).column_attrs:
        column_type = attr.columns[0].type
        if isinstance(column_type, EncryptedString) and column_type.searchable:
            found.append(SearchableField(name=attr.key, index_column=column_type.searchable))
    return found


def register_searchable_index(model) -> None:
    """Keep each searchable column's index in step at assignment time.

    The index is computed from the plaintext the moment the attribute is set,
    so it is correct before the row is flushed.  Clearing the value clears the
    index.
    """
    if model in _registered:
        return
    for column in searchable_columns(model):
        _listen(model, SearchableIndex(column, FieldEncryptor()))
        logger.debug("Search index %s.%s tracks %s", model.__name__, column.index_column, column.name)
    _registered.add(model)


def _listen(model, searchable: SearchableIndex) -> None:
    @event.listens_for(getattr(model, searchable.column.name), "set")
    def update_index(target, value, oldvalue, initiator):
        setattr(target, searchable.column.index_column, searchable.index_for(value))
