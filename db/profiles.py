"""Build encryption profiles from mapped SQLAlchemy classes.

The column types are the single declaration of what is encrypted.  This module
reads them back into an ``EncryptionProfile`` for code that works on raw rows,
such as the bulk tools.
"""

from functools import cache

from sqlalchemy import inspect

from db.encrypted_type import EncryptedJSON, EncryptedString
from services.record_encryption import EncryptionProfile, SearchableField


@cache
def profile_for(model) -> EncryptionProfile:
    """Return the EncryptionProfile for a mapped class, keyed by column names."""
    mapper = inspect(model)
    fields: list[str] = []
    json_fields: dict[str, tuple[str, ...]] = {}
    limits: dict[str, int] = {}
    searchable = None

    for attr in mapper.column_attrs:
        column = attr.columns[0]
        column_type = column.type
        if isinstance(column_type, EncryptedString):
            if column_type.length is not None:
                limits[column.name] = column_type.length
            if column_type.searchable:
                index_column = mapper.attrs[column_type.searchable].columns[0].name
                searchable = SearchableField(name=column.name, index_column=index_column)
            else:
                fields.append(column.name)
        elif isinstance(column_type, EncryptedJSON):
            json_fields[column.name] = column_type.keys

    return EncryptionProfile(
        table=mapper.local_table.name,
        fields=tuple(fields),
        json_fields=json_fields,
        searchable=searchable,
        column_limits=limits,
        primary_key=mapper.primary_key[0].name,
    )
