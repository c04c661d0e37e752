"""Lookup of users by encrypted email.

The encrypted column can't be queried by value, so every email lookup goes
through the deterministic index column instead.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.events import searchable_columns
from services.search_index import index_of


def _index_attribute(model):
    columns = searchable_columns(model)
    if not columns:
        raise ValueError(f"{model.__name__} has no searchable encrypted column")
    return columns[0], getattr(model, columns[0].index_column)


def where_email(stmt: Select, model, email: str) -> Select:
    """Filter *stmt* to rows whose email matches, case-insensitively."""
    _, index_attr = _index_attribute(model)
    return stmt.where(index_attr == index_of(email))


async def find_by_email(session: AsyncSession, model, email: str):
    """Return the first row whose email matches, or None."""
    result = await session.execute(where_email(select(model), model, email).limit(1))
    return result.scalars().first()


async def retrieve_by_credentials(
    session: AsyncSession, model, credentials: Mapping[str, Any]
):
    """Find the user a set of login credentials refers to.

    The email is matched through its index.  Keys containing "password" are
    never queried.  Other keys match by equality, or by IN for list values.
    Returns None for empty or password-only credentials.
    """
    if not credentials or all("password" in key for key in credentials):
        return None

    email_column, _ = _index_attribute(model)
    stmt = select(model)
    for key, value in credentials.items():
        if "password" in key:
            continue
        if key == email_column.name:
            stmt = where_email(stmt, model, value)
        elif isinstance(value, (list, tuple, set, frozenset)):
            stmt = stmt.where(getattr(model, key).in_(list(value)))
        else:
            stmt = stmt.where(getattr(model, key) == value)

    result = await session.execute(stmt.limit(1))
    return result.scalars().first()
