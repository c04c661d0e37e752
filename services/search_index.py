"""Deterministic search index for the encrypted email field.

This is the only place the index is computed.  Writers, the authentication
lookup and the bulk tools all import it so the hash can never drift.
"""

import hashlib


def index_of(value: str) -> str:
    """Return the lowercase hex SHA-256 of the lowercased value.

    Lone surrogates are hashed as their UTF-8-style bytes instead of failing.
    """
    return hashlib.sha256(value.lower().encode("utf-8", "surrogatepass")).hexdigest()
