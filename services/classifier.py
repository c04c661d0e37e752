"""Structural detection of stored ciphertext.

Decides whether a stored value is already one of the two envelope formats
without attempting decryption.  A failed decrypt can't tell plaintext from
ciphertext under the wrong key, so every check here is structural: tag, segment
count, strict base64, lengths and the standard envelope's exact key set.

False negatives are preferred over false positives.  A false positive means a
plaintext value is stored unencrypted.
"""

from __future__ import annotations

import json
from typing import Any

from crypto import (
    BLOCK_SIZE,
    COMPACT_PREFIX,
    COMPACT_TAG_SIZE,
    IV_SIZE,
    STANDARD_KEYS,
    b64decode_strict,
    split_compact,
)
from errors import FormatError

# Standard envelopes are never shorter than this (the smallest is ~190 chars)
STANDARD_MIN_LENGTH = 100


def looks_encrypted(value: Any) -> bool:
    """Return True if *value* is structurally a standard or compact envelope."""
    if not isinstance(value, str) or not value:
        return False
    if value.startswith(COMPACT_PREFIX):
        return _looks_compact(value)
    return _looks_standard(value)


def _looks_compact(value: str) -> bool:
    try:
        iv, ciphertext, tag = split_compact(value)
    except FormatError:
        return False
    return (
        len(iv) == IV_SIZE
        and len(tag) == COMPACT_TAG_SIZE
        and len(ciphertext) > 0
        and len(ciphertext) % BLOCK_SIZE == 0
    )


def _looks_standard(value: str) -> bool:
    if len(value) <= STANDARD_MIN_LENGTH:
        return False
    try:
        data = json.loads(b64decode_strict(value))
    except (FormatError, ValueError):
        return False
    if not isinstance(data, dict) or set(data) != STANDARD_KEYS:
        return False
    for name in STANDARD_KEYS:
        component = data[name]
        if not isinstance(component, str) or not component:
            return False
        try:
            b64decode_strict(component)
        except FormatError:
            return False
    return True
