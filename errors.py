"""
Exception classes for encryption-at-rest operations.

Codec and classifier errors are raised directly. The field orchestrators only
swallow decode-side errors on the read path; encode-side errors always reach
the caller.
"""

from __future__ import annotations


class EncryptionAtRestError(Exception):
    """Base exception for all encryption-at-rest operations."""


class FormatError(EncryptionAtRestError):
    """Stored value claims an envelope format but is structurally invalid."""


class IntegrityError(EncryptionAtRestError):
    """Envelope is well formed but its authentication tag does not match."""


class CapacityError(EncryptionAtRestError):
    """Value cannot be encoded within the column's width limit."""


class ConfigError(EncryptionAtRestError):
    """Key material or cipher configuration is missing or invalid."""


class BackupError(EncryptionAtRestError):
    """Pre-mutation database backup could not be created."""
