"""Bulk encryption and decryption of existing rows.

Rows are read in fixed-size chunks by keyset pagination on the primary key and
transformed with a RecordEncryptor.  Each row's write runs in its own
transaction, so a failing row is rolled back and reported while the rest of
the batch continues.  Reads and writes go through a plain table clause, which
bypasses the encrypting column types: the raw stored values are what gets
classified.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from config import Settings, get_settings
from errors import ConfigError, EncryptionAtRestError
from services.record_encryption import EncryptionProfile, RecordEncryptor

Prepare = Callable[[Mapping[str, Any]], dict[str, Any]]


@dataclass
class BulkResult:
    """Outcome of a bulk run.  ``updated`` counts rows a dry run would change."""

    dry_run: bool = False
    total: int = 0
    updated: int = 0
    unchanged: int = 0
    failures: dict[Any, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


class BulkEncryptionService:
    def __init__(
        self,
        engine: AsyncEngine,
        profile: EncryptionProfile,
        settings: Settings | None = None,
        *,
        chunk_size: int | None = None,
    ) -> None:
        self._engine = engine
        self._profile = profile
        self._settings = settings or get_settings()
        self._chunk_size = chunk_size or self._settings.chunk_size
        if self._chunk_size < 1:
            raise ConfigError("Chunk size must be at least 1")
        strict = engine.dialect.name in self._settings.strict_width_dialects
        self._records = RecordEncryptor(profile, settings, strict=strict)
        self._table = sa.table(
            profile.table,
            sa.column(profile.primary_key),
            *(sa.column(name) for name in profile.columns),
        )
        self._pk = self._table.c[profile.primary_key]
        self._log = logging.getLogger(__name__)

    async def count(self, where: str | None = None) -> int:
        """Number of rows matching the optional raw SQL filter."""
        stmt = sa.select(sa.func.count()).select_from(self._table)
        if where:
            stmt = stmt.where(sa.text(where))
        async with self._engine.connect() as conn:
            return (await conn.execute(stmt)).scalar_one()

    async def chunks(self, where: str | None = None) -> AsyncIterator[list[Mapping[str, Any]]]:
        """Yield raw rows in primary-key order, ``chunk_size`` at a time."""
        last = None
        while True:
            stmt = sa.select(self._table).order_by(self._pk).limit(self._chunk_size)
            if where:
                stmt = stmt.where(sa.text(where))
            if last is not None:
                stmt = stmt.where(self._pk > last)
            async with self._engine.connect() as conn:
                rows = (await conn.execute(stmt)).mappings().all()
            if not rows:
                return
            yield rows
            last = rows[-1][self._profile.primary_key]

    async def encrypt(self, *, where: str | None = None, dry_run: bool = False,
                      progress: Callable[[int], None] | None = None) -> BulkResult:
        """Encrypt plaintext fields and JSON keys, and fill in the search index."""
        return await self._run(self._records.prepare_encrypt, where, dry_run, progress)

    async def decrypt(self, *, where: str | None = None, dry_run: bool = False,
                      progress: Callable[[int], None] | None = None) -> BulkResult:
        """Decrypt every encrypted field.  The search index is kept."""
        return await self._run(self._records.prepare_decrypt, where, dry_run, progress)

    async def encrypt_emails(self, *, where: str | None = None, dry_run: bool = False,
                             progress: Callable[[int], None] | None = None) -> BulkResult:
        """Encrypt only the searchable field and populate its index."""
        if self._profile.searchable is None:
            raise ConfigError(f"Table {self._profile.table!r} has no searchable email column")
        return await self._run(self._records.prepare_email, where, dry_run, progress)

    async def _run(self, prepare: Prepare, where: str | None, dry_run: bool,
                   progress: Callable[[int], None] | None) -> BulkResult:
        result = BulkResult(dry_run=dry_run)
        async for rows in self.chunks(where):
            for row in rows:
                record_id = row[self._profile.primary_key]
                result.total += 1
                try:
                    await self._process(prepare, row, record_id, dry_run, result)
                except (EncryptionAtRestError, SQLAlchemyError) as exc:
                    result.failures[record_id] = f"{type(exc).__name__}: {exc}"
                    self._log.error(
                        "Error processing %s %s: %s", self._profile.table, record_id, exc,
                        extra={"table": self._profile.table, "record_id": record_id},
                    )
                if progress is not None:
                    progress(1)

        self._log.info(
            "%s %s: %d rows, %d %s, %d unchanged, %d failed",
            "Dry run over" if dry_run else "Processed",
            self._profile.table,
            result.total,
            result.updated,
            "would change" if dry_run else "updated",
            result.unchanged,
            len(result.failures),
        )
        return result

    async def _process(self, prepare: Prepare, row: Mapping[str, Any], record_id: Any,
                       dry_run: bool, result: BulkResult) -> None:
        changes = prepare(row)
        if not changes:
            result.unchanged += 1
            return
        if not dry_run:
            async with self._engine.begin() as conn:
                await conn.execute(
                    sa.update(self._table).where(self._pk == record_id).values(changes)
                )
        result.updated += 1
