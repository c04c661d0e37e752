"""Command-line tools for migrating existing rows into or out of encryption at rest."""

from __future__ import annotations

import asyncio
import importlib
from typing import Optional

import typer
from sqlalchemy import inspect

from config import get_settings
from db.connection import create_engine
from db.profiles import profile_for
from errors import BackupError
from logging_config import setup_logging
from services.backup import BackupService
from services.bulk import BulkEncryptionService, BulkResult
from services.record_encryption import EncryptionProfile

app = typer.Typer(
    no_args_is_help=True,
    pretty_exceptions_enable=False,
    help="Encrypt, decrypt and index sensitive model fields at rest.",
)

MODES = {
    "encrypt": "encryption",
    "decrypt": "decryption",
    "encrypt_emails": "email encryption",
}


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug-level logging"),
):
    setup_logging(debug=True if verbose else None)


def load_model(path: str):
    """Import a mapped class from ``package.module:Class`` or ``package.module.Class``."""
    if ":" in path:
        module_name, _, attr = path.partition(":")
    else:
        module_name, _, attr = path.rpartition(".")
    try:
        model = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError, ValueError) as exc:
        raise typer.BadParameter(f"Model class {path} not found.") from exc
    if inspect(model, raiseerr=False) is None:
        raise typer.BadParameter(f"{path} is not a mapped SQLAlchemy class.")
    return model


def _describe(profile: EncryptionProfile) -> None:
    if profile.fields:
        typer.echo(f"Encrypted fields: {', '.join(profile.fields)}")
    if profile.json_fields:
        typer.echo(f"Encrypted JSON fields: {', '.join(profile.json_fields)}")
    if profile.searchable is not None:
        typer.echo(
            f"Searchable field: {profile.searchable.name} "
            f"(index in {profile.searchable.index_column})"
        )


def _backup(database_url: str, yes: bool) -> None:
    try:
        path = BackupService().create(database_url)
    except BackupError as exc:
        typer.secho(f"Database backup failed: {exc}", fg=typer.colors.RED, err=True)
        if yes:
            typer.echo("Pass --no-backup to proceed without a backup.")
            raise typer.Exit(1)
        if not typer.confirm("Proceed without backup?", default=False):
            typer.echo("Operation cancelled by user.")
            raise typer.Exit(0)
        return
    typer.echo(f"Database backup created at {path}")


async def _run(mode: str, database_url: str, profile: EncryptionProfile, chunk: int | None,
               where: str | None, dry_run: bool) -> BulkResult:
    engine = create_engine(database_url)
    try:
        service = BulkEncryptionService(engine, profile, chunk_size=chunk)
        total = await service.count(where)
        typer.echo(f"Found {total} records to process.")
        if total == 0:
            return BulkResult(dry_run=dry_run)
        with typer.progressbar(length=total, label="Processing") as bar:
            return await getattr(service, mode)(where=where, dry_run=dry_run, progress=bar.update)
    finally:
        await engine.dispose()


def _execute(mode: str, model_path: str, chunk: int | None, dry_run: bool, backup: bool,
             where: str | None, database_url: str | None, yes: bool) -> None:
    model = load_model(model_path)
    profile = profile_for(model)
    if profile.is_empty:
        typer.secho(f"Model {model_path} has no encrypted columns.", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    if mode == "encrypt_emails" and profile.searchable is None:
        typer.secho(f"Model {model_path} has no searchable email column.", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    _describe(profile)

    database_url = database_url or get_settings().database_url
    if not database_url:
        typer.secho("DATABASE_URL is not set; pass --database-url.", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    if mode == "decrypt":
        typer.secho(
            "WARNING: Decrypting data removes its protection at rest. Only do this when\n"
            "         migrating away from encryption at rest.",
            fg=typer.colors.YELLOW,
        )
        if not yes and not typer.confirm(
            "Do you understand the security implications of decrypting data?", default=False
        ):
            typer.echo("Operation cancelled by user.")
            raise typer.Exit(0)

    if backup and not dry_run:
        _backup(database_url, yes)

    typer.echo(f"Processing model: {model_path}")
    if where:
        typer.echo(f"Filter: {where}")
    if dry_run:
        typer.echo("DRY RUN: No changes will be made to the database.")
    label = MODES[mode]
    if not yes and not typer.confirm(
        f"Ready to begin {label}. Continue?", default=mode != "decrypt"
    ):
        typer.echo("Operation cancelled by user.")
        raise typer.Exit(0)

    result = asyncio.run(_run(mode, database_url, profile, chunk, where, dry_run))

    if dry_run:
        typer.echo(f"Dry run completed. {result.updated} records would be updated.")
    else:
        typer.echo(f"{label.capitalize()} completed. {result.updated} records updated.")
    for record_id, error in result.failures.items():
        typer.secho(f"Error processing ID {record_id}: {error}", fg=typer.colors.RED, err=True)
    if not result.ok:
        raise typer.Exit(1)


# Options shared by every command
ModelArg = typer.Argument(..., help='Mapped class to process, e.g. "models.database:User"')
ChunkOpt = typer.Option(None, "--chunk", min=1, help="Records per chunk (default: ENCRYPTION_AT_REST_CHUNK_SIZE)")
DryRunOpt = typer.Option(False, "--dry-run", help="Run without making changes")
BackupOpt = typer.Option(True, "--backup/--no-backup", help="Back up the database before processing")
FilterOpt = typer.Option(None, "--filter", help='Only process rows matching a SQL condition, e.g. "id > 100"')
DatabaseOpt = typer.Option(None, "--database-url", help="Overrides DATABASE_URL")
YesOpt = typer.Option(False, "--yes", "-y", help="Skip confirmation prompts")


@app.command("encrypt-model")
def encrypt_model(model: str = ModelArg, chunk: Optional[int] = ChunkOpt, dry_run: bool = DryRunOpt,
                  backup: bool = BackupOpt, where: Optional[str] = FilterOpt, database_url: Optional[str] = DatabaseOpt,
                  yes: bool = YesOpt):
    """Encrypt existing plaintext data for a model's encrypted columns."""
    _execute("encrypt", model, chunk, dry_run, backup, where, database_url, yes)


@app.command("decrypt-model")
def decrypt_model(model: str = ModelArg, chunk: Optional[int] = ChunkOpt, dry_run: bool = DryRunOpt,
                  backup: bool = BackupOpt, where: Optional[str] = FilterOpt, database_url: Optional[str] = DatabaseOpt,
                  yes: bool = YesOpt):
    """Decrypt a model's encrypted columns back to plaintext."""
    _execute("decrypt", model, chunk, dry_run, backup, where, database_url, yes)


@app.command("encrypt-emails")
def encrypt_emails(model: str = ModelArg, chunk: Optional[int] = ChunkOpt, dry_run: bool = DryRunOpt,
                   backup: bool = BackupOpt, where: Optional[str] = FilterOpt, database_url: Optional[str] = DatabaseOpt,
                   yes: bool = YesOpt):
    """Encrypt emails and populate their search index."""
    _execute("encrypt_emails", model, chunk, dry_run, backup, where, database_url, yes)


if __name__ == "__main__":
    app()
