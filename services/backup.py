from __future__ import annotations

import logging
import os
import shutil
import subprocess
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy.engine import make_url

from config import Settings, get_settings
from errors import BackupError


class BackupService:
    """Creates a database backup before bulk tools mutate data."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._log = logging.getLogger(__name__)

    def create(self, database_url: str) -> Path:
        """Back up the database at *database_url* and return the backup path.

        Raises BackupError when the backend is unsupported or the dump fails.
        """
        url = make_url(database_url)
        backend = url.get_backend_name()
        backup_dir = Path(self._settings.backup_dir)
        backup_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d-%H-%M-%S")
        name = Path(url.database or "database").stem

        if backend == "sqlite":
            return self._backup_sqlite(url.database, backup_dir / f"{name}-{stamp}.sqlite")
        if backend == "postgresql":
            return self._backup_postgres(url, backup_dir / f"{name}-{stamp}.dump")
        if backend in ("mysql", "mariadb"):
            return self._backup_mysql(url, backup_dir / f"{name}-{stamp}.sql")
        raise BackupError(
            f"Automatic backup is not supported for {backend}; back up the database manually"
        )

    def _backup_sqlite(self, database: str | None, target: Path) -> Path:
        if not database or database == ":memory:":
            raise BackupError("In-memory SQLite databases cannot be backed up")
        source = Path(database)
        if not source.exists():
            raise BackupError(f"SQLite database {source} does not exist")
        shutil.copy2(source, target)
        self._log.info("Database backup created at %s", target)
        return target

    def _backup_postgres(self, url, target: Path) -> Path:
        env = dict(os.environ)
        env.update(
            {
                "PGUSER": url.username or "",
                "PGPASSWORD": url.password or "",
                "PGHOST": url.host or "",
                "PGDATABASE": url.database or "",
            }
        )
        if url.port:
            env["PGPORT"] = str(url.port)
        self._run(["pg_dump", "-f", str(target)], env)
        self._log.info("Database backup created at %s", target)
        return target

    def _backup_mysql(self, url, target: Path) -> Path:
        env = dict(os.environ)
        if url.password:
            env["MYSQL_PWD"] = url.password
        command = ["mysqldump", f"--result-file={target}"]
        if url.username:
            command.append(f"--user={url.username}")
        if url.host:
            command.append(f"--host={url.host}")
        if url.port:
            command.append(f"--port={url.port}")
        command.append(url.database or "")
        self._run(command, env)
        self._log.info("Database backup created at %s", target)
        return target

    @staticmethod
    def _run(command: list[str], env: dict[str, str]) -> None:
        if shutil.which(command[0]) is None:
            raise BackupError(f"{command[0]} not found; install the database client tools")
        result = subprocess.run(command, env=env, capture_output=True, text=True, check=False)
        if result.returncode != 0:
            raise BackupError(f"{command[0]} failed: {result.stderr.strip()}")
