import base64
import os

import pytest

from config import Settings, get_settings


def _random_key() -> str:
    return "base64:" + base64.b64encode(os.urandom(32)).decode()


@pytest.fixture()
def key_b64():
    return _random_key()


@pytest.fixture()
def raw_key(key_b64):
    return base64.b64decode(key_b64[len("base64:"):])


@pytest.fixture(autouse=True)
def settings(monkeypatch, tmp_path, key_b64):
    """Point the cached settings at a fresh key and a throwaway backup directory."""
    for name in ("APP_KEY", "DATABASE_URL", "ENCRYPTION_AT_REST_CIPHER"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ENCRYPTION_AT_REST_KEY", key_b64)
    monkeypatch.setenv("ENCRYPTION_AT_REST_BACKUP_DIR", str(tmp_path / "backups"))
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture()
def configure(monkeypatch):
    """Override settings through the environment, e.g. configure(OVERFLOW_POLICY="raise")."""

    def _configure(**values):
        for name, value in values.items():
            monkeypatch.setenv(f"ENCRYPTION_AT_REST_{name.upper()}", str(value))
        get_settings.cache_clear()
        return get_settings()

    return _configure


@pytest.fixture()
def make_settings(key_b64):
    """Build an explicit Settings object sharing the test key."""

    def _make(**overrides):
        overrides.setdefault("key", key_b64)
        return Settings(**overrides)

    return _make
