from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Encryption-at-rest configuration loaded from environment variables."""

    debug: bool = False

    # Secret source. Either value may carry a "base64:" prefix.
    # Generate with: python -c "import base64, os; print('base64:' + base64.b64encode(os.urandom(32)).decode())"
    key: str = ""
    app_key: str = Field("", validation_alias=AliasChoices("app_key", "APP_KEY"))
    cipher: str = "AES-256-CBC"

    # Compact envelopes produce shorter ciphertext for narrow columns
    compact_email: bool = False
    compact_field: bool = False

    # Dialects whose text columns enforce their declared width
    strict_width_dialects: list[str] = ["postgresql"]

    # What to do when a value cannot fit its column even as a compact envelope
    overflow_policy: Literal["raise", "truncate", "placeholder"] = "truncate"
    max_truncation_attempts: int = 10
    placeholder_length: int = 20

    # Decode once more when a decrypted value is itself ciphertext (legacy double encryption)
    retry_nested_decrypt: bool = True

    # Bulk tooling
    database_url: str = Field("", validation_alias=AliasChoices("database_url", "DATABASE_URL"))
    chunk_size: int = 100
    backup_dir: str = "storage/backups"

    model_config = {
        "env_prefix": "ENCRYPTION_AT_REST_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    return Settings()
