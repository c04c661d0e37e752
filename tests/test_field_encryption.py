"""Tests for per-field encryption orchestration (services/field_encryption.py).

Covers:
- Encrypt on set, decrypt on get, empty passthrough
- Idempotence for values that are already ciphertext
- Legacy plaintext and undecryptable values on the read path
- Size-constrained fallback: standard, compact, truncation, placeholder
- Recovery of double-encrypted values
"""

import base64
import hashlib
import json
import logging

import pytest

from crypto import decrypt_value, encode_compact, encode_standard, encrypt_value
from errors import CapacityError, ConfigError, FormatError, IntegrityError
from services.classifier import looks_encrypted
from services.field_encryption import FieldEncryptor, is_empty
from services.search_index import index_of

COLUMN = 255


@pytest.fixture()
def encryptor(make_settings):
    return FieldEncryptor(make_settings())


# ─── Empty Values ─────────────────────────────────────────────────────────────


class TestEmptyValues:
    @pytest.mark.parametrize("value", [None, "", [], {}, ()])
    def test_is_empty(self, value):
        assert is_empty(value) is True

    @pytest.mark.parametrize("value", [0, False, "0", " "])
    def test_not_empty(self, value):
        assert is_empty(value) is False

    def test_set_empty_stores_none(self, encryptor):
        assert encryptor.on_set(None) is None
        assert encryptor.on_set("") is None

    def test_get_empty_passthrough(self, encryptor):
        assert encryptor.on_get(None) is None
        assert encryptor.on_get("") == ""


# ─── Write Path ───────────────────────────────────────────────────────────────


class TestOnSet:
    def test_encrypts_plaintext(self, encryptor):
        stored = encryptor.on_set("555-0100")
        assert stored != "555-0100"
        assert looks_encrypted(stored)
        assert encryptor.on_get(stored) == "555-0100"

    def test_compact_encryptor(self, make_settings):
        stored = FieldEncryptor(make_settings(), compact=True).on_set("555-0100")
        assert stored.startswith("c:")

    def test_already_encrypted_is_unchanged(self, encryptor):
        stored = encryptor.on_set("555-0100")
        assert encryptor.on_set(stored) == stored

    def test_non_string_is_stringified(self, encryptor):
        assert encryptor.on_get(encryptor.on_set(42)) == "42"

    def test_bytes_are_decoded_as_utf8(self, encryptor):
        stored = encryptor.on_set("caf\u00e9".encode("utf-8"))
        assert encryptor.on_get(stored) == "caf\u00e9"

    def test_bytes_ciphertext_is_unchanged(self, encryptor):
        stored = encryptor.on_set("secret")
        assert encryptor.on_set(stored.encode("ascii")) == stored

    def test_invalid_utf8_bytes_raise(self, encryptor):
        with pytest.raises(FormatError):
            encryptor.on_set(b"\xff\xfe")

    def test_missing_key_raises(self, make_settings):
        encryptor = FieldEncryptor(make_settings(key="", app_key=""))
        with pytest.raises(ConfigError):
            encryptor.on_set("secret")

    def test_settings_resolved_per_call(self):
        stored = FieldEncryptor().on_set("from cached settings")
        assert decrypt_value(stored) == "from cached settings"


# ─── Read Path ────────────────────────────────────────────────────────────────


class TestOnGet:
    def test_legacy_plaintext_passthrough(self, encryptor):
        assert encryptor.on_get("stored before encryption was enabled") == (
            "stored before encryption was enabled"
        )

    def test_wrong_key_returns_stored(self, encryptor, caplog):
        foreign = encode_standard("secret", b"k" * 32)
        with caplog.at_level(logging.WARNING):
            assert encryptor.on_get(foreign) == foreign
        assert "authentication" in caplog.text

    def test_missing_key_returns_stored(self, make_settings):
        stored = encrypt_value("secret")
        encryptor = FieldEncryptor(make_settings(key="", app_key=""))
        assert encryptor.on_get(stored) == stored

    def test_strict_decrypt_raises(self, encryptor):
        foreign = encode_compact("secret", b"k" * 32)
        with pytest.raises(IntegrityError):
            encryptor.decrypt(foreign)

    def test_strict_decrypt_plaintext_passthrough(self, encryptor):
        assert encryptor.decrypt("plain") == "plain"


# ─── Double Encryption ────────────────────────────────────────────────────────


class TestNestedCiphertext:
    def test_second_layer_is_decoded(self, encryptor, raw_key, caplog):
        nested = encode_standard(encode_standard("jane@example.com", raw_key), raw_key)
        with caplog.at_level(logging.WARNING):
            assert encryptor.on_get(nested) == "jane@example.com"
        assert "second layer" in caplog.text

    def test_retry_can_be_disabled(self, make_settings, raw_key):
        inner = encode_compact("jane@example.com", raw_key)
        nested = encode_standard(inner, raw_key)
        encryptor = FieldEncryptor(make_settings(retry_nested_decrypt=False))
        assert encryptor.on_get(nested) == inner

    def test_compact_over_standard(self, encryptor, raw_key):
        nested = encode_compact(encode_standard("jane@example.com", raw_key), raw_key)
        assert encryptor.on_get(nested) == "jane@example.com"

    def test_only_one_extra_layer(self, encryptor, raw_key):
        innermost = encode_compact("x", raw_key)
        nested = encode_standard(encode_standard(innermost, raw_key), raw_key)
        assert encryptor.on_get(nested) == innermost


# ─── Size-Constrained Fallback ────────────────────────────────────────────────


class TestSizeFallback:
    def test_short_value_uses_standard(self, encryptor):
        stored = encryptor.on_set("555-0100", max_length=COLUMN)
        assert not stored.startswith("c:")
        assert len(stored) <= COLUMN

    def test_medium_value_falls_back_to_compact(self, encryptor):
        value = "x" * 100
        stored = encryptor.on_set(value, max_length=COLUMN)
        assert stored.startswith("c:")
        assert len(stored) <= COLUMN
        assert encryptor.on_get(stored) == value

    def test_no_limit_never_truncates(self, encryptor):
        value = "y" * 1000
        assert encryptor.on_get(encryptor.on_set(value)) == value

    def test_long_value_is_truncated(self, encryptor, caplog):
        value = "z" * 300
        with caplog.at_level(logging.WARNING):
            stored = encryptor.on_set(value, max_length=COLUMN)
        assert len(stored) <= COLUMN
        decrypted = encryptor.on_get(stored)
        assert value.startswith(decrypted)
        assert len(decrypted) < len(value)
        assert "Truncated" in caplog.text

    def test_email_truncation_keeps_domain(self, encryptor):
        email = "a" * 290 + "@example.com"
        stored = encryptor.on_set(email, max_length=COLUMN)
        assert len(stored) <= COLUMN
        decrypted = encryptor.on_get(stored)
        assert decrypted.endswith("@example.com")
        assert decrypted.startswith("a")
        assert len(decrypted) < len(email)

    def test_raise_policy(self, make_settings):
        encryptor = FieldEncryptor(make_settings(overflow_policy="raise"))
        with pytest.raises(CapacityError):
            encryptor.on_set("z" * 300, max_length=COLUMN)

    def test_truncation_exhausted(self, make_settings):
        encryptor = FieldEncryptor(make_settings(max_truncation_attempts=0))
        with pytest.raises(CapacityError):
            encryptor.on_set("z" * 300, max_length=COLUMN)

    def test_placeholder_policy(self, make_settings):
        encryptor = FieldEncryptor(
            make_settings(overflow_policy="placeholder", max_truncation_attempts=0)
        )
        value = "0123456789" * 30
        stored = encryptor.on_set(value, max_length=COLUMN)
        assert encryptor.on_get(stored) == value[:20] + "..."

    def test_column_too_narrow_for_any_envelope(self, make_settings):
        encryptor = FieldEncryptor(make_settings(overflow_policy="placeholder"))
        with pytest.raises(CapacityError):
            encryptor.on_set("x", max_length=40)


# ─── End to End ───────────────────────────────────────────────────────────────


class TestEndToEnd:
    def test_email_field(self, encryptor):
        stored = encryptor.on_set("test@example.com")
        assert stored != "test@example.com"
        assert stored.startswith("c:") or json.loads(base64.b64decode(stored))["iv"]
        assert encryptor.on_get(stored) == "test@example.com"
        assert index_of("test@example.com") == hashlib.sha256(b"test@example.com").hexdigest()

    def test_mixed_formats_read_through_one_path(self, encryptor, raw_key):
        standard = encode_standard("standard row", raw_key)
        compact = encode_compact("compact row", raw_key)
        assert not standard.startswith("c:")
        assert compact.startswith("c:")
        assert encryptor.on_get(standard) == "standard row"
        assert encryptor.on_get(compact) == "compact row"
