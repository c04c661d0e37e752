"""Tests for record-level composition (services/record_encryption.py)."""

import json

import pytest

from crypto import encode_standard
from errors import IntegrityError
from services.classifier import looks_encrypted
from services.record_encryption import EncryptionProfile, RecordEncryptor, SearchableField
from services.search_index import index_of

PROFILE = EncryptionProfile(
    table="users",
    fields=("phone", "address"),
    json_fields={"metadata": ("credit_card_number",)},
    searchable=SearchableField(name="email", index_column="email_index"),
    column_limits={"email": 255, "phone": 255},
)

PLAIN_ROW = {
    "id": 1,
    "name": "Jane Doe",
    "email": "Jane@Example.com",
    "phone": "555-0100",
    "address": "1 Main St",
    "metadata": {"credit_card_number": "4111111111111111", "plan": "gold"},
}


@pytest.fixture()
def records(make_settings):
    return RecordEncryptor(PROFILE, make_settings())


# ─── Profile ──────────────────────────────────────────────────────────────────


class TestEncryptionProfile:
    def test_columns(self):
        assert PROFILE.columns == ("phone", "address", "metadata", "email", "email_index")

    def test_is_empty(self):
        assert EncryptionProfile(table="t").is_empty
        assert not PROFILE.is_empty


# ─── Save / Load ──────────────────────────────────────────────────────────────


class TestSaveLoad:
    def test_save_encrypts_sensitive_fields(self, records):
        stored = records.save(PLAIN_ROW)
        assert stored["id"] == 1
        assert stored["name"] == "Jane Doe"
        assert looks_encrypted(stored["email"])
        assert looks_encrypted(stored["phone"])
        assert looks_encrypted(stored["address"])
        assert looks_encrypted(json.loads(stored["metadata"])["credit_card_number"])
        assert stored["email_index"] == index_of("jane@example.com")

    def test_load_restores_plaintext(self, records):
        loaded = records.load(records.save(PLAIN_ROW))
        assert loaded["email"] == "Jane@Example.com"
        assert loaded["phone"] == "555-0100"
        assert loaded["metadata"] == PLAIN_ROW["metadata"]
        assert loaded["email_index"] == index_of("jane@example.com")

    def test_clearing_email_clears_index(self, records):
        stored = records.save(PLAIN_ROW)
        records.set_attribute(stored, "email", None)
        assert stored["email"] is None
        assert stored["email_index"] is None

    def test_resaving_ciphertext_is_a_noop(self, records):
        stored = records.save(PLAIN_ROW)
        assert records.save(stored) == stored

    def test_get_attribute_for_plain_column(self, records):
        assert records.get_attribute({"name": "Jane"}, "name") == "Jane"

    def test_strict_width_truncates(self, make_settings):
        records = RecordEncryptor(PROFILE, make_settings(), strict=True)
        stored = records.save({"phone": "9" * 300})
        assert len(stored["phone"]) <= 255

    def test_compact_email_setting(self, make_settings):
        records = RecordEncryptor(PROFILE, make_settings(compact_email=True))
        stored = records.save({"email": "jane@example.com", "phone": "555"})
        assert stored["email"].startswith("c:")
        assert not stored["phone"].startswith("c:")


# ─── Bulk Preparation ─────────────────────────────────────────────────────────


class TestPrepare:
    def test_prepare_encrypt_plain_row(self, records):
        changes = records.prepare_encrypt(PLAIN_ROW)
        assert set(changes) == {"email", "email_index", "phone", "address", "metadata"}
        assert changes["email_index"] == index_of("jane@example.com")

    def test_prepare_encrypt_encrypted_row(self, records):
        assert records.prepare_encrypt(records.save(PLAIN_ROW)) == {}

    def test_prepare_encrypt_skips_empty(self, records):
        assert records.prepare_encrypt({"id": 2, "phone": None, "metadata": None}) == {}

    def test_prepare_email_fills_missing_index(self, records):
        stored = records.save(PLAIN_ROW)
        stored["email_index"] = None
        assert records.prepare_email(stored) == {"email_index": index_of("jane@example.com")}

    def test_prepare_email_ignores_other_fields(self, records):
        changes = records.prepare_email(PLAIN_ROW)
        assert set(changes) == {"email", "email_index"}

    def test_prepare_decrypt(self, records):
        stored = records.save(PLAIN_ROW)
        changes = records.prepare_decrypt(stored)
        assert changes["email"] == "Jane@Example.com"
        assert changes["phone"] == "555-0100"
        assert json.loads(changes["metadata"]) == PLAIN_ROW["metadata"]
        assert "email_index" not in changes

    def test_prepare_decrypt_plain_row(self, records):
        row = dict(PLAIN_ROW, metadata=json.dumps(PLAIN_ROW["metadata"]))
        assert records.prepare_decrypt(row) == {}

    def test_prepare_decrypt_tampered(self, records):
        stored = records.save(PLAIN_ROW)
        stored["phone"] = encode_standard("555-0100", b"k" * 32)
        with pytest.raises(IntegrityError):
            records.prepare_decrypt(stored)
