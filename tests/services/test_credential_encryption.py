"""Tests for AES-256-GCM credential encryption and key management."""

import base64
import logging
import os
import platform
import stat

import pytest

from src.services.credential_encryption import (
    KEY_FILENAME,
    DecryptionError,
    decrypt_secret,
    encrypt_secret,
    get_key_source_info,
    get_or_create_key,
    mask_for_display,
)


@pytest.fixture
def temp_key_dir(tmp_path, monkeypatch):
    """Temporary key directory with env key sources cleared."""
    monkeypatch.delenv("KEPLER_CREDENTIAL_KEY", raising=False)
    monkeypatch.delenv("KEPLER_CREDENTIAL_KEY_FILE", raising=False)
    return str(tmp_path)


@pytest.fixture
def key():
    return os.urandom(32)


class TestKeyManagement:
    """Tests for encryption key file lifecycle."""

    def test_creates_key_file(self, temp_key_dir):
        key = get_or_create_key(key_dir=temp_key_dir)
        assert len(key) == 32
        assert os.path.exists(os.path.join(temp_key_dir, KEY_FILENAME))

    def test_is_idempotent(self, temp_key_dir):
        assert get_or_create_key(key_dir=temp_key_dir) == get_or_create_key(
            key_dir=temp_key_dir
        )

    @pytest.mark.skipif(platform.system() == "Windows", reason="Unix permissions")
    def test_key_file_is_owner_only(self, temp_key_dir):
        get_or_create_key(key_dir=temp_key_dir)
        mode = os.stat(os.path.join(temp_key_dir, KEY_FILENAME)).st_mode
        assert stat.S_IMODE(mode) == 0o600

    @pytest.mark.skipif(platform.system() == "Windows", reason="Unix permissions")
    def test_permissive_key_file_warns(self, temp_key_dir, caplog):
        key_path = os.path.join(temp_key_dir, KEY_FILENAME)
        with open(key_path, "wb") as f:
            f.write(os.urandom(32))
        os.chmod(key_path, 0o644)
        with caplog.at_level(logging.WARNING):
            get_or_create_key(key_dir=temp_key_dir)
        assert any("permissions" in msg and "600" in msg for msg in caplog.messages)

    def test_wrong_length_key_file_raises(self, temp_key_dir):
        with open(os.path.join(temp_key_dir, KEY_FILENAME), "wb") as f:
            f.write(b"too_short")
        with pytest.raises(ValueError, match="invalid length"):
            get_or_create_key(key_dir=temp_key_dir)

    def test_env_key_takes_precedence(self, temp_key_dir, monkeypatch):
        env_key = os.urandom(32)
        monkeypatch.setenv("KEPLER_CREDENTIAL_KEY", base64.b64encode(env_key).decode())
        assert get_or_create_key(key_dir=temp_key_dir) == env_key
        assert not os.path.exists(os.path.join(temp_key_dir, KEY_FILENAME))

    def test_env_key_invalid_base64_raises(self, temp_key_dir, monkeypatch):
        monkeypatch.setenv("KEPLER_CREDENTIAL_KEY", "not base64!!")
        with pytest.raises(ValueError, match="invalid base64"):
            get_or_create_key(key_dir=temp_key_dir)

    def test_env_key_file(self, temp_key_dir, tmp_path, monkeypatch):
        file_key = os.urandom(32)
        path = tmp_path / "external.key"
        path.write_bytes(file_key)
        monkeypatch.setenv("KEPLER_CREDENTIAL_KEY_FILE", str(path))
        assert get_or_create_key(key_dir=temp_key_dir) == file_key

    def test_env_key_file_missing_raises(self, temp_key_dir, monkeypatch):
        monkeypatch.setenv("KEPLER_CREDENTIAL_KEY_FILE", "/nonexistent/kepler.key")
        with pytest.raises(ValueError, match="not a regular file"):
            get_or_create_key(key_dir=temp_key_dir)

    def test_source_info_reports_env(self, monkeypatch):
        assert get_key_source_info() == {"source": "env", "path": None}

    def test_source_info_reports_env_file(self, temp_key_dir, monkeypatch):
        monkeypatch.setenv("KEPLER_CREDENTIAL_KEY_FILE", "/etc/kepler.key")
        assert get_key_source_info() == {"source": "env_file", "path": "/etc/kepler.key"}

    def test_default_key_lives_in_data_dir(self, temp_key_dir, monkeypatch):
        monkeypatch.setenv("KEPLER_DATA_DIR", temp_key_dir)
        info = get_key_source_info()
        assert info == {"source": "platformdirs", "path": os.path.join(temp_key_dir, KEY_FILENAME)}
        get_or_create_key()
        assert os.path.exists(info["path"])


class TestEncryptDecrypt:
    def test_round_trip(self, key):
        blob = encrypt_secret("sk-live-abcdef123456", key, aad="u1:openai")
        assert decrypt_secret(blob, key, aad="u1:openai") == "sk-live-abcdef123456"

    def test_same_plaintext_gives_different_blobs(self, key):
        assert encrypt_secret("sk-same", key) != encrypt_secret("sk-same", key)

    def test_blob_does_not_contain_plaintext(self, key):
        blob = encrypt_secret("sk-visible-secret", key)
        assert "sk-visible-secret" not in blob
        assert b"sk-visible-secret" not in base64.b64decode(blob)

    def test_wrong_key_fails(self, key):
        blob = encrypt_secret("sk-secret", key)
        with pytest.raises(DecryptionError, match="key mismatch"):
            decrypt_secret(blob, os.urandom(32))

    def test_wrong_aad_fails(self, key):
        blob = encrypt_secret("sk-secret", key, aad="u1:openai")
        with pytest.raises(DecryptionError):
            decrypt_secret(blob, key, aad="u2:openai")

    def test_tampered_blob_fails(self, key):
        raw = bytearray(base64.b64decode(encrypt_secret("sk-secret", key)))
        raw[-1] ^= 0x01
        with pytest.raises(DecryptionError):
            decrypt_secret(base64.b64encode(bytes(raw)).decode(), key)

    def test_short_blob_fails(self, key):
        with pytest.raises(DecryptionError, match="too short"):
            decrypt_secret(base64.b64encode(b"short").decode(), key)

    def test_invalid_base64_fails(self, key):
        with pytest.raises(DecryptionError, match="encoding"):
            decrypt_secret("%%%not-base64%%%", key)

    def test_encrypt_rejects_short_key(self):
        with pytest.raises(ValueError):
            encrypt_secret("sk-secret", b"short")

    def test_decryption_error_is_domain_error(self):
        from src.errors import DomainError

        assert issubclass(DecryptionError, DomainError)
        assert DecryptionError.code == "E-5001"


class TestMaskForDisplay:
    def test_shows_first_and_last_four(self):
        assert mask_for_display("sk-1234567890abcd") == "sk-1*********abcd"

    def test_minimum_four_stars(self):
        assert mask_for_display("abcdefgh") == "abcd****efgh"

    def test_short_key_fully_masked(self):
        assert mask_for_display("abc") == "***"

    def test_empty_key(self):
        assert mask_for_display("") == "********"
        assert mask_for_display(None) == "********"
