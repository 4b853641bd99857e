"""AES-256-GCM encryption for stored vendor API keys.

Provides encrypt/decrypt for API key strings, display masking and key
file management.

Key source precedence:
    1. KEPLER_CREDENTIAL_KEY env var (base64-encoded 32-byte key)
    2. KEPLER_CREDENTIAL_KEY_FILE env var (path to raw key file)
    3. platformdirs local file (auto-generated on first use)

Ciphertext format: base64(nonce || ciphertext+tag). A fresh 12-byte nonce
is drawn for every call, so encrypting the same key twice never yields
the same blob. The GCM tag makes a wrong key or a tampered blob fail
loudly instead of decrypting to garbage.
"""

import base64
import binascii
import logging
import os
import platform
import stat

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from src.errors.domain import DomainError

logger = logging.getLogger(__name__)

KEY_FILENAME = ".kepler_key"
_NONCE_LENGTH = 12
_TAG_LENGTH = 16
_REQUIRED_KEY_LENGTH = 32


class DecryptionError(DomainError):
    """Raised when a stored secret cannot be decrypted for any reason."""

    code = "E-5001"


def get_default_key_dir() -> str:
    """Return the platform-appropriate app-data directory for key storage."""
    from src.utils.paths import ensure_dirs_exist, get_data_dir

    ensure_dirs_exist()
    return str(get_data_dir())


def get_key_source_info() -> dict:
    """Return metadata about the active key source (without revealing the key).

    Returns:
        {"source": "env"|"env_file"|"platformdirs", "path": str | None}
    """
    if os.environ.get("KEPLER_CREDENTIAL_KEY", "").strip():
        return {"source": "env", "path": None}

    env_key_file = os.environ.get("KEPLER_CREDENTIAL_KEY_FILE", "").strip()
    if env_key_file:
        return {"source": "env_file", "path": env_key_file}

    return {
        "source": "platformdirs",
        "path": os.path.join(get_default_key_dir(), KEY_FILENAME),
    }


def _check_length(key: bytes, origin: str) -> bytes:
    if len(key) != _REQUIRED_KEY_LENGTH:
        raise ValueError(
            f"{origin} has invalid length {len(key)} (expected {_REQUIRED_KEY_LENGTH})"
        )
    return key


def get_or_create_key(key_dir: str | None = None) -> bytes:
    """Load or generate the 32-byte AES-256 encryption key.

    Args:
        key_dir: Directory for the key file (source 3 only).
                 Defaults to the data directory (see src.utils.paths).

    Returns:
        32-byte encryption key.

    Raises:
        ValueError: If key has invalid length from any source, or invalid base64.
    """
    env_key = os.environ.get("KEPLER_CREDENTIAL_KEY", "").strip()
    if env_key:
        try:
            key = base64.b64decode(env_key, validate=True)
        except binascii.Error as e:
            raise ValueError(f"KEPLER_CREDENTIAL_KEY contains invalid base64: {e}") from e
        return _check_length(key, "KEPLER_CREDENTIAL_KEY")

    env_key_file = os.environ.get("KEPLER_CREDENTIAL_KEY_FILE", "").strip()
    if env_key_file:
        if not os.path.isfile(env_key_file):
            raise ValueError(
                f"KEPLER_CREDENTIAL_KEY_FILE is not a regular file: {env_key_file}"
            )
        if os.path.islink(env_key_file):
            raise ValueError(
                f"KEPLER_CREDENTIAL_KEY_FILE is a symlink: {env_key_file}. "
                "Symlinks are rejected to prevent link-following attacks."
            )
        with open(env_key_file, "rb") as f:
            return _check_length(f.read(), f"Key file {env_key_file}")

    directory = key_dir or get_default_key_dir()
    os.makedirs(directory, exist_ok=True)
    key_path = os.path.join(directory, KEY_FILENAME)

    if os.path.exists(key_path):
        with open(key_path, "rb") as f:
            key = _check_length(f.read(), f"Key file {key_path}")
        if platform.system() != "Windows":
            mode = stat.S_IMODE(os.stat(key_path).st_mode)
            if mode & (stat.S_IRGRP | stat.S_IWGRP | stat.S_IROTH | stat.S_IWOTH):
                logger.warning(
                    "Key file %s has permissions %o, recommend chmod 600",
                    key_path, mode,
                )
        return key

    key = os.urandom(_REQUIRED_KEY_LENGTH)
    try:
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        try:
            os.write(fd, key)
        finally:
            os.close(fd)
    except FileExistsError:
        # Another worker created the file first.
        with open(key_path, "rb") as f:
            return _check_length(f.read(), f"Key file {key_path}")

    logger.info("Generated new encryption key at %s", key_path)
    return key


def encrypt_secret(plaintext: str, key: bytes, aad: str = "") -> str:
    """Encrypt an API key.

    Args:
        plaintext: Secret to encrypt.
        key: 32-byte AES-256 key.
        aad: Additional authenticated data (e.g. 'user_id:vendor').

    Returns:
        base64 string of nonce || ciphertext.

    Raises:
        ValueError: If key is not exactly 32 bytes.
    """
    _check_length(key, "Encryption key")
    nonce = os.urandom(_NONCE_LENGTH)
    ciphertext = AESGCM(key).encrypt(
        nonce, plaintext.encode("utf-8"), aad.encode("utf-8") if aad else None
    )
    return base64.b64encode(nonce + ciphertext).decode("ascii")


def decrypt_secret(blob: str, key: bytes, aad: str = "") -> str:
    """Decrypt a blob produced by encrypt_secret().

    Args:
        blob: base64 string of nonce || ciphertext.
        key: 32-byte AES-256 key.
        aad: Additional authenticated data used at encryption time.

    Returns:
        The original plaintext.

    Raises:
        DecryptionError: Malformed blob, wrong key, wrong AAD or tampering.
    """
    if len(key) != _REQUIRED_KEY_LENGTH:
        raise DecryptionError(
            f"Decryption key must be exactly {_REQUIRED_KEY_LENGTH} bytes (got {len(key)})"
        )
    try:
        raw = base64.b64decode(blob, validate=True)
    except (binascii.Error, TypeError, ValueError) as e:
        raise DecryptionError(f"Invalid ciphertext encoding: {e}") from e

    if len(raw) < _NONCE_LENGTH + _TAG_LENGTH:
        raise DecryptionError(f"Ciphertext too short ({len(raw)} bytes)")

    nonce, ciphertext = raw[:_NONCE_LENGTH], raw[_NONCE_LENGTH:]
    try:
        plaintext = AESGCM(key).decrypt(
            nonce, ciphertext, aad.encode("utf-8") if aad else None
        )
    except InvalidTag as e:
        raise DecryptionError("Decryption failed: key mismatch or corrupted data") from e

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError(f"Decrypted payload is not valid UTF-8: {e}") from e


def mask_for_display(secret: str | None) -> str:
    """Partially redact an API key for display.

    Shows the first and last four characters around at least four
    asterisks. Keys shorter than eight characters are fully masked.
    """
    if not secret:
        return "*" * 8
    if len(secret) < 8:
        return "*" * len(secret)
    return secret[:4] + "*" * max(len(secret) - 8, 4) + secret[-4:]
