"""File path resolution using platformdirs.

The SQLite database and the credential key live in the per-user data
directory unless overridden by environment variables:
  macOS: ~/Library/Application Support/kepler-chat/
  Linux: ~/.local/share/kepler-chat/
  Windows: %LOCALAPPDATA%/kepler-chat/
"""

import os
from pathlib import Path

import platformdirs

APP_NAME = "kepler-chat"


def get_data_dir() -> Path:
    """Return the directory for persistent data (DB, key file).

    KEPLER_DATA_DIR overrides the platform default.
    """
    override = os.environ.get("KEPLER_DATA_DIR", "").strip()
    if override:
        return Path(override)
    return Path(platformdirs.user_data_dir(APP_NAME, appauthor=False))


def get_default_db_path() -> Path:
    """Return the default SQLite database file path."""
    return get_data_dir() / "kepler.db"


def ensure_dirs_exist() -> None:
    """Create the data directory if it doesn't exist."""
    get_data_dir().mkdir(parents=True, exist_ok=True)
