"""Tests for database URL configuration precedence."""

from src.db.connection import get_database_url


def test_get_database_url_prefers_database_url(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///./preferred.db")
    monkeypatch.setenv("KEPLER_DB_PATH", "/tmp/fallback.db")

    assert get_database_url() == "sqlite:///./preferred.db"


def test_get_database_url_uses_kepler_db_path_fallback(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("KEPLER_DB_PATH", "/tmp/kepler.db")

    assert get_database_url() == "sqlite:////tmp/kepler.db"


def test_kepler_db_path_accepts_full_sqlite_url(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("KEPLER_DB_PATH", "sqlite:///relative.db")

    assert get_database_url() == "sqlite:///relative.db"


def test_get_database_url_defaults_to_platformdirs_path(monkeypatch, tmp_path):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("KEPLER_DB_PATH", raising=False)
    monkeypatch.setenv("KEPLER_DATA_DIR", str(tmp_path))

    assert get_database_url() == f"sqlite:///{tmp_path / 'kepler.db'}"
