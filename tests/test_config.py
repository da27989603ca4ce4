"""
Tests for core settings and the SQLite connection helper.
"""

import pytest

from finshadow.core.config import (
    DEFAULT_DB_PATH,
    DEFAULT_DOMAIN_KEYWORDS,
    Settings,
    load_settings,
)
from finshadow.core.db import BUSY_TIMEOUT_MS, connect


class TestLoadSettings:
    def test_defaults(self, tmp_path):
        s = load_settings(str(tmp_path / "missing.env"))
        assert s.db_path == DEFAULT_DB_PATH
        assert s.ingest_interval_minutes == 15
        assert s.max_workers == 4
        assert s.domain_keywords == DEFAULT_DOMAIN_KEYWORDS
        assert s.loaded_from == []

    def test_environment_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FINSHADOW_DB_PATH", str(tmp_path / "x.db"))
        monkeypatch.setenv("FINSHADOW_MAX_WORKERS", "8")
        monkeypatch.setenv("FINSHADOW_DOMAIN_KEYWORDS", "Swift, bank ,,bank")
        monkeypatch.setenv("FINSHADOW_LOG_LEVEL", "debug")
        s = load_settings(str(tmp_path / "missing.env"))
        assert s.db_path == str(tmp_path / "x.db")
        assert s.max_workers == 8
        assert s.domain_keywords == ("bank", "swift")
        assert s.log_level == "DEBUG"
        assert "FINSHADOW_MAX_WORKERS" in s.loaded_from

    def test_dotenv_file(self, tmp_path, monkeypatch):
        # Register the variable with monkeypatch so it is removed afterwards
        monkeypatch.setenv("FINSHADOW_SCORING_WINDOW_DAYS", "1")
        monkeypatch.delenv("FINSHADOW_SCORING_WINDOW_DAYS")
        env = tmp_path / ".env"
        env.write_text("FINSHADOW_SCORING_WINDOW_DAYS=14\n", encoding="utf-8")
        assert load_settings(str(env)).scoring_window_days == 14

    def test_process_env_wins_over_dotenv(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FINSHADOW_MAX_WORKERS", "2")
        env = tmp_path / ".env"
        env.write_text("FINSHADOW_MAX_WORKERS=9\n", encoding="utf-8")
        assert load_settings(str(env)).max_workers == 2

    @pytest.mark.parametrize("value", ["abc", "0", "-3"])
    def test_invalid_numbers_rejected(self, tmp_path, monkeypatch, value):
        monkeypatch.setenv("FINSHADOW_FETCH_TIMEOUT", value)
        with pytest.raises(ValueError, match="FINSHADOW_FETCH_TIMEOUT"):
            load_settings(str(tmp_path / "missing.env"))

    def test_settings_dataclass_defaults(self):
        assert Settings().scoring_interval_minutes == 60


class TestConnect:
    def test_pragmas(self, tmp_path):
        conn = connect(tmp_path / "t.db")
        try:
            assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
            assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
            assert conn.execute("PRAGMA busy_timeout").fetchone()[0] == BUSY_TIMEOUT_MS
        finally:
            conn.close()

    def test_creates_parent_dir_and_custom_timeout(self, tmp_path):
        conn = connect(tmp_path / "nested" / "dir" / "t.db", busy_timeout_ms=250)
        try:
            assert (tmp_path / "nested" / "dir").is_dir()
            assert conn.execute("PRAGMA busy_timeout").fetchone()[0] == 250
        finally:
            conn.close()

    def test_row_factory(self, tmp_path):
        conn = connect(tmp_path / "t.db", row_factory=True)
        try:
            row = conn.execute("SELECT 1 AS one").fetchone()
            assert row["one"] == 1
        finally:
            conn.close()
