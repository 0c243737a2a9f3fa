"""Tests for the SQLite layer — schema, WAL, transactions, namespaced state."""

import pytest

from db import (
    load_state,
    save_state,
    sqlite_connection,
    sqlite_transaction,
    storage_healthcheck,
)


class TestSQLiteConnection:
    """Verify SQLite connection management and table creation."""

    def test_connection_creates_tables(self, db_path):
        with sqlite_connection(db_path) as conn:
            tables = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
            names = {t["name"] for t in tables}
        assert {"state", "owners", "resources", "ledger_entries", "events"} <= names

    def test_wal_mode_enabled(self, db_path):
        with sqlite_connection(db_path) as conn:
            mode = conn.execute("PRAGMA journal_mode").fetchone()
            assert mode[0] == "wal"

    def test_schema_is_idempotent(self, db_path):
        with sqlite_connection(db_path):
            pass
        with sqlite_connection(db_path) as conn:
            assert conn.execute("SELECT COUNT(*) FROM owners").fetchone()[0] == 0


class TestSQLiteTransaction:
    def test_commit_on_success(self, db_path):
        with sqlite_transaction(db_path) as conn:
            conn.execute(
                "INSERT INTO state(namespace, payload) VALUES (?, ?)",
                ("test-ns", '{"ok": true}'),
            )
        assert load_state(db_path, "test-ns") == {"ok": True}

    def test_rollback_on_error(self, db_path):
        with pytest.raises(RuntimeError):
            with sqlite_transaction(db_path) as conn:
                conn.execute(
                    "INSERT INTO state(namespace, payload) VALUES (?, ?)",
                    ("rollback-ns", "{}"),
                )
                raise RuntimeError("boom")
        assert load_state(db_path, "rollback-ns") is None


class TestState:
    def test_missing_namespace(self, db_path):
        assert load_state(db_path, "billing") is None

    def test_save_overwrites(self, db_path):
        save_state(db_path, "billing", {"enabled": False})
        save_state(db_path, "billing", {"enabled": True})
        assert load_state(db_path, "billing") == {"enabled": True}

    def test_unreadable_payload_ignored(self, db_path):
        with sqlite_connection(db_path) as conn:
            conn.execute("INSERT INTO state(namespace, payload) VALUES ('bad', 'not json')")
        assert load_state(db_path, "bad") is None

    def test_non_object_payload_ignored(self, db_path):
        with sqlite_connection(db_path) as conn:
            conn.execute("INSERT INTO state(namespace, payload) VALUES ('list', '[1, 2]')")
        assert load_state(db_path, "list") is None


class TestHealthcheck:
    def test_healthy(self, db_path):
        result = storage_healthcheck(db_path)
        assert result["ok"] is True
        assert result["backend"] == "sqlite"

    def test_unreachable(self, tmp_path):
        result = storage_healthcheck(str(tmp_path / "missing-dir" / "x.db"))
        assert result["ok"] is False
