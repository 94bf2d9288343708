from __future__ import annotations

import sqlite3
import tempfile

import pytest

from cmdrelay.storage.sqlite_store import SCHEMA_VERSION, SQLiteStore


_V1_SCHEMA = """
CREATE TABLE meta (key TEXT PRIMARY KEY, value TEXT NOT NULL);
CREATE TABLE tokens (
  owner_id TEXT PRIMARY KEY, token TEXT NOT NULL UNIQUE, created_at REAL NOT NULL, updated_at REAL NOT NULL
);
CREATE TABLE connections (
  connection_id TEXT PRIMARY KEY, owner_id TEXT NOT NULL, name TEXT NOT NULL, mode TEXT NOT NULL,
  metadata_json TEXT NOT NULL, last_heartbeat REAL NOT NULL, status TEXT NOT NULL, created_at REAL NOT NULL
);
CREATE TABLE commands (
  command_id TEXT PRIMARY KEY, owner_id TEXT NOT NULL, connection_id TEXT NOT NULL,
  command_text TEXT NOT NULL, env_json TEXT, cwd TEXT, timeout_seconds REAL,
  status TEXT NOT NULL, created_at REAL NOT NULL
);
CREATE TABLE results (
  command_id TEXT PRIMARY KEY, owner_id TEXT NOT NULL, stdout TEXT NOT NULL, stderr TEXT NOT NULL,
  exit_code INTEGER NOT NULL, duration_ms INTEGER NOT NULL, completed_at REAL NOT NULL
);
INSERT INTO meta(key, value) VALUES('schema_version', '1');
INSERT INTO commands VALUES('c1', 'alice', 'conn-1', 'ls', NULL, NULL, NULL, 'executing', 100.0);
"""


def _columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {str(r[1]) for r in conn.execute(f"PRAGMA table_info({table});").fetchall()}


def test_new_database_starts_at_current_schema() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/relay.db")
        store.close()

        conn = sqlite3.connect(f"{td}/relay.db")
        try:
            version = conn.execute("SELECT value FROM meta WHERE key = 'schema_version';").fetchone()[0]
            assert int(version) == SCHEMA_VERSION
            assert {"claimed_at", "completed_at"} <= _columns(conn, "commands")
            assert "disconnected_at" in _columns(conn, "connections")
        finally:
            conn.close()


def test_v1_database_is_migrated_in_place() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/relay.db"
        conn = sqlite3.connect(db_path)
        conn.executescript(_V1_SCHEMA)
        conn.close()

        store = SQLiteStore(db_path)
        try:
            row = store.get_command(command_id="c1")
            assert row is not None
            assert row["status"] == "executing"
            assert row["claimed_at"] is None
            assert store.count_commands_by_status() == {"executing": 1}
        finally:
            store.close()

        # Reopening an already-migrated database is a no-op.
        SQLiteStore(db_path).close()


def test_newer_schema_is_refused() -> None:
    with tempfile.TemporaryDirectory() as td:
        db_path = f"{td}/relay.db"
        SQLiteStore(db_path).close()
        conn = sqlite3.connect(db_path)
        conn.execute("UPDATE meta SET value = '99' WHERE key = 'schema_version';")
        conn.commit()
        conn.close()

        with pytest.raises(RuntimeError):
            SQLiteStore(db_path)
