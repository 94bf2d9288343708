from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterable


SCHEMA_VERSION = 2


def _new_uuid() -> str:
    return str(uuid.uuid4())


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def json_loads_map(raw: str | None) -> dict[str, str] | None:
    """Decode a stored string map; `None` stays `None`."""
    if raw is None:
        return None
    obj = json.loads(raw)
    if not isinstance(obj, dict):
        return {}
    return {str(k): str(v) for k, v in obj.items()}


def default_db_path() -> str:
    return os.getenv("CMDRELAY_SQLITE_PATH", "data/relay.db")


class SQLiteStore:
    """SQLite-backed store for tokens, connections, commands and results.

    Every method is a short statement against one record kind. Status transitions are written as
    guarded updates (`WHERE status = ...`) so that concurrent callers converge on the same state
    without holding locks; callers that need several statements to land together use
    `transaction()`.

    All timestamps come from `clock` (epoch seconds) so tests can move time explicitly.
    """

    def __init__(self, db_path: str | Path | None = None, *, clock: Callable[[], float] | None = None) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock or time.time

        # One store per request / thread; the connection may be handed across FastAPI's threadpool.
        self._conn = sqlite3.connect(str(self.db_path), timeout=10.0, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")
        self._conn.execute("PRAGMA busy_timeout = 10000;")

        self._init_schema()

    def close(self) -> None:
        self._conn.close()

    def now(self) -> float:
        return float(self._clock())

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Context manager for an explicit SQLite transaction.

        `BEGIN IMMEDIATE` takes the write lock up front, so a read-then-write sequence inside the
        block cannot interleave with another writer.
        """
        self._conn.execute(f"BEGIN {mode};")
        try:
            yield
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )

        # Base schema (v1): tokens/connections/commands/results.
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS tokens (
              owner_id TEXT PRIMARY KEY,
              token TEXT NOT NULL UNIQUE,
              created_at REAL NOT NULL,
              updated_at REAL NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS connections (
              connection_id TEXT PRIMARY KEY,
              owner_id TEXT NOT NULL,
              name TEXT NOT NULL,
              mode TEXT NOT NULL,
              metadata_json TEXT NOT NULL,
              last_heartbeat REAL NOT NULL,
              status TEXT NOT NULL,
              created_at REAL NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS commands (
              command_id TEXT PRIMARY KEY,
              owner_id TEXT NOT NULL,
              connection_id TEXT NOT NULL,
              command_text TEXT NOT NULL,
              env_json TEXT,
              cwd TEXT,
              timeout_seconds REAL,
              status TEXT NOT NULL,
              created_at REAL NOT NULL
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS results (
              command_id TEXT PRIMARY KEY,
              owner_id TEXT NOT NULL,
              stdout TEXT NOT NULL,
              stderr TEXT NOT NULL,
              exit_code INTEGER NOT NULL,
              duration_ms INTEGER NOT NULL,
              completed_at REAL NOT NULL
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_connections_owner_status ON connections(owner_id, status);")
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_commands_conn_status_created ON commands(connection_id, status, created_at);"
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_results_completed ON results(completed_at);")

        # New databases start at schema_version=1 (base tables) and migrate forward explicitly.
        cur.execute(
            "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
            ("schema_version", "1"),
        )
        self._conn.commit()

        self._migrate_if_needed()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except Exception:
            return 0

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            ("schema_version", str(int(version))),
        )

    def _migrate_if_needed(self) -> None:
        current = self._get_schema_version()
        target = int(SCHEMA_VERSION)
        if current == target:
            return
        if current > target:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({target}).")

        cur = self._conn.cursor()
        cur.execute("BEGIN;")
        try:
            while current < target:
                if current == 1:
                    self._migrate_1_to_2(cur)
                    current = 2
                    self._set_schema_version(current)
                else:
                    raise RuntimeError(f"Missing migration step for schema_version={current} -> {current+1}")
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _migrate_1_to_2(self, cur: sqlite3.Cursor) -> None:
        # Reaper support: claim/completion timestamps and the indexes its sweeps scan.
        cur.execute("ALTER TABLE commands ADD COLUMN claimed_at REAL;")
        cur.execute("ALTER TABLE commands ADD COLUMN completed_at REAL;")
        cur.execute("ALTER TABLE connections ADD COLUMN disconnected_at REAL;")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_connections_status_heartbeat ON connections(status, last_heartbeat);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_connections_status_created ON connections(status, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_commands_status_created ON commands(status, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_commands_status_claimed ON commands(status, claimed_at);")

    # --- Tokens
    def get_token_for_owner(self, *, owner_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            "SELECT owner_id, token, created_at, updated_at FROM tokens WHERE owner_id = ? LIMIT 1;",
            (owner_id,),
        ).fetchone()

    def get_token_by_value(self, *, token: str) -> sqlite3.Row | None:
        return self._conn.execute(
            "SELECT owner_id, token, created_at, updated_at FROM tokens WHERE token = ? LIMIT 1;",
            (token,),
        ).fetchone()

    def insert_token_if_absent(self, *, owner_id: str, token: str) -> bool:
        """Insert a token for `owner_id` unless one exists. Returns True if this call created it."""
        ts = self.now()
        cur = self._conn.execute(
            """
            INSERT INTO tokens(owner_id, token, created_at, updated_at)
            VALUES(?, ?, ?, ?)
            ON CONFLICT(owner_id) DO NOTHING;
            """,
            (owner_id, token, ts, ts),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def replace_token(self, *, owner_id: str, token: str) -> None:
        ts = self.now()
        self._conn.execute(
            """
            INSERT INTO tokens(owner_id, token, created_at, updated_at)
            VALUES(?, ?, ?, ?)
            ON CONFLICT(owner_id) DO UPDATE SET
              token = excluded.token,
              created_at = excluded.created_at,
              updated_at = excluded.updated_at;
            """,
            (owner_id, token, ts, ts),
        )
        self._conn.commit()

    # --- Connections
    def create_connection(
        self,
        *,
        owner_id: str,
        name: str,
        mode: str,
        metadata: dict[str, str],
    ) -> sqlite3.Row:
        connection_id = _new_uuid()
        ts = self.now()
        self._conn.execute(
            """
            INSERT INTO connections(
              connection_id, owner_id, name, mode, metadata_json, last_heartbeat, status, created_at
            ) VALUES(?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (connection_id, owner_id, name, mode, _json_dumps(metadata), ts, "connected", ts),
        )
        self._conn.commit()
        row = self.get_connection(connection_id=connection_id)
        assert row is not None
        return row

    def get_connection(self, *, connection_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT
              connection_id, owner_id, name, mode, metadata_json, last_heartbeat, status,
              created_at, disconnected_at
            FROM connections
            WHERE connection_id = ?
            LIMIT 1;
            """,
            (connection_id,),
        ).fetchone()

    def touch_heartbeat(self, *, connection_id: str, owner_id: str) -> bool:
        """Bump last_heartbeat for a still-connected connection. Returns False if nothing matched."""
        cur = self._conn.execute(
            """
            UPDATE connections
            SET last_heartbeat = ?
            WHERE connection_id = ? AND owner_id = ? AND status = 'connected';
            """,
            (self.now(), connection_id, owner_id),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def mark_connection_disconnected(self, *, connection_id: str, commit: bool = True) -> bool:
        cur = self._conn.execute(
            """
            UPDATE connections
            SET status = 'disconnected', disconnected_at = COALESCE(disconnected_at, ?)
            WHERE connection_id = ? AND status = 'connected';
            """,
            (self.now(), connection_id),
        )
        if commit:
            self._conn.commit()
        return cur.rowcount == 1

    def disconnect_owner_connections(self, *, owner_id: str) -> int:
        cur = self._conn.execute(
            """
            UPDATE connections
            SET status = 'disconnected', disconnected_at = COALESCE(disconnected_at, ?)
            WHERE owner_id = ? AND status = 'connected';
            """,
            (self.now(), owner_id),
        )
        self._conn.commit()
        return int(cur.rowcount)

    def list_connections_for_owner(self, *, owner_id: str, status: str = "connected") -> list[sqlite3.Row]:
        return self._conn.execute(
            """
            SELECT
              connection_id, owner_id, name, mode, metadata_json, last_heartbeat, status,
              created_at, disconnected_at
            FROM connections
            WHERE owner_id = ? AND status = ?
            ORDER BY created_at ASC, connection_id ASC;
            """,
            (owner_id, status),
        ).fetchall()

    def list_stale_connection_candidates(self, *, heartbeat_before: float, limit: int) -> list[sqlite3.Row]:
        return self._conn.execute(
            """
            SELECT connection_id, owner_id, last_heartbeat, status
            FROM connections
            WHERE status = 'connected' AND last_heartbeat < ?
            ORDER BY last_heartbeat ASC
            LIMIT ?;
            """,
            (float(heartbeat_before), int(limit)),
        ).fetchall()

    def delete_old_disconnected_connections(self, *, before: float, limit: int) -> int:
        rows = self._conn.execute(
            """
            SELECT connection_id
            FROM connections
            WHERE status = 'disconnected' AND COALESCE(disconnected_at, created_at) < ?
            ORDER BY created_at ASC
            LIMIT ?;
            """,
            (float(before), int(limit)),
        ).fetchall()
        if not rows:
            return 0
        ids = [str(r["connection_id"]) for r in rows]
        self._conn.execute(
            "DELETE FROM connections WHERE connection_id IN (%s) AND status = 'disconnected';"
            % ",".join(["?"] * len(ids)),
            ids,
        )
        self._conn.commit()
        return len(ids)

    def count_connections_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM connections GROUP BY status ORDER BY status;",
        ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    # --- Commands
    def insert_command(
        self,
        *,
        command_id: str,
        owner_id: str,
        connection_id: str,
        command_text: str,
        env: dict[str, str] | None,
        cwd: str | None,
        timeout_seconds: float | None,
        commit: bool = True,
    ) -> bool:
        """Insert a pending command. Returns False if the command id already exists."""
        cur = self._conn.execute(
            """
            INSERT INTO commands(
              command_id, owner_id, connection_id, command_text, env_json, cwd, timeout_seconds,
              status, created_at
            ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(command_id) DO NOTHING;
            """,
            (
                command_id,
                owner_id,
                connection_id,
                command_text,
                _json_dumps(env) if env is not None else None,
                cwd,
                float(timeout_seconds) if timeout_seconds is not None else None,
                "pending",
                self.now(),
            ),
        )
        if commit:
            self._conn.commit()
        return cur.rowcount == 1

    def get_command(self, *, command_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT
              command_id, owner_id, connection_id, command_text, env_json, cwd, timeout_seconds,
              status, created_at, claimed_at, completed_at
            FROM commands
            WHERE command_id = ?
            LIMIT 1;
            """,
            (command_id,),
        ).fetchone()

    def list_pending_commands(self, *, connection_id: str, owner_id: str, limit: int) -> list[sqlite3.Row]:
        # rowid breaks ties between commands created within the same clock tick.
        return self._conn.execute(
            """
            SELECT
              command_id, owner_id, connection_id, command_text, env_json, cwd, timeout_seconds,
              status, created_at, claimed_at, completed_at
            FROM commands
            WHERE connection_id = ? AND owner_id = ? AND status = 'pending'
            ORDER BY created_at ASC, rowid ASC
            LIMIT ?;
            """,
            (connection_id, owner_id, int(limit)),
        ).fetchall()

    def mark_command_executing(self, *, command_id: str) -> bool:
        cur = self._conn.execute(
            """
            UPDATE commands
            SET status = 'executing', claimed_at = COALESCE(claimed_at, ?)
            WHERE command_id = ? AND status = 'pending';
            """,
            (self.now(), command_id),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def mark_command_completed(self, *, command_id: str, completed_at: float, commit: bool = True) -> bool:
        cur = self._conn.execute(
            """
            UPDATE commands
            SET status = 'completed', completed_at = COALESCE(completed_at, ?)
            WHERE command_id = ? AND status IN ('pending', 'executing');
            """,
            (float(completed_at), command_id),
        )
        if commit:
            self._conn.commit()
        return cur.rowcount == 1

    def list_expired_completed_commands(self, *, completed_before: float, limit: int) -> list[str]:
        rows = self._conn.execute(
            """
            SELECT command_id
            FROM commands
            WHERE status = 'completed' AND COALESCE(completed_at, created_at) < ?
            ORDER BY created_at ASC
            LIMIT ?;
            """,
            (float(completed_before), int(limit)),
        ).fetchall()
        return [str(r["command_id"]) for r in rows]

    def delete_commands_with_results(self, command_ids: list[str]) -> int:
        """Delete completed commands and their results together. Returns rows deleted (both kinds)."""
        if not command_ids:
            return 0
        placeholders = ",".join(["?"] * len(command_ids))
        with self.transaction(mode="IMMEDIATE"):
            n_results = self._conn.execute(
                f"DELETE FROM results WHERE command_id IN ({placeholders});",
                command_ids,
            ).rowcount
            n_commands = self._conn.execute(
                f"DELETE FROM commands WHERE command_id IN ({placeholders}) AND status = 'completed';",
                command_ids,
            ).rowcount
        return int(n_results) + int(n_commands)

    def list_abandoned_command_candidates(
        self,
        *,
        now: float,
        default_timeout_s: float,
        grace_s: float,
        limit: int,
    ) -> list[sqlite3.Row]:
        """Executing commands whose claim is older than their own timeout plus grace."""
        return self._conn.execute(
            """
            SELECT command_id, owner_id, connection_id, claimed_at, timeout_seconds
            FROM commands
            WHERE status = 'executing'
              AND claimed_at IS NOT NULL
              AND claimed_at + COALESCE(timeout_seconds, ?) + ? < ?
            ORDER BY claimed_at ASC
            LIMIT ?;
            """,
            (float(default_timeout_s), float(grace_s), float(now), int(limit)),
        ).fetchall()

    def list_orphaned_command_candidates(self, *, disconnected_before: float, limit: int) -> list[sqlite3.Row]:
        """Unfinished commands whose connection was purged or has been disconnected since before the cutoff.

        Executors reconnect under a new connection id, so nothing will ever poll these again.
        """
        return self._conn.execute(
            """
            SELECT c.command_id, c.owner_id, c.connection_id, c.status, c.created_at, c.claimed_at
            FROM commands c
            LEFT JOIN connections k ON k.connection_id = c.connection_id
            WHERE c.status IN ('pending', 'executing')
              AND (
                k.connection_id IS NULL
                OR (k.status = 'disconnected' AND COALESCE(k.disconnected_at, k.created_at) < ?)
              )
            ORDER BY c.created_at ASC, c.rowid ASC
            LIMIT ?;
            """,
            (float(disconnected_before), int(limit)),
        ).fetchall()

    def count_commands_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM commands GROUP BY status ORDER BY status;",
        ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    # --- Results
    def insert_result_once(
        self,
        *,
        command_id: str,
        owner_id: str,
        stdout: str,
        stderr: str,
        exit_code: int,
        duration_ms: int,
        completed_at: float,
        commit: bool = True,
    ) -> bool:
        """First write wins: returns False if a result for `command_id` already exists."""
        cur = self._conn.execute(
            """
            INSERT INTO results(command_id, owner_id, stdout, stderr, exit_code, duration_ms, completed_at)
            VALUES(?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(command_id) DO NOTHING;
            """,
            (command_id, owner_id, stdout, stderr, int(exit_code), int(duration_ms), float(completed_at)),
        )
        if commit:
            self._conn.commit()
        return cur.rowcount == 1

    def get_result(self, *, command_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT command_id, owner_id, stdout, stderr, exit_code, duration_ms, completed_at
            FROM results
            WHERE command_id = ?
            LIMIT 1;
            """,
            (command_id,),
        ).fetchone()

    def delete_result(self, *, command_id: str, owner_id: str) -> bool:
        cur = self._conn.execute(
            "DELETE FROM results WHERE command_id = ? AND owner_id = ?;",
            (command_id, owner_id),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def delete_expired_results(self, *, completed_before: float, limit: int) -> int:
        """Purge results whose command row is gone. Results of present commands go with the command."""
        rows = self._conn.execute(
            """
            SELECT r.command_id
            FROM results r
            LEFT JOIN commands c ON c.command_id = r.command_id
            WHERE r.completed_at < ? AND c.command_id IS NULL
            ORDER BY r.completed_at ASC
            LIMIT ?;
            """,
            (float(completed_before), int(limit)),
        ).fetchall()
        if not rows:
            return 0
        ids = [str(r["command_id"]) for r in rows]
        self._conn.execute(
            "DELETE FROM results WHERE command_id IN (%s);" % ",".join(["?"] * len(ids)),
            ids,
        )
        self._conn.commit()
        return len(ids)

    def count_results(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) AS n FROM results;").fetchone()
        return int(row["n"]) if row is not None else 0
