from __future__ import annotations

import logging
import math
import re
from typing import Any

from cmdrelay.config.load_config import RelayConfig
from cmdrelay.relay.connections import ConnectionRegistry
from cmdrelay.relay.errors import (
    ConflictError,
    NotFoundError,
    OwnershipError,
    RelayError,
    ValidationError,
)
from cmdrelay.relay.tokens import TokenStore
from cmdrelay.relay.types import Command, CommandState, Outcome
from cmdrelay.storage.sqlite_store import SQLiteStore, json_loads_map


LOGGER = logging.getLogger(__name__)

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
MAX_ID_CHARS = 200


def row_to_command(row: Any) -> Command:
    return Command(
        command_id=str(row["command_id"]),
        owner_id=str(row["owner_id"]),
        connection_id=str(row["connection_id"]),
        command=str(row["command_text"]),
        status=str(row["status"]),
        created_at=float(row["created_at"]),
        env=json_loads_map(row["env_json"]),
        cwd=row["cwd"],
        timeout_seconds=float(row["timeout_seconds"]) if row["timeout_seconds"] is not None else None,
        claimed_at=float(row["claimed_at"]) if row["claimed_at"] is not None else None,
        completed_at=float(row["completed_at"]) if row["completed_at"] is not None else None,
    )


def _require_id(value: str, *, name: str) -> str:
    s = (value or "").strip()
    if not s:
        raise ValidationError(f"{name} is required.")
    if len(s) > MAX_ID_CHARS:
        raise ValidationError(f"{name} must be at most {MAX_ID_CHARS} characters.")
    return s


def _validate_env(env: Any) -> dict[str, str] | None:
    if env is None:
        return None
    if not isinstance(env, dict):
        raise ValidationError("env must be a map of variable name to string value.")
    out: dict[str, str] = {}
    for k, v in env.items():
        key = str(k)
        if not _ENV_NAME_RE.match(key):
            raise ValidationError(f"Invalid environment variable name: {key!r}", details={"env_key": key})
        if v is None:
            raise ValidationError(f"Environment variable {key} has no value.", details={"env_key": key})
        out[key] = str(v)
    return out


def _validate_timeout(timeout_seconds: Any) -> float | None:
    if timeout_seconds is None:
        return None
    try:
        t = float(timeout_seconds)
    except (TypeError, ValueError) as e:
        raise ValidationError("timeout_seconds must be a number.") from e
    if not math.isfinite(t) or t <= 0:
        raise ValidationError("timeout_seconds must be a positive number.", details={"timeout_seconds": t})
    return t


class CommandQueue:
    """Per-connection FIFO of pending commands and their forward-only state machine.

    Delivery is at-least-once: polling is a plain read, so two pollers can both see the same
    pending command. The executor de-duplicates by command id.
    """

    def __init__(
        self,
        store: SQLiteStore,
        tokens: TokenStore,
        connections: ConnectionRegistry,
        config: RelayConfig,
    ) -> None:
        self._store = store
        self._tokens = tokens
        self._connections = connections
        self._config = config

    def enqueue_command(
        self,
        owner_id: str,
        connection_id: str,
        command_id: str,
        text: str,
        env: dict[str, Any] | None = None,
        cwd: str | None = None,
        timeout_seconds: float | None = None,
    ) -> Command:
        """Queue a pending command for `connection_id`.

        The connection does not have to be live; commands for an offline executor wait until it
        polls again. Re-sending the same command id with the same payload returns the stored
        command, so producers can retry an enqueue safely.
        """
        oid = _require_id(owner_id, name="owner_id")
        cid = _require_id(connection_id, name="connection_id")
        cmd_id = _require_id(command_id, name="command_id")

        command_text = text if isinstance(text, str) else ""
        if not command_text.strip():
            raise ValidationError("command must be a non-empty string.")
        max_chars = int(self._config.queue.max_command_chars)
        if len(command_text) > max_chars:
            raise ValidationError(
                f"command must be at most {max_chars} characters.",
                details={"length": len(command_text)},
            )
        env_map = _validate_env(env)
        work_dir = (cwd or "").strip() or None
        timeout = _validate_timeout(timeout_seconds)

        conn_row = self._store.get_connection(connection_id=cid)
        if conn_row is None:
            raise NotFoundError("Connection not found.", details={"connection_id": cid})
        if str(conn_row["owner_id"]) != oid:
            raise OwnershipError("Connection belongs to another owner.")

        created = self._store.insert_command(
            command_id=cmd_id,
            owner_id=oid,
            connection_id=cid,
            command_text=command_text,
            env=env_map,
            cwd=work_dir,
            timeout_seconds=timeout,
        )
        row = self._store.get_command(command_id=cmd_id)
        assert row is not None
        cmd = row_to_command(row)
        if not created:
            same = (
                cmd.owner_id == oid
                and cmd.connection_id == cid
                and cmd.command == command_text
                and cmd.env == env_map
                and cmd.cwd == work_dir
                and cmd.timeout_seconds == timeout
            )
            if not same:
                raise ConflictError(
                    "command_id already exists with a different payload.",
                    details={"command_id": cmd_id},
                )
            return cmd

        LOGGER.debug("Enqueued command %s for connection %s (owner %s)", cmd_id, cid, oid)
        return cmd

    def get_pending_commands(self, token: str | None, connection_id: str, limit: int | None = None) -> list[Command]:
        """Oldest-first pending commands for the connection. Never changes state."""
        try:
            conn = self._connections.authorize(token, connection_id)
        except RelayError as e:
            LOGGER.debug("Poll rejected for connection %s: %s", connection_id, e.code)
            return []

        n = int(limit) if limit is not None else int(self._config.queue.poll_limit_default)
        n = max(1, min(n, int(self._config.queue.poll_limit_max)))
        rows = self._store.list_pending_commands(
            connection_id=conn.connection_id,
            owner_id=conn.owner_id,
            limit=n,
        )
        return [row_to_command(r) for r in rows]

    def mark_executing(self, token: str | None, command_id: str) -> Outcome:
        """Claim a command: pending -> executing.

        Repeating the call on an executing command succeeds without effect, so a retried poll loop
        is harmless. A completed command reports `completed` and is left untouched.
        """
        try:
            cmd = self.authorize_command(token, command_id)
        except RelayError as e:
            return Outcome(success=False, error=e.code)

        if cmd.status == CommandState.PENDING.value:
            if self._store.mark_command_executing(command_id=cmd.command_id):
                LOGGER.debug("Command %s claimed by connection %s", cmd.command_id, cmd.connection_id)
                return Outcome(success=True, created=True)
            # Someone else moved it; fall through with the fresh state.
            row = self._store.get_command(command_id=cmd.command_id)
            if row is None:
                return Outcome(success=False, error=NotFoundError.code)
            cmd = row_to_command(row)

        if cmd.status == CommandState.EXECUTING.value:
            return Outcome(success=True, created=False)
        return Outcome(success=False, error=CommandState.COMPLETED.value)

    def get_command(self, owner_id: str, command_id: str) -> Command | None:
        """Producer-facing status lookup; None when the command does not exist."""
        row = self._store.get_command(command_id=(command_id or "").strip())
        if row is None:
            return None
        if str(row["owner_id"]) != owner_id:
            raise OwnershipError("Command belongs to another owner.")
        return row_to_command(row)

    def authorize_command(self, token: str | None, command_id: str) -> Command:
        owner_id = self._tokens.require_owner(token)
        row = self._store.get_command(command_id=(command_id or "").strip())
        if row is None:
            raise NotFoundError("Command not found.")
        if str(row["owner_id"]) != owner_id:
            raise OwnershipError("Command belongs to another owner.")
        return row_to_command(row)
