from __future__ import annotations

import json
import logging
from typing import Any

from cmdrelay.config.load_config import RelayConfig
from cmdrelay.relay.errors import NotFoundError, OwnershipError, RelayError, ValidationError
from cmdrelay.relay.liveness import is_live
from cmdrelay.relay.tokens import TokenStore
from cmdrelay.relay.types import Connection, ConnectionState, ConnectionStatus, Outcome
from cmdrelay.storage.sqlite_store import SQLiteStore


LOGGER = logging.getLogger(__name__)

MAX_NAME_CHARS = 200
MAX_METADATA_ENTRIES = 64


def row_to_connection(row: Any) -> Connection:
    metadata = json.loads(str(row["metadata_json"] or "{}"))
    return Connection(
        connection_id=str(row["connection_id"]),
        owner_id=str(row["owner_id"]),
        name=str(row["name"]),
        mode=str(row["mode"]),
        metadata={str(k): str(v) for k, v in dict(metadata).items()},
        last_heartbeat=float(row["last_heartbeat"]),
        status=str(row["status"]),
        created_at=float(row["created_at"]),
    )


def _normalize_metadata(metadata: dict[str, Any] | None) -> dict[str, str]:
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise ValidationError("metadata must be a string-keyed map.")
    if len(metadata) > MAX_METADATA_ENTRIES:
        raise ValidationError(f"metadata may hold at most {MAX_METADATA_ENTRIES} entries.")
    out: dict[str, str] = {}
    for k, v in metadata.items():
        key = str(k).strip()
        if not key:
            raise ValidationError("metadata keys must be non-empty.")
        if v is None:
            continue
        out[key] = str(v)
    return out


class ConnectionRegistry:
    """Tracks executor sessions and answers liveness questions about them."""

    def __init__(self, store: SQLiteStore, tokens: TokenStore, config: RelayConfig) -> None:
        self._store = store
        self._tokens = tokens
        self._config = config

    @property
    def liveness_window_s(self) -> float:
        return float(self._config.liveness.window_s)

    def connect(
        self,
        token: str | None,
        name: str,
        mode: str,
        metadata: dict[str, Any] | None = None,
    ) -> Connection:
        """Register a new executor session for the token's owner.

        Raises AuthError for a bad token and ValidationError for a malformed registration; the
        executor treats either as fatal (it cannot recover without a new token or new arguments).
        """
        owner_id = self._tokens.require_owner(token)

        conn_name = (name or "").strip()
        if not conn_name:
            raise ValidationError("Connection name is required.")
        if len(conn_name) > MAX_NAME_CHARS:
            raise ValidationError(f"Connection name must be at most {MAX_NAME_CHARS} characters.")
        conn_mode = (mode or "").strip()
        if conn_mode not in self._config.queue.allowed_modes:
            raise ValidationError(
                f"Unsupported executor mode: {conn_mode!r}",
                details={"allowed_modes": list(self._config.queue.allowed_modes)},
            )

        row = self._store.create_connection(
            owner_id=owner_id,
            name=conn_name,
            mode=conn_mode,
            metadata=_normalize_metadata(metadata),
        )
        conn = row_to_connection(row)
        LOGGER.info("Connection %s (%s, mode=%s) registered for owner %s", conn.connection_id, conn.name, conn.mode, owner_id)
        return conn

    def authorize(self, token: str | None, connection_id: str) -> Connection:
        """Resolve a connection for the token's owner.

        Raises AuthError, NotFoundError or OwnershipError.
        """
        owner_id = self._tokens.require_owner(token)
        row = self._store.get_connection(connection_id=(connection_id or "").strip())
        if row is None:
            raise NotFoundError("Connection not found.")
        if str(row["owner_id"]) != owner_id:
            raise OwnershipError("Connection belongs to another owner.")
        return row_to_connection(row)

    def heartbeat(self, token: str | None, connection_id: str) -> Outcome:
        """Bump lastHeartbeat. A disconnected connection reports failure so the executor reconnects."""
        try:
            conn = self.authorize(token, connection_id)
        except RelayError as e:
            LOGGER.debug("Heartbeat rejected for connection %s: %s", connection_id, e.code)
            return Outcome(success=False, error=e.code)

        if conn.status != ConnectionState.CONNECTED.value:
            return Outcome(success=False, error="disconnected")
        if not self._store.touch_heartbeat(connection_id=conn.connection_id, owner_id=conn.owner_id):
            # Demoted concurrently after the read above.
            return Outcome(success=False, error="disconnected")
        return Outcome(success=True)

    def disconnect(self, token: str | None, connection_id: str) -> Outcome:
        try:
            conn = self.authorize(token, connection_id)
        except RelayError as e:
            return Outcome(success=False, error=e.code)

        changed = self._store.mark_connection_disconnected(connection_id=conn.connection_id)
        if changed:
            LOGGER.info("Connection %s disconnected by executor", conn.connection_id)
        return Outcome(success=True)

    def list_connections(self, owner_id: str) -> list[Connection]:
        """Live connections for an owner; stale heartbeats are filtered even if status says connected."""
        now = self._store.now()
        rows = self._store.list_connections_for_owner(owner_id=owner_id, status=ConnectionState.CONNECTED.value)
        out: list[Connection] = []
        for row in rows:
            if is_live(str(row["status"]), float(row["last_heartbeat"]), now, window_s=self.liveness_window_s):
                out.append(row_to_connection(row))
        return out

    def is_connected(self, connection_id: str, *, owner_id: str | None = None) -> ConnectionStatus:
        row = self._store.get_connection(connection_id=(connection_id or "").strip())
        if row is None:
            return ConnectionStatus(connected=False)
        if owner_id is not None and str(row["owner_id"]) != owner_id:
            return ConnectionStatus(connected=False)
        if not is_live(
            str(row["status"]),
            float(row["last_heartbeat"]),
            self._store.now(),
            window_s=self.liveness_window_s,
        ):
            return ConnectionStatus(connected=False)
        conn = row_to_connection(row)
        return ConnectionStatus(connected=True, mode=conn.mode, metadata=conn.metadata)
