from __future__ import annotations

import logging
import secrets
from typing import Any

from cmdrelay.relay.errors import AuthError, ValidationError
from cmdrelay.relay.types import Token
from cmdrelay.storage.sqlite_store import SQLiteStore


LOGGER = logging.getLogger(__name__)

TOKEN_PREFIX = "crt_"


def generate_token() -> str:
    return TOKEN_PREFIX + secrets.token_hex(32)


def _row_to_token(row: Any) -> Token:
    return Token(value=str(row["token"]), owner_id=str(row["owner_id"]), created_at=float(row["created_at"]))


def _require_owner_id(owner_id: str) -> str:
    oid = (owner_id or "").strip()
    if not oid:
        raise ValidationError("owner_id is required.")
    return oid


class TokenStore:
    """Issues and validates opaque per-owner bearer tokens (one active token per owner)."""

    def __init__(self, store: SQLiteStore) -> None:
        self._store = store

    def issue_token(self, owner_id: str) -> Token:
        """Return the owner's token, creating it on first request. Idempotent."""
        oid = _require_owner_id(owner_id)
        existing = self._store.get_token_for_owner(owner_id=oid)
        if existing is not None:
            return _row_to_token(existing)

        created = self._store.insert_token_if_absent(owner_id=oid, token=generate_token())
        if created:
            LOGGER.info("Issued relay token for owner %s", oid)
        # A concurrent issue may have won the insert; either way the stored row is authoritative.
        row = self._store.get_token_for_owner(owner_id=oid)
        assert row is not None
        return _row_to_token(row)

    def regenerate_token(self, owner_id: str) -> Token:
        """Replace the owner's token and disconnect their live connections.

        The old value stops validating as soon as the replace commits. Disconnecting sessions is a
        best-effort follow-up: a failure there is logged and does not undo the new token.
        """
        oid = _require_owner_id(owner_id)
        previous = self._store.get_token_for_owner(owner_id=oid)
        value = generate_token()
        while previous is not None and value == str(previous["token"]):
            value = generate_token()
        self._store.replace_token(owner_id=oid, token=value)
        LOGGER.info("Regenerated relay token for owner %s", oid)

        try:
            n = self._store.disconnect_owner_connections(owner_id=oid)
            if n:
                LOGGER.info("Disconnected %d connection(s) for owner %s after token regeneration", n, oid)
        except Exception:
            LOGGER.exception("Failed to disconnect connections for owner %s after token regeneration", oid)

        row = self._store.get_token_for_owner(owner_id=oid)
        assert row is not None
        return _row_to_token(row)

    def validate_token(self, token: str | None) -> str | None:
        """Return the owner id for `token`, or None when it is missing or no longer valid."""
        value = (token or "").strip()
        if not value:
            return None
        row = self._store.get_token_by_value(token=value)
        if row is None:
            return None
        return str(row["owner_id"])

    def require_owner(self, token: str | None) -> str:
        owner_id = self.validate_token(token)
        if owner_id is None:
            raise AuthError("Invalid or missing token.")
        return owner_id
