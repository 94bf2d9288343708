from __future__ import annotations

import hmac
import os
from typing import Iterator

from fastapi import Depends, Header, Request
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from cmdrelay.config.load_config import RelayConfig
from cmdrelay.relay.errors import AuthError, ValidationError
from cmdrelay.relay.service import Relay, build_relay
from cmdrelay.storage.sqlite_store import SQLiteStore


_service_key_header = APIKeyHeader(name="X-Service-Key", auto_error=False)
_bearer = HTTPBearer(auto_error=False)


def get_config(request: Request) -> RelayConfig:
    return request.app.state.relay_config


def get_store(request: Request) -> Iterator[SQLiteStore]:
    """FastAPI dependency: one SQLiteStore per request, closed when the response is done."""
    store = SQLiteStore(request.app.state.db_path)
    try:
        yield store
    finally:
        store.close()


def get_relay(
    store: SQLiteStore = Depends(get_store),
    config: RelayConfig = Depends(get_config),
) -> Relay:
    return build_relay(store, config)


def configured_service_key() -> str:
    return os.getenv("CMDRELAY_SERVICE_KEY", "").strip()


def require_service_key(api_key: str | None = Depends(_service_key_header)) -> None:
    """Producer and internal routes must present the shared service credential.

    If CMDRELAY_SERVICE_KEY is blank the check is skipped (local development).
    """
    expected = configured_service_key()
    if not expected:
        return
    if api_key is None or not hmac.compare_digest(api_key.encode("utf-8"), expected.encode("utf-8")):
        raise AuthError("Invalid or missing service key.")


def get_owner_id(
    _auth: None = Depends(require_service_key),
    owner_id: str | None = Header(default=None, alias="X-Owner-Id"),
) -> str:
    """Owner identity as established by the hosting authentication layer."""
    oid = (owner_id or "").strip()
    if not oid:
        raise ValidationError("X-Owner-Id header is required.")
    return oid


def get_bearer_token(credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)) -> str | None:
    """Executor token from `Authorization: Bearer ...`; None when absent so callers can degrade."""
    if credentials is None:
        return None
    return (credentials.credentials or "").strip() or None
