from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from cmdrelay.api.dependencies import get_bearer_token, get_relay
from cmdrelay.relay.service import Relay


router = APIRouter(prefix="/executor")


class ConnectRequest(BaseModel):
    name: str = Field(min_length=1)
    mode: str = Field(min_length=1)
    metadata: dict[str, str] | None = Field(default=None)
    client_version: str | None = Field(default=None)


class SubmitResultRequest(BaseModel):
    stdout: str = Field(default="")
    stderr: str = Field(default="")
    exit_code: int
    duration_ms: int = Field(ge=0)


@router.post("/connect")
def connect(
    body: ConnectRequest,
    token: str | None = Depends(get_bearer_token),
    relay: Relay = Depends(get_relay),
) -> dict[str, Any]:
    metadata = dict(body.metadata or {})
    if body.client_version:
        metadata.setdefault("client_version", body.client_version)
    conn = relay.connections.connect(token, body.name, body.mode, metadata)
    return {"success": True, "owner_id": conn.owner_id, "connection_id": conn.connection_id}


@router.post("/connections/{connection_id}/heartbeat")
def heartbeat(
    connection_id: str,
    token: str | None = Depends(get_bearer_token),
    relay: Relay = Depends(get_relay),
) -> dict[str, Any]:
    return relay.connections.heartbeat(token, connection_id).to_dict()


@router.post("/connections/{connection_id}/disconnect")
def disconnect(
    connection_id: str,
    token: str | None = Depends(get_bearer_token),
    relay: Relay = Depends(get_relay),
) -> dict[str, Any]:
    return relay.connections.disconnect(token, connection_id).to_dict()


@router.get("/connections/{connection_id}/commands")
def poll_commands(
    connection_id: str,
    limit: int | None = Query(default=None, ge=1),
    token: str | None = Depends(get_bearer_token),
    relay: Relay = Depends(get_relay),
) -> dict[str, Any]:
    cmds = relay.commands.get_pending_commands(token, connection_id, limit=limit)
    return {"commands": [c.to_dict() for c in cmds]}


@router.post("/commands/{command_id}/executing")
def mark_executing(
    command_id: str,
    token: str | None = Depends(get_bearer_token),
    relay: Relay = Depends(get_relay),
) -> dict[str, Any]:
    return relay.commands.mark_executing(token, command_id).to_dict()


@router.post("/commands/{command_id}/result")
def submit_result(
    command_id: str,
    body: SubmitResultRequest,
    token: str | None = Depends(get_bearer_token),
    relay: Relay = Depends(get_relay),
) -> dict[str, Any]:
    return relay.results.submit_result(
        token,
        command_id,
        body.stdout,
        body.stderr,
        body.exit_code,
        body.duration_ms,
    ).to_dict()
