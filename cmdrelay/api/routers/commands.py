from __future__ import annotations

import uuid
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from cmdrelay.api.errors import APIError
from cmdrelay.api.dependencies import get_owner_id, get_relay
from cmdrelay.relay.service import Relay


router = APIRouter()


class EnqueueCommandRequest(BaseModel):
    connection_id: str = Field(min_length=1)
    command: str = Field(min_length=1)
    command_id: str | None = Field(default=None, description="Client-chosen id; generated when omitted.")
    env: dict[str, str] | None = Field(default=None)
    cwd: str | None = Field(default=None)
    timeout_seconds: float | None = Field(default=None, gt=0, description="Advisory; forwarded to the executor.")


@router.post("/commands")
def enqueue_command(
    body: EnqueueCommandRequest,
    owner_id: str = Depends(get_owner_id),
    relay: Relay = Depends(get_relay),
) -> dict[str, Any]:
    cmd = relay.commands.enqueue_command(
        owner_id,
        body.connection_id,
        body.command_id or str(uuid.uuid4()),
        body.command,
        env=body.env,
        cwd=body.cwd,
        timeout_seconds=body.timeout_seconds,
    )
    return {"command": cmd.to_dict()}


@router.get("/commands/{command_id}")
def get_command(
    command_id: str,
    owner_id: str = Depends(get_owner_id),
    relay: Relay = Depends(get_relay),
) -> dict[str, Any]:
    cmd = relay.commands.get_command(owner_id, command_id)
    if cmd is None:
        raise APIError(status_code=404, code="not_found", message="Command not found.")
    return {"command": cmd.to_dict()}
