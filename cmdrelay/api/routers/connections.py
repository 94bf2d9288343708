from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from cmdrelay.api.dependencies import get_owner_id, get_relay
from cmdrelay.relay.service import Relay


router = APIRouter()


@router.get("/connections")
def list_connections(owner_id: str = Depends(get_owner_id), relay: Relay = Depends(get_relay)) -> dict[str, Any]:
    items = relay.connections.list_connections(owner_id)
    return {"items": [c.to_dict() for c in items]}


@router.get("/connections/{connection_id}/status")
def connection_status(
    connection_id: str,
    owner_id: str = Depends(get_owner_id),
    relay: Relay = Depends(get_relay),
) -> dict[str, Any]:
    return relay.connections.is_connected(connection_id, owner_id=owner_id).to_dict()
