from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from cmdrelay.api.dependencies import get_owner_id, get_relay, require_service_key
from cmdrelay.relay.service import Relay


router = APIRouter()


@router.get("/results/{command_id}", dependencies=[Depends(require_service_key)])
def get_result(command_id: str, relay: Relay = Depends(get_relay)) -> dict[str, Any]:
    # Not-found is a normal answer here: producers poll until the executor reports.
    return relay.results.get_result(command_id).to_dict()


@router.delete("/results/{command_id}")
def delete_result(
    command_id: str,
    owner_id: str = Depends(get_owner_id),
    relay: Relay = Depends(get_relay),
) -> dict[str, Any]:
    return {"deleted": relay.results.delete_result(owner_id, command_id)}
