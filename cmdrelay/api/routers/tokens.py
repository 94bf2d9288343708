from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from cmdrelay.api.dependencies import get_owner_id, get_relay
from cmdrelay.relay.service import Relay


router = APIRouter()


@router.post("/tokens")
def issue_token(owner_id: str = Depends(get_owner_id), relay: Relay = Depends(get_relay)) -> dict[str, Any]:
    token = relay.tokens.issue_token(owner_id)
    return {"token": token.value, "created_at": token.created_at}


@router.post("/tokens/regenerate")
def regenerate_token(owner_id: str = Depends(get_owner_id), relay: Relay = Depends(get_relay)) -> dict[str, Any]:
    token = relay.tokens.regenerate_token(owner_id)
    return {"token": token.value, "created_at": token.created_at}
