from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from cmdrelay.api.dependencies import get_relay, require_service_key
from cmdrelay.relay.service import Relay


# Scheduler entry points. Exposed over HTTP so an external cron can drive the reaper when the
# in-process scheduler is disabled.
router = APIRouter(prefix="/internal/reaper", dependencies=[Depends(require_service_key)])


@router.post("/stale-connections")
def stale_connections(relay: Relay = Depends(get_relay)) -> dict[str, Any]:
    return {"cleaned": relay.reaper.cleanup_stale_connections()}


@router.post("/old-commands")
def old_commands(relay: Relay = Depends(get_relay)) -> dict[str, Any]:
    deleted, rounds = relay.reaper.purge_until_empty()
    return {"deleted": deleted, "rounds": rounds}


@router.post("/abandoned-commands")
def abandoned_commands(relay: Relay = Depends(get_relay)) -> dict[str, Any]:
    return {"reclaimed": relay.reaper.reclaim_abandoned_commands()}


@router.post("/cycle")
def cycle(relay: Relay = Depends(get_relay)) -> dict[str, Any]:
    return relay.reaper.run_cleanup_cycle().to_dict()
