from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter, Depends, Request

from cmdrelay import __version__
from cmdrelay.api.dependencies import get_store, require_service_key
from cmdrelay.storage.sqlite_store import SCHEMA_VERSION, SQLiteStore


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "cmdrelay",
        "version": __version__,
        "api": "v1",
        "schema_version": int(SCHEMA_VERSION),
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "uvicorn": _pkg_version("uvicorn"),
            "httpx": _pkg_version("httpx"),
        },
        "ts": time.time(),
    }


@router.get("/system/reaper", dependencies=[Depends(require_service_key)])
def system_reaper(request: Request, store: SQLiteStore = Depends(get_store)) -> dict[str, Any]:
    scheduler = getattr(request.app.state, "reaper_scheduler", None)
    snapshot: dict[str, Any] = {"enabled": scheduler is not None, "running": False}
    if scheduler is not None:
        snapshot.update(scheduler.status_snapshot())
    return {
        "ts": time.time(),
        "reaper": snapshot,
        "records": {
            "connections_by_status": store.count_connections_by_status(),
            "commands_by_status": store.count_commands_by_status(),
            "results": store.count_results(),
        },
    }
