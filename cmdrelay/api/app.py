from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError

from cmdrelay import __version__
from cmdrelay.api.errors import (
    APIError,
    api_error_handler,
    relay_error_handler,
    unhandled_error_handler,
    validation_error_handler,
)
from cmdrelay.config.load_config import load_app_config
from cmdrelay.relay.errors import RelayError
from cmdrelay.runtime.scheduler import ReaperScheduler
from cmdrelay.storage.sqlite_store import SQLiteStore, default_db_path

from .routers.commands import router as commands_router
from .routers.connections import router as connections_router
from .routers.executor import router as executor_router
from .routers.health import router as health_router
from .routers.internal import router as internal_router
from .routers.results import router as results_router
from .routers.tokens import router as tokens_router


LOGGER = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in {"1", "true", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "no", "n", "off"}:
        return False
    return default


def create_app() -> FastAPI:
    config = load_app_config()
    db_path = default_db_path()

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        # Create/migrate the schema before the first request arrives.
        SQLiteStore(app.state.db_path).close()

        # Single in-process reaper (single-instance assumption); cron can use the internal routes instead.
        if _env_bool("CMDRELAY_ENABLE_REAPER", True):
            scheduler = ReaperScheduler(app.state.relay_config, db_path=app.state.db_path)
            scheduler.start()
            app.state.reaper_scheduler = scheduler
            LOGGER.info("Reaper scheduler started (db=%s)", app.state.db_path)
        try:
            yield
        finally:
            scheduler = getattr(app.state, "reaper_scheduler", None)
            if scheduler is not None:
                scheduler.stop()
                app.state.reaper_scheduler = None

    app = FastAPI(title="cmdrelay API", version=__version__, lifespan=lifespan)
    app.state.relay_config = config
    app.state.db_path = db_path
    app.state.reaper_scheduler = None

    app.add_exception_handler(APIError, api_error_handler)
    app.add_exception_handler(RelayError, relay_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(health_router, prefix="/api/v1", tags=["system"])
    app.include_router(tokens_router, prefix="/api/v1", tags=["tokens"])
    app.include_router(connections_router, prefix="/api/v1", tags=["connections"])
    app.include_router(commands_router, prefix="/api/v1", tags=["commands"])
    app.include_router(results_router, prefix="/api/v1", tags=["results"])
    app.include_router(executor_router, prefix="/api/v1", tags=["executor"])
    app.include_router(internal_router, prefix="/api/v1", tags=["internal"])

    return app


app = create_app()
