from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from cmdrelay.config.load_config import RelayConfig
from cmdrelay.relay.service import build_relay
from cmdrelay.storage.sqlite_store import SQLiteStore, default_db_path


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchedulerConfig:
    stale_interval_s: float = 60.0
    purge_interval_s: float = 3600.0
    tick_s: float = 1.0

    @classmethod
    def from_relay_config(cls, config: RelayConfig) -> "SchedulerConfig":
        return cls(
            stale_interval_s=float(config.reaper.stale_interval_s),
            purge_interval_s=float(config.reaper.purge_interval_s),
        )


class ReaperScheduler:
    """Single background thread that runs the reaper on fixed intervals.

    Stale-connection demotion and abandoned-command reclaim run every `stale_interval_s`; the
    retention purge runs every `purge_interval_s`. A failing run is logged and retried on the next
    interval; the loop itself never exits on an error.
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        db_path: str | None = None,
        scheduler_config: SchedulerConfig | None = None,
        store_factory: Callable[[], SQLiteStore] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._db_path = db_path or default_db_path()
        self._sched = scheduler_config or SchedulerConfig.from_relay_config(config)
        self._store_factory = store_factory or (lambda: SQLiteStore(self._db_path))
        self._monotonic = monotonic
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

        self._next_stale_at = 0.0
        self._next_purge_at = 0.0
        self._last_report: dict[str, Any] = {}
        self._runs = {"stale": 0, "purge": 0, "failed": 0}

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def status_snapshot(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "stale_interval_s": float(self._sched.stale_interval_s),
            "purge_interval_s": float(self._sched.purge_interval_s),
            "db_path": self._db_path,
            "runs": dict(self._runs),
            "last_report": dict(self._last_report),
        }

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run_loop, name="cmdrelay-reaper", daemon=True)
        self._thread.start()

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stop.set()
        t = self._thread
        if t is None:
            return
        t.join(timeout=timeout_s)

    def _run_loop(self) -> None:
        store = self._store_factory()
        try:
            while not self._stop.is_set():
                self.tick(store)
                self._stop.wait(self._sched.tick_s)
        finally:
            store.close()

    def tick(self, store: SQLiteStore) -> dict[str, Any]:
        """Run whichever jobs are due at the current monotonic time; returns what ran."""
        now = self._monotonic()
        relay = build_relay(store, self._config)
        ran: dict[str, Any] = {}

        if now >= self._next_stale_at:
            self._next_stale_at = now + float(self._sched.stale_interval_s)
            try:
                ran["stale_connections"] = relay.reaper.cleanup_stale_connections()
                ran["abandoned_commands"] = relay.reaper.reclaim_abandoned_commands()
                self._runs["stale"] += 1
            except Exception:
                self._runs["failed"] += 1
                LOGGER.exception("Reaper stale sweep failed; retrying next interval")

        if now >= self._next_purge_at:
            self._next_purge_at = now + float(self._sched.purge_interval_s)
            try:
                deleted, rounds = relay.reaper.purge_until_empty()
                ran["deleted_records"] = deleted
                ran["purge_rounds"] = rounds
                self._runs["purge"] += 1
            except Exception:
                self._runs["failed"] += 1
                LOGGER.exception("Reaper retention purge failed; retrying next interval")

        if ran:
            self._last_report = {"ts": store.now(), **ran}
        return ran
