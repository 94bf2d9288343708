from __future__ import annotations

import logging
from dataclasses import dataclass

from cmdrelay.config.load_config import RelayConfig
from cmdrelay.relay.liveness import is_live
from cmdrelay.relay.results import ResultStore
from cmdrelay.storage.sqlite_store import SQLiteStore


LOGGER = logging.getLogger(__name__)

ABANDONED_EXIT_CODE = -1
ABANDONED_STDERR = "cmdrelay: no result was reported within the command's timeout; no output was received."
ORPHANED_STDERR = "cmdrelay: the connection this command was queued for has closed; the command was not run."


@dataclass(frozen=True)
class CleanupReport:
    stale_connections: int
    abandoned_commands: int
    deleted_records: int
    purge_rounds: int

    def to_dict(self) -> dict[str, int]:
        return {
            "stale_connections": self.stale_connections,
            "abandoned_commands": self.abandoned_commands,
            "deleted_records": self.deleted_records,
            "purge_rounds": self.purge_rounds,
        }


class Reaper:
    """Scheduled maintenance: demotes stale connections and purges expired records.

    Each call works on a bounded, already-filtered slice and every write is guarded by the status
    it expects, so overlapping runs only do less work rather than conflicting.
    """

    def __init__(self, store: SQLiteStore, results: ResultStore, config: RelayConfig) -> None:
        self._store = store
        self._results = results
        self._config = config

    def cleanup_stale_connections(self) -> int:
        now = self._store.now()
        stale_timeout_s = float(self._config.liveness.stale_timeout_s)
        rows = self._store.list_stale_connection_candidates(
            heartbeat_before=now - stale_timeout_s,
            limit=int(self._config.reaper.batch_limit),
        )
        cleaned = 0
        for row in rows:
            if is_live(str(row["status"]), float(row["last_heartbeat"]), now, window_s=stale_timeout_s):
                continue
            if self._store.mark_connection_disconnected(connection_id=str(row["connection_id"])):
                cleaned += 1
        if cleaned:
            LOGGER.info("Reaper marked %d stale connection(s) disconnected", cleaned)
        return cleaned

    def cleanup_old_commands(self) -> int:
        """One bounded purge pass. Returns the number of rows deleted (0 means nothing left)."""
        now = self._store.now()
        limit = int(self._config.reaper.batch_limit)
        completed_before = now - float(self._config.retention.completed_commands_s)

        deleted = 0
        expired = self._store.list_expired_completed_commands(completed_before=completed_before, limit=limit)
        deleted += self._store.delete_commands_with_results(expired)
        deleted += self._store.delete_expired_results(completed_before=completed_before, limit=limit)
        deleted += self._store.delete_old_disconnected_connections(
            before=now - float(self._config.retention.disconnected_connections_s),
            limit=limit,
        )
        if deleted:
            LOGGER.info("Reaper purged %d expired record(s)", deleted)
        return deleted

    def purge_until_empty(self) -> tuple[int, int]:
        """Repeat `cleanup_old_commands` until a pass deletes nothing or the round cap is hit."""
        total = 0
        rounds = 0
        for _ in range(max(1, int(self._config.reaper.purge_max_rounds))):
            rounds += 1
            n = self.cleanup_old_commands()
            total += n
            if n == 0:
                break
        return total, rounds

    def reclaim_abandoned_commands(self) -> int:
        """Finish commands that will never get a real result.

        Two kinds qualify:
        - `executing` commands whose claim is older than their own timeout (or the default) plus a
          grace period. The executor enforces the same timeout, so by then it has either reported
          or never will (e.g. its claim response was lost and it skipped the command).
        - `pending` or `executing` commands whose connection was purged, or has been disconnected
          for longer than connection retention. Executors reconnect under a new id, so nothing
          polls the old queue again.

        Each is completed with a synthetic result, so the state machine still only moves forward,
        a late real result loses under first-write-wins, and the row ages out through the normal
        retention sweep.
        """
        now = self._store.now()
        limit = int(self._config.reaper.batch_limit)
        reclaimed = 0

        stuck = self._store.list_abandoned_command_candidates(
            now=now,
            default_timeout_s=float(self._config.queue.default_command_timeout_s),
            grace_s=float(self._config.reaper.abandoned_grace_s),
            limit=limit,
        )
        for row in stuck:
            if self._finish(row, now=now, stderr=ABANDONED_STDERR):
                reclaimed += 1

        orphaned = self._store.list_orphaned_command_candidates(
            disconnected_before=now - float(self._config.retention.disconnected_connections_s),
            limit=limit,
        )
        for row in orphaned:
            if self._finish(row, now=now, stderr=ORPHANED_STDERR):
                reclaimed += 1

        if reclaimed:
            LOGGER.warning("Reaper completed %d abandoned command(s) with a synthetic result", reclaimed)
        return reclaimed

    def _finish(self, row, *, now: float, stderr: str) -> bool:
        claimed_at = row["claimed_at"]
        duration_ms = int(max(0.0, now - float(claimed_at)) * 1000) if claimed_at is not None else 0
        return self._results.record(
            command_id=str(row["command_id"]),
            owner_id=str(row["owner_id"]),
            stdout="",
            stderr=stderr,
            exit_code=ABANDONED_EXIT_CODE,
            duration_ms=duration_ms,
        )

    def run_cleanup_cycle(self) -> CleanupReport:
        stale = self.cleanup_stale_connections()
        abandoned = self.reclaim_abandoned_commands()
        deleted, rounds = self.purge_until_empty()
        return CleanupReport(
            stale_connections=stale,
            abandoned_commands=abandoned,
            deleted_records=deleted,
            purge_rounds=rounds,
        )
