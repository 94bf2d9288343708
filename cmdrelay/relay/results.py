from __future__ import annotations

import logging
from typing import Any

from cmdrelay.relay.commands import CommandQueue
from cmdrelay.relay.errors import RelayError, ValidationError
from cmdrelay.relay.types import Outcome, Result, ResultLookup
from cmdrelay.storage.sqlite_store import SQLiteStore


LOGGER = logging.getLogger(__name__)


def row_to_result(row: Any) -> Result:
    return Result(
        command_id=str(row["command_id"]),
        owner_id=str(row["owner_id"]),
        stdout=str(row["stdout"]),
        stderr=str(row["stderr"]),
        exit_code=int(row["exit_code"]),
        duration_ms=int(row["duration_ms"]),
        completed_at=float(row["completed_at"]),
    )


class ResultStore:
    """Write-once command outputs keyed by command id."""

    def __init__(self, store: SQLiteStore, commands: CommandQueue) -> None:
        self._store = store
        self._commands = commands

    def submit_result(
        self,
        token: str | None,
        command_id: str,
        stdout: str,
        stderr: str,
        exit_code: int,
        duration_ms: int,
    ) -> Outcome:
        """Record a command's output and move the command to completed.

        First write wins: a second submission for the same command id is acknowledged with
        `created=False` and leaves the stored result untouched.
        """
        try:
            cmd = self._commands.authorize_command(token, command_id)
            try:
                exit_code = int(exit_code)
                duration_ms = int(duration_ms)
            except (TypeError, ValueError) as e:
                raise ValidationError("exit_code and duration_ms must be integers.") from e
            if duration_ms < 0:
                raise ValidationError("duration_ms must be >= 0.")
        except RelayError as e:
            LOGGER.debug("Result rejected for command %s: %s", command_id, e.code)
            return Outcome(success=False, error=e.code)

        created = self.record(
            command_id=cmd.command_id,
            owner_id=cmd.owner_id,
            stdout=stdout,
            stderr=stderr,
            exit_code=exit_code,
            duration_ms=duration_ms,
        )
        if not created:
            LOGGER.info("Duplicate result for command %s ignored (first write wins)", cmd.command_id)
        return Outcome(success=True, created=created)

    def record(
        self,
        *,
        command_id: str,
        owner_id: str,
        stdout: str,
        stderr: str,
        exit_code: int,
        duration_ms: int,
    ) -> bool:
        """Insert the result row and complete the command together. Returns False on a duplicate."""
        completed_at = self._store.now()
        with self._store.transaction(mode="IMMEDIATE"):
            created = self._store.insert_result_once(
                command_id=command_id,
                owner_id=owner_id,
                stdout=str(stdout or ""),
                stderr=str(stderr or ""),
                exit_code=int(exit_code),
                duration_ms=int(duration_ms),
                completed_at=completed_at,
                commit=False,
            )
            # Completing is also applied on a duplicate so a half-finished earlier write converges.
            self._store.mark_command_completed(command_id=command_id, completed_at=completed_at, commit=False)
        return created

    def get_result(self, command_id: str) -> ResultLookup:
        row = self._store.get_result(command_id=(command_id or "").strip())
        if row is None:
            return ResultLookup(found=False)
        return ResultLookup(found=True, result=row_to_result(row))

    def delete_result(self, owner_id: str, command_id: str) -> bool:
        """Drop a result once the producer has consumed it. Only the owner's own rows match."""
        deleted = self._store.delete_result(command_id=(command_id or "").strip(), owner_id=owner_id)
        if deleted:
            LOGGER.debug("Result for command %s deleted by owner %s", command_id, owner_id)
        return deleted
