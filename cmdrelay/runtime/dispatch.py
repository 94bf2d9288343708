from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable

from cmdrelay.relay.errors import NotFoundError
from cmdrelay.relay.service import Relay
from cmdrelay.relay.types import Result


LOGGER = logging.getLogger(__name__)


class DispatchTimeoutError(TimeoutError):
    def __init__(self, command_id: str, waited_s: float) -> None:
        super().__init__(f"No result for command {command_id} after {waited_s:.1f}s")
        self.command_id = command_id
        self.waited_s = waited_s


class CommandDispatcher:
    """Producer-side helper: enqueue a command and wait for its result.

    The relay never pushes, so waiting means polling `get_result`. The poll interval starts small
    and doubles up to `max_poll_s` to keep load bounded for long-running commands.
    """

    def __init__(
        self,
        relay: Relay,
        *,
        result_grace_s: float = 5.0,
        initial_poll_s: float = 0.1,
        max_poll_s: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._relay = relay
        self._result_grace_s = result_grace_s
        self._initial_poll_s = initial_poll_s
        self._max_poll_s = max_poll_s
        self._sleep = sleep
        self._monotonic = monotonic

    def submit(
        self,
        owner_id: str,
        connection_id: str,
        command: str,
        *,
        env: dict[str, Any] | None = None,
        cwd: str | None = None,
        timeout_s: float = 30.0,
        require_live: bool = True,
        command_id: str | None = None,
    ) -> str:
        """Enqueue and return the command id without waiting."""
        if require_live and not self._relay.connections.is_connected(connection_id, owner_id=owner_id).connected:
            raise NotFoundError("Connection is not connected.", details={"connection_id": connection_id})
        cmd = self._relay.commands.enqueue_command(
            owner_id,
            connection_id,
            command_id or str(uuid.uuid4()),
            command,
            env=env,
            cwd=cwd,
            timeout_seconds=timeout_s,
        )
        return cmd.command_id

    def wait_for_result(self, command_id: str, *, timeout_s: float) -> Result:
        deadline = self._monotonic() + float(timeout_s) + float(self._result_grace_s)
        started = self._monotonic()
        delay = self._initial_poll_s
        while True:
            lookup = self._relay.results.get_result(command_id)
            if lookup.found and lookup.result is not None:
                return lookup.result
            now = self._monotonic()
            if now >= deadline:
                raise DispatchTimeoutError(command_id, now - started)
            self._sleep(min(delay, max(0.0, deadline - now)))
            delay = min(delay * 2, self._max_poll_s)

    def run(
        self,
        owner_id: str,
        connection_id: str,
        command: str,
        *,
        env: dict[str, Any] | None = None,
        cwd: str | None = None,
        timeout_s: float = 30.0,
        require_live: bool = True,
    ) -> Result:
        """Enqueue, wait, then delete the consumed result."""
        command_id = self.submit(
            owner_id,
            connection_id,
            command,
            env=env,
            cwd=cwd,
            timeout_s=timeout_s,
            require_live=require_live,
        )
        result = self.wait_for_result(command_id, timeout_s=timeout_s)
        try:
            self._relay.results.delete_result(owner_id, command_id)
        except Exception:
            LOGGER.warning("Failed to delete consumed result for command %s", command_id, exc_info=True)
        return result
