from __future__ import annotations

import logging
import random
import threading
from collections import OrderedDict
from typing import Any, Callable, Protocol

from cmdrelay.config.load_config import ExecutorConfig
from cmdrelay.executor.client import RelayAuthError, RelayClient, RelayClientError
from cmdrelay.executor.shell import ExecutionResult


LOGGER = logging.getLogger(__name__)

# Heartbeat errors after which the relay will never accept this connection id again.
_TERMINAL_HEARTBEAT_ERRORS = {"disconnected", "not_found", "forbidden", "unauthorized"}


class Shell(Protocol):
    mode: str

    def run(
        self,
        command: str,
        *,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        timeout_s: float | None = None,
    ) -> ExecutionResult: ...

    def close(self) -> None: ...


def backoff_delay(
    attempt: int,
    *,
    initial_s: float,
    max_s: float,
    jitter_ratio: float,
    uniform: Callable[[float, float], float] = random.uniform,
) -> float:
    """Delay before retry number `attempt` (1-based): doubling from `initial_s`, capped, with jitter."""
    delay = max(0.1, float(initial_s))
    max_delay = max(delay, float(max_s))
    delay = min(delay * (2 ** max(0, int(attempt) - 1)), max_delay)
    ratio = max(0.0, min(1.0, float(jitter_ratio)))
    if ratio > 0.0:
        jitter = delay * ratio
        return uniform(max(0.1, delay - jitter), delay + jitter)
    return delay


class SeenCommands:
    """Bounded LRU of command ids this process has already handled."""

    def __init__(self, capacity: int) -> None:
        self._capacity = max(1, int(capacity))
        self._ids: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, command_id: object) -> bool:
        return command_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, command_id: str) -> None:
        self._ids[command_id] = None
        self._ids.move_to_end(command_id)
        while len(self._ids) > self._capacity:
            self._ids.popitem(last=False)


class ExecutorRunner:
    """Executor main loop.

    One thread polls and runs commands in order; a second thread sends heartbeats. When a
    heartbeat says the connection is gone (e.g. the reaper demoted it, or the token was
    regenerated) the poll thread registers a fresh connection before the next poll.
    """

    def __init__(
        self,
        client: RelayClient,
        shell: Shell,
        config: ExecutorConfig,
        *,
        name: str,
        mode: str | None = None,
        metadata: dict[str, str] | None = None,
        client_version: str | None = None,
        poll_limit: int | None = None,
        uniform: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self._client = client
        self._shell = shell
        self._config = config
        self._name = name
        self._mode = mode or shell.mode
        self._metadata = dict(metadata or {})
        self._client_version = client_version
        self._poll_limit = poll_limit
        self._uniform = uniform

        self._stop = threading.Event()
        self._reconnect = threading.Event()
        self._lock = threading.Lock()
        self._connection_id: str | None = None
        self._heartbeat_thread: threading.Thread | None = None
        self._seen = SeenCommands(config.seen_commands_capacity)
        self.stats = {"executed": 0, "skipped": 0, "reconnects": 0, "poll_failures": 0}

    @property
    def connection_id(self) -> str | None:
        with self._lock:
            return self._connection_id

    def stop(self) -> None:
        self._stop.set()

    def connect(self) -> str:
        """Register with the relay. RelayAuthError propagates: a bad token is fatal."""
        connection_id = self._client.connect(
            name=self._name,
            mode=self._mode,
            metadata=self._metadata,
            client_version=self._client_version,
        )
        with self._lock:
            self._connection_id = connection_id
        self._reconnect.clear()
        LOGGER.info("Connected to relay as %s (mode=%s, connection=%s)", self._name, self._mode, connection_id)
        return connection_id

    def _delay(self, attempt: int) -> float:
        return backoff_delay(
            attempt,
            initial_s=self._config.backoff_initial_s,
            max_s=self._config.backoff_max_s,
            jitter_ratio=self._config.backoff_jitter_ratio,
            uniform=self._uniform,
        )

    def _connect_with_backoff(self) -> bool:
        attempt = 0
        while not self._stop.is_set():
            attempt += 1
            try:
                self.connect()
                return True
            except RelayAuthError:
                raise
            except RelayClientError as e:
                delay = self._delay(attempt)
                LOGGER.warning("Connect attempt %d failed: %s, retrying in %.1fs", attempt, e, delay)
                if self._stop.wait(delay):
                    break
        return False

    # Heartbeat

    def heartbeat_once(self) -> bool:
        """Send one heartbeat. Returns False when the connection must be re-established."""
        connection_id = self.connection_id
        if connection_id is None:
            return False
        try:
            resp = self._client.heartbeat(connection_id)
        except RelayClientError as e:
            LOGGER.warning("Heartbeat failed: %s", e)
            return True
        if resp.get("success"):
            return True
        error = str(resp.get("error") or "")
        if error in _TERMINAL_HEARTBEAT_ERRORS:
            LOGGER.warning("Relay ended connection %s (%s); reconnecting", connection_id, error)
            self._reconnect.set()
            return False
        LOGGER.warning("Heartbeat rejected: %s", error or "unknown error")
        return True

    def _heartbeat_loop(self) -> None:
        interval = float(self._config.heartbeat_interval_s)
        while not self._stop.wait(interval):
            self.heartbeat_once()

    # Commands

    def handle_command(self, cmd: dict[str, Any]) -> bool:
        """Claim, run and report one command. Returns True if it was executed here."""
        command_id = str(cmd.get("command_id") or "")
        if not command_id or command_id in self._seen:
            self.stats["skipped"] += 1
            return False

        claim = self._client.mark_executing(command_id)
        if not claim.get("success") or not claim.get("created", False):
            # Completed, or already claimed; not ours to run. The reaper finishes an unreported claim.
            LOGGER.debug("Skipping command %s: %s", command_id, claim.get("error") or "already executing")
            self._seen.add(command_id)
            self.stats["skipped"] += 1
            return False
        self._seen.add(command_id)

        LOGGER.info("Executing command %s", command_id)
        try:
            result = self._shell.run(
                str(cmd.get("command") or ""),
                env=cmd.get("env") or None,
                cwd=cmd.get("cwd") or None,
                timeout_s=cmd.get("timeout_seconds") or None,
            )
        except Exception as e:
            LOGGER.exception("Command %s failed to run", command_id)
            result = ExecutionResult(stdout="", stderr=str(e), exit_code=1, duration_ms=0)

        self._submit_with_retries(command_id, result)
        self.stats["executed"] += 1
        LOGGER.info("Command %s finished with exit code %d in %dms", command_id, result.exit_code, result.duration_ms)
        return True

    def _submit_with_retries(self, command_id: str, result: ExecutionResult) -> None:
        attempts = max(1, int(self._config.submit_retries))
        for attempt in range(1, attempts + 1):
            try:
                resp = self._client.submit_result(
                    command_id,
                    stdout=result.stdout,
                    stderr=result.stderr,
                    exit_code=result.exit_code,
                    duration_ms=result.duration_ms,
                )
            except RelayClientError as e:
                if attempt == attempts:
                    LOGGER.error("Giving up on result for command %s after %d attempt(s): %s", command_id, attempts, e)
                    return
                delay = self._delay(attempt)
                LOGGER.warning("Result submit for %s failed: %s, retrying in %.1fs", command_id, e, delay)
                if self._stop.wait(delay):
                    return
                continue
            if not resp.get("success"):
                LOGGER.warning("Relay rejected result for command %s: %s", command_id, resp.get("error"))
            elif not resp.get("created", True):
                LOGGER.info("Result for command %s was already recorded", command_id)
            return

    def poll_once(self) -> int:
        """One poll: run every pending command not seen before. Returns how many ran."""
        connection_id = self.connection_id
        if connection_id is None:
            return 0
        ran = 0
        for cmd in self._client.poll(connection_id, limit=self._poll_limit):
            if self._stop.is_set():
                break
            if self.handle_command(cmd):
                ran += 1
        return ran

    # Lifecycle

    def run(self) -> int:
        """Run until `stop()` is called. Returns a process exit code."""
        try:
            if not self._connect_with_backoff():
                self.shutdown()
                return 0
        except RelayAuthError as e:
            LOGGER.error("Relay rejected the token (%s); issue a new token and restart", e)
            self.shutdown()
            return 1

        self._heartbeat_thread = threading.Thread(target=self._heartbeat_loop, name="cmdrelay-heartbeat", daemon=True)
        self._heartbeat_thread.start()

        failures = 0
        try:
            while not self._stop.is_set():
                if self._reconnect.is_set():
                    self.stats["reconnects"] += 1
                    if not self._connect_with_backoff():
                        break
                try:
                    self.poll_once()
                    failures = 0
                    wait_s = float(self._config.poll_interval_s)
                except RelayClientError as e:
                    failures += 1
                    self.stats["poll_failures"] += 1
                    wait_s = self._delay(failures)
                    LOGGER.warning("Poll failed: %s, retrying in %.1fs", e, wait_s)
                self._stop.wait(wait_s)
        except RelayAuthError as e:
            LOGGER.error("Relay rejected the token (%s); stopping", e)
            return 1
        finally:
            self.shutdown()
        return 0

    def shutdown(self) -> None:
        self._stop.set()
        t = self._heartbeat_thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout=5.0)
        connection_id = self.connection_id
        if connection_id is not None:
            try:
                self._client.disconnect(connection_id)
                LOGGER.info("Disconnected connection %s", connection_id)
            except RelayClientError as e:
                LOGGER.warning("Disconnect failed: %s", e)
            with self._lock:
                self._connection_id = None
        self._shell.close()
