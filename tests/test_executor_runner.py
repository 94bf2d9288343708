from __future__ import annotations

import dataclasses
from typing import Any

import httpx
import pytest

from cmdrelay.executor.client import RelayAuthError, RelayClient, RelayClientError
from cmdrelay.executor.runner import ExecutorRunner, SeenCommands, backoff_delay
from cmdrelay.executor.shell import ExecutionResult


class FakeClient:
    def __init__(self) -> None:
        self.pending: list[dict[str, Any]] = []
        self.claimed: set[str] = set()
        self.results: dict[str, dict[str, Any]] = {}
        self.connects = 0
        self.disconnected: list[str] = []
        self.heartbeat_reply: dict[str, Any] = {"success": True}
        self.submit_failures = 0
        self.polls = 0
        self.on_poll = None

    def connect(self, *, name: str, mode: str, metadata: dict[str, str] | None = None, client_version: str | None = None) -> str:
        self.connects += 1
        return f"conn-{self.connects}"

    def heartbeat(self, connection_id: str) -> dict[str, Any]:
        return dict(self.heartbeat_reply)

    def disconnect(self, connection_id: str) -> dict[str, Any]:
        self.disconnected.append(connection_id)
        return {"success": True}

    def poll(self, connection_id: str, *, limit: int | None = None) -> list[dict[str, Any]]:
        self.polls += 1
        if self.on_poll is not None:
            self.on_poll(self.polls)
        return [c for c in self.pending if c["command_id"] not in self.results]

    def mark_executing(self, command_id: str) -> dict[str, Any]:
        if command_id in self.results:
            return {"success": False, "error": "completed"}
        created = command_id not in self.claimed
        self.claimed.add(command_id)
        return {"success": True, "created": created}

    def submit_result(self, command_id: str, *, stdout: str, stderr: str, exit_code: int, duration_ms: int) -> dict[str, Any]:
        if self.submit_failures > 0:
            self.submit_failures -= 1
            raise RelayClientError("relay down")
        created = command_id not in self.results
        self.results.setdefault(command_id, {"stdout": stdout, "stderr": stderr, "exit_code": exit_code})
        return {"success": True, "created": created}


class FakeShell:
    mode = "dangerous"

    def __init__(self) -> None:
        self.ran: list[dict[str, Any]] = []
        self.closed = False

    def run(self, command: str, *, env=None, cwd=None, timeout_s=None) -> ExecutionResult:
        self.ran.append({"command": command, "env": env, "cwd": cwd, "timeout_s": timeout_s})
        return ExecutionResult(stdout=f"ran {command}", stderr="", exit_code=0, duration_ms=3)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def exec_config(config):
    return dataclasses.replace(
        config.executor,
        poll_interval_s=0.0,
        heartbeat_interval_s=3600.0,
        backoff_initial_s=0.1,
        backoff_jitter_ratio=0.0,
    )


def _runner(client: FakeClient, shell: FakeShell, exec_config) -> ExecutorRunner:
    return ExecutorRunner(client, shell, exec_config, name="laptop", uniform=lambda lo, hi: lo)


def test_handle_command_claims_runs_and_reports(exec_config) -> None:
    client, shell = FakeClient(), FakeShell()
    runner = _runner(client, shell, exec_config)
    runner.connect()

    cmd = {"command_id": "c1", "command": "ls", "env": {"A": "1"}, "cwd": "/tmp", "timeout_seconds": 5.0}
    assert runner.handle_command(cmd) is True
    assert shell.ran == [{"command": "ls", "env": {"A": "1"}, "cwd": "/tmp", "timeout_s": 5.0}]
    assert client.results["c1"]["stdout"] == "ran ls"

    # At-least-once delivery: the same command seen again is skipped locally.
    assert runner.handle_command(cmd) is False
    assert len(shell.ran) == 1


def test_handle_command_skips_commands_claimed_elsewhere(exec_config) -> None:
    client, shell = FakeClient(), FakeShell()
    client.claimed.add("c1")
    runner = _runner(client, shell, exec_config)
    runner.connect()

    assert runner.handle_command({"command_id": "c1", "command": "ls"}) is False
    assert shell.ran == []
    assert runner.stats["skipped"] == 1


def test_submit_result_is_retried(exec_config) -> None:
    client, shell = FakeClient(), FakeShell()
    client.submit_failures = 2
    runner = _runner(client, shell, exec_config)
    runner.connect()

    assert runner.handle_command({"command_id": "c1", "command": "ls"}) is True
    assert "c1" in client.results


def test_heartbeat_rejection_triggers_reconnect(exec_config) -> None:
    client, shell = FakeClient(), FakeShell()
    runner = _runner(client, shell, exec_config)
    runner.connect()
    assert runner.heartbeat_once() is True

    client.heartbeat_reply = {"success": False, "error": "disconnected"}
    assert runner.heartbeat_once() is False

    # Transport failures are not a reason to re-register.
    class Flaky(FakeClient):
        def heartbeat(self, connection_id: str) -> dict[str, Any]:
            raise RelayClientError("timeout")

    flaky = _runner(Flaky(), FakeShell(), exec_config)
    flaky.connect()
    assert flaky.heartbeat_once() is True


def test_run_loop_executes_pending_commands_and_disconnects(exec_config) -> None:
    client, shell = FakeClient(), FakeShell()
    client.pending = [
        {"command_id": "c1", "command": "echo 1"},
        {"command_id": "c2", "command": "echo 2"},
    ]
    runner = _runner(client, shell, exec_config)

    def on_poll(n: int) -> None:
        if n == 2:
            client.heartbeat_reply = {"success": False, "error": "disconnected"}
            runner.heartbeat_once()
        if n >= 3:
            runner.stop()

    client.on_poll = on_poll
    assert runner.run() == 0

    assert [r["command"] for r in shell.ran] == ["echo 1", "echo 2"]
    assert runner.stats["executed"] == 2
    assert runner.stats["reconnects"] == 1
    assert client.connects == 2
    assert client.disconnected == ["conn-2"]
    assert shell.closed is True


def test_run_returns_error_code_on_bad_token(exec_config) -> None:
    class Rejecting(FakeClient):
        def connect(self, **_kwargs: Any) -> str:
            raise RelayAuthError("Invalid or missing token.", status_code=401)

    client, shell = Rejecting(), FakeShell()
    runner = _runner(client, shell, exec_config)
    assert runner.run() == 1
    assert client.disconnected == []


def test_backoff_delay_doubles_caps_and_jitters() -> None:
    assert backoff_delay(1, initial_s=1.0, max_s=30.0, jitter_ratio=0.0) == 1.0
    assert backoff_delay(3, initial_s=1.0, max_s=30.0, jitter_ratio=0.0) == 4.0
    assert backoff_delay(10, initial_s=1.0, max_s=30.0, jitter_ratio=0.0) == 30.0

    bounds = backoff_delay(2, initial_s=1.0, max_s=30.0, jitter_ratio=0.2, uniform=lambda lo, hi: (lo, hi))
    assert bounds == pytest.approx((1.6, 2.4))


def test_seen_commands_evicts_oldest() -> None:
    seen = SeenCommands(capacity=2)
    seen.add("a")
    seen.add("b")
    seen.add("a")
    seen.add("c")
    assert "a" in seen
    assert "c" in seen
    assert "b" not in seen
    assert len(seen) == 2


def _mock_client(handler) -> RelayClient:
    return RelayClient("crt_test", base_url="http://relay.test", transport=httpx.MockTransport(handler))


def test_relay_client_sends_bearer_and_parses_commands() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path.endswith("/connect"):
            return httpx.Response(200, json={"success": True, "owner_id": "alice", "connection_id": "conn-1"})
        return httpx.Response(200, json={"commands": [{"command_id": "c1", "command": "ls"}]})

    with _mock_client(handler) as client:
        assert client.connect(name="laptop", mode="docker") == "conn-1"
        commands = client.poll("conn-1", limit=5)

    assert commands == [{"command_id": "c1", "command": "ls"}]
    assert seen[0].headers["Authorization"] == "Bearer crt_test"
    assert seen[0].url.path == "/api/v1/executor/connect"
    assert seen[1].url.path == "/api/v1/executor/connections/conn-1/commands"
    assert seen[1].url.params["limit"] == "5"


def test_relay_client_maps_errors() -> None:
    def unauthorized(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"code": "unauthorized", "message": "Invalid or missing token."}})

    with _mock_client(unauthorized) as client:
        with pytest.raises(RelayAuthError) as e:
            client.connect(name="laptop", mode="docker")
    assert e.value.code == "unauthorized"

    def broken(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with _mock_client(broken) as client:
        with pytest.raises(RelayClientError):
            client.heartbeat("conn-1")

    def server_error(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": {"code": "internal", "message": "Internal server error."}})

    with _mock_client(server_error) as client:
        with pytest.raises(RelayClientError) as e2:
            client.mark_executing("c1")
    assert e2.value.status_code == 500
