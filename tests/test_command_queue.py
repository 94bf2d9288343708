from __future__ import annotations

import dataclasses

import pytest

from cmdrelay.relay.errors import ConflictError, NotFoundError, OwnershipError, ValidationError
from cmdrelay.relay.service import Relay, build_relay


def _executor(relay: Relay, owner_id: str = "alice") -> tuple[str, str]:
    token = relay.tokens.issue_token(owner_id).value
    conn = relay.connections.connect(token, f"{owner_id}-box", "docker")
    return token, conn.connection_id


def test_enqueue_then_poll_returns_pending_in_fifo_order(relay: Relay, clock) -> None:
    token, conn_id = _executor(relay)
    for i in range(3):
        relay.commands.enqueue_command("alice", conn_id, f"c{i}", f"echo {i}")
    # Same clock tick: insertion order still decides.
    relay.commands.enqueue_command("alice", conn_id, "c3", "echo 3")
    clock.advance(1)
    relay.commands.enqueue_command("alice", conn_id, "c4", "echo 4")

    pending = relay.commands.get_pending_commands(token, conn_id)
    assert [c.command_id for c in pending] == ["c0", "c1", "c2", "c3", "c4"]
    assert all(c.status == "pending" for c in pending)

    # Polling is a pure read.
    again = relay.commands.get_pending_commands(token, conn_id)
    assert [c.command_id for c in again] == [c.command_id for c in pending]


def test_enqueue_carries_env_cwd_and_timeout(relay: Relay) -> None:
    token, conn_id = _executor(relay)
    cmd = relay.commands.enqueue_command(
        "alice",
        conn_id,
        "c1",
        "ls",
        env={"FOO": "bar"},
        cwd="/tmp",
        timeout_seconds=5,
    )
    assert cmd.env == {"FOO": "bar"}
    assert cmd.cwd == "/tmp"
    assert cmd.timeout_seconds == 5.0

    (polled,) = relay.commands.get_pending_commands(token, conn_id)
    assert polled.to_dict()["env"] == {"FOO": "bar"}
    assert polled.to_dict()["timeout_seconds"] == 5.0


def test_poll_limit_is_clamped(relay: Relay, config) -> None:
    cfg = dataclasses.replace(config, queue=dataclasses.replace(config.queue, poll_limit_default=2, poll_limit_max=3))
    r = build_relay(relay.store, cfg)
    token, conn_id = _executor(r)
    for i in range(5):
        r.commands.enqueue_command("alice", conn_id, f"c{i}", "true")

    assert len(r.commands.get_pending_commands(token, conn_id)) == 2
    assert len(r.commands.get_pending_commands(token, conn_id, limit=50)) == 3
    assert len(r.commands.get_pending_commands(token, conn_id, limit=0)) == 1


def test_enqueue_requires_owned_connection(relay: Relay) -> None:
    _, conn_id = _executor(relay, "alice")
    with pytest.raises(NotFoundError):
        relay.commands.enqueue_command("alice", "missing", "c1", "ls")
    with pytest.raises(OwnershipError):
        relay.commands.enqueue_command("bob", conn_id, "c1", "ls")


def test_enqueue_allowed_for_offline_connection(relay: Relay, clock) -> None:
    token, conn_id = _executor(relay)
    clock.advance(120)
    assert relay.connections.is_connected(conn_id).connected is False

    relay.commands.enqueue_command("alice", conn_id, "c1", "ls")
    assert [c.command_id for c in relay.commands.get_pending_commands(token, conn_id)] == ["c1"]


def test_enqueue_validates_payload(relay: Relay) -> None:
    _, conn_id = _executor(relay)
    with pytest.raises(ValidationError):
        relay.commands.enqueue_command("alice", conn_id, "c1", "   ")
    with pytest.raises(ValidationError):
        relay.commands.enqueue_command("alice", conn_id, "", "ls")
    with pytest.raises(ValidationError):
        relay.commands.enqueue_command("alice", conn_id, "c1", "ls", env={"BAD-NAME": "x"})
    with pytest.raises(ValidationError):
        relay.commands.enqueue_command("alice", conn_id, "c1", "ls", timeout_seconds=0)
    with pytest.raises(ValidationError):
        relay.commands.enqueue_command("alice", conn_id, "c1", "x" * 100_001)


def test_enqueue_same_id_is_idempotent_only_for_same_payload(relay: Relay) -> None:
    _, conn_id = _executor(relay)
    first = relay.commands.enqueue_command("alice", conn_id, "c1", "ls", cwd="/tmp")
    again = relay.commands.enqueue_command("alice", conn_id, "c1", "ls", cwd="/tmp")
    assert again == first

    with pytest.raises(ConflictError) as e:
        relay.commands.enqueue_command("alice", conn_id, "c1", "rm -rf /tmp/x")
    assert e.value.status_code == 409


def test_poll_with_bad_credentials_returns_empty(relay: Relay) -> None:
    _, conn_id = _executor(relay, "alice")
    bob = relay.tokens.issue_token("bob").value
    relay.commands.enqueue_command("alice", conn_id, "c1", "ls")

    assert relay.commands.get_pending_commands("crt_nope", conn_id) == []
    assert relay.commands.get_pending_commands(bob, conn_id) == []
    assert relay.commands.get_pending_commands(bob, "missing") == []


def test_mark_executing_moves_forward_only(relay: Relay) -> None:
    token, conn_id = _executor(relay)
    relay.commands.enqueue_command("alice", conn_id, "c1", "ls")

    first = relay.commands.mark_executing(token, "c1")
    assert first.success is True and first.created is True
    again = relay.commands.mark_executing(token, "c1")
    assert again.success is True and again.created is False

    assert relay.commands.get_pending_commands(token, conn_id) == []
    cmd = relay.commands.get_command("alice", "c1")
    assert cmd is not None
    assert cmd.status == "executing"
    assert cmd.claimed_at is not None

    relay.results.submit_result(token, "c1", "out", "", 0, 5)
    done = relay.commands.mark_executing(token, "c1")
    assert done.to_dict() == {"success": False, "error": "completed"}
    assert relay.commands.get_command("alice", "c1").status == "completed"


def test_mark_executing_rejects_foreign_or_unknown_commands(relay: Relay) -> None:
    _, conn_id = _executor(relay, "alice")
    bob = relay.tokens.issue_token("bob").value
    relay.commands.enqueue_command("alice", conn_id, "c1", "ls")

    assert relay.commands.mark_executing(bob, "c1").error == "forbidden"
    assert relay.commands.mark_executing(bob, "missing").error == "not_found"
    assert relay.commands.mark_executing(None, "c1").error == "unauthorized"
    assert relay.commands.get_command("alice", "c1").status == "pending"


def test_get_command_is_owner_scoped(relay: Relay) -> None:
    _, conn_id = _executor(relay, "alice")
    relay.commands.enqueue_command("alice", conn_id, "c1", "ls")
    assert relay.commands.get_command("alice", "missing") is None
    with pytest.raises(OwnershipError):
        relay.commands.get_command("bob", "c1")
