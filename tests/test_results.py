from __future__ import annotations

from cmdrelay.relay.service import Relay


def _executing_command(relay: Relay, command_id: str = "c1") -> str:
    token = relay.tokens.issue_token("alice").value
    conn = relay.connections.connect(token, "laptop", "dangerous")
    relay.commands.enqueue_command("alice", conn.connection_id, command_id, "echo hi")
    assert relay.commands.mark_executing(token, command_id).success
    return token


def test_submit_result_completes_command(relay: Relay) -> None:
    token = _executing_command(relay)

    out = relay.results.submit_result(token, "c1", "hi\n", "", 0, 12)
    assert out.to_dict() == {"success": True, "created": True}

    lookup = relay.results.get_result("c1")
    assert lookup.found is True
    assert lookup.result is not None
    assert lookup.result.stdout == "hi\n"
    assert lookup.result.exit_code == 0
    assert lookup.result.duration_ms == 12

    cmd = relay.commands.get_command("alice", "c1")
    assert cmd.status == "completed"
    assert cmd.completed_at is not None


def test_first_result_wins(relay: Relay) -> None:
    token = _executing_command(relay)
    assert relay.results.submit_result(token, "c1", "first", "", 0, 1).created is True

    dup = relay.results.submit_result(token, "c1", "second", "boom", 2, 99)
    assert dup.success is True
    assert dup.created is False

    result = relay.results.get_result("c1").result
    assert result.stdout == "first"
    assert result.exit_code == 0


def test_result_for_pending_command_still_completes_it(relay: Relay) -> None:
    token = relay.tokens.issue_token("alice").value
    conn = relay.connections.connect(token, "laptop", "dangerous")
    relay.commands.enqueue_command("alice", conn.connection_id, "c1", "true")

    assert relay.results.submit_result(token, "c1", "", "", 0, 0).created is True
    assert relay.commands.get_command("alice", "c1").status == "completed"
    assert relay.commands.get_pending_commands(token, conn.connection_id) == []


def test_submit_result_rejections_are_benign(relay: Relay) -> None:
    _executing_command(relay)
    bob = relay.tokens.issue_token("bob").value
    alice = relay.tokens.issue_token("alice").value

    assert relay.results.submit_result(bob, "c1", "x", "", 0, 1).to_dict() == {"success": False, "error": "forbidden"}
    assert relay.results.submit_result("crt_nope", "c1", "x", "", 0, 1).error == "unauthorized"
    assert relay.results.submit_result(alice, "missing", "x", "", 0, 1).error == "not_found"
    assert relay.results.submit_result(alice, "c1", "x", "", 0, -5).error == "invalid_argument"
    assert relay.results.submit_result(alice, "c1", "x", "", "zero", 1).error == "invalid_argument"
    assert relay.results.submit_result(alice, "c1", "x", "", 0, None).error == "invalid_argument"
    assert relay.results.get_result("c1").found is False

    assert relay.results.submit_result(alice, "c1", "x", "", "2", 7.0).created is True
    stored = relay.results.get_result("c1").result
    assert stored is not None
    assert (stored.exit_code, stored.duration_ms) == (2, 7)


def test_get_result_missing_is_not_an_error(relay: Relay) -> None:
    assert relay.results.get_result("nope").to_dict() == {"found": False}


def test_delete_result_is_owner_scoped(relay: Relay) -> None:
    token = _executing_command(relay)
    relay.results.submit_result(token, "c1", "hi", "", 0, 1)

    assert relay.results.delete_result("bob", "c1") is False
    assert relay.results.get_result("c1").found is True

    assert relay.results.delete_result("alice", "c1") is True
    assert relay.results.get_result("c1").found is False
    assert relay.results.delete_result("alice", "c1") is False

    # Deleting the consumed result does not reopen the command.
    assert relay.commands.get_command("alice", "c1").status == "completed"
    assert relay.commands.mark_executing(token, "c1").error == "completed"
