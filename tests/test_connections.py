from __future__ import annotations

import pytest

from cmdrelay.relay.errors import AuthError, NotFoundError, OwnershipError, ValidationError
from cmdrelay.relay.service import Relay


def test_connect_registers_live_connection(relay: Relay) -> None:
    token = relay.tokens.issue_token("alice").value
    conn = relay.connections.connect(token, "laptop", "dangerous", {"platform": "linux", "arch": "x86_64"})
    assert conn.owner_id == "alice"
    assert conn.status == "connected"

    status = relay.connections.is_connected(conn.connection_id)
    assert status.connected is True
    assert status.mode == "dangerous"
    assert status.metadata == {"platform": "linux", "arch": "x86_64"}

    listed = relay.connections.list_connections("alice")
    assert [c.connection_id for c in listed] == [conn.connection_id]
    assert relay.connections.list_connections("bob") == []


def test_connect_rejects_bad_token_and_bad_arguments(relay: Relay) -> None:
    with pytest.raises(AuthError):
        relay.connections.connect("crt_nope", "laptop", "docker")

    token = relay.tokens.issue_token("alice").value
    with pytest.raises(ValidationError):
        relay.connections.connect(token, "laptop", "vm")
    with pytest.raises(ValidationError):
        relay.connections.connect(token, "   ", "docker")


def test_liveness_window_hides_silent_connections(relay: Relay, clock) -> None:
    token = relay.tokens.issue_token("alice").value
    conn = relay.connections.connect(token, "laptop", "docker")

    clock.advance(29)
    assert relay.connections.is_connected(conn.connection_id).connected is True

    clock.advance(2)
    # Still "connected" in storage, but past the window nobody may treat it as usable.
    row = relay.store.get_connection(connection_id=conn.connection_id)
    assert row["status"] == "connected"
    assert relay.connections.is_connected(conn.connection_id).connected is False
    assert relay.connections.list_connections("alice") == []


def test_heartbeat_extends_liveness(relay: Relay, clock) -> None:
    token = relay.tokens.issue_token("alice").value
    conn = relay.connections.connect(token, "laptop", "docker")

    for _ in range(5):
        clock.advance(20)
        assert relay.connections.heartbeat(token, conn.connection_id).success is True
    assert relay.connections.is_connected(conn.connection_id).connected is True


def test_heartbeat_failures_are_benign(relay: Relay) -> None:
    alice = relay.tokens.issue_token("alice").value
    bob = relay.tokens.issue_token("bob").value
    conn = relay.connections.connect(alice, "laptop", "docker")

    assert relay.connections.heartbeat("crt_nope", conn.connection_id).to_dict() == {
        "success": False,
        "error": "unauthorized",
    }
    assert relay.connections.heartbeat(bob, conn.connection_id).error == "forbidden"
    assert relay.connections.heartbeat(alice, "missing").error == "not_found"

    assert relay.connections.disconnect(alice, conn.connection_id).success is True
    assert relay.connections.heartbeat(alice, conn.connection_id).to_dict() == {
        "success": False,
        "error": "disconnected",
    }


def test_disconnect_is_idempotent_and_owner_scoped(relay: Relay) -> None:
    alice = relay.tokens.issue_token("alice").value
    bob = relay.tokens.issue_token("bob").value
    conn = relay.connections.connect(alice, "laptop", "docker")

    assert relay.connections.disconnect(bob, conn.connection_id).error == "forbidden"
    assert relay.connections.is_connected(conn.connection_id).connected is True

    assert relay.connections.disconnect(alice, conn.connection_id).success is True
    assert relay.connections.disconnect(alice, conn.connection_id).success is True
    assert relay.connections.is_connected(conn.connection_id).connected is False

    row = relay.store.get_connection(connection_id=conn.connection_id)
    assert row["status"] == "disconnected"
    assert row["disconnected_at"] is not None


def test_is_connected_hides_other_owners(relay: Relay) -> None:
    alice = relay.tokens.issue_token("alice").value
    conn = relay.connections.connect(alice, "laptop", "docker")
    assert relay.connections.is_connected(conn.connection_id, owner_id="alice").connected is True
    assert relay.connections.is_connected(conn.connection_id, owner_id="bob").to_dict() == {"connected": False}
    assert relay.connections.is_connected("missing").connected is False


def test_authorize_raises_typed_errors(relay: Relay) -> None:
    alice = relay.tokens.issue_token("alice").value
    bob = relay.tokens.issue_token("bob").value
    conn = relay.connections.connect(alice, "laptop", "docker")

    assert relay.connections.authorize(alice, conn.connection_id).connection_id == conn.connection_id
    with pytest.raises(OwnershipError):
        relay.connections.authorize(bob, conn.connection_id)
    with pytest.raises(NotFoundError):
        relay.connections.authorize(alice, "missing")
    with pytest.raises(AuthError):
        relay.connections.authorize(None, conn.connection_id)
