from __future__ import annotations

from cmdrelay.relay.types import ConnectionState


def is_live(status: str, last_heartbeat: float, now: float, *, window_s: float) -> bool:
    """Return True if a connection is usable at `now`.

    Liveness is never stored. Every read path (listing, status checks, the reaper sweep) calls this
    predicate so the rule stays identical everywhere: the stored status must still be `connected`
    and the last heartbeat must be strictly younger than `window_s`.
    """
    if str(status) != ConnectionState.CONNECTED.value:
        return False
    return (float(now) - float(last_heartbeat)) < float(window_s)
