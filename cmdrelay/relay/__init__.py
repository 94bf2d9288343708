"""Command relay core.

This layer owns the relay semantics:
- per-owner bearer tokens
- executor connections and derived liveness
- the per-connection FIFO command queue and its forward-only state machine
- write-once command results
- scheduled reclamation of stale state (the reaper)

Every component receives its `SQLiteStore` explicitly; nothing here opens storage on its own,
so the HTTP layer, the CLI and the scheduler can share the same logic.
"""

from cmdrelay.relay.commands import CommandQueue
from cmdrelay.relay.connections import ConnectionRegistry
from cmdrelay.relay.errors import (
    AuthError,
    ConflictError,
    NotFoundError,
    OwnershipError,
    RelayError,
    ValidationError,
)
from cmdrelay.relay.liveness import is_live
from cmdrelay.relay.reaper import Reaper
from cmdrelay.relay.results import ResultStore
from cmdrelay.relay.service import Relay, build_relay
from cmdrelay.relay.tokens import TokenStore

__all__ = [
    "AuthError",
    "CommandQueue",
    "ConflictError",
    "ConnectionRegistry",
    "NotFoundError",
    "OwnershipError",
    "Reaper",
    "Relay",
    "RelayError",
    "ResultStore",
    "TokenStore",
    "ValidationError",
    "build_relay",
    "is_live",
]
