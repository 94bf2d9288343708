from __future__ import annotations

from dataclasses import dataclass

from cmdrelay.config.load_config import RelayConfig
from cmdrelay.relay.commands import CommandQueue
from cmdrelay.relay.connections import ConnectionRegistry
from cmdrelay.relay.reaper import Reaper
from cmdrelay.relay.results import ResultStore
from cmdrelay.relay.tokens import TokenStore
from cmdrelay.storage.sqlite_store import SQLiteStore


@dataclass(frozen=True)
class Relay:
    """The relay components wired to one store handle."""

    store: SQLiteStore
    tokens: TokenStore
    connections: ConnectionRegistry
    commands: CommandQueue
    results: ResultStore
    reaper: Reaper


def build_relay(store: SQLiteStore, config: RelayConfig) -> Relay:
    tokens = TokenStore(store)
    connections = ConnectionRegistry(store, tokens, config)
    commands = CommandQueue(store, tokens, connections, config)
    results = ResultStore(store, commands)
    reaper = Reaper(store, results, config)
    return Relay(
        store=store,
        tokens=tokens,
        connections=connections,
        commands=commands,
        results=results,
        reaper=reaper,
    )
