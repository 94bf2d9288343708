from __future__ import annotations

import sys
import tempfile
from pathlib import Path
from typing import Iterator

import pytest


# Ensure `import cmdrelay...` works when running `pytest` from repo root.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from cmdrelay.config.load_config import RelayConfig, default_config_path, load_app_config  # noqa: E402
from cmdrelay.relay.service import Relay, build_relay  # noqa: E402
from cmdrelay.storage.sqlite_store import SQLiteStore  # noqa: E402


class FakeClock:
    """Wall clock for the store that only moves when a test says so."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.t = float(start)

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += float(seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> RelayConfig:
    return load_app_config(default_config_path())


@pytest.fixture
def store(clock: FakeClock) -> Iterator[SQLiteStore]:
    with tempfile.TemporaryDirectory() as td:
        s = SQLiteStore(f"{td}/relay.db", clock=clock)
        try:
            yield s
        finally:
            s.close()


@pytest.fixture
def relay(store: SQLiteStore, config: RelayConfig) -> Relay:
    return build_relay(store, config)
