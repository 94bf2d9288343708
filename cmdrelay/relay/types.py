from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class CommandState(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"


class ExecutorMode(str, Enum):
    DOCKER = "docker"
    DANGEROUS = "dangerous"
    CUSTOM = "custom"


@dataclass(frozen=True)
class Token:
    value: str
    owner_id: str
    created_at: float


@dataclass(frozen=True)
class Connection:
    connection_id: str
    owner_id: str
    name: str
    mode: str
    metadata: dict[str, str]
    last_heartbeat: float
    status: str
    created_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "name": self.name,
            "mode": self.mode,
            "metadata": dict(self.metadata),
            "last_seen": self.last_heartbeat,
            "status": self.status,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class Command:
    command_id: str
    owner_id: str
    connection_id: str
    command: str
    status: str
    created_at: float
    env: dict[str, str] | None = None
    cwd: str | None = None
    timeout_seconds: float | None = None
    claimed_at: float | None = None
    completed_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "command_id": self.command_id,
            "connection_id": self.connection_id,
            "command": self.command,
            "env": dict(self.env) if self.env is not None else None,
            "cwd": self.cwd,
            "timeout_seconds": self.timeout_seconds,
            "status": self.status,
            "created_at": self.created_at,
            "claimed_at": self.claimed_at,
            "completed_at": self.completed_at,
        }


@dataclass(frozen=True)
class Result:
    command_id: str
    owner_id: str
    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int
    completed_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "command_id": self.command_id,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "completed_at": self.completed_at,
        }


@dataclass(frozen=True)
class Outcome:
    """Benign response for executor-facing calls.

    `success=False` never means "crash": the executor logs `error` and retries on its next tick.
    `created` distinguishes a first write from an idempotent repeat.
    """

    success: bool
    error: str | None = None
    created: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.error is not None:
            payload["error"] = self.error
        if self.success:
            payload["created"] = self.created
        return payload


@dataclass(frozen=True)
class ConnectionStatus:
    connected: bool
    mode: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        if not self.connected:
            return {"connected": False}
        return {"connected": True, "mode": self.mode, "metadata": dict(self.metadata)}


@dataclass(frozen=True)
class ResultLookup:
    found: bool
    result: Result | None = None

    def to_dict(self) -> dict[str, Any]:
        if not self.found or self.result is None:
            return {"found": False}
        payload: dict[str, Any] = {"found": True}
        payload.update(self.result.to_dict())
        return payload
