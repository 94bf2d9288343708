from __future__ import annotations

import os
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Any


class ConfigError(RuntimeError):
    pass


def _as_int(value: Any, *, key: str) -> int:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    try:
        return int(value)
    except Exception as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _as_float(value: Any, *, key: str) -> float:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    try:
        return float(value)
    except Exception as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _as_positive(value: float, *, key: str) -> float:
    if value <= 0:
        raise ConfigError(f"Invalid {key}: must be > 0, got {value!r}")
    return value


def _as_str_list(value: Any, *, key: str) -> tuple[str, ...]:
    if not isinstance(value, list) or not value:
        raise ConfigError(f"Invalid {key}: expected a non-empty list of strings")
    out: list[str] = []
    for item in value:
        s = str(item or "").strip()
        if not s:
            raise ConfigError(f"Invalid {key}: empty entry")
        out.append(s)
    return tuple(out)


def _as_modes(value: Any, *, key: str) -> tuple[str, ...]:
    from cmdrelay.relay.types import ExecutorMode

    modes = _as_str_list(value, key=key)
    known = {m.value for m in ExecutorMode}
    unknown = [m for m in modes if m not in known]
    if unknown:
        raise ConfigError(f"Invalid {key}: unknown mode(s) {unknown!r}, expected a subset of {sorted(known)!r}")
    return modes


@dataclass(frozen=True)
class LivenessConfig:
    window_s: float
    stale_timeout_s: float


@dataclass(frozen=True)
class RetentionConfig:
    completed_commands_s: float
    disconnected_connections_s: float


@dataclass(frozen=True)
class ReaperConfig:
    batch_limit: int
    purge_max_rounds: int
    stale_interval_s: float
    purge_interval_s: float
    abandoned_grace_s: float


@dataclass(frozen=True)
class QueueConfig:
    poll_limit_default: int
    poll_limit_max: int
    max_command_chars: int
    default_command_timeout_s: float
    allowed_modes: tuple[str, ...]


@dataclass(frozen=True)
class ExecutorConfig:
    poll_interval_s: float
    heartbeat_interval_s: float
    backoff_initial_s: float
    backoff_max_s: float
    backoff_jitter_ratio: float
    max_output_chars: int
    seen_commands_capacity: int
    submit_retries: int
    request_timeout_s: float


@dataclass(frozen=True)
class RelayConfig:
    liveness: LivenessConfig
    retention: RetentionConfig
    reaper: ReaperConfig
    queue: QueueConfig
    executor: ExecutorConfig


def default_config_path() -> Path:
    raw = os.getenv("CMDRELAY_CONFIG_PATH", "").strip()
    if raw:
        return Path(raw).expanduser().resolve()
    # Packaged alongside this module so regular (non-editable) installs find it too.
    return Path(str(resources.files("cmdrelay.config").joinpath("default.toml"))).resolve()


def load_app_config(path: Path | None = None) -> RelayConfig:
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    import tomllib

    raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))

    liveness = raw.get("liveness", {})
    retention = raw.get("retention", {})
    reaper = raw.get("reaper", {})
    queue = raw.get("queue", {})
    executor = raw.get("executor", {})

    window_s = _as_positive(_as_float(liveness.get("window_s"), key="liveness.window_s"), key="liveness.window_s")
    stale_timeout_s = _as_positive(
        _as_float(liveness.get("stale_timeout_s"), key="liveness.stale_timeout_s"),
        key="liveness.stale_timeout_s",
    )
    if stale_timeout_s < window_s:
        # The reaper must never demote a connection that read paths still consider live.
        raise ConfigError(
            f"liveness.stale_timeout_s ({stale_timeout_s}) must be >= liveness.window_s ({window_s})"
        )

    poll_limit_default = _as_int(queue.get("poll_limit_default"), key="queue.poll_limit_default")
    poll_limit_max = _as_int(queue.get("poll_limit_max"), key="queue.poll_limit_max")
    if poll_limit_default < 1 or poll_limit_default > poll_limit_max:
        raise ConfigError(
            f"queue.poll_limit_default must be in [1..{poll_limit_max}], got {poll_limit_default}"
        )

    return RelayConfig(
        liveness=LivenessConfig(window_s=window_s, stale_timeout_s=stale_timeout_s),
        retention=RetentionConfig(
            completed_commands_s=_as_float(
                retention.get("completed_commands_s"), key="retention.completed_commands_s"
            ),
            disconnected_connections_s=_as_float(
                retention.get("disconnected_connections_s"), key="retention.disconnected_connections_s"
            ),
        ),
        reaper=ReaperConfig(
            batch_limit=_as_int(reaper.get("batch_limit"), key="reaper.batch_limit"),
            purge_max_rounds=_as_int(reaper.get("purge_max_rounds"), key="reaper.purge_max_rounds"),
            stale_interval_s=_as_float(reaper.get("stale_interval_s"), key="reaper.stale_interval_s"),
            purge_interval_s=_as_float(reaper.get("purge_interval_s"), key="reaper.purge_interval_s"),
            abandoned_grace_s=_as_float(reaper.get("abandoned_grace_s"), key="reaper.abandoned_grace_s"),
        ),
        queue=QueueConfig(
            poll_limit_default=poll_limit_default,
            poll_limit_max=poll_limit_max,
            max_command_chars=_as_int(queue.get("max_command_chars"), key="queue.max_command_chars"),
            default_command_timeout_s=_as_float(
                queue.get("default_command_timeout_s"), key="queue.default_command_timeout_s"
            ),
            allowed_modes=_as_modes(queue.get("allowed_modes"), key="queue.allowed_modes"),
        ),
        executor=ExecutorConfig(
            poll_interval_s=_as_float(executor.get("poll_interval_s"), key="executor.poll_interval_s"),
            heartbeat_interval_s=_as_float(
                executor.get("heartbeat_interval_s"), key="executor.heartbeat_interval_s"
            ),
            backoff_initial_s=_as_float(executor.get("backoff_initial_s"), key="executor.backoff_initial_s"),
            backoff_max_s=_as_float(executor.get("backoff_max_s"), key="executor.backoff_max_s"),
            backoff_jitter_ratio=_as_float(
                executor.get("backoff_jitter_ratio"), key="executor.backoff_jitter_ratio"
            ),
            max_output_chars=_as_int(executor.get("max_output_chars"), key="executor.max_output_chars"),
            seen_commands_capacity=_as_int(
                executor.get("seen_commands_capacity"), key="executor.seen_commands_capacity"
            ),
            submit_retries=_as_int(executor.get("submit_retries"), key="executor.submit_retries"),
            request_timeout_s=_as_float(executor.get("request_timeout_s"), key="executor.request_timeout_s"),
        ),
    )
