from __future__ import annotations

import logging
import shlex
import subprocess
import time
from dataclasses import dataclass
from typing import Any, Callable


LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 30.0
DEFAULT_MAX_OUTPUT_CHARS = 50_000
TRUNCATION_MARKER = "\n...\n"
TIMEOUT_EXIT_CODE = 124
NOT_FOUND_EXIT_CODE = 127

DEFAULT_IMAGE = "cmdrelay/sandbox:latest"
# Raw sockets, interface control and ptrace for network and debugging tools.
DOCKER_CAPABILITIES = ("NET_RAW", "NET_ADMIN", "SYS_PTRACE")


@dataclass(frozen=True)
class ExecutionResult:
    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int
    timed_out: bool = False


def truncate_output(content: str, max_chars: int = DEFAULT_MAX_OUTPUT_CHARS) -> str:
    """Keep the first quarter and the last three quarters of an oversized output."""
    if len(content) <= max_chars:
        return content
    budget = max(0, max_chars - len(TRUNCATION_MARKER))
    head = budget // 4
    tail = budget - head
    return content[:head] + TRUNCATION_MARKER + (content[-tail:] if tail else "")


def build_shell_command(command: str, *, env: dict[str, str] | None = None, cwd: str | None = None) -> str:
    """Prefix `command` with exports and a `cd`, so the same string works on the host and in a container."""
    full = command
    if cwd and cwd.strip():
        full = f"cd {shlex.quote(cwd)} && {full}"
    if env:
        exports = "; ".join(f"export {k}={shlex.quote(str(v))}" for k, v in env.items())
        full = f"{exports}; {full}"
    return full


def _as_text(raw: Any) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return str(raw)


class _SubprocessShell:
    mode = "dangerous"

    def __init__(
        self,
        *,
        max_output_chars: int = DEFAULT_MAX_OUTPUT_CHARS,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_output_chars = int(max_output_chars)
        self._runner = runner
        self._monotonic = monotonic

    def argv(self, script: str) -> list[str]:
        raise NotImplementedError

    def run(
        self,
        command: str,
        *,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        timeout_s: float | None = None,
    ) -> ExecutionResult:
        timeout = float(timeout_s) if timeout_s else DEFAULT_TIMEOUT_S
        script = build_shell_command(command, env=env, cwd=cwd)
        started = self._monotonic()
        try:
            proc = self._runner(
                self.argv(script),
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout,
            )
            stdout, stderr, code, timed_out = _as_text(proc.stdout), _as_text(proc.stderr), int(proc.returncode), False
        except subprocess.TimeoutExpired as e:
            stdout = _as_text(e.stdout)
            stderr = _as_text(e.stderr) + f"\nCommand timed out after {timeout:g}s"
            code, timed_out = TIMEOUT_EXIT_CODE, True
        except OSError as e:
            stdout, stderr, code, timed_out = "", f"Failed to start shell: {e}", NOT_FOUND_EXIT_CODE, False
        duration_ms = int((self._monotonic() - started) * 1000)
        return ExecutionResult(
            stdout=truncate_output(stdout, self._max_output_chars),
            stderr=truncate_output(stderr, self._max_output_chars),
            exit_code=code,
            duration_ms=max(0, duration_ms),
            timed_out=timed_out,
        )

    def close(self) -> None:
        return None


class LocalShell(_SubprocessShell):
    """Runs commands directly on the host with `bash -c`. No isolation."""

    mode = "dangerous"

    def __init__(self, *, shell: str = "bash", **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._shell = shell

    def argv(self, script: str) -> list[str]:
        return [self._shell, "-c", script]


class DockerShell(_SubprocessShell):
    """Runs commands with `docker exec` inside a long-lived container.

    When no container id is given, `start()` creates one from `image` and `close()` removes it;
    an existing container passed in by id is left alone.
    """

    def __init__(
        self,
        *,
        image: str = DEFAULT_IMAGE,
        container_id: str | None = None,
        capabilities: bool = True,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.image = image
        self.container_id = container_id
        self._capabilities = capabilities
        self._owns_container = False

    @property
    def mode(self) -> str:  # type: ignore[override]
        return "docker" if self.image == DEFAULT_IMAGE else "custom"

    def run_argv(self) -> list[str]:
        argv = ["docker", "run", "-d"]
        if self._capabilities:
            argv.extend(f"--cap-add={cap}" for cap in DOCKER_CAPABILITIES)
        argv.extend(["--network", "host", self.image, "tail", "-f", "/dev/null"])
        return argv

    def check_available(self) -> None:
        try:
            self._runner(["docker", "--version"], capture_output=True, text=True, check=True, timeout=15)
        except (OSError, subprocess.SubprocessError) as e:
            raise RuntimeError("Docker is not available; install Docker or use --dangerous.") from e

    def start(self) -> str:
        if self.container_id:
            return self.container_id
        proc = self._runner(self.run_argv(), capture_output=True, text=True, check=True, timeout=600)
        self.container_id = _as_text(proc.stdout).strip()
        if not self.container_id:
            raise RuntimeError("docker run did not print a container id.")
        self._owns_container = True
        LOGGER.info("Created container %s from %s", self.container_id[:12], self.image)
        return self.container_id

    def argv(self, script: str) -> list[str]:
        if not self.container_id:
            raise RuntimeError("Container not started.")
        return ["docker", "exec", self.container_id, "bash", "-c", script]

    def close(self) -> None:
        if not (self._owns_container and self.container_id):
            return
        try:
            self._runner(["docker", "rm", "-f", self.container_id], capture_output=True, text=True, timeout=60)
            LOGGER.info("Removed container %s", self.container_id[:12])
        except (OSError, subprocess.SubprocessError):
            LOGGER.exception("Failed to remove container %s", self.container_id[:12])
        self._owns_container = False
