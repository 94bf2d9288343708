from __future__ import annotations

import argparse
import logging
import os
import platform
import signal
import socket
import sys
from pathlib import Path
from typing import Any

from cmdrelay import __version__
from cmdrelay.config.load_config import ConfigError, load_app_config
from cmdrelay.executor.client import DEFAULT_RELAY_URL, RelayClient
from cmdrelay.executor.runner import ExecutorRunner
from cmdrelay.executor.shell import DEFAULT_IMAGE, DockerShell, LocalShell
from cmdrelay.utils.logging import setup_logging


LOGGER = logging.getLogger(__name__)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Connect this machine to a cmdrelay server and run the commands it queues.",
        epilog=(
            "In docker mode commands run in an isolated container with --network host. "
            "With --dangerous they run directly on this host without isolation."
        ),
    )
    parser.add_argument("--token", default=os.getenv("CMDRELAY_TOKEN", ""), help="Executor token (required).")
    parser.add_argument("--name", default=socket.gethostname(), help="Connection name (default: hostname).")
    parser.add_argument(
        "--relay-url",
        default=os.getenv("CMDRELAY_RELAY_URL", DEFAULT_RELAY_URL),
        help="Relay base URL (default: env CMDRELAY_RELAY_URL).",
    )
    parser.add_argument("--dangerous", action="store_true", help="Run commands directly on the host OS.")
    parser.add_argument("--image", default=DEFAULT_IMAGE, help="Docker image for the sandbox container.")
    parser.add_argument("--container-id", default="", help="Reuse an existing container instead of creating one.")
    parser.add_argument("--config", default="", help="Config TOML (default: env CMDRELAY_CONFIG_PATH or the packaged default.toml).")
    parser.add_argument("--log-level", default=os.getenv("CMDRELAY_LOG_LEVEL", "info"))
    return parser.parse_args(argv)


def _host_metadata() -> dict[str, str]:
    return {
        "platform": sys.platform,
        "arch": platform.machine(),
        "release": platform.release(),
        "hostname": socket.gethostname(),
    }


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    setup_logging(args.log_level)

    token = (args.token or "").strip()
    if not token:
        print("No executor token provided. Use --token or CMDRELAY_TOKEN.", file=sys.stderr)
        return 2

    try:
        config = load_app_config(Path(args.config) if args.config else None)
    except ConfigError as e:
        print(f"Invalid config: {e}", file=sys.stderr)
        return 2
    exec_cfg = config.executor

    metadata: dict[str, Any]
    if args.dangerous:
        shell = LocalShell(max_output_chars=exec_cfg.max_output_chars)
        metadata = _host_metadata()
        LOGGER.warning("DANGEROUS MODE: commands will run directly on this host")
    else:
        shell = DockerShell(
            image=args.image,
            container_id=args.container_id or None,
            max_output_chars=exec_cfg.max_output_chars,
        )
        try:
            shell.check_available()
            container_id = shell.start()
        except Exception as e:
            print(f"Failed to prepare container: {e}", file=sys.stderr)
            return 1
        metadata = {"container_id": container_id, "image": args.image}

    client = RelayClient(token, base_url=args.relay_url, timeout_s=exec_cfg.request_timeout_s)
    runner = ExecutorRunner(
        client,
        shell,
        exec_cfg,
        name=args.name,
        metadata=metadata,
        client_version=__version__,
    )

    def _on_signal(signum: int, _frame: Any) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        runner.stop()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    try:
        return runner.run()
    finally:
        client.close()


if __name__ == "__main__":
    raise SystemExit(main())
