from __future__ import annotations

import argparse
import os

import uvicorn

from cmdrelay.utils.logging import setup_logging


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the cmdrelay HTTP API.")
    parser.add_argument("--host", default=os.getenv("CMDRELAY_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("CMDRELAY_PORT", "8000")))
    parser.add_argument(
        "--reload",
        action=argparse.BooleanOptionalAction,
        default=_env_bool("CMDRELAY_RELOAD", False),
        help="Auto-reload on code changes (development only).",
    )
    parser.add_argument("--log-level", default=os.getenv("CMDRELAY_LOG_LEVEL", "info"))
    parser.add_argument("--log-file", default=None, help="Also write cmdrelay logs to this file.")
    args = parser.parse_args(argv)

    setup_logging(args.log_level, log_file=args.log_file)
    uvicorn.run(
        "cmdrelay.api.app:app",
        host=args.host,
        port=int(args.port),
        reload=bool(args.reload),
        log_level=str(args.log_level).lower(),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
