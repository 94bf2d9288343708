from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from cmdrelay.config.load_config import ConfigError, load_app_config
from cmdrelay.relay.service import build_relay
from cmdrelay.storage.sqlite_store import SQLiteStore
from cmdrelay.utils.logging import setup_logging


LOGGER = logging.getLogger(__name__)

JOBS = ("cycle", "stale-connections", "abandoned-commands", "old-commands")


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one cmdrelay reaper pass (for cron).")
    parser.add_argument("job", nargs="?", default="cycle", choices=JOBS, help="Which job to run (default: cycle).")
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite path (default: env CMDRELAY_SQLITE_PATH or data/relay.db).",
    )
    parser.add_argument("--config", default="", help="Config TOML (default: env CMDRELAY_CONFIG_PATH or the packaged default.toml).")
    parser.add_argument("--log-level", default=os.getenv("CMDRELAY_LOG_LEVEL", "info"))
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    setup_logging(args.log_level)

    try:
        config = load_app_config(Path(args.config) if args.config else None)
    except ConfigError as e:
        print(f"Invalid config: {e}", file=sys.stderr)
        return 2

    store = SQLiteStore(args.db_path or None)
    try:
        reaper = build_relay(store, config).reaper
        if args.job == "stale-connections":
            report = {"cleaned": reaper.cleanup_stale_connections()}
        elif args.job == "abandoned-commands":
            report = {"reclaimed": reaper.reclaim_abandoned_commands()}
        elif args.job == "old-commands":
            deleted, rounds = reaper.purge_until_empty()
            report = {"deleted": deleted, "rounds": rounds}
        else:
            report = reaper.run_cleanup_cycle().to_dict()
    finally:
        store.close()

    LOGGER.info("Reaper %s finished: %s", args.job, report)
    print(json.dumps(report, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
