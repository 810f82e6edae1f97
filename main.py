"""Entry point for the biliwatch uploader notifier bot."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Final, Sequence

from biliwatch.app import BiliWatcher
from biliwatch.config import ConfigError, load_config

LOGGER = logging.getLogger(__name__)
DEFAULT_CONFIG_PATH: Final[str] = "config.json"


def _log_event(level: int, event: str, **fields: Any) -> None:
    LOGGER.log(level, json.dumps({"event": event, **fields}, default=str, separators=(",", ":"), ensure_ascii=False))


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Notify Telegram chats about a Bilibili uploader's latest video.")
    parser.add_argument(
        "--config",
        default=None,
        help=f"JSON config file or http(s) URL (default: {DEFAULT_CONFIG_PATH} when present)",
    )
    parser.add_argument("--env-file", type=Path, default=None, help="Optional .env file to load")
    args = parser.parse_args(argv)
    if args.config is None and Path(DEFAULT_CONFIG_PATH).is_file():
        args.config = DEFAULT_CONFIG_PATH
    return args


def main(argv: Sequence[str] | None = None) -> int:
    """Load configuration and serve the bot until it is told to stop."""
    args = _parse_args(argv)
    try:
        config = load_config(args.config, args.env_file)
    except ConfigError as exc:
        print(f"biliwatch: {exc}", file=sys.stderr)
        return 2

    app = BiliWatcher(config)
    try:
        app.start()
    except KeyboardInterrupt:
        _log_event(logging.WARNING, "biliwatch.interrupted")
    except Exception as exc:
        _log_event(logging.CRITICAL, "biliwatch.run_failed", error_type=type(exc).__name__, error=str(exc))
        raise
    _log_event(
        logging.INFO,
        "biliwatch.exited",
        authenticated=app.gateway.current_credential().is_authenticated,
        scheduler=app.scheduler.state.value,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
