"""Run evolution pattern detection in-process and print the JSON report."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db
from engines.pattern_detection import DetectionConfig, run_detection
from env_validation import EnvironmentError, validate_environment

logger = logging.getLogger("run_detection")


def _parse_now(value: str) -> datetime:
    try:
        return db.parse_iso(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid ISO-8601 timestamp: {value!r}") from exc


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="SQLite database path (default: $DB_PATH or data.db)",
    )
    parser.add_argument(
        "--now",
        type=_parse_now,
        default=None,
        help="ISO-8601 reference time for the run (default: current UTC time)",
    )
    parser.add_argument(
        "--cooldown-days",
        type=int,
        default=None,
        help="Skip stagnation, broken-streak, performance and overdue alerts already raised within this many days (default: $ALERT_COOLDOWN_DAYS)",
    )
    parser.add_argument(
        "--max-managers",
        type=int,
        default=None,
        help="Notify at most this many managers per critical alert",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        validate_environment()
        config = DetectionConfig.from_env()
    except EnvironmentError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    if args.cooldown_days is not None:
        if args.cooldown_days < 0:
            logger.error("--cooldown-days must be >= 0")
            return 2
        config.cooldown_days = args.cooldown_days
    if args.max_managers is not None:
        if args.max_managers < 1:
            logger.error("--max-managers must be >= 1")
            return 2
        config.max_managers_per_alert = args.max_managers

    if args.db:
        db.configure(args.db)

    try:
        db.init()
        report = run_detection(now=args.now, config=config)
    except Exception as exc:
        logger.exception("Pattern detection failed")
        print(json.dumps({"success": False, "error": str(exc) or "Unknown error"}))
        return 1

    print(json.dumps(report.to_response(), indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
