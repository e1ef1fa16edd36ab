"""POST to a running service's /detect-patterns endpoint (cron hook)."""
from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Sequence

import requests

DEFAULT_URL = "http://127.0.0.1:8000/detect-patterns"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--url",
        type=str,
        default=os.getenv("DETECTION_URL") or DEFAULT_URL,
        help=f"Detection endpoint (default: $DETECTION_URL or {DEFAULT_URL})",
    )
    parser.add_argument(
        "--token",
        type=str,
        default=os.getenv("DETECTION_TOKEN"),
        help="Bearer token sent in the Authorization header",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=120.0,
        help="Request timeout in seconds (default: 120)",
    )
    return parser


def trigger(url: str, token: str | None = None, timeout: float = 120.0) -> dict:
    headers = {"content-type": "application/json"}
    if token:
        headers["authorization"] = f"Bearer {token}"
    response = requests.post(url, headers=headers, timeout=timeout)
    try:
        payload = response.json()
    except ValueError:
        payload = {"success": False, "error": response.text[:300]}
    if not response.ok and payload.get("success", True):
        payload = {"success": False, "error": f"HTTP {response.status_code}"}
    return payload


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    try:
        payload = trigger(args.url, args.token, args.timeout)
    except requests.RequestException as exc:
        print(f"Detection request failed: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(payload, indent=2, ensure_ascii=False))
    return 0 if payload.get("success") else 1


if __name__ == "__main__":
    raise SystemExit(main())
