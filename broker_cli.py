import argparse
import sys
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_status(status: dict) -> None:
    if not status:
        print("No broker status available.")
        return
    if status.get("installed"):
        print(f"Claude CLI: {status.get('version') or 'installed'}")
    else:
        print("Claude CLI: not installed")
    if status.get("authenticated"):
        print(f"Account: {status.get('account') or 'unknown'}")
    elif status.get("installed"):
        print("Account: not authenticated")
    print(f"Slots: {status.get('active_slots', 0)}/{status.get('capacity', 0)} active, {status.get('queued', 0)} queued")
    if status.get("error"):
        print(f"Error: {status['error']}")


def run_status(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/api/cli/status"), timeout=15)
        if resp.status_code >= 400:
            print(f"Failed to fetch status: HTTP {resp.status_code}")
            return 1
        _print_status(resp.json())
    return 0


def run_query(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    options = {}
    if args.max_tokens:
        options["max_tokens"] = args.max_tokens
    if args.timeout:
        options["timeout_s"] = args.timeout
    payload = {"prompt": args.prompt, "options": options}
    # Leave headroom over the request's own deadline for queueing.
    http_timeout = (args.timeout or 120) + 30
    with httpx.Client() as client:
        resp = client.post(_join_url(base, "/api/cli/query"), json=payload, timeout=http_timeout)
        if resp.status_code >= 400:
            print(f"Query failed: HTTP {resp.status_code}")
            return 1
        data = resp.json()
    if not data.get("success"):
        print(f"Query failed ({data.get('error_kind')}): {data.get('error')}")
        return 1
    print(data.get("content") or "")
    return 0


def run_cancel(args: argparse.Namespace) -> int:
    base = args.base_url or DEFAULT_API_BASE
    with httpx.Client() as client:
        resp = client.post(_join_url(base, f"/api/cli/cancel/{args.request_id}"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to cancel: HTTP {resp.status_code}")
            return 1
        data = resp.json()
    if data.get("cancelled"):
        print(f"Cancelled {args.request_id}")
    else:
        print(f"No active request {args.request_id}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="procbroker CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("status", help="Show CLI availability and slot usage")

    query = subparsers.add_parser("query", help="Run one prompt through the broker")
    query.add_argument("prompt", help="Prompt text")
    query.add_argument("--max-tokens", type=int, default=None, help="Output token cap")
    query.add_argument("--timeout", type=float, default=None, help="Request timeout in seconds")

    cancel = subparsers.add_parser("cancel", help="Cancel a queued or running request")
    cancel.add_argument("request_id", help="Request id")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        if args.command == "status":
            return run_status(args)
        if args.command == "query":
            return run_query(args)
        if args.command == "cancel":
            return run_cancel(args)
    except httpx.HTTPError as exc:
        print(f"Request failed: {exc}")
        return 1
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
