#!/usr/bin/env python3
"""
Project Tracker -- command-line entry point.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8080 --reload
  python main.py token issue --user-id 1
  python main.py token inspect <token>

Environment variables:
  AUTH_SECRET   Session signing secret (>= 32 chars). Required in production.
  DATABASE_URL  SQLAlchemy URL for the user and project tables.
"""

import argparse
import sys
from datetime import datetime, timezone

from auth.store import MAX_ROW_ID
from auth.tokens import get_session_codec


def _format_ms(ms: int | float) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat(timespec="seconds")


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("asgi:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def cmd_token_issue(args: argparse.Namespace) -> int:
    """Print a session token for a user id. Useful for curl and local scripts."""
    if not 0 < args.user_id <= MAX_ROW_ID:
        print(f"  [!] --user-id must be an integer between 1 and {MAX_ROW_ID}.", file=sys.stderr)
        return 2
    print(get_session_codec().create(args.user_id))
    return 0


def cmd_token_inspect(args: argparse.Namespace) -> int:
    """Verify a token with the configured secret and print its payload."""
    payload = get_session_codec().decode(args.token)
    if payload is None:
        print("  [!] Token is invalid or expired.", file=sys.stderr)
        return 1
    print(f"  user id : {payload.uid}")
    print(f"  expires : {_format_ms(payload.exp)}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="main.py",
        description="Project Tracker server and session token tools.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the web application with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development)")
    serve.set_defaults(func=cmd_serve)

    token = sub.add_parser("token", help="Issue or inspect session tokens")
    token_sub = token.add_subparsers(dest="token_command", required=True)

    issue = token_sub.add_parser("issue", help="Print a session token for a user")
    issue.add_argument("--user-id", type=int, required=True)
    issue.set_defaults(func=cmd_token_issue)

    inspect = token_sub.add_parser("inspect", help="Verify a token and print its payload")
    inspect.add_argument("token")
    inspect.set_defaults(func=cmd_token_inspect)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
