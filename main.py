#!/usr/bin/env python3
"""
Dim -- account and invite administration for a self-hosted media server.

Usage:
  python main.py serve [--host 127.0.0.1] [--port 8000] [--reload]
  python main.py new-invite
  python main.py list-invites [--json]
  python main.py admin-exists

Environment variables (or .env):
  SECRET_KEY     Token signing key, at least 32 characters. Required unless DEBUG=true.
  DATABASE_URL   SQLAlchemy URL. Defaults to sqlite:///data/dim.db.

new-invite is the way to hand out the first invites on a server whose owner
cannot reach the web UI yet.
"""

import argparse
import json
import sys
from datetime import datetime, timezone
from typing import Optional

from auth.store import UserStore
from core.config import Settings, get_settings
from core.database import Database


def _open_store(settings: Settings) -> UserStore:
    return UserStore(Database(settings.database_url, max_write_attempts=settings.write_retry_limit))


def _cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def _cmd_new_invite(args: argparse.Namespace, settings: Settings) -> int:
    store = _open_store(settings)
    try:
        print(store.create_invite())
    finally:
        store.db.close()
    return 0


def _cmd_list_invites(args: argparse.Namespace, settings: Settings) -> int:
    store = _open_store(settings)
    try:
        invites = store.list_invites()
    finally:
        store.db.close()

    if args.json:
        print(json.dumps([{"id": i.id, "created": i.created, "claimed_by": i.claimed_by} for i in invites], indent=2))
        return 0

    if not invites:
        print("No invites.")
        return 0
    for invite in invites:
        created = datetime.fromtimestamp(invite.created, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")
        status = f"claimed by {invite.claimed_by}" if invite.claimed_by else "open"
        print(f"  {invite.id}  {created}  {status}")
    return 0


def _cmd_admin_exists(args: argparse.Namespace, settings: Settings) -> int:
    """Print yes/no; exit status 0 if an owner exists, 1 otherwise (handy in scripts)."""
    store = _open_store(settings)
    try:
        exists = store.has_users()
    finally:
        store.db.close()
    print("yes" if exists else "no")
    return 0 if exists else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dim",
        description="Dim media server: run the API or administer accounts and invites.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py serve --port 8000
  python main.py new-invite
  python main.py list-invites --json
  DEBUG=true python main.py admin-exists
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development only)")
    serve.set_defaults(handler=_cmd_serve)

    new_invite = sub.add_parser("new-invite", help="Create an invite and print its token")
    new_invite.set_defaults(handler=_cmd_new_invite)

    list_invites = sub.add_parser("list-invites", help="List open and claimed invites")
    list_invites.add_argument("--json", action="store_true", help="Output structured JSON")
    list_invites.set_defaults(handler=_cmd_list_invites)

    admin_exists = sub.add_parser("admin-exists", help="Report whether the owner account exists")
    admin_exists.set_defaults(handler=_cmd_admin_exists)

    return parser


def main(argv: Optional[list[str]] = None, settings: Optional[Settings] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 2
    return args.handler(args, settings or get_settings())


if __name__ == "__main__":
    sys.exit(main())
