#!/usr/bin/env python3
"""
otpauth -- maintenance commands for the credential store.

Usage:
  python main.py purge-tokens
  python main.py revoke-sessions alice@example.com
  python main.py status alice@example.com
  python main.py --db sqlite:///other.db status alice@example.com

Environment variables are read through core.config (DATABASE_URL,
ACCESS_TOKEN_SECRET, REFRESH_TOKEN_SECRET, DEBUG). The HTTP API is served
separately: uvicorn api.main:app
"""

import argparse
import logging
from datetime import datetime, timezone
from typing import Optional

from auth.service import auth_state
from auth.store import UserStore
from auth.tokens import TokenEngine
from core.config import get_settings

logger = logging.getLogger("otpauth.cli")


def _purge_tokens(store: UserStore, args: argparse.Namespace) -> int:
    removed = store.purge_refresh_tokens(datetime.now(timezone.utc))
    logger.info("Purged %d refresh token record(s)", removed)
    print(f"  Purged {removed} unusable refresh token record(s).")
    return 0


def _revoke_sessions(store: UserStore, args: argparse.Namespace) -> int:
    user = store.get_by_email(args.email)
    if user is None:
        print(f"  [!] No user with email '{args.email}'.")
        return 1
    count = TokenEngine(store).revoke_all(user.id)
    print(f"  Revoked {count} active session(s) for {user.email}.")
    return 0


def _status(store: UserStore, args: argparse.Namespace) -> int:
    user = store.get_by_email(args.email)
    if user is None:
        print(f"  [!] No user with email '{args.email}'.")
        return 1
    now = datetime.now(timezone.utc)
    print(f"  User:            {user.email} (id {user.id})")
    print(f"  Name:            {user.name}")
    print(f"  State:           {auth_state(user, now).value}")
    print(f"  Active sessions: {store.count_active_refresh_tokens(user.id, now)}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="otpauth",
        description="Maintenance commands for the otpauth credential store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py purge-tokens
  python main.py revoke-sessions alice@example.com
  python main.py status alice@example.com
        """,
    )
    parser.add_argument(
        "--db",
        metavar="URL",
        default=None,
        help="SQLAlchemy database URL (default: DATABASE_URL setting)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    purge = sub.add_parser("purge-tokens", help="Delete revoked and expired refresh token records")
    purge.set_defaults(func=_purge_tokens)

    revoke = sub.add_parser("revoke-sessions", help="Revoke every active session of a user")
    revoke.add_argument("email", help="Account email address")
    revoke.set_defaults(func=_revoke_sessions)

    status = sub.add_parser("status", help="Show verification state and active session count")
    status.add_argument("email", help="Account email address")
    status.set_defaults(func=_status)

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 2

    logging.basicConfig(level=get_settings().log_level.upper(), format="%(levelname)-5s %(name)s %(message)s")
    store = UserStore(args.db)
    try:
        return args.func(store, args)
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
