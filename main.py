#!/usr/bin/env python3
"""
PyroAlert auth -- administrative command-line tool.

Usage:
  python main.py create-admin admin@example.com 'a-strong-password'
  python main.py create-admin admin@example.com 'a-strong-password' --name "Ops Admin" --phone "+55 11 91234-5678"
  python main.py purge-tokens
  python main.py revoke-sessions user@example.com
  python main.py --database-url sqlite:///other.db purge-tokens

Environment variables (see core/config.py):
  DATABASE_URL  SQLAlchemy URL of the auth database (default sqlite:///pyroalert_auth.db)
  SECRET_KEY    Required unless DEBUG=true. Not used by these commands, but
                Settings validates it on load.

Run the HTTP API with:  uvicorn api.main:app
"""

import argparse
import logging
import sys
from typing import Optional

from auth.credentials import register_user
from auth.errors import AuthError
from auth.refresh import RefreshTokenStore
from auth.store import UserStore
from core.config import get_settings

logger = logging.getLogger("pyroalert.cli")


def create_admin(
    store: UserStore,
    email: str,
    password: str,
    name: Optional[str] = None,
    id_number: Optional[str] = None,
    phone: Optional[str] = None,
) -> bool:
    """Create an admin account unless the email is already registered.

    Returns True if a user was created, False if it already existed.
    Running it twice is safe, so deploy scripts can call it unconditionally.
    """
    if store.get_by_email(email) is not None:
        print(f"  User {email.strip().lower()} already exists -- nothing to do.")
        return False
    user = register_user(store, email, password, role="admin", name=name, id_number=id_number, phone=phone)
    print(f"  Admin created: {user.email} (id={user.id})")
    return True


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="pyroalert-auth",
        description="Administrative commands for the PyroAlert auth service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin admin@example.com 'a-strong-password'
  python main.py purge-tokens
  python main.py revoke-sessions user@example.com
        """,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        default=None,
        help="SQLAlchemy database URL (default: DATABASE_URL from the environment)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_admin = sub.add_parser("create-admin", help="Create an admin account (idempotent)")
    p_admin.add_argument("email", help="Login email of the admin")
    p_admin.add_argument("password", help="Initial password (8+ characters)")
    p_admin.add_argument("--name", default=None, help="Display name")
    p_admin.add_argument("--id-number", default=None, help="CPF (11 digits) or CNPJ (14 digits)")
    p_admin.add_argument("--phone", default=None, help="Contact phone number")

    sub.add_parser("purge-tokens", help="Delete expired refresh tokens")

    p_revoke = sub.add_parser("revoke-sessions", help="Revoke every refresh token of a user")
    p_revoke.add_argument("email", help="Login email of the user")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if not args.command:
        parser.print_help()
        return 1

    settings = get_settings()
    db_url = args.database_url or settings.database_url

    if args.command == "create-admin":
        store = UserStore(db_url)
        try:
            create_admin(store, args.email, args.password, args.name, args.id_number, args.phone)
        except AuthError as exc:
            print(f"  [!] {exc.description}")
            return 1
        finally:
            store.close()
        return 0

    if args.command == "purge-tokens":
        tokens = RefreshTokenStore(db_url)
        try:
            removed = tokens.purge_expired()
        finally:
            tokens.close()
        print(f"  Purged {removed} expired refresh token(s).")
        logger.info("Purged %d expired refresh tokens", removed)
        return 0

    # revoke-sessions
    store = UserStore(db_url)
    tokens = RefreshTokenStore(db_url)
    try:
        user = store.get_by_email(args.email)
        if user is None:
            print(f"  [!] No user with email {args.email.strip().lower()}.")
            return 1
        count = tokens.revoke_all(user.id)
    finally:
        tokens.close()
        store.close()
    print(f"  Revoked {count} refresh token(s) for {user.email}.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
