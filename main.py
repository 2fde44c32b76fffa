#!/usr/bin/env python3
"""
Aperture Auth -- operator command line.

Usage:
  python main.py ensure-admin --email owner@studio.example --password 'long-passphrase'
  ADMIN_EMAIL=owner@studio.example ADMIN_PASSWORD=... python main.py ensure-admin

ensure-admin creates a verified, active admin account, or promotes,
reactivates and re-passwords an existing one. Use it to bootstrap a fresh
workspace or to recover from a lockout. No email is sent.

Environment variables (see core/config.py):
  DATABASE_URL     SQLAlchemy URL of the auth database
  ADMIN_EMAIL      Default for --email
  ADMIN_PASSWORD   Default for --password
"""

import argparse
import logging
import sys
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from auth.directory import UserDirectoryGuard
from auth.errors import AuthError
from auth.mailer import LogFileMailer
from auth.store import UserStore
from core.config import get_settings

logger = logging.getLogger("aperture.cli")


def ensure_admin(email: str, password: str, database_url: str, mail_log_dir: str, base_url: str) -> int:
    """Run the ensure-admin operation and report the outcome. Returns an exit code."""
    store = UserStore(database_url)
    try:
        directory = UserDirectoryGuard(store, LogFileMailer(mail_log_dir), base_url)
        user, created = directory.ensure_admin(email, password)
    except AuthError as e:
        print(f"  [!] {e.message}")
        return 1
    except SQLAlchemyError as e:
        logger.exception("ensure-admin failed against the database")
        print(f"  [!] Database error: {e.__class__.__name__}")
        return 1
    finally:
        store.close()

    action = "Created" if created else "Updated"
    print(f"  {action} admin {user.email} (id {user.id}).")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="aperture-auth",
        description="Operator tasks for the Aperture Studio CRM auth database.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py ensure-admin --email owner@studio.example --password 'long-passphrase'
  ADMIN_EMAIL=owner@studio.example ADMIN_PASSWORD=... python main.py ensure-admin
        """,
    )
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")

    ensure = subparsers.add_parser(
        "ensure-admin",
        help="Create or restore an active, verified admin account",
    )
    ensure.add_argument(
        "--email",
        metavar="EMAIL",
        default=None,
        help="Admin email address (default: ADMIN_EMAIL)",
    )
    ensure.add_argument(
        "--password",
        metavar="PASSWORD",
        default=None,
        help="Admin password, at least 8 characters (default: ADMIN_PASSWORD)",
    )
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    settings = get_settings()
    email = args.email or settings.admin_email
    password = args.password or settings.admin_password
    if not email or not password:
        print("  [!] An email and a password are required (flags or ADMIN_EMAIL / ADMIN_PASSWORD).")
        return 1

    return ensure_admin(
        email,
        password,
        database_url=settings.database_url,
        mail_log_dir=settings.mail_log_dir,
        base_url=settings.app_base_url,
    )


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    sys.exit(main())
