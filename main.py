#!/usr/bin/env python3
"""
evBlog auth -- administrative command line.

Operates directly on the credential store named by DATABASE_URL (or
--database-url). The web service does not need to be running.

Usage:
  python main.py promote ada@example.com
  python main.py promote ada@example.com --role AUTHOR
  python main.py check-db
  python main.py --database-url sqlite:///other.db check-db

A promoted user's session carries the old role until it refreshes (at most
24 hours), or until they sign out and back in.
"""

import argparse
from typing import Optional

from auth.errors import NotFound
from auth.identity import IdentityResolver
from auth.models import Role, normalize_email
from auth.store import CredentialStore
from core.config import get_settings


def cmd_promote(store: CredentialStore, email: str, role: Role) -> int:
    """Set the role of the user with `email`. Returns a process exit code."""
    user = store.get_user_by_email(email)
    if user is None:
        print(f"  [!] No user found with email {normalize_email(email)}")
        return 1
    if user.role is role:
        print(f"  {user.email} already has role {role.value}.")
        return 0
    try:
        IdentityResolver(store).change_role(user.id, role)
    except NotFound:
        print(f"  [!] User {user.email} disappeared before the update.")
        return 1
    print(f"  {user.email}: {user.role.value} -> {role.value}")
    print("  The change reaches the user's session on its next refresh.")
    return 0


def cmd_check_db(store: CredentialStore) -> int:
    """Print row counts per table and users per role."""
    if not store.ping():
        print("  [!] Database did not answer.")
        return 1
    with store.transaction() as tx:
        counts = tx.table_counts()
        by_role = tx.count_by_role()

    print("Tables")
    print("─" * 40)
    for table, count in counts.items():
        print(f"  {table:<24} {count:>6}")
    print("\nUsers by role")
    print("─" * 40)
    for role, count in by_role.items():
        print(f"  {role.value:<24} {count:>6}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="evblog-auth",
        description="Administrative commands for the evBlog credential store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py promote ada@example.com
  python main.py promote ada@example.com --role AUTHOR
  python main.py check-db
        """,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        default=None,
        help="SQLAlchemy database URL (default: DATABASE_URL from the environment)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    promote = sub.add_parser("promote", help="Change a user's role (default: ADMIN)")
    promote.add_argument("email", metavar="EMAIL", help="Email address of the user to promote")
    promote.add_argument(
        "--role",
        choices=[r.value for r in Role],
        default=Role.ADMIN.value,
        help="Role to assign (default: ADMIN)",
    )

    sub.add_parser("check-db", help="Print table counts and users per role")

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 2

    store = CredentialStore(args.database_url or get_settings().database_url)
    try:
        if args.command == "promote":
            return cmd_promote(store, args.email, Role(args.role))
        return cmd_check_db(store)
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
