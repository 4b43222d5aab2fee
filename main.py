#!/usr/bin/env python3
"""
Member portal auth -- operator CLI.

Usage:
  python main.py create-user alice --email alice@example.com --name "Alice Kim" --role ADMIN
  python main.py set-role alice MEMBER
  python main.py logout-all alice
  python main.py purge-expired

Passwords are read from the terminal (never from argv, which leaks into shell
history and process listings).

Environment variables:
  SECRET_KEY     Required unless DEBUG=true. Must match the running API so
                 purge and logout act on the same fingerprints.
  DATABASE_URL   SQLAlchemy URL of the auth database.
"""

import argparse
import getpass
import sys
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from auth.models import Role, User
from auth.store import SessionStore, UserStore, build_engine
from auth.tokens import hash_password
from core.config import get_settings


def _read_password() -> str:
    password = getpass.getpass("Password: ")
    if len(password) < 8:
        print("  [!] Password must be at least 8 characters.")
        sys.exit(2)
    if password != getpass.getpass("Repeat password: "):
        print("  [!] Passwords do not match.")
        sys.exit(2)
    return password


def _require_user(users: UserStore, username: str) -> User:
    user = users.get_by_username(username)
    if user is None:
        print(f"  [!] No active user named '{username}'.")
        sys.exit(1)
    return user


def cmd_create_user(args: argparse.Namespace, users: UserStore, sessions: SessionStore) -> None:
    conflict = users.find_conflict(args.username, args.email, args.student_number)
    if conflict:
        print(f"  [!] {conflict} is already taken.")
        sys.exit(1)
    user = User(
        username=args.username,
        email=args.email,
        name=args.name,
        student_number=args.student_number,
        role=Role(args.role),
        hashed_password=hash_password(_read_password(), rounds=get_settings().bcrypt_rounds),
    )
    try:
        user_id = users.create_user(user)
    except IntegrityError:
        print("  [!] User was created concurrently by another process.")
        sys.exit(1)
    print(f"  Created {user.role.value} '{user.username}' ({user_id}).")


def cmd_set_role(args: argparse.Namespace, users: UserStore, sessions: SessionStore) -> None:
    user = _require_user(users, args.username)
    users.update_role(user.id, Role(args.role))
    print(f"  '{user.username}' is now {args.role}. Takes effect at their next login or refresh.")


def cmd_logout_all(args: argparse.Namespace, users: UserStore, sessions: SessionStore) -> None:
    user = _require_user(users, args.username)
    removed = sessions.delete_all_for_user(user.id)
    print(f"  Ended {removed} session(s) for '{user.username}'.")


def cmd_purge_expired(args: argparse.Namespace, users: UserStore, sessions: SessionStore) -> None:
    removed = sessions.purge_expired(datetime.now(timezone.utc))
    print(f"  Purged {removed} expired row(s).")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Member portal auth -- account and session administration.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)
    roles = [r.value for r in Role]

    create = sub.add_parser("create-user", help="Create an account (prompts for the password)")
    create.add_argument("username")
    create.add_argument("--email", required=True)
    create.add_argument("--name", required=True)
    create.add_argument("--student-number", default=None)
    create.add_argument("--role", choices=roles, default=Role.GUEST.value)
    create.set_defaults(func=cmd_create_user)

    set_role = sub.add_parser("set-role", help="Change a user's role")
    set_role.add_argument("username")
    set_role.add_argument("role", choices=roles)
    set_role.set_defaults(func=cmd_set_role)

    logout_all = sub.add_parser("logout-all", help="Sign a user out of every device")
    logout_all.add_argument("username")
    logout_all.set_defaults(func=cmd_logout_all)

    purge = sub.add_parser("purge-expired", help="Delete expired sessions and rotation tombstones")
    purge.set_defaults(func=cmd_purge_expired)
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    engine = build_engine(get_settings().database_url)
    try:
        args.func(args, UserStore(engine), SessionStore(engine))
    finally:
        engine.dispose()


if __name__ == "__main__":
    main()
