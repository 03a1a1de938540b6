#!/usr/bin/env python3
"""
ScopeGate admin CLI -- bootstrap and inspect an installation from a shell.

Self-registration always grants the default "user" role, so the first super
administrator has to be created here. After that, roles are managed through
the API.

Usage:
  python main.py create-admin --username root --display-name "Root Admin"
  python main.py roles
  python main.py roles --json
  python main.py check USER_ID approve payroll --department eng
  python main.py --database-url sqlite:///./other.db roles

Environment variables:
  DATABASE_URL    Store location (default: sqlite file next to auth/).
  ADMIN_PASSWORD  Password for create-admin. Prompted for when unset.
"""

from __future__ import annotations

import argparse
import getpass
import json
import os
import sys
from typing import Optional

from auth.catalog import SUPER_LEVEL, RoleCatalog
from auth.errors import AuthError, DuplicateIdentity, InvalidRequest, NotFound
from auth.models import Role, User
from auth.permissions import AccessContext, Actor, PermissionEngine
from auth.roles import load_catalog
from auth.store import UserStore
from auth.tokens import MAX_PASSWORD_BYTES, hash_password, password_too_long
from core.config import get_settings

_MIN_PASSWORD = 8
_SUPER_ROLE_ID = "super_admin"


def create_admin(
    store: UserStore,
    catalog: RoleCatalog,
    username: str,
    display_name: str,
    password: str,
    email: Optional[str] = None,
) -> User:
    """Create a verified super administrator. Raises AuthError on bad input or a taken identifier."""
    username = username.strip()
    email = email.strip().lower() if email else None
    if not username:
        raise InvalidRequest("Username is required.")
    if len(password) < _MIN_PASSWORD:
        raise InvalidRequest(f"Password must be at least {_MIN_PASSWORD} characters.")
    if password_too_long(password):
        raise InvalidRequest(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")
    role = catalog.get(_SUPER_ROLE_ID)
    if role is None or role.level != SUPER_LEVEL:
        raise NotFound("The super_admin role is missing from the catalog.")
    if store.find_existing(email=email, username=username) is not None:
        raise DuplicateIdentity()
    user = User(
        display_name=display_name.strip() or username,
        role_id=role.id,
        username=username,
        email=email,
        hashed_password=hash_password(password),
        is_verified=True,
    )
    return store.create_user(user)


def format_roles(roles: list[Role]) -> str:
    """Render roles as a fixed-width table, highest level first."""
    lines = [f"  {'LEVEL':<6}{'ID':<22}{'NAME':<24}MODULES", "  " + "─" * 70]
    for role in sorted(roles, key=lambda r: (-r.level, r.id)):
        marker = "" if role.is_system else " (custom)"
        lines.append(f"  {role.level:<6}{role.id:<22}{role.name + marker:<24}{', '.join(role.modules) or '-'}")
    return "\n".join(lines)


def _roles_json(roles: list[Role]) -> str:
    return json.dumps(
        [
            {
                "id": r.id,
                "name": r.name,
                "level": r.level,
                "modules": list(r.modules),
                "permissions": [str(p) for p in r.permissions],
                "is_system": r.is_system,
            }
            for r in sorted(roles, key=lambda r: (-r.level, r.id))
        ],
        indent=2,
    )


def _read_password() -> str:
    password = os.environ.get("ADMIN_PASSWORD")
    if password:
        return password
    first = getpass.getpass("  Password: ")
    if first != getpass.getpass("  Repeat password: "):
        raise InvalidRequest("Passwords do not match.")
    return first


def _cmd_create_admin(args: argparse.Namespace, store: UserStore, catalog: RoleCatalog) -> int:
    user = create_admin(store, catalog, args.username, args.display_name or "", _read_password(), email=args.email)
    print(f"  Created super admin '{user.username}' ({user.id}).")
    return 0


def _cmd_roles(args: argparse.Namespace, store: UserStore, catalog: RoleCatalog) -> int:
    roles = list(catalog.values())
    print(_roles_json(roles) if args.json else format_roles(roles))
    return 0


def _cmd_check(args: argparse.Namespace, store: UserStore, catalog: RoleCatalog) -> int:
    """Exit 0 when allowed, 1 when denied."""
    user = store.get_by_id(args.user_id)
    if user is None:
        raise NotFound()
    actor = Actor(user_id=user.id, role_id=user.role_id, department_id=user.department_id, team_id=user.team_id)
    context = AccessContext(target_user_id=args.owner, target_department=args.department, target_team=args.team)
    allowed = PermissionEngine(catalog).has_permission(actor, args.action, args.resource, context)
    print(f"  {'ALLOW' if allowed else 'DENY'}  {user.role_id} {args.action}:{args.resource}")
    return 0 if allowed else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scopegate",
        description="Bootstrap and inspect a ScopeGate installation.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ADMIN_PASSWORD=... python main.py create-admin --username root
  python main.py roles --json
  python main.py check 3f2a... read employee --department eng
        """,
    )
    parser.add_argument(
        "--database-url",
        metavar="URL",
        default=None,
        help="SQLAlchemy database URL (default: DATABASE_URL or the bundled sqlite file)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    admin = sub.add_parser("create-admin", help="Create a super administrator account")
    admin.add_argument("--username", required=True, help="Login name for the new account")
    admin.add_argument("--display-name", default=None, help="Name shown in the UI (default: the username)")
    admin.add_argument("--email", default=None, help="Optional email address")
    admin.set_defaults(handler=_cmd_create_admin)

    roles = sub.add_parser("roles", help="List the role catalog")
    roles.add_argument("--json", action="store_true", help="Output structured JSON")
    roles.set_defaults(handler=_cmd_roles)

    check = sub.add_parser("check", help="Evaluate one permission for a stored user")
    check.add_argument("user_id", metavar="USER_ID")
    check.add_argument("action", metavar="ACTION")
    check.add_argument("resource", metavar="RESOURCE")
    check.add_argument("--owner", metavar="USER_ID", default=None, help="Owner of the target object")
    check.add_argument("--department", default=None, help="Department of the target object")
    check.add_argument("--team", default=None, help="Team of the target object")
    check.set_defaults(handler=_cmd_check)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "handler", None):
        parser.print_help()
        return 2

    store = UserStore(args.database_url or get_settings().database_url)
    try:
        catalog = load_catalog(store)
        return args.handler(args, store, catalog)
    except AuthError as exc:
        print(f"  [!] {exc.message}", file=sys.stderr)
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
