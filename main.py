#!/usr/bin/env python3
"""
LabAccess -- maintenance commands for the identity store.

Usage:
  python main.py seed-roles
  python main.py migrate-roles
  python main.py create-superadmin --email admin@lab.com --name "Admin" --document 123456789

Commands:
  seed-roles          Insert any missing role from the canonical seed. Existing roles are untouched.
  migrate-roles       Reset every role's permission set to the canonical seed.
  create-superadmin   Create the first account of an empty system. The password is read
                      interactively and must pass the strength policy.

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the identity database (default: auth/labaccess.db).
  SECRET_KEY    Required unless DEBUG=true.
"""

import argparse
import getpass
import logging
import sys

from auth.errors import AccessError
from auth.models import SUPER_ADMIN
from auth.service import AccessService
from auth.store import IdentityStore
from core.config import get_settings

logger = logging.getLogger("labaccess.cli")


def _open_store() -> IdentityStore:
    settings = get_settings()
    return IdentityStore(settings.database_url) if settings.database_url else IdentityStore()


def _seed_roles(store: IdentityStore, args: argparse.Namespace) -> int:
    inserted = store.registry.seed()
    print(f"  {inserted} role(s) inserted.")
    return 0


def _migrate_roles(store: IdentityStore, args: argparse.Namespace) -> int:
    store.registry.reset_to_seed()
    for role in store.registry.list_roles():
        print(f"  {role.name}: {', '.join(role.permissions)}")
    return 0


def _create_superadmin(store: IdentityStore, args: argparse.Namespace) -> int:
    if store.count() > 0:
        print("  [!] The system already has users. The first account can only be created once.")
        return 1
    password = getpass.getpass("Password: ")
    if password != getpass.getpass("Repeat password: "):
        print("  [!] Passwords do not match.")
        return 1
    try:
        user = AccessService(store).register(
            None,
            SUPER_ADMIN,
            email=args.email,
            password=password,
            name=args.name,
            document=args.document,
            details={"codigoSeguridad": args.security_code} if args.security_code else {},
        )
    except AccessError as exc:
        print(f"  [!] {exc.message} {exc.detail or ''}".rstrip())
        return 1
    print(f"  Created super_admin {user.email} (id {user.id}).")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="labaccess",
        description="Maintenance commands for the LabAccess identity store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    seed = sub.add_parser("seed-roles", help="Insert missing roles from the canonical seed")
    seed.set_defaults(handler=_seed_roles)

    migrate = sub.add_parser("migrate-roles", help="Reset role permissions to the canonical seed")
    migrate.set_defaults(handler=_migrate_roles)

    create = sub.add_parser("create-superadmin", help="Create the first account of an empty system")
    create.add_argument("--email", required=True)
    create.add_argument("--name", required=True)
    create.add_argument("--document", required=True)
    create.add_argument("--security-code", default=None, help="Optional codigoSeguridad detail")
    create.set_defaults(handler=_create_superadmin)

    args = parser.parse_args()
    if not getattr(args, "handler", None):
        parser.print_help()
        return

    logging.basicConfig(level=logging.INFO, format="%(levelname)-5s %(name)s %(message)s")
    store = _open_store()
    try:
        code = args.handler(store, args)
    finally:
        store.close()
    sys.exit(code)


if __name__ == "__main__":
    main()
