from __future__ import annotations

import argparse
import asyncio
import sys

from gatehouse.persistence.db import SessionFactory
from gatehouse.persistence.transactions import retry_transient
from gatehouse.services.roles import build_role_store


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create a role and optionally add users to it")
    parser.add_argument("role_name", help="Role name to create")
    parser.add_argument("--description", default=None, help="Optional role description")
    parser.add_argument(
        "--user",
        dest="users",
        action="append",
        default=[],
        help="User to add to the new role (repeatable)",
    )
    return parser


async def _create_role(
    role_name: str,
    *,
    description: str | None = None,
    users: list[str] | None = None,
    session_factory: SessionFactory | None = None,
) -> int:
    # Role creation and membership run as separate transactions; a failed add leaves the role in place.
    store = build_role_store(session_factory)
    await retry_transient(lambda: store.create_role(role_name, description=description))
    if users:
        await retry_transient(lambda: store.add_users_to_roles(users, [role_name]))
    print(f"Created role {role_name} with {len(users or [])} members")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        return asyncio.run(_create_role(args.role_name, description=args.description, users=args.users))
    except Exception as exc:  # noqa: BLE001 - surface operator failures clearly
        print(f"create_role failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
