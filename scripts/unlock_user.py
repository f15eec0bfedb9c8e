from __future__ import annotations

import argparse
import asyncio
import sys

from gatehouse.persistence.db import SessionFactory
from gatehouse.persistence.transactions import retry_transient
from gatehouse.services.credentials import build_credential_store


def _build_parser() -> argparse.ArgumentParser:
    # One user per invocation so a typo cannot unlock a batch.
    parser = argparse.ArgumentParser(description="Clear the lockout and failure counters for a user")
    parser.add_argument("user_name", help="User name to unlock")
    return parser


async def _unlock_user(user_name: str, *, session_factory: SessionFactory | None = None) -> int:
    store = build_credential_store(session_factory)
    await retry_transient(lambda: store.unlock_user(user_name))
    print(f"Unlocked user {user_name} in application {store.policy.application_name}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        return asyncio.run(_unlock_user(args.user_name))
    except Exception as exc:  # noqa: BLE001 - surface operator failures clearly
        print(f"unlock_user failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
