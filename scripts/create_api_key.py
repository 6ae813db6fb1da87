#!/usr/bin/env python3
"""
Create a service API key for the token-minting endpoints.

The plaintext key is printed once; only its Argon2id hash is stored.

Usage:
    python3 scripts/create_api_key.py --name payments-relay
    python3 scripts/create_api_key.py --name support --permission tokens:write --expires-in-days 90
"""

import argparse
import asyncio

from riresume.db.session import close_engines, get_session
from riresume.services.api_key import TOKENS_WRITE, APIKeyService


async def create(name: str, permissions: list[str], expires_in_days: int | None) -> None:
    async with get_session() as session:
        generated = await APIKeyService(session).create_api_key(
            name, permissions, expires_in_days=expires_in_days
        )
    await close_engines()
    print(f"key_id:  {generated.key_id}")
    print(f"api_key: {generated.plaintext_key}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Create a RiResume service API key")
    parser.add_argument("--name", required=True, help="Human-readable key name")
    parser.add_argument(
        "--permission",
        action="append",
        dest="permissions",
        help=f"Permission to grant (repeatable, default {TOKENS_WRITE})",
    )
    parser.add_argument("--expires-in-days", type=int, default=None)
    args = parser.parse_args()

    asyncio.run(create(args.name, args.permissions or [TOKENS_WRITE], args.expires_in_days))


if __name__ == "__main__":
    main()
