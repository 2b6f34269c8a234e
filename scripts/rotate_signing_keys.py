#!/usr/bin/env python3
"""Rotate, clean up or list the token signing keys.

Usage:
    # Make a new current key; the previous one keeps verifying old tokens
    python scripts/rotate_signing_keys.py rotate

    # Once tokens signed by deprecated keys have expired
    python scripts/rotate_signing_keys.py cleanup

    python scripts/rotate_signing_keys.py show

Keys live in Redis (REDIS_URL), so run this against the same Redis the
server uses.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run(command: str) -> dict:
    # imported late so .env is read after argument parsing
    from lumenauth.service.runtime import get_runtime

    runtime = get_runtime()
    keyring = runtime.keyring
    try:
        if command == "rotate":
            key = await keyring.rotate()
            return {"status": "rotated", "current": key.kid}
        if command == "cleanup":
            removed = await keyring.cleanup()
            return {"status": "cleaned_up", "removed": removed}
        keys = await keyring.load()
        return {
            "status": "ok",
            "keys": [
                {
                    "kid": key.kid,
                    "status": key.status,
                    "created_at": key.created_at.isoformat(),
                }
                for key in keys
            ],
        }
    finally:
        await runtime.close()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Manage LumenAuth signing keys",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("command", choices=["rotate", "cleanup", "show"])
    args = parser.parse_args()

    result = asyncio.run(run(args.command))
    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()
