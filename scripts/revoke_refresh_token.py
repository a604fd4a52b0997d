#!/usr/bin/env python3
"""Revoke a refresh-token identity from the command line.

Usage:
    # By token id (the ``jti`` claim):
    python scripts/revoke_refresh_token.py --token-id 3f0c...

    # By the full refresh token, decoded with JWT_REFRESH_SECRET:
    python scripts/revoke_refresh_token.py --refresh-token eyJhbGciOi...

Environment Variables:
    REDIS_URL: store holding the refresh-token records
    JWT_SECRET, JWT_REFRESH_SECRET, BOT_API_SECRET, ADMIN_API_SECRET: as for the API
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def revoke(token_id: str | None, refresh_token: str | None, dry_run: bool = False) -> dict:
    """Delete the ``rt:<token_id>`` record so the token can no longer rotate.

    Returns:
        dict with token_id and status ('revoked' or 'dry_run')
    """
    # Import here so configuration is read after argument parsing
    from rolegate.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.open()
    try:
        if refresh_token:
            token_id = runtime.codec.verify_refresh(refresh_token).token_id
        if dry_run:
            print(f"[DRY RUN] Would revoke refresh token {token_id}")
            return {"token_id": token_id, "status": "dry_run"}
        await runtime.refresh_tokens.revoke(token_id)
        return {"token_id": token_id, "status": "revoked"}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Revoke a rolegate refresh token",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--token-id", help="Refresh token id (jti claim)")
    group.add_argument("--refresh-token", help="Full refresh token to decode")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    try:
        result = asyncio.run(revoke(args.token_id, args.refresh_token, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    if result["status"] == "revoked":
        print(f"Revoked refresh token {result['token_id']}")


if __name__ == "__main__":
    main()
